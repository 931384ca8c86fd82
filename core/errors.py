"""Error taxonomy for the focus and unlock engine."""

from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base class for every failure the engine reports to its host."""

    error_type = "engine_error"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class InsufficientBalance(EngineError):
    """A debit (or unlock purchase) exceeds the current balance."""

    error_type = "insufficient_balance"

    def __init__(self, required: int, balance: int):
        super().__init__(
            f"Need {required} fruits but only {balance} available",
            {"required": required, "balance": balance},
        )
        self.required = required
        self.balance = balance


class DailyLimitReached(EngineError):
    """The daily unlock quota is used up."""

    error_type = "daily_limit_reached"

    def __init__(self, allowed: int):
        super().__init__(
            f"Daily unlock limit of {allowed} reached. Try again tomorrow.",
            {"allowed": allowed},
        )
        self.allowed = allowed


class InvalidDuration(EngineError):
    """Requested unlock duration is outside 1..maxUnlockDuration minutes."""

    error_type = "invalid_duration"

    def __init__(self, requested: int, maximum: int):
        super().__init__(
            f"Unlock duration must be between 1 and {maximum} minutes (got {requested})",
            {"requested": requested, "maximum": maximum},
        )
        self.requested = requested
        self.maximum = maximum


class InvalidTransition(EngineError):
    """Operation not allowed in the current state (e.g. pause while not active)."""

    error_type = "invalid_transition"


class PersistenceFailure(EngineError):
    """Writing to durable storage failed; in-memory state is still authoritative."""

    error_type = "persistence_failure"


class MigrationFailure(EngineError):
    """Persisted payload is structurally corrupt and was replaced by defaults."""

    error_type = "migration_failure"


class IntegrityViolation(EngineError):
    """An invariant broke after a mutation; the mutation was rolled back."""

    error_type = "integrity_violation"
