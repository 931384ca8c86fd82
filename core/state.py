"""
Engine state: focus sessions, reward ledger and unlock sessions.

The EngineState is the single in-memory owner of every entity. The
persisted document is a serialized copy (see to_dict/from_dict); the
from_dict constructors are strict and raise on malformed input so the
validation layer can decide what to filter and what to reject.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, List, Optional

import config
from blocking.settings import BlocklistSettings
from tracking.clock import parse_timestamp, seconds_between, to_iso

logger = logging.getLogger(__name__)


def new_id(prefix: str) -> str:
    """Generate an opaque identifier such as ``session_3f9a0c1b2d4e``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _optional_timestamp(value: Any) -> Optional[datetime]:
    return None if value is None else parse_timestamp(value)


def _require_int(data: Dict[str, Any], key: str, default: Optional[int] = None) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number, got {value!r}")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(f"{key} must be a whole number, got {value!r}")
    return int(value)


def _require_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"{key} must be a non-empty string, got {value!r}")
    return value


# ----------------------------------------------------------------------
# Focus sessions
# ----------------------------------------------------------------------

@dataclass
class PauseInterval:
    """One pause; end_time is None while the pause is still open."""

    start_time: datetime
    end_time: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "startTime": to_iso(self.start_time),
            "endTime": to_iso(self.end_time) if self.end_time else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PauseInterval':
        return cls(
            start_time=parse_timestamp(data["startTime"]),
            end_time=_optional_timestamp(data.get("endTime")),
        )


@dataclass
class FocusSession:
    """
    A single focus session.

    target_duration is the planned length in minutes (0 means open-ended);
    duration is the actual length in minutes, set on completion or
    cancellation.
    """

    id: str
    start_time: datetime
    target_duration: int
    tag_id: str
    status: str = config.STATUS_ACTIVE
    description: Optional[str] = None
    end_time: Optional[datetime] = None
    duration: int = 0
    pause_history: List[PauseInterval] = field(default_factory=list)
    fruits_earned: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = self.start_time
        if self.updated_at is None:
            self.updated_at = self.created_at

    @property
    def is_terminal(self) -> bool:
        return self.status in config.TERMINAL_STATUSES

    @property
    def is_countdown(self) -> bool:
        return self.target_duration > 0

    @property
    def open_pause(self) -> Optional[PauseInterval]:
        """The unterminated pause interval, if any."""
        for interval in reversed(self.pause_history):
            if interval.is_open:
                return interval
        return None

    def invariant_violations(self) -> List[str]:
        """
        Check the session invariants.

        Returns:
            Human-readable problems; empty when the session is consistent.
        """
        problems = []
        if self.status not in config.SESSION_STATUSES:
            problems.append(f"unknown status {self.status!r}")
        if self.is_terminal and self.end_time is None:
            problems.append(f"{self.status} session has no endTime")
        if not self.is_terminal and self.end_time is not None:
            problems.append(f"{self.status} session has an endTime")
        if self.duration < 0:
            problems.append(f"negative duration {self.duration}")
        if self.target_duration < 0:
            problems.append(f"negative targetDuration {self.target_duration}")
        if self.fruits_earned < 0:
            problems.append(f"negative fruitsEarned {self.fruits_earned}")

        open_count = 0
        for index, interval in enumerate(self.pause_history):
            if interval.is_open:
                open_count += 1
            elif seconds_between(interval.start_time, interval.end_time) < 0:
                problems.append(f"pause {index} ends before it starts")
        if open_count > 1:
            problems.append(f"{open_count} open pause intervals")
        if open_count and self.status != config.STATUS_PAUSED:
            problems.append(f"open pause interval while {self.status}")
        if self.status == config.STATUS_PAUSED and open_count == 0:
            problems.append("paused session without an open pause interval")
        return problems

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "startTime": to_iso(self.start_time),
            "endTime": to_iso(self.end_time) if self.end_time else None,
            "targetDuration": self.target_duration,
            "duration": self.duration,
            "status": self.status,
            "tagId": self.tag_id,
            "description": self.description,
            "pauseHistory": [interval.to_dict() for interval in self.pause_history],
            "fruitsEarned": self.fruits_earned,
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FocusSession':
        """
        Create a session from a persisted dictionary.

        Raises:
            ValueError, KeyError, TypeError: If required fields are missing
                or malformed.
        """
        pauses = data.get("pauseHistory", [])
        if not isinstance(pauses, list):
            raise ValueError("pauseHistory must be a list")
        description = data.get("description")
        return cls(
            id=_require_str(data, "id"),
            start_time=parse_timestamp(data["startTime"]),
            end_time=_optional_timestamp(data.get("endTime")),
            target_duration=_require_int(data, "targetDuration"),
            duration=_require_int(data, "duration", 0),
            status=_require_str(data, "status"),
            tag_id=_require_str(data, "tagId"),
            description=description if isinstance(description, str) else None,
            pause_history=[PauseInterval.from_dict(p) for p in pauses],
            fruits_earned=_require_int(data, "fruitsEarned", 0),
            created_at=_optional_timestamp(data.get("createdAt")),
            updated_at=_optional_timestamp(data.get("updatedAt")),
        )


@dataclass
class FocusState:
    current_session: Optional[FocusSession] = None
    sessions: List[FocusSession] = field(default_factory=list)  # history, newest first


# ----------------------------------------------------------------------
# Rewards
# ----------------------------------------------------------------------

@dataclass
class RewardTransaction:
    """Append-only ledger entry."""

    id: str
    type: str
    amount: int
    source: str
    description: str
    created_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "amount": self.amount,
            "source": self.source,
            "description": self.description,
            "metadata": dict(self.metadata),
            "createdAt": to_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RewardTransaction':
        tx_type = _require_str(data, "type")
        if tx_type not in (config.TRANSACTION_EARNED, config.TRANSACTION_SPENT):
            raise ValueError(f"unknown transaction type {tx_type!r}")
        source = _require_str(data, "source")
        if source not in config.TRANSACTION_SOURCES:
            raise ValueError(f"unknown transaction source {source!r}")
        amount = _require_int(data, "amount")
        if amount <= 0:
            raise ValueError(f"transaction amount must be positive, got {amount}")
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValueError("metadata must be an object")
        return cls(
            id=_require_str(data, "id"),
            type=tx_type,
            amount=amount,
            source=source,
            description=str(data.get("description") or ""),
            metadata=metadata,
            created_at=parse_timestamp(data["createdAt"]),
        )


@dataclass
class RewardsState:
    """
    Balance plus transaction log.

    archived_earned / archived_spent hold the totals of transactions that
    were folded out of the log by archival (or predate it), so the totals
    always equal the log sums plus the archived amounts.
    """

    balance: int = 0
    total_earned: int = 0
    total_spent: int = 0
    archived_earned: int = 0
    archived_spent: int = 0
    transactions: List[RewardTransaction] = field(default_factory=list)

    def integrity_problems(self) -> List[str]:
        """Ledger invariants; empty when consistent."""
        problems = []
        if self.balance < 0:
            problems.append(f"negative balance {self.balance}")
        if self.balance != self.total_earned - self.total_spent:
            problems.append(
                f"balance {self.balance} != totalEarned {self.total_earned} "
                f"- totalSpent {self.total_spent}"
            )
        earned = sum(t.amount for t in self.transactions if t.type == config.TRANSACTION_EARNED)
        spent = sum(t.amount for t in self.transactions if t.type == config.TRANSACTION_SPENT)
        if self.total_earned != earned + self.archived_earned:
            problems.append(
                f"totalEarned {self.total_earned} != logged {earned} + archived {self.archived_earned}"
            )
        if self.total_spent != spent + self.archived_spent:
            problems.append(
                f"totalSpent {self.total_spent} != logged {spent} + archived {self.archived_spent}"
            )
        if self.archived_earned < 0 or self.archived_spent < 0:
            problems.append("negative archived totals")
        return problems

    def to_dict(self) -> Dict[str, Any]:
        return {
            "balance": self.balance,
            "totalEarned": self.total_earned,
            "totalSpent": self.total_spent,
            "archivedEarned": self.archived_earned,
            "archivedSpent": self.archived_spent,
            "transactions": [t.to_dict() for t in self.transactions],
        }


# ----------------------------------------------------------------------
# Unlock sessions
# ----------------------------------------------------------------------

@dataclass
class UnlockSession:
    """
    A time-boxed grant of access to blocked apps.

    Remaining time is never stored; it is derived from start_time and
    duration_minutes on every read.
    """

    id: str
    app_tokens: FrozenSet[str]
    duration_minutes: int
    cost: int
    start_time: datetime
    is_active: bool = True
    ended_at: Optional[datetime] = None
    end_reason: Optional[str] = None

    @property
    def expires_at(self) -> datetime:
        return self.start_time + timedelta(minutes=self.duration_minutes)

    def remaining_seconds(self, now: datetime) -> float:
        """Seconds of access left at ``now`` (0 once expired or ended)."""
        if not self.is_active:
            return 0.0
        return max(0.0, seconds_between(now, self.expires_at))

    def is_expired(self, now: datetime) -> bool:
        return seconds_between(now, self.expires_at) <= 0

    def overlaps(self, app_tokens: FrozenSet[str]) -> bool:
        return bool(self.app_tokens & app_tokens)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "appTokens": sorted(self.app_tokens),
            "durationMinutes": self.duration_minutes,
            "cost": self.cost,
            "startTime": to_iso(self.start_time),
            "isActive": self.is_active,
            "endedAt": to_iso(self.ended_at) if self.ended_at else None,
            "endReason": self.end_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UnlockSession':
        tokens = data.get("appTokens")
        if not isinstance(tokens, list) or not tokens:
            raise ValueError("appTokens must be a non-empty list")
        if not all(isinstance(t, str) and t for t in tokens):
            raise ValueError("appTokens must contain non-empty strings")
        duration = _require_int(data, "durationMinutes")
        if duration < 1:
            raise ValueError(f"durationMinutes must be at least 1, got {duration}")
        cost = _require_int(data, "cost")
        if cost < 0:
            raise ValueError(f"cost must not be negative, got {cost}")
        return cls(
            id=_require_str(data, "id"),
            app_tokens=frozenset(tokens),
            duration_minutes=duration,
            cost=cost,
            start_time=parse_timestamp(data["startTime"]),
            is_active=bool(data.get("isActive", False)),
            ended_at=_optional_timestamp(data.get("endedAt")),
            end_reason=data.get("endReason"),
        )


@dataclass
class BlocklistState:
    settings: BlocklistSettings = field(default_factory=BlocklistSettings)
    active_unlock_sessions: List[UnlockSession] = field(default_factory=list)
    unlock_history: List[UnlockSession] = field(default_factory=list)


# ----------------------------------------------------------------------
# Root state
# ----------------------------------------------------------------------

@dataclass
class EngineState:
    """
    Everything the engine owns, plus the pending side effects.

    Components append effects with emit(); the host drains them after each
    public operation.
    """

    focus: FocusState = field(default_factory=FocusState)
    rewards: RewardsState = field(default_factory=RewardsState)
    blocklist: BlocklistState = field(default_factory=BlocklistState)
    version: int = config.STORAGE_VERSION
    effects: List[Any] = field(default_factory=list, repr=False, compare=False)

    def emit(self, effect: Any) -> None:
        self.effects.append(effect)

    def drain_effects(self) -> List[Any]:
        effects, self.effects = self.effects, []
        return effects

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the versioned persisted document."""
        current = self.focus.current_session
        return {
            "version": self.version,
            "focus": {
                "currentSession": current.to_dict() if current else None,
                "sessions": [s.to_dict() for s in self.focus.sessions],
            },
            "rewards": self.rewards.to_dict(),
            "blocklist": {
                "settings": self.blocklist.settings.to_dict(),
                "activeUnlockSessions": [
                    u.to_dict() for u in self.blocklist.active_unlock_sessions
                ],
                "unlockHistory": [u.to_dict() for u in self.blocklist.unlock_history],
            },
        }
