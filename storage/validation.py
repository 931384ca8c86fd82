"""
Post-migration validation.

Turns a current-version document into an EngineState. Problems are
sorted into three buckets:

    errors       structural corruption or a broken ledger; the caller
                 falls back to the default state
    warnings     invalid sessions, unlocks or settings values; the bad
                 entries are filtered out (or clamped) and loading goes on
    suggestions  housekeeping hints (large histories)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import config
from blocking.settings import BlocklistSettings
from core.state import (
    BlocklistState,
    EngineState,
    FocusSession,
    FocusState,
    RewardsState,
    RewardTransaction,
    UnlockSession,
)

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    state: Optional[EngineState] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors and self.state is not None


def _structure_errors(payload: Any) -> List[str]:
    if not isinstance(payload, dict):
        return ["State is not an object"]
    errors = []
    if payload.get("version") != config.STORAGE_VERSION:
        errors.append(f"Unexpected version {payload.get('version')!r}")
    layout = {
        "focus": ("sessions",),
        "rewards": ("transactions",),
        "blocklist": ("activeUnlockSessions", "unlockHistory"),
    }
    for section, lists in layout.items():
        value = payload.get(section)
        if not isinstance(value, dict):
            errors.append(f"'{section}' section is missing or not an object")
            continue
        for key in lists:
            if key in value and not isinstance(value[key], list):
                errors.append(f"'{section}.{key}' is not a list")
    return errors


def _load_session(raw: Any, label: str, warnings: List[str]) -> Optional[FocusSession]:
    try:
        if not isinstance(raw, dict):
            raise ValueError("not an object")
        session = FocusSession.from_dict(raw)
    except (KeyError, TypeError, ValueError) as e:
        warnings.append(f"Dropped {label}: {e}")
        return None
    problems = session.invariant_violations()
    if problems:
        warnings.append(f"Dropped {label} ({session.id}): {'; '.join(problems)}")
        return None
    return session


def _validate_focus(focus: Dict[str, Any], warnings: List[str]) -> FocusState:
    sessions = []
    seen = set()
    for index, raw in enumerate(focus.get("sessions") or []):
        session = _load_session(raw, f"session {index}", warnings)
        if session is None:
            continue
        if not session.is_terminal:
            warnings.append(f"Dropped session {index} ({session.id}): {session.status} session in history")
            continue
        if session.id in seen:
            warnings.append(f"Dropped session {index}: duplicate id {session.id}")
            continue
        seen.add(session.id)
        sessions.append(session)

    current = None
    raw_current = focus.get("currentSession")
    if raw_current is not None:
        current = _load_session(raw_current, "current session", warnings)
        if current is not None and current.is_terminal:
            warnings.append(f"Moved finished current session {current.id} into history")
            if current.id not in seen:
                sessions.insert(0, current)
            current = None
    return FocusState(current_session=current, sessions=sessions)


def _validate_rewards(rewards: Dict[str, Any], errors: List[str]) -> Optional[RewardsState]:
    totals = {}
    for key in ("balance", "totalEarned", "totalSpent", "archivedEarned", "archivedSpent"):
        value = rewards.get(key, 0)
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            errors.append(f"rewards.{key} is not a non-negative integer: {value!r}")
        totals[key] = value
    transactions = []
    for index, raw in enumerate(rewards.get("transactions") or []):
        try:
            if not isinstance(raw, dict):
                raise ValueError("not an object")
            transactions.append(RewardTransaction.from_dict(raw))
        except (KeyError, TypeError, ValueError) as e:
            errors.append(f"Invalid transaction {index}: {e}")
    if errors:
        return None

    state = RewardsState(
        balance=totals["balance"],
        total_earned=totals["totalEarned"],
        total_spent=totals["totalSpent"],
        archived_earned=totals["archivedEarned"],
        archived_spent=totals["archivedSpent"],
        transactions=transactions,
    )
    errors.extend(state.integrity_problems())
    return None if errors else state


def _validate_settings(raw: Any, warnings: List[str]) -> BlocklistSettings:
    if not isinstance(raw, dict):
        warnings.append("Blocklist settings missing; using defaults")
        return BlocklistSettings()
    settings = BlocklistSettings.from_dict(raw)
    for key, value in settings.to_dict().items():
        if key in raw and raw[key] != value:
            warnings.append(f"Blocklist setting {key}={raw[key]!r} replaced with {value!r}")
    return settings


def _validate_unlocks(blocklist: Dict[str, Any], warnings: List[str]):
    active = []
    history = []
    for key, target in (("activeUnlockSessions", active), ("unlockHistory", history)):
        for index, raw in enumerate(blocklist.get(key) or []):
            try:
                if not isinstance(raw, dict):
                    raise ValueError("not an object")
                target.append(UnlockSession.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                warnings.append(f"Dropped unlock {key}[{index}]: {e}")

    kept = []
    for unlock in active:
        if not unlock.is_active:
            warnings.append(f"Moved inactive unlock {unlock.id} into history")
            history.insert(0, unlock)
            continue
        clash = next((k for k in kept if k.overlaps(unlock.app_tokens)), None)
        if clash is not None:
            warnings.append(f"Dropped unlock {unlock.id}: overlaps active unlock {clash.id}")
            continue
        kept.append(unlock)
    for unlock in history:
        unlock.is_active = False
    return kept, history


def validate_state(payload: Any) -> ValidationResult:
    """
    Validate a current-version document and build the engine state.

    Returns:
        ValidationResult; state is None when errors is non-empty.
    """
    result = ValidationResult()
    result.errors.extend(_structure_errors(payload))
    if result.errors:
        logger.error(f"State failed structural validation: {result.errors}")
        return result

    focus = _validate_focus(payload["focus"], result.warnings)
    rewards = _validate_rewards(payload["rewards"], result.errors)
    if rewards is None:
        logger.error(f"Ledger failed validation: {result.errors}")
        return result

    blocklist = payload["blocklist"]
    settings = _validate_settings(blocklist.get("settings"), result.warnings)
    active, history = _validate_unlocks(blocklist, result.warnings)

    if len(focus.sessions) > config.SESSION_HISTORY_SUGGEST_LIMIT:
        result.suggestions.append(
            f"{len(focus.sessions)} focus sessions stored; consider archiving old sessions"
        )
    if len(rewards.transactions) > config.TRANSACTION_ARCHIVE_THRESHOLD:
        result.suggestions.append(
            f"{len(rewards.transactions)} transactions stored; old ones will be archived"
        )

    for warning in result.warnings:
        logger.warning(f"State validation: {warning}")

    result.state = EngineState(
        focus=focus,
        rewards=rewards,
        blocklist=BlocklistState(
            settings=settings,
            active_unlock_sessions=active,
            unlock_history=history,
        ),
    )
    return result
