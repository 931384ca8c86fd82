"""
Schema migration for the persisted engine document.

Legacy payloads are upgraded by an ordered list of steps, each keyed by
the version it upgrades from. A new schema change is a new step appended
to MIGRATION_STEPS plus a bump of config.STORAGE_VERSION; existing steps
are never edited.

Version history:
    0  deprecated top-level groupings (focusSlice, rewardsSlice, ...)
    1  {byId, allIds} normalized collections, wrapped current session
    2  flat lists with legacy session fields (isCompleted, seedsEarned, ...)
    3  current document (see core.state.EngineState.to_dict)
"""

import copy
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import config
from core.errors import MigrationFailure
from core.state import EngineState, new_id
from tracking.clock import coerce_timestamp, to_iso, utc_now

logger = logging.getLogger(__name__)

CURRENT_VERSION = config.STORAGE_VERSION

DEPRECATED_GROUPINGS = ("focusSlice", "rewardsSlice", "blocklistSlice", "homeSlice", "tasksSlice")
DROPPED_SECTIONS = ("homeSlice", "tasksSlice", "tasks", "ui", "auth", "social", "settings")

# Legacy transaction sources that map onto a current one
LEGACY_SOURCE_MAP = {
    "focus": config.SOURCE_FOCUS_SESSION,
    "session": config.SOURCE_FOCUS_SESSION,
    "task": config.SOURCE_TASK_COMPLETION,
    "streak": config.SOURCE_STREAK_BONUS,
    "unlock": config.SOURCE_APP_UNLOCK,
}


@dataclass(frozen=True)
class MigrationStep:
    """One schema upgrade from from_version to from_version + 1."""

    from_version: int
    description: str
    apply: Callable[[Dict[str, Any], datetime], Dict[str, Any]]

    @property
    def to_version(self) -> int:
        return self.from_version + 1


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

def _is_normalized(value: Any) -> bool:
    return isinstance(value, dict) and "byId" in value and "allIds" in value


def _flatten(value: Any) -> Any:
    """
    Turn a {byId, allIds} collection into a list in allIds order.

    Ids without an entry are skipped. Lists and anything else pass through
    unchanged so later validation can judge them.
    """
    if not _is_normalized(value):
        return value
    by_id = value.get("byId") or {}
    all_ids = value.get("allIds") or []
    if not isinstance(by_id, dict) or not isinstance(all_ids, list):
        raise MigrationFailure("Normalized collection has malformed byId/allIds")
    return [by_id[item_id] for item_id in all_ids if by_id.get(item_id) is not None]


def _is_wrapped_session(value: Any) -> bool:
    return isinstance(value, dict) and "session" in value and "id" not in value


def _as_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        try:
            return int(value)
        except (OverflowError, ValueError):
            return default
    if isinstance(value, str):
        try:
            return int(float(value))
        except (OverflowError, ValueError):
            return default
    return default


def _iso(value: Any, default: datetime) -> str:
    return to_iso(coerce_timestamp(value, default))


def _section(doc: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Fetch a top-level section, defaulting a missing one to {}."""
    value = doc.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise MigrationFailure(f"'{name}' section is not an object", {"section": name})
    return value


def _list(section: Dict[str, Any], key: str) -> List[Any]:
    value = _flatten(section.get(key))
    if value is None:
        return []
    if not isinstance(value, list):
        raise MigrationFailure(f"'{key}' is not a list", {"key": key})
    return value


# ----------------------------------------------------------------------
# Steps
# ----------------------------------------------------------------------

def _upgrade_groupings(doc: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """0 -> 1: rename the *Slice groupings and drop unrelated sections."""
    upgraded = {}
    for name in ("focus", "rewards", "blocklist"):
        value = doc.get(name)
        if value is None:
            value = doc.get(f"{name}Slice")
        if value is not None:
            upgraded[name] = value
    dropped = [key for key in doc if key in DROPPED_SECTIONS]
    if dropped:
        logger.info(f"Dropping unrelated legacy sections: {', '.join(sorted(dropped))}")
    return upgraded


def _flatten_collections(doc: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """1 -> 2: flatten normalized collections and unwrap the current session."""
    upgraded = dict(doc)

    focus = doc.get("focus")
    if isinstance(focus, dict):
        focus = dict(focus)
        if "sessions" in focus:
            focus["sessions"] = _flatten(focus["sessions"])
        current = focus.get("currentSession")
        if _is_wrapped_session(current):
            focus["currentSession"] = current.get("session")
        upgraded["focus"] = focus

    rewards = doc.get("rewards")
    if isinstance(rewards, dict):
        rewards = dict(rewards)
        if "transactions" in rewards:
            rewards["transactions"] = _flatten(rewards["transactions"])
        upgraded["rewards"] = rewards

    blocklist = doc.get("blocklist")
    if isinstance(blocklist, dict):
        blocklist = dict(blocklist)
        if "activeSessions" in blocklist and "activeUnlockSessions" not in blocklist:
            blocklist["activeUnlockSessions"] = blocklist.pop("activeSessions")
        for key in ("activeUnlockSessions", "unlockHistory"):
            if key in blocklist:
                blocklist[key] = _flatten(blocklist[key])
        upgraded["blocklist"] = blocklist

    return upgraded


def _legacy_status(raw: Dict[str, Any]) -> str:
    status = raw.get("status")
    if status in config.SESSION_STATUSES:
        return status
    if raw.get("isCompleted"):
        return config.STATUS_COMPLETED
    if raw.get("isCancelled"):
        return config.STATUS_CANCELLED
    if raw.get("isPaused"):
        return config.STATUS_PAUSED
    if raw.get("endTime"):
        return config.STATUS_COMPLETED
    return config.STATUS_ACTIVE


def _legacy_tag(raw: Dict[str, Any]) -> str:
    for key in ("tagId", "categoryId"):
        value = raw.get(key)
        if isinstance(value, str) and value:
            return value
    category = raw.get("category")
    if isinstance(category, dict):
        category = category.get("id")
    if isinstance(category, str) and category:
        return category
    tags = raw.get("tags")
    if isinstance(tags, list) and tags:
        first = tags[0]
        if isinstance(first, dict):
            first = first.get("id")
        if isinstance(first, str) and first:
            return first
    return "default"


def _convert_pauses(raw: Dict[str, Any], status: str, start, now: datetime) -> List[Dict[str, Any]]:
    history = raw.get("pauseHistory")
    if isinstance(history, list):
        pauses = []
        for pause in history:
            if not isinstance(pause, dict):
                # Left for validation to reject
                pauses.append(pause)
                continue
            end = pause.get("endTime")
            pauses.append({
                "startTime": _iso(pause.get("startTime"), now),
                "endTime": _iso(end, now) if end is not None else None,
            })
        return pauses

    # Legacy counters: totalPauseTime (milliseconds) and pausedAt
    pauses = []
    total_ms = _as_int(raw.get("totalPauseTime"), 0)
    if total_ms > 0:
        pause_start = start
        pauses.append({
            "startTime": to_iso(pause_start),
            "endTime": to_iso(pause_start + timedelta(milliseconds=total_ms)),
        })
    if status == config.STATUS_PAUSED:
        paused_at = coerce_timestamp(raw.get("pausedAt"), now)
        pauses.append({"startTime": to_iso(paused_at), "endTime": None})
    return pauses


def _convert_session(raw: Any, now: datetime) -> Any:
    """Rewrite one legacy session into the current shape."""
    if not isinstance(raw, dict):
        return raw
    status = _legacy_status(raw)
    start = coerce_timestamp(raw.get("startTime"), now)
    session_id = raw.get("id")
    if not isinstance(session_id, str) or not session_id:
        session_id = new_id("session")

    end_time = None
    if status in config.TERMINAL_STATUSES:
        end_time = _iso(raw.get("endTime"), now)

    created = raw.get("createdAt")
    created_at = coerce_timestamp(created, now) if created is not None else start
    updated = raw.get("updatedAt")
    updated_at = coerce_timestamp(updated, now) if updated is not None else created_at

    fruits = raw.get("fruitsEarned", raw.get("seedsEarned", 0))
    description = raw.get("description")
    return {
        "id": session_id,
        "startTime": to_iso(start),
        "endTime": end_time,
        "targetDuration": max(0, _as_int(raw.get("targetDuration"), 0)),
        "duration": max(0, _as_int(raw.get("duration"), 0)),
        "status": status,
        "tagId": _legacy_tag(raw),
        "description": description if isinstance(description, str) else None,
        "pauseHistory": _convert_pauses(raw, status, start, now),
        "fruitsEarned": max(0, _as_int(fruits, 0)),
        "createdAt": to_iso(created_at),
        "updatedAt": to_iso(updated_at),
    }


def _convert_transaction(raw: Any, now: datetime) -> Any:
    if not isinstance(raw, dict):
        return raw
    amount = _as_int(raw.get("amount"), 0)
    tx_type = raw.get("type")
    if tx_type == "earn":
        tx_type = config.TRANSACTION_EARNED
    elif tx_type == "spend":
        tx_type = config.TRANSACTION_SPENT
    elif tx_type not in (config.TRANSACTION_EARNED, config.TRANSACTION_SPENT):
        tx_type = config.TRANSACTION_SPENT if amount < 0 else config.TRANSACTION_EARNED

    metadata = raw.get("metadata")
    metadata = dict(metadata) if isinstance(metadata, dict) else {}
    source = raw.get("source")
    if source not in config.TRANSACTION_SOURCES:
        mapped = LEGACY_SOURCE_MAP.get(source) if isinstance(source, str) else None
        if mapped is None:
            metadata["legacySource"] = source
            mapped = config.SOURCE_MANUAL
        source = mapped

    tx_id = raw.get("id")
    return {
        "id": tx_id if isinstance(tx_id, str) and tx_id else new_id("tx"),
        "type": tx_type,
        "amount": abs(amount),
        "source": source,
        "description": str(raw.get("description") or ""),
        "metadata": metadata,
        "createdAt": _iso(raw.get("createdAt"), now),
    }


def _convert_rewards(rewards: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """
    Convert transactions and reconcile totals against the log.

    Amounts the log can't account for (a balance that predates it, or
    transactions that were dropped) are carried as archived totals so the
    ledger invariants hold without changing the user's balance.
    """
    transactions = []
    for index, raw in enumerate(_list(rewards, "transactions")):
        converted = _convert_transaction(raw, now)
        if not isinstance(converted, dict) or converted["amount"] <= 0:
            logger.warning(f"Dropped legacy transaction {index}: no usable amount ({raw!r})")
            continue
        transactions.append(converted)
    logged_earned = sum(t["amount"] for t in transactions if t["type"] == config.TRANSACTION_EARNED)
    logged_spent = sum(t["amount"] for t in transactions if t["type"] == config.TRANSACTION_SPENT)

    total_earned = max(_as_int(rewards.get("totalEarned"), 0), logged_earned)
    total_spent = max(_as_int(rewards.get("totalSpent"), 0), logged_spent)
    archived_earned = total_earned - logged_earned
    archived_spent = total_spent - logged_spent

    if "balance" in rewards:
        target = max(0, _as_int(rewards.get("balance"), 0))
    else:
        target = max(0, total_earned - total_spent)
    difference = target - (total_earned - total_spent)
    if difference > 0:
        total_earned += difference
        archived_earned += difference
    elif difference < 0:
        total_spent += -difference
        archived_spent += -difference
    if difference:
        logger.info(
            f"Reconciled legacy balance {target}: carried {difference:+d} as archived totals"
        )

    return {
        "balance": target,
        "totalEarned": total_earned,
        "totalSpent": total_spent,
        "archivedEarned": archived_earned,
        "archivedSpent": archived_spent,
        "transactions": transactions,
    }


def _convert_unlock(raw: Any, now: datetime, active_default: bool) -> Any:
    if not isinstance(raw, dict):
        return raw
    tokens = []
    for token in raw.get("appTokens") or []:
        if isinstance(token, dict):
            token = token.get("id") or token.get("token")
        if isinstance(token, str) and token:
            tokens.append(token)
    duration = raw.get("durationMinutes", raw.get("duration"))
    unlock_id = raw.get("id")
    ended_at = raw.get("endedAt")
    return {
        "id": unlock_id if isinstance(unlock_id, str) and unlock_id else new_id("unlock"),
        "appTokens": sorted(set(tokens)),
        "durationMinutes": _as_int(duration, 0),
        "cost": _as_int(raw.get("cost"), 0),
        "startTime": _iso(raw.get("startTime"), now),
        "isActive": bool(raw.get("isActive", active_default)),
        "endedAt": _iso(ended_at, now) if ended_at is not None else None,
        "endReason": raw.get("endReason"),
    }


def _convert_fields(doc: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """2 -> 3: legacy session fields, coerced dates, archived totals, blocklist section."""
    focus = _section(doc, "focus")
    sessions = [_convert_session(s, now) for s in _list(focus, "sessions")]
    current = focus.get("currentSession")
    if current is not None:
        current = _convert_session(current, now)
        if isinstance(current, dict) and current["status"] in config.TERMINAL_STATUSES:
            logger.info(f"Moving finished current session {current['id']} into history")
            if not any(isinstance(s, dict) and s.get("id") == current["id"] for s in sessions):
                sessions.insert(0, current)
            current = None

    blocklist = _section(doc, "blocklist")
    settings = blocklist.get("settings")
    merged_settings = EngineState().blocklist.settings.to_dict()
    if isinstance(settings, dict):
        merged_settings.update(settings)

    return {
        "focus": {"currentSession": current, "sessions": sessions},
        "rewards": _convert_rewards(_section(doc, "rewards"), now),
        "blocklist": {
            "settings": merged_settings,
            "activeUnlockSessions": [
                _convert_unlock(u, now, True) for u in _list(blocklist, "activeUnlockSessions")
            ],
            "unlockHistory": [
                _convert_unlock(u, now, False) for u in _list(blocklist, "unlockHistory")
            ],
        },
    }


MIGRATION_STEPS: List[MigrationStep] = [
    MigrationStep(0, "rename deprecated top-level groupings", _upgrade_groupings),
    MigrationStep(1, "flatten normalized collections", _flatten_collections),
    MigrationStep(2, "convert legacy session and ledger fields", _convert_fields),
]


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def detect_version(doc: Any) -> int:
    """
    Work out which schema version a payload is in.

    An explicit integer "version" wins. Without one the shape decides:
    deprecated groupings are 0, normalized collections or a wrapped
    current session are 1, anything else is 2.

    Raises:
        MigrationFailure: If the payload isn't an object or its version is
            not an integer between 0 and the current version.
    """
    if not isinstance(doc, dict):
        raise MigrationFailure(f"Persisted state is a {type(doc).__name__}, not an object")

    if "version" in doc:
        version = doc["version"]
        if isinstance(version, bool) or not isinstance(version, int):
            raise MigrationFailure(f"Invalid version {version!r}", {"version": version})
        if version < 0 or version > CURRENT_VERSION:
            raise MigrationFailure(
                f"Unsupported version {version} (current is {CURRENT_VERSION})",
                {"version": version},
            )
        return version

    if any(key in doc for key in DEPRECATED_GROUPINGS):
        return 0

    focus = doc.get("focus") if isinstance(doc.get("focus"), dict) else {}
    rewards = doc.get("rewards") if isinstance(doc.get("rewards"), dict) else {}
    blocklist = doc.get("blocklist") if isinstance(doc.get("blocklist"), dict) else {}
    if (
        _is_normalized(focus.get("sessions"))
        or _is_normalized(rewards.get("transactions"))
        or _is_normalized(blocklist.get("activeUnlockSessions"))
        or _is_wrapped_session(focus.get("currentSession"))
        or "activeSessions" in blocklist
    ):
        return 1
    return 2


def needs_migration(doc: Any) -> bool:
    return detect_version(doc) < CURRENT_VERSION


def migrate(doc: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Upgrade a payload to the current version.

    The input is never modified. A payload that is already current comes
    back as an equal copy, so running migrate twice changes nothing.

    Raises:
        MigrationFailure: On structural corruption.
    """
    now = now or utc_now()
    version = detect_version(doc)
    migrated = copy.deepcopy(doc)
    if version == CURRENT_VERSION:
        return migrated

    for step in MIGRATION_STEPS:
        if step.from_version < version:
            continue
        logger.info(f"Migrating state v{step.from_version} -> v{step.to_version}: {step.description}")
        try:
            migrated = step.apply(migrated, now)
        except MigrationFailure:
            raise
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise MigrationFailure(
                f"Migration v{step.from_version} -> v{step.to_version} failed: {e}",
                {"from_version": step.from_version},
            ) from e

    migrated["version"] = CURRENT_VERSION
    return migrated


def default_payload() -> Dict[str, Any]:
    """The document a fresh install starts from."""
    return EngineState().to_dict()
