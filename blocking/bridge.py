"""
Blocking Bridge boundary.

The OS-level blocking capability is an external collaborator reached
through two calls (apply_block / remove_block) and a small shared
key-value namespace. The namespace carries the shield configuration
written by the engine and the pending deep link written by the blocking
UI when the user taps an unlock button.
"""

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Protocol, Tuple
from urllib.parse import parse_qs, urlencode, urlparse

import config
from core.errors import PersistenceFailure

logger = logging.getLogger(__name__)

SHIELD_TITLE = "{applicationOrDomainDisplayName} is Blocked"


class BlockingBridge(Protocol):
    """The two commands the OS-level blocking capability accepts."""

    def apply_block(self, app_tokens: FrozenSet[str]) -> None:
        ...

    def remove_block(self, app_tokens: FrozenSet[str]) -> None:
        ...


class SharedStorage:
    """
    JSON-file key-value namespace shared with the blocking extension.

    Reads go to disk every time because the other side may have written
    in between. Writes are atomic (temp file + rename).
    """

    def __init__(self, path: Optional[Path] = None):
        self.path: Path = Path(path) if path is not None else config.SHARED_STORAGE_FILE
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError, OSError) as e:
            logger.warning(f"Failed to read shared storage {self.path}: {e}. Starting empty.")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Shared storage {self.path} is not an object. Starting empty.")
            return {}
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        """
        Save the namespace atomically.

        Raises:
            PersistenceFailure: If the file can't be written.
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_fd, temp_path = tempfile.mkstemp(
                suffix='.tmp',
                prefix='shared_',
                dir=self.path.parent
            )
            try:
                with os.fdopen(temp_fd, 'w') as f:
                    json.dump(data, f, indent=2)
                try:
                    os.replace(temp_path, self.path)
                except OSError:
                    if self.path.exists():
                        self.path.unlink()
                    os.rename(temp_path, self.path)
            except Exception:
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass
                raise
        except (IOError, OSError) as e:
            logger.error(f"Failed to write shared storage {self.path}: {e}")
            raise PersistenceFailure(f"Failed to write shared storage: {e}") from e

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._read().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if key in data:
                del data[key]
                self._write(data)

    def pop(self, key: str, default: Any = None) -> Any:
        """Read and clear a key in one step."""
        with self._lock:
            data = self._read()
            if key not in data:
                return default
            value = data.pop(key)
            self._write(data)
            return value


class LoggingBlockingBridge:
    """
    Bridge for hosts without an OS blocking capability (CLI, tests).

    Logs every command and records the currently blocked token set in
    shared storage so another process can inspect it.
    """

    def __init__(self, storage: SharedStorage):
        self.storage = storage

    def blocked_tokens(self) -> FrozenSet[str]:
        return frozenset(self.storage.get(config.BLOCKED_TOKENS_KEY, []) or [])

    def apply_block(self, app_tokens: FrozenSet[str]) -> None:
        blocked = self.blocked_tokens() | frozenset(app_tokens)
        self.storage.set(config.BLOCKED_TOKENS_KEY, sorted(blocked))
        logger.info(f"Blocking applied to {sorted(app_tokens)}")

    def remove_block(self, app_tokens: FrozenSet[str]) -> None:
        blocked = self.blocked_tokens() - frozenset(app_tokens)
        self.storage.set(config.BLOCKED_TOKENS_KEY, sorted(blocked))
        logger.info(f"Blocking lifted for {sorted(app_tokens)}")


# ----------------------------------------------------------------------
# Shield configuration
# ----------------------------------------------------------------------

def build_unlock_url(
    duration_minutes: int,
    cost: int,
    balance: int,
    scheme: Optional[str] = None,
) -> str:
    """Deep link opened by a shield button, e.g. orchard://unlock?duration=5&cost=5&currentBalance=12."""
    query = urlencode({
        "duration": duration_minutes,
        "cost": cost,
        "currentBalance": balance,
    })
    return f"{scheme or config.DEEP_LINK_SCHEME}://unlock?{query}"


def build_shield_configuration(
    balance: int,
    unlock_options: List[Dict[str, int]],
    scheme: Optional[str] = None,
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    Build the shield display and button actions for the current balance.

    The two cheapest options become the primary and secondary buttons.
    Options are offered whether or not the balance covers them; the
    engine decides on the actual purchase.

    Returns:
        (shield configuration, shield actions).
    """
    options = sorted(unlock_options, key=lambda o: (o["cost"], o["duration"]))
    if not options:
        options = [{"duration": 1, "cost": 1}]
    primary = options[0]
    secondary = options[1] if len(options) > 1 else None

    shield = {
        "title": SHIELD_TITLE,
        "subtitle": f"You have {balance} fruits\nSpend fruits to unlock temporarily",
        "primaryButtonLabel": f"Unlock {primary['duration']} min - {primary['cost']} fruits",
        "secondaryButtonLabel": (
            f"Unlock {secondary['duration']} min - {secondary['cost']} fruits"
            if secondary else "Close"
        ),
        "currentBalance": balance,
    }
    actions = {
        "primary": {
            "type": "openUrl",
            "url": build_unlock_url(primary["duration"], primary["cost"], balance, scheme),
            "behavior": "close",
        },
        "secondary": (
            {
                "type": "openUrl",
                "url": build_unlock_url(secondary["duration"], secondary["cost"], balance, scheme),
                "behavior": "close",
            }
            if secondary else {"type": "close", "behavior": "close"}
        ),
    }
    return shield, actions


def publish_shield(storage: SharedStorage, balance: int, unlock_options: List[Dict[str, int]]) -> None:
    """Write the shield configuration for the blocking extension to pick up."""
    shield, actions = build_shield_configuration(balance, unlock_options)
    storage.set(config.SHIELD_CONFIGURATION_KEY, shield)
    storage.set(config.SHIELD_ACTIONS_KEY, actions)
    logger.debug(f"Shield configuration updated (balance {balance})")


# ----------------------------------------------------------------------
# Deep links
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class UnlockHint:
    """
    Parameters carried by an unlock deep link.

    current_balance is a display hint only; the ledger is authoritative.
    """

    current_balance: Optional[int] = None
    duration_minutes: Optional[int] = None
    cost: Optional[int] = None


def _query_int(params: Dict[str, List[str]], *names: str) -> Optional[int]:
    for name in names:
        values = params.get(name)
        if not values:
            continue
        try:
            return int(values[0].strip())
        except ValueError:
            return None
    return None


def parse_unlock_deep_link(url: str, scheme: Optional[str] = None) -> Optional[UnlockHint]:
    """
    Parse <scheme>://unlock?currentBalance=N[&duration=D&cost=C].

    Returns:
        UnlockHint, or None if the URL isn't an unlock link. Missing or
        malformed parameters become None on the hint.
    """
    if not url or not isinstance(url, str):
        return None
    parsed = urlparse(url.strip())
    if parsed.scheme != (scheme or config.DEEP_LINK_SCHEME):
        return None
    # orchard://unlock parses "unlock" as the host; orchard:///unlock as the path
    target = parsed.netloc or parsed.path.strip("/")
    if target != "unlock":
        return None
    params = parse_qs(parsed.query)
    return UnlockHint(
        current_balance=_query_int(params, "currentBalance", "balance"),
        duration_minutes=_query_int(params, "duration"),
        cost=_query_int(params, "cost"),
    )


def pop_pending_deep_link(storage: SharedStorage) -> Optional[str]:
    """Read and clear the deep link left by the blocking UI."""
    value = storage.pop(config.PENDING_DEEP_LINK_KEY)
    if value is None:
        return None
    if not isinstance(value, str):
        logger.warning(f"Ignoring non-string pending deep link: {value!r}")
        return None
    return value
