"""
Side effects and the shared event interface.

Components mutate the EngineState and record what the host must do
afterwards (persist, call the Blocking Bridge, refresh the shield) as
effect records. They talk to each other through the EventBus and the
Wallet protocol, never by importing one another.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, FrozenSet, List, Optional, Protocol, Union

if TYPE_CHECKING:
    from core.state import RewardTransaction

logger = logging.getLogger(__name__)

# Event names
SESSION_COMPLETED = "session_completed"
SESSION_CANCELLED = "session_cancelled"


@dataclass(frozen=True)
class Persist:
    """Write the current state snapshot to durable storage."""
    reason: str


@dataclass(frozen=True)
class ApplyBlock:
    """Reinstate OS-level blocking for these app tokens."""
    app_tokens: FrozenSet[str]


@dataclass(frozen=True)
class RemoveBlock:
    """Temporarily lift OS-level blocking for these app tokens."""
    app_tokens: FrozenSet[str]


@dataclass(frozen=True)
class ShieldUpdate:
    """Refresh the shield display with a new balance."""
    balance: int


Effect = Union[Persist, ApplyBlock, RemoveBlock, ShieldUpdate]


class EventBus:
    """
    Synchronous in-process publish/subscribe.

    Handlers run in subscription order inside publish(); an exception from
    a handler propagates to the publisher so the publishing operation can
    roll back.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Callable[[Any], None]]] = defaultdict(list)

    def subscribe(self, event: str, handler: Callable[[Any], None]) -> None:
        """Register a handler for an event name."""
        self._handlers[event].append(handler)

    def unsubscribe(self, event: str, handler: Callable[[Any], None]) -> None:
        """Remove a previously registered handler (no-op if absent)."""
        if handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    def publish(self, event: str, payload: Any = None) -> None:
        """Deliver payload to every handler of event."""
        handlers = list(self._handlers.get(event, []))
        logger.debug(f"Publishing {event} to {len(handlers)} handler(s)")
        for handler in handlers:
            handler(payload)


class Wallet(Protocol):
    """What the unlock manager needs from the reward ledger."""

    @property
    def balance(self) -> int:
        ...

    def debit(
        self,
        amount: int,
        source: str,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        now: Any = None,
    ) -> "RewardTransaction":
        ...
