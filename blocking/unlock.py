"""
Unlock Session Manager.

Spends fruits to lift blocking on a set of app tokens for a limited time.
Enforces the per-minute cost, the maximum duration and the daily quota,
and reinstates blocking when an unlock expires or is ended early.

Expiry is lazy: every read calls expire_sessions(now), so an unlock that
ran out while the process was not running is closed on the next read.
"""

import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

import config
from core.errors import DailyLimitReached, InvalidDuration, InvalidTransition
from core.events import ApplyBlock, Persist, RemoveBlock, Wallet
from core.state import EngineState, UnlockSession, new_id
from tracking.clock import format_duration, local_day_bounds, utc_now

logger = logging.getLogger(__name__)


class UnlockSessionManager:
    """Grants and expires unlock sessions against a Wallet."""

    def __init__(self, state: EngineState, wallet: Wallet):
        """
        Args:
            state: Shared engine state (mutated in place).
            wallet: Balance holder that unlock purchases are debited from.
        """
        self._state = state
        self._wallet = wallet

    @property
    def settings(self):
        return self._state.blocklist.settings

    # ------------------------------------------------------------------
    # Quota
    # ------------------------------------------------------------------

    def get_daily_unlock_count(self, now: Optional[datetime] = None) -> int:
        """Unlock purchases started during the current local day, ended ones included."""
        start, end = local_day_bounds(now or utc_now())
        blocklist = self._state.blocklist
        return sum(
            1
            for unlock in list(blocklist.active_unlock_sessions) + list(blocklist.unlock_history)
            if start <= unlock.start_time < end
        )

    def get_remaining_unlocks_today(self, now: Optional[datetime] = None) -> int:
        remaining = self.settings.allowed_unlocks_per_day - self.get_daily_unlock_count(now)
        return max(0, remaining)

    # ------------------------------------------------------------------
    # Purchases
    # ------------------------------------------------------------------

    def request_unlock(
        self,
        app_tokens: Iterable[str],
        duration_minutes: int,
        now: Optional[datetime] = None,
    ) -> UnlockSession:
        """
        Buy temporary access to app_tokens.

        Checks run in order (duration, quota, balance) and any failure leaves
        the state untouched. An active unlock that overlaps the requested
        tokens is replaced by the new one; tokens only the old unlock covered
        are blocked again.

        Args:
            app_tokens: Tokens to unblock (must not be empty).
            duration_minutes: Length of access, 1..max_unlock_duration.
            now: Purchase timestamp.

        Returns:
            The new active UnlockSession.

        Raises:
            ValueError: If app_tokens is empty.
            InvalidTransition: If blocking is disabled.
            InvalidDuration: If duration is outside 1..max_unlock_duration.
            DailyLimitReached: If the daily quota is used up.
            InsufficientBalance: If the cost exceeds the balance.
        """
        tokens = frozenset(t for t in app_tokens if t)
        if not tokens:
            raise ValueError("app_tokens must not be empty")
        if not self.settings.is_enabled:
            raise InvalidTransition("Blocking is disabled; nothing to unlock")

        now = now or utc_now()
        self.expire_sessions(now)

        maximum = self.settings.max_unlock_duration
        if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int) \
                or duration_minutes < 1 or duration_minutes > maximum:
            raise InvalidDuration(requested=duration_minutes, maximum=maximum)

        if self.get_remaining_unlocks_today(now) <= 0:
            logger.info(f"Unlock rejected: daily limit of {self.settings.allowed_unlocks_per_day} reached")
            raise DailyLimitReached(allowed=self.settings.allowed_unlocks_per_day)

        cost = self.settings.unlock_cost(duration_minutes)
        unlock_id = new_id("unlock")
        # Raises InsufficientBalance before anything is mutated
        self._wallet.debit(
            cost,
            config.SOURCE_APP_UNLOCK,
            description=f"Unlocked {len(tokens)} app(s) for {duration_minutes} min",
            metadata={"unlockSessionId": unlock_id, "durationMinutes": duration_minutes},
            now=now,
        )

        replaced = [u for u in self._state.blocklist.active_unlock_sessions if u.overlaps(tokens)]
        for old in replaced:
            self._close(old, now, config.UNLOCK_END_REPLACED)
            leftover = old.app_tokens - tokens
            if leftover:
                self._state.emit(ApplyBlock(leftover))
            logger.info(f"Unlock {old.id} replaced by {unlock_id}")

        unlock = UnlockSession(
            id=unlock_id,
            app_tokens=tokens,
            duration_minutes=duration_minutes,
            cost=cost,
            start_time=now,
        )
        self._state.blocklist.active_unlock_sessions.append(unlock)
        self._state.emit(RemoveBlock(tokens))
        self._state.emit(Persist("unlock:start"))
        logger.info(
            f"Unlock {unlock.id} granted for {format_duration(duration_minutes * 60)} "
            f"({len(tokens)} token(s), cost {cost})"
        )
        return unlock

    def end_unlock_early(self, unlock_id: str, now: Optional[datetime] = None) -> UnlockSession:
        """
        End an active unlock now and reinstate blocking. No refund.

        Raises:
            InvalidTransition: If no active unlock has this id (including one
                that has already expired).
        """
        now = now or utc_now()
        self.expire_sessions(now)
        unlock = self._find_active(unlock_id)
        if unlock is None:
            raise InvalidTransition(
                f"No active unlock session {unlock_id}", {"unlock_id": unlock_id}
            )
        self._close(unlock, now, config.UNLOCK_END_EARLY)
        self._state.emit(ApplyBlock(unlock.app_tokens))
        self._state.emit(Persist("unlock:end"))
        logger.info(f"Unlock {unlock.id} ended early")
        return unlock

    # ------------------------------------------------------------------
    # Expiry and reads
    # ------------------------------------------------------------------

    def expire_sessions(self, now: Optional[datetime] = None) -> List[UnlockSession]:
        """
        Close every active unlock whose time has run out.

        Each expired unlock produces exactly one ApplyBlock; a second call
        at the same or a later instant finds nothing to do.

        Returns:
            The unlocks expired by this call.
        """
        now = now or utc_now()
        expired = [u for u in self._state.blocklist.active_unlock_sessions if u.is_expired(now)]
        for unlock in expired:
            self._close(unlock, unlock.expires_at, config.UNLOCK_END_EXPIRED)
            self._state.emit(ApplyBlock(unlock.app_tokens))
            logger.info(f"Unlock {unlock.id} expired; blocking reinstated")
        if expired:
            self._state.emit(Persist("unlock:expire"))
        return expired

    def get_active_sessions(self, now: Optional[datetime] = None) -> List[UnlockSession]:
        """Active unlocks after lazy expiry."""
        self.expire_sessions(now)
        return list(self._state.blocklist.active_unlock_sessions)

    def get_session(self, unlock_id: str, now: Optional[datetime] = None) -> Optional[UnlockSession]:
        """Look up an unlock by id (active or historical), after lazy expiry."""
        self.expire_sessions(now)
        for unlock in self._state.blocklist.active_unlock_sessions:
            if unlock.id == unlock_id:
                return unlock
        for unlock in self._state.blocklist.unlock_history:
            if unlock.id == unlock_id:
                return unlock
        return None

    def unlocked_tokens(self, now: Optional[datetime] = None) -> frozenset:
        tokens = frozenset()
        for unlock in self.get_active_sessions(now):
            tokens |= unlock.app_tokens
        return tokens

    def prune_history(self, now: Optional[datetime] = None) -> int:
        """Drop ended unlocks older than the retention window."""
        now = now or utc_now()
        cutoff = now - timedelta(days=config.UNLOCK_HISTORY_KEEP_DAYS)
        history = self._state.blocklist.unlock_history
        kept = [u for u in history if u.start_time >= cutoff]
        dropped = len(history) - len(kept)
        if dropped:
            self._state.blocklist.unlock_history = kept
            self._state.emit(Persist("unlock:prune"))
            logger.debug(f"Pruned {dropped} old unlock session(s)")
        return dropped

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _find_active(self, unlock_id: str) -> Optional[UnlockSession]:
        for unlock in self._state.blocklist.active_unlock_sessions:
            if unlock.id == unlock_id:
                return unlock
        return None

    def _close(self, unlock: UnlockSession, ended_at: datetime, reason: str) -> None:
        """Mark inactive and move from the active list into history."""
        unlock.is_active = False
        unlock.ended_at = ended_at
        unlock.end_reason = reason
        blocklist = self._state.blocklist
        blocklist.active_unlock_sessions = [
            u for u in blocklist.active_unlock_sessions if u.id != unlock.id
        ]
        blocklist.unlock_history.insert(0, unlock)
