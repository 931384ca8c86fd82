"""
FocusEngine: host-facing facade for the focus and unlock engine.

Owns the EngineState and wires the components together:

    FocusSessionMachine  -- session_completed -->  RewardLedger
    UnlockSessionManager -- Wallet.debit -------->  RewardLedger

Components only mutate state and record effects; the engine executes
those effects after each public operation (Blocking Bridge calls, shield
refresh, one coalesced persist).

This module has no UI dependencies. A UI (or the CLI in main.py) calls
engine methods, polls get_status() on its own schedule, and receives
updates via callbacks.

Callbacks:
    on_status_change(status: str, text: str)
    on_session_completed(session: dict)
    on_unlock_requested(hint: dict)
    on_error(error_type: str, message: str)
"""

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

import config
from blocking.bridge import (
    BlockingBridge,
    SharedStorage,
    parse_unlock_deep_link,
    pop_pending_deep_link,
    publish_shield,
)
from blocking.unlock import UnlockSessionManager
from core.errors import EngineError, IntegrityViolation, PersistenceFailure
from core.events import ApplyBlock, EventBus, Persist, RemoveBlock, ShieldUpdate
from core.state import EngineState, FocusSession, UnlockSession
from storage.store import StateStore
from tracking.clock import format_countdown, utc_now
from tracking.ledger import RewardLedger
from tracking.session import FocusSessionMachine
from tracking.stats import compute_focus_stats
from tracking.timing import timing_for

logger = logging.getLogger(__name__)

# adjust_setting() names -> (increment, decrement) method names on BlocklistSettings
_SETTING_STEPS = {
    "cost": ("increment_cost", "decrement_cost"),
    "max_duration": ("increment_max_duration", "decrement_max_duration"),
    "daily_unlocks": ("increment_daily_unlocks", "decrement_daily_unlocks"),
}


class FocusEngine:
    """
    Core focus and unlock engine.

    Handles:
    - Focus session lifecycle (start, pause, resume, complete, cancel)
    - Timing reconstruction and auto-completion after suspension
    - Reward crediting and spending
    - Unlock purchases, early end and lazy expiry
    - Persistence, migration on load, and degraded non-durable mode

    Every public operation returns a result dictionary
    {"success": bool, "error": str | None, "error_type": str | None, ...}
    instead of raising.
    """

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    def __init__(
        self,
        store: Optional[StateStore] = None,
        bridge: Optional[BlockingBridge] = None,
        shared_storage: Optional[SharedStorage] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Args:
            store: Durable state store (defaults to config.STATE_FILE).
            bridge: OS blocking capability; None disables blocking calls.
            shared_storage: Namespace shared with the blocking extension
                (shield configuration, pending deep links).
            clock: Source of "now" for every operation.
        """
        self.store: StateStore = store or StateStore()
        self.bridge: Optional[BlockingBridge] = bridge
        self.shared_storage: Optional[SharedStorage] = shared_storage
        self._clock = clock
        self._lock = threading.RLock()

        self.state: EngineState = EngineState()
        self.is_loaded: bool = False
        self.is_durable: bool = True
        self.current_status: str = "idle"
        self._completed_notices: List[Dict[str, Any]] = []
        self._wire()

        # ---- Callbacks (set by the host UI) ----
        self.on_status_change: Optional[Callable[[str, str], None]] = None
        self.on_session_completed: Optional[Callable[[Dict[str, Any]], None]] = None
        self.on_unlock_requested: Optional[Callable[[Dict[str, Any]], None]] = None
        self.on_error: Optional[Callable[[str, str], None]] = None

    def _wire(self) -> None:
        """(Re)build the components around the current state object."""
        self.events = EventBus()
        self.ledger = RewardLedger(self.state, self.events)
        self.sessions = FocusSessionMachine(self.state, self.events)
        self.unlocks = UnlockSessionManager(self.state, self.ledger)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self) -> Dict[str, Any]:
        """
        Load persisted state (migrating and validating it) and reconcile.

        Corrupt state never fails the load: the engine falls back to a
        default state and reports a migration_failure via on_error.

        Returns:
            {"success": True, "migrated_from", "fell_back", "backup_path",
             "warnings", "errors", "suggestions", "auto_completed",
             "expired_unlocks"}
        """
        with self._lock:
            now = self._clock()
            result = self.store.load(now)
            self.state = result.state
            self._wire()
            self.is_loaded = True

            if result.fell_back:
                self._notify_error(
                    "migration_failure",
                    "Saved data was unreadable and has been reset. "
                    f"A copy was kept at {result.backup_path}." if result.backup_path
                    else "Saved data was unreadable and has been reset.",
                )
            if result.is_new or result.fell_back or result.migrated_from is not None \
                    or result.warnings:
                self.state.emit(Persist("load"))

            reconciled = {"auto_completed": None, "expired_unlocks": []}
            try:
                reconciled = self._reconcile(now)
                self.ledger.archive_if_needed(now)
                self.unlocks.prune_history(now)
            except EngineError as e:
                logger.error(f"Post-load housekeeping failed: {e.message} {e.context}")
                self._notify_error(e.error_type, e.message)
            self.state.emit(ShieldUpdate(self.ledger.balance))
            self._execute_effects()

            logger.info(
                f"Engine loaded (balance {self.ledger.balance}, "
                f"{len(self.state.focus.sessions)} sessions in history)"
            )
            load_result = {
                "success": True,
                "error": None,
                "error_type": None,
                "migrated_from": result.migrated_from,
                "fell_back": result.fell_back,
                "backup_path": str(result.backup_path) if result.backup_path else None,
                "warnings": result.warnings,
                "errors": result.errors,
                "suggestions": result.suggestions,
                **reconciled,
            }
        self._after_operation()
        return load_result

    def _ensure_loaded(self) -> None:
        if not self.is_loaded:
            self.load()

    # ------------------------------------------------------------------
    # Focus sessions
    # ------------------------------------------------------------------

    def start_session(
        self,
        target_minutes: int,
        tag_id: str = "default",
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Start a focus session (0 minutes = open-ended).

        Returns:
            {"success", "error", "error_type", "session"}
            error_type values: "invalid_transition", "invalid_request"
        """
        def operation(now: datetime) -> Dict[str, Any]:
            self._reconcile(now)
            session = self.sessions.start(target_minutes, tag_id, description, now)
            return {"session": self._session_payload(session, now)}

        return self._run("start", operation)

    def pause_session(self) -> Dict[str, Any]:
        def operation(now: datetime) -> Dict[str, Any]:
            self._reconcile(now)
            session = self.sessions.pause(now)
            return {"session": self._session_payload(session, now)}

        return self._run("pause", operation)

    def resume_session(self) -> Dict[str, Any]:
        def operation(now: datetime) -> Dict[str, Any]:
            session = self.sessions.resume(now)
            return {"session": self._session_payload(session, now)}

        return self._run("resume", operation)

    def complete_session(self) -> Dict[str, Any]:
        """
        Complete the current session and credit its fruits.

        If the countdown already ran out, the session is auto-completed on
        time instead and that result is returned.

        Returns:
            {"success", "error", "error_type", "session", "fruits_earned",
             "balance", "auto_completed"}
        """
        def operation(now: datetime) -> Dict[str, Any]:
            session = self._reconcile(now)["auto_completed"]
            auto = session is not None
            if session is None:
                session = self.sessions.complete(now).to_dict()
                self._completed_notices.append(session)
            return {
                "session": session,
                "fruits_earned": session["fruitsEarned"],
                "balance": self.ledger.balance,
                "auto_completed": auto,
            }

        return self._run("complete", operation)

    def cancel_session(self) -> Dict[str, Any]:
        """Cancel the current session; nothing is credited."""
        def operation(now: datetime) -> Dict[str, Any]:
            self._reconcile(now)
            session = self.sessions.cancel(now)
            return {"session": session.to_dict()}

        return self._run("cancel", operation)

    # ------------------------------------------------------------------
    # Rewards
    # ------------------------------------------------------------------

    def credit(
        self,
        amount: int,
        source: str = config.SOURCE_MANUAL,
        description: str = "",
    ) -> Dict[str, Any]:
        """Credit fruits from a non-session source (tasks, streaks, manual)."""
        def operation(now: datetime) -> Dict[str, Any]:
            transaction = self.ledger.credit(amount, source, description, now=now)
            return {"transaction": transaction.to_dict(), "balance": self.ledger.balance}

        return self._run("credit", operation)

    def get_recent_transactions(self, limit: int = 20) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_loaded()
            return [t.to_dict() for t in self.ledger.recent_transactions(limit)]

    # ------------------------------------------------------------------
    # Unlocks
    # ------------------------------------------------------------------

    def request_unlock(self, app_tokens: Iterable[str], duration_minutes: int) -> Dict[str, Any]:
        """
        Spend fruits to unblock app_tokens for duration_minutes.

        Returns:
            {"success", "error", "error_type", "unlock", "remaining_seconds",
             "balance", "remaining_unlocks_today"}
            error_type values: "invalid_duration", "daily_limit_reached",
                "insufficient_balance", "invalid_transition", "invalid_request"
        """
        def operation(now: datetime) -> Dict[str, Any]:
            unlock = self.unlocks.request_unlock(app_tokens, duration_minutes, now)
            return {
                "unlock": unlock.to_dict(),
                "remaining_seconds": unlock.remaining_seconds(now),
                "balance": self.ledger.balance,
                "remaining_unlocks_today": self.unlocks.get_remaining_unlocks_today(now),
            }

        return self._run("unlock", operation)

    def end_unlock_early(self, unlock_id: str) -> Dict[str, Any]:
        """End an unlock now and reinstate blocking. No refund."""
        def operation(now: datetime) -> Dict[str, Any]:
            unlock = self.unlocks.end_unlock_early(unlock_id, now)
            return {"unlock": unlock.to_dict()}

        return self._run("end_unlock", operation)

    def get_unlock_options(self) -> List[Dict[str, Any]]:
        """Standard unlock durations with cost and whether the balance covers them."""
        with self._lock:
            self._ensure_loaded()
            balance = self.ledger.balance
            return [
                {**option, "affordable": option["cost"] <= balance}
                for option in self.state.blocklist.settings.unlock_options()
            ]

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def adjust_setting(self, name: str, increase: bool) -> Dict[str, Any]:
        """
        Step a blocklist setting up or down, clamped to its range.

        Args:
            name: "cost", "max_duration" or "daily_unlocks".
            increase: True to step up, False to step down.
        """
        def operation(now: datetime) -> Dict[str, Any]:
            if name not in _SETTING_STEPS:
                raise ValueError(f"Unknown setting {name!r}")
            settings = self.state.blocklist.settings
            method = _SETTING_STEPS[name][0 if increase else 1]
            value = getattr(settings, method)()
            self.state.emit(Persist("settings"))
            self.state.emit(ShieldUpdate(self.ledger.balance))
            return {"name": name, "value": value, "settings": settings.to_dict()}

        return self._run("settings", operation)

    def set_blocking_enabled(self, enabled: bool) -> Dict[str, Any]:
        def operation(now: datetime) -> Dict[str, Any]:
            settings = self.state.blocklist.settings
            if settings.is_enabled != enabled:
                settings.is_enabled = enabled
                logger.info(f"Blocking {'enabled' if enabled else 'disabled'}")
                self.state.emit(Persist("settings"))
            return {"settings": settings.to_dict()}

        return self._run("settings", operation)

    # ------------------------------------------------------------------
    # Reconciliation, foreground and deep links
    # ------------------------------------------------------------------

    def reconcile(self) -> Dict[str, Any]:
        """Re-derive timing and unlock expiry from timestamps (idempotent)."""
        return self._run("reconcile", self._reconcile)

    def handle_foreground(self) -> Dict[str, Any]:
        """
        Called when the host app comes to the foreground.

        Reconciles, then consumes the deep link the blocking UI left in
        shared storage and hands it to on_unlock_requested.
        """
        def operation(now: datetime) -> Dict[str, Any]:
            payload = self._reconcile(now)
            payload["deep_link"] = None
            if self.shared_storage is not None:
                url = pop_pending_deep_link(self.shared_storage)
                if url:
                    hint = parse_unlock_deep_link(url)
                    if hint is None:
                        logger.warning(f"Ignoring unrecognised deep link: {url}")
                    else:
                        payload["deep_link"] = self._hint_payload(hint)
            return payload

        result = self._run("foreground", operation)
        if result["success"] and result.get("deep_link"):
            self._notify_unlock_requested(result["deep_link"])
        return result

    def handle_deep_link(self, url: str) -> Dict[str, Any]:
        """
        Handle an unlock deep link opened directly.

        The link's balance is only a display hint; the returned "balance"
        comes from the ledger.
        """
        def operation(now: datetime) -> Dict[str, Any]:
            hint = parse_unlock_deep_link(url)
            if hint is None:
                raise ValueError(f"Not an unlock link: {url}")
            self.unlocks.expire_sessions(now)
            return {"deep_link": self._hint_payload(hint)}

        result = self._run("deep_link", operation)
        if result["success"]:
            self._notify_unlock_requested(result["deep_link"])
        return result

    # ------------------------------------------------------------------
    # Status and statistics
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        """
        Get current engine status (polled by the UI, about once a second).

        Polling also performs lazy expiry and auto-completion.

        Returns:
            dict with keys: status, is_running, is_paused, session,
            elapsed_seconds, remaining_seconds, countdown, balance,
            active_unlocks, remaining_unlocks_today, daily_unlock_count,
            settings, is_durable.
        """
        with self._lock:
            self._ensure_loaded()
            now = self._clock()
            try:
                self._reconcile(now)
            except EngineError as e:
                logger.error(f"Reconcile during status poll failed: {e.message}")
                self._notify_error(e.error_type, e.message)
            self._execute_effects()

            session = self.sessions.current
            elapsed = 0.0
            remaining = None
            if session is not None:
                timing = timing_for(session, now)
                elapsed = timing.elapsed_seconds
                remaining = timing.display_remaining_seconds

            status = {
                "status": self._status_name(),
                "is_running": session is not None,
                "is_paused": session is not None and session.status == config.STATUS_PAUSED,
                "session": session.to_dict() if session else None,
                "elapsed_seconds": elapsed,
                "remaining_seconds": remaining,
                "countdown": format_countdown(remaining if remaining is not None else elapsed),
                "balance": self.ledger.balance,
                "active_unlocks": [
                    self._unlock_payload(u, now) for u in self.state.blocklist.active_unlock_sessions
                ],
                "remaining_unlocks_today": self.unlocks.get_remaining_unlocks_today(now),
                "daily_unlock_count": self.unlocks.get_daily_unlock_count(now),
                "settings": self.state.blocklist.settings.to_dict(),
                "is_durable": self.is_durable,
            }
        self._after_operation()
        return status

    def get_stats(self) -> Dict[str, Any]:
        """Focus statistics plus today's earnings and the balance."""
        with self._lock:
            self._ensure_loaded()
            now = self._clock()
            stats = compute_focus_stats(self.state.focus.sessions, now)
            stats["earned_today"] = self.ledger.earned_today(now)
            stats.update(self.ledger.summary())
            return stats

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _run(self, action: str, operation: Callable[[datetime], Dict[str, Any]]) -> Dict[str, Any]:
        """
        Run one public operation under the lock and turn failures into results.

        Effects recorded before a failure (e.g. an expiry noticed while
        rejecting an unlock) are still executed.
        """
        with self._lock:
            self._ensure_loaded()
            now = self._clock()
            try:
                payload = operation(now)
                result = {"success": True, "error": None, "error_type": None}
                result.update(payload)
            except EngineError as e:
                if isinstance(e, IntegrityViolation):
                    logger.error(f"{action} rejected: {e.message} {e.context}")
                    self._notify_error(e.error_type, e.message)
                else:
                    logger.info(f"{action} rejected: {e.message}")
                result = {"success": False, "error": e.message, "error_type": e.error_type}
            except (TypeError, ValueError) as e:
                logger.warning(f"{action} rejected: {e}")
                result = {"success": False, "error": str(e), "error_type": "invalid_request"}
            self._execute_effects()
        self._after_operation()
        return result

    def _reconcile(self, now: datetime) -> Dict[str, Any]:
        """Auto-complete a finished countdown and expire unlocks."""
        auto = self.sessions.reconcile(now)
        if auto is not None:
            self._completed_notices.append(auto.to_dict())
        expired = self.unlocks.expire_sessions(now)
        return {
            "auto_completed": auto.to_dict() if auto else None,
            "expired_unlocks": [u.id for u in expired],
        }

    def _execute_effects(self) -> None:
        """Run recorded effects in order; persist and shield refresh run once at the end."""
        effects = self.state.drain_effects()
        if not effects:
            return
        persist_reasons = []
        shield_balance = None
        for effect in effects:
            if isinstance(effect, Persist):
                persist_reasons.append(effect.reason)
            elif isinstance(effect, ApplyBlock):
                self._call_bridge("apply_block", effect.app_tokens)
            elif isinstance(effect, RemoveBlock):
                self._call_bridge("remove_block", effect.app_tokens)
            elif isinstance(effect, ShieldUpdate):
                shield_balance = effect.balance
        if shield_balance is not None:
            self._publish_shield(shield_balance)
        if persist_reasons:
            self._persist(persist_reasons)

    def _persist(self, reasons: List[str]) -> None:
        try:
            self.store.save(self.state)
        except PersistenceFailure as e:
            if self.is_durable:
                logger.error(f"Running in non-durable mode: {e.message}")
            self.is_durable = False
            self._notify_error(e.error_type, e.message)
            return
        if not self.is_durable:
            logger.info("Persistence restored")
        self.is_durable = True
        logger.debug(f"Persisted state ({', '.join(reasons)})")

    def _call_bridge(self, method: str, app_tokens: FrozenSet[str]) -> None:
        if self.bridge is None:
            logger.debug(f"No blocking bridge; skipped {method} for {sorted(app_tokens)}")
            return
        try:
            getattr(self.bridge, method)(app_tokens)
        except Exception as e:
            logger.error(f"Blocking bridge {method} failed for {sorted(app_tokens)}: {e}")
            self._notify_error("blocking_bridge_failure", f"Could not update app blocking: {e}")

    def _publish_shield(self, balance: int) -> None:
        if self.shared_storage is None:
            return
        try:
            publish_shield(
                self.shared_storage, balance, self.state.blocklist.settings.unlock_options()
            )
        except PersistenceFailure as e:
            self._notify_error(e.error_type, e.message)

    def _session_payload(self, session: FocusSession, now: datetime) -> Dict[str, Any]:
        payload = session.to_dict()
        timing = timing_for(session, now)
        payload["elapsedSeconds"] = timing.elapsed_seconds
        payload["remainingSeconds"] = timing.display_remaining_seconds
        return payload

    @staticmethod
    def _unlock_payload(unlock: UnlockSession, now: datetime) -> Dict[str, Any]:
        payload = unlock.to_dict()
        payload["remainingSeconds"] = unlock.remaining_seconds(now)
        return payload

    def _hint_payload(self, hint) -> Dict[str, Any]:
        return {
            "current_balance": hint.current_balance,
            "duration_minutes": hint.duration_minutes,
            "cost": hint.cost,
            "balance": self.ledger.balance,
            "options": self.get_unlock_options(),
        }

    def _status_name(self) -> str:
        session = self.sessions.current
        if session is None:
            return "idle"
        if session.status == config.STATUS_PAUSED:
            return "paused"
        return "focused"

    def _after_operation(self) -> None:
        """Fire completion callbacks collected during the operation, then refresh the status."""
        notices, self._completed_notices = self._completed_notices, []
        for session in notices:
            self._notify_session_completed(session)
        status = self._status_name()
        if status != self.current_status:
            text = {"idle": "Idle", "paused": "Paused", "focused": "Focussed"}[status]
            self._notify_status_change(status, text)

    # ------------------------------------------------------------------
    # Callback helpers
    # ------------------------------------------------------------------

    def _notify_status_change(self, status: str, text: str) -> None:
        """Status change notification."""
        self.current_status = status
        if self.on_status_change:
            try:
                self.on_status_change(status, text)
            except Exception as e:
                logger.debug(f"on_status_change callback error: {e}")

    def _notify_session_completed(self, session: Dict[str, Any]) -> None:
        if self.on_session_completed:
            try:
                self.on_session_completed(session)
            except Exception as e:
                logger.debug(f"on_session_completed callback error: {e}")

    def _notify_unlock_requested(self, hint: Dict[str, Any]) -> None:
        if self.on_unlock_requested:
            try:
                self.on_unlock_requested(hint)
            except Exception as e:
                logger.debug(f"on_unlock_requested callback error: {e}")

    def _notify_error(self, error_type: str, message: str) -> None:
        """Notify of an error via callback."""
        if self.on_error:
            try:
                self.on_error(error_type, message)
            except Exception as e:
                logger.debug(f"on_error callback error: {e}")
