"""Focus session lifecycle: start, pause, resume, complete, cancel."""

import copy
import logging
from datetime import datetime
from typing import Optional

import config
from core.errors import IntegrityViolation, InvalidTransition
from core.events import SESSION_CANCELLED, SESSION_COMPLETED, EventBus, Persist
from core.state import EngineState, FocusSession, PauseInterval, new_id
from tracking.clock import format_duration, utc_now
from tracking.timing import scheduled_end_time, should_auto_complete, timing_for

logger = logging.getLogger(__name__)


def fruits_for_minutes(minutes: int) -> int:
    """Reward units for a number of focused minutes (1 per 5 minutes)."""
    if minutes <= 0:
        return 0
    return minutes // config.MINUTES_PER_FRUIT


class FocusSessionMachine:
    """
    Owns the single current focus session and the session history.

    States: scheduled -> active <-> paused -> completed | cancelled.
    Only one session may be current (active or paused) at a time. Every
    transition records a Persist effect immediately because the current
    session snapshot is what timing reconstruction relies on after a crash.

    Completion publishes SESSION_COMPLETED on the event bus; the reward
    ledger subscribes to it. If a subscriber fails, the completion is
    rolled back.
    """

    def __init__(self, state: EngineState, events: EventBus):
        """
        Args:
            state: Shared engine state (mutated in place).
            events: Bus used to announce completions and cancellations.
        """
        self._state = state
        self._events = events

    @property
    def current(self) -> Optional[FocusSession]:
        return self._state.focus.current_session

    @property
    def history(self):
        return self._state.focus.sessions

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def start(
        self,
        target_duration: int,
        tag_id: str,
        description: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> FocusSession:
        """
        Start a new session.

        Args:
            target_duration: Planned minutes; 0 starts an open-ended session.
            tag_id: Classification reference.
            description: Optional free text.
            now: Start timestamp (defaults to the current time).

        Raises:
            InvalidTransition: If a session is already active or paused.
            ValueError: If target_duration is not a whole, non-negative number
                of minutes or tag_id is empty.
        """
        if self.current is not None and self.current.status in (
            config.STATUS_ACTIVE, config.STATUS_PAUSED
        ):
            raise InvalidTransition(
                "A focus session is already in progress",
                {"session_id": self.current.id, "status": self.current.status},
            )
        if isinstance(target_duration, bool) or not isinstance(target_duration, int):
            raise ValueError(f"target_duration must be whole minutes, got {target_duration!r}")
        if target_duration < 0:
            raise ValueError("target_duration must be non-negative")
        if not tag_id or not isinstance(tag_id, str):
            raise ValueError("tag_id is required")

        now = now or utc_now()
        session = FocusSession(
            id=new_id("session"),
            start_time=now,
            target_duration=int(target_duration),
            tag_id=tag_id,
            description=description,
            status=config.STATUS_ACTIVE,
            created_at=now,
            updated_at=now,
        )
        self._state.focus.current_session = session
        self._state.emit(Persist("focus:start"))

        if session.is_countdown:
            logger.info(f"Focus session {session.id} started ({target_duration} min, tag={tag_id})")
        else:
            logger.info(f"Open-ended focus session {session.id} started (tag={tag_id})")
        return session

    def pause(self, now: Optional[datetime] = None) -> FocusSession:
        """
        Pause the active session by opening a pause interval.

        Raises:
            InvalidTransition: If there is no active session.
            IntegrityViolation: If the session is inconsistent; it is left as it was.
        """
        session = self._require_current(config.STATUS_ACTIVE, "pause")
        now = now or utc_now()
        snapshot = copy.deepcopy(session)

        session.pause_history.append(PauseInterval(start_time=now))
        session.status = config.STATUS_PAUSED
        session.updated_at = now
        self._check_or_restore(session, snapshot)
        self._state.emit(Persist("focus:pause"))
        logger.info(f"Focus session {session.id} paused")
        return session

    def resume(self, now: Optional[datetime] = None) -> FocusSession:
        """
        Resume a paused session by closing its open pause interval.

        Raises:
            InvalidTransition: If there is no paused session.
            IntegrityViolation: If the session is inconsistent; it is left as it was.
        """
        session = self._require_current(config.STATUS_PAUSED, "resume")
        now = now or utc_now()
        snapshot = copy.deepcopy(session)

        open_pause = session.open_pause
        if open_pause is not None:
            # A pause can't end before it began, even with clock skew
            open_pause.end_time = max(now, open_pause.start_time)
        session.status = config.STATUS_ACTIVE
        session.updated_at = now
        self._check_or_restore(session, snapshot)
        self._state.emit(Persist("focus:resume"))
        logger.info(f"Focus session {session.id} resumed")
        return session

    def complete(self, now: Optional[datetime] = None) -> FocusSession:
        """
        Complete the current session and credit its reward.

        duration is the actually focused time (pauses excluded), rounded to
        whole minutes; fruits_earned = floor(duration / 5).

        Raises:
            InvalidTransition: If no session is active or paused (including
                a second complete() on an already completed session).
        """
        session = self._require_current((config.STATUS_ACTIVE, config.STATUS_PAUSED), "complete")
        now = now or utc_now()
        self._close_open_pause(session, now)
        elapsed = timing_for(session, now).elapsed_seconds
        duration = int(round(elapsed / 60))
        return self._finish(session, config.STATUS_COMPLETED, duration, now, now)

    def auto_complete(self, now: Optional[datetime] = None) -> FocusSession:
        """
        Complete a countdown session that ran out while nobody was watching.

        The session is credited as if it finished exactly on time:
        duration = target_duration and end_time is the scheduled finish.

        Raises:
            InvalidTransition: If the current session is not an active,
                finished countdown.
        """
        session = self._require_current(config.STATUS_ACTIVE, "auto-complete")
        now = now or utc_now()
        if not should_auto_complete(session, now):
            raise InvalidTransition(
                "Session has not reached its target yet",
                {"session_id": session.id},
            )
        end_time = min(scheduled_end_time(session), now)
        logger.info(
            f"Focus session {session.id} reached its {session.target_duration} min target "
            f"while the app was not running; completing"
        )
        return self._finish(
            session, config.STATUS_COMPLETED, session.target_duration, end_time, now
        )

    def cancel(self, now: Optional[datetime] = None) -> FocusSession:
        """
        Cancel the current session. No reward is credited.

        Raises:
            InvalidTransition: If no session is active or paused.
        """
        session = self._require_current((config.STATUS_ACTIVE, config.STATUS_PAUSED), "cancel")
        now = now or utc_now()
        self._close_open_pause(session, now)
        elapsed = timing_for(session, now).elapsed_seconds
        duration = int(round(elapsed / 60))
        return self._finish(session, config.STATUS_CANCELLED, duration, now, now)

    def reconcile(self, now: Optional[datetime] = None) -> Optional[FocusSession]:
        """
        Re-derive the current session's timing and auto-complete if due.

        Called on foreground, cold start and every poll. Idempotent.

        Returns:
            The auto-completed session, or None if nothing changed.
        """
        session = self.current
        now = now or utc_now()
        if session is None or not should_auto_complete(session, now):
            return None
        return self.auto_complete(now)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_current(self, allowed, action: str) -> FocusSession:
        if isinstance(allowed, str):
            allowed = (allowed,)
        session = self.current
        if session is None:
            raise InvalidTransition(f"Cannot {action}: no focus session in progress")
        if session.status not in allowed:
            raise InvalidTransition(
                f"Cannot {action} a {session.status} session",
                {"session_id": session.id, "status": session.status},
            )
        return session

    @staticmethod
    def _close_open_pause(session: FocusSession, now: datetime) -> None:
        open_pause = session.open_pause
        if open_pause is not None:
            open_pause.end_time = max(now, open_pause.start_time)

    def _finish(
        self,
        session: FocusSession,
        status: str,
        duration: int,
        end_time: datetime,
        now: datetime,
    ) -> FocusSession:
        """
        Move the current session into history with a terminal status.

        Subscribers (the ledger) may already have mutated the state when a
        later one fails, so the focus and rewards sections and the pending
        effects are all restored on failure.
        """
        focus_snapshot = copy.deepcopy(self._state.focus)
        rewards_snapshot = copy.deepcopy(self._state.rewards)
        effect_count = len(self._state.effects)

        session.status = status
        session.end_time = end_time
        session.duration = max(0, duration)
        session.fruits_earned = (
            fruits_for_minutes(session.duration) if status == config.STATUS_COMPLETED else 0
        )
        session.updated_at = now

        try:
            self._check(session)
            self._state.focus.current_session = None
            self._state.focus.sessions.insert(0, session)
            if status == config.STATUS_COMPLETED:
                self._events.publish(SESSION_COMPLETED, session)
            else:
                self._events.publish(SESSION_CANCELLED, session)
        except Exception:
            self._state.focus = focus_snapshot
            self._state.rewards = rewards_snapshot
            del self._state.effects[effect_count:]
            logger.error(f"Rolled back {status} transition of session {session.id}")
            raise

        self._state.emit(Persist(f"focus:{status}"))
        logger.info(
            f"Focus session {session.id} {status} after "
            f"{format_duration(session.duration * 60)} ({session.fruits_earned} fruits)"
        )
        return session

    def _check_or_restore(self, session: FocusSession, snapshot: FocusSession) -> None:
        """Put the pre-transition copy back as the current session if the change broke it."""
        try:
            self._check(session)
        except IntegrityViolation:
            self._state.focus.current_session = snapshot
            raise

    @staticmethod
    def _check(session: FocusSession) -> None:
        problems = session.invariant_violations()
        if problems:
            logger.error(f"Session {session.id} invariant violated: {problems}")
            raise IntegrityViolation(
                f"Session {session.id} is inconsistent: {'; '.join(problems)}",
                {"session": session.to_dict(), "problems": problems},
            )
