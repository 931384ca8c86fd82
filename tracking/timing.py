"""
Session timing reconstruction.

Elapsed and remaining time are always derived from the session's absolute
start timestamp and its pause history, evaluated against "now". Nothing
here depends on a running counter, so the same answer comes back after
the process was suspended or killed for any length of time.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

import config
from core.errors import IntegrityViolation
from core.state import FocusSession, PauseInterval
from tracking.clock import seconds_between

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionTiming:
    """
    Snapshot of a session's timing at one instant.

    remaining_seconds is None for open-ended sessions (target_duration 0);
    it can be negative once a countdown has overrun.
    """

    total_pause_seconds: float
    elapsed_seconds: float
    remaining_seconds: Optional[float]

    @property
    def is_countdown(self) -> bool:
        return self.remaining_seconds is not None

    @property
    def is_finished(self) -> bool:
        return self.remaining_seconds is not None and self.remaining_seconds <= 0

    @property
    def display_remaining_seconds(self) -> Optional[float]:
        """Remaining time clamped at zero for countdown display."""
        if self.remaining_seconds is None:
            return None
        return max(0.0, self.remaining_seconds)


def total_pause_seconds(
    pause_history: Iterable[PauseInterval],
    status: str,
    now: datetime,
) -> float:
    """
    Sum of all pause time up to ``now``.

    Closed intervals contribute end - start. An open interval contributes
    now - start, but only while the session is paused.

    Raises:
        IntegrityViolation: If an interval ends before it starts, or an
            open interval exists while the session is not paused.
    """
    total = 0.0
    for index, interval in enumerate(pause_history):
        if interval.end_time is None:
            if status != config.STATUS_PAUSED:
                raise IntegrityViolation(
                    f"Open pause interval {index} on a {status} session",
                    {"index": index, "status": status},
                )
            total += max(0.0, seconds_between(interval.start_time, now))
            continue

        span = seconds_between(interval.start_time, interval.end_time)
        if span < 0:
            raise IntegrityViolation(
                f"Pause interval {index} ends {abs(span):.0f}s before it starts",
                {
                    "index": index,
                    "start": interval.start_time.isoformat(),
                    "end": interval.end_time.isoformat(),
                },
            )
        total += span
    return total


def compute_timing(
    start_time: datetime,
    target_duration: int,
    status: str,
    pause_history: Iterable[PauseInterval],
    now: datetime,
) -> SessionTiming:
    """
    Reconstruct elapsed and remaining time from timestamps.

    Args:
        start_time: When the session started.
        target_duration: Planned length in minutes (0 = open-ended).
        status: Current session status.
        pause_history: Ordered pause intervals.
        now: Instant to evaluate at.

    Returns:
        SessionTiming. Negative elapsed time (clock skew) clamps to 0.
    """
    pauses = total_pause_seconds(pause_history, status, now)
    elapsed = max(0.0, seconds_between(start_time, now) - pauses)
    remaining = None
    if target_duration > 0:
        remaining = target_duration * 60 - elapsed
    return SessionTiming(
        total_pause_seconds=pauses,
        elapsed_seconds=elapsed,
        remaining_seconds=remaining,
    )


def timing_for(session: FocusSession, now: datetime) -> SessionTiming:
    """Timing of a session; finished sessions are evaluated at their end time."""
    reference = session.end_time if session.end_time is not None else now
    return compute_timing(
        session.start_time,
        session.target_duration,
        session.status,
        session.pause_history,
        reference,
    )


def should_auto_complete(session: FocusSession, now: datetime) -> bool:
    """
    True if an active countdown session has run out at ``now``.

    Paused sessions never auto-complete (and never auto-resume), and
    open-ended sessions have nothing to run out.
    """
    if session.status != config.STATUS_ACTIVE or not session.is_countdown:
        return False
    return timing_for(session, now).is_finished


def scheduled_end_time(session: FocusSession) -> datetime:
    """
    The instant a countdown session reaches its target.

    Start time plus target plus all closed pauses. Only meaningful for
    countdown sessions without an open pause.
    """
    pauses = sum(
        seconds_between(p.start_time, p.end_time)
        for p in session.pause_history
        if p.end_time is not None
    )
    return session.start_time + timedelta(seconds=session.target_duration * 60 + pauses)
