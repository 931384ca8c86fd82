"""
Focus statistics computed from the session history.

PRECISION GUIDELINE:
    Session durations are whole minutes as stored on the session. Averages
    and rates stay floats; rounding happens only at display time.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set

import config
from core.state import FocusSession
from tracking.clock import local_date, utc_now

logger = logging.getLogger(__name__)


def _completed_days(sessions: Iterable[FocusSession]) -> Set[date]:
    """Local calendar days with at least one completed session."""
    days = set()
    for session in sessions:
        if session.status == config.STATUS_COMPLETED and session.end_time is not None:
            days.add(local_date(session.end_time))
    return days


def current_streak(sessions: Iterable[FocusSession], now: Optional[datetime] = None) -> int:
    """
    Consecutive local days with a completed session, ending today.

    If nothing has been completed yet today the streak may still end
    yesterday, so a streak isn't broken until the day is over.
    """
    days = _completed_days(sessions)
    if not days:
        return 0
    today = local_date(now or utc_now())
    day = today if today in days else today - timedelta(days=1)
    streak = 0
    while day in days:
        streak += 1
        day -= timedelta(days=1)
    return streak


def longest_streak(sessions: Iterable[FocusSession]) -> int:
    """Longest run of consecutive local days with a completed session."""
    days = sorted(_completed_days(sessions))
    best = 0
    run = 0
    previous = None
    for day in days:
        if previous is not None and day - previous == timedelta(days=1):
            run += 1
        else:
            run = 1
        best = max(best, run)
        previous = day
    return best


def compute_focus_stats(
    sessions: List[FocusSession],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Summarize the session history.

    Args:
        sessions: Session history (any order).
        now: Reference time for "today" and the current streak.

    Returns:
        Dictionary with total_sessions, total_minutes, average_minutes,
        completion_rate (0.0-1.0), fruits_earned, current_streak,
        longest_streak and today_minutes.
    """
    now = now or utc_now()
    completed = [s for s in sessions if s.status == config.STATUS_COMPLETED]
    cancelled = [s for s in sessions if s.status == config.STATUS_CANCELLED]

    total_minutes = sum(s.duration for s in completed)
    finished = len(completed) + len(cancelled)
    today = local_date(now)
    today_minutes = sum(
        s.duration
        for s in completed
        if s.end_time is not None and local_date(s.end_time) == today
    )

    stats = {
        "total_sessions": len(completed),
        "total_minutes": total_minutes,
        "average_minutes": (total_minutes / len(completed)) if completed else 0.0,
        "completion_rate": (len(completed) / finished) if finished else 0.0,
        "fruits_earned": sum(s.fruits_earned for s in completed),
        "current_streak": current_streak(completed, now),
        "longest_streak": longest_streak(completed),
        "today_minutes": today_minutes,
    }
    logger.debug(f"Focus stats: {stats}")
    return stats
