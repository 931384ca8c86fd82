"""
Blocklist settings for reward-gated unlocks.

Every field is bounded; the only way to change a value is a step up or
down that clamps to its range.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

import config

logger = logging.getLogger(__name__)


def _clamp(value: int, bounds: Tuple[int, int, int]) -> int:
    low, high, _ = bounds
    return max(low, min(high, value))


def _as_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass
class BlocklistSettings:
    """
    Limits of the unlock economy.

    Attributes:
        unlock_cost_per_minute: Fruits charged per unlocked minute (1-10).
        max_unlock_duration: Longest single unlock in minutes (15-180).
        allowed_unlocks_per_day: Unlock purchases allowed per local day (1-20).
        is_enabled: Whether blocking is switched on at all.
    """

    unlock_cost_per_minute: int = config.DEFAULT_UNLOCK_COST_PER_MINUTE
    max_unlock_duration: int = config.DEFAULT_MAX_UNLOCK_DURATION
    allowed_unlocks_per_day: int = config.DEFAULT_ALLOWED_UNLOCKS_PER_DAY
    is_enabled: bool = True

    def __post_init__(self):
        """Clamp values that arrive out of range (env overrides, old files)."""
        self.unlock_cost_per_minute = _clamp(
            self.unlock_cost_per_minute, config.UNLOCK_COST_PER_MINUTE_BOUNDS
        )
        self.max_unlock_duration = _clamp(
            self.max_unlock_duration, config.MAX_UNLOCK_DURATION_BOUNDS
        )
        self.allowed_unlocks_per_day = _clamp(
            self.allowed_unlocks_per_day, config.ALLOWED_UNLOCKS_PER_DAY_BOUNDS
        )

    def _step(self, field_name: str, bounds: Tuple[int, int, int], increase: bool) -> int:
        current = getattr(self, field_name)
        step = bounds[2] if increase else -bounds[2]
        new_value = _clamp(current + step, bounds)
        if new_value != current:
            setattr(self, field_name, new_value)
            logger.info(f"Blocklist setting {field_name}: {current} -> {new_value}")
        return new_value

    def increment_cost(self) -> int:
        return self._step("unlock_cost_per_minute", config.UNLOCK_COST_PER_MINUTE_BOUNDS, True)

    def decrement_cost(self) -> int:
        return self._step("unlock_cost_per_minute", config.UNLOCK_COST_PER_MINUTE_BOUNDS, False)

    def increment_max_duration(self) -> int:
        return self._step("max_unlock_duration", config.MAX_UNLOCK_DURATION_BOUNDS, True)

    def decrement_max_duration(self) -> int:
        return self._step("max_unlock_duration", config.MAX_UNLOCK_DURATION_BOUNDS, False)

    def increment_daily_unlocks(self) -> int:
        return self._step("allowed_unlocks_per_day", config.ALLOWED_UNLOCKS_PER_DAY_BOUNDS, True)

    def decrement_daily_unlocks(self) -> int:
        return self._step("allowed_unlocks_per_day", config.ALLOWED_UNLOCKS_PER_DAY_BOUNDS, False)

    def unlock_cost(self, duration_minutes: int) -> int:
        """Price of an unlock at the current rate."""
        return duration_minutes * self.unlock_cost_per_minute

    def unlock_options(self) -> List[Dict[str, int]]:
        """Standard unlock durations that fit under the maximum, with prices."""
        return [
            {"duration": minutes, "cost": self.unlock_cost(minutes)}
            for minutes in config.UNLOCK_DURATION_OPTIONS
            if minutes <= self.max_unlock_duration
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unlockCostPerMinute": self.unlock_cost_per_minute,
            "maxUnlockDuration": self.max_unlock_duration,
            "allowedUnlocksPerDay": self.allowed_unlocks_per_day,
            "isEnabled": self.is_enabled,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BlocklistSettings':
        """
        Create settings from a persisted dictionary.

        Missing or non-numeric values fall back to defaults; out-of-range
        values are clamped.
        """
        defaults = cls()
        return cls(
            unlock_cost_per_minute=_as_int(
                data.get("unlockCostPerMinute"), defaults.unlock_cost_per_minute
            ),
            max_unlock_duration=_as_int(
                data.get("maxUnlockDuration"), defaults.max_unlock_duration
            ),
            allowed_unlocks_per_day=_as_int(
                data.get("allowedUnlocksPerDay"), defaults.allowed_unlocks_per_day
            ),
            is_enabled=bool(data.get("isEnabled", defaults.is_enabled)),
        )
