"""
Tests for bounded blocklist settings.
"""

import sys
import unittest
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import config
from blocking.settings import BlocklistSettings


class TestBounds(unittest.TestCase):

    def test_steps_clamp_at_upper_bound(self):
        settings = BlocklistSettings(unlock_cost_per_minute=9)
        self.assertEqual(settings.increment_cost(), 10)
        self.assertEqual(settings.increment_cost(), 10)

    def test_steps_clamp_at_lower_bound(self):
        settings = BlocklistSettings(allowed_unlocks_per_day=1)
        self.assertEqual(settings.decrement_daily_unlocks(), 1)

    def test_duration_moves_in_quarter_hours(self):
        settings = BlocklistSettings(max_unlock_duration=30)
        self.assertEqual(settings.increment_max_duration(), 45)
        self.assertEqual(settings.decrement_max_duration(), 30)
        self.assertEqual(settings.decrement_max_duration(), 15)
        self.assertEqual(settings.decrement_max_duration(), 15)

    def test_out_of_range_construction_clamped(self):
        settings = BlocklistSettings(
            unlock_cost_per_minute=0, max_unlock_duration=500, allowed_unlocks_per_day=99
        )
        self.assertEqual(settings.unlock_cost_per_minute, 1)
        self.assertEqual(settings.max_unlock_duration, 180)
        self.assertEqual(settings.allowed_unlocks_per_day, 20)


class TestUnlockPricing(unittest.TestCase):

    def test_cost_is_minutes_times_rate(self):
        settings = BlocklistSettings(unlock_cost_per_minute=3)
        self.assertEqual(settings.unlock_cost(15), 45)

    def test_options_respect_maximum(self):
        settings = BlocklistSettings(unlock_cost_per_minute=2, max_unlock_duration=15)
        self.assertEqual(settings.unlock_options(), [
            {"duration": 1, "cost": 2},
            {"duration": 5, "cost": 10},
            {"duration": 15, "cost": 30},
        ])


class TestSerialization(unittest.TestCase):

    def test_from_dict_falls_back_to_defaults(self):
        settings = BlocklistSettings.from_dict({
            "unlockCostPerMinute": "lots",
            "maxUnlockDuration": 60,
            "isEnabled": False,
        })
        self.assertEqual(settings.unlock_cost_per_minute, BlocklistSettings().unlock_cost_per_minute)
        self.assertEqual(settings.max_unlock_duration, 60)
        self.assertFalse(settings.is_enabled)

    def test_to_dict_keys(self):
        self.assertEqual(
            set(BlocklistSettings().to_dict()),
            {"unlockCostPerMinute", "maxUnlockDuration", "allowedUnlocksPerDay", "isEnabled"},
        )

    def test_bounds_are_consistent(self):
        for low, high, step in (
            config.UNLOCK_COST_PER_MINUTE_BOUNDS,
            config.MAX_UNLOCK_DURATION_BOUNDS,
            config.ALLOWED_UNLOCKS_PER_DAY_BOUNDS,
        ):
            self.assertLess(low, high)
            self.assertEqual((high - low) % step, 0)


if __name__ == "__main__":
    unittest.main()
