"""
Tests for unlock purchases, quota, expiry and early end.
"""

import sys
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import config
from blocking.settings import BlocklistSettings
from blocking.unlock import UnlockSessionManager
from core.errors import (
    DailyLimitReached,
    InsufficientBalance,
    InvalidDuration,
    InvalidTransition,
)
from core.events import ApplyBlock, Persist, RemoveBlock
from core.state import EngineState
from tracking.ledger import RewardLedger

T0 = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def at(minutes: float = 0, seconds: float = 0) -> datetime:
    return T0 + timedelta(minutes=minutes, seconds=seconds)


class UnlockTestCase(unittest.TestCase):

    balance = 100

    def setUp(self):
        self.state = EngineState()
        self.ledger = RewardLedger(self.state)
        self.manager = UnlockSessionManager(self.state, self.ledger)
        if self.balance:
            self.ledger.credit(self.balance, config.SOURCE_MANUAL, now=T0 - timedelta(hours=1))
        self.state.drain_effects()

    def blocks_applied(self, effects):
        return [e for e in effects if isinstance(e, ApplyBlock)]


class TestRequestUnlock(UnlockTestCase):

    balance = 40

    def test_cost_is_debited(self):
        """Cost 2/min, 15 minutes, balance 40 -> balance 10."""
        self.state.blocklist.settings.increment_cost()

        unlock = self.manager.request_unlock(["com.example.social"], 15, now=T0)

        self.assertEqual(unlock.cost, 30)
        self.assertEqual(self.ledger.balance, 10)
        self.assertTrue(unlock.is_active)
        self.assertEqual(unlock.remaining_seconds(T0), 15 * 60)

        spend = self.ledger.rewards.transactions[-1]
        self.assertEqual(spend.source, config.SOURCE_APP_UNLOCK)
        self.assertEqual(spend.metadata["unlockSessionId"], unlock.id)

        effects = self.state.drain_effects()
        self.assertIn(RemoveBlock(frozenset({"com.example.social"})), effects)
        self.assertIn(Persist("unlock:start"), effects)

    def test_insufficient_balance_creates_nothing(self):
        """30 min at 2/min costs 60, balance is 40."""
        self.state.blocklist.settings.increment_cost()

        with self.assertRaises(InsufficientBalance):
            self.manager.request_unlock(["app.a"], 30, now=T0)

        self.assertEqual(self.ledger.balance, 40)
        self.assertEqual(self.manager.get_active_sessions(T0), [])
        self.assertEqual(self.manager.get_daily_unlock_count(T0), 0)

    def test_duration_bounds(self):
        maximum = self.state.blocklist.settings.max_unlock_duration
        for minutes in (0, -1, maximum + 1):
            with self.assertRaises(InvalidDuration):
                self.manager.request_unlock(["app.a"], minutes, now=T0)
        self.assertEqual(self.ledger.balance, 40)

    def test_empty_tokens_rejected(self):
        with self.assertRaises(ValueError):
            self.manager.request_unlock([], 5, now=T0)

    def test_disabled_blocking_rejected(self):
        self.state.blocklist.settings.is_enabled = False
        with self.assertRaises(InvalidTransition):
            self.manager.request_unlock(["app.a"], 5, now=T0)


class TestDailyQuota(UnlockTestCase):

    def setUp(self):
        super().setUp()
        self.state.blocklist.settings = BlocklistSettings(allowed_unlocks_per_day=3)

    def test_fourth_unlock_rejected(self):
        for index in range(3):
            self.manager.request_unlock([f"app.{index}"], 1, now=at(index))
        balance = self.ledger.balance

        with self.assertRaises(DailyLimitReached) as ctx:
            self.manager.request_unlock(["app.3"], 1, now=at(3))

        self.assertEqual(ctx.exception.allowed, 3)
        self.assertEqual(self.ledger.balance, balance)
        self.assertEqual(self.manager.get_remaining_unlocks_today(at(3)), 0)

    def test_ended_unlocks_still_count(self):
        unlock = self.manager.request_unlock(["app.a"], 5, now=T0)
        self.manager.end_unlock_early(unlock.id, now=at(1))
        self.manager.request_unlock(["app.b"], 1, now=at(2))

        self.assertEqual(self.manager.get_daily_unlock_count(at(10)), 2)
        self.assertEqual(self.manager.get_remaining_unlocks_today(at(10)), 1)

    def test_quota_resets_next_day(self):
        for index in range(3):
            self.manager.request_unlock([f"app.{index}"], 1, now=at(index))
        tomorrow = T0 + timedelta(days=1)
        self.assertEqual(self.manager.get_remaining_unlocks_today(tomorrow), 3)


class TestExpiry(UnlockTestCase):

    def test_lazy_expiry_applies_block_once(self):
        unlock = self.manager.request_unlock(["app.a"], 1, now=T0)
        self.state.drain_effects()

        self.assertEqual(self.manager.get_active_sessions(at(seconds=61)), [])
        first = self.blocks_applied(self.state.drain_effects())
        self.manager.get_active_sessions(at(seconds=90))
        second = self.blocks_applied(self.state.drain_effects())

        self.assertEqual(first, [ApplyBlock(frozenset({"app.a"}))])
        self.assertEqual(second, [])

        expired = self.manager.get_session(unlock.id, at(seconds=90))
        self.assertFalse(expired.is_active)
        self.assertEqual(expired.end_reason, config.UNLOCK_END_EXPIRED)
        self.assertEqual(expired.ended_at, at(1))
        self.assertEqual(expired.remaining_seconds(at(seconds=61)), 0)

    def test_active_until_expiry(self):
        self.manager.request_unlock(["app.a"], 5, now=T0)
        self.assertEqual(len(self.manager.get_active_sessions(at(4))), 1)
        self.assertEqual(self.manager.unlocked_tokens(at(4)), frozenset({"app.a"}))
        self.assertEqual(self.manager.unlocked_tokens(at(5)), frozenset())

    def test_prune_history(self):
        self.manager.request_unlock(["app.a"], 1, now=T0 - timedelta(days=10))
        self.manager.request_unlock(["app.b"], 1, now=T0)
        self.manager.expire_sessions(at(5))

        dropped = self.manager.prune_history(at(5))

        self.assertEqual(dropped, 1)
        self.assertEqual(len(self.state.blocklist.unlock_history), 1)


class TestEndEarly(UnlockTestCase):

    def test_end_early_reinstates_block_without_refund(self):
        unlock = self.manager.request_unlock(["app.a", "app.b"], 10, now=T0)
        balance = self.ledger.balance
        self.state.drain_effects()

        ended = self.manager.end_unlock_early(unlock.id, now=at(3))

        self.assertFalse(ended.is_active)
        self.assertEqual(ended.end_reason, config.UNLOCK_END_EARLY)
        self.assertEqual(ended.ended_at, at(3))
        self.assertEqual(self.ledger.balance, balance)
        self.assertEqual(
            self.blocks_applied(self.state.drain_effects()),
            [ApplyBlock(frozenset({"app.a", "app.b"}))],
        )

    def test_end_unknown_or_expired(self):
        with self.assertRaises(InvalidTransition):
            self.manager.end_unlock_early("unlock_missing", now=T0)

        unlock = self.manager.request_unlock(["app.a"], 1, now=T0)
        with self.assertRaises(InvalidTransition):
            self.manager.end_unlock_early(unlock.id, now=at(2))


class TestOverlap(UnlockTestCase):

    def test_overlapping_request_replaces_previous(self):
        first = self.manager.request_unlock(["app.a", "app.b"], 10, now=T0)
        self.state.drain_effects()

        second = self.manager.request_unlock(["app.b", "app.c"], 5, now=at(2))

        active = self.manager.get_active_sessions(at(2))
        self.assertEqual([u.id for u in active], [second.id])
        replaced = self.manager.get_session(first.id, at(2))
        self.assertEqual(replaced.end_reason, config.UNLOCK_END_REPLACED)

        effects = self.state.drain_effects()
        # Only the token the new unlock doesn't cover is blocked again
        self.assertEqual(self.blocks_applied(effects), [ApplyBlock(frozenset({"app.a"}))])
        self.assertIn(RemoveBlock(frozenset({"app.b", "app.c"})), effects)
        self.assertEqual(self.manager.get_daily_unlock_count(at(2)), 2)

    def test_disjoint_requests_coexist(self):
        self.manager.request_unlock(["app.a"], 10, now=T0)
        self.manager.request_unlock(["app.b"], 10, now=at(1))
        self.assertEqual(len(self.manager.get_active_sessions(at(2))), 2)


if __name__ == "__main__":
    unittest.main()
