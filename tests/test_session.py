"""
Tests for the focus session state machine and its reward hand-off.
"""

import sys
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import config
from core.errors import IntegrityViolation, InvalidTransition
from core.events import SESSION_COMPLETED, EventBus, Persist, ShieldUpdate
from core.state import EngineState, PauseInterval
from tracking.ledger import RewardLedger
from tracking.session import FocusSessionMachine, fruits_for_minutes

T0 = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def at(minutes: float) -> datetime:
    return T0 + timedelta(minutes=minutes)


class SessionTestCase(unittest.TestCase):

    def setUp(self):
        self.state = EngineState()
        self.events = EventBus()
        self.ledger = RewardLedger(self.state, self.events)
        self.machine = FocusSessionMachine(self.state, self.events)


class TestFruitsForMinutes(unittest.TestCase):

    def test_one_fruit_per_five_minutes(self):
        self.assertEqual(fruits_for_minutes(25), 5)
        self.assertEqual(fruits_for_minutes(24), 4)
        self.assertEqual(fruits_for_minutes(4), 0)
        self.assertEqual(fruits_for_minutes(0), 0)
        self.assertEqual(fruits_for_minutes(-10), 0)


class TestTransitions(SessionTestCase):

    def test_start_creates_active_session(self):
        session = self.machine.start(25, "study", "Chapter 3", now=T0)

        self.assertEqual(session.status, config.STATUS_ACTIVE)
        self.assertIs(self.machine.current, session)
        self.assertIsNone(session.end_time)
        self.assertEqual(self.state.drain_effects(), [Persist("focus:start")])

    def test_start_while_in_progress_is_rejected(self):
        self.machine.start(25, "study", now=T0)
        with self.assertRaises(InvalidTransition):
            self.machine.start(25, "study", now=at(1))

    def test_start_validates_arguments(self):
        with self.assertRaises(ValueError):
            self.machine.start(-1, "study", now=T0)
        with self.assertRaises(ValueError):
            self.machine.start(25, "", now=T0)
        for minutes in ("25", 2.5, None, True):
            with self.assertRaises(ValueError):
                self.machine.start(minutes, "study", now=T0)
        self.assertIsNone(self.machine.current)

    def test_pause_and_resume_record_interval(self):
        self.machine.start(25, "study", now=T0)
        self.machine.pause(now=at(5))
        self.assertEqual(self.machine.current.status, config.STATUS_PAUSED)
        self.assertIsNotNone(self.machine.current.open_pause)

        session = self.machine.resume(now=at(8))

        self.assertEqual(session.status, config.STATUS_ACTIVE)
        self.assertEqual(len(session.pause_history), 1)
        self.assertEqual(session.pause_history[0].start_time, at(5))
        self.assertEqual(session.pause_history[0].end_time, at(8))

    def test_resume_before_pause_start_is_clamped(self):
        """Clock skew can't produce a pause that ends before it starts."""
        self.machine.start(25, "study", now=T0)
        self.machine.pause(now=at(5))
        session = self.machine.resume(now=at(4))
        self.assertEqual(session.pause_history[0].end_time, at(5))

    def test_invalid_pause_resume(self):
        with self.assertRaises(InvalidTransition):
            self.machine.pause(now=T0)
        self.machine.start(25, "study", now=T0)
        with self.assertRaises(InvalidTransition):
            self.machine.resume(now=at(1))
        self.machine.pause(now=at(2))
        with self.assertRaises(InvalidTransition):
            self.machine.pause(now=at(3))

    def test_end_time_only_on_terminal_sessions(self):
        self.machine.start(25, "study", now=T0)
        self.assertIsNone(self.machine.current.end_time)
        self.machine.pause(now=at(5))
        self.assertIsNone(self.machine.current.end_time)
        session = self.machine.cancel(now=at(6))
        self.assertEqual(session.end_time, at(6))
        self.assertEqual(session.invariant_violations(), [])


class TestCompletion(SessionTestCase):

    def test_manual_complete_rounds_focused_minutes(self):
        self.machine.start(25, "study", now=T0)

        session = self.machine.complete(now=T0 + timedelta(minutes=12, seconds=40))

        self.assertEqual(session.status, config.STATUS_COMPLETED)
        self.assertEqual(session.duration, 13)
        self.assertEqual(session.fruits_earned, 2)
        self.assertEqual(self.ledger.balance, 2)
        self.assertIsNone(self.machine.current)
        self.assertEqual(self.machine.history[0].id, session.id)

    def test_complete_from_paused_closes_pause(self):
        self.machine.start(25, "study", now=T0)
        self.machine.pause(now=at(10))

        session = self.machine.complete(now=at(20))

        self.assertIsNotNone(session.pause_history[0].end_time)
        self.assertEqual(session.duration, 10)
        self.assertEqual(session.invariant_violations(), [])

    def test_auto_complete_credits_planned_duration(self):
        """Started at T0 for 25 min, app killed, reopened at T0+30."""
        self.machine.start(25, "study", now=T0)

        session = self.machine.reconcile(now=at(30))

        self.assertIsNotNone(session)
        self.assertEqual(session.status, config.STATUS_COMPLETED)
        self.assertEqual(session.duration, 25)
        self.assertEqual(session.fruits_earned, 5)
        self.assertEqual(session.end_time, at(25))
        self.assertEqual(self.ledger.balance, 5)

        transaction = self.ledger.rewards.transactions[0]
        self.assertEqual(transaction.source, config.SOURCE_FOCUS_SESSION)
        self.assertEqual(transaction.metadata["sessionId"], session.id)
        self.assertEqual(transaction.created_at, at(25))

    def test_reconcile_is_idempotent(self):
        self.machine.start(25, "study", now=T0)
        self.machine.reconcile(now=at(30))
        self.assertIsNone(self.machine.reconcile(now=at(31)))
        self.assertEqual(self.ledger.balance, 5)
        self.assertEqual(len(self.machine.history), 1)

    def test_reconcile_before_target_does_nothing(self):
        self.machine.start(25, "study", now=T0)
        self.assertIsNone(self.machine.reconcile(now=at(10)))
        self.assertEqual(self.machine.current.status, config.STATUS_ACTIVE)

    def test_no_double_credit(self):
        self.machine.start(25, "study", now=T0)
        self.machine.complete(now=at(25))

        with self.assertRaises(InvalidTransition):
            self.machine.complete(now=at(26))

        self.assertEqual(self.ledger.balance, 5)
        self.assertEqual(len(self.ledger.rewards.transactions), 1)

    def test_cancel_credits_nothing(self):
        self.machine.start(25, "study", now=T0)

        session = self.machine.cancel(now=at(20))

        self.assertEqual(session.status, config.STATUS_CANCELLED)
        self.assertEqual(session.fruits_earned, 0)
        self.assertEqual(self.ledger.balance, 0)
        self.assertEqual(self.ledger.rewards.transactions, [])

    def test_short_session_earns_no_transaction(self):
        self.machine.start(25, "study", now=T0)
        session = self.machine.complete(now=at(3))
        self.assertEqual(session.fruits_earned, 0)
        self.assertEqual(self.ledger.rewards.transactions, [])

    def test_history_is_newest_first(self):
        self.machine.start(25, "study", now=T0)
        first = self.machine.complete(now=at(25))
        self.machine.start(25, "study", now=at(30))
        second = self.machine.complete(now=at(55))
        self.assertEqual([s.id for s in self.machine.history], [second.id, first.id])

    def test_completion_emits_persist_and_shield_update(self):
        self.machine.start(25, "study", now=T0)
        self.state.drain_effects()

        self.machine.complete(now=at(25))

        effects = self.state.drain_effects()
        self.assertIn(Persist("focus:completed"), effects)
        self.assertIn(ShieldUpdate(5), effects)


class TestCompletionRollback(SessionTestCase):
    """A failing subscriber undoes the whole completion."""

    def test_failing_subscriber_rolls_back(self):
        def broken_handler(session):
            raise RuntimeError("subscriber failed")

        self.events.subscribe(SESSION_COMPLETED, broken_handler)
        self.machine.start(25, "study", now=T0)
        self.state.drain_effects()

        with self.assertRaises(RuntimeError):
            self.machine.complete(now=at(25))

        # Ledger credited first, then the later subscriber failed
        self.assertEqual(self.ledger.balance, 0)
        self.assertEqual(self.ledger.rewards.transactions, [])
        self.assertEqual(self.machine.current.status, config.STATUS_ACTIVE)
        self.assertIsNone(self.machine.current.end_time)
        self.assertEqual(self.machine.history, [])
        self.assertEqual(self.state.drain_effects(), [])

    def test_session_can_complete_after_rollback(self):
        calls = []

        def flaky_handler(session):
            calls.append(session.id)
            if len(calls) == 1:
                raise RuntimeError("first attempt fails")

        self.events.subscribe(SESSION_COMPLETED, flaky_handler)
        self.machine.start(25, "study", now=T0)

        with self.assertRaises(RuntimeError):
            self.machine.complete(now=at(25))
        session = self.machine.complete(now=at(26))

        self.assertEqual(session.status, config.STATUS_COMPLETED)
        self.assertEqual(self.ledger.balance, 5)



class TestTransitionRollback(SessionTestCase):
    """An inconsistent session is left exactly as it was."""

    def setUp(self):
        super().setUp()
        self.machine.start(25, "study", now=T0)
        # Corrupt history: a closed pause that ends before it starts
        self.machine.current.pause_history.append(
            PauseInterval(start_time=at(3), end_time=at(1))
        )
        self.state.drain_effects()

    def test_pause_rolled_back(self):
        with self.assertRaises(IntegrityViolation):
            self.machine.pause(now=at(5))

        current = self.machine.current
        self.assertEqual(current.status, config.STATUS_ACTIVE)
        self.assertEqual(len(current.pause_history), 1)
        self.assertEqual(current.updated_at, T0)
        self.assertEqual(self.state.drain_effects(), [])

    def test_resume_rolled_back(self):
        current = self.machine.current
        current.status = config.STATUS_PAUSED
        current.pause_history.append(PauseInterval(start_time=at(5)))

        with self.assertRaises(IntegrityViolation):
            self.machine.resume(now=at(8))

        current = self.machine.current
        self.assertEqual(current.status, config.STATUS_PAUSED)
        self.assertIsNone(current.pause_history[-1].end_time)
        self.assertEqual(self.state.drain_effects(), [])


if __name__ == "__main__":
    unittest.main()
