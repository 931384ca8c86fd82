"""
Tests for the FocusEngine facade: result dictionaries, callbacks, effect
execution against the Blocking Bridge, persistence and recovery.
"""

import json
import sys
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import config
from blocking.bridge import SharedStorage
from core.engine import FocusEngine
from core.errors import PersistenceFailure
from storage.store import StateStore

T0 = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class EngineTestCase(unittest.TestCase):

    def setUp(self):
        self._tmpdir = tempfile.TemporaryDirectory()
        self.tmpdir = Path(self._tmpdir.name)
        self.clock = FakeClock(T0)
        self.bridge = MagicMock()
        self.shared = SharedStorage(self.tmpdir / "shared.json")
        self.engine = self.make_engine()

    def tearDown(self):
        self._tmpdir.cleanup()

    def make_engine(self) -> FocusEngine:
        engine = FocusEngine(
            store=StateStore(self.tmpdir / "state.json", self.tmpdir / "backups"),
            bridge=self.bridge,
            shared_storage=self.shared,
            clock=self.clock,
        )
        engine.on_error = MagicMock()
        engine.on_session_completed = MagicMock()
        engine.on_status_change = MagicMock()
        engine.on_unlock_requested = MagicMock()
        return engine

    def saved_state(self):
        with open(self.tmpdir / "state.json") as f:
            return json.load(f)


class TestLoad(EngineTestCase):

    def test_fresh_load_writes_state(self):
        result = self.engine.load()

        self.assertTrue(result["success"])
        self.assertFalse(result["fell_back"])
        self.assertEqual(self.saved_state()["version"], config.STORAGE_VERSION)
        self.assertEqual(
            self.shared.get(config.SHIELD_CONFIGURATION_KEY)["currentBalance"], 0
        )

    def test_corrupt_file_falls_back_and_reports(self):
        (self.tmpdir / "state.json").write_text("{{{")

        result = self.engine.load()

        self.assertTrue(result["success"])
        self.assertTrue(result["fell_back"])
        self.assertIsNotNone(result["backup_path"])
        self.engine.on_error.assert_called_once()
        self.assertEqual(self.engine.on_error.call_args[0][0], "migration_failure")
        # The default state replaces the corrupt file
        self.assertEqual(self.saved_state()["rewards"]["balance"], 0)

    def test_operations_load_lazily(self):
        result = self.engine.start_session(25)
        self.assertTrue(result["success"])
        self.assertTrue(self.engine.is_loaded)


class TestFocusFlow(EngineTestCase):

    def test_start_returns_session_payload(self):
        result = self.engine.start_session(25, "study", "Essay")

        self.assertTrue(result["success"])
        self.assertIsNone(result["error"])
        self.assertEqual(result["session"]["tagId"], "study")
        self.assertEqual(result["session"]["remainingSeconds"], 25 * 60)
        self.engine.on_status_change.assert_called_with("focused", "Focussed")

    def test_auto_complete_on_status_poll(self):
        """Started, process suspended, polled again 30 minutes later."""
        self.engine.start_session(25, "study")
        self.clock.advance(minutes=30)

        status = self.engine.get_status()

        self.assertEqual(status["status"], "idle")
        self.assertEqual(status["balance"], 5)
        self.engine.on_session_completed.assert_called_once()
        completed = self.engine.on_session_completed.call_args[0][0]
        self.assertEqual(completed["duration"], 25)
        self.assertEqual(completed["fruitsEarned"], 5)

    def test_pause_resume_survives_restart(self):
        self.engine.start_session(25, "study")
        self.clock.advance(minutes=5)
        self.engine.pause_session()
        self.clock.advance(minutes=3)
        self.engine.resume_session()
        self.clock.advance(minutes=18)

        restarted = self.make_engine()
        status = restarted.get_status()

        self.assertEqual(status["status"], "focused")
        self.assertEqual(status["elapsed_seconds"], 23 * 60)
        self.assertEqual(status["remaining_seconds"], 2 * 60)
        self.assertEqual(status["countdown"], "02:00")

    def test_complete_twice_fails_without_double_credit(self):
        self.engine.start_session(10)
        self.clock.advance(minutes=10)

        first = self.engine.complete_session()
        second = self.engine.complete_session()

        self.assertTrue(first["success"])
        self.assertEqual(first["balance"], 2)
        self.assertFalse(second["success"])
        self.assertEqual(second["error_type"], "invalid_transition")
        self.assertEqual(self.engine.get_status()["balance"], 2)

    def test_complete_after_target_reports_auto_completion(self):
        self.engine.start_session(25)
        self.clock.advance(minutes=40)

        result = self.engine.complete_session()

        self.assertTrue(result["auto_completed"])
        self.assertEqual(result["fruits_earned"], 5)
        self.engine.on_session_completed.assert_called_once()

    def test_invalid_start_is_invalid_request(self):
        result = self.engine.start_session(-5)
        self.assertFalse(result["success"])
        self.assertEqual(result["error_type"], "invalid_request")

    def test_wrong_argument_types_are_invalid_requests(self):
        for call in (
            lambda: self.engine.start_session("25"),
            lambda: self.engine.request_unlock(42, 5),
        ):
            result = call()
            self.assertFalse(result["success"])
            self.assertEqual(result["error_type"], "invalid_request")
        self.assertEqual(self.engine.get_status()["status"], "idle")

    def test_cancel(self):
        self.engine.start_session(25)
        self.clock.advance(minutes=12)

        result = self.engine.cancel_session()

        self.assertEqual(result["session"]["status"], config.STATUS_CANCELLED)
        self.assertEqual(self.engine.get_status()["balance"], 0)
        self.engine.on_session_completed.assert_not_called()

    def test_stats(self):
        self.engine.start_session(25)
        self.clock.advance(minutes=25)
        self.engine.get_status()

        stats = self.engine.get_stats()

        self.assertEqual(stats["total_sessions"], 1)
        self.assertEqual(stats["earned_today"], 5)
        self.assertEqual(stats["current_streak"], 1)
        self.assertEqual(stats["balance"], 5)


class TestUnlockFlow(EngineTestCase):

    def setUp(self):
        super().setUp()
        self.engine.credit(20)
        self.bridge.reset_mock()

    def test_unlock_lifts_block(self):
        result = self.engine.request_unlock(["app.a"], 5)

        self.assertTrue(result["success"])
        self.assertEqual(result["balance"], 15)
        self.assertEqual(result["remaining_seconds"], 300)
        self.bridge.remove_block.assert_called_once_with(frozenset({"app.a"}))
        self.assertEqual(
            self.shared.get(config.SHIELD_CONFIGURATION_KEY)["currentBalance"], 15
        )

    def test_expiry_reblocks_exactly_once(self):
        self.engine.request_unlock(["app.a"], 1)
        self.clock.advance(seconds=61)

        first = self.engine.get_status()
        second = self.engine.get_status()

        self.assertEqual(first["active_unlocks"], [])
        self.assertEqual(second["active_unlocks"], [])
        self.bridge.apply_block.assert_called_once_with(frozenset({"app.a"}))
        history = self.saved_state()["blocklist"]["unlockHistory"]
        self.assertEqual(history[0]["endReason"], config.UNLOCK_END_EXPIRED)

    def test_end_early(self):
        unlock_id = self.engine.request_unlock(["app.a"], 5)["unlock"]["id"]
        self.clock.advance(minutes=1)

        result = self.engine.end_unlock_early(unlock_id)

        self.assertTrue(result["success"])
        self.bridge.apply_block.assert_called_once_with(frozenset({"app.a"}))
        self.assertEqual(self.engine.get_status()["balance"], 15)

    def test_error_types(self):
        cases = [
            (lambda: self.engine.request_unlock(["app.a"], 500), "invalid_duration"),
            (lambda: self.engine.request_unlock([], 5), "invalid_request"),
            (lambda: self.engine.request_unlock(["app.a"], 30), "insufficient_balance"),
            (lambda: self.engine.end_unlock_early("unlock_nope"), "invalid_transition"),
        ]
        for call, error_type in cases:
            result = call()
            self.assertFalse(result["success"])
            self.assertEqual(result["error_type"], error_type)
            self.assertTrue(result["error"])
        self.bridge.remove_block.assert_not_called()

    def test_daily_limit(self):
        for _ in range(config.ALLOWED_UNLOCKS_PER_DAY_BOUNDS[1]):
            self.engine.adjust_setting("daily_unlocks", False)
        self.engine.request_unlock(["app.a"], 1)

        result = self.engine.request_unlock(["app.b"], 1)

        self.assertEqual(result["error_type"], "daily_limit_reached")
        self.assertEqual(self.engine.get_status()["remaining_unlocks_today"], 0)

    def test_unlock_options_affordability(self):
        options = {o["duration"]: o["affordable"] for o in self.engine.get_unlock_options()}
        self.assertTrue(options[15])
        self.assertFalse(options[30])

    def test_bridge_failure_is_reported(self):
        self.bridge.remove_block.side_effect = RuntimeError("extension unavailable")

        result = self.engine.request_unlock(["app.a"], 5)

        self.assertTrue(result["success"])
        self.engine.on_error.assert_called_with(
            "blocking_bridge_failure", "Could not update app blocking: extension unavailable"
        )


class TestSettings(EngineTestCase):

    def test_adjust_setting_clamps(self):
        for _ in range(20):
            result = self.engine.adjust_setting("cost", True)
        self.assertEqual(result["value"], config.UNLOCK_COST_PER_MINUTE_BOUNDS[1])
        self.assertEqual(self.saved_state()["blocklist"]["settings"]["unlockCostPerMinute"], 10)

    def test_unknown_setting(self):
        result = self.engine.adjust_setting("volume", True)
        self.assertEqual(result["error_type"], "invalid_request")

    def test_disabled_blocking_rejects_unlocks(self):
        self.engine.credit(10)
        self.engine.set_blocking_enabled(False)
        result = self.engine.request_unlock(["app.a"], 1)
        self.assertEqual(result["error_type"], "invalid_transition")


class TestDeepLinks(EngineTestCase):

    def test_foreground_consumes_pending_link(self):
        self.engine.credit(4)
        self.shared.set(
            config.PENDING_DEEP_LINK_KEY,
            f"{config.DEEP_LINK_SCHEME}://unlock?currentBalance=12&duration=5&cost=5",
        )

        result = self.engine.handle_foreground()

        self.assertTrue(result["success"])
        hint = self.engine.on_unlock_requested.call_args[0][0]
        self.assertEqual(hint["current_balance"], 12)
        self.assertEqual(hint["duration_minutes"], 5)
        # The ledger, not the link, is authoritative
        self.assertEqual(hint["balance"], 4)
        self.assertIsNone(self.shared.get(config.PENDING_DEEP_LINK_KEY))

    def test_foreground_without_link(self):
        result = self.engine.handle_foreground()
        self.assertIsNone(result["deep_link"])
        self.engine.on_unlock_requested.assert_not_called()

    def test_invalid_deep_link(self):
        result = self.engine.handle_deep_link("https://example.com")
        self.assertEqual(result["error_type"], "invalid_request")
        self.engine.on_unlock_requested.assert_not_called()


class TestDurability(EngineTestCase):

    def test_persistence_failure_enters_non_durable_mode(self):
        self.engine.load()

        with patch.object(self.engine.store, "save",
                          side_effect=PersistenceFailure("disk full")):
            result = self.engine.start_session(25)

        self.assertTrue(result["success"])
        self.assertFalse(self.engine.is_durable)
        self.engine.on_error.assert_called_with("persistence_failure", "disk full")
        # In-memory state stays authoritative
        status = self.engine.get_status()
        self.assertEqual(status["status"], "focused")
        self.assertFalse(status["is_durable"])

    def test_durability_restored_on_next_save(self):
        self.engine.load()
        with patch.object(self.engine.store, "save",
                          side_effect=PersistenceFailure("disk full")):
            self.engine.start_session(25)

        self.engine.pause_session()

        self.assertTrue(self.engine.is_durable)
        self.assertEqual(self.saved_state()["focus"]["currentSession"]["status"], "paused")


if __name__ == "__main__":
    unittest.main()
