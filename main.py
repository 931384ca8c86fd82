#!/usr/bin/env python3
"""
Orchard - Main Entry Point

Focus sessions that grow fruits, and fruits that buy time on blocked apps.
Every command loads the saved state (migrating it if needed), applies one
operation through the FocusEngine, saves, and prints a summary.

Usage:
    python main.py status
    python main.py start --minutes 25 --tag study
    python main.py pause | resume | complete | cancel
    python main.py unlock com.example.social --minutes 15
    python main.py end-unlock unlock_3f9a0c1b2d4e
    python main.py settings --cost + --daily -
    python main.py stats
    python main.py deep-link "orchard://unlock?currentBalance=12"
    python main.py credit 10
"""

import sys
import logging
import argparse
from typing import Any, Callable, Dict, List, Optional

import config
from blocking.bridge import LoggingBlockingBridge, SharedStorage
from core.engine import FocusEngine
from instance_lock import StateBusy, StateLock
from tracking.clock import format_countdown, format_duration

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format=config.LOG_FORMAT
)
logger = logging.getLogger(__name__)


def build_engine() -> FocusEngine:
    """Engine wired to the configured state file and a logging-only bridge."""
    shared = SharedStorage(config.SHARED_STORAGE_FILE)
    engine = FocusEngine(bridge=LoggingBlockingBridge(shared), shared_storage=shared)
    engine.on_error = lambda error_type, message: print(f"⚠️  {message}")
    engine.on_session_completed = lambda session: print(
        f"🍎 Session complete: {session['duration']} min, "
        f"{session['fruitsEarned']} fruits earned"
    )
    engine.on_unlock_requested = lambda hint: print_unlock_options(hint)
    return engine


# ----------------------------------------------------------------------
# Output
# ----------------------------------------------------------------------

def print_status(status: Dict[str, Any]) -> None:
    print(f"\nStatus: {status['status']}")
    session = status["session"]
    if session:
        print(f"  Tag: {session['tagId']}")
        if session["targetDuration"] > 0:
            print(f"  Remaining: {format_countdown(status['remaining_seconds'] or 0)}"
                  f" of {session['targetDuration']} min")
        print(f"  Focused: {format_duration(status['elapsed_seconds'])}")
    print(f"  Balance: {status['balance']} fruits")
    print(f"  Unlocks left today: {status['remaining_unlocks_today']}"
          f" (used {status['daily_unlock_count']})")
    for unlock in status["active_unlocks"]:
        print(f"  🔓 {unlock['id']}: {', '.join(unlock['appTokens'])}"
              f" ({format_countdown(unlock['remainingSeconds'])} left)")
    if not status["is_durable"]:
        print("  ⚠️  Changes are not being saved")


def print_unlock_options(hint: Dict[str, Any]) -> None:
    print(f"\nUnlock requested (balance {hint['balance']} fruits)")
    if hint.get("duration_minutes"):
        print(f"  Suggested: {hint['duration_minutes']} min")
    for option in hint["options"]:
        marker = "✓" if option["affordable"] else "✗"
        print(f"  {marker} {option['duration']} min - {option['cost']} fruits")


def print_stats(stats: Dict[str, Any]) -> None:
    print("\n📊 Focus statistics")
    print(f"  Sessions completed: {stats['total_sessions']}")
    print(f"  Total focus: {format_duration(stats['total_minutes'] * 60)}")
    print(f"  Average session: {stats['average_minutes']:.1f} min")
    print(f"  Completion rate: {stats['completion_rate'] * 100:.0f}%")
    print(f"  Today: {stats['today_minutes']} min, {stats['earned_today']} fruits")
    print(f"  Streak: {stats['current_streak']} days (best {stats['longest_streak']})")
    print(f"  Balance: {stats['balance']} fruits"
          f" (earned {stats['total_earned']}, spent {stats['total_spent']})")


def report(result: Dict[str, Any], on_success: Optional[Callable[[Dict[str, Any]], None]] = None) -> int:
    """Print a result dictionary and return the exit code."""
    if not result["success"]:
        print(f"❌ {result['error']}")
        return 1
    if on_success:
        on_success(result)
    return 0


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------

def _step(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    return value == "+"


def cmd_settings(engine: FocusEngine, args: argparse.Namespace) -> int:
    changes = [
        ("cost", _step(args.cost)),
        ("max_duration", _step(args.max_duration)),
        ("daily_unlocks", _step(args.daily)),
    ]
    for name, increase in changes:
        if increase is None:
            continue
        if report(engine.adjust_setting(name, increase)):
            return 1
    if args.enable or args.disable:
        if report(engine.set_blocking_enabled(bool(args.enable))):
            return 1
    settings = engine.get_status()["settings"]
    print("\n⚙️  Blocklist settings")
    print(f"  Cost per minute: {settings['unlockCostPerMinute']}")
    print(f"  Max unlock duration: {settings['maxUnlockDuration']} min")
    print(f"  Unlocks per day: {settings['allowedUnlocksPerDay']}")
    print(f"  Blocking enabled: {'yes' if settings['isEnabled'] else 'no'}")
    return 0


def run_command(engine: FocusEngine, args: argparse.Namespace) -> int:
    command = args.command
    if command == "status":
        load = engine.load()
        if load["migrated_from"] is not None:
            print(f"Saved data upgraded from version {load['migrated_from']}")
        for warning in load["warnings"]:
            print(f"⚠️  {warning}")
        for suggestion in load["suggestions"]:
            print(f"💡 {suggestion}")
        print_status(engine.get_status())
        return 0
    if command == "start":
        return report(
            engine.start_session(args.minutes, args.tag, args.description),
            lambda r: print(f"▶️  Started {r['session']['targetDuration'] or 'open-ended'}"
                            f"{' min' if r['session']['targetDuration'] else ''} session"),
        )
    if command == "pause":
        return report(engine.pause_session(), lambda r: print("⏸  Paused"))
    if command == "resume":
        return report(engine.resume_session(), lambda r: print("▶️  Resumed"))
    if command == "complete":
        return report(engine.complete_session(),
                      lambda r: print(f"Balance: {r['balance']} fruits"))
    if command == "cancel":
        return report(engine.cancel_session(), lambda r: print("⏹  Session cancelled"))
    if command == "unlock":
        return report(
            engine.request_unlock(args.tokens, args.minutes),
            lambda r: print(f"🔓 Unlocked {', '.join(r['unlock']['appTokens'])} for "
                            f"{r['unlock']['durationMinutes']} min ({r['unlock']['id']}); "
                            f"balance {r['balance']}, {r['remaining_unlocks_today']} unlocks left today"),
        )
    if command == "end-unlock":
        return report(engine.end_unlock_early(args.unlock_id),
                      lambda r: print(f"🔒 Unlock {r['unlock']['id']} ended"))
    if command == "settings":
        return cmd_settings(engine, args)
    if command == "stats":
        print_stats(engine.get_stats())
        return 0
    if command == "deep-link":
        return report(engine.handle_deep_link(args.url))
    if command == "credit":
        return report(engine.credit(args.amount, description=args.description or "Manual credit"),
                      lambda r: print(f"Balance: {r['balance']} fruits"))
    raise ValueError(f"Unknown command {command!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Orchard - focus sessions and reward-gated app unlocks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py start --minutes 25 --tag study
  python main.py unlock com.example.social --minutes 15
        """
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show the current session, balance and unlocks")

    start = sub.add_parser("start", help="Start a focus session")
    start.add_argument("--minutes", type=int, default=25,
                       help="Target duration in minutes (0 = open-ended)")
    start.add_argument("--tag", default="default", help="Tag / category id")
    start.add_argument("--description", default=None)

    sub.add_parser("pause", help="Pause the active session")
    sub.add_parser("resume", help="Resume the paused session")
    sub.add_parser("complete", help="Complete the current session")
    sub.add_parser("cancel", help="Cancel the current session")

    unlock = sub.add_parser("unlock", help="Spend fruits to unblock apps")
    unlock.add_argument("tokens", nargs="+", help="App tokens to unblock")
    unlock.add_argument("--minutes", type=int, required=True)

    end_unlock = sub.add_parser("end-unlock", help="End an unlock early (no refund)")
    end_unlock.add_argument("unlock_id")

    settings = sub.add_parser("settings", help="Show or step blocklist settings")
    settings.add_argument("--cost", choices=["+", "-"])
    settings.add_argument("--max-duration", choices=["+", "-"])
    settings.add_argument("--daily", choices=["+", "-"])
    toggle = settings.add_mutually_exclusive_group()
    toggle.add_argument("--enable", action="store_true")
    toggle.add_argument("--disable", action="store_true")

    sub.add_parser("stats", help="Show focus statistics")

    deep_link = sub.add_parser("deep-link", help="Handle an unlock deep link")
    deep_link.add_argument("url")

    credit = sub.add_parser("credit", help="Manually credit fruits")
    credit.add_argument("amount", type=int)
    credit.add_argument("--description", default=None)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point: parse arguments and run one command under the state lock."""
    args = build_parser().parse_args(argv)
    try:
        with StateLock():
            return run_command(build_engine(), args)
    except StateBusy as e:
        print(f"\n{e.message}\n")
        return 1
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        print(f"\nFatal error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
