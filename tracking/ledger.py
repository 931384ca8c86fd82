"""
Reward Ledger.

Balance plus an append-only transaction log. Completed focus minutes are
converted into fruits here and spent by the unlock manager through the
Wallet interface. Every mutation is checked against the ledger invariants
and rolled back if it would break them.
"""

import copy
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import config
from core.errors import InsufficientBalance, IntegrityViolation
from core.events import SESSION_COMPLETED, EventBus, Persist, ShieldUpdate
from core.state import EngineState, FocusSession, RewardTransaction, RewardsState, new_id
from tracking.clock import local_day_bounds, utc_now

logger = logging.getLogger(__name__)


class RewardLedger:
    """
    Owns the rewards section of the engine state.

    Implements the Wallet protocol used by the unlock manager. When
    attached to an EventBus it credits completed focus sessions.
    """

    def __init__(self, state: EngineState, events: Optional[EventBus] = None):
        self._state = state
        if events is not None:
            events.subscribe(SESSION_COMPLETED, self.on_session_completed)

    @property
    def rewards(self) -> RewardsState:
        return self._state.rewards

    @property
    def balance(self) -> int:
        return self._state.rewards.balance

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def credit(
        self,
        amount: int,
        source: str,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> RewardTransaction:
        """
        Add an earned transaction.

        Args:
            amount: Positive number of fruits.
            source: One of config.TRANSACTION_SOURCES.
            description: Human-readable reason.
            metadata: Free-form extra data (session id, etc.).
            now: Transaction timestamp.

        Raises:
            ValueError: If amount <= 0 or source is unknown.
            IntegrityViolation: If the result would break the ledger invariants.
        """
        self._check_request(amount, source)
        transaction = RewardTransaction(
            id=new_id("tx"),
            type=config.TRANSACTION_EARNED,
            amount=int(amount),
            source=source,
            description=description or f"Earned {amount} fruits",
            created_at=now or utc_now(),
            metadata=dict(metadata or {}),
        )

        def apply(rewards: RewardsState) -> None:
            rewards.transactions.append(transaction)
            rewards.total_earned += transaction.amount
            rewards.balance += transaction.amount

        self._commit(apply, f"credit {amount} ({source})")
        logger.info(f"Credited {amount} fruits from {source}; balance {self.balance}")
        return transaction

    def debit(
        self,
        amount: int,
        source: str,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> RewardTransaction:
        """
        Add a spent transaction.

        Rejected before any mutation if the balance can't cover it.

        Raises:
            ValueError: If amount <= 0 or source is unknown.
            InsufficientBalance: If amount exceeds the current balance.
            IntegrityViolation: If the result would break the ledger invariants.
        """
        self._check_request(amount, source)
        if amount > self.balance:
            logger.info(f"Debit of {amount} rejected: balance is {self.balance}")
            raise InsufficientBalance(required=int(amount), balance=self.balance)

        transaction = RewardTransaction(
            id=new_id("tx"),
            type=config.TRANSACTION_SPENT,
            amount=int(amount),
            source=source,
            description=description or f"Spent {amount} fruits",
            created_at=now or utc_now(),
            metadata=dict(metadata or {}),
        )

        def apply(rewards: RewardsState) -> None:
            rewards.transactions.append(transaction)
            rewards.total_spent += transaction.amount
            rewards.balance -= transaction.amount

        self._commit(apply, f"debit {amount} ({source})")
        logger.info(f"Debited {amount} fruits for {source}; balance {self.balance}")
        return transaction

    def on_session_completed(self, session: FocusSession) -> None:
        """Credit a completed focus session (EventBus handler)."""
        if session.fruits_earned <= 0:
            logger.debug(f"Session {session.id} earned no fruits")
            return
        self.credit(
            session.fruits_earned,
            config.SOURCE_FOCUS_SESSION,
            description=f"Focus session: {session.duration} min",
            metadata={"sessionId": session.id, "duration": session.duration},
            now=session.end_time,
        )

    def archive_transactions(self, before: datetime, now: Optional[datetime] = None) -> int:
        """
        Fold transactions created before a cut-off into the archived totals.

        Totals and balance are unchanged; only the log shrinks.

        Returns:
            Number of archived transactions.
        """
        old = [t for t in self.rewards.transactions if t.created_at < before]
        if not old:
            return 0
        earned = sum(t.amount for t in old if t.type == config.TRANSACTION_EARNED)
        spent = sum(t.amount for t in old if t.type == config.TRANSACTION_SPENT)
        old_ids = {t.id for t in old}

        def apply(rewards: RewardsState) -> None:
            rewards.transactions = [t for t in rewards.transactions if t.id not in old_ids]
            rewards.archived_earned += earned
            rewards.archived_spent += spent

        self._commit(apply, f"archive {len(old)} transactions", notify_shield=False)
        logger.info(
            f"Archived {len(old)} transactions before {before.isoformat()} "
            f"(earned {earned}, spent {spent})"
        )
        return len(old)

    def archive_if_needed(self, now: Optional[datetime] = None) -> int:
        """Archive old transactions once the log grows past the threshold."""
        if len(self.rewards.transactions) <= config.TRANSACTION_ARCHIVE_THRESHOLD:
            return 0
        now = now or utc_now()
        cutoff = now - timedelta(days=config.TRANSACTION_ARCHIVE_KEEP_DAYS)
        return self.archive_transactions(cutoff, now)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def recent_transactions(self, limit: int = 20) -> List[RewardTransaction]:
        """Newest transactions first."""
        if limit < 0:
            raise ValueError("limit must be non-negative")
        ordered = sorted(self.rewards.transactions, key=lambda t: t.created_at, reverse=True)
        return ordered[:limit]

    def earned_today(self, now: Optional[datetime] = None) -> int:
        """Fruits earned during the current local day."""
        start, end = local_day_bounds(now or utc_now())
        return sum(
            t.amount
            for t in self.rewards.transactions
            if t.type == config.TRANSACTION_EARNED and start <= t.created_at < end
        )

    def summary(self) -> Dict[str, int]:
        rewards = self.rewards
        return {
            "balance": rewards.balance,
            "total_earned": rewards.total_earned,
            "total_spent": rewards.total_spent,
            "transaction_count": len(rewards.transactions),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _check_request(amount: int, source: str) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValueError(f"amount must be an integer, got {amount!r}")
        if amount <= 0:
            raise ValueError(f"amount must be positive, got {amount}")
        if source not in config.TRANSACTION_SOURCES:
            raise ValueError(f"unknown transaction source {source!r}")

    def _commit(self, apply, action: str, notify_shield: bool = True) -> None:
        """
        Apply a mutation to the rewards section, verify, and emit effects.

        On an invariant violation the previous rewards section is restored
        and IntegrityViolation is raised; nothing is emitted.
        """
        snapshot = copy.deepcopy(self._state.rewards)
        apply(self._state.rewards)
        problems = self._state.rewards.integrity_problems()
        if problems:
            broken = self._state.rewards
            self._state.rewards = snapshot
            logger.error(
                f"Ledger integrity violation during {action}: {problems} "
                f"(balance {broken.balance}, earned {broken.total_earned}, "
                f"spent {broken.total_spent}); rolled back"
            )
            raise IntegrityViolation(
                f"Ledger integrity violation during {action}",
                {
                    "problems": problems,
                    "balance": snapshot.balance,
                    "total_earned": snapshot.total_earned,
                    "total_spent": snapshot.total_spent,
                },
            )
        self._state.emit(Persist(f"rewards:{action.split()[0]}"))
        if notify_shield:
            self._state.emit(ShieldUpdate(self._state.rewards.balance))
