"""Goal tracker: savings targets fed by linked contribution transactions.

The accumulated amount is never stored; it is the sum of the magnitudes of
a goal's live linked transactions, recomputed on every read.
"""

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from tally.domain.categories import CategoryGraph
from tally.domain.errors import AlreadyTombstonedError, NotFoundError, ValidationError
from tally.domain.events import EventBus, GoalMilestoneReached
from tally.domain.ledger import StoreSnapshot, TransactionStore
from tally.domain.models import CategoryId, ContributionRule, Description, GoalId, Kind, Money, TransactionId
from tally.domain.transactions import NewTransaction, Transaction

logger = logging.getLogger(__name__)

MILESTONES = (25, 50, 75, 100)


@dataclass(frozen=True)
class Goal:
    """Immutable savings goal definition."""

    id: GoalId
    name: str
    target: Money
    start: date
    target_date: date | None = None
    rule: ContributionRule = ContributionRule.MANUAL
    sweep_percent: int | None = None
    category_id: CategoryId | None = None


@dataclass(frozen=True)
class GoalProgress:
    """Derived progress of a goal.

    ``on_track`` is None when the goal has no target date.
    ``status`` is one of "in_progress", "reached", "exceeded".
    """

    goal_id: GoalId
    accumulated: Money
    remaining: Money
    percentage: Decimal
    on_track: bool | None
    status: str


def accumulated_amount(contributions: Iterable[Transaction]) -> Money:
    """Sum of contribution magnitudes, skipping tombstoned transactions."""
    return Money(sum(abs(t.amount) for t in contributions if not t.tombstoned))


def is_on_track(goal: Goal, accumulated: Money, today: date) -> bool | None:
    """Linear projection: saved fraction must keep up with elapsed-time fraction."""
    if goal.target_date is None:
        return None
    total_days = (goal.target_date - goal.start).days
    elapsed = min(max((today - goal.start).days, 0), total_days)
    return accumulated * total_days >= goal.target * elapsed


def reached_milestones(accumulated: Money, target: Money) -> list[int]:
    return [m for m in MILESTONES if accumulated * 100 >= m * target]


def calculate_progress(goal: Goal, contributions: Iterable[Transaction], today: date) -> GoalProgress:
    """Compute goal progress from its contribution transactions."""
    accumulated = accumulated_amount(contributions)
    if accumulated > goal.target:
        status = "exceeded"
    elif accumulated == goal.target:
        status = "reached"
    else:
        status = "in_progress"

    return GoalProgress(
        goal_id=goal.id,
        accumulated=accumulated,
        remaining=Money(max(goal.target - accumulated, 0)),
        percentage=(Decimal(accumulated) * 100 / Decimal(goal.target)).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        ),
        on_track=is_on_track(goal, accumulated, today),
        status=status,
    )


def sweep_amount(surplus: Money, percent: int) -> Money:
    """Share of a surplus swept into a goal, rounded down to a whole cent."""
    if surplus <= 0:
        return Money(0)
    return Money(surplus * percent // 100)


class GoalTracker:
    """Goal definitions, contribution links and milestone firing."""

    def __init__(
        self,
        categories: CategoryGraph,
        store: TransactionStore,
        bus: EventBus,
        write_lock: threading.RLock,
        goals: list[Goal] | None = None,
        contributions: dict[GoalId, list[TransactionId]] | None = None,
        fired: dict[GoalId, frozenset[int]] | None = None,
        next_id: int | None = None,
    ) -> None:
        self._categories = categories
        self._store = store
        self._bus = bus
        self._write_lock = write_lock
        self._goals: dict[GoalId, Goal] = {g.id: g for g in goals or []}
        self._contributions: dict[GoalId, tuple[TransactionId, ...]] = {
            goal_id: tuple(ids) for goal_id, ids in (contributions or {}).items()
        }
        self._fired: dict[GoalId, frozenset[int]] = dict(fired or {})
        self._next_id = next_id if next_id is not None else max(self._goals, default=0) + 1

    @property
    def next_id(self) -> int:
        return self._next_id

    def get(self, goal_id: GoalId) -> Goal:
        goal = self._goals.get(goal_id)
        if goal is None:
            raise NotFoundError(f"Goal {goal_id} not found")
        return goal

    def list_goals(self) -> list[Goal]:
        return sorted(self._goals.values(), key=lambda g: g.id)

    def contributions(self, goal_id: GoalId) -> tuple[TransactionId, ...]:
        self.get(goal_id)
        return self._contributions.get(goal_id, ())

    def fired_milestones(self) -> dict[GoalId, frozenset[int]]:
        return {goal_id: fired for goal_id, fired in self._fired.items() if fired}

    def create(
        self,
        name: str,
        target: Money,
        start: date,
        target_date: date | None = None,
        rule: ContributionRule = ContributionRule.MANUAL,
        sweep_percent: int | None = None,
        category_id: CategoryId | None = None,
    ) -> Goal:
        """Create a savings goal.

        Raises:
            ValidationError: Bad target, dates or sweep settings.
            UnknownCategoryError: Sweep category is unknown.
        """
        if not name.strip():
            raise ValidationError("Goal name must not be empty")
        if target <= 0:
            raise ValidationError("Goal target must be positive")
        if target_date is not None and target_date <= start:
            raise ValidationError("Target date must be after the start date")
        if rule is ContributionRule.SWEEP:
            if sweep_percent is None or not 1 <= sweep_percent <= 100:
                raise ValidationError("Sweep goals need a percentage between 1 and 100")
            if category_id is None:
                raise ValidationError("Sweep goals need a contribution category")
        elif sweep_percent is not None:
            raise ValidationError("Sweep percentage only applies to sweep goals")

        with self._write_lock:
            if category_id is not None and self._categories.get(category_id).kind is not Kind.EXPENSE:
                raise ValidationError("Goal contributions must go to an expense category")
            goal = Goal(
                id=GoalId(self._next_id),
                name=name.strip(),
                target=target,
                start=start,
                target_date=target_date,
                rule=rule,
                sweep_percent=sweep_percent,
                category_id=category_id,
            )
            self._goals = {**self._goals, goal.id: goal}
            self._next_id += 1
        return goal

    def _linked_goal(self, txn_id: TransactionId) -> GoalId | None:
        for goal_id, ids in self._contributions.items():
            if txn_id in ids:
                return goal_id
        return None

    def _link(self, goal_id: GoalId, txn_id: TransactionId) -> None:
        self._contributions = {**self._contributions, goal_id: (*self._contributions.get(goal_id, ()), txn_id)}

    def record_contribution(self, goal_id: GoalId, txn_id: TransactionId) -> list[int]:
        """Link a posted transaction to a goal as a contribution.

        Returns:
            Milestones newly reached by this contribution.

        Raises:
            NotFoundError: Unknown goal or transaction.
            AlreadyTombstonedError: Transaction was deleted.
            ValidationError: Transaction already counts toward a goal.
        """
        with self._write_lock:
            self.get(goal_id)
            txn = self._store.snapshot().get(txn_id)
            if txn.tombstoned:
                raise AlreadyTombstonedError(f"Transaction {txn_id} was deleted")
            linked = self._linked_goal(txn_id)
            if linked is not None:
                raise ValidationError(f"Transaction {txn_id} already contributes to goal {linked}")
            self._link(goal_id, txn_id)
        return self.check_milestones(goal_id)

    def sweep(self, goal_id: GoalId, surplus: Money, posted: date) -> Transaction:
        """Post the goal's share of a surplus as a contribution.

        Raises:
            ValidationError: Goal is not a sweep goal or the share rounds to zero.
        """
        with self._write_lock:
            goal = self.get(goal_id)
            if goal.rule is not ContributionRule.SWEEP or goal.sweep_percent is None or goal.category_id is None:
                raise ValidationError(f"Goal {goal_id} does not sweep surplus")
            amount = sweep_amount(surplus, goal.sweep_percent)
            if amount == 0:
                raise ValidationError("Nothing to sweep from this surplus")
            txn = self._store.post(
                NewTransaction(
                    date=posted,
                    amount=Money(-amount),
                    category_id=goal.category_id,
                    memo=Description(f"Sweep to {goal.name}"),
                )
            )
            self._link(goal_id, txn.id)
        logger.info("Swept %s into goal %s", amount, goal_id)
        self.check_milestones(goal_id)
        return txn

    def _contribution_records(self, goal_id: GoalId, snapshot: StoreSnapshot) -> list[Transaction]:
        return [snapshot.get(txn_id) for txn_id in self._contributions.get(goal_id, ())]

    def check_milestones(self, goal_id: GoalId) -> list[int]:
        """Fire milestone events not fired before for this goal."""
        with self._write_lock:
            goal = self.get(goal_id)
            accumulated = accumulated_amount(self._contribution_records(goal_id, self._store.snapshot()))
            already = self._fired.get(goal_id, frozenset())
            newly = [m for m in reached_milestones(accumulated, goal.target) if m not in already]
            self._fired = {**self._fired, goal_id: already | frozenset(newly)}
        for milestone in newly:
            logger.info("Goal %s reached %s%%", goal_id, milestone)
            self._bus.publish(GoalMilestoneReached(goal_id=goal_id, milestone=milestone))
        return newly

    def progress(self, goal_id: GoalId, today: date) -> GoalProgress:
        """Read-only progress of a goal at ``today``."""
        goal = self.get(goal_id)
        snapshot = self._store.snapshot()
        return calculate_progress(goal, self._contribution_records(goal_id, snapshot), today)
