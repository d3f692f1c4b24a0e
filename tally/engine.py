"""Ledger engine: the single write-path owner wiring the domain components together.

Every mutating contract runs under one re-entrant write lock and validates
before touching state, so each one is either fully applied or rejected.
Reads take a store snapshot and never block writers.

The engine never reads the wall clock; callers pass ``now``/``today``.
"""

import logging
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime

from tally.config import Settings
from tally.domain.budget import Budget, BudgetEngine, BudgetPeriodState, PeriodDefinition
from tally.domain.categories import Category, CategoryGraph
from tally.domain.errors import InvariantViolationError
from tally.domain.events import EventBus, Handler, Subscription
from tally.domain.goals import Goal, GoalProgress, GoalTracker
from tally.domain.importer import ImportReconciler, ReconcileResult
from tally.domain.ledger import TransactionFilter, TransactionStore
from tally.domain.models import (
    BudgetId,
    CategoryId,
    ContributionRule,
    Description,
    GoalId,
    Kind,
    Money,
    PeriodKind,
    TemplateId,
    TransactionId,
)
from tally.domain.recurrence import Occurrence, RecurrenceEngine, RecurrenceTemplate, Schedule
from tally.domain.transactions import NewTransaction, ParsedRow, Transaction

logger = logging.getLogger(__name__)


@dataclass
class LedgerState:
    """Everything needed to rebuild a ledger. Derived state is not included."""

    categories: list[Category] = field(default_factory=list)
    records: list[Transaction] = field(default_factory=list)
    templates: list[RecurrenceTemplate] = field(default_factory=list)
    budgets: list[Budget] = field(default_factory=list)
    goals: list[Goal] = field(default_factory=list)
    contributions: dict[GoalId, list[TransactionId]] = field(default_factory=dict)
    fired_thresholds: dict[tuple[BudgetId, date], frozenset[int]] = field(default_factory=dict)
    fired_milestones: dict[GoalId, frozenset[int]] = field(default_factory=dict)
    next_ids: dict[str, int] = field(default_factory=dict)


class Ledger:
    """One ledger instance: categories, transactions, templates, budgets and goals.

    Args:
        settings: Engine settings (defaults when omitted).
        state: Previously saved state to restore.
    """

    def __init__(self, settings: Settings | None = None, state: LedgerState | None = None) -> None:
        self.settings = settings or Settings()
        state = state or LedgerState()
        next_ids = state.next_ids

        self._write_lock = threading.RLock()
        self.bus = EventBus(max_pending=self.settings.event_queue_size)
        self.categories = CategoryGraph(state.categories or None, next_id=next_ids.get("category"))
        self.store = TransactionStore.replay(self.categories, state.records)
        self.recurrence = RecurrenceEngine(
            self.store,
            self._write_lock,
            self.bus,
            lookahead_days=self.settings.lookahead_days,
            templates=state.templates,
            next_id=next_ids.get("template"),
        )
        self.budgets = BudgetEngine(
            self.categories,
            self.store,
            self.bus,
            self._write_lock,
            budgets=state.budgets,
            fired=state.fired_thresholds,
            next_id=next_ids.get("budget"),
        )
        self.goals = GoalTracker(
            self.categories,
            self.store,
            self.bus,
            self._write_lock,
            goals=state.goals,
            contributions=state.contributions,
            fired=state.fired_milestones,
            next_id=next_ids.get("goal"),
        )
        self.importer = ImportReconciler(
            self.categories,
            self.store,
            self.recurrence,
            self._write_lock,
            tolerance_days=self.settings.import_tolerance_days,
        )

    @contextmanager
    def _reporting(self, operation: str) -> Iterator[None]:
        try:
            yield
        except InvariantViolationError:
            logger.error("Refused %s: invariant violation", operation, exc_info=True)
            raise

    @contextmanager
    def _writing(self, operation: str) -> Iterator[None]:
        with self._write_lock, self._reporting(operation):
            yield

    def state(self) -> LedgerState:
        """Capture persistable state under the write lock."""
        with self._write_lock:
            return LedgerState(
                categories=self.categories.list_categories(include_deleted=True),
                records=list(self.store.records),
                templates=self.recurrence.list_templates(),
                budgets=self.budgets.list_budgets(),
                goals=self.goals.list_goals(),
                contributions={g.id: list(self.goals.contributions(g.id)) for g in self.goals.list_goals()},
                fired_thresholds=self.budgets.fired_thresholds(),
                fired_milestones=self.goals.fired_milestones(),
                next_ids={
                    "category": self.categories.next_id,
                    "template": self.recurrence.next_id,
                    "budget": self.budgets.next_id,
                    "goal": self.goals.next_id,
                },
            )

    def subscribe(self, handler: Handler) -> Subscription:
        return self.bus.subscribe(handler)

    # Categories

    def add_category(self, name: str, kind: Kind, parent_id: CategoryId | None = None) -> Category:
        with self._writing("add_category"):
            self.budgets.check_can_gain_children(parent_id)
            return self.categories.add_category(name, kind, parent_id)

    def reparent_category(self, category_id: CategoryId, parent_id: CategoryId | None) -> Category:
        with self._writing("reparent_category"):
            self.budgets.check_can_gain_children(parent_id)
            return self.categories.reparent(category_id, parent_id)

    def rename_category(self, category_id: CategoryId, name: str) -> Category:
        with self._writing("rename_category"):
            return self.categories.rename(category_id, name)

    def delete_category(self, category_id: CategoryId) -> list[TransactionId]:
        """Soft-delete a category, moving its transactions and templates to uncategorized."""
        with self._writing("delete_category"):
            self.categories.get(category_id)
            fallback = self.categories.soft_delete(category_id)
            moved = self.store.reassign_category(category_id, fallback.id)
            self.recurrence.reassign_category(category_id, fallback.id)
        logger.info("Deleted category %s, reassigned %d transaction(s)", category_id, len(moved))
        return moved

    # Transactions

    def post_transaction(
        self, posted: date, amount: Money, category_id: CategoryId, memo: str = ""
    ) -> Transaction:
        with self._writing("post_transaction"):
            return self.store.post(
                NewTransaction(date=posted, amount=amount, category_id=category_id, memo=Description(memo))
            )

    def amend_transaction(
        self, txn_id: TransactionId, category_id: CategoryId | None = None, memo: str | None = None
    ) -> Transaction:
        with self._writing("amend_transaction"):
            return self.store.amend(txn_id, category_id=category_id, memo=memo)

    def tombstone_transaction(self, txn_id: TransactionId) -> Transaction:
        with self._writing("tombstone_transaction"):
            return self.store.tombstone(txn_id)

    def list_transactions(self, flt: TransactionFilter | None = None) -> list[Transaction]:
        return list(self.store.snapshot().query(flt))

    def balance(
        self, category_id: CategoryId | None = None, as_of: date | None = None, rollup: bool = True
    ) -> Money:
        """Live balance, optionally for one category (and its subtree) up to a date."""
        category_ids = None
        if category_id is not None:
            category_ids = self.categories.subtree_ids(category_id) if rollup else {category_id}
        return self.store.snapshot().balance(category_ids, as_of)

    def import_rows(self, rows: Sequence[ParsedRow], tolerance_days: int | None = None) -> ReconcileResult:
        with self._reporting("import_rows"):
            return self.importer.reconcile(rows, tolerance_days)

    # Recurrence

    def create_template(
        self, amount: Money, category_id: CategoryId, schedule: Schedule, start: date, memo: str = ""
    ) -> RecurrenceTemplate:
        return self.recurrence.create(amount, category_id, schedule, start, memo)

    def edit_template(
        self,
        template_id: TemplateId,
        amount: Money | None = None,
        category_id: CategoryId | None = None,
        memo: str | None = None,
        schedule: Schedule | None = None,
    ) -> RecurrenceTemplate:
        return self.recurrence.edit(template_id, amount, category_id, memo, schedule)

    def materialize(self, template_id: TemplateId, through: date, now: date) -> list[Transaction]:
        # Takes the per-template lock before the write lock; never call while holding the write lock.
        with self._reporting("materialize"):
            return self.recurrence.materialize(template_id, through, now)

    def materialize_all(self, through: date, now: date) -> list[Transaction]:
        with self._reporting("materialize_all"):
            return self.recurrence.materialize_all(through, now)

    def upcoming_occurrences(self, through: date) -> list[Occurrence]:
        return self.recurrence.upcoming(through)

    # Budgets

    def create_budget(
        self,
        category_id: CategoryId,
        limit: Money,
        as_of: date | datetime,
        period: PeriodDefinition | None = None,
        thresholds: Sequence[int] = (80, 100),
        rollup: bool = False,
    ) -> Budget:
        if period is None:
            period = self.default_period(PeriodKind.MONTHLY)
        with self._writing("create_budget"):
            return self.budgets.create(category_id, period, limit, thresholds, rollup, as_of)

    def default_period(self, kind: PeriodKind, anchor: date | None = None, span_days: int | None = None) -> PeriodDefinition:
        """Period definition using the configured time zone and week start."""
        return PeriodDefinition(
            kind=kind,
            timezone=self.settings.timezone,
            week_start=self.settings.week_start,
            anchor=anchor,
            span_days=span_days,
        )

    def budget_state(self, budget_id: BudgetId, instant: date | datetime) -> BudgetPeriodState:
        return self.budgets.evaluate(budget_id, instant)

    def evaluate_budgets(self, instant: date | datetime) -> list[BudgetPeriodState]:
        return self.budgets.evaluate_all(instant)

    # Goals

    def create_goal(
        self,
        name: str,
        target: Money,
        start: date,
        target_date: date | None = None,
        rule: ContributionRule = ContributionRule.MANUAL,
        sweep_percent: int | None = None,
        category_id: CategoryId | None = None,
    ) -> Goal:
        return self.goals.create(name, target, start, target_date, rule, sweep_percent, category_id)

    def record_contribution(self, goal_id: GoalId, txn_id: TransactionId) -> list[int]:
        return self.goals.record_contribution(goal_id, txn_id)

    def sweep(self, goal_id: GoalId, surplus: Money, posted: date) -> Transaction:
        return self.goals.sweep(goal_id, surplus, posted)

    def goal_progress(self, goal_id: GoalId, today: date) -> GoalProgress:
        return self.goals.progress(goal_id, today)
