"""Budget engine: period-scoped consumption and threshold alerts.

Pure helpers at the top compute windows, consumption and percentages;
``BudgetEngine`` holds budget definitions and the period-state cache.

All monetary amounts are in cents (Money type). Consumption is reported as a
positive magnitude: spending for expense budgets, earnings for income ones.
"""

import logging
import threading
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from tally.dates import get_zone, local_date, month_window, span_window, week_window
from tally.domain.categories import CategoryGraph
from tally.domain.errors import EvaluationSupersededError, NotFoundError, ValidationError
from tally.domain.events import BudgetThresholdCrossed, EventBus
from tally.domain.ledger import StoreSnapshot, TransactionFilter, TransactionStore
from tally.domain.models import BudgetId, CategoryId, Kind, Money, PeriodKind
from tally.domain.transactions import Transaction

logger = logging.getLogger(__name__)

# How many transactions a scan reads between supersession checks
SCAN_CHECK_INTERVAL = 256


@dataclass(frozen=True)
class PeriodDefinition:
    """How a budget slices time.

    ``week_start`` is 0=Monday. Custom periods repeat every ``span_days``
    from ``anchor``.
    """

    kind: PeriodKind
    timezone: str = "UTC"
    week_start: int = 0
    anchor: date | None = None
    span_days: int | None = None


@dataclass(frozen=True)
class Budget:
    """Immutable budget definition.

    Active on local dates in ``[effective_from, effective_until)``.
    """

    id: BudgetId
    category_id: CategoryId
    period: PeriodDefinition
    limit: Money
    thresholds: tuple[int, ...]
    rollup: bool
    effective_from: date
    effective_until: date | None = None


@dataclass(frozen=True)
class BudgetPeriodState:
    """Derived consumption state of one budget period instance."""

    budget_id: BudgetId
    period_start: date
    period_end: date
    consumed: Money
    remaining: Money
    percentage: Decimal
    fired: frozenset[int]
    revision: int


@dataclass
class _CacheEntry:
    fired: frozenset[int] = frozenset()
    state: BudgetPeriodState | None = None
    graph_version: int = -1


def validate_period(period: PeriodDefinition) -> None:
    """Reject malformed period definitions.

    Raises:
        ValidationError: If a field is out of range.
    """
    try:
        get_zone(period.timezone)
    except ValueError as e:
        raise ValidationError(str(e)) from e
    if not 0 <= period.week_start <= 6:
        raise ValidationError(f"Week start must be between 0 and 6, got {period.week_start}")
    if period.kind is PeriodKind.CUSTOM:
        if period.anchor is None or period.span_days is None:
            raise ValidationError("Custom periods need an anchor date and a span in days")
        if period.span_days < 1:
            raise ValidationError("Custom period span must be at least one day")


def validate_thresholds(thresholds: Iterable[int]) -> tuple[int, ...]:
    """Check thresholds are positive and strictly increasing.

    Raises:
        ValidationError: If they are not.
    """
    result = tuple(thresholds)
    if any(t <= 0 for t in result):
        raise ValidationError("Thresholds must be positive percentages")
    if any(b <= a for a, b in zip(result, result[1:])):
        raise ValidationError(f"Thresholds must be strictly increasing, got {list(result)}")
    return result


def period_window(period: PeriodDefinition, instant: date | datetime) -> tuple[date, date]:
    """Half-open local-date window of the period instance containing ``instant``."""
    day = local_date(instant, period.timezone)
    if period.kind is PeriodKind.MONTHLY:
        return month_window(day)
    if period.kind is PeriodKind.WEEKLY:
        return week_window(day, period.week_start)
    if period.anchor is None or period.span_days is None:
        raise ValidationError("Custom periods need an anchor date and a span in days")
    return span_window(day, period.anchor, period.span_days)


def consumption(transactions: Iterable[Transaction], kind: Kind) -> Money:
    """Sum amounts as a consumption magnitude for a budget of ``kind``."""
    total = sum(t.amount for t in transactions)
    return Money(-total if kind is Kind.EXPENSE else total)


def calculate_percentage(consumed: Money, limit: Money) -> Decimal:
    """Percentage of the limit used, rounded to two places."""
    return (Decimal(consumed) * 100 / Decimal(limit)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def crossed_thresholds(consumed: Money, limit: Money, thresholds: Iterable[int]) -> list[int]:
    """Thresholds met or exceeded, compared exactly in integer cents."""
    return [t for t in thresholds if consumed * 100 >= t * limit]


class BudgetEngine:
    """Budget definitions plus the cached per-period state.

    Cache rule: a cached consumption figure is reused only while both the
    store revision and the category graph version it was computed at are
    still current. Fired-threshold sets are never invalidated, which is
    what makes alerts at-most-once.
    """

    def __init__(
        self,
        categories: CategoryGraph,
        store: TransactionStore,
        bus: EventBus,
        write_lock: threading.RLock,
        budgets: list[Budget] | None = None,
        fired: dict[tuple[BudgetId, date], frozenset[int]] | None = None,
        next_id: int | None = None,
    ) -> None:
        self._categories = categories
        self._store = store
        self._bus = bus
        self._write_lock = write_lock
        self._budgets: dict[BudgetId, Budget] = {b.id: b for b in budgets or []}
        self._next_id = next_id if next_id is not None else max(self._budgets, default=0) + 1
        self._cache: dict[tuple[BudgetId, date], _CacheEntry] = {
            key: _CacheEntry(fired=value) for key, value in (fired or {}).items()
        }
        self._generations: dict[BudgetId, int] = {}
        self._cache_lock = threading.Lock()

    @property
    def next_id(self) -> int:
        return self._next_id

    def get(self, budget_id: BudgetId) -> Budget:
        budget = self._budgets.get(budget_id)
        if budget is None:
            raise NotFoundError(f"Budget {budget_id} not found")
        return budget

    def list_budgets(self, active_on: date | None = None) -> list[Budget]:
        budgets = sorted(self._budgets.values(), key=lambda b: b.id)
        if active_on is None:
            return budgets
        return [b for b in budgets if self._covers(b, active_on)]

    def fired_thresholds(self) -> dict[tuple[BudgetId, date], frozenset[int]]:
        """Every recorded firing, for persistence."""
        with self._cache_lock:
            return {key: entry.fired for key, entry in self._cache.items() if entry.fired}

    @staticmethod
    def _covers(budget: Budget, day: date) -> bool:
        if day < budget.effective_from:
            return False
        return budget.effective_until is None or day < budget.effective_until

    def create(
        self,
        category_id: CategoryId,
        period: PeriodDefinition,
        limit: Money,
        thresholds: Iterable[int] = (80, 100),
        rollup: bool = False,
        as_of: date | datetime | None = None,
    ) -> Budget:
        """Create a budget, superseding any active one for the same category and period.

        The predecessor is closed at the next period boundary after ``as_of``
        and the new budget starts there, so no finished period changes.
        Without a predecessor the budget covers the period containing ``as_of``.

        Raises:
            UnknownCategoryError: Category is unknown or deleted.
            ValidationError: Bad limit, thresholds or period, or a non-leaf
                category without ``rollup``.
        """
        validate_period(period)
        checked = validate_thresholds(thresholds)
        if limit <= 0:
            raise ValidationError("Budget limit must be positive")
        if as_of is None:
            raise ValidationError("A reference date is required to place the budget in time")

        with self._write_lock:
            category = self._categories.get(category_id)
            if not rollup and not self._categories.is_leaf(category.id):
                raise ValidationError(f"'{category.name}' has subcategories; create a rollup budget instead")

            start, end = period_window(period, as_of)
            predecessor = next(
                (
                    b
                    for b in self._budgets.values()
                    if b.category_id == category_id and b.period == period and b.effective_until is None
                ),
                None,
            )
            budgets = dict(self._budgets)
            effective_from = start
            if predecessor is not None:
                budgets[predecessor.id] = replace(predecessor, effective_until=end)
                effective_from = end
                logger.info("Budget %s superseded from %s", predecessor.id, end)

            budget = Budget(
                id=BudgetId(self._next_id),
                category_id=category_id,
                period=period,
                limit=limit,
                thresholds=checked,
                rollup=rollup,
                effective_from=effective_from,
            )
            budgets[budget.id] = budget
            self._budgets = budgets
            self._next_id += 1
        return budget

    def check_can_gain_children(self, category_id: CategoryId | None) -> None:
        """Refuse to put subcategories under a category with an open leaf budget.

        Raises:
            ValidationError: An open non-rollup budget tracks the category.
        """
        if category_id is None:
            return
        for budget in self._budgets.values():
            if budget.category_id == category_id and not budget.rollup and budget.effective_until is None:
                name = self._categories.get(category_id, include_deleted=True).name
                raise ValidationError(
                    f"'{name}' has budget {budget.id} without rollup; replace it with a rollup budget first"
                )

    def _category_ids(self, budget: Budget) -> frozenset[CategoryId]:
        category = self._categories.get(budget.category_id, include_deleted=True)
        if budget.rollup and not category.deleted:
            return self._categories.subtree_ids(category.id)
        return frozenset([category.id])

    def _scan(self, budget: Budget, snapshot: StoreSnapshot, start: date, end: date, ticket: int) -> Money:
        flt = TransactionFilter(start=start, end=end - timedelta(days=1), category_ids=self._category_ids(budget))
        kind = self._categories.get(budget.category_id, include_deleted=True).kind
        consumed = consumption(self._supervised(budget.id, snapshot.query(flt), ticket), kind)
        self._check_ticket(budget.id, ticket)
        return consumed

    def _check_ticket(self, budget_id: BudgetId, ticket: int) -> None:
        if self._generations.get(budget_id) != ticket:
            raise EvaluationSupersededError(f"Evaluation of budget {budget_id} superseded by a newer request")

    def _supervised(self, budget_id: BudgetId, transactions: Iterable[Transaction], ticket: int) -> Iterator[Transaction]:
        for count, txn in enumerate(transactions, start=1):
            if count % SCAN_CHECK_INTERVAL == 0:
                self._check_ticket(budget_id, ticket)
            yield txn

    def evaluate(self, budget_id: BudgetId, instant: date | datetime) -> BudgetPeriodState:
        """Compute the state of the period containing ``instant`` and fire new alerts.

        Raises:
            NotFoundError: Unknown budget.
            ValidationError: Budget is not in effect at ``instant``.
            EvaluationSupersededError: A newer evaluation of the same budget
                started while this one was scanning.
        """
        budget = self.get(budget_id)
        day = local_date(instant, budget.period.timezone)
        if not self._covers(budget, day):
            raise ValidationError(f"Budget {budget_id} is not in effect on {day}")

        start, end = period_window(budget.period, day)
        key = (budget_id, start)
        snapshot = self._store.snapshot()
        graph_version = self._categories.version

        with self._cache_lock:
            ticket = self._generations.get(budget_id, 0) + 1
            self._generations[budget_id] = ticket
            cached = self._cache.get(key)

        if (
            cached is not None
            and cached.state is not None
            and cached.state.revision == snapshot.revision
            and cached.graph_version == graph_version
        ):
            consumed = cached.state.consumed
        else:
            consumed = self._scan(budget, snapshot, start, end, ticket)

        with self._cache_lock:
            entry = self._cache.setdefault(key, _CacheEntry())
            newly = [t for t in crossed_thresholds(consumed, budget.limit, budget.thresholds) if t not in entry.fired]
            entry.fired = entry.fired | frozenset(newly)
            state = BudgetPeriodState(
                budget_id=budget_id,
                period_start=start,
                period_end=end,
                consumed=consumed,
                remaining=Money(budget.limit - consumed),
                percentage=calculate_percentage(consumed, budget.limit),
                fired=entry.fired,
                revision=snapshot.revision,
            )
            entry.state = state
            entry.graph_version = graph_version

        for threshold in newly:
            logger.info("Budget %s crossed %s%% for period starting %s", budget_id, threshold, start)
            self._bus.publish(
                BudgetThresholdCrossed(budget_id=budget_id, threshold=threshold, period_start=start, instant=instant)
            )
        return state

    def evaluate_all(self, instant: date | datetime) -> list[BudgetPeriodState]:
        """Evaluate every budget in effect at ``instant``."""
        states = []
        for budget in self._budgets.values():
            if self._covers(budget, local_date(instant, budget.period.timezone)):
                states.append(self.evaluate(budget.id, instant))
        return sorted(states, key=lambda s: s.budget_id)
