"""Tests for tally.domain.budget."""

import threading
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from tally.domain import budget as budget_module
from tally.domain.budget import (
    BudgetEngine,
    PeriodDefinition,
    calculate_percentage,
    consumption,
    crossed_thresholds,
    period_window,
    validate_thresholds,
)
from tally.domain.categories import CategoryGraph
from tally.domain.errors import EvaluationSupersededError, NotFoundError, UnknownCategoryError, ValidationError
from tally.domain.events import BudgetThresholdCrossed, EventBus
from tally.domain.ledger import TransactionStore
from tally.domain.models import Description, Kind, Money, PeriodKind
from tally.domain.transactions import NewTransaction

MONTHLY = PeriodDefinition(kind=PeriodKind.MONTHLY)


@pytest.fixture
def graph() -> CategoryGraph:
    g = CategoryGraph()
    food = g.add_category("Food", Kind.EXPENSE)
    g.add_category("Groceries", Kind.EXPENSE, food.id)
    g.add_category("Dining", Kind.EXPENSE, food.id)
    g.add_category("Salary", Kind.INCOME)
    return g


@pytest.fixture
def store(graph: CategoryGraph) -> TransactionStore:
    return TransactionStore(graph)


@pytest.fixture
def events() -> list:
    return []


@pytest.fixture
def engine(graph: CategoryGraph, store: TransactionStore, events: list) -> BudgetEngine:
    bus = EventBus()
    bus.subscribe(events.append)
    return BudgetEngine(graph, store, bus, threading.RLock())


def _cat(graph: CategoryGraph, name: str):
    return graph.resolve(name).id


def _spend(graph: CategoryGraph, store: TransactionStore, day: date, amount: int, name: str = "Groceries") -> None:
    store.post(NewTransaction(date=day, amount=Money(amount), category_id=_cat(graph, name), memo=Description("")))


class TestPureHelpers:
    """Tests for the budget arithmetic helpers."""

    def test_consumption_is_magnitude(self) -> None:
        """Should report spending and earnings as positive numbers."""

        class T:
            def __init__(self, amount: int) -> None:
                self.amount = amount

        assert consumption([T(-300), T(-150)], Kind.EXPENSE) == Money(450)
        assert consumption([T(1000)], Kind.INCOME) == Money(1000)
        assert consumption([T(-300), T(50)], Kind.EXPENSE) == Money(250)

    def test_percentage_two_places(self) -> None:
        assert calculate_percentage(Money(45000), Money(50000)) == Decimal("90.00")
        assert calculate_percentage(Money(1), Money(3)) == Decimal("33.33")
        assert calculate_percentage(Money(2), Money(3)) == Decimal("66.67")

    def test_crossed_thresholds_exact(self) -> None:
        """Should compare in integer cents with no rounding slack."""
        assert crossed_thresholds(Money(39999), Money(50000), [80, 100]) == []
        assert crossed_thresholds(Money(40000), Money(50000), [80, 100]) == [80]
        assert crossed_thresholds(Money(60000), Money(50000), [80, 100]) == [80, 100]

    def test_validate_thresholds(self) -> None:
        assert validate_thresholds([50, 80, 100]) == (50, 80, 100)
        with pytest.raises(ValidationError):
            validate_thresholds([80, 80])
        with pytest.raises(ValidationError):
            validate_thresholds([0, 50])

    def test_period_window_uses_zone(self) -> None:
        """Should place an instant in the budget zone's calendar month."""
        instant = datetime(2025, 3, 1, 3, 0, tzinfo=timezone.utc)
        new_york = PeriodDefinition(kind=PeriodKind.MONTHLY, timezone="America/New_York")

        assert period_window(new_york, instant) == (date(2025, 2, 1), date(2025, 3, 1))
        assert period_window(MONTHLY, instant) == (date(2025, 3, 1), date(2025, 4, 1))

    def test_custom_period_window(self) -> None:
        period = PeriodDefinition(kind=PeriodKind.CUSTOM, anchor=date(2025, 1, 1), span_days=14)
        assert period_window(period, date(2025, 1, 20)) == (date(2025, 1, 15), date(2025, 1, 29))


class TestCreateBudget:
    """Tests for BudgetEngine.create."""

    def test_rejects_bad_input(self, graph: CategoryGraph, engine: BudgetEngine) -> None:
        groceries = _cat(graph, "Groceries")
        with pytest.raises(ValidationError):
            engine.create(groceries, MONTHLY, Money(0), as_of=date(2025, 1, 1))
        with pytest.raises(ValidationError):
            engine.create(groceries, MONTHLY, Money(100), thresholds=[100, 80], as_of=date(2025, 1, 1))
        with pytest.raises(ValidationError):
            engine.create(groceries, PeriodDefinition(kind=PeriodKind.CUSTOM), Money(100), as_of=date(2025, 1, 1))
        with pytest.raises(ValidationError):
            nowhere = PeriodDefinition(kind=PeriodKind.MONTHLY, timezone="Nowhere/Land")
            engine.create(groceries, nowhere, Money(100), as_of=date(2025, 1, 1))
        with pytest.raises(UnknownCategoryError):
            engine.create(999, MONTHLY, Money(100), as_of=date(2025, 1, 1))

    def test_parent_needs_rollup(self, graph: CategoryGraph, engine: BudgetEngine) -> None:
        """Should only budget a category with children as a rollup."""
        with pytest.raises(ValidationError):
            engine.create(_cat(graph, "Food"), MONTHLY, Money(100), as_of=date(2025, 1, 1))
        assert engine.create(_cat(graph, "Food"), MONTHLY, Money(100), rollup=True, as_of=date(2025, 1, 1)).rollup

    def test_starts_at_current_period(self, graph: CategoryGraph, engine: BudgetEngine) -> None:
        budget = engine.create(_cat(graph, "Groceries"), MONTHLY, Money(100), as_of=date(2025, 1, 17))
        assert budget.effective_from == date(2025, 1, 1)
        assert budget.effective_until is None

    def test_supersedes_at_next_boundary(self, graph: CategoryGraph, engine: BudgetEngine) -> None:
        """Should close the old budget and open the new one at the next period start."""
        old = engine.create(_cat(graph, "Groceries"), MONTHLY, Money(100), as_of=date(2025, 1, 17))
        new = engine.create(_cat(graph, "Groceries"), MONTHLY, Money(200), as_of=date(2025, 1, 20))

        assert engine.get(old.id).effective_until == date(2025, 2, 1)
        assert new.effective_from == date(2025, 2, 1)
        assert [b.id for b in engine.list_budgets(active_on=date(2025, 1, 31))] == [old.id]
        assert [b.id for b in engine.list_budgets(active_on=date(2025, 2, 1))] == [new.id]


class TestEvaluate:
    """Tests for BudgetEngine.evaluate."""

    def test_threshold_fires_once(
        self, graph: CategoryGraph, store: TransactionStore, engine: BudgetEngine, events: list
    ) -> None:
        """Should fire the 80% alert once when spending reaches 90%."""
        budget = engine.create(_cat(graph, "Groceries"), MONTHLY, Money(50000), thresholds=[80], as_of=date(2025, 1, 1))
        _spend(graph, store, date(2025, 1, 3), -30000)
        first = engine.evaluate(budget.id, date(2025, 1, 3))
        _spend(graph, store, date(2025, 1, 10), -15000)
        second = engine.evaluate(budget.id, date(2025, 1, 10))
        engine.evaluate(budget.id, date(2025, 1, 11))

        assert first.percentage == Decimal("60.00")
        assert second.percentage == Decimal("90.00")
        assert second.remaining == Money(5000)
        assert second.fired == frozenset({80})
        assert len(events) == 1
        assert isinstance(events[0], BudgetThresholdCrossed)
        assert (events[0].threshold, events[0].period_start) == (80, date(2025, 1, 1))

    def test_new_period_fires_again(
        self, graph: CategoryGraph, store: TransactionStore, engine: BudgetEngine, events: list
    ) -> None:
        budget = engine.create(_cat(graph, "Groceries"), MONTHLY, Money(1000), thresholds=[100], as_of=date(2025, 1, 1))
        _spend(graph, store, date(2025, 1, 3), -1000)
        _spend(graph, store, date(2025, 2, 3), -1000)

        engine.evaluate(budget.id, date(2025, 1, 31))
        feb = engine.evaluate(budget.id, date(2025, 2, 28))

        assert feb.consumed == Money(1000)
        assert [e.period_start for e in events] == [date(2025, 1, 1), date(2025, 2, 1)]

    def test_window_is_half_open(self, graph: CategoryGraph, store: TransactionStore, engine: BudgetEngine) -> None:
        """Should leave out the first day of the next period."""
        budget = engine.create(_cat(graph, "Groceries"), MONTHLY, Money(1000), as_of=date(2025, 1, 1))
        _spend(graph, store, date(2025, 1, 31), -100)
        _spend(graph, store, date(2025, 2, 1), -200)

        assert engine.evaluate(budget.id, date(2025, 1, 15)).consumed == Money(100)

    def test_rollup_includes_descendants(
        self, graph: CategoryGraph, store: TransactionStore, engine: BudgetEngine
    ) -> None:
        food = engine.create(_cat(graph, "Food"), MONTHLY, Money(1000), rollup=True, as_of=date(2025, 1, 1))
        groceries = engine.create(_cat(graph, "Groceries"), MONTHLY, Money(1000), as_of=date(2025, 1, 1))
        _spend(graph, store, date(2025, 1, 3), -100)
        _spend(graph, store, date(2025, 1, 4), -250, name="Dining")

        assert engine.evaluate(food.id, date(2025, 1, 5)).consumed == Money(350)
        assert engine.evaluate(groceries.id, date(2025, 1, 5)).consumed == Money(100)

    def test_income_budget(self, graph: CategoryGraph, store: TransactionStore, engine: BudgetEngine) -> None:
        budget = engine.create(_cat(graph, "Salary"), MONTHLY, Money(300000), as_of=date(2025, 1, 1))
        _spend(graph, store, date(2025, 1, 25), 150000, name="Salary")

        assert engine.evaluate(budget.id, date(2025, 1, 26)).percentage == Decimal("50.00")

    def test_tombstone_lowers_consumption(
        self, graph: CategoryGraph, store: TransactionStore, engine: BudgetEngine
    ) -> None:
        """Should recompute after any store mutation."""
        budget = engine.create(_cat(graph, "Groceries"), MONTHLY, Money(1000), as_of=date(2025, 1, 1))
        _spend(graph, store, date(2025, 1, 3), -400)
        assert engine.evaluate(budget.id, date(2025, 1, 3)).consumed == Money(400)

        store.tombstone(1)
        state = engine.evaluate(budget.id, date(2025, 1, 3))
        assert state.consumed == Money(0)
        assert state.revision == store.revision

    def test_reuses_cache_at_same_revision(
        self, graph: CategoryGraph, store: TransactionStore, engine: BudgetEngine, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        budget = engine.create(_cat(graph, "Groceries"), MONTHLY, Money(1000), as_of=date(2025, 1, 1))
        _spend(graph, store, date(2025, 1, 3), -400)
        engine.evaluate(budget.id, date(2025, 1, 3))

        def fail(*args, **kwargs):
            raise AssertionError("scanned again")

        monkeypatch.setattr(engine, "_scan", fail)
        assert engine.evaluate(budget.id, date(2025, 1, 20)).consumed == Money(400)

    def test_recomputes_after_reparent(
        self, graph: CategoryGraph, store: TransactionStore, engine: BudgetEngine, events: list
    ) -> None:
        """Should pick up spending moved into a rollup subtree at the same store revision."""
        travel = graph.add_category("Travel", Kind.EXPENSE)
        budget = engine.create(
            _cat(graph, "Food"), MONTHLY, Money(50000), thresholds=[80], rollup=True, as_of=date(2025, 1, 1)
        )
        _spend(graph, store, date(2025, 1, 3), -45000, name="Travel")
        assert engine.evaluate(budget.id, date(2025, 1, 5)).consumed == Money(0)

        graph.reparent(travel.id, _cat(graph, "Food"))
        state = engine.evaluate(budget.id, date(2025, 1, 5))

        assert state.consumed == Money(45000)
        assert state.percentage == Decimal("90.00")
        assert state.fired == frozenset({80})
        assert [e.threshold for e in events] == [80]

    def test_fired_state_survives_restart(
        self, graph: CategoryGraph, store: TransactionStore, engine: BudgetEngine
    ) -> None:
        """Should not re-fire thresholds recorded before a reload."""
        budget = engine.create(_cat(graph, "Groceries"), MONTHLY, Money(1000), thresholds=[50], as_of=date(2025, 1, 1))
        _spend(graph, store, date(2025, 1, 3), -600)
        engine.evaluate(budget.id, date(2025, 1, 3))

        events: list = []
        bus = EventBus()
        bus.subscribe(events.append)
        reloaded = BudgetEngine(
            graph, store, bus, threading.RLock(), budgets=engine.list_budgets(), fired=engine.fired_thresholds()
        )
        reloaded.evaluate(budget.id, date(2025, 1, 4))

        assert events == []

    def test_outside_effective_range(self, graph: CategoryGraph, engine: BudgetEngine) -> None:
        budget = engine.create(_cat(graph, "Groceries"), MONTHLY, Money(1000), as_of=date(2025, 3, 10))
        with pytest.raises(ValidationError):
            engine.evaluate(budget.id, date(2025, 2, 28))

    def test_unknown_budget(self, engine: BudgetEngine) -> None:
        with pytest.raises(NotFoundError):
            engine.evaluate(42, date(2025, 1, 1))

    def test_superseded_scan(
        self, graph: CategoryGraph, store: TransactionStore, engine: BudgetEngine, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Should abandon a scan once a newer evaluation of the same budget starts."""
        budget = engine.create(_cat(graph, "Groceries"), MONTHLY, Money(1000), as_of=date(2025, 1, 1))
        _spend(graph, store, date(2025, 1, 3), -100)
        _spend(graph, store, date(2025, 1, 4), -100)
        monkeypatch.setattr(budget_module, "SCAN_CHECK_INTERVAL", 1)

        real = store.snapshot()
        interrupted: list = []
        started: list = []

        class InterruptingSnapshot:
            revision = real.revision

            def query(self, flt=None):
                for txn in real.query(flt):
                    if not started:
                        started.append(txn)
                        interrupted.append(engine.evaluate(budget.id, date(2025, 1, 5)))
                    yield txn

        monkeypatch.setattr(store, "snapshot", lambda *args, **kwargs: InterruptingSnapshot())

        with pytest.raises(EvaluationSupersededError):
            engine.evaluate(budget.id, date(2025, 1, 5))
        assert interrupted[0].consumed == Money(200)

    def test_evaluate_all(self, graph: CategoryGraph, store: TransactionStore, engine: BudgetEngine) -> None:
        first = engine.create(_cat(graph, "Groceries"), MONTHLY, Money(1000), as_of=date(2025, 1, 1))
        second = engine.create(_cat(graph, "Dining"), MONTHLY, Money(1000), as_of=date(2025, 1, 1))

        states = engine.evaluate_all(date(2025, 1, 10))
        assert [s.budget_id for s in states] == [first.id, second.id]


class TestChildrenGuard:
    """Tests for BudgetEngine.check_can_gain_children."""

    def test_open_leaf_budget_blocks_children(self, graph: CategoryGraph, engine: BudgetEngine) -> None:
        """Should refuse subcategories under a category budgeted without rollup."""
        engine.create(_cat(graph, "Groceries"), MONTHLY, Money(1000), as_of=date(2025, 1, 1))

        with pytest.raises(ValidationError, match="rollup"):
            engine.check_can_gain_children(_cat(graph, "Groceries"))

    def test_rollup_and_unbudgeted_allowed(self, graph: CategoryGraph, engine: BudgetEngine) -> None:
        engine.create(_cat(graph, "Food"), MONTHLY, Money(1000), rollup=True, as_of=date(2025, 1, 1))

        engine.check_can_gain_children(_cat(graph, "Food"))
        engine.check_can_gain_children(_cat(graph, "Dining"))
        engine.check_can_gain_children(None)
