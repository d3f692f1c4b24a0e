"""Tests for tally.domain.importer."""

import threading
from datetime import date

import pytest

from tally.domain.categories import UNCATEGORIZED_EXPENSE, UNCATEGORIZED_INCOME, CategoryGraph
from tally.domain.errors import InvalidAmountError
from tally.domain.events import EventBus
from tally.domain.importer import ImportReconciler
from tally.domain.ledger import TransactionStore
from tally.domain.models import Description, IntervalUnit, Kind, Money, SourceKind
from tally.domain.recurrence import RecurrenceEngine, Schedule
from tally.domain.transactions import NewTransaction, ParsedRow


@pytest.fixture
def graph() -> CategoryGraph:
    g = CategoryGraph()
    g.add_category("Groceries", Kind.EXPENSE)
    g.add_category("Rent", Kind.EXPENSE)
    g.add_category("Salary", Kind.INCOME)
    return g


@pytest.fixture
def store(graph: CategoryGraph) -> TransactionStore:
    return TransactionStore(graph)


@pytest.fixture
def recurrence(store: TransactionStore) -> RecurrenceEngine:
    return RecurrenceEngine(store, threading.RLock(), EventBus())


@pytest.fixture
def reconciler(graph: CategoryGraph, store: TransactionStore, recurrence: RecurrenceEngine) -> ImportReconciler:
    return ImportReconciler(graph, store, recurrence, threading.RLock(), tolerance_days=2)


def _row(day: date, amount: int, description: str, hint: str | None = None) -> ParsedRow:
    return ParsedRow(date=day, amount=Money(amount), description=description, category_hint=hint)


class TestReconcile:
    """Tests for ImportReconciler.reconcile."""

    def test_inserts_new_rows(self, graph: CategoryGraph, store: TransactionStore, reconciler: ImportReconciler) -> None:
        """Should insert rows as import transactions with hinted categories."""
        result = reconciler.reconcile(
            [
                _row(date(2025, 1, 5), -1250, "TESCO STORES", hint="groceries"),
                _row(date(2025, 1, 25), 300000, "ACME PAYROLL", hint="Salary"),
            ]
        )

        snapshot = store.snapshot()
        inserted = [snapshot.get(i) for i in result.inserted]
        assert [t.category_id for t in inserted] == [graph.resolve("Groceries").id, graph.resolve("Salary").id]
        assert all(t.source is SourceKind.IMPORT for t in inserted)
        assert result.duplicates == []
        assert result.conflicts == []

    def test_unresolved_hint_goes_to_uncategorized(self, store: TransactionStore, reconciler: ImportReconciler) -> None:
        """Should fall back to the uncategorized category of the amount's kind."""
        result = reconciler.reconcile(
            [
                _row(date(2025, 1, 5), -100, "Mystery", hint="Unknown"),
                _row(date(2025, 1, 6), 100, "Refund", hint="Groceries"),
            ]
        )

        snapshot = store.snapshot()
        assert [snapshot.get(i).category_id for i in result.inserted] == [UNCATEGORIZED_EXPENSE, UNCATEGORIZED_INCOME]

    def test_duplicate_of_existing(self, graph: CategoryGraph, store: TransactionStore, reconciler: ImportReconciler) -> None:
        """Should skip a row matching a live transaction's key."""
        store.post(
            NewTransaction(
                date=date(2025, 1, 5),
                amount=Money(-1250),
                category_id=graph.resolve("Groceries").id,
                memo=Description("Tesco  Stores"),
            )
        )

        result = reconciler.reconcile([_row(date(2025, 1, 5), -1250, "tesco stores")])

        assert result.inserted == []
        assert len(result.duplicates) == 1

    def test_reimport_is_idempotent(self, store: TransactionStore, reconciler: ImportReconciler) -> None:
        rows = [_row(date(2025, 1, 5), -1250, "Tesco"), _row(date(2025, 1, 9), -800, "Cafe")]
        reconciler.reconcile(rows)
        revision = store.revision

        result = reconciler.reconcile(rows)

        assert result.inserted == []
        assert len(result.duplicates) == 2
        assert store.revision == revision

    def test_near_match_is_conflict(self, graph: CategoryGraph, store: TransactionStore, reconciler: ImportReconciler) -> None:
        """Should flag same amount within tolerance but leave the ledger alone."""
        existing = store.post(
            NewTransaction(
                date=date(2025, 1, 5),
                amount=Money(-1250),
                category_id=graph.resolve("Groceries").id,
                memo=Description("Tesco"),
            )
        )

        result = reconciler.reconcile(
            [
                _row(date(2025, 1, 7), -1250, "TESCO 123"),
                _row(date(2025, 1, 8), -1250, "TESCO 456"),
            ]
        )

        assert [r.description for r in result.conflicts] == ["TESCO 123"]
        assert len(result.inserted) == 1
        assert store.snapshot().get(existing.id).memo == "Tesco"

    def test_tolerance_override(self, graph: CategoryGraph, store: TransactionStore, reconciler: ImportReconciler) -> None:
        store.post(
            NewTransaction(
                date=date(2025, 1, 5),
                amount=Money(-1250),
                category_id=graph.resolve("Groceries").id,
                memo=Description("Tesco"),
            )
        )

        result = reconciler.reconcile([_row(date(2025, 1, 7), -1250, "TESCO 123")], tolerance_days=0)
        assert len(result.inserted) == 1

    def test_rows_in_same_batch(self, reconciler: ImportReconciler) -> None:
        """Should treat earlier rows of the batch as existing."""
        result = reconciler.reconcile(
            [
                _row(date(2025, 1, 5), -500, "Cafe"),
                _row(date(2025, 1, 5), -500, "CAFE"),
                _row(date(2025, 1, 6), -500, "Bakery"),
            ]
        )

        assert len(result.inserted) == 1
        assert len(result.duplicates) == 1
        assert len(result.conflicts) == 1

    def test_projected_recurring_is_duplicate(
        self, graph: CategoryGraph, store: TransactionStore, recurrence: RecurrenceEngine, reconciler: ImportReconciler
    ) -> None:
        """Should not import a bank row for a recurring occurrence not yet posted."""
        recurrence.create(
            Money(-120000), graph.resolve("Rent").id, Schedule(unit=IntervalUnit.MONTH), date(2025, 1, 1), memo="Rent"
        )

        result = reconciler.reconcile([_row(date(2025, 2, 1), -120000, "RENT")])

        assert result.inserted == []
        assert len(result.duplicates) == 1
        assert store.revision == 0

    def test_tombstoned_does_not_block(
        self, graph: CategoryGraph, store: TransactionStore, reconciler: ImportReconciler
    ) -> None:
        txn = store.post(
            NewTransaction(
                date=date(2025, 1, 5),
                amount=Money(-1250),
                category_id=graph.resolve("Groceries").id,
                memo=Description("Tesco"),
            )
        )
        store.tombstone(txn.id)

        result = reconciler.reconcile([_row(date(2025, 1, 5), -1250, "Tesco")])
        assert len(result.inserted) == 1

    def test_batch_is_atomic(self, store: TransactionStore, reconciler: ImportReconciler) -> None:
        """Should insert nothing when any row is invalid."""
        with pytest.raises(InvalidAmountError):
            reconciler.reconcile([_row(date(2025, 1, 5), -100, "Ok"), _row(date(2025, 1, 6), 0, "Zero")])
        assert store.revision == 0

    def test_empty_batch(self, reconciler: ImportReconciler) -> None:
        result = reconciler.reconcile([])
        assert (result.inserted, result.duplicates, result.conflicts) == ([], [], [])
