"""Tests for tally.domain.ledger (the versioned transaction store)."""

from datetime import date

import pytest

from tally.domain.categories import CategoryGraph
from tally.domain.errors import (
    AlreadyTombstonedError,
    InvalidAmountError,
    NotFoundError,
    UnknownCategoryError,
    ValidationError,
)
from tally.domain.ledger import TransactionFilter, TransactionStore
from tally.domain.models import Description, Kind, Money, SourceKind
from tally.domain.transactions import NewTransaction


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


def _cat(graph: CategoryGraph, name: str):
    category = graph.resolve(name)
    assert category is not None
    return category.id


def _draft(graph: CategoryGraph, day: date, amount: int, name: str = "Groceries", memo: str = "") -> NewTransaction:
    return NewTransaction(date=day, amount=Money(amount), category_id=_cat(graph, name), memo=Description(memo))


class TestPost:
    """Tests for post and post_many."""

    def test_assigns_ids_and_bumps_revision(self, graph: CategoryGraph, store: TransactionStore) -> None:
        """Should hand out increasing ids and one revision per transaction."""
        first = store.post(_draft(graph, date(2025, 1, 5), -1000, memo="Tesco"))
        second = store.post(_draft(graph, date(2025, 1, 6), -500))

        assert (first.id, first.seq, first.revision) == (1, 1, 1)
        assert (second.id, second.seq, second.revision) == (2, 2, 2)
        assert store.revision == 2
        assert first.source is SourceKind.MANUAL
        assert first.dedup_key

    def test_rejects_wrong_sign(self, graph: CategoryGraph, store: TransactionStore) -> None:
        """Should reject a positive expense and a negative income."""
        with pytest.raises(InvalidAmountError):
            store.post(_draft(graph, date(2025, 1, 5), 1000))
        with pytest.raises(InvalidAmountError):
            store.post(_draft(graph, date(2025, 1, 5), -1000, name="Salary"))
        assert store.revision == 0

    def test_rejects_zero(self, graph: CategoryGraph, store: TransactionStore) -> None:
        with pytest.raises(InvalidAmountError):
            store.post(_draft(graph, date(2025, 1, 5), 0))

    def test_rejects_unknown_category(self, store: TransactionStore) -> None:
        draft = NewTransaction(date=date(2025, 1, 5), amount=Money(-100), category_id=999)
        with pytest.raises(UnknownCategoryError):
            store.post(draft)

    def test_post_many_is_atomic(self, graph: CategoryGraph, store: TransactionStore) -> None:
        """Should post nothing when any draft in the batch is invalid."""
        drafts = [
            _draft(graph, date(2025, 1, 5), -100),
            _draft(graph, date(2025, 1, 6), 100),
        ]
        with pytest.raises(InvalidAmountError):
            store.post_many(drafts)

        assert store.revision == 0
        assert list(store.snapshot().query()) == []

    def test_post_many_empty(self, store: TransactionStore) -> None:
        assert store.post_many([]) == []
        assert store.revision == 0


class TestQuery:
    """Tests for snapshot queries and balances."""

    def test_orders_by_date_then_sequence(self, graph: CategoryGraph, store: TransactionStore) -> None:
        """Should break date ties by insertion order."""
        late = store.post(_draft(graph, date(2025, 1, 9), -100, memo="late"))
        first = store.post(_draft(graph, date(2025, 1, 2), -100, memo="first"))
        second = store.post(_draft(graph, date(2025, 1, 2), -100, memo="second"))

        ids = [t.id for t in store.snapshot().query()]
        assert ids == [first.id, second.id, late.id]

    def test_filters(self, graph: CategoryGraph, store: TransactionStore) -> None:
        """Should filter by inclusive date range and category."""
        store.post(_draft(graph, date(2025, 1, 1), -100))
        store.post(_draft(graph, date(2025, 1, 15), -200, name="Rent"))
        store.post(_draft(graph, date(2025, 1, 31), -300))

        snapshot = store.snapshot()
        in_range = snapshot.query(TransactionFilter(start=date(2025, 1, 1), end=date(2025, 1, 15)))
        groceries = snapshot.query(TransactionFilter(category_ids={_cat(graph, "Groceries")}))

        assert [t.amount for t in in_range] == [-100, -200]
        assert [t.amount for t in groceries] == [-100, -300]

    def test_balance(self, graph: CategoryGraph, store: TransactionStore) -> None:
        """Should sum live amounts up to and including as_of."""
        store.post(_draft(graph, date(2025, 1, 1), 300000, name="Salary"))
        store.post(_draft(graph, date(2025, 1, 2), -120000, name="Rent"))
        gone = store.post(_draft(graph, date(2025, 1, 3), -5000))
        store.post(_draft(graph, date(2025, 2, 1), -7000))
        store.tombstone(gone.id)

        snapshot = store.snapshot()
        assert snapshot.balance() == Money(300000 - 120000 - 7000)
        assert snapshot.balance(as_of=date(2025, 1, 31)) == Money(180000)
        assert snapshot.balance(category_ids={_cat(graph, "Groceries")}) == Money(-7000)

    def test_find_by_dedup_key_skips_tombstoned(self, graph: CategoryGraph, store: TransactionStore) -> None:
        txn = store.post(_draft(graph, date(2025, 1, 1), -100, memo="Coffee"))
        assert store.snapshot().find_by_dedup_key(txn.dedup_key) == [txn]

        store.tombstone(txn.id)
        assert store.snapshot().find_by_dedup_key(txn.dedup_key) == []

    def test_snapshot_is_not_mutated_by_later_posts(self, graph: CategoryGraph, store: TransactionStore) -> None:
        """Should leave a published snapshot untouched."""
        store.post(_draft(graph, date(2025, 1, 1), -100))
        before = store.snapshot()
        store.post(_draft(graph, date(2025, 1, 2), -100))

        assert before.revision == 1
        assert len(list(before.query())) == 1


class TestAmendAndTombstone:
    """Tests for amend, tombstone and history."""

    def test_amend_records_new_version(self, graph: CategoryGraph, store: TransactionStore) -> None:
        """Should append a version and keep the original in history."""
        txn = store.post(_draft(graph, date(2025, 1, 5), -1000, memo="Tesco"))
        amended = store.amend(txn.id, category_id=_cat(graph, "Rent"), memo="Landlord")

        assert amended.revision == 2
        assert amended.amount == txn.amount
        assert amended.date == txn.date
        assert [v.memo for v in store.history(txn.id)] == ["Tesco", "Landlord"]
        assert store.snapshot().get(txn.id).category_id == _cat(graph, "Rent")

    def test_amend_kind_mismatch(self, graph: CategoryGraph, store: TransactionStore) -> None:
        """Should refuse to move an expense into an income category."""
        txn = store.post(_draft(graph, date(2025, 1, 5), -1000))
        with pytest.raises(InvalidAmountError):
            store.amend(txn.id, category_id=_cat(graph, "Salary"))

    def test_amend_nothing(self, graph: CategoryGraph, store: TransactionStore) -> None:
        txn = store.post(_draft(graph, date(2025, 1, 5), -1000))
        with pytest.raises(ValidationError):
            store.amend(txn.id)

    def test_amend_unknown(self, store: TransactionStore) -> None:
        with pytest.raises(NotFoundError):
            store.amend(42, memo="x")

    def test_tombstone_twice(self, graph: CategoryGraph, store: TransactionStore) -> None:
        """Should refuse to delete or amend a deleted transaction."""
        txn = store.post(_draft(graph, date(2025, 1, 5), -1000))
        store.tombstone(txn.id)

        with pytest.raises(AlreadyTombstonedError):
            store.tombstone(txn.id)
        with pytest.raises(AlreadyTombstonedError):
            store.amend(txn.id, memo="again")

    def test_tombstoned_visible_on_request(self, graph: CategoryGraph, store: TransactionStore) -> None:
        txn = store.post(_draft(graph, date(2025, 1, 5), -1000))
        store.tombstone(txn.id)

        snapshot = store.snapshot()
        assert list(snapshot.query()) == []
        assert [t.id for t in snapshot.query(TransactionFilter(include_tombstoned=True))] == [txn.id]

    def test_history_unknown(self, store: TransactionStore) -> None:
        with pytest.raises(NotFoundError):
            store.history(7)


class TestRevisions:
    """Tests for historical snapshots and replay."""

    def test_snapshot_as_of_revision(self, graph: CategoryGraph, store: TransactionStore) -> None:
        """Should rebuild the view before an amendment and a deletion."""
        txn = store.post(_draft(graph, date(2025, 1, 5), -1000, memo="Tesco"))
        store.amend(txn.id, memo="Tesco Metro")
        store.tombstone(txn.id)

        assert store.snapshot(as_of_revision=1).get(txn.id).memo == "Tesco"
        assert store.snapshot(as_of_revision=2).get(txn.id).memo == "Tesco Metro"
        assert store.snapshot(as_of_revision=1).balance() == Money(-1000)
        assert store.snapshot().balance() == Money(0)

    def test_snapshot_before_first_post(self, graph: CategoryGraph, store: TransactionStore) -> None:
        store.post(_draft(graph, date(2025, 1, 5), -1000))
        assert list(store.snapshot(as_of_revision=0).query()) == []

    def test_replay_rebuilds_store(self, graph: CategoryGraph, store: TransactionStore) -> None:
        """Should restore snapshot, revision and sequence counter from the log."""
        txn = store.post(_draft(graph, date(2025, 1, 5), -1000))
        store.amend(txn.id, memo="edited")

        rebuilt = TransactionStore.replay(graph, store.records)
        assert rebuilt.revision == 2
        assert rebuilt.snapshot().get(txn.id).memo == "edited"
        assert rebuilt.post(_draft(graph, date(2025, 1, 6), -1)).id == 2

    def test_replay_out_of_order(self, graph: CategoryGraph, store: TransactionStore) -> None:
        store.post(_draft(graph, date(2025, 1, 5), -1000))
        store.post(_draft(graph, date(2025, 1, 6), -1000))
        with pytest.raises(ValidationError):
            TransactionStore.replay(graph, reversed(store.records))


class TestReassignCategory:
    """Tests for reassign_category."""

    def test_moves_live_and_tombstoned(self, graph: CategoryGraph, store: TransactionStore) -> None:
        """Should move every transaction off the old category."""
        groceries = _cat(graph, "Groceries")
        rent = _cat(graph, "Rent")
        kept = store.post(_draft(graph, date(2025, 1, 5), -1000))
        gone = store.post(_draft(graph, date(2025, 1, 6), -500))
        store.post(_draft(graph, date(2025, 1, 7), -200, name="Rent"))
        store.tombstone(gone.id)

        moved = store.reassign_category(groceries, rent)
        snapshot = store.snapshot()

        assert moved == [kept.id, gone.id]
        assert snapshot.get(gone.id).category_id == rent
        assert snapshot.get(gone.id).tombstoned
        assert snapshot.balance(category_ids={rent}) == Money(-1200)

    def test_nothing_to_move(self, graph: CategoryGraph, store: TransactionStore) -> None:
        assert store.reassign_category(_cat(graph, "Groceries"), _cat(graph, "Rent")) == []
        assert store.revision == 0
