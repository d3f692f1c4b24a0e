"""Transaction store: an append-only, versioned ledger.

Every mutation appends a new version record and bumps the store revision.
Nothing is overwritten, so any earlier revision can be reconstructed and
historical balances stay correct after later edits.

The store does not lock. The engine owns the single write path; readers
take a ``StoreSnapshot``, which is never mutated after it is published.
"""

from collections.abc import Collection, Iterable, Iterator, Mapping
from dataclasses import dataclass, replace
from datetime import date

from tally.domain.categories import CategoryGraph
from tally.domain.errors import AlreadyTombstonedError, NotFoundError, ValidationError
from tally.domain.models import CategoryId, Description, Money, SourceKind, TemplateId, TransactionId
from tally.domain.transactions import NewTransaction, Transaction, check_amount_for_kind, compute_dedup_key


@dataclass(frozen=True)
class TransactionFilter:
    """Filter for ledger queries. Date range is inclusive on both ends."""

    start: date | None = None
    end: date | None = None
    category_ids: Collection[CategoryId] | None = None
    source: SourceKind | None = None
    template_id: TemplateId | None = None
    include_tombstoned: bool = False

    def matches(self, txn: Transaction) -> bool:
        if txn.tombstoned and not self.include_tombstoned:
            return False
        if self.start is not None and txn.date < self.start:
            return False
        if self.end is not None and txn.date > self.end:
            return False
        if self.category_ids is not None and txn.category_id not in self.category_ids:
            return False
        if self.source is not None and txn.source is not self.source:
            return False
        if self.template_id is not None and txn.template_id != self.template_id:
            return False
        return True


@dataclass(frozen=True)
class StoreSnapshot:
    """Consistent view of the latest version of every transaction at one revision."""

    revision: int
    transactions: Mapping[TransactionId, Transaction]

    def get(self, txn_id: TransactionId) -> Transaction:
        txn = self.transactions.get(txn_id)
        if txn is None:
            raise NotFoundError(f"Transaction {txn_id} not found")
        return txn

    def query(self, flt: TransactionFilter | None = None) -> Iterator[Transaction]:
        """Yield matching transactions ordered by posted date, then insertion sequence."""
        flt = flt or TransactionFilter()
        for txn in sorted(self.transactions.values(), key=lambda t: (t.date, t.seq)):
            if flt.matches(txn):
                yield txn

    def live(self) -> Iterator[Transaction]:
        return self.query()

    def balance(self, category_ids: Collection[CategoryId] | None = None, as_of: date | None = None) -> Money:
        """Sum of live amounts, optionally limited to categories and to dates up to ``as_of``."""
        flt = TransactionFilter(end=as_of, category_ids=category_ids)
        return Money(sum(t.amount for t in self.transactions.values() if flt.matches(t)))

    def find_by_dedup_key(self, key: str) -> list[Transaction]:
        return [t for t in self.transactions.values() if not t.tombstoned and t.dedup_key == key]


class TransactionStore:
    """Versioned transaction ledger.

    Args:
        categories: Graph used to validate category references.
        records: Optional version log to replay (oldest first).
    """

    def __init__(self, categories: CategoryGraph, records: Iterable[Transaction] = ()) -> None:
        self._categories = categories
        self._records: list[Transaction] = []
        self._snapshot = StoreSnapshot(revision=0, transactions={})
        self._next_seq = 1
        if records:
            self._replay(records)

    @classmethod
    def replay(cls, categories: CategoryGraph, records: Iterable[Transaction]) -> "TransactionStore":
        """Rebuild a store from its version log.

        Raises:
            ValidationError: If revisions are not strictly increasing.
        """
        return cls(categories, list(records))

    @property
    def revision(self) -> int:
        return self._snapshot.revision

    @property
    def records(self) -> tuple[Transaction, ...]:
        """Full version log, oldest first."""
        return tuple(self._records)

    def snapshot(self, as_of_revision: int | None = None) -> StoreSnapshot:
        """Return the current snapshot, or rebuild the one at an earlier revision."""
        current = self._snapshot
        if as_of_revision is None or as_of_revision >= current.revision:
            return current
        latest: dict[TransactionId, Transaction] = {}
        for record in self._records:
            if record.revision > as_of_revision:
                break
            latest[record.id] = record
        return StoreSnapshot(revision=max(as_of_revision, 0), transactions=latest)

    def history(self, txn_id: TransactionId) -> list[Transaction]:
        """All versions of one transaction, oldest first."""
        versions = [r for r in self._records if r.id == txn_id]
        if not versions:
            raise NotFoundError(f"Transaction {txn_id} not found")
        return versions

    def _replay(self, records: Iterable[Transaction]) -> None:
        latest = dict(self._snapshot.transactions)
        revision = self._snapshot.revision
        for record in records:
            if record.revision <= revision:
                raise ValidationError(f"Record log out of order at revision {record.revision}")
            self._records.append(record)
            latest[record.id] = record
            revision = record.revision
            self._next_seq = max(self._next_seq, record.seq + 1)
        self._snapshot = StoreSnapshot(revision=revision, transactions=latest)

    def _append(self, versions: list[Transaction]) -> None:
        """Publish new versions as one revision step each, then swap the snapshot."""
        latest = dict(self._snapshot.transactions)
        for version in versions:
            self._records.append(version)
            latest[version.id] = version
        self._snapshot = StoreSnapshot(revision=versions[-1].revision, transactions=latest)

    def prepare(self, draft: NewTransaction) -> NewTransaction:
        """Validate a draft without posting it.

        Raises:
            UnknownCategoryError: Category is unknown or deleted.
            InvalidAmountError: Amount is zero or has the wrong sign.
        """
        category = self._categories.get(draft.category_id)
        check_amount_for_kind(draft.amount, category.kind)
        return draft

    def post(self, draft: NewTransaction) -> Transaction:
        """Append a new transaction."""
        return self.post_many([draft])[0]

    def post_many(self, drafts: list[NewTransaction]) -> list[Transaction]:
        """Append several transactions atomically: all validate or none are posted."""
        for draft in drafts:
            self.prepare(draft)
        if not drafts:
            return []

        revision = self.revision
        posted: list[Transaction] = []
        for draft in drafts:
            revision += 1
            seq = self._next_seq
            self._next_seq += 1
            posted.append(
                Transaction(
                    id=TransactionId(seq),
                    seq=seq,
                    date=draft.date,
                    amount=draft.amount,
                    category_id=draft.category_id,
                    memo=draft.memo,
                    source=draft.source,
                    template_id=draft.template_id,
                    dedup_key=compute_dedup_key(draft.date, draft.amount, draft.memo),
                    revision=revision,
                )
            )
        self._append(posted)
        return posted

    def _live(self, txn_id: TransactionId) -> Transaction:
        txn = self._snapshot.get(txn_id)
        if txn.tombstoned:
            raise AlreadyTombstonedError(f"Transaction {txn_id} was deleted")
        return txn

    def amend(
        self,
        txn_id: TransactionId,
        category_id: CategoryId | None = None,
        memo: str | None = None,
    ) -> Transaction:
        """Reassign category and/or edit memo, recording a new version.

        Amount, date and source never change after posting.
        """
        txn = self._live(txn_id)
        if category_id is None and memo is None:
            raise ValidationError("Nothing to amend")
        if category_id is not None:
            category = self._categories.get(category_id)
            check_amount_for_kind(txn.amount, category.kind)

        amended = replace(
            txn,
            category_id=category_id if category_id is not None else txn.category_id,
            memo=Description(memo) if memo is not None else txn.memo,
            revision=self.revision + 1,
        )
        self._append([amended])
        return amended

    def tombstone(self, txn_id: TransactionId) -> Transaction:
        """Mark a transaction deleted, keeping every earlier version."""
        txn = self._live(txn_id)
        deleted = replace(txn, tombstoned=True, revision=self.revision + 1)
        self._append([deleted])
        return deleted

    def reassign_category(self, old_id: CategoryId, new_id: CategoryId) -> list[TransactionId]:
        """Move every transaction (tombstoned ones included) off a category."""
        target = self._categories.get(new_id)
        affected = sorted(
            (t for t in self._snapshot.transactions.values() if t.category_id == old_id),
            key=lambda t: t.seq,
        )
        for txn in affected:
            check_amount_for_kind(txn.amount, target.kind)
        if not affected:
            return []

        revision = self.revision
        versions = []
        for txn in affected:
            revision += 1
            versions.append(replace(txn, category_id=new_id, revision=revision))
        self._append(versions)
        return [t.id for t in affected]
