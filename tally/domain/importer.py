"""Import reconciler: merges parsed bank rows into the ledger.

Each row is classified against live transactions, unposted recurring
projections, and rows accepted earlier in the same batch:

- duplicate: same dedup key (date, amount, normalized description)
- conflict: same amount within the date tolerance but not an exact match
- new: inserted with source ``import``

Existing transactions are never modified. Categories come only from the
row's hint; anything else lands in the uncategorized category of the
amount's kind.
"""

import logging
import threading
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, timedelta

from tally.domain.categories import CategoryGraph
from tally.domain.errors import InvalidAmountError
from tally.domain.ledger import TransactionStore
from tally.domain.models import Description, Money, SourceKind, TransactionId, kind_for_amount
from tally.domain.recurrence import Occurrence, RecurrenceEngine
from tally.domain.transactions import NewTransaction, ParsedRow, Transaction, compute_dedup_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    """Something an incoming row could be a copy of."""

    date: date
    amount: Money
    dedup_key: str


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one reconcile call."""

    inserted: list[TransactionId] = field(default_factory=list)
    duplicates: list[ParsedRow] = field(default_factory=list)
    conflicts: list[ParsedRow] = field(default_factory=list)


class CandidateIndex:
    """Lookup of candidates by dedup key and by amount."""

    def __init__(self, candidates: Iterable[Candidate] = ()) -> None:
        self._keys: set[str] = set()
        self._by_amount: dict[Money, list[Candidate]] = defaultdict(list)
        for candidate in candidates:
            self.add(candidate)

    def add(self, candidate: Candidate) -> None:
        self._keys.add(candidate.dedup_key)
        self._by_amount[candidate.amount].append(candidate)

    def classify(self, row: ParsedRow, key: str, tolerance_days: int) -> str:
        """Return "duplicate", "conflict" or "new" for a row."""
        if key in self._keys:
            return "duplicate"
        window = timedelta(days=tolerance_days)
        for candidate in self._by_amount.get(row.amount, ()):
            if abs(candidate.date - row.date) <= window:
                return "conflict"
        return "new"


def transaction_candidate(txn: Transaction) -> Candidate:
    return Candidate(date=txn.date, amount=txn.amount, dedup_key=txn.dedup_key)


def occurrence_candidate(occ: Occurrence) -> Candidate:
    return Candidate(date=occ.date, amount=occ.amount, dedup_key=compute_dedup_key(occ.date, occ.amount, occ.memo))


def validate_rows(rows: Sequence[ParsedRow]) -> None:
    """Reject the whole batch if any row cannot be posted.

    Raises:
        InvalidAmountError: If a row has a zero amount.
    """
    for number, row in enumerate(rows, start=1):
        if row.amount == 0:
            raise InvalidAmountError(f"Row {number} ({row.date} '{row.description}') has a zero amount")


class ImportReconciler:
    """Deduplicating importer bound to one ledger's write path."""

    def __init__(
        self,
        categories: CategoryGraph,
        store: TransactionStore,
        recurrence: RecurrenceEngine,
        write_lock: threading.RLock,
        tolerance_days: int = 2,
    ) -> None:
        self._categories = categories
        self._store = store
        self._recurrence = recurrence
        self._write_lock = write_lock
        self._tolerance_days = tolerance_days

    def _draft(self, row: ParsedRow) -> NewTransaction:
        kind = kind_for_amount(row.amount)
        category = None
        if row.category_hint:
            category = self._categories.resolve(row.category_hint, kind)
        if category is None:
            category = self._categories.uncategorized(kind)
        return NewTransaction(
            date=row.date,
            amount=row.amount,
            category_id=category.id,
            memo=Description(row.description.strip()),
            source=SourceKind.IMPORT,
        )

    def reconcile(self, rows: Sequence[ParsedRow], tolerance_days: int | None = None) -> ReconcileResult:
        """Insert rows that are neither duplicates nor conflicts.

        The batch is atomic: rows are validated up front and all inserts are
        posted together under the write lock.
        """
        validate_rows(rows)
        tolerance = self._tolerance_days if tolerance_days is None else tolerance_days
        if not rows:
            return ReconcileResult()

        with self._write_lock:
            snapshot = self._store.snapshot()
            latest = max(row.date for row in rows) + timedelta(days=tolerance)
            index = CandidateIndex(transaction_candidate(t) for t in snapshot.live())
            for occ in self._recurrence.upcoming(latest):
                index.add(occurrence_candidate(occ))

            drafts: list[NewTransaction] = []
            duplicates: list[ParsedRow] = []
            conflicts: list[ParsedRow] = []
            for row in rows:
                key = compute_dedup_key(row.date, row.amount, row.description)
                verdict = index.classify(row, key, tolerance)
                if verdict == "duplicate":
                    duplicates.append(row)
                elif verdict == "conflict":
                    conflicts.append(row)
                else:
                    drafts.append(self._draft(row))
                    index.add(Candidate(date=row.date, amount=row.amount, dedup_key=key))

            posted = self._store.post_many(drafts)

        logger.info(
            "Imported %d row(s): %d inserted, %d duplicate(s), %d conflict(s)",
            len(rows),
            len(posted),
            len(duplicates),
            len(conflicts),
        )
        return ReconcileResult(
            inserted=[t.id for t in posted],
            duplicates=duplicates,
            conflicts=conflicts,
        )
