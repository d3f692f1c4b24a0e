"""Recurrence engine: expands recurring templates into posted transactions.

Occurrence ``k`` of a template is computed from its first occurrence by
advancing ``k`` whole intervals, never by stepping from the previous
(possibly clamped) date. A day-31 monthly template therefore yields
Jan 31, Feb 28, Mar 31.

Materialization is idempotent: a template's ``materialized_through``
watermark only moves forward, and an occurrence already posted for the
template on the same date is never posted again.
"""

import logging
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass, replace
from datetime import date, timedelta

from tally.dates import add_months
from tally.domain.errors import NonMonotonicMaterializationError, NotFoundError, ScheduleError, TemplateEndedError
from tally.domain.events import EventBus, RecurringTransactionPosted
from tally.domain.ledger import TransactionFilter, TransactionStore
from tally.domain.models import CategoryId, Description, IntervalUnit, Money, SourceKind, TemplateId
from tally.domain.transactions import NewTransaction, Transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Schedule:
    """When a template repeats.

    ``anchor_day`` (1-31) applies to month and year units, ``anchor_weekday``
    (0=Monday) to week units. ``end_date`` is inclusive.
    """

    unit: IntervalUnit
    every: int = 1
    anchor_day: int | None = None
    anchor_weekday: int | None = None
    end_date: date | None = None
    max_occurrences: int | None = None


@dataclass(frozen=True)
class RecurrenceTemplate:
    """Immutable recurring transaction template."""

    id: TemplateId
    amount: Money
    category_id: CategoryId
    memo: Description
    schedule: Schedule
    start: date
    materialized_through: date | None = None


@dataclass(frozen=True)
class Occurrence:
    """A projected, not yet posted, template occurrence."""

    template_id: TemplateId
    index: int
    date: date
    amount: Money
    category_id: CategoryId
    memo: Description


def validate_schedule(schedule: Schedule) -> None:
    """Reject malformed schedules.

    Raises:
        ScheduleError: If any field is out of range or does not fit the unit.
    """
    if schedule.every < 1:
        raise ScheduleError("Interval count must be at least 1")
    if schedule.anchor_day is not None:
        if schedule.unit not in (IntervalUnit.MONTH, IntervalUnit.YEAR):
            raise ScheduleError("Anchor day only applies to monthly or yearly schedules")
        if not 1 <= schedule.anchor_day <= 31:
            raise ScheduleError(f"Anchor day must be between 1 and 31, got {schedule.anchor_day}")
    if schedule.anchor_weekday is not None:
        if schedule.unit is not IntervalUnit.WEEK:
            raise ScheduleError("Anchor weekday only applies to weekly schedules")
        if not 0 <= schedule.anchor_weekday <= 6:
            raise ScheduleError(f"Anchor weekday must be between 0 and 6, got {schedule.anchor_weekday}")
    if schedule.max_occurrences is not None and schedule.max_occurrences < 1:
        raise ScheduleError("Max occurrences must be at least 1")


def first_occurrence(schedule: Schedule, start: date) -> date:
    """Earliest occurrence on or after ``start``."""
    if schedule.unit is IntervalUnit.WEEK and schedule.anchor_weekday is not None:
        return start + timedelta(days=(schedule.anchor_weekday - start.weekday()) % 7)
    if schedule.unit in (IntervalUnit.MONTH, IntervalUnit.YEAR) and schedule.anchor_day is not None:
        candidate = add_months(start, 0, schedule.anchor_day)
        if candidate < start:
            step = 1 if schedule.unit is IntervalUnit.MONTH else 12
            candidate = add_months(start, step, schedule.anchor_day)
        return candidate
    return start


def nth_occurrence(schedule: Schedule, first: date, index: int, anchor_day: int) -> date:
    """Occurrence ``index`` counted from ``first`` (index 0)."""
    if schedule.unit is IntervalUnit.DAY:
        return first + timedelta(days=index * schedule.every)
    if schedule.unit is IntervalUnit.WEEK:
        return first + timedelta(weeks=index * schedule.every)
    if schedule.unit is IntervalUnit.MONTH:
        return add_months(first, index * schedule.every, anchor_day)
    return add_months(first, 12 * index * schedule.every, anchor_day)


def iter_occurrences(template: RecurrenceTemplate) -> Iterator[tuple[int, date]]:
    """Yield ``(index, date)`` for every occurrence until the end condition.

    Unbounded when the schedule has no end; callers stop on a date.
    """
    schedule = template.schedule
    first = first_occurrence(schedule, template.start)
    anchor_day = schedule.anchor_day or first.day
    index = 0
    while schedule.max_occurrences is None or index < schedule.max_occurrences:
        when = nth_occurrence(schedule, first, index, anchor_day)
        if schedule.end_date is not None and when > schedule.end_date:
            return
        yield index, when
        index += 1


def watermark(template: RecurrenceTemplate) -> date:
    """Last date already covered by materialization."""
    if template.materialized_through is not None:
        return template.materialized_through
    return template.start - timedelta(days=1)


def pending_occurrences(template: RecurrenceTemplate, through: date) -> list[Occurrence]:
    """Occurrences after the watermark and on or before ``through``."""
    after = watermark(template)
    pending: list[Occurrence] = []
    for index, when in iter_occurrences(template):
        if when > through:
            break
        if when > after:
            pending.append(
                Occurrence(
                    template_id=template.id,
                    index=index,
                    date=when,
                    amount=template.amount,
                    category_id=template.category_id,
                    memo=template.memo,
                )
            )
    return pending


def is_ended(template: RecurrenceTemplate) -> bool:
    """True when no occurrence remains after the watermark."""
    after = watermark(template)
    return all(when <= after for _, when in _until_past(template, after))


def _until_past(template: RecurrenceTemplate, after: date) -> Iterator[tuple[int, date]]:
    for index, when in iter_occurrences(template):
        yield index, when
        if when > after:
            return


def advance_watermark(template: RecurrenceTemplate, through: date) -> RecurrenceTemplate:
    """Move the watermark forward to ``through``.

    Raises:
        NonMonotonicMaterializationError: If ``through`` is before the current watermark.
    """
    current = template.materialized_through
    if current is not None and through < current:
        raise NonMonotonicMaterializationError(f"Template {template.id} watermark would move from {current} to {through}")
    return replace(template, materialized_through=through)


class RecurrenceEngine:
    """Owns recurrence templates and posts their occurrences.

    All postings go through ``write_lock`` (the ledger's single write path).
    Materialization of one template is serialized by a per-template lock;
    different templates may materialize concurrently.
    """

    def __init__(
        self,
        store: TransactionStore,
        write_lock: threading.RLock,
        bus: EventBus,
        lookahead_days: int = 0,
        templates: list[RecurrenceTemplate] | None = None,
        next_id: int | None = None,
    ) -> None:
        self._store = store
        self._write_lock = write_lock
        self._bus = bus
        self._lookahead = timedelta(days=lookahead_days)
        self._templates: dict[TemplateId, RecurrenceTemplate] = {t.id: t for t in templates or []}
        self._next_id = next_id if next_id is not None else max(self._templates, default=0) + 1
        self._locks: dict[TemplateId, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def next_id(self) -> int:
        return self._next_id

    def _template_lock(self, template_id: TemplateId) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(template_id, threading.Lock())

    def get(self, template_id: TemplateId) -> RecurrenceTemplate:
        template = self._templates.get(template_id)
        if template is None:
            raise NotFoundError(f"Recurrence template {template_id} not found")
        return template

    def list_templates(self) -> list[RecurrenceTemplate]:
        return sorted(self._templates.values(), key=lambda t: t.id)

    def _validate(self, amount: Money, category_id: CategoryId, memo: str, schedule: Schedule, start: date) -> None:
        validate_schedule(schedule)
        if schedule.end_date is not None and schedule.end_date < start:
            raise ScheduleError("End date is before the start date")
        self._store.prepare(NewTransaction(date=start, amount=amount, category_id=category_id, memo=Description(memo)))

    def create(
        self,
        amount: Money,
        category_id: CategoryId,
        schedule: Schedule,
        start: date,
        memo: str = "",
    ) -> RecurrenceTemplate:
        with self._write_lock:
            self._validate(amount, category_id, memo, schedule, start)
            template = RecurrenceTemplate(
                id=TemplateId(self._next_id),
                amount=amount,
                category_id=category_id,
                memo=Description(memo),
                schedule=schedule,
                start=start,
            )
            self._templates = {**self._templates, template.id: template}
            self._next_id += 1
        logger.info("Created recurrence template %s starting %s", template.id, start)
        return template

    def edit(
        self,
        template_id: TemplateId,
        amount: Money | None = None,
        category_id: CategoryId | None = None,
        memo: str | None = None,
        schedule: Schedule | None = None,
    ) -> RecurrenceTemplate:
        """Change a template. Occurrences already posted are left alone."""
        with self._template_lock(template_id), self._write_lock:
            current = self.get(template_id)
            edited = replace(
                current,
                amount=amount if amount is not None else current.amount,
                category_id=category_id if category_id is not None else current.category_id,
                memo=Description(memo) if memo is not None else current.memo,
                schedule=schedule if schedule is not None else current.schedule,
            )
            self._validate(edited.amount, edited.category_id, edited.memo, edited.schedule, edited.start)
            self._templates = {**self._templates, template_id: edited}
        return edited

    def reassign_category(self, old_id: CategoryId, new_id: CategoryId) -> list[TemplateId]:
        """Point templates of a deleted category at its replacement."""
        with self._write_lock:
            moved = [t for t in self._templates.values() if t.category_id == old_id]
            if moved:
                self._templates = {
                    **self._templates,
                    **{t.id: replace(t, category_id=new_id) for t in moved},
                }
        return [t.id for t in moved]

    def materialize(self, template_id: TemplateId, through: date, now: date) -> list[Transaction]:
        """Post every due occurrence of a template up to ``through``.

        The watermark never passes ``now`` plus the lookahead window.

        Args:
            template_id: Template to expand.
            through: Last date (inclusive) to materialize.
            now: Caller's current date; ``through`` is capped at ``now``
                plus the lookahead window.

        Returns:
            Newly posted transactions, oldest first.

        Raises:
            NotFoundError: Unknown template.
            TemplateEndedError: Template has no occurrences left.
        """
        if through > now + self._lookahead:
            logger.debug("Capping materialization of template %s at %s", template_id, now + self._lookahead)
            through = now + self._lookahead

        with self._template_lock(template_id), self._write_lock:
            template = self.get(template_id)
            if is_ended(template):
                raise TemplateEndedError(f"Template {template_id} has no occurrences after {watermark(template)}")
            if template.materialized_through is not None and through <= template.materialized_through:
                return []

            snapshot = self._store.snapshot()
            already = {t.date for t in snapshot.query(TransactionFilter(template_id=template_id))}
            drafts = [
                NewTransaction(
                    date=occ.date,
                    amount=occ.amount,
                    category_id=occ.category_id,
                    memo=occ.memo,
                    source=SourceKind.RECURRING,
                    template_id=template_id,
                )
                for occ in pending_occurrences(template, through)
                if occ.date not in already
            ]
            advanced = advance_watermark(template, through)
            posted = self._store.post_many(drafts)
            self._templates = {**self._templates, template_id: advanced}

        if posted:
            logger.info("Materialized %d occurrence(s) of template %s through %s", len(posted), template_id, through)
        for txn in posted:
            self._bus.publish(RecurringTransactionPosted(transaction_id=txn.id, template_id=template_id, date=txn.date))
        return posted

    def materialize_all(self, through: date, now: date) -> list[Transaction]:
        """Materialize every template that has not ended."""
        posted: list[Transaction] = []
        for template in self.list_templates():
            if is_ended(template):
                continue
            posted.extend(self.materialize(template.id, through, now))
        return posted

    def upcoming(
        self, through: date, include: Callable[[RecurrenceTemplate], bool] | None = None
    ) -> list[Occurrence]:
        """Project unposted occurrences of all templates up to ``through``."""
        occurrences = [
            occ
            for template in self.list_templates()
            if include is None or include(template)
            for occ in pending_occurrences(template, through)
        ]
        return sorted(occurrences, key=lambda o: (o.date, o.template_id))
