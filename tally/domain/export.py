"""Deterministic JSON export of a ledger, and the matching import.

The document lists categories by id and transactions by insertion sequence,
with sorted keys, integer cents and ISO dates, so exporting the same state
twice yields byte-identical output. Only the latest version of each
transaction is exported; tombstoned transactions are kept and flagged.
"""

import json
from datetime import date
from typing import Any

from tally.config import Settings
from tally.domain.budget import Budget, PeriodDefinition
from tally.domain.categories import Category
from tally.domain.errors import ValidationError
from tally.domain.goals import Goal
from tally.domain.models import (
    BudgetId,
    CategoryId,
    ContributionRule,
    Description,
    GoalId,
    IntervalUnit,
    Kind,
    Money,
    PeriodKind,
    SourceKind,
    TemplateId,
    TransactionId,
)
from tally.domain.recurrence import RecurrenceTemplate, Schedule
from tally.domain.transactions import Transaction
from tally.engine import Ledger, LedgerState

FORMAT_VERSION = 1


def _date(value: str | None) -> date | None:
    return date.fromisoformat(value) if value is not None else None


def _iso(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None


def category_to_dict(category: Category) -> dict[str, Any]:
    return {
        "id": category.id,
        "name": category.name,
        "kind": str(category.kind),
        "parent_id": category.parent_id,
        "deleted": category.deleted,
        "reserved": category.reserved,
    }


def category_from_dict(data: dict[str, Any]) -> Category:
    return Category(
        id=CategoryId(data["id"]),
        name=data["name"],
        kind=Kind(data["kind"]),
        parent_id=CategoryId(data["parent_id"]) if data.get("parent_id") is not None else None,
        deleted=bool(data.get("deleted", False)),
        reserved=bool(data.get("reserved", False)),
    )


def transaction_to_dict(txn: Transaction) -> dict[str, Any]:
    return {
        "id": txn.id,
        "seq": txn.seq,
        "date": txn.date.isoformat(),
        "amount": txn.amount,
        "category_id": txn.category_id,
        "memo": txn.memo,
        "source": str(txn.source),
        "template_id": txn.template_id,
        "dedup_key": txn.dedup_key,
        "revision": txn.revision,
        "tombstoned": txn.tombstoned,
    }


def transaction_from_dict(data: dict[str, Any]) -> Transaction:
    return Transaction(
        id=TransactionId(data["id"]),
        seq=data["seq"],
        date=date.fromisoformat(data["date"]),
        amount=Money(data["amount"]),
        category_id=CategoryId(data["category_id"]),
        memo=Description(data["memo"]),
        source=SourceKind(data["source"]),
        template_id=TemplateId(data["template_id"]) if data.get("template_id") is not None else None,
        dedup_key=data["dedup_key"],
        revision=data["revision"],
        tombstoned=bool(data.get("tombstoned", False)),
    )


def schedule_to_dict(schedule: Schedule) -> dict[str, Any]:
    return {
        "unit": str(schedule.unit),
        "every": schedule.every,
        "anchor_day": schedule.anchor_day,
        "anchor_weekday": schedule.anchor_weekday,
        "end_date": _iso(schedule.end_date),
        "max_occurrences": schedule.max_occurrences,
    }


def schedule_from_dict(data: dict[str, Any]) -> Schedule:
    return Schedule(
        unit=IntervalUnit(data["unit"]),
        every=data.get("every", 1),
        anchor_day=data.get("anchor_day"),
        anchor_weekday=data.get("anchor_weekday"),
        end_date=_date(data.get("end_date")),
        max_occurrences=data.get("max_occurrences"),
    )


def template_to_dict(template: RecurrenceTemplate) -> dict[str, Any]:
    return {
        "id": template.id,
        "amount": template.amount,
        "category_id": template.category_id,
        "memo": template.memo,
        "schedule": schedule_to_dict(template.schedule),
        "start": template.start.isoformat(),
        "materialized_through": _iso(template.materialized_through),
    }


def template_from_dict(data: dict[str, Any]) -> RecurrenceTemplate:
    return RecurrenceTemplate(
        id=TemplateId(data["id"]),
        amount=Money(data["amount"]),
        category_id=CategoryId(data["category_id"]),
        memo=Description(data["memo"]),
        schedule=schedule_from_dict(data["schedule"]),
        start=date.fromisoformat(data["start"]),
        materialized_through=_date(data.get("materialized_through")),
    )


def period_to_dict(period: PeriodDefinition) -> dict[str, Any]:
    return {
        "kind": str(period.kind),
        "timezone": period.timezone,
        "week_start": period.week_start,
        "anchor": _iso(period.anchor),
        "span_days": period.span_days,
    }


def period_from_dict(data: dict[str, Any]) -> PeriodDefinition:
    return PeriodDefinition(
        kind=PeriodKind(data["kind"]),
        timezone=data.get("timezone", "UTC"),
        week_start=data.get("week_start", 0),
        anchor=_date(data.get("anchor")),
        span_days=data.get("span_days"),
    )


def budget_to_dict(budget: Budget) -> dict[str, Any]:
    return {
        "id": budget.id,
        "category_id": budget.category_id,
        "period": period_to_dict(budget.period),
        "limit": budget.limit,
        "thresholds": list(budget.thresholds),
        "rollup": budget.rollup,
        "effective_from": budget.effective_from.isoformat(),
        "effective_until": _iso(budget.effective_until),
    }


def budget_from_dict(data: dict[str, Any]) -> Budget:
    return Budget(
        id=BudgetId(data["id"]),
        category_id=CategoryId(data["category_id"]),
        period=period_from_dict(data["period"]),
        limit=Money(data["limit"]),
        thresholds=tuple(data["thresholds"]),
        rollup=bool(data["rollup"]),
        effective_from=date.fromisoformat(data["effective_from"]),
        effective_until=_date(data.get("effective_until")),
    )


def goal_to_dict(goal: Goal) -> dict[str, Any]:
    return {
        "id": goal.id,
        "name": goal.name,
        "target": goal.target,
        "start": goal.start.isoformat(),
        "target_date": _iso(goal.target_date),
        "rule": str(goal.rule),
        "sweep_percent": goal.sweep_percent,
        "category_id": goal.category_id,
    }


def goal_from_dict(data: dict[str, Any]) -> Goal:
    return Goal(
        id=GoalId(data["id"]),
        name=data["name"],
        target=Money(data["target"]),
        start=date.fromisoformat(data["start"]),
        target_date=_date(data.get("target_date")),
        rule=ContributionRule(data.get("rule", "manual")),
        sweep_percent=data.get("sweep_percent"),
        category_id=CategoryId(data["category_id"]) if data.get("category_id") is not None else None,
    )


def state_to_dict(state: LedgerState) -> dict[str, Any]:
    """Plain-data form of a ledger state, latest transaction versions only."""
    latest: dict[TransactionId, Transaction] = {}
    for record in state.records:
        latest[record.id] = record

    return {
        "format_version": FORMAT_VERSION,
        "categories": [category_to_dict(c) for c in sorted(state.categories, key=lambda c: c.id)],
        "transactions": [transaction_to_dict(t) for t in sorted(latest.values(), key=lambda t: t.seq)],
        "templates": [template_to_dict(t) for t in sorted(state.templates, key=lambda t: t.id)],
        "budgets": [budget_to_dict(b) for b in sorted(state.budgets, key=lambda b: b.id)],
        "goals": [goal_to_dict(g) for g in sorted(state.goals, key=lambda g: g.id)],
        "contributions": {str(goal_id): list(ids) for goal_id, ids in sorted(state.contributions.items())},
        "fired_thresholds": [
            {"budget_id": budget_id, "period_start": start.isoformat(), "thresholds": sorted(fired)}
            for (budget_id, start), fired in sorted(state.fired_thresholds.items())
        ],
        "fired_milestones": {str(goal_id): sorted(fired) for goal_id, fired in sorted(state.fired_milestones.items())},
        "next_ids": dict(sorted(state.next_ids.items())),
    }


def state_from_dict(data: dict[str, Any]) -> LedgerState:
    """Rebuild a ledger state from its plain-data form.

    Raises:
        ValidationError: If the document has an unsupported format version.
    """
    version = data.get("format_version")
    if version != FORMAT_VERSION:
        raise ValidationError(f"Unsupported export format version: {version}")

    transactions = [transaction_from_dict(t) for t in data.get("transactions", [])]
    return LedgerState(
        categories=[category_from_dict(c) for c in data.get("categories", [])],
        records=sorted(transactions, key=lambda t: t.revision),
        templates=[template_from_dict(t) for t in data.get("templates", [])],
        budgets=[budget_from_dict(b) for b in data.get("budgets", [])],
        goals=[goal_from_dict(g) for g in data.get("goals", [])],
        contributions={
            GoalId(int(goal_id)): [TransactionId(i) for i in ids]
            for goal_id, ids in data.get("contributions", {}).items()
        },
        fired_thresholds={
            (BudgetId(f["budget_id"]), date.fromisoformat(f["period_start"])): frozenset(f["thresholds"])
            for f in data.get("fired_thresholds", [])
        },
        fired_milestones={
            GoalId(int(goal_id)): frozenset(fired) for goal_id, fired in data.get("fired_milestones", {}).items()
        },
        next_ids=dict(data.get("next_ids", {})),
    )


def export_ledger(ledger: Ledger) -> str:
    """Serialize a ledger to a deterministic JSON document."""
    return json.dumps(state_to_dict(ledger.state()), sort_keys=True, indent=2, ensure_ascii=False) + "\n"


def import_ledger(document: str, settings: Settings | None = None) -> Ledger:
    """Rebuild a ledger from an exported JSON document.

    Raises:
        ValidationError: If the document is not valid JSON, has the wrong
            format version, or has a missing or malformed field.
    """
    try:
        data = json.loads(document)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Export document is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError("Export document must be a JSON object")
    try:
        state = state_from_dict(data)
    except KeyError as e:
        raise ValidationError(f"Export document is missing field {e}") from e
    except (TypeError, ValueError, AttributeError) as e:
        raise ValidationError(f"Export document is malformed: {e}") from e
    return Ledger(settings, state)
