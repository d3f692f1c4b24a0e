"""Database query functions: saving and loading a whole ledger."""

import json
import logging
import sqlite3
from datetime import date
from pathlib import Path

from tally.config import Settings
from tally.domain.budget import Budget
from tally.domain.categories import Category
from tally.domain.export import (
    category_from_dict,
    goal_from_dict,
    period_from_dict,
    period_to_dict,
    schedule_from_dict,
    schedule_to_dict,
)
from tally.domain.goals import Goal
from tally.domain.models import (
    BudgetId,
    CategoryId,
    Description,
    GoalId,
    Money,
    SourceKind,
    TemplateId,
    TransactionId,
)
from tally.domain.recurrence import RecurrenceTemplate
from tally.domain.transactions import Transaction
from tally.engine import Ledger, LedgerState
from tally.store.schema import get_db_path

logger = logging.getLogger(__name__)

_MUTABLE_TABLES = (
    "categories",
    "templates",
    "budgets",
    "goals",
    "goal_contributions",
    "fired_thresholds",
    "fired_milestones",
)


def _connect(db_path: Path | None = None) -> sqlite3.Connection:
    """Create a database connection with row factory.

    Args:
        db_path: Path to the database file. If None, uses default location.

    Returns:
        Database connection with row_factory configured.
    """
    if db_path is None:
        db_path = get_db_path()
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def _iso(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None


def _date(value: str | None) -> date | None:
    return date.fromisoformat(value) if value is not None else None


def _write_categories(cursor: sqlite3.Cursor, categories: list[Category]) -> None:
    cursor.executemany(
        "INSERT INTO categories (id, name, kind, parent_id, deleted, reserved) VALUES (?, ?, ?, ?, ?, ?)",
        [(c.id, c.name, str(c.kind), c.parent_id, int(c.deleted), int(c.reserved)) for c in categories],
    )


def _write_records(cursor: sqlite3.Cursor, records: list[Transaction]) -> int:
    cursor.executemany(
        """
        INSERT OR IGNORE INTO transaction_records
            (revision, id, seq, date, amount, category_id, memo, source, template_id, dedup_key, tombstoned)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        [
            (
                r.revision,
                r.id,
                r.seq,
                r.date.isoformat(),
                r.amount,
                r.category_id,
                r.memo,
                str(r.source),
                r.template_id,
                r.dedup_key,
                int(r.tombstoned),
            )
            for r in records
        ],
    )
    return max(cursor.rowcount, 0)


def _write_templates(cursor: sqlite3.Cursor, templates: list[RecurrenceTemplate]) -> None:
    cursor.executemany(
        """
        INSERT INTO templates (id, amount, category_id, memo, schedule, start, materialized_through)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        [
            (
                t.id,
                t.amount,
                t.category_id,
                t.memo,
                json.dumps(schedule_to_dict(t.schedule), sort_keys=True),
                t.start.isoformat(),
                _iso(t.materialized_through),
            )
            for t in templates
        ],
    )


def _write_budgets(cursor: sqlite3.Cursor, budgets: list[Budget]) -> None:
    cursor.executemany(
        """
        INSERT INTO budgets (id, category_id, period, amount, thresholds, rollup, effective_from, effective_until)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        [
            (
                b.id,
                b.category_id,
                json.dumps(period_to_dict(b.period), sort_keys=True),
                b.limit,
                json.dumps(list(b.thresholds)),
                int(b.rollup),
                b.effective_from.isoformat(),
                _iso(b.effective_until),
            )
            for b in budgets
        ],
    )


def _write_goals(cursor: sqlite3.Cursor, goals: list[Goal]) -> None:
    cursor.executemany(
        """
        INSERT INTO goals (id, name, target, start, target_date, rule, sweep_percent, category_id)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        [
            (
                g.id,
                g.name,
                g.target,
                g.start.isoformat(),
                _iso(g.target_date),
                str(g.rule),
                g.sweep_percent,
                g.category_id,
            )
            for g in goals
        ],
    )


def save_ledger(ledger: Ledger, db_path: Path | None = None, replace: bool = False) -> int:
    """Persist a ledger inside one SQL transaction.

    Transaction versions are append-only: versions already stored are left
    untouched. Everything else is rewritten.

    Args:
        ledger: Ledger to persist.
        db_path: Path to the database file. If None, uses default location.
        replace: Also clear stored transaction versions first (used by restore).

    Returns:
        Number of new transaction versions written.

    Raises:
        sqlite3.Error: If database operation fails.
    """
    state = ledger.state()

    with _connect(db_path) as conn:
        cursor = conn.cursor()
        try:
            for table in _MUTABLE_TABLES:
                cursor.execute(f"DELETE FROM {table}")
            if replace:
                cursor.execute("DELETE FROM transaction_records")

            _write_categories(cursor, state.categories)
            written = _write_records(cursor, state.records)
            _write_templates(cursor, state.templates)
            _write_budgets(cursor, state.budgets)
            _write_goals(cursor, state.goals)

            cursor.executemany(
                "INSERT INTO goal_contributions (goal_id, position, transaction_id) VALUES (?, ?, ?)",
                [
                    (goal_id, position, txn_id)
                    for goal_id, txn_ids in state.contributions.items()
                    for position, txn_id in enumerate(txn_ids)
                ],
            )
            cursor.executemany(
                "INSERT INTO fired_thresholds (budget_id, period_start, threshold) VALUES (?, ?, ?)",
                [
                    (budget_id, start.isoformat(), threshold)
                    for (budget_id, start), fired in state.fired_thresholds.items()
                    for threshold in sorted(fired)
                ],
            )
            cursor.executemany(
                "INSERT INTO fired_milestones (goal_id, milestone) VALUES (?, ?)",
                [(goal_id, m) for goal_id, fired in state.fired_milestones.items() for m in sorted(fired)],
            )
            cursor.executemany(
                "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)",
                [(f"next_{name}_id", value) for name, value in state.next_ids.items()],
            )
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise

    logger.debug("Saved ledger: %d new transaction version(s)", written)
    return written


def load_state(db_path: Path | None = None) -> LedgerState:
    """Read a ledger state from the database.

    Args:
        db_path: Path to the database file. If None, uses default location.

    Raises:
        sqlite3.Error: If database operation fails.
    """
    with _connect(db_path) as conn:
        cursor = conn.cursor()

        cursor.execute("SELECT id, name, kind, parent_id, deleted, reserved FROM categories ORDER BY id")
        categories = [category_from_dict(dict(row)) for row in cursor.fetchall()]

        cursor.execute("SELECT * FROM transaction_records ORDER BY revision")
        records = [
            Transaction(
                id=TransactionId(row["id"]),
                seq=row["seq"],
                date=date.fromisoformat(row["date"]),
                amount=Money(row["amount"]),
                category_id=CategoryId(row["category_id"]),
                memo=Description(row["memo"]),
                source=SourceKind(row["source"]),
                dedup_key=row["dedup_key"],
                revision=row["revision"],
                template_id=TemplateId(row["template_id"]) if row["template_id"] is not None else None,
                tombstoned=bool(row["tombstoned"]),
            )
            for row in cursor.fetchall()
        ]

        cursor.execute("SELECT * FROM templates ORDER BY id")
        templates = [
            RecurrenceTemplate(
                id=TemplateId(row["id"]),
                amount=Money(row["amount"]),
                category_id=CategoryId(row["category_id"]),
                memo=Description(row["memo"]),
                schedule=schedule_from_dict(json.loads(row["schedule"])),
                start=date.fromisoformat(row["start"]),
                materialized_through=_date(row["materialized_through"]),
            )
            for row in cursor.fetchall()
        ]

        cursor.execute("SELECT * FROM budgets ORDER BY id")
        budgets = [
            Budget(
                id=BudgetId(row["id"]),
                category_id=CategoryId(row["category_id"]),
                period=period_from_dict(json.loads(row["period"])),
                limit=Money(row["amount"]),
                thresholds=tuple(json.loads(row["thresholds"])),
                rollup=bool(row["rollup"]),
                effective_from=date.fromisoformat(row["effective_from"]),
                effective_until=_date(row["effective_until"]),
            )
            for row in cursor.fetchall()
        ]

        cursor.execute("SELECT * FROM goals ORDER BY id")
        goals = [goal_from_dict(dict(row)) for row in cursor.fetchall()]

        contributions: dict[GoalId, list[TransactionId]] = {}
        cursor.execute("SELECT goal_id, transaction_id FROM goal_contributions ORDER BY goal_id, position")
        for row in cursor.fetchall():
            contributions.setdefault(GoalId(row["goal_id"]), []).append(TransactionId(row["transaction_id"]))

        thresholds: dict[tuple[BudgetId, date], set[int]] = {}
        cursor.execute("SELECT budget_id, period_start, threshold FROM fired_thresholds")
        for row in cursor.fetchall():
            key = (BudgetId(row["budget_id"]), date.fromisoformat(row["period_start"]))
            thresholds.setdefault(key, set()).add(row["threshold"])

        milestones: dict[GoalId, set[int]] = {}
        cursor.execute("SELECT goal_id, milestone FROM fired_milestones")
        for row in cursor.fetchall():
            milestones.setdefault(GoalId(row["goal_id"]), set()).add(row["milestone"])

        cursor.execute("SELECT key, value FROM meta WHERE key LIKE 'next_%_id'")
        next_ids = {row["key"].removeprefix("next_").removesuffix("_id"): row["value"] for row in cursor.fetchall()}

    return LedgerState(
        categories=categories,
        records=records,
        templates=templates,
        budgets=budgets,
        goals=goals,
        contributions=contributions,
        fired_thresholds={key: frozenset(fired) for key, fired in thresholds.items()},
        fired_milestones={key: frozenset(fired) for key, fired in milestones.items()},
        next_ids=next_ids,
    )


def load_ledger(settings: Settings | None = None, db_path: Path | None = None) -> Ledger:
    """Rebuild a ledger from the database.

    Args:
        settings: Engine settings (defaults when omitted).
        db_path: Path to the database file. If None, uses default location.

    Raises:
        sqlite3.Error: If database operation fails.
    """
    return Ledger(settings, load_state(db_path))
