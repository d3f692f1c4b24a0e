"""Database schema initialization."""

import os
import sqlite3
from pathlib import Path

SCHEMA_VERSION = 1


def get_xdg_data_home() -> Path:
    """Get XDG data directory, with fallback to ~/.local/share."""
    xdg_data = os.environ.get("XDG_DATA_HOME")
    if xdg_data:
        return Path(xdg_data)
    return Path.home() / ".local" / "share"


def get_db_path() -> Path:
    """Get the default database path (XDG compliant)."""
    return get_xdg_data_home() / "tally" / "tally.db"


def database_exists(db_path: Path | None = None) -> bool:
    """Check if the database file exists.

    Args:
        db_path: Path to check. If None, uses default location.

    Returns:
        True if database exists, False otherwise.
    """
    if db_path is None:
        db_path = get_db_path()
    return db_path.exists()


def init_database(db_path: Path | None = None) -> None:
    """Initialize the database with the required schema.

    Args:
        db_path: Path to the database file. If None, uses default location.

    Raises:
        sqlite3.Error: If database initialization fails.
    """
    if db_path is None:
        db_path = get_db_path()

    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    cursor = conn.cursor()

    try:
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS categories (
                id INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                kind TEXT NOT NULL,
                parent_id INTEGER,
                deleted INTEGER NOT NULL DEFAULT 0,
                reserved INTEGER NOT NULL DEFAULT 0
            )
        """
        )

        # Append-only: one row per transaction version, keyed by store revision
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS transaction_records (
                revision INTEGER PRIMARY KEY,
                id INTEGER NOT NULL,
                seq INTEGER NOT NULL,
                date TEXT NOT NULL,
                amount INTEGER NOT NULL,
                category_id INTEGER NOT NULL,
                memo TEXT NOT NULL,
                source TEXT NOT NULL,
                template_id INTEGER,
                dedup_key TEXT NOT NULL,
                tombstoned INTEGER NOT NULL DEFAULT 0
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS templates (
                id INTEGER PRIMARY KEY,
                amount INTEGER NOT NULL,
                category_id INTEGER NOT NULL,
                memo TEXT NOT NULL,
                schedule TEXT NOT NULL,
                start TEXT NOT NULL,
                materialized_through TEXT
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS budgets (
                id INTEGER PRIMARY KEY,
                category_id INTEGER NOT NULL,
                period TEXT NOT NULL,
                amount INTEGER NOT NULL,
                thresholds TEXT NOT NULL,
                rollup INTEGER NOT NULL DEFAULT 0,
                effective_from TEXT NOT NULL,
                effective_until TEXT
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS goals (
                id INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                target INTEGER NOT NULL,
                start TEXT NOT NULL,
                target_date TEXT,
                rule TEXT NOT NULL,
                sweep_percent INTEGER,
                category_id INTEGER
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS goal_contributions (
                goal_id INTEGER NOT NULL,
                position INTEGER NOT NULL,
                transaction_id INTEGER NOT NULL,
                PRIMARY KEY (goal_id, position)
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS fired_thresholds (
                budget_id INTEGER NOT NULL,
                period_start TEXT NOT NULL,
                threshold INTEGER NOT NULL,
                PRIMARY KEY (budget_id, period_start, threshold)
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS fired_milestones (
                goal_id INTEGER NOT NULL,
                milestone INTEGER NOT NULL,
                PRIMARY KEY (goal_id, milestone)
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
                key TEXT PRIMARY KEY,
                value INTEGER NOT NULL
            )
        """
        )

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_records_id ON transaction_records(id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_records_date ON transaction_records(date)")
        cursor.execute(
            "INSERT OR IGNORE INTO meta (key, value) VALUES ('schema_version', ?)",
            (SCHEMA_VERSION,),
        )

        conn.commit()

    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()
