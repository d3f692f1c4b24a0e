"""Database store layer - provides persistence for the application.

This module re-exports all public database functions for easy importing.
"""

from tally.store.queries import load_ledger, load_state, save_ledger
from tally.store.schema import database_exists, get_db_path, init_database

__all__ = [
    # Schema
    "database_exists",
    "get_db_path",
    "init_database",
    # Queries
    "load_ledger",
    "load_state",
    "save_ledger",
]
