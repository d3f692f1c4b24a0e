"""Helpers shared by the commands: opening the ledger, parsing input, printing events."""

import sqlite3
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date

import pandas as pd
from rich.console import Console

from tally.config import Settings, load_settings
from tally.domain.categories import Category
from tally.domain.errors import LedgerError
from tally.domain.events import BudgetThresholdCrossed, Event, GoalMilestoneReached, RecurringTransactionPosted
from tally.domain.models import Kind, Money
from tally.domain.transactions import format_money_display
from tally.engine import Ledger
from tally.store.queries import load_ledger, save_ledger
from tally.store.schema import get_db_path

console = Console()


def parse_date(raw_date: str) -> date:
    """Parse a user or CSV supplied date.

    Uses pandas.to_datetime so ISO, European and American layouts all work.
    Day-first is assumed for ambiguous dates.

    Args:
        raw_date: Raw date string.

    Returns:
        Parsed date.

    Raises:
        ValueError: If date cannot be parsed.
    """
    try:
        return pd.to_datetime(raw_date, dayfirst=True).date()
    except (ValueError, pd.errors.ParserError) as e:
        raise ValueError(f"Could not parse date '{raw_date}': {e}") from e


def parse_date_option(raw_date: str | None, default: date) -> date:
    """Parse an optional date argument, exiting on bad input."""
    if raw_date is None:
        return default
    try:
        return parse_date(raw_date)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        console.print("[dim]Accepted formats: YYYY-MM-DD, DD/MM/YYYY, DD-MM-YYYY, etc.[/dim]")
        sys.exit(1)


def money(amount: Money, settings: Settings, include_sign: bool = True) -> str:
    """Amount formatted with the configured currency symbol, coloured by sign."""
    text = format_money_display(amount, include_sign, settings.currency_symbol)
    if not include_sign:
        return text
    return f"[red]{text}[/red]" if amount < 0 else f"[green]{text}[/green]"


def resolve_category(ledger: Ledger, hint: str, kind: Kind | None = None) -> Category:
    """Find a category by id or name, exiting when there is no single match."""
    category = ledger.categories.resolve(hint, kind)
    if category is None:
        console.print(f"[red]Category '{hint}' not found (or ambiguous)[/red]", style="bold")
        console.print("[dim]Use 'tally category list' to see ids[/dim]")
        sys.exit(1)
    return category


def announce(event: Event) -> None:
    """Print an engine event for the user."""
    if isinstance(event, BudgetThresholdCrossed):
        console.print(
            f"[bold yellow]! Budget {event.budget_id} passed {event.threshold}%[/bold yellow] "
            f"[dim](period starting {event.period_start})[/dim]"
        )
    elif isinstance(event, GoalMilestoneReached):
        console.print(f"[bold green]★ Goal {event.goal_id} reached {event.milestone}%[/bold green]")
    elif isinstance(event, RecurringTransactionPosted):
        console.print(f"[dim]Posted transaction {event.transaction_id} from template {event.template_id}[/dim]")


@contextmanager
def open_ledger(save: bool = True) -> Iterator[Ledger]:
    """Load the ledger, yield it, and save it back when the block succeeds.

    Domain errors and database errors are printed and end the process with
    exit status 1; nothing is saved in that case.
    """
    db_path = get_db_path()
    if not db_path.exists():
        console.print("[red]Database not found. Run 'tally init' first.[/red]", style="bold")
        sys.exit(1)

    try:
        settings = load_settings()
    except ValueError as e:
        console.print(f"[red]Config error: {e}[/red]", style="bold")
        sys.exit(1)

    try:
        ledger = load_ledger(settings, db_path)
        ledger.subscribe(announce)
        yield ledger
        if save:
            save_ledger(ledger, db_path)
    except LedgerError as e:
        console.print(f"[red]Error: {e}[/red]", style="bold")
        sys.exit(1)
    except sqlite3.Error as e:
        console.print(f"[red]Database error: {e}[/red]", style="bold")
        sys.exit(1)
