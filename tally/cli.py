"""CLI entry point for tally."""

import logging

import typer
from rich.logging import RichHandler

from tally.commands.admin import backup_command, export_command, init_command, list_command, restore_command
from tally.commands.budget import add_budget_command, budget_status_command
from tally.commands.categories import (
    add_category_command,
    delete_category_command,
    list_categories_command,
    move_category_command,
    rename_category_command,
)
from tally.commands.goals import add_goal_command, contribute_command, progress_command, sweep_command
from tally.commands.recurring import (
    add_recurring_command,
    list_recurring_command,
    run_recurring_command,
    upcoming_command,
)
from tally.commands.sync import import_command
from tally.commands.transactions import add_command, amend_command, delete_command
from tally.config import load_settings

app = typer.Typer(
    name="tally",
    help="tally - a ledger with budgets, recurring transactions and savings goals",
    add_completion=False,
)
category_app = typer.Typer(help="Manage the category tree.")
recur_app = typer.Typer(help="Manage recurring transactions.")
budget_app = typer.Typer(help="Manage budgets and see how much is left.")
goal_app = typer.Typer(help="Manage savings goals.")

app.add_typer(category_app, name="category")
app.add_typer(recur_app, name="recur")
app.add_typer(budget_app, name="budget")
app.add_typer(goal_app, name="goal")

# Lets amounts such as "-12.50" through as arguments instead of unknown options
NEGATIVE_AMOUNTS = {"ignore_unknown_options": True}


def configure_logging(level: str | None) -> None:
    """Route log records through rich at the requested (or configured) level."""
    if level is None:
        try:
            level = load_settings().log_level
        except ValueError:
            level = "WARNING"
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )


@app.callback()
def main(
    log_level: str = typer.Option(None, "--log-level", help="Logging level (default from config)"),
) -> None:
    """tally - a ledger with budgets, recurring transactions and savings goals."""
    configure_logging(log_level)


@app.command(name="backup")
def backup(
    output_dir: str = typer.Option(None, "--output", "-o", help="Backup directory (default: data dir/backups)"),
) -> None:
    """Backup your database and configuration files."""
    backup_command(output_dir)


@app.command(name="init")
def init(
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite existing database and config"),
) -> None:
    """Initialize tally database and configuration."""
    init_command(force)


@app.command(name="export")
def export(
    output: str = typer.Option(None, "--output", "-o", help="Write to this file instead of stdout"),
) -> None:
    """Export your ledger as a JSON document."""
    export_command(output)


@app.command(name="restore")
def restore(
    input_path: str,
    force: bool = typer.Option(False, "--force", "-f", help="Replace the existing database"),
) -> None:
    """Restore your ledger from an exported JSON document."""
    restore_command(input_path, force)


@app.command(name="list")
def list_transactions(
    limit: int = typer.Option(50, help="Maximum transactions to show"),
    all: bool = typer.Option(False, "--all", "-a", help="Show all your transactions"),
    category: str = typer.Option(None, "--category", "-c", help="Only this category (and its subcategories)"),
    since: str = typer.Option(None, "--since", help="Earliest date"),
    until: str = typer.Option(None, "--until", help="Latest date"),
    deleted: bool = typer.Option(False, "--deleted", help="Include deleted transactions"),
) -> None:
    """List your transactions."""
    list_command(limit, all, category, since, until, deleted)


@app.command(name="add", context_settings=NEGATIVE_AMOUNTS)
def add(
    amount: str = typer.Argument(..., help="Amount, negative for expenses (e.g. -12.50)"),
    category: str = typer.Option(None, "--category", "-c", help="Category id or name"),
    memo: str = typer.Option("", "--memo", "-m", help="Memo"),
    on: str = typer.Option(None, "--on", help="Posted date (default today)"),
) -> None:
    """Add a transaction."""
    add_command(amount, category, memo, on)


@app.command(name="amend")
def amend(
    transaction_id: int,
    category: str = typer.Option(None, "--category", "-c", help="New category id or name"),
    memo: str = typer.Option(None, "--memo", "-m", help="New memo"),
) -> None:
    """Change the category or memo of a transaction."""
    amend_command(transaction_id, category, memo)


@app.command(name="delete")
def delete(transaction_id: int) -> None:
    """Delete a transaction (kept in history)."""
    delete_command(transaction_id)


@app.command(name="import")
def import_csv(
    csv_file: str,
    tolerance: int = typer.Option(None, "--tolerance", help="Days of date slack when matching (overrides config)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show detailed duplicate report"),
    date_column: str = typer.Option(None, "--date-column", help="CSV column holding the date"),
    description_column: str = typer.Option(None, "--description-column", help="CSV column holding the description"),
    amount_column: str = typer.Option(None, "--amount-column", help="CSV column holding the amount"),
    category_column: str = typer.Option(None, "--category-column", help="CSV column holding a category name"),
) -> None:
    """Import transactions from a bank CSV export."""
    import_command(csv_file, tolerance, verbose, date_column, description_column, amount_column, category_column)


@category_app.command(name="add")
def category_add(
    name: str,
    kind: str = typer.Option("expense", "--kind", "-k", help="'expense' or 'income'"),
    parent: str = typer.Option(None, "--parent", "-p", help="Parent category id or name"),
) -> None:
    """Create a category."""
    add_category_command(name, kind, parent)


@category_app.command(name="list")
def category_list() -> None:
    """Show the category tree."""
    list_categories_command()


@category_app.command(name="move")
def category_move(
    category: str,
    parent: str = typer.Option(None, "--parent", "-p", help="New parent (omit for top level)"),
) -> None:
    """Move a category under another one."""
    move_category_command(category, parent)


@category_app.command(name="rename")
def category_rename(category: str, name: str) -> None:
    """Rename a category."""
    rename_category_command(category, name)


@category_app.command(name="delete")
def category_delete(category: str) -> None:
    """Delete a category; its transactions become uncategorized."""
    delete_category_command(category)


@recur_app.command(name="add", context_settings=NEGATIVE_AMOUNTS)
def recur_add(
    amount: str = typer.Argument(..., help="Amount, negative for expenses"),
    category: str = typer.Option(None, "--category", "-c", help="Category id or name"),
    memo: str = typer.Option("", "--memo", "-m", help="Memo"),
    unit: str = typer.Option("month", "--unit", "-u", help="day, week, month or year"),
    every: int = typer.Option(1, "--every", "-e", help="Repeat every N units"),
    day: int = typer.Option(None, "--day", help="Day of month (month/year units)"),
    weekday: str = typer.Option(None, "--weekday", help="Weekday (week unit), e.g. 'fri'"),
    start: str = typer.Option(None, "--start", help="First possible date (default today)"),
    until: str = typer.Option(None, "--until", help="Last possible date"),
    count: int = typer.Option(None, "--count", help="Stop after this many occurrences"),
) -> None:
    """Create a recurring transaction."""
    add_recurring_command(amount, category, memo, unit, every, day, weekday, start, until, count)


@recur_app.command(name="list")
def recur_list() -> None:
    """List recurring transactions."""
    list_recurring_command()


@recur_app.command(name="run")
def recur_run(
    through: str = typer.Option(None, "--through", help="Post occurrences up to this date (default today)"),
) -> None:
    """Post recurring transactions that are due."""
    run_recurring_command(through)


@recur_app.command(name="upcoming")
def recur_upcoming(
    days: int = typer.Option(30, "--days", "-d", help="How many days ahead"),
) -> None:
    """Show upcoming recurring transactions."""
    upcoming_command(days)


@budget_app.command(name="add")
def budget_add(
    category: str,
    limit: str,
    period: str = typer.Option("monthly", "--period", "-p", help="monthly, weekly or custom"),
    threshold: list[int] = typer.Option(None, "--threshold", "-t", help="Alert percentage (repeatable)"),
    rollup: bool = typer.Option(False, "--rollup", help="Include subcategories"),
    anchor: str = typer.Option(None, "--anchor", help="Custom period start date"),
    span: int = typer.Option(None, "--span", help="Custom period length in days"),
    on: str = typer.Option(None, "--on", help="Reference date (default today)"),
) -> None:
    """Set a spending limit for a category."""
    add_budget_command(category, limit, period, threshold, rollup, anchor, span, on)


@budget_app.command(name="status")
def budget_status(
    on: str = typer.Option(None, "--on", help="Date to evaluate (default now)"),
) -> None:
    """Show your budget status and spending."""
    budget_status_command(on)


@goal_app.command(name="add")
def goal_add(
    name: str,
    target: str,
    by: str = typer.Option(None, "--by", help="Target date"),
    start: str = typer.Option(None, "--start", help="Start date (default today)"),
    sweep: int = typer.Option(None, "--sweep", help="Percentage of each surplus to sweep in"),
    category: str = typer.Option(None, "--category", "-c", help="Expense category for sweep postings"),
) -> None:
    """Create a savings goal."""
    add_goal_command(name, target, by, start, sweep, category)


@goal_app.command(name="contribute")
def goal_contribute(goal_id: int, transaction_id: int) -> None:
    """Count a transaction toward a goal."""
    contribute_command(goal_id, transaction_id)


@goal_app.command(name="sweep", context_settings=NEGATIVE_AMOUNTS)
def goal_sweep(
    goal_id: int,
    surplus: str,
    on: str = typer.Option(None, "--on", help="Posted date (default today)"),
) -> None:
    """Sweep part of a surplus into a goal."""
    sweep_command(goal_id, surplus, on)


@goal_app.command(name="progress")
def goal_progress(goal_id: int = typer.Argument(None, help="Goal id (default: all goals)")) -> None:
    """Show progress toward your goals."""
    progress_command(goal_id)


if __name__ == "__main__":
    app()
