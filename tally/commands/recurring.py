"""Recurring transaction commands: add, list, run and upcoming."""

import sys
from datetime import date, timedelta

from rich.table import Table

from tally.commands.common import console, money, open_ledger, parse_date_option, resolve_category
from tally.commands.transactions import parse_amount
from tally.domain.models import IntervalUnit, kind_for_amount
from tally.domain.recurrence import Schedule

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


def parse_weekday(raw: str) -> int:
    """Accept 0-6 (Monday first) or a day name such as 'fri'."""
    lowered = raw.strip().lower()
    if lowered.isdigit() and 0 <= int(lowered) <= 6:
        return int(lowered)
    for index, name in enumerate(WEEKDAYS):
        if lowered.startswith(name):
            return index
    console.print(f"[red]Unknown weekday '{raw}'[/red]")
    sys.exit(1)


def add_recurring_command(
    amount: str,
    category: str | None = None,
    memo: str = "",
    unit: str = "month",
    every: int = 1,
    day: int | None = None,
    weekday: str | None = None,
    start: str | None = None,
    until: str | None = None,
    count: int | None = None,
) -> None:
    """Create a recurring transaction template."""
    try:
        interval = IntervalUnit(unit.lower())
    except ValueError:
        console.print(f"[red]Unknown unit '{unit}' (use day, week, month or year)[/red]")
        sys.exit(1)

    cents = parse_amount(amount)
    start_date = parse_date_option(start, date.today())
    schedule = Schedule(
        unit=interval,
        every=every,
        anchor_day=day,
        anchor_weekday=parse_weekday(weekday) if weekday is not None else None,
        end_date=parse_date_option(until, date.max) if until is not None else None,
        max_occurrences=count,
    )

    with open_ledger() as ledger:
        if category:
            target = resolve_category(ledger, category)
        else:
            target = ledger.categories.uncategorized(kind_for_amount(cents))
        template = ledger.create_template(cents, target.id, schedule, start_date, memo)
        console.print(f"[green]✓[/green] Created recurring template {template.id}:")
        console.print(f"  Amount: {money(template.amount, ledger.settings)}")
        console.print(f"  Category: {target.name}")
        console.print(f"  Every {schedule.every} {schedule.unit}(s) from {template.start.isoformat()}")


def list_recurring_command() -> None:
    """Show all recurring templates."""
    with open_ledger(save=False) as ledger:
        templates = ledger.recurrence.list_templates()
        if not templates:
            console.print("[yellow]No recurring templates[/yellow]")
            return

        table = Table(title="Recurring templates")
        table.add_column("ID", justify="right", style="dim")
        table.add_column("Memo")
        table.add_column("Amount", justify="right")
        table.add_column("Category", style="magenta")
        table.add_column("Schedule", style="cyan")
        table.add_column("Posted through", style="dim")

        for template in templates:
            schedule = template.schedule
            when = f"every {schedule.every} {schedule.unit}"
            if schedule.anchor_day is not None:
                when += f" on day {schedule.anchor_day}"
            if schedule.anchor_weekday is not None:
                when += f" on {WEEKDAYS[schedule.anchor_weekday]}"
            if schedule.end_date is not None:
                when += f" until {schedule.end_date.isoformat()}"
            through = template.materialized_through.isoformat() if template.materialized_through else "-"
            category = ledger.categories.get(template.category_id, include_deleted=True).name
            table.add_row(
                str(template.id), template.memo or "-", money(template.amount, ledger.settings), category, when, through
            )

        console.print(table)


def run_recurring_command(through: str | None = None) -> None:
    """Post every due occurrence up to a date (default today)."""
    today = date.today()
    through_date = parse_date_option(through, today)

    with open_ledger() as ledger:
        posted = ledger.materialize_all(through_date, now=today)
        for day in sorted({txn.date for txn in posted}):
            ledger.evaluate_budgets(day)
        if posted:
            console.print(f"[green]✓[/green] Posted {len(posted)} recurring transaction(s)")
        else:
            console.print("[dim]Nothing due[/dim]")


def upcoming_command(days: int = 30) -> None:
    """Show projected occurrences over the next few days."""
    through = date.today() + timedelta(days=days)

    with open_ledger(save=False) as ledger:
        occurrences = ledger.upcoming_occurrences(through)
        if not occurrences:
            console.print(f"[yellow]Nothing scheduled in the next {days} days[/yellow]")
            return

        table = Table(title=f"Upcoming (next {days} days)")
        table.add_column("Date", style="cyan")
        table.add_column("Template", justify="right", style="dim")
        table.add_column("Memo")
        table.add_column("Amount", justify="right")
        for occ in occurrences:
            table.add_row(occ.date.isoformat(), str(occ.template_id), occ.memo or "-", money(occ.amount, ledger.settings))
        console.print(table)
