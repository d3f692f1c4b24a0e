"""Budget commands: add and status."""

import sys
from datetime import date, datetime, timezone
from decimal import Decimal

from rich.table import Table

from tally.commands.common import console, money, open_ledger, parse_date_option, resolve_category
from tally.commands.transactions import parse_amount
from tally.domain.models import Money, PeriodKind


def format_percentage_with_color(percentage: Decimal) -> str:
    """Format budget usage with color based on percentage.

    Args:
        percentage: Budget usage percentage.

    Returns:
        Colored string for budget display.
    """
    text = f"{percentage:.0f}%"
    if percentage > 100:
        return f"[red]{text}[/red]"
    elif percentage > 90:
        return f"[yellow]{text}[/yellow]"
    else:
        return f"[green]{text}[/green]"


def add_budget_command(
    category: str,
    limit: str,
    period: str = "monthly",
    thresholds: list[int] | None = None,
    rollup: bool = False,
    anchor: str | None = None,
    span: int | None = None,
    on: str | None = None,
) -> None:
    """Create a budget for a category (superseding the current one from the next period)."""
    try:
        kind = PeriodKind(period.lower())
    except ValueError:
        console.print(f"[red]Unknown period '{period}' (use monthly, weekly or custom)[/red]")
        sys.exit(1)

    cents = parse_amount(limit)
    as_of = parse_date_option(on, date.today())
    anchor_date = parse_date_option(anchor, as_of) if kind is PeriodKind.CUSTOM else None

    with open_ledger() as ledger:
        target = resolve_category(ledger, category)
        definition = ledger.default_period(kind, anchor=anchor_date, span_days=span)
        budget = ledger.create_budget(
            target.id,
            Money(abs(cents)),
            as_of,
            period=definition,
            thresholds=thresholds or (80, 100),
            rollup=rollup,
        )
        console.print(f"[green]✓[/green] Budget {budget.id} for '{target.name}':")
        console.print(f"  Limit: {money(budget.limit, ledger.settings, include_sign=False)} per {kind} period")
        console.print(f"  Alerts at: {', '.join(f'{t}%' for t in budget.thresholds)}")
        console.print(f"  Effective from: {budget.effective_from.isoformat()}")


def budget_status_command(on: str | None = None) -> None:
    """Show consumption of every budget in effect."""
    instant: date | datetime = parse_date_option(on, date.today()) if on else datetime.now(timezone.utc)

    with open_ledger() as ledger:
        states = ledger.evaluate_budgets(instant)
        if not states:
            console.print("[yellow]No budgets in effect[/yellow]")
            console.print("[dim]Use 'tally budget add' to create one[/dim]")
            return

        table = Table(show_header=True, header_style="bold", title="Budget Status")
        table.add_column("#", style="dim", justify="right")
        table.add_column("Category", style="white")
        table.add_column("Period", style="cyan")
        table.add_column("Limit", justify="right")
        table.add_column("Spent", justify="right")
        table.add_column("Remaining", justify="right")
        table.add_column("Used", justify="right")

        for state in states:
            budget = ledger.budgets.get(state.budget_id)
            name = ledger.categories.get(budget.category_id, include_deleted=True).name
            if budget.rollup:
                name += " [dim](incl. subcategories)[/dim]"
            last_day = date.fromordinal(state.period_end.toordinal() - 1)

            if state.remaining < 0:
                remaining = f"[red]-{money(Money(-state.remaining), ledger.settings, include_sign=False)}[/red]"
            else:
                remaining = money(state.remaining, ledger.settings, include_sign=False)

            table.add_row(
                str(state.budget_id),
                name,
                f"{state.period_start.isoformat()} – {last_day.isoformat()}",
                money(budget.limit, ledger.settings, include_sign=False),
                money(state.consumed, ledger.settings, include_sign=False),
                remaining,
                format_percentage_with_color(state.percentage),
            )

        console.print(table)
