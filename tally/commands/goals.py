"""Savings goal commands: add, contribute, sweep and progress."""

from datetime import date

from rich.progress_bar import ProgressBar
from rich.table import Table

from tally.commands.common import console, money, open_ledger, parse_date_option, resolve_category
from tally.commands.transactions import parse_amount
from tally.domain.models import ContributionRule, GoalId, Kind, Money, TransactionId


def add_goal_command(
    name: str,
    target: str,
    by: str | None = None,
    start: str | None = None,
    sweep: int | None = None,
    category: str | None = None,
) -> None:
    """Create a savings goal. With --sweep, a share of each surplus is posted to --category."""
    cents = Money(abs(parse_amount(target)))
    start_date = parse_date_option(start, date.today())
    target_date = parse_date_option(by, start_date) if by is not None else None

    with open_ledger() as ledger:
        category_id = resolve_category(ledger, category, Kind.EXPENSE).id if category is not None else None
        goal = ledger.create_goal(
            name,
            cents,
            start_date,
            target_date=target_date,
            rule=ContributionRule.SWEEP if sweep is not None else ContributionRule.MANUAL,
            sweep_percent=sweep,
            category_id=category_id,
        )
        console.print(f"[green]✓[/green] Goal {goal.id} '{goal.name}': save {money(goal.target, ledger.settings, False)}")
        if goal.target_date is not None:
            console.print(f"  By: {goal.target_date.isoformat()}")
        if goal.rule is ContributionRule.SWEEP:
            console.print(f"  Sweeps {goal.sweep_percent}% of each surplus")


def contribute_command(goal_id: int, transaction_id: int) -> None:
    """Count an existing transaction toward a goal."""
    with open_ledger() as ledger:
        ledger.record_contribution(GoalId(goal_id), TransactionId(transaction_id))
        progress = ledger.goal_progress(GoalId(goal_id), date.today())
        console.print(
            f"[green]✓[/green] Transaction {transaction_id} counted toward goal {goal_id} "
            f"({progress.percentage:.0f}% saved)"
        )


def sweep_command(goal_id: int, surplus: str, on: str | None = None) -> None:
    """Post the goal's share of a surplus as a contribution."""
    cents = parse_amount(surplus)
    posted = parse_date_option(on, date.today())

    with open_ledger() as ledger:
        txn = ledger.sweep(GoalId(goal_id), cents, posted)
        ledger.evaluate_budgets(posted)
        console.print(
            f"[green]✓[/green] Swept {money(Money(-txn.amount), ledger.settings, False)} "
            f"into goal {goal_id} (transaction {txn.id})"
        )


def progress_command(goal_id: int | None = None) -> None:
    """Show progress of one goal or all goals."""
    today = date.today()

    with open_ledger(save=False) as ledger:
        goals = ledger.goals.list_goals()
        if goal_id is not None:
            goals = [ledger.goals.get(GoalId(goal_id))]
        if not goals:
            console.print("[yellow]No goals yet[/yellow]")
            console.print("[dim]Use 'tally goal add' to create one[/dim]")
            return

        table = Table(show_header=True, header_style="bold", title="Goals")
        table.add_column("#", style="dim", justify="right")
        table.add_column("Goal", style="white")
        table.add_column("Saved", justify="right")
        table.add_column("Target", justify="right")
        table.add_column("Progress")
        table.add_column("%", justify="right")
        table.add_column("On track", justify="center")

        for goal in goals:
            progress = ledger.goal_progress(goal.id, today)
            if progress.on_track is None:
                on_track = "[dim]-[/dim]"
            elif progress.on_track:
                on_track = "[green]✓[/green]"
            else:
                on_track = "[red]✗[/red]"
            table.add_row(
                str(goal.id),
                goal.name,
                money(progress.accumulated, ledger.settings, False),
                money(goal.target, ledger.settings, False),
                ProgressBar(total=100, completed=float(min(progress.percentage, 100)), width=20),
                f"{progress.percentage:.0f}%",
                on_track,
            )

        console.print(table)
