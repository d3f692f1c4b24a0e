"""Import command: reconcile a bank CSV export into the ledger."""

import csv
import sys
from pathlib import Path

from rich.table import Table

from tally.commands.common import console, money, open_ledger, parse_date
from tally.config import Settings
from tally.domain.errors import InvalidAmountError
from tally.domain.transactions import CsvMapping, ParsedRow, analyze_csv_columns, parse_csv_row


def resolve_mapping(
    headers: list[str],
    date_column: str | None = None,
    description_column: str | None = None,
    amount_column: str | None = None,
    category_column: str | None = None,
) -> CsvMapping:
    """Combine detected columns with explicit overrides, exiting if one is missing."""
    mapping = analyze_csv_columns(headers)
    if date_column:
        mapping["date_column"] = date_column
    if description_column:
        mapping["description_column"] = description_column
    if amount_column:
        mapping["amount_column"] = amount_column
    if category_column:
        mapping["category_column"] = category_column

    missing = [
        label
        for label, column in (
            ("date", mapping["date_column"]),
            ("description", mapping["description_column"]),
            ("amount", mapping["amount_column"]),
        )
        if not column or column not in headers
    ]
    if missing:
        console.print(f"[red]Could not find CSV column(s) for: {', '.join(missing)}[/red]", style="bold")
        console.print(f"[dim]Columns in file: {', '.join(headers)}[/dim]")
        console.print("[dim]Pass --date-column / --description-column / --amount-column[/dim]")
        sys.exit(1)
    return mapping


def read_csv_rows(csv_path: Path, mapping_overrides: dict[str, str | None]) -> list[ParsedRow]:
    """Parse a CSV file into import rows, skipping rows with no date or amount.

    Raises:
        SystemExit: If the file cannot be read or a row is malformed.
    """
    try:
        with open(csv_path, newline="", encoding="utf-8-sig") as f:
            reader = csv.DictReader(f)
            mapping = resolve_mapping(list(reader.fieldnames or []), **mapping_overrides)
            rows: list[ParsedRow] = []
            for line, raw in enumerate(reader, start=2):
                try:
                    parsed = parse_csv_row(raw, mapping, parse_date)
                except (InvalidAmountError, ValueError) as e:
                    console.print(f"[red]Line {line}: {e}[/red]", style="bold")
                    sys.exit(1)
                if parsed is not None:
                    rows.append(parsed)
    except OSError as e:
        console.print(f"[red]Could not read {csv_path}: {e}[/red]", style="bold")
        sys.exit(1)
    return rows


def render_skipped_report(title: str, rows: list[ParsedRow], settings: Settings) -> None:
    """Render a table of rows that were not inserted."""
    console.print(f"\n[bold cyan]{title}:[/bold cyan]")
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Date")
    table.add_column("Description")
    table.add_column("Amount", justify="right")

    for row in rows:
        table.add_row(row.date.isoformat(), row.description[:50], money(row.amount, settings))

    console.print(table)


def import_command(
    csv_file: str,
    tolerance: int | None = None,
    verbose: bool = False,
    date_column: str | None = None,
    description_column: str | None = None,
    amount_column: str | None = None,
    category_column: str | None = None,
) -> None:
    """Import a bank CSV export, skipping duplicates and flagging conflicts."""
    csv_path = Path(csv_file).expanduser()
    if not csv_path.exists():
        console.print(f"[red]File not found: {csv_path}[/red]", style="bold")
        sys.exit(1)

    rows = read_csv_rows(
        csv_path,
        {
            "date_column": date_column,
            "description_column": description_column,
            "amount_column": amount_column,
            "category_column": category_column,
        },
    )
    if not rows:
        console.print("[yellow]No transactions found in file[/yellow]")
        return

    with open_ledger() as ledger:
        console.print(f"[cyan]Reconciling {len(rows)} row(s) from {csv_path.name}...[/cyan]")
        result = ledger.import_rows(rows, tolerance)
        snapshot = ledger.store.snapshot()
        for day in sorted({snapshot.get(txn_id).date for txn_id in result.inserted}):
            ledger.evaluate_budgets(day)

        console.print(f"[green]✓[/green] Imported {len(result.inserted)} new transaction(s)")
        if result.duplicates:
            console.print(f"[dim]Skipped {len(result.duplicates)} duplicate(s)[/dim]")
        if result.conflicts:
            console.print(
                f"[yellow]{len(result.conflicts)} conflict(s) need review (same amount on a nearby date)[/yellow]"
            )
            render_skipped_report("Conflicts", result.conflicts, ledger.settings)
        if verbose and result.duplicates:
            render_skipped_report("Duplicate Report", result.duplicates, ledger.settings)
