"""Admin commands for init, backup, export/restore and listing transactions."""

import shutil
import sqlite3
import sys
from datetime import date, datetime
from pathlib import Path

from rich.table import Table

from tally.commands.common import console, money, open_ledger, parse_date_option, resolve_category
from tally.config import create_default_config, get_config_path, load_settings
from tally.domain.errors import LedgerError
from tally.domain.export import export_ledger, import_ledger
from tally.domain.ledger import TransactionFilter
from tally.engine import Ledger
from tally.store.queries import save_ledger
from tally.store.schema import get_db_path, get_xdg_data_home, init_database


def backup_command(
    output_dir: str | None = None,
) -> None:
    """Backup database and configuration files."""
    db_path = get_db_path()
    config_path = get_config_path()

    if not db_path.exists():
        console.print("[red]Database not found. Run 'tally init' first.[/red]", style="bold")
        sys.exit(1)

    if not config_path.exists():
        console.print("[red]Config not found. Run 'tally init' first.[/red]", style="bold")
        sys.exit(1)

    if output_dir:
        backup_dir = Path(output_dir).expanduser()
    else:
        backup_dir = get_xdg_data_home() / "tally" / "backups"

    backup_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")

    db_backup = backup_dir / f"tally_{timestamp}.db"
    config_backup = backup_dir / f"config_{timestamp}.toml"

    try:
        shutil.copy2(db_path, db_backup)
        console.print(f"[green]✓[/green] Database backed up to: {db_backup}")

        shutil.copy2(config_path, config_backup)
        console.print(f"[green]✓[/green] Config backed up to: {config_backup}")

        console.print("\n[green]Backup complete![/green]", style="bold")
        console.print(f"[dim]Backup directory: {backup_dir}[/dim]")

    except OSError as e:
        console.print(f"[red]Backup failed: {e}[/red]", style="bold")
        sys.exit(1)


def run_full_init(db_path: Path, config_path: Path) -> None:
    """Initialize new database and config."""
    console.print(f"[cyan]Initializing database at {db_path}...[/cyan]")
    if db_path.exists():
        db_path.unlink()
    init_database(db_path)
    save_ledger(Ledger(), db_path)
    console.print("[green]✓[/green] Database initialized")

    console.print(f"[cyan]Creating config file at {config_path}...[/cyan]")
    create_default_config(config_path)
    console.print("[green]✓[/green] Config file created (permissions: 600)")

    console.print("\n[green]Initialization complete![/green]", style="bold")
    console.print(f"[dim]Database: {db_path}[/dim]")
    console.print(f"[dim]Config: {config_path}[/dim]")


def init_command(force: bool = False) -> None:
    """Initialize tally database and configuration."""
    db_path = get_db_path()
    config_path = get_config_path()

    db_exists = db_path.exists()
    config_exists = config_path.exists()

    try:
        if not force and (db_exists or config_exists):
            console.print("[red]Initialization failed:[/red]", style="bold")
            if db_exists:
                console.print(f"  Database already exists: {db_path}")
            if config_exists:
                console.print(f"  Config already exists: {config_path}")
            console.print("\n[yellow]Use 'tally init --force' to overwrite[/yellow]")
            sys.exit(1)

        run_full_init(db_path, config_path)

    except sqlite3.Error as e:
        console.print(f"[red]Database error: {e}[/red]", style="bold")
        sys.exit(1)
    except OSError as e:
        console.print(f"[red]Filesystem error: {e}[/red]", style="bold")
        sys.exit(1)


def export_command(output: str | None = None) -> None:
    """Write the ledger as a JSON document to a file or stdout."""
    with open_ledger(save=False) as ledger:
        document = export_ledger(ledger)

    if output is None:
        sys.stdout.write(document)
        return

    output_path = Path(output).expanduser()
    try:
        output_path.write_text(document, encoding="utf-8")
    except OSError as e:
        console.print(f"[red]Export failed: {e}[/red]", style="bold")
        sys.exit(1)
    console.print(f"[green]✓[/green] Exported to: {output_path}")


def restore_command(input_path: str, force: bool = False) -> None:
    """Replace the database contents with an exported JSON document."""
    source = Path(input_path).expanduser()
    db_path = get_db_path()

    if db_path.exists() and not force:
        console.print(f"[red]Database already exists: {db_path}[/red]", style="bold")
        console.print("[yellow]Use 'tally restore --force' to replace it[/yellow]")
        sys.exit(1)

    try:
        ledger = import_ledger(source.read_text(encoding="utf-8"), load_settings())
        init_database(db_path)
        save_ledger(ledger, db_path, replace=True)
    except OSError as e:
        console.print(f"[red]Could not read {source}: {e}[/red]", style="bold")
        sys.exit(1)
    except (LedgerError, KeyError, TypeError, ValueError) as e:
        console.print(f"[red]Restore failed: {e}[/red]", style="bold")
        sys.exit(1)
    except sqlite3.Error as e:
        console.print(f"[red]Database error: {e}[/red]", style="bold")
        sys.exit(1)

    live = ledger.list_transactions()
    console.print(f"[green]✓[/green] Restored {len(live)} transaction(s) into {db_path}")


def list_command(
    limit: int = 50,
    all: bool = False,
    category: str | None = None,
    since: str | None = None,
    until: str | None = None,
    deleted: bool = False,
) -> None:
    """List transactions, newest first."""
    with open_ledger(save=False) as ledger:
        category_ids = None
        if category is not None:
            category_ids = ledger.categories.subtree_ids(resolve_category(ledger, category).id)
        flt = TransactionFilter(
            start=parse_date_option(since, date.min),
            end=parse_date_option(until, date.max),
            category_ids=category_ids,
            include_tombstoned=deleted,
        )
        transactions = list(reversed(ledger.list_transactions(flt)))
        names = {c.id: c.name for c in ledger.categories.list_categories(include_deleted=True)}

        if not all:
            transactions = transactions[:limit]

        if not transactions:
            console.print("[yellow]No transactions found[/yellow]")
            return

        title = (
            f"Transactions (showing all {len(transactions)})" if all else f"Transactions (showing {len(transactions)})"
        )
        table = Table(title=title)
        table.add_column("ID", justify="right", style="dim")
        table.add_column("Date", style="cyan")
        table.add_column("Memo", style="white")
        table.add_column("Amount", justify="right")
        table.add_column("Category", style="magenta")
        table.add_column("Source", style="dim")

        for txn in transactions:
            memo = txn.memo or "[dim]-[/dim]"
            if txn.tombstoned:
                memo = f"[strike]{txn.memo}[/strike] [dim](deleted)[/dim]"
            table.add_row(
                str(txn.id),
                txn.date.isoformat(),
                memo,
                money(txn.amount, ledger.settings),
                names.get(txn.category_id, str(txn.category_id)),
                str(txn.source),
            )

        console.print(table)
