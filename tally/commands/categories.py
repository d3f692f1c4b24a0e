"""Category commands: add, list, move, rename and delete."""

import sys

from rich.tree import Tree

from tally.commands.common import console, open_ledger, resolve_category
from tally.domain.categories import Category
from tally.domain.models import Kind
from tally.engine import Ledger


def _parse_kind(kind: str) -> Kind:
    try:
        return Kind(kind.lower())
    except ValueError:
        console.print(f"[red]Unknown kind '{kind}' (use 'income' or 'expense')[/red]")
        sys.exit(1)


def add_category_command(name: str, kind: str = "expense", parent: str | None = None) -> None:
    """Create a category, optionally below a parent of the same kind."""
    category_kind = _parse_kind(kind)
    with open_ledger() as ledger:
        parent_id = resolve_category(ledger, parent).id if parent is not None else None
        category = ledger.add_category(name, category_kind, parent_id)
        console.print(f"[green]✓[/green] Created {category.kind} category '{category.name}' (ID: {category.id})")


def _add_branch(tree: Tree, ledger: Ledger, category: Category) -> None:
    label = f"{category.name} [dim]#{category.id}[/dim]"
    if category.reserved:
        label = f"[italic]{label}[/italic]"
    branch = tree.add(label)
    for child in ledger.categories.children(category.id):
        _add_branch(branch, ledger, child)


def list_categories_command() -> None:
    """Show the category tree, one branch per kind."""
    with open_ledger(save=False) as ledger:
        roots = [c for c in ledger.categories.list_categories() if c.parent_id is None]
        for kind in (Kind.EXPENSE, Kind.INCOME):
            tree = Tree(f"[bold cyan]{kind.capitalize()}[/bold cyan]")
            for category in roots:
                if category.kind is kind:
                    _add_branch(tree, ledger, category)
            console.print(tree)


def move_category_command(category: str, parent: str | None = None) -> None:
    """Move a category below another one, or to the top level."""
    with open_ledger() as ledger:
        target = resolve_category(ledger, category)
        parent_id = resolve_category(ledger, parent).id if parent is not None else None
        moved = ledger.reparent_category(target.id, parent_id)
        where = ledger.categories.get(parent_id).name if parent_id is not None else "top level"
        console.print(f"[green]✓[/green] Moved '{moved.name}' to {where}")


def rename_category_command(category: str, name: str) -> None:
    """Rename a category."""
    with open_ledger() as ledger:
        target = resolve_category(ledger, category)
        renamed = ledger.rename_category(target.id, name)
        console.print(f"[green]✓[/green] Renamed '{target.name}' to '{renamed.name}'")


def delete_category_command(category: str) -> None:
    """Soft-delete a category; its transactions move to the uncategorized category."""
    with open_ledger() as ledger:
        target = resolve_category(ledger, category)
        moved = ledger.delete_category(target.id)
        fallback = ledger.categories.uncategorized(target.kind)
        console.print(f"[green]✓[/green] Deleted category '{target.name}'")
        if moved:
            console.print(f"[dim]{len(moved)} transaction(s) moved to '{fallback.name}'[/dim]")
