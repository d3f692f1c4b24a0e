"""Transaction management commands (add, amend, delete)."""

import sys
from datetime import date

from tally.commands.common import console, money, open_ledger, parse_date_option, resolve_category
from tally.domain.errors import InvalidAmountError
from tally.domain.models import Money, TransactionId, kind_for_amount
from tally.domain.transactions import parse_money


def parse_amount(amount: str) -> Money:
    """Parse a decimal amount argument into cents, exiting on bad input."""
    try:
        return parse_money(amount)
    except InvalidAmountError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


def add_command(
    amount: str,
    category: str | None = None,
    memo: str = "",
    on: str | None = None,
) -> None:
    """Add a transaction manually.

    Args:
        amount: Amount in currency units (negative for expenses, positive for income).
        category: Category id or name. Defaults to the uncategorized category of the amount's kind.
        memo: Transaction memo.
        on: Posted date (YYYY-MM-DD, DD/MM/YYYY, or other formats). Defaults to today.
    """
    cents = parse_amount(amount)
    posted = parse_date_option(on, date.today())

    with open_ledger() as ledger:
        kind = kind_for_amount(cents)
        if category:
            target = resolve_category(ledger, category)
        else:
            target = ledger.categories.uncategorized(kind)

        txn = ledger.post_transaction(posted, cents, target.id, memo)
        ledger.evaluate_budgets(posted)

        console.print(f"[green]✓[/green] Transaction {txn.id} added:")
        console.print(f"  Date: {txn.date.isoformat()}")
        console.print(f"  Memo: {txn.memo or '-'}")
        console.print(f"  Amount: {money(txn.amount, ledger.settings)}")
        console.print(f"  Category: {target.name}")


def amend_command(
    transaction_id: int,
    category: str | None = None,
    memo: str | None = None,
) -> None:
    """Reassign the category and/or edit the memo of a transaction.

    Args:
        transaction_id: Transaction ID (from 'tally list').
        category: New category id or name.
        memo: New memo text.
    """
    if category is None and memo is None:
        console.print("[red]Nothing to change: pass --category and/or --memo[/red]")
        sys.exit(1)

    with open_ledger() as ledger:
        category_id = resolve_category(ledger, category).id if category is not None else None
        before = ledger.store.snapshot().get(TransactionId(transaction_id))
        txn = ledger.amend_transaction(TransactionId(transaction_id), category_id=category_id, memo=memo)

        console.print(f"[green]✓[/green] Updated transaction {txn.id}:")
        if txn.category_id != before.category_id:
            old = ledger.categories.get(before.category_id, include_deleted=True).name
            new = ledger.categories.get(txn.category_id).name
            console.print(f"  Category: [dim]{old}[/dim] → {new}")
        if txn.memo != before.memo:
            console.print(f"  [dim]Old memo: {before.memo or '-'}[/dim]")
            console.print(f"  [yellow]New memo: {txn.memo}[/yellow]")


def delete_command(transaction_id: int) -> None:
    """Delete (tombstone) a transaction. The record stays in the history."""
    with open_ledger() as ledger:
        txn = ledger.tombstone_transaction(TransactionId(transaction_id))
        console.print(
            f"[green]✓[/green] Deleted transaction {txn.id} "
            f"({txn.date.isoformat()}, {money(txn.amount, ledger.settings)})"
        )
