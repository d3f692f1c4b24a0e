"""Pure functions and value types for transactions.

This module contains the functional core for transaction data:
- No I/O operations (no database, no console, no files)
- No side effects
- Pure data transformations
- Easy to test

All monetary amounts are in cents (Money type). Expenses are negative.
"""

import hashlib
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TypedDict

from tally.domain.errors import InvalidAmountError
from tally.domain.models import CategoryId, Description, Kind, Money, SourceKind, TemplateId, TransactionId


class CsvMapping(TypedDict):
    """Column mapping for a bank CSV export."""

    date_column: str
    description_column: str
    amount_column: str
    category_column: str | None


@dataclass(frozen=True)
class NewTransaction:
    """Transaction data supplied by a caller before it is posted."""

    date: date
    amount: Money
    category_id: CategoryId
    memo: Description = Description("")
    source: SourceKind = SourceKind.MANUAL
    template_id: TemplateId | None = None


@dataclass(frozen=True)
class Transaction:
    """Immutable version of a posted transaction.

    ``seq`` is the insertion sequence number used to break date ties.
    ``revision`` is the store revision at which this version was written.
    """

    id: TransactionId
    seq: int
    date: date
    amount: Money
    category_id: CategoryId
    memo: Description
    source: SourceKind
    dedup_key: str
    revision: int
    template_id: TemplateId | None = None
    tombstoned: bool = False


@dataclass(frozen=True)
class ParsedRow:
    """A row handed over by an import adapter."""

    date: date
    amount: Money
    description: str
    category_hint: str | None = None


def normalize_description(description: str) -> str:
    """Normalize transaction description for matching.

    Args:
        description: Raw transaction description.

    Returns:
        Normalized description (lowercase, whitespace normalized).
    """
    return " ".join(description.lower().split())


def compute_dedup_key(posted: date, amount: Money, description: str) -> str:
    """Fingerprint of an economic event.

    The source is deliberately left out so the same event arriving via manual
    entry, a recurring template or an import yields the same key.

    Args:
        posted: Posted date.
        amount: Amount in cents.
        description: Memo or bank description.

    Returns:
        Hex SHA-256 of ``date|amount|normalized description``.
    """
    raw = f"{posted.isoformat()}|{amount}|{normalize_description(description)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def check_amount_for_kind(amount: Money, kind: Kind) -> None:
    """Enforce the sign convention.

    Raises:
        InvalidAmountError: If the amount is zero or has the wrong sign.
    """
    if amount == 0:
        raise InvalidAmountError("Amount must not be zero")
    if kind is Kind.EXPENSE and amount > 0:
        raise InvalidAmountError(f"Expense amounts must be negative, got {amount}")
    if kind is Kind.INCOME and amount < 0:
        raise InvalidAmountError(f"Income amounts must be positive, got {amount}")


def parse_money(amount_str: str) -> Money:
    """Parse a decimal string such as ``-12.34`` into cents.

    Currency symbols and thousands separators are ignored. Values with more
    than two decimal places are rounded half-up.

    Raises:
        InvalidAmountError: If the string is not a number.
    """
    cleaned = amount_str.strip().replace(",", "").replace("$", "").replace("£", "").replace("€", "")
    try:
        value = Decimal(cleaned)
    except InvalidOperation as e:
        raise InvalidAmountError(f"Invalid amount: '{amount_str}'") from e
    if not value.is_finite():
        raise InvalidAmountError(f"Invalid amount: '{amount_str}'")
    return Money(int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)))


def format_money_display(amount: Money, include_sign: bool = True, symbol: str = "$") -> str:
    """Format money amount for display.

    Args:
        amount: Amount in cents.
        include_sign: Whether to include + or - sign.
        symbol: Currency symbol.

    Returns:
        Formatted string (e.g., "-$123.45" or "$123.45").
    """
    formatted = f"{symbol}{Decimal(abs(amount)) / 100:,.2f}"

    if include_sign:
        if amount < 0:
            return f"-{formatted}"
        else:
            return f"+{formatted}"
    else:
        return formatted


def analyze_csv_columns(headers: list[str]) -> CsvMapping:
    """Suggest a column mapping from CSV headers.

    Args:
        headers: List of CSV column names.

    Returns:
        Suggested mapping (empty string where a required column was not detected).
    """
    mapping = CsvMapping(date_column="", description_column="", amount_column="", category_column=None)

    for header in headers:
        lowered = header.lower()
        if not mapping["date_column"] and "date" in lowered:
            mapping["date_column"] = header

        if not mapping["description_column"]:
            if "merchant" in lowered and "name" in lowered:
                mapping["description_column"] = header
            elif "description" in lowered or "memo" in lowered or "payee" in lowered:
                mapping["description_column"] = header

        if not mapping["amount_column"] and "amount" in lowered and "currency" not in lowered:
            mapping["amount_column"] = header

        if mapping["category_column"] is None and "category" in lowered:
            mapping["category_column"] = header

    return mapping


def parse_csv_row(row: dict[str, str], mapping: CsvMapping, parse_date: Callable[[str], date]) -> ParsedRow | None:
    """Parse one CSV row into an import row.

    Args:
        row: CSV row as dictionary.
        mapping: Column mapping configuration.
        parse_date: Converts the raw date cell into a date.

    Returns:
        ParsedRow if valid, None if the row has no date or amount.

    Raises:
        InvalidAmountError: If the amount cell is not a number.
    """
    raw_date = (row.get(mapping["date_column"]) or "").strip()
    raw_amount = (row.get(mapping["amount_column"]) or "").strip()
    if not raw_date or not raw_amount:
        return None

    description = (row.get(mapping["description_column"]) or "").strip() or "Unknown"
    hint = None
    if mapping["category_column"]:
        hint = (row.get(mapping["category_column"]) or "").strip() or None

    return ParsedRow(date=parse_date(raw_date), amount=parse_money(raw_amount), description=description, category_hint=hint)
