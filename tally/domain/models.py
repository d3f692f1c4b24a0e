"""Domain type definitions for tally.

These NewTypes provide semantic clarity and help with type checking:
- Money: Amount in cents (minor units)
- CategoryId, TransactionId, TemplateId, BudgetId, GoalId: entity identifiers
- Description: Transaction memo / description text

The enums are string-valued so they serialize as plain text in exports
and in the SQLite store.
"""

from enum import StrEnum
from typing import NewType

# Money amounts are stored as cents (minor units) to avoid floating point errors.
# Expenses are negative, income is positive.
Money = NewType("Money", int)

CategoryId = NewType("CategoryId", int)
TransactionId = NewType("TransactionId", int)
TemplateId = NewType("TemplateId", int)
BudgetId = NewType("BudgetId", int)
GoalId = NewType("GoalId", int)

# Transaction description / memo text
Description = NewType("Description", str)


class Kind(StrEnum):
    """Whether a category tracks money coming in or going out."""

    INCOME = "income"
    EXPENSE = "expense"


class SourceKind(StrEnum):
    """Where a transaction came from."""

    MANUAL = "manual"
    RECURRING = "recurring"
    IMPORT = "import"


class IntervalUnit(StrEnum):
    """Step unit of a recurrence schedule."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class PeriodKind(StrEnum):
    """Shape of a budget's evaluation window."""

    MONTHLY = "monthly"
    WEEKLY = "weekly"
    CUSTOM = "custom"


class ContributionRule(StrEnum):
    """How money reaches a savings goal."""

    MANUAL = "manual"
    SWEEP = "sweep"


def kind_for_amount(amount: Money) -> Kind:
    """Infer category kind from the sign of an amount."""
    return Kind.EXPENSE if amount < 0 else Kind.INCOME
