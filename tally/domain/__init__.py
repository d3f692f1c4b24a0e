"""Domain models and types for tally.

This package contains the functional core:
- Pure functions and immutable values
- No database, console or file I/O
- Components that take ``now``/``today`` instead of reading the clock
- Business logic separated from infrastructure
"""

from tally.domain.models import (
    BudgetId,
    CategoryId,
    Description,
    GoalId,
    Kind,
    Money,
    SourceKind,
    TemplateId,
    TransactionId,
)

__all__ = [
    "BudgetId",
    "CategoryId",
    "Description",
    "GoalId",
    "Kind",
    "Money",
    "SourceKind",
    "TemplateId",
    "TransactionId",
]
