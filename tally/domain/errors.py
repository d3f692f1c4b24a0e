"""Error taxonomy for the ledger engine.

- ValidationError: bad input, rejected before any state changes.
- ConflictError: needs a human decision, never auto-resolved.
- NotFoundError / AlreadyTombstonedError: nothing happened beyond the report.
- InvariantViolationError: a defect signal; the engine refuses the operation.
"""


class LedgerError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(LedgerError):
    """Input rejected synchronously."""


class InvalidAmountError(ValidationError):
    """Amount is zero or its sign disagrees with the category kind."""


class UnknownCategoryError(ValidationError):
    """Category id or name does not resolve to a live category."""


class KindMismatchError(ValidationError):
    """Category kind differs from its parent's kind."""


class ScheduleError(ValidationError):
    """Recurrence schedule is malformed."""


class ConflictError(LedgerError):
    """Operation needs a manual decision."""


class TemplateEndedError(ConflictError):
    """Recurrence template has no occurrences left to materialize."""


class EvaluationSupersededError(ConflictError):
    """A newer evaluation of the same budget started while this one was scanning."""


class NotFoundError(LedgerError):
    """Referenced entity does not exist."""


class AlreadyTombstonedError(LedgerError):
    """Transaction was already deleted."""


class InvariantViolationError(LedgerError):
    """Operation would corrupt engine state."""


class CycleError(InvariantViolationError):
    """Reparenting would create a cycle in the category tree."""


class NonMonotonicMaterializationError(InvariantViolationError):
    """Materialization watermark would move backwards."""
