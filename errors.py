"""Error taxonomy shared by the processing core.

Client errors derive from ``ValueError`` so callers can keep catching
``ValueError`` for anything the user can correct. Fatal errors derive from
``RuntimeError``.
"""


class FinanceError(Exception):
    pass


class ValidationError(FinanceError, ValueError):
    pass


class InvalidReferenceError(ValidationError):
    """A referenced entity was not loaded alongside the transaction."""


class IntervalBudgetExceededError(ValidationError):
    def __init__(self, max_intervals: int, start, end) -> None:
        self.max_intervals = max_intervals
        self.start = start
        self.end = end
        super().__init__(
            f"Not able to create a maximum of {max_intervals} intervals between "
            f"{start:%d-%m-%Y} and {end:%d-%m-%Y}."
        )


class NotFoundError(FinanceError, ValueError):
    pass


class ObsoleteEntityError(FinanceError, ValueError):
    pass


class InvariantViolationError(FinanceError, RuntimeError):
    pass


class ConcurrencyConflictError(FinanceError, RuntimeError):
    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(
            f"Concurrent modification detected; gave up after {attempts} attempts"
        )


class ExternalServiceError(FinanceError, RuntimeError):
    pass
