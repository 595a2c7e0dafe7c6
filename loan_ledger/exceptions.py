"""Exception hierarchy for the loan ledger."""


class LedgerError(Exception):
    """Base exception for all ledger errors."""


class InvalidTerms(LedgerError, ValueError):
    """Raised when principal, interest or installment configuration is invalid."""


class InvalidStatusTransition(InvalidTerms):
    """Raised when a status change is not allowed from the loan's current status."""


class InvalidPayment(LedgerError, ValueError):
    """Raised when a payment cannot be applied to a loan."""


class NotFound(LedgerError, LookupError):
    """Raised when a loan or one of its installments does not exist."""


class InstallmentNotFound(NotFound, InvalidPayment):
    """Raised when a payment targets an installment number the loan does not have."""


class DuplicateLoanId(LedgerError):
    """Raised when a loan id is already taken within its company."""


class ConcurrencyConflict(LedgerError):
    """Raised when a loan was modified by another writer since it was read."""


class StorageError(LedgerError):
    """Raised when the storage backend fails; nothing was persisted."""


class LedgerInvariantError(LedgerError, AssertionError):
    """Raised when a computed loan violates a ledger invariant."""
