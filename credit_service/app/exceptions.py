from __future__ import annotations


class CreditLedgerError(Exception):
    """Base exception for all credit-ledger errors."""


class InvalidInputError(CreditLedgerError, ValueError):
    """Rejected arguments (e.g., non-positive deduct amount, unknown credit type)."""


class InsufficientBalanceError(CreditLedgerError):
    """Active buckets cannot cover the requested amount.

    Raised inside a locked unit of work to abort it; callers of the ledger only
    see a failed DeductResult.
    """

    def __init__(self, user_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"insufficient balance for user {user_id}: "
            f"requested={requested} available={available}"
        )
        self.user_id = user_id
        self.requested = requested
        self.available = available


class PersistenceError(CreditLedgerError):
    """Store unreachable or write failure. The transaction is already rolled back."""


class LockTimeoutError(PersistenceError):
    """The per-user lock could not be acquired within the configured timeout."""
