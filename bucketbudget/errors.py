"""Error taxonomy for budget operations.

Every failing write surfaces one of these with a message the caller can
show as-is.  Ownership failures use ``NotFoundError`` so that entities of
other users are indistinguishable from missing ones.
"""

from __future__ import annotations

import math


class BudgetError(Exception):
    """Base class for all errors raised by the engine."""


class ConfigurationError(BudgetError):
    """Required configuration (e.g. aggregator credentials) is missing."""


class ValidationError(BudgetError, ValueError):
    """Malformed input, rejected before any write."""


class NotFoundError(BudgetError):
    """Entity does not exist or is not visible to the caller."""


class ForbiddenError(BudgetError):
    """Entity exists but belongs to another user."""


class ConflictError(BudgetError):
    """The write would break a ledger invariant."""


class AllocationMismatchError(ConflictError):
    """Allocations for a transaction do not sum to its amount."""

    def __init__(self, allocation_sum: float, transaction_amount: float):
        self.allocation_sum = allocation_sum
        self.transaction_amount = transaction_amount
        super().__init__(
            f"Allocations sum ({allocation_sum:.2f}) must equal "
            f"transaction amount ({transaction_amount:.2f})"
        )


class InsufficientFundsError(ConflictError):
    """Feeding a bucket would overdraw the available-to-budget pool."""

    def __init__(self, requested: float, available: float):
        self.requested = requested
        self.available = available
        self.shortfall = round(requested - available, 2)
        super().__init__(
            f"Insufficient funds. Need ${requested:.2f}, have ${available:.2f} "
            f"(short ${self.shortfall:.2f})"
        )


class RateLimitedError(BudgetError):
    """A refresh or sync was attempted inside its cooldown window."""

    def __init__(self, remaining_seconds: float):
        self.remaining_seconds = max(0.0, remaining_seconds)
        self.remaining_minutes = max(1, math.ceil(self.remaining_seconds / 60))
        plural = "" if self.remaining_minutes == 1 else "s"
        super().__init__(
            f"Rate limited. Try again in {self.remaining_minutes} minute{plural}."
        )


class UpstreamError(BudgetError):
    """The aggregator was unreachable or returned an error."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)
