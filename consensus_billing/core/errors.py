"""
Accounting error types.

Every error is raised synchronously to the caller and leaves previously
recorded state untouched.
"""

from typing import Optional


class AccountingError(Exception):
    """Base class for all accounting failures."""


class ValidationError(AccountingError, ValueError):
    """Raised when input to an accounting operation is malformed."""


class InvalidEventError(ValidationError):
    """Raised when a usage event fails validation before being recorded."""
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class DuplicateSubscriptionError(AccountingError):
    """Raised when a user who already holds a subscription creates another."""
    def __init__(self, user_id: str, subscription_id: str):
        super().__init__(
            f"User {user_id} already has subscription {subscription_id}"
        )
        self.user_id = user_id
        self.subscription_id = subscription_id


class SubscriptionNotFoundError(AccountingError):
    """Raised when an operation needs a subscription the user does not have."""
    def __init__(self, user_id: str):
        super().__init__(f"No subscription found for user {user_id}")
        self.user_id = user_id


class InvalidTransitionError(AccountingError):
    """Raised when a subscription status change is not permitted."""
    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move subscription from {current} to {target}")
        self.current = current
        self.target = target


class QuotaExceededError(AccountingError):
    """Raised when an action is denied by the user's tier limits.

    ``decision`` carries the quota decision or limit check that denied it.
    """
    def __init__(self, message: str, decision=None):
        super().__init__(message)
        self.decision = decision


class BillingPeriodNotFoundError(AccountingError):
    """Raised when an invoice is requested for an unknown billing period."""
    def __init__(self, period_id: str):
        super().__init__(f"Billing period not found: {period_id}")
        self.period_id = period_id
