"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID

from pixelperfect_billing.models.api import ChangeErrorCode


class BillingError(Exception):
    """Base exception for all billing errors."""

    pass


class InsufficientCreditsError(BillingError):
    """Raised when a profile has insufficient credits for a debit."""

    def __init__(self, balance: int, required: int) -> None:
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient credits. Balance: {balance}, Required: {required}")


class ProfileNotFoundError(BillingError):
    """Raised when no profile matches the lookup."""

    def __init__(self, lookup: str) -> None:
        self.lookup = lookup
        super().__init__(f"Profile not found: {lookup}")


class UnknownPriceIdError(BillingError):
    """Raised when a price id is not in the catalog."""

    def __init__(self, price_id: str) -> None:
        self.price_id = price_id
        super().__init__(f"Unknown price id: {price_id}")


class InvalidPlanError(BillingError):
    """Raised when a price id resolves to something that is not a subscription plan."""

    def __init__(self, price_id: str) -> None:
        self.price_id = price_id
        super().__init__(f"Price id {price_id} is not a subscription plan")


class WriteVerificationError(BillingError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(BillingError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class EventStatusUpdateError(BillingError):
    """Raised when a webhook event cannot be moved to a terminal status."""

    def __init__(self, event_id: str, status: str, attempts: int) -> None:
        self.event_id = event_id
        self.status = status
        self.attempts = attempts
        super().__init__(
            f"Failed to mark webhook event {event_id} as {status} after {attempts} attempts"
        )


class PaymentProviderError(BillingError):
    """Raised when payment provider operation fails."""

    def __init__(self, message: str, not_found: bool = False) -> None:
        self.message = message
        self.not_found = not_found
        super().__init__(f"Payment provider error: {message}")


class WebhookVerificationError(BillingError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


class WebhookConfigurationError(BillingError):
    """Raised when webhook verification is configured unsafely for the environment."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook configuration error: {message}")


class WebhookProcessingError(BillingError):
    """Raised when a verified webhook event fails inside its handler."""

    def __init__(self, event_id: str, event_type: str, cause: str) -> None:
        self.event_id = event_id
        self.event_type = event_type
        self.cause = cause
        super().__init__(f"Failed to process {event_type} event {event_id}: {cause}")


class SubscriptionChangeError(BillingError):
    """Raised when a synchronous plan change is rejected or fails."""

    def __init__(self, code: ChangeErrorCode, message: str, status_code: int) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        super().__init__(f"{code.value}: {message}")


class AdjustmentRejectedError(BillingError):
    """Raised when an admin credit adjustment is not applicable."""

    def __init__(self, user_id: UUID, reason: str) -> None:
        self.user_id = user_id
        self.reason = reason
        super().__init__(f"Adjustment for {user_id} rejected: {reason}")


class AuthenticationError(BillingError):
    """Raised when authentication fails (missing or invalid bearer token)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")
