"""Exception hierarchy for the payments backend.

Webhook errors carry the HTTP status and the machine-readable code returned to
Stripe as ``{"error": ..., "code": ...}``. Reconciliation errors never reach
the HTTP layer; they are recorded against the webhook ledger row.
"""

# Machine-readable codes shared with the checkout flow
ERR_WEBHOOK_INVALID = "ERR_WEBHOOK_INVALID"
ERR_WEBHOOK_CONFIG = "ERR_WEBHOOK_CONFIG"
ERR_WEBHOOK_PROCESSING = "ERR_WEBHOOK_PROCESSING"
ERR_INVALID_METADATA = "ERR_INVALID_METADATA"


class JDSError(Exception):
    """Base exception for the payments backend."""

    pass


class WebhookError(JDSError):
    """Raised when a webhook request must be rejected at the HTTP layer."""

    status_code: int = 400
    code: str = ERR_WEBHOOK_INVALID

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidSignatureError(WebhookError):
    """Missing or unverifiable stripe-signature header."""

    pass


class InvalidPayloadError(WebhookError):
    """Request body is not a Stripe event envelope."""

    pass


class WebhookConfigurationError(WebhookError):
    """Signing secret for the event's mode is not configured (deployment fault)."""

    status_code = 500
    code = ERR_WEBHOOK_CONFIG


class WebhookProcessingError(WebhookError):
    """Unexpected failure while dispatching a verified event."""

    status_code = 500
    code = ERR_WEBHOOK_PROCESSING


class ReconciliationError(JDSError):
    """Raised when a verified event cannot be applied to local state."""

    pass


class MetadataValidationError(ReconciliationError):
    """Event metadata lacks the fields its branch requires. Retrying cannot fix it."""

    code = ERR_INVALID_METADATA


class PersistenceError(ReconciliationError):
    """A state mutation failed to persist. May succeed on replay."""

    pass
