"""Pydantic schemas for Stripe webhook envelopes and responses."""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.domain.purchase_intents import invoice_subscription_id


class StripeEventType(StrEnum):
    """Event types the reconciler applies to local state."""

    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

    @classmethod
    def parse(cls, value: str) -> "StripeEventType | None":
        """Return the member for a type tag, or None for unhandled tags."""
        try:
            return cls(value)
        except ValueError:
            return None


class StripeEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: dict[str, Any] = Field(default_factory=dict)


class StripeEventEnvelope(BaseModel):
    """A verified Stripe event, parsed from the exact bytes that were signed."""

    model_config = ConfigDict(extra="allow")

    id: str
    type: str
    livemode: bool = False
    created: int | None = None
    data: StripeEventData = Field(default_factory=StripeEventData)

    @property
    def object(self) -> dict[str, Any]:
        return self.data.object

    @property
    def handled_type(self) -> StripeEventType | None:
        return StripeEventType.parse(self.type)

    def ledger_links(self) -> tuple[str | None, str | None]:
        """(session_id, subscription_id) recorded on the ledger row."""
        event_type = self.handled_type
        object_id = self.object.get("id")
        if event_type in (StripeEventType.CHECKOUT_SESSION_COMPLETED, StripeEventType.PAYMENT_INTENT_SUCCEEDED):
            return object_id, None
        if event_type in (StripeEventType.SUBSCRIPTION_UPDATED, StripeEventType.SUBSCRIPTION_DELETED):
            return None, object_id
        if event_type in (StripeEventType.INVOICE_PAYMENT_SUCCEEDED, StripeEventType.INVOICE_PAYMENT_FAILED):
            return None, invoice_subscription_id(self.object)
        return None, None


class WebhookAck(BaseModel):
    """Body returned to Stripe for every acknowledged delivery."""

    received: bool = True
    processed: bool | None = None
    reason: str | None = None


class WebhookErrorResponse(BaseModel):
    error: str
    code: str
