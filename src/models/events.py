"""
Typed views over the Stripe payloads this service consumes.

Only the fields the pipeline reads are declared; everything else in the
payload is ignored. Every field is optional unless Stripe always sends it.
"""
from typing import Any

from pydantic import BaseModel, Field

from models.donation import Address


CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"

# Logged and acknowledged, nothing else.
ACKNOWLEDGED_EVENT_TYPES = frozenset({
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_UPDATED,
    SUBSCRIPTION_DELETED,
    INVOICE_PAID,
    INVOICE_PAYMENT_SUCCEEDED,
})


class EventData(BaseModel):
    object: dict[str, Any]


class StripeEvent(BaseModel):
    id: str
    type: str
    created: int | None = None
    livemode: bool = False
    data: EventData

    @property
    def object_id(self) -> str | None:
        return self.data.object.get("id")


class CheckoutCustomerDetails(BaseModel):
    email: str | None = None
    name: str | None = None
    phone: str | None = None
    address: Address | None = None


class CustomFieldText(BaseModel):
    value: str | None = None


class CustomField(BaseModel):
    key: str
    text: CustomFieldText | None = None


class CheckoutSession(BaseModel):
    id: str
    mode: str = "payment"
    payment_intent: str | None = None
    payment_status: str | None = None
    customer: str | None = None
    customer_email: str | None = None
    customer_details: CheckoutCustomerDetails | None = None
    amount_total: int | None = None
    currency: str | None = None
    subscription: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    custom_fields: list[CustomField] = Field(default_factory=list)

    @property
    def is_recurring(self) -> bool:
        return self.mode == "subscription"

    def custom_field(self, key: str) -> str | None:
        for field in self.custom_fields:
            if field.key == key and field.text is not None:
                return field.text.value or None
        return None


class PaymentIntentDetails(BaseModel):
    id: str
    status: str
    customer: str | None = None
    billing_address: Address | None = None


class StripeCustomer(BaseModel):
    id: str
    email: str | None = None
    name: str | None = None
    phone: str | None = None
