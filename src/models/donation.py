from datetime import datetime, timezone
from decimal import Decimal
from pydantic import BaseModel, Field
from typing import Literal


DonationStatus = Literal["Succeeded", "Pending", "Failed"]
CommunicationStatus = Literal["Sent", "Failed"]

CENTS = Decimal("0.01")


def cents_to_amount(cents: int) -> Decimal:
    """Stripe minor units (integer cents) to a two-place Decimal in major units."""
    return (Decimal(int(cents)) / 100).quantize(CENTS)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Address(BaseModel):
    line1: str | None = None
    line2: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None

    def is_empty(self) -> bool:
        return not any(self.model_dump().values())

    def format(self) -> str:
        street = self.line1 or ""
        if self.line2:
            street = f"{street}, {self.line2}"
        return f"{street}, {self.city or ''}, {self.state or ''} {self.postal_code or ''}, {self.country or ''}"


class DonorProfile(BaseModel):
    """Best-effort payer identity pulled from a payment event."""
    name: str = "Anonymous"
    email: str | None = None
    organization: str | None = None
    phone: str | None = None
    address: Address | None = None
    stripe_customer_id: str | None = None


class Donor(BaseModel):
    id: str
    name: str | None = None
    email: str | None = None
    organization: str | None = None
    phone: str | None = None
    mailing_address: str | None = None
    stripe_customer_id: str | None = None


class Donation(BaseModel):
    id: str | None = None
    payment_intent_id: str
    checkout_session_id: str
    stripe_customer_id: str | None = None
    donor_id: str

    amount: Decimal
    currency: str = "USD"
    donation_date: datetime = Field(default_factory=utcnow)
    is_recurring: bool = False
    subscription_id: str | None = None
    status: DonationStatus = "Pending"

    email: str
    organization: str | None = None
    address: Address | None = None
    source: str = "Website"


class Communication(BaseModel):
    id: str | None = None
    donation_id: str
    donor_id: str
    recipient_email: str
    subject: str
    body: str
    status: CommunicationStatus
    email_type: str = "Thank You"
    sent_at: datetime = Field(default_factory=utcnow)
