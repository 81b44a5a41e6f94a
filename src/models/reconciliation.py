from datetime import datetime, timezone
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from models.donation import utcnow


MismatchKind = Literal[
    "missing_in_store",
    "missing_in_processor",
    "status_mismatch",
    "amount_mismatch",
]
MISMATCH_KINDS: tuple[str, ...] = (
    "missing_in_store",
    "missing_in_processor",
    "status_mismatch",
    "amount_mismatch",
)


class ProcessorSubscription(BaseModel):
    id: str
    customer_id: str | None = None
    customer_email: str | None = None
    status: str
    amount: Decimal
    currency: str | None = None
    created: datetime | None = None


class StoreSponsorship(BaseModel):
    """A recurring donation record in the store that references a Stripe subscription."""
    record_id: str
    subscription_id: str
    email: str | None = None
    status: str = "Unknown"
    amount: Decimal | None = None
    donation_date: datetime | None = None

    @field_validator("donation_date")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class Mismatch(BaseModel):
    kind: MismatchKind
    subscription_id: str
    record_id: str | None = None
    customer_email: str | None = None
    processor_status: str | None = None
    store_status: str | None = None
    processor_amount: Decimal | None = None
    store_amount: Decimal | None = None
    details: str | None = None


class ReconciliationReport(BaseModel):
    total_processor_subscriptions: int
    total_store_records: int
    mismatch_count: int
    mismatch_summary: dict[str, int]
    mismatches: list[Mismatch]
    since: datetime | None = None
    reconciled_at: datetime = Field(default_factory=utcnow)

    @property
    def healthy(self) -> bool:
        return self.mismatch_count == 0
