import asyncio
import logging
from datetime import datetime, timezone

from data_access.airtable import AirtableDataAccess
from models.reconciliation import (
    MISMATCH_KINDS,
    Mismatch,
    ProcessorSubscription,
    ReconciliationReport,
    StoreSponsorship,
)
from services.payment_processor import StripeGateway

logger = logging.getLogger(__name__)

MISMATCH_PREVIEW_LIMIT = 50

# Store payment statuses that agree with each Stripe subscription status.
STATUS_COMPATIBILITY: dict[str, frozenset[str]] = {
    "active": frozenset({"Succeeded"}),
    "trialing": frozenset({"Succeeded", "Pending"}),
    "past_due": frozenset({"Succeeded", "Pending", "Failed"}),
    "incomplete": frozenset({"Pending"}),
    "incomplete_expired": frozenset({"Failed", "Pending"}),
    "unpaid": frozenset({"Failed", "Pending"}),
    "canceled": frozenset({"Canceled", "Cancelled", "Failed"}),
    "paused": frozenset({"Paused", "Pending"}),
}

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def statuses_compatible(processor_status: str, store_status: str) -> bool:
    allowed = STATUS_COMPATIBILITY.get(processor_status)
    if allowed is None:
        return processor_status.lower() == store_status.lower()
    return store_status in allowed


def latest_by_subscription(records: list[StoreSponsorship]) -> dict[str, StoreSponsorship]:
    """One record per subscription ID, the most recent donation winning. Keeps first-seen order."""
    latest: dict[str, StoreSponsorship] = {}
    for record in records:
        current = latest.get(record.subscription_id)
        if current is None or (record.donation_date or _EPOCH) >= (current.donation_date or _EPOCH):
            latest[record.subscription_id] = record
    return latest


def compare(sub: ProcessorSubscription, record: StoreSponsorship) -> list[Mismatch]:
    mismatches = []
    if not statuses_compatible(sub.status, record.status):
        mismatches.append(Mismatch(
            kind="status_mismatch",
            subscription_id=sub.id,
            record_id=record.record_id,
            customer_email=sub.customer_email or record.email,
            processor_status=sub.status,
            store_status=record.status,
            details=f"Stripe subscription is {sub.status} but store record shows {record.status}",
        ))
    if record.amount is not None and record.amount != sub.amount:
        mismatches.append(Mismatch(
            kind="amount_mismatch",
            subscription_id=sub.id,
            record_id=record.record_id,
            customer_email=sub.customer_email or record.email,
            processor_amount=sub.amount,
            store_amount=record.amount,
            details=f"Stripe bills {sub.amount} but store records {record.amount}",
        ))
    return mismatches


class ReconciliationService:
    """
    Audits the store's recurring donations against Stripe's subscriptions.

    Both sides are paged in full before comparing; any paging error aborts
    the run and no partial report is produced.
    """

    def __init__(self, processor: StripeGateway, data_access: AirtableDataAccess):
        self.processor = processor
        self.data_access = data_access

    async def _processor_subscriptions(self, since: datetime | None) -> list[ProcessorSubscription]:
        return [sub async for sub in self.processor.iter_subscriptions(since)]

    async def _store_sponsorships(self, since: datetime | None) -> list[StoreSponsorship]:
        return [record async for record in self.data_access.iter_sponsorships(since)]

    async def audit(self, since: datetime | None = None, include_details: bool = False) -> ReconciliationReport:
        logger.debug("Starting subscription reconciliation", extra={"since": since})

        subscriptions, records = await asyncio.gather(
            self._processor_subscriptions(since),
            self._store_sponsorships(since),
        )

        by_subscription = {sub.id: sub for sub in subscriptions}
        store_latest = latest_by_subscription(records)
        mismatches: list[Mismatch] = []

        for sub in subscriptions:
            record = store_latest.get(sub.id)
            if record is None:
                mismatches.append(Mismatch(
                    kind="missing_in_store",
                    subscription_id=sub.id,
                    customer_email=sub.customer_email,
                    processor_status=sub.status,
                    processor_amount=sub.amount,
                    details="Stripe subscription not found in store",
                ))
            else:
                mismatches.extend(compare(sub, record))

        for subscription_id, record in store_latest.items():
            if subscription_id in by_subscription:
                continue
            # A windowed listing omits older subscriptions; ask Stripe before calling one missing.
            sub = await self.processor.retrieve_subscription(subscription_id) if since is not None else None
            if sub is not None:
                mismatches.extend(compare(sub, record))
                continue
            mismatches.append(Mismatch(
                kind="missing_in_processor",
                subscription_id=subscription_id,
                record_id=record.record_id,
                customer_email=record.email,
                store_status=record.status,
                store_amount=record.amount,
                details="Store record references a subscription not found in Stripe",
            ))

        summary = {kind: 0 for kind in MISMATCH_KINDS}
        for mismatch in mismatches:
            summary[mismatch.kind] += 1

        logger.info(
            "Subscription reconciliation complete",
            extra={
                "stripe_count": len(subscriptions),
                "store_count": len(records),
                "mismatch_count": len(mismatches),
                "summary": summary,
            },
        )

        listed = mismatches
        if not include_details:
            listed = [
                m.model_copy(update={"details": None, "customer_email": None})
                for m in mismatches[:MISMATCH_PREVIEW_LIMIT]
            ]

        return ReconciliationReport(
            total_processor_subscriptions=len(subscriptions),
            total_store_records=len(records),
            mismatch_count=len(mismatches),
            mismatch_summary=summary,
            mismatches=listed,
            since=since,
        )
