import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from core.locks import KeyedLock
from data_access.airtable import AirtableDataAccess
from models.donation import Address, Donation, DonationStatus, cents_to_amount, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordedDonation:
    donation_id: str
    amount: Decimal
    donation_date: datetime
    created: bool


class DonationRecorder:
    """
    Creates at most one Donation per Stripe payment intent.

    Stripe amounts arrive in minor units; they are converted to major units
    here and nowhere else.
    """

    def __init__(self, data_access: AirtableDataAccess, locks: KeyedLock | None = None):
        self.data_access = data_access
        self.locks = locks or KeyedLock()

    async def record(
        self,
        payment_intent_id: str,
        *,
        checkout_session_id: str,
        donor_id: str,
        amount_cents: int,
        currency: str,
        email: str,
        status: DonationStatus,
        is_recurring: bool = False,
        subscription_id: str | None = None,
        stripe_customer_id: str | None = None,
        organization: str | None = None,
        address: Address | None = None,
        donation_date: datetime | None = None,
    ) -> RecordedDonation:
        amount = cents_to_amount(amount_cents)
        donation_date = donation_date or utcnow()

        async with self.locks.hold(f"payment_intent:{payment_intent_id}"):
            existing_id = await self.data_access.find_donation_by_payment_intent(payment_intent_id)
            if existing_id:
                logger.info(f"Skipped duplicate processing for payment {payment_intent_id}: donation {existing_id} exists.")
                return RecordedDonation(existing_id, amount, donation_date, created=False)

            donation = Donation(
                payment_intent_id=payment_intent_id,
                checkout_session_id=checkout_session_id,
                stripe_customer_id=stripe_customer_id,
                donor_id=donor_id,
                amount=amount,
                currency=currency.upper(),
                donation_date=donation_date,
                is_recurring=is_recurring,
                subscription_id=subscription_id,
                status=status,
                email=email,
                organization=organization,
                address=address,
            )
            donation_id = await self.data_access.create_donation(donation)

        logger.info(
            f"Created donation {donation_id} for payment {payment_intent_id}.",
            extra={"donor_id": donor_id, "amount": str(amount), "currency": donation.currency},
        )
        return RecordedDonation(donation_id, amount, donation_date, created=True)
