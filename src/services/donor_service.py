import logging
from contextlib import AsyncExitStack

from core.locks import KeyedLock
from data_access.airtable import AirtableDataAccess
from models.donation import DonorProfile

logger = logging.getLogger(__name__)


def identity_keys(profile: DonorProfile) -> list[str]:
    keys = []
    if profile.stripe_customer_id:
        keys.append(f"customer:{profile.stripe_customer_id}")
    if profile.email:
        keys.append(f"email:{profile.email.strip().lower()}")
    return sorted(keys)


class DonorResolver:
    """
    Maps a payer onto exactly one Donor record.

    Lookup order is Stripe customer ID, then email. A donor matched by email
    gets the customer ID written onto it only when it has none; an existing
    ID is never replaced. With no match a new donor is created.

    A donor matched by email that already holds another customer ID is still
    returned, but the new ID is not recorded on it. A later payment from that
    customer under a different email therefore creates a second donor.
    """

    def __init__(self, data_access: AirtableDataAccess, locks: KeyedLock | None = None):
        self.data_access = data_access
        self.locks = locks or KeyedLock()

    async def resolve(self, profile: DonorProfile) -> str:
        # Keys are taken in sorted order so two resolutions never wait on each other crosswise.
        async with AsyncExitStack() as stack:
            for key in identity_keys(profile):
                await stack.enter_async_context(self.locks.hold(key))
            return await self._resolve(profile)

    async def _resolve(self, profile: DonorProfile) -> str:
        customer_id = profile.stripe_customer_id
        email = profile.email.strip() if profile.email else None

        if customer_id:
            donor = await self.data_access.find_donor_by_customer_id(customer_id)
            if donor:
                logger.info(f"Found donor {donor.id} by Stripe customer ID")
                return donor.id

        if email:
            donor = await self.data_access.find_donor_by_email(email)
            if donor:
                logger.info(f"Found donor {donor.id} by email")
                if customer_id and not donor.stripe_customer_id:
                    await self.data_access.set_donor_customer_id(donor.id, customer_id)
                    logger.info(f"Backfilled Stripe customer ID on donor {donor.id}")
                elif customer_id and donor.stripe_customer_id != customer_id:
                    logger.warning(
                        f"Donor {donor.id} already linked to a different Stripe customer; keeping it",
                        extra={"donor_id": donor.id},
                    )
                return donor.id

        donor = await self.data_access.create_donor(profile)
        logger.info(f"Created new donor {donor.id}")
        return donor.id
