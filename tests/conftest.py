import asyncio
import hashlib
import hmac
import itertools
import json
import time
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from core.config import load_settings
from core.errors import NotFound
from core.rate_limit import RetryPolicy
from models.donation import Communication, Donation, Donor, DonorProfile
from models.events import PaymentIntentDetails, StripeCustomer
from models.reconciliation import ProcessorSubscription, StoreSponsorship
from services.notification_service import NotificationService
from services.payment_processor import StripeGateway

WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_TOKEN = "admin-token"


async def no_sleep(seconds: float) -> None:
    pass


async def settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_type: str, obj: dict, event_id: str = "evt_1") -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": 1700000000,
        "livemode": False,
        "data": {"object": obj},
    }).encode()


def checkout_session(**overrides) -> dict:
    session = {
        "id": "cs_test_1",
        "object": "checkout.session",
        "mode": "payment",
        "payment_intent": "pi_1",
        "payment_status": "paid",
        "customer": "cus_1",
        "customer_email": None,
        "customer_details": {
            "email": "ada@example.org",
            "name": "Ada Lovelace",
            "phone": "+15555550100",
            "address": {
                "line1": "1 Main St",
                "line2": None,
                "city": "Springfield",
                "state": "IL",
                "postal_code": "62701",
                "country": "US",
            },
        },
        "amount_total": 2550,
        "currency": "usd",
        "subscription": None,
        "metadata": {},
        "custom_fields": [
            {"key": "organization", "type": "text", "text": {"value": "Analytical Engines Ltd"}},
        ],
    }
    session.update(overrides)
    return session


class FakeDataAccess:
    """In-memory stand-in for AirtableDataAccess. Every call yields to the loop once."""

    def __init__(self):
        self.donors: dict[str, Donor] = {}
        self.donations: dict[str, Donation] = {}
        self.communications: dict[str, Communication] = {}
        self.sponsorships: list[StoreSponsorship] = []
        self.calls: list[str] = []
        self.failures: dict[str, Exception] = {}
        self._ids = itertools.count(1)
        self.closed = False

    async def _op(self, name: str) -> None:
        self.calls.append(name)
        await asyncio.sleep(0)
        if name in self.failures:
            raise self.failures[name]

    def _new_id(self, prefix: str) -> str:
        return f"{prefix}{next(self._ids):04d}"

    async def aclose(self) -> None:
        self.closed = True

    async def find_donor_by_customer_id(self, customer_id):
        await self._op("find_donor_by_customer_id")
        return next((d for d in self.donors.values() if d.stripe_customer_id == customer_id), None)

    async def find_donor_by_email(self, email):
        await self._op("find_donor_by_email")
        wanted = email.strip().lower()
        return next((d for d in self.donors.values() if (d.email or "").lower() == wanted), None)

    async def create_donor(self, profile: DonorProfile):
        await self._op("create_donor")
        donor = Donor(
            id=self._new_id("recDonor"),
            name=profile.name,
            email=profile.email,
            organization=profile.organization,
            phone=profile.phone,
            mailing_address=profile.address.format() if profile.address else None,
            stripe_customer_id=profile.stripe_customer_id,
        )
        self.donors[donor.id] = donor
        return donor

    async def set_donor_customer_id(self, donor_id, customer_id):
        await self._op("set_donor_customer_id")
        self.donors[donor_id] = self.donors[donor_id].model_copy(update={"stripe_customer_id": customer_id})

    async def find_donation_by_payment_intent(self, payment_intent_id):
        await self._op("find_donation_by_payment_intent")
        return next((i for i, d in self.donations.items() if d.payment_intent_id == payment_intent_id), None)

    async def create_donation(self, donation: Donation):
        await self._op("create_donation")
        donation_id = self._new_id("recDonation")
        self.donations[donation_id] = donation.model_copy(update={"id": donation_id})
        return donation_id

    async def create_communication(self, communication: Communication):
        await self._op("create_communication")
        communication_id = self._new_id("recComm")
        self.communications[communication_id] = communication.model_copy(update={"id": communication_id})
        return communication_id

    async def iter_sponsorships(self, since: datetime | None = None):
        await self._op("iter_sponsorships")
        for record in self.sponsorships:
            if since is None or record.donation_date is None or record.donation_date >= since:
                yield record


class FakeGateway(StripeGateway):
    """Real signature checks; Stripe reads served from memory."""

    def __init__(self):
        super().__init__(webhook_secret=WEBHOOK_SECRET, retry_policy=RetryPolicy(sleep=no_sleep))
        self.payment_intents: dict[str, PaymentIntentDetails] = {}
        self.customers: dict[str, StripeCustomer] = {}
        self.subscriptions: list[ProcessorSubscription] = []
        self.failures: dict[str, Exception] = {}
        self.retrieved_subscriptions: list[str] = []

    def _check(self, name: str) -> None:
        if name in self.failures:
            raise self.failures[name]

    async def retrieve_payment_intent(self, payment_intent_id):
        self._check("retrieve_payment_intent")
        if payment_intent_id not in self.payment_intents:
            raise NotFound(f"No such payment intent {payment_intent_id}")
        return self.payment_intents[payment_intent_id]

    async def retrieve_customer(self, customer_id):
        self._check("retrieve_customer")
        return self.customers.get(customer_id)

    async def retrieve_subscription(self, subscription_id):
        self.retrieved_subscriptions.append(subscription_id)
        return next((s for s in self.subscriptions if s.id == subscription_id), None)

    async def iter_subscriptions(self, since=None):
        for sub in self.subscriptions:
            self._check("iter_subscriptions")
            if since is None or sub.created is None or sub.created >= since:
                yield sub


@pytest.fixture
def data_access():
    return FakeDataAccess()


@pytest.fixture
def gateway():
    gateway = FakeGateway()
    gateway.payment_intents["pi_1"] = PaymentIntentDetails(id="pi_1", status="succeeded", customer="cus_1")
    gateway.customers["cus_1"] = StripeCustomer(id="cus_1", email="ada@example.org", name="Ada Lovelace")
    return gateway


@pytest.fixture
def sender():
    sender = MagicMock(spec=NotificationService)
    sender.organization_name = "Example Org"
    sender.compose_receipt.return_value = ("Thank You for Your Donation to Example Org", "Dear Ada, thank you.")
    sender.send_donation_receipt.return_value = "msg-1"
    return sender


@pytest.fixture
def settings():
    return load_settings(
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        AIRTABLE_API_KEY="pat_test",
        AIRTABLE_BASE_ID="appTest",
        AWS_REGION="us-east-1",
        SES_FROM_EMAIL="receipts@example.org",
        ADMIN_API_TOKEN=ADMIN_TOKEN,
    )
