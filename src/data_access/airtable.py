import logging
import time
from collections.abc import AsyncIterator
from datetime import datetime
from decimal import Decimal
from typing import Any
from urllib.parse import quote

import httpx

from core.errors import NotFound, UpstreamError, UpstreamUnavailable
from core.rate_limit import ThrottledExecutor
from models.donation import Communication, Donation, Donor, DonorProfile
from models.reconciliation import StoreSponsorship

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.airtable.com"
MAX_PAGE_SIZE = 100

# Donors
DONOR_NAME = "Donor Name"
DONOR_EMAIL = "Email Address"
DONOR_ORGANIZATION = "Organization Name"
DONOR_PHONE = "Phone Number"
DONOR_ADDRESS = "Mailing Address"
STRIPE_CUSTOMER_ID = "Stripe Customer ID"

# Donations
PAYMENT_INTENT_ID = "Stripe Payment Intent ID"
CHECKOUT_SESSION_ID = "Stripe Checkout Session ID"
DONATION_AMOUNT = "Donation Amount"
DONATION_CURRENCY = "Currency"
DONATION_DATE = "Donation Date"
PAYMENT_STATUS = "Payment Status"
RECURRING = "Recurring Donation"
SUBSCRIPTION_ID = "Subscription ID"
DONATION_DONOR = "Donor"
DONATION_EMAIL = "Donor Email at Donation"
DONATION_SOURCE = "Donation Source"
ADDRESS_FIELDS = {
    "line1": "Address Line 1",
    "city": "City",
    "state": "State",
    "postal_code": "Postal Code",
    "country": "Country",
}

# Communications
COMM_SUBJECT = "Subject"
COMM_BODY = "Email Body"
COMM_SEND_DATE = "Send Date"
COMM_RECIPIENT = "Recipient Email"
COMM_STATUS = "Status"
COMM_TYPE = "Email Type"
COMM_DONATION = "Related Donation"
COMM_DONOR = "Related Donor"


def escape_formula_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def field_equals(field: str, value: str) -> str:
    return f'{{{field}}} = "{escape_formula_value(value)}"'


class AirtableClient:
    """
    Thin async client for the Airtable REST API.

    Every request goes through the executor: one rate-limiter token, then
    bounded retries for timeouts, network errors, 429 and 5xx responses.
    """

    def __init__(
        self,
        api_key: str,
        base_id: str,
        executor: ThrottledExecutor,
        api_url: str = DEFAULT_API_URL,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.executor = executor
        self._http = httpx.AsyncClient(
            base_url=f"{api_url.rstrip('/')}/v0/{base_id}/",
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        params: list[tuple[str, str]] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:

        async def send() -> dict[str, Any]:
            started = time.monotonic()
            try:
                response = await self._http.request(method, path, params=params, json=json)
            except httpx.TimeoutException as e:
                raise UpstreamUnavailable("airtable", f"Airtable request timed out: {method} {path}") from e
            except httpx.TransportError as e:
                raise UpstreamUnavailable("airtable", f"Airtable connection failed: {e}") from e

            duration_ms = round((time.monotonic() - started) * 1000, 1)
            context = {"status": response.status_code, "method": method, "path": path}

            if response.status_code == 429 or response.status_code >= 500:
                logger.warning(f"Airtable API error: {response.status_code}", extra={**context, "duration_ms": duration_ms})
                raise UpstreamUnavailable("airtable", f"Airtable API error: {response.status_code}", context)
            if response.status_code == 404:
                raise NotFound(f"Airtable resource not found: {path}", context)
            if response.is_error:
                logger.error(f"Airtable rejected request: {response.text[:500]}", extra=context)
                raise UpstreamError("airtable", f"Airtable API error: {response.status_code}", context)

            logger.debug("Airtable request", extra={**context, "duration_ms": duration_ms})
            return response.json()

        return await self.executor.run(send)

    async def list_records(
        self,
        table: str,
        formula: str | None = None,
        page_size: int = MAX_PAGE_SIZE,
        offset: str | None = None,
        max_records: int | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        """Fetch one page. Returns the records and the cursor for the next page, if any."""
        params: list[tuple[str, str]] = [("pageSize", str(min(page_size, MAX_PAGE_SIZE)))]
        if formula:
            params.append(("filterByFormula", formula))
        if offset:
            params.append(("offset", offset))
        if max_records:
            params.append(("maxRecords", str(max_records)))

        data = await self._request("GET", quote(table, safe=""), params=params)
        return data.get("records", []), data.get("offset")

    async def iter_records(self, table: str, formula: str | None = None) -> AsyncIterator[dict[str, Any]]:
        offset = None
        while True:
            records, offset = await self.list_records(table, formula=formula, offset=offset)
            for record in records:
                yield record
            if not offset:
                break

    async def find_first(self, table: str, formula: str) -> dict[str, Any] | None:
        records, _ = await self.list_records(table, formula=formula, page_size=1, max_records=1)
        return records[0] if records else None

    async def create_record(self, table: str, fields: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "POST", quote(table, safe=""), json={"fields": fields, "typecast": True}
        )

    async def update_record(self, table: str, record_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "PATCH", f"{quote(table, safe='')}/{quote(record_id, safe='')}", json={"fields": fields}
        )


def _donor_from_record(record: dict[str, Any]) -> Donor:
    fields = record.get("fields", {})
    return Donor(
        id=record["id"],
        name=fields.get(DONOR_NAME),
        email=fields.get(DONOR_EMAIL),
        organization=fields.get(DONOR_ORGANIZATION),
        phone=fields.get(DONOR_PHONE),
        mailing_address=fields.get(DONOR_ADDRESS),
        stripe_customer_id=fields.get(STRIPE_CUSTOMER_ID) or None,
    )


def _sponsorship_from_record(record: dict[str, Any]) -> StoreSponsorship:
    fields = record.get("fields", {})
    amount = fields.get(DONATION_AMOUNT)
    return StoreSponsorship(
        record_id=record["id"],
        subscription_id=fields[SUBSCRIPTION_ID],
        email=fields.get(DONATION_EMAIL),
        status=fields.get(PAYMENT_STATUS) or "Unknown",
        amount=Decimal(str(amount)) if amount is not None else None,
        donation_date=fields.get(DONATION_DATE),
    )


class AirtableDataAccess:
    """Donor, Donation and Communication records kept in an Airtable base."""

    def __init__(
        self,
        client: AirtableClient,
        donors_table: str = "Donors",
        donations_table: str = "Donations",
        communications_table: str = "Communications",
    ):
        self.client = client
        self.donors_table = donors_table
        self.donations_table = donations_table
        self.communications_table = communications_table

    async def aclose(self) -> None:
        await self.client.aclose()

    async def find_donor_by_customer_id(self, customer_id: str) -> Donor | None:
        record = await self.client.find_first(self.donors_table, field_equals(STRIPE_CUSTOMER_ID, customer_id))
        return _donor_from_record(record) if record else None

    async def find_donor_by_email(self, email: str) -> Donor | None:
        formula = f'LOWER({{{DONOR_EMAIL}}}) = "{escape_formula_value(email.strip().lower())}"'
        record = await self.client.find_first(self.donors_table, formula)
        return _donor_from_record(record) if record else None

    async def create_donor(self, profile: DonorProfile) -> Donor:
        fields: dict[str, Any] = {
            DONOR_NAME: profile.name,
            DONOR_EMAIL: profile.email or "",
        }
        if profile.organization:
            fields[DONOR_ORGANIZATION] = profile.organization
        if profile.phone:
            fields[DONOR_PHONE] = profile.phone
        if profile.address and not profile.address.is_empty():
            fields[DONOR_ADDRESS] = profile.address.format()
        if profile.stripe_customer_id:
            fields[STRIPE_CUSTOMER_ID] = profile.stripe_customer_id

        record = await self.client.create_record(self.donors_table, fields)
        return _donor_from_record(record)

    async def set_donor_customer_id(self, donor_id: str, customer_id: str) -> None:
        await self.client.update_record(self.donors_table, donor_id, {STRIPE_CUSTOMER_ID: customer_id})

    async def find_donation_by_payment_intent(self, payment_intent_id: str) -> str | None:
        record = await self.client.find_first(
            self.donations_table, field_equals(PAYMENT_INTENT_ID, payment_intent_id)
        )
        return record["id"] if record else None

    async def create_donation(self, donation: Donation) -> str:
        fields: dict[str, Any] = {
            PAYMENT_INTENT_ID: donation.payment_intent_id,
            CHECKOUT_SESSION_ID: donation.checkout_session_id,
            STRIPE_CUSTOMER_ID: donation.stripe_customer_id or "",
            DONATION_AMOUNT: float(donation.amount),
            DONATION_CURRENCY: donation.currency.upper(),
            DONATION_DATE: donation.donation_date.isoformat(),
            PAYMENT_STATUS: donation.status,
            RECURRING: donation.is_recurring,
            DONATION_DONOR: [donation.donor_id],
            DONATION_EMAIL: donation.email,
            DONATION_SOURCE: donation.source,
        }
        if donation.subscription_id:
            fields[SUBSCRIPTION_ID] = donation.subscription_id
        if donation.organization:
            fields[DONOR_ORGANIZATION] = donation.organization
        if donation.address:
            for attr, column in ADDRESS_FIELDS.items():
                value = getattr(donation.address, attr)
                if value:
                    fields[column] = value

        record = await self.client.create_record(self.donations_table, fields)
        return record["id"]

    async def create_communication(self, communication: Communication) -> str:
        fields = {
            COMM_SUBJECT: communication.subject,
            COMM_BODY: communication.body,
            COMM_SEND_DATE: communication.sent_at.isoformat(),
            COMM_RECIPIENT: communication.recipient_email,
            COMM_STATUS: communication.status,
            COMM_TYPE: communication.email_type,
            COMM_DONATION: [communication.donation_id],
            COMM_DONOR: [communication.donor_id],
        }
        record = await self.client.create_record(self.communications_table, fields)
        return record["id"]

    async def iter_sponsorships(self, since: datetime | None = None) -> AsyncIterator[StoreSponsorship]:
        """Recurring donations that reference a Stripe subscription, optionally dated on or after ``since``."""
        conditions = [f"{{{RECURRING}}} = TRUE()", f"{{{SUBSCRIPTION_ID}}} != ''"]
        if since is not None:
            conditions.append(f'NOT(IS_BEFORE({{{DONATION_DATE}}}, "{since.isoformat()}"))')
        formula = f"AND({', '.join(conditions)})"

        async for record in self.client.iter_records(self.donations_table, formula):
            yield _sponsorship_from_record(record)
