import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from core.errors import NotFound, UpstreamError, UpstreamUnavailable
from core.rate_limit import RetryPolicy, ThrottledExecutor, TokenBucket
from data_access.airtable import AirtableClient, AirtableDataAccess, escape_formula_value, field_equals
from models.donation import Address, Communication, Donation, DonorProfile
from conftest import no_sleep


def make_client(handler, attempts=3, bucket=None):
    executor = ThrottledExecutor(
        RetryPolicy(attempts=attempts, sleep=no_sleep),
        limiter=bucket or TokenBucket(capacity=100),
    )
    return AirtableClient("pat_test", "appBase", executor, transport=httpx.MockTransport(handler))


def record(record_id, **fields):
    return {"id": record_id, "createdTime": "2024-01-01T00:00:00.000Z", "fields": fields}


class TestAirtableClient:

    async def test_find_first_sends_formula_and_bearer_token(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"records": [record("rec1", **{"Donor Name": "Ada"})]})

        client = make_client(handler)
        found = await client.find_first("Donors", field_equals("Stripe Customer ID", "cus_1"))

        assert found["id"] == "rec1"
        request = seen[0]
        assert request.url.path == "/v0/appBase/Donors"
        assert request.headers["Authorization"] == "Bearer pat_test"
        assert request.url.params["filterByFormula"] == '{Stripe Customer ID} = "cus_1"'
        assert request.url.params["maxRecords"] == "1"
        await client.aclose()

    async def test_iter_records_follows_offsets(self):
        pages = {
            None: {"records": [record("rec1"), record("rec2")], "offset": "page2"},
            "page2": {"records": [record("rec3")]},
        }

        def handler(request):
            return httpx.Response(200, json=pages[request.url.params.get("offset")])

        client = make_client(handler)
        ids = [r["id"] async for r in client.iter_records("Donations")]
        assert ids == ["rec1", "rec2", "rec3"]

    async def test_every_call_takes_a_token(self):
        bucket = TokenBucket(capacity=10)

        def handler(request):
            return httpx.Response(200, json={"records": []})

        client = make_client(handler, bucket=bucket)
        await client.find_first("Donors", "TRUE()")
        await client.find_first("Donors", "TRUE()")
        assert bucket.tokens == 8

    async def test_server_errors_are_retried(self):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            if calls == 1:
                return httpx.Response(503, json={"error": "unavailable"})
            return httpx.Response(200, json={"id": "recNew", "fields": {}})

        client = make_client(handler)
        created = await client.create_record("Donors", {"Donor Name": "Ada"})
        assert created["id"] == "recNew"
        assert calls == 2

    async def test_throttling_exhausts_retries(self):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            return httpx.Response(429, json={"error": "RATE_LIMIT_REACHED"})

        client = make_client(handler, attempts=3)
        with pytest.raises(UpstreamUnavailable):
            await client.list_records("Donors")
        assert calls == 3

    async def test_timeouts_are_transient(self):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            raise httpx.ReadTimeout("too slow", request=request)

        client = make_client(handler, attempts=2)
        with pytest.raises(UpstreamUnavailable):
            await client.list_records("Donors")
        assert calls == 2

    async def test_client_errors_are_not_retried(self):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            return httpx.Response(422, json={"error": {"type": "INVALID_VALUE_FOR_COLUMN"}})

        client = make_client(handler)
        with pytest.raises(UpstreamError) as excinfo:
            await client.create_record("Donations", {"Donation Amount": "abc"})
        assert not isinstance(excinfo.value, UpstreamUnavailable)
        assert calls == 1

    async def test_missing_record_is_not_found(self):
        client = make_client(lambda request: httpx.Response(404, json={"error": "NOT_FOUND"}))
        with pytest.raises(NotFound):
            await client.update_record("Donors", "recMissing", {"Stripe Customer ID": "cus_1"})

    def test_formula_values_are_escaped(self):
        assert escape_formula_value('a"b\\c') == 'a\\"b\\\\c'
        assert field_equals("Email Address", 'x"@y.org') == '{Email Address} = "x\\"@y.org"'


class TestAirtableDataAccess:

    @staticmethod
    def make(handler):
        return AirtableDataAccess(make_client(handler))

    async def test_find_donor_by_email_is_case_insensitive(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"records": [record(
                "recDonor1",
                **{"Donor Name": "Ada", "Email Address": "Ada@Example.org", "Stripe Customer ID": ""},
            )]})

        donor = await self.make(handler).find_donor_by_email(" ADA@example.org ")

        assert seen[0].url.params["filterByFormula"] == 'LOWER({Email Address}) = "ada@example.org"'
        assert donor.id == "recDonor1"
        assert donor.stripe_customer_id is None

    async def test_create_donor_writes_profile_fields(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json=record("recDonor9", **bodies[-1]["fields"]))

        profile = DonorProfile(
            name="Ada Lovelace",
            email="ada@example.org",
            organization="Analytical Engines",
            address=Address(line1="1 Main St", city="Springfield", state="IL", postal_code="62701", country="US"),
            stripe_customer_id="cus_1",
        )
        donor = await self.make(handler).create_donor(profile)

        fields = bodies[0]["fields"]
        assert donor.id == "recDonor9"
        assert fields["Stripe Customer ID"] == "cus_1"
        assert fields["Organization Name"] == "Analytical Engines"
        assert fields["Mailing Address"] == "1 Main St, Springfield, IL 62701, US"
        assert "Phone Number" not in fields

    async def test_create_donation_links_donor_and_uses_major_units(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json=record("recDonation1"))

        donation = Donation(
            payment_intent_id="pi_1",
            checkout_session_id="cs_1",
            donor_id="recDonor1",
            amount=Decimal("25.50"),
            currency="usd",
            donation_date=datetime(2024, 5, 1, tzinfo=timezone.utc),
            is_recurring=True,
            subscription_id="sub_1",
            status="Succeeded",
            email="ada@example.org",
            address=Address(city="Springfield", country="US"),
        )
        donation_id = await self.make(handler).create_donation(donation)

        fields = bodies[0]["fields"]
        assert donation_id == "recDonation1"
        assert fields["Donation Amount"] == 25.5
        assert fields["Currency"] == "USD"
        assert fields["Donor"] == ["recDonor1"]
        assert fields["Subscription ID"] == "sub_1"
        assert fields["City"] == "Springfield"
        assert "Address Line 1" not in fields
        assert bodies[0]["typecast"] is True

    async def test_create_communication_links_donation_and_donor(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json=record("recComm1"))

        communication = Communication(
            donation_id="recDonation1",
            donor_id="recDonor1",
            recipient_email="ada@example.org",
            subject="Thanks",
            body="Thank you",
            status="Failed",
        )
        assert await self.make(handler).create_communication(communication) == "recComm1"
        fields = bodies[0]["fields"]
        assert fields["Status"] == "Failed"
        assert fields["Related Donation"] == ["recDonation1"]
        assert fields["Related Donor"] == ["recDonor1"]

    async def test_iter_sponsorships_filters_by_window(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"records": [record(
                "recDonation1",
                **{
                    "Subscription ID": "sub_1",
                    "Payment Status": "Succeeded",
                    "Donation Amount": 25.5,
                    "Donation Date": "2024-05-01T00:00:00.000Z",
                    "Donor Email at Donation": "ada@example.org",
                },
            )]})

        since = datetime(2024, 1, 1, tzinfo=timezone.utc)
        records = [r async for r in self.make(handler).iter_sponsorships(since)]

        formula = seen[0].url.params["filterByFormula"]
        assert "{Recurring Donation} = TRUE()" in formula
        assert 'NOT(IS_BEFORE({Donation Date}, "2024-01-01T00:00:00+00:00"))' in formula
        assert records[0].subscription_id == "sub_1"
        assert records[0].amount == Decimal("25.5")
        assert records[0].donation_date.tzinfo is not None
