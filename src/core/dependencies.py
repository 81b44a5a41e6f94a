from dataclasses import dataclass

import boto3
import stripe
from fastapi import Request

from core.config import Settings
from core.locks import KeyedLock
from core.rate_limit import RetryPolicy, ThrottledExecutor, TokenBucket
from data_access.airtable import AirtableClient, AirtableDataAccess
from services.donation_service import DonationRecorder
from services.donor_service import DonorResolver
from services.notification_service import NotificationDispatcher, NotificationService
from services.payment_processor import StripeGateway
from services.reconciliation_service import ReconciliationService
from services.webhook_service import WebhookService


@dataclass
class Services:
    """Everything the API and workers need, built once per process."""
    settings: Settings
    rate_limiter: TokenBucket
    data_access: AirtableDataAccess
    processor: StripeGateway
    webhook_service: WebhookService
    reconciliation_service: ReconciliationService

    async def start(self) -> None:
        self.rate_limiter.start()

    async def aclose(self) -> None:
        await self.rate_limiter.stop()
        await self.data_access.aclose()


def build_services(settings: Settings) -> Services:
    stripe.api_key = settings.STRIPE_SECRET_KEY

    rate_limiter = TokenBucket(
        capacity=settings.RATE_LIMIT_CAPACITY,
        per_seconds=settings.RATE_LIMIT_PER_SECONDS,
        tick_seconds=settings.RATE_LIMIT_TICK_SECONDS,
        max_wait_seconds=settings.RATE_LIMIT_MAX_WAIT_SECONDS,
    )
    retry_policy = RetryPolicy(attempts=settings.STORE_RETRY_ATTEMPTS)

    client = AirtableClient(
        api_key=settings.AIRTABLE_API_KEY,
        base_id=settings.AIRTABLE_BASE_ID,
        executor=ThrottledExecutor(retry_policy, limiter=rate_limiter),
        api_url=settings.AIRTABLE_API_URL,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
    data_access = AirtableDataAccess(
        client,
        donors_table=settings.AIRTABLE_DONORS_TABLE,
        donations_table=settings.AIRTABLE_DONATIONS_TABLE,
        communications_table=settings.AIRTABLE_COMMUNICATIONS_TABLE,
    )
    processor = StripeGateway(
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        retry_policy=retry_policy,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )

    session = boto3.Session(region_name=settings.AWS_REGION)
    notification_service = NotificationService(
        client=session.client('ses'),
        from_email=settings.SES_FROM_EMAIL,
        organization_name=settings.ORGANIZATION_NAME,
    )

    locks = KeyedLock()
    webhook_service = WebhookService(
        processor=processor,
        donor_resolver=DonorResolver(data_access, locks),
        donation_recorder=DonationRecorder(data_access, locks),
        dispatcher=NotificationDispatcher(notification_service, data_access),
    )

    return Services(
        settings=settings,
        rate_limiter=rate_limiter,
        data_access=data_access,
        processor=processor,
        webhook_service=webhook_service,
        reconciliation_service=ReconciliationService(processor, data_access),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_webhook_service(request: Request) -> WebhookService:
    return get_services(request).webhook_service


def get_reconciliation_service(request: Request) -> ReconciliationService:
    return get_services(request).reconciliation_service
