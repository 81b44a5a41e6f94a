import asyncio
import logging
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any

import stripe
from pydantic import ValidationError as PydanticValidationError

from core.errors import (
    AuthenticityError,
    NotFound,
    UpstreamError,
    UpstreamUnavailable,
    ValidationError,
)
from core.rate_limit import RetryPolicy
from models.donation import Address, cents_to_amount
from models.events import PaymentIntentDetails, StripeCustomer, StripeEvent
from models.reconciliation import ProcessorSubscription

logger = logging.getLogger(__name__)

SUBSCRIPTION_PAGE_SIZE = 100


def _address(value: Any) -> Address | None:
    if not value:
        return None
    address = Address.model_validate(dict(value))
    return None if address.is_empty() else address


def as_dict(obj: Any) -> Any:
    """StripeObject is not a dict on current SDKs; everything below works on plain dicts."""
    if isinstance(obj, stripe.StripeObject):
        return obj.to_dict()
    return obj


def subscription_from_stripe(sub: Any) -> ProcessorSubscription:
    sub = as_dict(sub)
    customer = sub.get("customer")
    if isinstance(customer, dict):
        customer_id, customer_email = customer.get("id"), customer.get("email")
    else:
        customer_id, customer_email = customer, None

    # ``items`` must be read by key: attribute access hits dict.items.
    items = (sub.get("items") or {}).get("data") or []
    amount_cents = 0
    if items:
        price = items[0].get("price") or {}
        amount_cents = (price.get("unit_amount") or 0) * (items[0].get("quantity") or 1)

    created = sub.get("created")
    return ProcessorSubscription(
        id=sub["id"],
        customer_id=customer_id,
        customer_email=customer_email,
        status=sub["status"],
        amount=cents_to_amount(amount_cents),
        currency=(sub.get("currency") or "").upper() or None,
        created=datetime.fromtimestamp(created, tz=timezone.utc) if created else None,
    )


class StripeGateway:
    """
    Read-only access to Stripe plus webhook signature checks.

    The Stripe SDK is synchronous, so calls run in a worker thread under a
    per-call timeout. Connection errors, throttling, 5xx and timeouts become
    UpstreamUnavailable and are retried by the policy.
    """

    def __init__(
        self,
        webhook_secret: str,
        retry_policy: RetryPolicy,
        timeout: float = 10.0,
        signature_tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
    ):
        self.webhook_secret = webhook_secret
        self.retry_policy = retry_policy
        self.timeout = timeout
        self.signature_tolerance = signature_tolerance

    def construct_event(self, payload: bytes, signature_header: str | None) -> StripeEvent:
        if not signature_header:
            raise AuthenticityError("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ValidationError("Webhook payload is not valid UTF-8") from e

        try:
            stripe.WebhookSignature.verify_header(
                body, signature_header, self.webhook_secret, self.signature_tolerance
            )
        except stripe.SignatureVerificationError as e:
            raise AuthenticityError("Webhook signature verification failed") from e

        try:
            return StripeEvent.model_validate_json(body)
        except PydanticValidationError as e:
            raise ValidationError(
                "Webhook payload is not a Stripe event", {"errors": e.error_count()}
            ) from e

    async def _call(self, description: str, fn, *args, **kwargs) -> Any:

        async def attempt() -> Any:
            try:
                result = await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), self.timeout)
            except asyncio.TimeoutError as e:
                raise UpstreamUnavailable("stripe", f"Stripe call timed out: {description}") from e
            except (stripe.APIConnectionError, stripe.RateLimitError) as e:
                raise UpstreamUnavailable("stripe", f"Stripe unavailable during {description}: {e.user_message or e}") from e
            except stripe.InvalidRequestError as e:
                if e.code == "resource_missing":
                    raise NotFound(f"Stripe resource not found: {description}") from e
                raise UpstreamError("stripe", f"Stripe rejected {description}: {e.user_message or e}") from e
            except stripe.APIError as e:
                raise UpstreamUnavailable("stripe", f"Stripe error during {description}") from e
            except stripe.StripeError as e:
                raise UpstreamError("stripe", f"Stripe error during {description}: {e.user_message or e}") from e
            return as_dict(result)

        return await self.retry_policy.call(attempt)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentDetails:
        intent = await self._call(
            f"retrieve payment intent {payment_intent_id}",
            stripe.PaymentIntent.retrieve,
            payment_intent_id,
            expand=["latest_charge"],
        )
        charge = intent.get("latest_charge")
        billing_address = None
        if isinstance(charge, dict):
            billing_address = _address((charge.get("billing_details") or {}).get("address"))

        customer = intent.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")

        return PaymentIntentDetails(
            id=intent["id"],
            status=intent["status"],
            customer=customer,
            billing_address=billing_address,
        )

    async def retrieve_customer(self, customer_id: str) -> StripeCustomer | None:
        try:
            customer = await self._call(
                f"retrieve customer {customer_id}", stripe.Customer.retrieve, customer_id
            )
        except NotFound:
            return None
        if customer.get("deleted"):
            return None
        return StripeCustomer(
            id=customer["id"],
            email=customer.get("email"),
            name=customer.get("name"),
            phone=customer.get("phone"),
        )

    async def retrieve_subscription(self, subscription_id: str) -> ProcessorSubscription | None:
        try:
            sub = await self._call(
                f"retrieve subscription {subscription_id}",
                stripe.Subscription.retrieve,
                subscription_id,
                expand=["customer"],
            )
        except NotFound:
            return None
        return subscription_from_stripe(sub)

    async def iter_subscriptions(self, since: datetime | None = None) -> AsyncIterator[ProcessorSubscription]:
        params: dict[str, Any] = {
            "limit": SUBSCRIPTION_PAGE_SIZE,
            "status": "all",
            "expand": ["data.customer"],
        }
        if since is not None:
            params["created"] = {"gte": int(since.timestamp())}

        starting_after = None
        while True:
            page_params = dict(params)
            if starting_after:
                page_params["starting_after"] = starting_after

            page = await self._call("list subscriptions", stripe.Subscription.list, **page_params)
            data = page.get("data") or []
            for sub in data:
                yield subscription_from_stripe(sub)

            if not page.get("has_more") or not data:
                break
            starting_after = data[-1]["id"]
