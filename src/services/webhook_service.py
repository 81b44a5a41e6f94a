import logging
from dataclasses import dataclass, field
from enum import Enum

from pydantic import ValidationError as PydanticValidationError

from core.errors import AppError, AuthenticityError, PartialFailure, ValidationError
from models.donation import DonationStatus, DonorProfile
from models.events import (
    ACKNOWLEDGED_EVENT_TYPES,
    CHECKOUT_SESSION_COMPLETED,
    CheckoutSession,
    PaymentIntentDetails,
    StripeCustomer,
    StripeEvent,
)
from services.donation_service import DonationRecorder
from services.donor_service import DonorResolver
from services.notification_service import NotificationDispatcher
from services.payment_processor import StripeGateway

logger = logging.getLogger(__name__)


class WebhookState(str, Enum):
    RECEIVED = "received"
    VERIFIED = "verified"
    DONOR_RESOLVED = "donor_resolved"
    DONATION_RECORDED = "donation_recorded"
    NOTIFIED = "notified"
    DONE = "done"
    REJECTED = "rejected"
    FAILED = "failed"


TRANSITIONS: dict[WebhookState, frozenset[WebhookState]] = {
    WebhookState.RECEIVED: frozenset({WebhookState.VERIFIED, WebhookState.REJECTED}),
    WebhookState.VERIFIED: frozenset({WebhookState.DONOR_RESOLVED, WebhookState.FAILED, WebhookState.DONE}),
    WebhookState.DONOR_RESOLVED: frozenset({WebhookState.DONATION_RECORDED, WebhookState.FAILED}),
    WebhookState.DONATION_RECORDED: frozenset({WebhookState.NOTIFIED}),
    WebhookState.NOTIFIED: frozenset({WebhookState.DONE}),
    WebhookState.DONE: frozenset(),
    WebhookState.REJECTED: frozenset(),
    WebhookState.FAILED: frozenset(),
}


@dataclass
class WebhookOutcome:
    """Progress of one inbound event through the pipeline."""
    state: WebhookState = WebhookState.RECEIVED
    event_id: str | None = None
    event_type: str | None = None
    donor_id: str | None = None
    donation_id: str | None = None
    donation_created: bool = False
    error: AppError | None = None
    partial_failure: PartialFailure | None = None
    history: list[WebhookState] = field(default_factory=lambda: [WebhookState.RECEIVED])

    def advance(self, state: WebhookState) -> None:
        if state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal webhook transition {self.state.value} -> {state.value}")
        logger.debug(f"Webhook {self.event_id}: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    @property
    def acknowledged(self) -> bool:
        return self.state == WebhookState.DONE

    @property
    def status_code(self) -> int:
        if self.acknowledged:
            return 200
        if self.error is not None and self.error.status_code < 500:
            return self.error.status_code
        return 500


def donor_profile(
    session: CheckoutSession,
    intent: PaymentIntentDetails | None,
    customer: StripeCustomer | None,
) -> DonorProfile:
    details = session.customer_details
    email = session.customer_email or (details.email if details else None) or (customer.email if customer else None)
    name = (
        (details.name if details else None)
        or session.metadata.get("donor_name")
        or (customer.name if customer else None)
        or "Anonymous"
    )
    phone = (details.phone if details else None) or (customer.phone if customer else None)
    address = details.address if details and details.address and not details.address.is_empty() else None
    if address is None and intent is not None:
        address = intent.billing_address

    return DonorProfile(
        name=name,
        email=email,
        organization=session.custom_field("organization"),
        phone=phone or None,
        address=address,
        stripe_customer_id=session.customer or (intent.customer if intent else None) or (customer.id if customer else None),
    )


def payment_status(session: CheckoutSession, intent: PaymentIntentDetails | None) -> DonationStatus:
    if intent is not None:
        return "Succeeded" if intent.status == "succeeded" else "Pending"
    return "Succeeded" if session.payment_status == "paid" else "Pending"


class WebhookService:
    """
    Verifies and processes one Stripe webhook delivery.

    Only ``checkout.session.completed`` does work: resolve the donor, record
    the donation, then send the receipt. Once the donation is recorded the
    event is acknowledged whatever happens to the receipt.
    """

    def __init__(
        self,
        processor: StripeGateway,
        donor_resolver: DonorResolver,
        donation_recorder: DonationRecorder,
        dispatcher: NotificationDispatcher,
    ):
        self.processor = processor
        self.donor_resolver = donor_resolver
        self.donation_recorder = donation_recorder
        self.dispatcher = dispatcher

    async def handle(self, payload: bytes, signature_header: str | None) -> WebhookOutcome:
        outcome = WebhookOutcome()

        try:
            event = self.processor.construct_event(payload, signature_header)
        except (AuthenticityError, ValidationError) as e:
            logger.warning(f"Webhook rejected: {e.message}")
            outcome.error = e
            outcome.advance(WebhookState.REJECTED)
            return outcome

        outcome.event_id = event.id
        outcome.event_type = event.type
        outcome.advance(WebhookState.VERIFIED)
        logger.info(f"Received event: {event.type}", extra={"event_id": event.id})

        if event.type == CHECKOUT_SESSION_COMPLETED:
            try:
                await self._handle_checkout_session_completed(event, outcome)
            except AppError as e:
                logger.error(f"Error processing checkout session: {e.message}", extra={"event_id": event.id})
                outcome.error = e
                outcome.advance(WebhookState.FAILED)
            except Exception as e:
                logger.exception(f"Unexpected error processing checkout session: {e}")
                outcome.error = AppError("Webhook processing failed")
                outcome.advance(WebhookState.FAILED)
        elif event.type in ACKNOWLEDGED_EVENT_TYPES:
            logger.info(f"Acknowledged {event.type} for {event.object_id}", extra={"event_id": event.id})
            outcome.advance(WebhookState.DONE)
        else:
            logger.info(f"Unhandled event type: {event.type}", extra={"event_id": event.id})
            outcome.advance(WebhookState.DONE)

        return outcome

    async def _handle_checkout_session_completed(self, event: StripeEvent, outcome: WebhookOutcome) -> None:
        try:
            session = CheckoutSession.model_validate(event.data.object)
        except PydanticValidationError as e:
            raise ValidationError("Malformed checkout session", {"errors": e.error_count()}) from e

        logger.info(f"Processing checkout session: {session.id}", extra={"event_id": event.id})

        intent = None
        if session.payment_intent:
            intent = await self.processor.retrieve_payment_intent(session.payment_intent)

        customer = None
        customer_id = session.customer or (intent.customer if intent else None)
        if customer_id:
            customer = await self.processor.retrieve_customer(customer_id)

        profile = donor_profile(session, intent, customer)

        outcome.donor_id = await self.donor_resolver.resolve(profile)
        outcome.advance(WebhookState.DONOR_RESOLVED)

        recorded = await self.donation_recorder.record(
            session.payment_intent or session.id,
            checkout_session_id=session.id,
            donor_id=outcome.donor_id,
            amount_cents=session.amount_total or 0,
            currency=session.currency or "usd",
            email=profile.email or "",
            status=payment_status(session, intent),
            is_recurring=session.is_recurring,
            subscription_id=session.subscription,
            stripe_customer_id=profile.stripe_customer_id,
            organization=profile.organization,
            address=profile.address,
        )
        outcome.donation_id = recorded.donation_id
        outcome.donation_created = recorded.created
        outcome.advance(WebhookState.DONATION_RECORDED)

        if recorded.created:
            try:
                result = await self.dispatcher.dispatch(
                    donation_id=recorded.donation_id,
                    donor_id=outcome.donor_id,
                    email=profile.email,
                    name=profile.name,
                    amount=recorded.amount,
                    currency=session.currency or "usd",
                    is_recurring=session.is_recurring,
                    donation_date=recorded.donation_date,
                )
                if not result.ok:
                    outcome.partial_failure = PartialFailure("; ".join(result.errors))
            except Exception as e:
                outcome.partial_failure = PartialFailure(f"notification: {e}")

            if outcome.partial_failure is not None:
                logger.warning(
                    f"Donation {recorded.donation_id} recorded but notification incomplete: "
                    f"{outcome.partial_failure.message}",
                    extra={"event_id": event.id},
                )
        outcome.advance(WebhookState.NOTIFIED)
        outcome.advance(WebhookState.DONE)

        logger.info(
            "Successfully processed donation",
            extra={"session_id": session.id, "donor_id": outcome.donor_id, "donation_id": outcome.donation_id},
        )
