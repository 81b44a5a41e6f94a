import hmac
import logging
from datetime import date, datetime, time, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from api.schemas import HealthResponse, ReconciliationResponse, WebhookAck, WebhookError
from core.dependencies import Services, get_reconciliation_service, get_services, get_webhook_service
from core.errors import AuthenticationError
from services.reconciliation_service import ReconciliationService
from services.webhook_service import WebhookService

router = APIRouter()
security = HTTPBearer(auto_error=False)
logger = logging.getLogger(__name__)


async def require_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    services: Services = Depends(get_services),
) -> None:
    expected = services.settings.ADMIN_API_TOKEN
    if credentials is None or not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        raise AuthenticationError("Admin authentication required")


@router.get("/health", response_model=HealthResponse)
def health():
    return HealthResponse()


@router.post(
    "/webhooks/stripe",
    response_model=WebhookAck,
    responses={400: {"model": WebhookError}, 500: {"model": WebhookError}},
)
async def handle_stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None),
    webhook_service: WebhookService = Depends(get_webhook_service),
):
    """
    Receives webhook events from Stripe, verifies them and records the
    donation. Anything other than 200 makes Stripe redeliver later.
    """
    payload = await request.body()
    outcome = await webhook_service.handle(payload, stripe_signature)

    if outcome.acknowledged:
        return WebhookAck(event_id=outcome.event_id, state=outcome.state.value)

    message = outcome.error.message if outcome.error else "Webhook processing failed"
    return JSONResponse(
        status_code=outcome.status_code,
        content=WebhookError(error=message, state=outcome.state.value).model_dump(),
    )


@router.get(
    "/admin/reconciliation",
    response_model=ReconciliationResponse,
    responses={207: {"model": ReconciliationResponse}},
    dependencies=[Depends(require_admin)],
)
async def get_reconciliation(
    since: Optional[date] = Query(default=None),
    include_details: bool = Query(default=False, alias="includeDetails"),
    reconciliation_service: ReconciliationService = Depends(get_reconciliation_service),
):
    since_at = datetime.combine(since, time.min, tzinfo=timezone.utc) if since else None
    report = await reconciliation_service.audit(since=since_at, include_details=include_details)

    body = ReconciliationResponse(healthy=report.healthy, data=report)
    # 207 Multi-Status when mismatches exist: the audit itself still succeeded.
    return JSONResponse(
        status_code=200 if report.healthy else 207,
        content=body.model_dump(mode="json"),
    )
