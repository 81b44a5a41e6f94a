from pydantic import BaseModel

from models.reconciliation import ReconciliationReport


class WebhookAck(BaseModel):
    received: bool = True
    event_id: str | None = None
    state: str


class WebhookError(BaseModel):
    error: str
    state: str


class ReconciliationResponse(BaseModel):
    success: bool = True
    healthy: bool
    data: ReconciliationReport


class HealthResponse(BaseModel):
    status: str = "ok"
