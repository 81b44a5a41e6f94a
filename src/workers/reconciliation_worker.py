import asyncio
import logging
from datetime import datetime, timedelta, timezone

from core.config import get_settings
from core.dependencies import build_services

# We need to configure logging here since workers are entry points
from core.logging_config import configure_logging
configure_logging()

logger = logging.getLogger(__name__)


def _since(event: dict) -> datetime | None:
    if event.get("since"):
        since = datetime.fromisoformat(event["since"])
        return since if since.tzinfo else since.replace(tzinfo=timezone.utc)
    if event.get("lookback_days"):
        return datetime.now(timezone.utc) - timedelta(days=int(event["lookback_days"]))
    return None


async def run_audit(event: dict) -> dict:
    services = build_services(get_settings())
    await services.start()
    try:
        report = await services.reconciliation_service.audit(
            since=_since(event),
            include_details=bool(event.get("include_details", True)),
        )
    finally:
        await services.aclose()

    if report.healthy:
        logger.info("Reconciliation healthy")
    else:
        logger.warning(
            f"Reconciliation found {report.mismatch_count} mismatches",
            extra={"summary": report.mismatch_summary},
        )
    return {
        'statusCode': 200 if report.healthy else 207,
        'body': report.model_dump_json(),
    }


def lambda_handler(event, context):
    """Scheduled entry point. ``event`` may carry ``since``, ``lookback_days`` and ``include_details``."""
    logger.info("Starting scheduled reconciliation.")
    try:
        return asyncio.run(run_audit(event or {}))
    except Exception as e:
        logger.error(f"Reconciliation run failed: {e}")
        raise e
