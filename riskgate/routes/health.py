import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from riskgate.services.store_guard import STORE_ERRORS

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health", tags=["health"])
def health_check(request: Request):
    """
    Simple health check endpoint

    Always returns HTTP 200 while the application is running. A threat store
    outage is reported as "degraded" in the body; the pipeline keeps serving
    under its fail-open / fail-closed policy.
    """
    pipeline = request.app.state.risk_pipeline
    backend = pipeline.backend

    try:
        store_ok = bool(backend.ping())
    except STORE_ERRORS as e:
        logger.warning(f"Threat store health check failed: {e}")
        store_ok = False

    return {
        "status": "healthy" if store_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "threat_store": {
            "backend": type(backend).__name__,
            "available": store_ok,
        },
        "fail_open": pipeline.config.fail_open,
    }
