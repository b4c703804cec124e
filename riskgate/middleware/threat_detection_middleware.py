"""
Threat Detection Middleware

Scans query parameters, headers and the parsed body of each request for
attack payloads and logs the points against the client IP. Once an IP's
decaying suspicion score reaches the threshold its requests are refused with
403 until the score decays. Responses with status 401 count as failed
authentications and add their own points.
"""

import asyncio
import logging
from collections.abc import Iterable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
from starlette.types import ASGIApp

from riskgate.services.payload_scanner import SKIPPED_HEADERS, record_failed_auth, scan_values
from riskgate.services.prometheus_metrics import suspicious_activity_points
from riskgate.services.signal_extractor import get_client_ip, parse_body
from riskgate.services.store_guard import StoreUnavailableError
from riskgate.utils.log_sanitizer import mask_identifier

logger = logging.getLogger(__name__)

EXEMPT_PATHS = frozenset({"/health", "/metrics", "/favicon.ico"})


def _blocked(reason: str) -> JSONResponse:
    return JSONResponse(
        status_code=403,
        content={"error": "Security validation failed", "reason": reason},
        headers={"X-Security-Decision": "denied"},
    )


class ThreatDetectionMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, store, exempt_paths: Iterable[str] = EXEMPT_PATHS):
        super().__init__(app)
        self.store = store
        self.exempt_paths = frozenset(exempt_paths)

    async def _collect_values(self, request: Request) -> list:
        values: list = list(request.query_params.values())
        values.extend(value for key, value in request.headers.items() if key.lower() not in SKIPPED_HEADERS)
        body = await parse_body(request)
        if body:
            values.append(body)
        return values

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        client_ip = get_client_ip(request)
        points = scan_values(await self._collect_values(request))

        try:
            if points:
                score = await asyncio.to_thread(self.store.log_suspicious_activity, client_ip, points)
                suspicious_activity_points.labels(source="payload").inc(points)
                logger.warning(
                    f"⚠️ Attack patterns from {mask_identifier(client_ip)} on {request.url.path}: "
                    f"+{points} (suspicion={score:.1f})"
                )
            if await asyncio.to_thread(self.store.is_suspicious, client_ip):
                logger.warning(f"🚫 Blocked suspicious client {mask_identifier(client_ip)}")
                return _blocked("Suspicious activity detected")
        except StoreUnavailableError:
            return _blocked("Security store unavailable")

        response = await call_next(request)

        if response.status_code == 401:
            try:
                await asyncio.to_thread(record_failed_auth, self.store, client_ip)
            except StoreUnavailableError as e:
                logger.error(f"Could not record failed authentication for {mask_identifier(client_ip)}: {e}")
        return response
