"""
Security Middleware

Runs every inbound request through the RiskPipeline and shapes the response
from the resulting Decision:

- denied     -> 403 {error, reason, risk_score, timestamp},
                X-Security-Decision: denied
- challenged -> 429 {challenge_required, challenge_type, risk_score, message},
                X-Challenge-Type, Retry-After: 60
- allowed    -> the request proceeds; the Decision is attached to
                request.state.security_decision and the response carries
                X-Security-Score and X-Security-Decision: allowed

The pipeline is synchronous (it talks to Redis with blocking calls), so it runs
in a worker thread.
"""

import asyncio
import logging
from collections.abc import Iterable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
from starlette.types import ASGIApp

from riskgate.schemas.security import ChallengeResponse, Decision, DeniedResponse
from riskgate.services.risk_pipeline import RiskPipeline
from riskgate.services.signal_extractor import extract_signal
from riskgate.utils.log_sanitizer import mask_identifier

logger = logging.getLogger(__name__)

EXEMPT_PATHS = frozenset({"/health", "/metrics", "/favicon.ico"})
CHALLENGE_RETRY_AFTER = "60"


def _risk_header(risk_score: float) -> str:
    return f"{risk_score:.4f}"


def denied_response(decision: Decision) -> JSONResponse:
    body = DeniedResponse(reason=decision.reason, risk_score=decision.risk_score, timestamp=decision.timestamp)
    return JSONResponse(
        status_code=403,
        content=body.model_dump(mode="json"),
        headers={
            "X-Security-Decision": "denied",
            "X-Risk-Score": _risk_header(decision.risk_score),
        },
    )


def challenge_response(decision: Decision) -> JSONResponse:
    body = ChallengeResponse(challenge_type=decision.challenge_type, risk_score=decision.risk_score)
    return JSONResponse(
        status_code=429,
        content=body.model_dump(mode="json"),
        headers={
            "X-Security-Decision": "challenge",
            "X-Challenge-Type": body.challenge_type.value,
            "X-Risk-Score": _risk_header(decision.risk_score),
            "Retry-After": CHALLENGE_RETRY_AFTER,
        },
    )


class SecurityMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: ASGIApp,
        pipeline: RiskPipeline,
        protected_paths: Iterable[str] | None = None,
        exempt_paths: Iterable[str] = EXEMPT_PATHS,
    ):
        super().__init__(app)
        self.pipeline = pipeline
        self.protected_paths = tuple(protected_paths or ())
        self.exempt_paths = frozenset(exempt_paths)
        logger.info("🛡️ SecurityMiddleware initialized")

    def _should_evaluate(self, path: str) -> bool:
        if path in self.exempt_paths:
            return False
        if not self.protected_paths:
            return True
        return any(path.startswith(prefix) for prefix in self.protected_paths)

    async def dispatch(self, request: Request, call_next) -> Response:
        if not self._should_evaluate(request.url.path):
            return await call_next(request)

        signal = await extract_signal(request)
        decision = await asyncio.to_thread(self.pipeline.decide, signal)

        if not decision.allowed:
            logger.warning(
                f"🛡️ Denied {mask_identifier(signal.ip)} {signal.method} {signal.endpoint}: "
                f"{decision.reason} (risk={decision.risk_score:.2f})"
            )
            return denied_response(decision)

        if decision.challenge_required:
            logger.info(
                f"Challenge {decision.challenge_type.value} required for {mask_identifier(signal.ip)} "
                f"{signal.endpoint} (risk={decision.risk_score:.2f})"
            )
            return challenge_response(decision)

        request.state.security_decision = decision
        response = await call_next(request)
        response.headers["X-Security-Score"] = _risk_header(decision.risk_score)
        response.headers["X-Security-Decision"] = "allowed"
        return response
