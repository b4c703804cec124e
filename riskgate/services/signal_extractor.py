"""
Request signal extraction.

Normalizes a Starlette/FastAPI request into the flat RequestSignal the risk
pipeline consumes.
"""

import ipaddress
import json
import logging
import time
from typing import Any
from urllib.parse import parse_qs

from starlette.requests import Request

from riskgate.schemas.security import RequestSignal

logger = logging.getLogger(__name__)

BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})
EMAIL_FIELDS = ("email", "username")
FINGERPRINT_HEADER = "x-fingerprint"
UNKNOWN_IP = "0.0.0.0"  # noqa: S104


def _public_ip(candidate: str | None) -> str | None:
    if not candidate:
        return None
    candidate = candidate.strip()
    try:
        address = ipaddress.ip_address(candidate)
    except ValueError:
        return None
    return candidate if address.is_global else None


def get_client_ip(request: Request) -> str:
    """
    Get the client IP address from a request.

    Proxy headers are tried in order (CF-Connecting-IP, the first
    X-Forwarded-For entry, X-Real-IP); the first one holding a well-formed
    public IP wins. Otherwise the socket peer address is used.

    Args:
        request: Starlette/FastAPI Request object

    Returns:
        Client IP address string, "0.0.0.0" when nothing is known
    """
    forwarded_for = request.headers.get("x-forwarded-for", "")
    candidates = (
        request.headers.get("cf-connecting-ip"),
        forwarded_for.split(",")[0] if forwarded_for else None,
        request.headers.get("x-real-ip"),
    )
    for candidate in candidates:
        ip = _public_ip(candidate)
        if ip:
            return ip

    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN_IP


async def parse_body(request: Request) -> dict[str, Any] | None:
    """
    Parse a JSON object or urlencoded form body.

    Returns None for other content types, empty bodies and parse failures.
    """
    if request.method not in BODY_METHODS:
        return None

    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    try:
        raw = await request.body()
        if not raw:
            return None
        if content_type == "application/json" or content_type.endswith("+json"):
            data = json.loads(raw)
            return data if isinstance(data, dict) else None
        if content_type == "application/x-www-form-urlencoded":
            return {key: values[0] for key, values in parse_qs(raw.decode("utf-8")).items() if values}
    except (ValueError, UnicodeDecodeError) as e:
        logger.debug(f"Could not parse {content_type} body for {request.url.path}: {e}")
    return None


def email_from_body(body: dict[str, Any] | None) -> str | None:
    if not body:
        return None
    for field in EMAIL_FIELDS:
        value = body.get(field)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


async def extract_signal(request: Request) -> RequestSignal:
    headers = {key.lower(): value for key, value in request.headers.items()}
    body = await parse_body(request)
    return RequestSignal(
        ip=get_client_ip(request),
        user_agent=headers.get("user-agent", ""),
        endpoint=request.url.path,
        method=request.method,
        headers=headers,
        email=email_from_body(body),
        fingerprint=headers.get(FINGERPRINT_HEADER) or None,
        timestamp=time.time(),
    )
