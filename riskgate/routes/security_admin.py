"""
Security Admin Routes

Operator endpoints for the risk engine: IP lists, fingerprint blocks, rule
switches, live configuration changes, per-IP inspection and the decision log
(statistics, recent blocks, cleanup). Every endpoint requires the X-Admin-Key
header to match ADMIN_API_KEY.
"""

import ipaddress
import logging
import secrets
from contextlib import contextmanager
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, Field, field_validator

from riskgate.config import Config
from riskgate.schemas.security import ListKind
from riskgate.services.risk_pipeline import RiskPipeline
from riskgate.services.store_guard import STORE_ERRORS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/security", tags=["Admin - Security"])


# --- Request/Response Schemas ---


class ListEntryRequest(BaseModel):
    """Request to add an IP or CIDR range to the whitelist or blacklist"""

    ip: str = Field(..., description="IP address or CIDR range (e.g., '203.0.113.5' or '203.0.113.0/24')")
    reason: str | None = Field(None, description="Why this IP is listed")
    duration_seconds: int | None = Field(
        None,
        gt=0,
        description="Blacklist only: seconds until the entry expires (null = permanent)",
    )

    @field_validator("ip")
    @classmethod
    def validate_ip(cls, v: str) -> str:
        try:
            ipaddress.ip_network(v, strict=False)
        except ValueError as e:
            raise ValueError(f"Invalid IP address or CIDR range: {e}") from e
        return v


class ListEntryResponse(BaseModel):
    ip: str
    active: bool
    reason: str | None = None
    expires_at: float | None = None
    created_at: float


class FingerprintRequest(BaseModel):
    fingerprint: str = Field(..., min_length=1)
    reason: str = "Manual block"


class RuleUpdateRequest(BaseModel):
    enabled: bool


class ConfigUpdateRequest(BaseModel):
    """Replace one engine setting by dotted path, e.g. rate_limits.login_attempts"""

    path: str = Field(..., min_length=1)
    value: Any


# --- Dependencies ---


def require_admin_key(x_admin_key: str | None = Header(None)) -> str:
    """Validate the X-Admin-Key header using a constant-time comparison."""
    expected_key = Config.ADMIN_API_KEY
    if not expected_key:
        logger.error("ADMIN_API_KEY is not configured; security admin API disabled")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Admin API not configured")

    if not x_admin_key or not secrets.compare_digest(x_admin_key, expected_key):
        logger.warning("Rejected security admin request with invalid admin key")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin key")
    return x_admin_key


def get_pipeline(request: Request) -> RiskPipeline:
    return request.app.state.risk_pipeline


@contextmanager
def _store_errors(operation: str):
    try:
        yield
    except STORE_ERRORS as e:
        logger.error(f"Security admin {operation} failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Threat store unavailable",
        ) from e


# --- Lists ---


def _list_entries(pipeline: RiskPipeline, kind: ListKind) -> list[dict]:
    with _store_errors(f"list {kind.value}"):
        return [entry.to_dict() for entry in pipeline.backend.list_entries(kind)]


@router.get("/whitelist", response_model=list[ListEntryResponse], summary="List whitelisted IPs")
def get_whitelist(pipeline: RiskPipeline = Depends(get_pipeline), _: str = Depends(require_admin_key)):
    return _list_entries(pipeline, ListKind.WHITELIST)


@router.post(
    "/whitelist",
    response_model=ListEntryResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Whitelist an IP or CIDR range",
)
def add_whitelist_entry(
    body: ListEntryRequest,
    pipeline: RiskPipeline = Depends(get_pipeline),
    _: str = Depends(require_admin_key),
):
    with _store_errors("whitelist add"):
        return pipeline.add_to_whitelist(body.ip, body.reason).to_dict()


@router.delete("/whitelist/{ip:path}", summary="Remove an IP from the whitelist")
def remove_whitelist_entry(
    ip: str,
    pipeline: RiskPipeline = Depends(get_pipeline),
    _: str = Depends(require_admin_key),
):
    with _store_errors("whitelist remove"):
        removed = pipeline.remove_from_whitelist(ip)
    if not removed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{ip} is not whitelisted")
    return {"ip": ip, "removed": True}


@router.get("/blacklist", response_model=list[ListEntryResponse], summary="List blacklisted IPs")
def get_blacklist(pipeline: RiskPipeline = Depends(get_pipeline), _: str = Depends(require_admin_key)):
    return _list_entries(pipeline, ListKind.BLACKLIST)


@router.post(
    "/blacklist",
    response_model=ListEntryResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Blacklist an IP or CIDR range",
)
def add_blacklist_entry(
    body: ListEntryRequest,
    pipeline: RiskPipeline = Depends(get_pipeline),
    _: str = Depends(require_admin_key),
):
    with _store_errors("blacklist add"):
        entry = pipeline.add_to_blacklist(body.ip, body.reason or "Manual block", body.duration_seconds)
    return entry.to_dict()


@router.delete("/blacklist/{ip:path}", summary="Remove an IP from the blacklist")
def remove_blacklist_entry(
    ip: str,
    pipeline: RiskPipeline = Depends(get_pipeline),
    _: str = Depends(require_admin_key),
):
    with _store_errors("blacklist remove"):
        removed = pipeline.remove_from_blacklist(ip)
    if not removed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{ip} is not blacklisted")
    return {"ip": ip, "removed": True}


# --- Fingerprints ---


@router.post("/fingerprints", status_code=status.HTTP_201_CREATED, summary="Block a device fingerprint")
def block_fingerprint(
    body: FingerprintRequest,
    pipeline: RiskPipeline = Depends(get_pipeline),
    _: str = Depends(require_admin_key),
):
    with _store_errors("fingerprint block"):
        pipeline.block_fingerprint(body.fingerprint, body.reason)
    return {"fingerprint": body.fingerprint, "blocked": True}


@router.delete("/fingerprints/{fingerprint}", summary="Unblock a device fingerprint")
def unblock_fingerprint(
    fingerprint: str,
    pipeline: RiskPipeline = Depends(get_pipeline),
    _: str = Depends(require_admin_key),
):
    with _store_errors("fingerprint unblock"):
        removed = pipeline.unblock_fingerprint(fingerprint)
    if not removed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Fingerprint is not blocked")
    return {"fingerprint": fingerprint, "blocked": False}


# --- Rules and configuration ---


@router.get("/config", summary="Current engine configuration")
def get_config(pipeline: RiskPipeline = Depends(get_pipeline), _: str = Depends(require_admin_key)):
    return pipeline.config.to_dict()


@router.put("/rules/{name}", summary="Enable or disable a detector")
def update_rule(
    name: str,
    body: RuleUpdateRequest,
    pipeline: RiskPipeline = Depends(get_pipeline),
    _: str = Depends(require_admin_key),
):
    try:
        config = pipeline.set_rule(name, body.enabled)
    except KeyError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown security rule: {name}") from e
    return {"rules": dict(config.rules)}


@router.patch("/config", summary="Change one engine setting")
def update_config(
    body: ConfigUpdateRequest,
    pipeline: RiskPipeline = Depends(get_pipeline),
    _: str = Depends(require_admin_key),
):
    try:
        config = pipeline.set_config(body.path, body.value)
    except KeyError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown configuration path: {body.path}",
        ) from e
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return config.to_dict()


# --- Per-IP state ---


@router.get("/ips/{ip}", summary="Inspect what the engine knows about an IP")
def get_ip_status(ip: str, pipeline: RiskPipeline = Depends(get_pipeline), _: str = Depends(require_admin_key)):
    with _store_errors("ip status"):
        return pipeline.ip_status(ip)


@router.delete("/ips/{ip}/attempts", summary="Clear recorded attempts for an IP")
def clear_ip_attempts(ip: str, pipeline: RiskPipeline = Depends(get_pipeline), _: str = Depends(require_admin_key)):
    with _store_errors("clear attempts"):
        pipeline.clear_rate_limit(ip)
    return {"ip": ip, "cleared": True}


# --- Decision log ---


@router.get("/stats", summary="Decision statistics over the last days")
def get_statistics(
    days: int = Query(default=7, ge=1, le=365),
    pipeline: RiskPipeline = Depends(get_pipeline),
    _: str = Depends(require_admin_key),
):
    with _store_errors("statistics"):
        return pipeline.statistics(days)


@router.get("/blocked", summary="Most recent denied requests")
def get_recent_blocked(
    limit: int = Query(default=50, ge=1, le=1000),
    pipeline: RiskPipeline = Depends(get_pipeline),
    _: str = Depends(require_admin_key),
):
    with _store_errors("recent blocked"):
        return [record.to_dict() for record in pipeline.recent_blocked(limit)]


@router.delete("/decisions", summary="Drop old decision log entries")
def cleanup_decisions(
    days_to_keep: int = Query(default=30, ge=1),
    pipeline: RiskPipeline = Depends(get_pipeline),
    _: str = Depends(require_admin_key),
):
    with _store_errors("decision cleanup"):
        removed = pipeline.cleanup_decisions(days_to_keep)
    return {"days_to_keep": days_to_keep, "removed": removed}
