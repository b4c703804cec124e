"""
Payload Scanner

Looks for common attack payloads (XSS, SQL injection, path traversal) in
request values. Each matching pattern is worth PATTERN_POINTS suspicion
points; points are logged against the client IP in the threat store, where
they decay with the configured half life. Failed authentications add
FAILED_AUTH_POINTS.
"""

import logging
import re
from collections.abc import Iterable

from riskgate.services.prometheus_metrics import suspicious_activity_points
from riskgate.utils.log_sanitizer import mask_identifier

logger = logging.getLogger(__name__)

PATTERN_POINTS = 5
FAILED_AUTH_POINTS = 3

ATTACK_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        # XSS
        r"<script\b[^>]*>",
        r"javascript:",
        r"\bon\w+\s*=",
        # SQL injection
        r"(\bunion\b.*\bselect\b|\bselect\b.*\bfrom\b|\binsert\b.*\binto\b|\bdelete\b.*\bfrom\b)",
        r"(\bor\b|\band\b)\s+['\"]?\d+['\"]?\s*=\s*['\"]?\d+",
        r"['\"]\s*(--|#)",
        r";\s*(drop|delete|insert|update|select)\b",
        # Path traversal
        r"\.\./",
        r"\.\.\\",
    )
)

# Opaque credentials; scanning them only produces false positives
SKIPPED_HEADERS = frozenset({"authorization", "cookie", "x-admin-key"})


def scan_value(value) -> int:
    """Points for one value; dicts and lists are scanned recursively."""
    if isinstance(value, str):
        return sum(PATTERN_POINTS for pattern in ATTACK_PATTERNS if pattern.search(value))
    if isinstance(value, dict):
        return scan_values(value.values())
    if isinstance(value, (list, tuple)):
        return scan_values(value)
    return 0


def scan_values(values: Iterable) -> int:
    return sum(scan_value(value) for value in values)


def record_failed_auth(store, ip: str) -> float:
    """Add failed-authentication points for ip and return its new score."""
    score = store.log_suspicious_activity(ip, FAILED_AUTH_POINTS)
    suspicious_activity_points.labels(source="failed_auth").inc(FAILED_AUTH_POINTS)
    logger.info(f"Failed authentication from {mask_identifier(ip)} (suspicion={score:.1f})")
    return score
