"""
Rate limit detector.

Counts recent attempts per IP, per email, per IP per day and per
(IP, endpoint). The counts and the write of this attempt happen in one
atomic store call (try_record_attempt), so concurrent requests from the same
client cannot all read the same count and slip past the limit together. The
counts never include the attempt being checked. The first limit reached
decides the response, in this order:

    endpoint rate  -> deny 0.95
    IP attempts    -> deny 0.90 and blacklist the IP
    IP daily       -> deny 0.85
    email attempts -> deny 0.80

Requests under every limit are recorded and scored by how close the IP is to
its login-attempt limit.
"""

import logging

from riskgate.config.security_config import EngineConfig
from riskgate.schemas.security import CheckResult, RequestSignal
from riskgate.utils.log_sanitizer import mask_identifier

logger = logging.getLogger(__name__)


class RateLimitDetector:
    name = "rate_limit"
    weight = 0.30

    def __init__(self, store):
        self.store = store

    def evaluate(self, signal: RequestSignal, config: EngineConfig) -> CheckResult:
        limits = config.rate_limits
        ip, email, endpoint = signal.ip, signal.email, signal.endpoint

        counts = self.store.try_record_attempt(ip, email, endpoint, limits)
        ip_attempts = counts.ip_attempts

        if counts.endpoint_rate >= limits.endpoint_limit:
            logger.warning(f"Endpoint rate limit hit for {mask_identifier(ip)} on {endpoint}: {counts.endpoint_rate}")
            return CheckResult.deny("Endpoint rate limit exceeded", 0.95, (f"endpoint_rate:{counts.endpoint_rate}",))

        if ip_attempts >= limits.login_attempts:
            self.store.add_to_blacklist(ip, "rate_limit", limits.blacklist_duration)
            logger.warning(
                f"🚫 Blacklisted {mask_identifier(ip)} for {limits.blacklist_duration}s "
                f"after {ip_attempts} attempts"
            )
            return CheckResult.deny("Too many attempts from this IP", 0.9, (f"ip_attempts:{ip_attempts}",))

        if counts.ip_daily >= limits.ip_daily_limit:
            return CheckResult.deny("Daily limit exceeded for this IP", 0.85, (f"ip_daily:{counts.ip_daily}",))

        if email and counts.email_attempts >= limits.user_daily_limit:
            logger.warning(f"Account rate limit hit for {mask_identifier(email)}: {counts.email_attempts}")
            return CheckResult.deny(
                "Too many attempts for this account", 0.8, (f"email_attempts:{counts.email_attempts}",)
            )

        risk = min(ip_attempts / limits.login_attempts, 0.95) if limits.login_attempts > 0 else 0.0
        return CheckResult.allow(
            risk_score=risk,
            challenge_required=risk > 0.5,
            details=(f"ip_attempts:{ip_attempts}",),
        )
