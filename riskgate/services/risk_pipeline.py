"""
Risk Pipeline

Turns a RequestSignal into a Decision:

1. Whitelisted IPs are allowed outright; blacklisted IPs are denied.
2. Signals without an IP, user agent or endpoint are denied.
3. Enabled detectors run in order. The first deny short-circuits and becomes
   the decision; otherwise each detector adds risk * weight to the total and
   may request a challenge (the strongest requested challenge wins).
4. The total is tiered: > 0.85 deny, > 0.70 multi-factor, > 0.50 captcha.
5. The decision is written to the security audit log and the store's
   decision log. A failing audit write is logged and never changes the
   decision.

decide() never raises. Store failures are handled by GuardedThreatStore
according to the configured fail-open / fail-closed policy; under fail-closed
an unusable store turns into a deny.

The operator interface (set_config, enable_rule, add_to_whitelist, ...) swaps
in a new immutable EngineConfig or writes through to the backing store
directly, so operator calls surface store errors instead of failing open.
"""

import logging
import threading
from collections.abc import Iterable
from typing import Any

from riskgate.config.security_config import EngineConfig
from riskgate.schemas.security import (
    ChallengeType,
    CheckResult,
    Decision,
    DecisionRecord,
    IdentifierType,
    ListEntry,
    RequestSignal,
    stronger_challenge,
)
from riskgate.services.detectors import Detector, default_detectors
from riskgate.services.security_audit import SecurityAuditLogger
from riskgate.services.store_guard import GuardedThreatStore, StoreUnavailableError
from riskgate.services.threat_store import ThreatStore
from riskgate.utils.log_sanitizer import mask_identifier

logger = logging.getLogger(__name__)

CRITICAL_RISK_THRESHOLD = 0.85
MULTI_FACTOR_THRESHOLD = 0.70
CAPTCHA_THRESHOLD = 0.50


class RiskPipeline:
    def __init__(
        self,
        store: ThreatStore | GuardedThreatStore,
        config: EngineConfig | None = None,
        detectors: Iterable[Detector] | None = None,
        audit_logger: SecurityAuditLogger | None = None,
    ):
        config = config or EngineConfig()
        self.store = store if isinstance(store, GuardedThreatStore) else GuardedThreatStore(store)
        self._config = config
        self._apply_store_settings(config)
        self._config_lock = threading.Lock()
        self.detectors = list(detectors) if detectors is not None else default_detectors(self.store)
        self.audit = audit_logger or SecurityAuditLogger(store=self.store)

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def backend(self) -> ThreatStore:
        """The unguarded store, for operator calls that must report failures."""
        return self.store.store

    # --- decisions ---

    def decide(self, signal: RequestSignal) -> Decision:
        config = self._config
        try:
            decision = self._evaluate(signal, config)
        except StoreUnavailableError as e:
            logger.error(f"Denying request from {mask_identifier(signal.ip)}: {e}")
            decision = Decision.deny("Security store unavailable", 1.0)
        except Exception as e:
            # Anything escaping the detector guards is a bug; the policy decides the outcome
            logger.exception(f"Risk evaluation failed for {mask_identifier(signal.ip)}: {e}")
            if config.fail_open:
                decision = Decision(allowed=True, reason="Security evaluation unavailable", risk_score=0.0)
            else:
                decision = Decision.deny("Security evaluation unavailable", 1.0)

        try:
            self.audit.log_decision(signal, decision)
        except Exception as e:
            logger.exception(f"Audit logging failed for {mask_identifier(signal.ip)}: {e}")
        return decision

    def _evaluate(self, signal: RequestSignal, config: EngineConfig) -> Decision:
        if self.store.is_whitelisted(signal.ip):
            return Decision(allowed=True, reason="Whitelisted IP", risk_score=0.0)

        if self.store.is_blacklisted(signal.ip):
            return Decision.deny("Blacklisted IP", 1.0)

        if not (signal.ip and signal.user_agent and signal.endpoint):
            return Decision.deny("Invalid request format", 1.0)

        total = 0.0
        passed: list[str] = []
        details: list[str] = []
        challenge_type: ChallengeType | None = None
        challenge_required = False
        suggested_email = None

        for detector in self.detectors:
            if not config.is_enabled(detector.name):
                continue

            result = self._run_detector(detector, signal, config)
            if not result.allowed:
                return Decision.deny(
                    result.reason or "Security check failed",
                    result.risk_score,
                    checks_passed=passed,
                    checks_failed={detector.name},
                    details=result.details,
                )

            total += result.risk_score * detector.weight
            passed.append(detector.name)
            details.extend(result.details)
            suggested_email = suggested_email or result.suggested_email
            if result.challenge_required:
                challenge_required = True
                challenge_type = stronger_challenge(challenge_type, result.challenge_type or ChallengeType.CAPTCHA)

        risk_score = min(max(total, 0.0), 1.0)

        if risk_score > CRITICAL_RISK_THRESHOLD:
            return Decision.deny(
                "Critical risk threshold exceeded",
                risk_score,
                checks_passed=passed,
                details=tuple(details),
                suggested_email=suggested_email,
            )
        if risk_score > MULTI_FACTOR_THRESHOLD:
            challenge_required = True
            challenge_type = stronger_challenge(challenge_type, ChallengeType.MULTI_FACTOR)
        elif risk_score > CAPTCHA_THRESHOLD:
            challenge_required = True
            challenge_type = stronger_challenge(challenge_type, ChallengeType.CAPTCHA)

        return Decision(
            allowed=True,
            reason="OK",
            risk_score=risk_score,
            challenge_required=challenge_required,
            challenge_type=challenge_type,
            checks_passed=passed,
            details=tuple(details),
            suggested_email=suggested_email,
        )

    def _run_detector(self, detector: Detector, signal: RequestSignal, config: EngineConfig) -> CheckResult:
        try:
            return detector.evaluate(signal, config)
        except StoreUnavailableError:
            raise
        except Exception as e:
            logger.exception(f"Detector {detector.name} failed: {e}")
            if config.fail_open:
                return CheckResult.allow(details=(f"detector_error:{detector.name}",))
            return CheckResult.deny("Security check failed", 1.0, (f"detector_error:{detector.name}",))

    # --- operator interface ---

    def _swap_config(self, build) -> EngineConfig:
        with self._config_lock:
            new_config = build(self._config)
            self._config = new_config
            self._apply_store_settings(new_config)
        return new_config

    def _apply_store_settings(self, config: EngineConfig) -> None:
        self.store.fail_open = config.fail_open
        self.backend.suspicion_threshold = config.suspicion.threshold
        self.backend.half_life_seconds = config.suspicion.half_life_seconds

    def set_config(self, path: str, value: Any) -> EngineConfig:
        """Replace one setting by dotted path. Raises KeyError for unknown paths."""
        new_config = self._swap_config(lambda current: current.with_setting(path, value))
        logger.info(f"Security config updated: {path}={value!r}")
        return new_config

    def set_rule(self, name: str, enabled: bool) -> EngineConfig:
        new_config = self._swap_config(lambda current: current.with_rule(name, enabled))
        logger.info(f"Security rule {name} {'enabled' if enabled else 'disabled'}")
        return new_config

    def enable_rule(self, name: str) -> EngineConfig:
        return self.set_rule(name, True)

    def disable_rule(self, name: str) -> EngineConfig:
        return self.set_rule(name, False)

    def add_to_whitelist(self, ip: str, reason: str | None = None) -> ListEntry:
        entry = self.backend.add_to_whitelist(ip, reason)
        logger.info(f"Whitelisted {ip}")
        return entry

    def remove_from_whitelist(self, ip: str) -> bool:
        return self.backend.remove_from_whitelist(ip)

    def add_to_blacklist(self, ip: str, reason: str, duration_seconds: int | None = None) -> ListEntry:
        entry = self.backend.add_to_blacklist(ip, reason, duration_seconds)
        logger.info(f"Blacklisted {ip} ({reason}, duration={duration_seconds or 'permanent'})")
        return entry

    def remove_from_blacklist(self, ip: str) -> bool:
        return self.backend.remove_from_blacklist(ip)

    def block_fingerprint(self, fingerprint: str, reason: str = "Manual block") -> None:
        self.backend.block_fingerprint(fingerprint, reason)

    def unblock_fingerprint(self, fingerprint: str) -> bool:
        return self.backend.unblock_fingerprint(fingerprint)

    def is_rate_limited(self, ip: str) -> bool:
        """True when ip is at or over its login-attempt limit."""
        limits = self._config.rate_limits
        return self.backend.attempt_count(ip, IdentifierType.IP, limits.login_window) >= limits.login_attempts

    def clear_rate_limit(self, ip: str) -> None:
        self.backend.clear_attempts(ip, IdentifierType.IP)
        logger.info(f"Cleared recorded attempts for {ip}")

    def ip_status(self, ip: str) -> dict[str, Any]:
        """Everything the engine currently knows about one IP."""
        limits = self._config.rate_limits
        backend = self.backend
        return {
            "ip": ip,
            "whitelisted": backend.is_whitelisted(ip),
            "blacklisted": backend.is_blacklisted(ip),
            "attempts": backend.attempt_count(ip, IdentifierType.IP, limits.login_window),
            "daily_attempts": backend.attempt_count(ip, IdentifierType.IP, limits.daily_window),
            "rate_limited": self.is_rate_limited(ip),
            "suspicion_score": round(backend.suspicion_score(ip), 4),
            "suspicious": backend.is_suspicious(ip),
        }

    # --- decision log ---

    def statistics(self, days: int = 7) -> dict[str, Any]:
        """Totals, block rate, top blocked IPs and top endpoints over the last days."""
        return self.backend.decision_statistics(days)

    def recent_blocked(self, limit: int = 50) -> list[DecisionRecord]:
        return self.backend.recent_blocked(limit)

    def cleanup_decisions(self, days_to_keep: int = 30) -> int:
        """Drop logged decisions older than days_to_keep; returns how many went."""
        removed = self.backend.prune_decisions(self.backend.clock() - days_to_keep * 86400)
        logger.info(f"Removed {removed} decision log entries older than {days_to_keep} days")
        return removed
