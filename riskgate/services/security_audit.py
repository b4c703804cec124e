"""
Security audit log.

Every pipeline decision is written to the "riskgate.audit" logger with the
request's IP, email and endpoint (masked), the risk score and the outcome as
structured `extra` fields, so StructuredFormatter emits them as JSON keys.
Decisions are also counted in Prometheus and, when a threat store is given,
appended to its bounded decision log for the statistics and recent-blocked
admin views.
"""

import logging

from riskgate.schemas.security import Decision, DecisionRecord, RequestSignal
from riskgate.services.prometheus_metrics import record_decision
from riskgate.services.store_guard import StoreUnavailableError
from riskgate.utils.log_sanitizer import mask_identifier, sanitize_for_logging

logger = logging.getLogger(__name__)

AUDIT_LOGGER_NAME = "riskgate.audit"


class SecurityAuditLogger:
    def __init__(self, audit_logger: logging.Logger | None = None, store=None):
        self.audit_logger = audit_logger or logging.getLogger(AUDIT_LOGGER_NAME)
        self.store = store

    def log_decision(self, signal: RequestSignal, decision: Decision) -> None:
        failed_check = next(iter(decision.checks_failed), None)
        record_decision(decision.outcome, decision.risk_score, failed_check)

        extra = {
            "event": "security_decision",
            "client_ip": mask_identifier(signal.ip),
            "email": mask_identifier(signal.email),
            "endpoint": sanitize_for_logging(signal.endpoint),
            "method": signal.method,
            "risk_score": round(decision.risk_score, 4),
            "outcome": decision.outcome,
            "reason": decision.reason,
            "challenge_type": decision.challenge_type.value if decision.challenge_type else None,
            "checks_failed": sorted(decision.checks_failed),
        }
        message = (
            f"Security decision {decision.outcome} for {extra['client_ip']} "
            f"{signal.method} {extra['endpoint']} (risk={decision.risk_score:.3f}): {decision.reason}"
        )

        if decision.allowed:
            if decision.challenge_required:
                self.audit_logger.info(message, extra=extra)
            else:
                self.audit_logger.debug(message, extra=extra)
        else:
            self.audit_logger.warning(message, extra=extra)

        if self.store is not None:
            self._store_decision(signal, decision, extra)

    def _store_decision(self, signal: RequestSignal, decision: Decision, extra: dict) -> None:
        record = DecisionRecord(
            timestamp=decision.timestamp,
            ip=signal.ip,
            endpoint=extra["endpoint"],
            method=signal.method,
            outcome=decision.outcome,
            reason=decision.reason,
            risk_score=extra["risk_score"],
            email=extra["email"] or None,
        )
        try:
            self.store.record_decision(record)
        except StoreUnavailableError as e:
            # The decision already stands; losing its log entry must not change it
            logger.warning(f"Decision not added to the decision log: {e}")
