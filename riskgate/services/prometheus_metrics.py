"""
Prometheus metrics for the risk engine.

Exposed on /metrics by riskgate.main. Label values are kept to small, fixed
sets (outcome, check name, store operation) so cardinality stays bounded.
"""

import logging

from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

security_decisions = Counter(
    "security_decisions_total",
    "Risk pipeline decisions by outcome",
    ["outcome"],
)

security_checks_failed = Counter(
    "security_checks_failed_total",
    "Requests denied, by the check that denied them",
    ["check"],
)

security_risk_score = Histogram(
    "security_risk_score",
    "Distribution of final request risk scores",
    buckets=(0.05, 0.1, 0.25, 0.5, 0.7, 0.85, 0.95, 1.0),
)

security_store_errors = Counter(
    "security_store_errors_total",
    "Threat store operations that failed or timed out",
    ["operation"],
)

suspicious_activity_points = Counter(
    "security_suspicious_activity_points_total",
    "Suspicion points logged against clients",
    ["source"],
)


def record_decision(outcome: str, risk_score: float, failed_check: str | None = None) -> None:
    """Record one pipeline decision."""
    security_decisions.labels(outcome=outcome).inc()
    security_risk_score.observe(risk_score)
    if failed_check:
        security_checks_failed.labels(check=failed_check).inc()


def record_store_error(operation: str) -> None:
    security_store_errors.labels(operation=operation).inc()
