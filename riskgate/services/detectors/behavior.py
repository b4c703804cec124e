import logging

from riskgate.config.security_config import EngineConfig
from riskgate.schemas.security import CheckResult, IdentifierType, RequestSignal

logger = logging.getLogger(__name__)


class BehaviorDetector:
    """
    Flags IPs that spread over many endpoints or send requests too fast.

    Distinct endpoints touched within session_window stand in for concurrent
    sessions. Never denies on its own.
    """

    name = "behavior"
    weight = 0.20

    def __init__(self, store):
        self.store = store

    def evaluate(self, signal: RequestSignal, config: EngineConfig) -> CheckResult:
        settings = config.behavior
        score = 0.0
        details = []

        sessions = self.store.distinct_endpoints(signal.ip, settings.session_window)
        if sessions > settings.max_sessions:
            score += 0.4
            details.append(f"concurrent_sessions:{sessions}")

        frequency = self.store.attempt_count(signal.ip, IdentifierType.IP, settings.frequency_window)
        if frequency > settings.max_frequency:
            score += 0.5
            details.append(f"high_frequency:{frequency}")

        score = min(score, 0.95)
        return CheckResult.allow(risk_score=score, challenge_required=score > 0.5, details=tuple(details))
