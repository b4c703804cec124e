from riskgate.config.security_config import EngineConfig
from riskgate.schemas.security import CheckResult, RequestSignal

# Requests without a fingerprint carry a small baseline risk
MISSING_FINGERPRINT_RISK = 0.1


class FingerprintDetector:
    """Denies requests whose device fingerprint is on the blocklist."""

    name = "fingerprint"
    weight = 0.10

    def __init__(self, store):
        self.store = store

    def evaluate(self, signal: RequestSignal, config: EngineConfig) -> CheckResult:
        if not signal.fingerprint:
            return CheckResult.allow(risk_score=MISSING_FINGERPRINT_RISK)
        if self.store.is_fingerprint_blocked(signal.fingerprint):
            return CheckResult.deny("Device fingerprint blocked", 0.95, ("blocked_fingerprint",))
        return CheckResult.allow()
