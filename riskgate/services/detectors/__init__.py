"""
Risk detectors.

Each detector inspects one aspect of a RequestSignal and returns a
CheckResult. Detectors hold a reference to the ThreatStore and nothing else;
the EngineConfig snapshot for the current decision is passed to evaluate(),
so an operator config swap never changes settings halfway through a request.
"""

from typing import Protocol, runtime_checkable

from riskgate.config.security_config import EngineConfig
from riskgate.schemas.security import CheckResult, RequestSignal
from riskgate.services.detectors.behavior import BehaviorDetector
from riskgate.services.detectors.bot_detection import BotDetector
from riskgate.services.detectors.email_check import EmailDetector, levenshtein, suggest_email
from riskgate.services.detectors.fingerprint import FingerprintDetector
from riskgate.services.detectors.rate_limit import RateLimitDetector


@runtime_checkable
class Detector(Protocol):
    name: str
    weight: float

    def evaluate(self, signal: RequestSignal, config: EngineConfig) -> CheckResult: ...


def default_detectors(store) -> list[Detector]:
    """The five built-in detectors in pipeline order; weights sum to 1.0."""
    return [
        RateLimitDetector(store),
        BotDetector(store),
        BehaviorDetector(store),
        EmailDetector(store),
        FingerprintDetector(store),
    ]


__all__ = [
    "BehaviorDetector",
    "BotDetector",
    "Detector",
    "EmailDetector",
    "FingerprintDetector",
    "RateLimitDetector",
    "default_detectors",
    "levenshtein",
    "suggest_email",
]
