"""
Email detector.

Validates the email carried by a request (if any): format, disposable
domains, and likely typos of popular providers. A typo does not deny; it
raises the risk, requires a challenge and suggests the corrected address.
"""

import logging

from email_validator import EmailNotValidError, validate_email

from riskgate.config.security_config import EngineConfig, EmailSettings
from riskgate.schemas.security import ChallengeType, CheckResult, RequestSignal

logger = logging.getLogger(__name__)

TYPO_RISK = 0.8


def levenshtein(a: str, b: str) -> int:
    """Edit distance between two strings (insert, delete, substitute)."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (ca != cb),
                )
            )
        previous = current
    return previous[-1]


def _split(email: str) -> tuple[str, str]:
    local, _, domain = email.rpartition("@")
    return local, domain.lower()


def suggest_email(email: str, settings: EmailSettings | None = None) -> str | None:
    """
    Suggest a correction when the domain is a near miss of a popular provider.

    Returns None for exact matches and for domains further than
    max_typo_distance from every popular domain. The first popular domain
    within range wins.
    """
    settings = settings or EmailSettings()
    local, domain = _split(email)
    if not local or not domain or domain in settings.popular_domains:
        return None
    for popular in settings.popular_domains:
        if 1 <= levenshtein(domain, popular) <= settings.max_typo_distance:
            return f"{local}@{popular}"
    return None


def is_valid_format(email: str) -> bool:
    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


class EmailDetector:
    name = "email"
    weight = 0.15

    def __init__(self, store=None):
        self.store = store

    def evaluate(self, signal: RequestSignal, config: EngineConfig) -> CheckResult:
        email = (signal.email or "").strip()
        if not email:
            return CheckResult.allow()

        if not is_valid_format(email):
            return CheckResult.deny("Invalid email format", 0.8, ("invalid_format",))

        settings = config.email
        _, domain = _split(email)
        if domain in {d.lower() for d in settings.disposable_domains}:
            logger.info(f"Rejected disposable email domain: {domain}")
            return CheckResult.deny("Disposable email addresses not allowed", 0.85, (f"disposable_domain:{domain}",))

        suggestion = suggest_email(email, settings)
        if suggestion:
            return CheckResult.allow(
                risk_score=TYPO_RISK,
                challenge_required=True,
                challenge_type=ChallengeType.CAPTCHA,
                details=(f"email_typo:{domain}",),
                suggested_email=suggestion,
            )

        return CheckResult.allow()
