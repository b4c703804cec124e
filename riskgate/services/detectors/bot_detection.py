"""
Bot detector.

Adds up weighted indicators from the user agent and headers:

    +2    per bot keyword in the user agent
    +1.5  user agent empty or shorter than min_user_agent_length
    +0.5  per missing required header
    +1    user agent and headers not consistent with a real browser: only a
          browser-looking user agent sent with an accept header passes
    +1.5  headless browser signature

bot_score = min(indicators / max_indicators, 1.0). Scores above 0.75 are
denied when bot blocking is enabled; otherwise the request is allowed with a
challenge above 0.4 (advanced captcha above 0.6).
"""

import logging

from riskgate.config.security_config import EngineConfig
from riskgate.schemas.security import ChallengeType, CheckResult, RequestSignal

logger = logging.getLogger(__name__)


class BotDetector:
    name = "bot_detection"
    weight = 0.25

    def __init__(self, store=None):
        self.store = store

    def indicators(self, signal: RequestSignal, config: EngineConfig) -> tuple[float, list[str]]:
        """Return the indicator total and the tags that contributed to it."""
        settings = config.bot_detection
        user_agent = (signal.user_agent or "").lower()
        headers = signal.headers
        total = 0.0
        details = []

        for keyword in settings.suspicious_keywords:
            if keyword in user_agent:
                total += 2
                details.append(f"bot_keyword:{keyword}")

        if len(user_agent) < settings.min_user_agent_length:
            total += 1.5
            details.append("suspicious_ua_length")

        for header in settings.required_headers:
            if header not in headers:
                total += 0.5
                details.append(f"missing_header:{header}")

        looks_like_browser = any(marker in user_agent for marker in settings.browser_markers)
        if not (looks_like_browser and "accept" in headers):
            total += 1
            details.append("inconsistent_ua")

        if any(signature in user_agent for signature in settings.headless_signatures):
            total += 1.5
            details.append("headless_browser")

        return total, details

    def evaluate(self, signal: RequestSignal, config: EngineConfig) -> CheckResult:
        settings = config.bot_detection
        total, details = self.indicators(signal, config)
        bot_score = min(total / settings.max_indicators, 1.0)

        if bot_score > 0.75 and settings.block_suspicious_bots:
            logger.warning(f"🤖 Automated bot detected (score={bot_score:.2f}, {', '.join(details)})")
            return CheckResult.deny("Automated bot detected", bot_score, tuple(details))

        challenge = bot_score > 0.4
        return CheckResult.allow(
            risk_score=bot_score * 0.8,
            challenge_required=challenge,
            challenge_type=(
                (ChallengeType.ADVANCED_CAPTCHA if bot_score > 0.6 else ChallengeType.CAPTCHA) if challenge else None
            ),
            details=tuple(details),
        )
