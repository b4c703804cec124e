"""
Risk Engine Configuration

Immutable settings for the request risk-scoring pipeline. An EngineConfig is
built once at startup (usually from the environment) and handed to the
RiskPipeline by reference. Operator changes never mutate a config in place:
with_setting() and with_rule() return a new instance that the pipeline swaps
in atomically.

Usage:
    config = EngineConfig.from_env()
    stricter = config.with_setting("rate_limits.login_attempts", 3)
    no_email = stricter.with_rule("email", False)
"""

from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass, replace
from types import MappingProxyType
from typing import Any

from riskgate.config.config import Config

RULE_NAMES = ("rate_limit", "bot_detection", "behavior", "email", "fingerprint")

DEFAULT_RULES = {
    "rate_limit": True,
    "bot_detection": True,
    "behavior": True,
    "email": True,
    "fingerprint": False,
}


@dataclass(frozen=True)
class RateLimitSettings:
    """Attempt limits enforced by the rate limit detector"""

    login_attempts: int = 5
    login_window: int = 900  # 15 minutes
    ip_daily_limit: int = 100
    user_daily_limit: int = 50
    endpoint_limit: int = 20  # per endpoint_window
    endpoint_window: int = 60
    daily_window: int = 86400
    blacklist_duration: int = 3600  # auto-blacklist after too many attempts


@dataclass(frozen=True)
class BotDetectionSettings:
    suspicious_keywords: tuple[str, ...] = ("bot", "crawler", "spider", "scraper", "curl", "wget")
    block_suspicious_bots: bool = True
    max_indicators: int = 10
    min_user_agent_length: int = 10
    required_headers: tuple[str, ...] = ("accept", "accept-language")
    browser_markers: tuple[str, ...] = ("mozilla", "chrome", "safari", "firefox", "edge")
    headless_signatures: tuple[str, ...] = ("headless", "phantom", "selenium", "puppeteer", "playwright")


@dataclass(frozen=True)
class BehaviorSettings:
    session_window: int = 300  # distinct endpoints in the last 5 minutes
    frequency_window: int = 60
    max_sessions: int = 5
    max_frequency: int = 10


@dataclass(frozen=True)
class EmailSettings:
    disposable_domains: tuple[str, ...] = (
        "tempmail.com",
        "guerrillamail.com",
        "mailinator.com",
        "10minutemail.com",
        "yopmail.com",
        "throwawaymail.com",
        "temp-mail.org",
        "getnada.com",
        "maildrop.cc",
    )
    popular_domains: tuple[str, ...] = (
        "gmail.com",
        "yahoo.com",
        "hotmail.com",
        "outlook.com",
        "aol.com",
        "icloud.com",
    )
    max_typo_distance: int = 2


@dataclass(frozen=True)
class SuspicionSettings:
    """Decaying per-identifier suspicion scores"""

    threshold: float = 10.0
    half_life_seconds: int = 300


@dataclass(frozen=True)
class EngineConfig:
    rate_limits: RateLimitSettings = field(default_factory=RateLimitSettings)
    bot_detection: BotDetectionSettings = field(default_factory=BotDetectionSettings)
    behavior: BehaviorSettings = field(default_factory=BehaviorSettings)
    email: EmailSettings = field(default_factory=EmailSettings)
    suspicion: SuspicionSettings = field(default_factory=SuspicionSettings)
    rules: Mapping[str, bool] = field(default_factory=lambda: MappingProxyType(dict(DEFAULT_RULES)))
    fail_open: bool = True

    def __post_init__(self):
        # Accept plain dicts from callers but never expose a mutable mapping
        if not isinstance(self.rules, MappingProxyType):
            object.__setattr__(self, "rules", MappingProxyType(dict(self.rules)))

    def is_enabled(self, rule: str) -> bool:
        """Detectors without a rule switch always run."""
        return bool(self.rules.get(rule, True))

    def with_rule(self, rule: str, enabled: bool) -> "EngineConfig":
        """Return a copy with one detector switched on or off."""
        if rule not in self.rules:
            raise KeyError(f"Unknown security rule: {rule}")
        updated = dict(self.rules)
        updated[rule] = bool(enabled)
        return replace(self, rules=MappingProxyType(updated))

    def with_setting(self, path: str, value: Any) -> "EngineConfig":
        """
        Return a copy with the setting at a dotted path replaced.

        Args:
            path: Dotted path such as "rate_limits.login_attempts" or "fail_open"
            value: New value; lists are stored as tuples and ints are accepted
                for float settings

        Raises:
            KeyError: If any segment of the path does not exist
            ValueError: If value does not match the type of the current setting
        """
        keys = [k for k in path.split(".") if k]
        if not keys:
            raise KeyError("Empty configuration path")
        if isinstance(value, list):
            value = tuple(value)
        return _replace_path(self, keys, value, path)

    def to_dict(self) -> dict[str, Any]:
        return _as_plain(self)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build the startup configuration from Config (environment variables)."""
        rules = dict(DEFAULT_RULES)
        rules["fingerprint"] = Config.SECURITY_FINGERPRINT_ENABLED
        return cls(
            rate_limits=RateLimitSettings(
                login_attempts=Config.SECURITY_LOGIN_ATTEMPTS,
                login_window=Config.SECURITY_LOGIN_WINDOW,
                ip_daily_limit=Config.SECURITY_IP_DAILY_LIMIT,
                user_daily_limit=Config.SECURITY_USER_DAILY_LIMIT,
                endpoint_limit=Config.SECURITY_ENDPOINT_LIMIT,
            ),
            suspicion=SuspicionSettings(
                threshold=Config.SECURITY_SUSPICION_THRESHOLD,
                half_life_seconds=Config.SECURITY_SUSPICION_HALF_LIFE,
            ),
            rules=rules,
            fail_open=Config.SECURITY_FAIL_OPEN,
        )


def _replace_path(obj: Any, keys: list[str], value: Any, path: str) -> Any:
    key, rest = keys[0], keys[1:]

    if is_dataclass(obj):
        names = {f.name for f in fields(obj)}
        if key not in names:
            raise KeyError(f"Unknown configuration path: {path}")
        current = getattr(obj, key)
        new_value = _replace_path(current, rest, value, path) if rest else _checked(current, value, path)
        return replace(obj, **{key: new_value})

    if isinstance(obj, Mapping):
        if key not in obj or rest:
            raise KeyError(f"Unknown configuration path: {path}")
        updated = dict(obj)
        updated[key] = _checked(obj[key], value, path)
        return MappingProxyType(updated)

    raise KeyError(f"Unknown configuration path: {path}")


def _as_plain(obj: Any) -> Any:
    if is_dataclass(obj):
        return {f.name: _as_plain(getattr(obj, f.name)) for f in fields(obj)}
    if isinstance(obj, Mapping):
        return {k: _as_plain(v) for k, v in obj.items()}
    if isinstance(obj, tuple):
        return list(obj)
    return obj


def _checked(current: Any, value: Any, path: str) -> Any:
    """Validate a replacement against the type of the value it replaces."""
    # bool is an int subclass, so it is matched first and strictly
    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
    elif isinstance(current, int):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    elif isinstance(current, float):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    elif isinstance(current, str):
        if isinstance(value, str):
            return value
    elif isinstance(current, tuple):
        if isinstance(value, tuple) and all(isinstance(item, str) for item in value):
            return value
    raise ValueError(f"Invalid value for {path}: expected {type(current).__name__}, got {type(value).__name__}")
