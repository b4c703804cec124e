import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _get_env_var(name: str, default: str | None = None, *, strip: bool = True) -> str | None:
    """
    Fetch an environment variable with optional whitespace trimming.

    Args:
        name: Environment variable to look up.
        default: Value to return when the env var is unset or empty.
        strip: Whether to strip leading/trailing whitespace (default: True).

    Returns:
        The normalized string value or the provided default when empty.
    """
    value = os.environ.get(name)
    if value is None:
        return default

    if strip:
        value = value.strip()

    return value or default


def _get_bool(name: str, default: bool) -> bool:
    value = _get_env_var(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


def _get_int(name: str, default: int) -> int:
    value = _get_env_var(name)
    return int(value) if value is not None else default


def _get_float(name: str, default: float) -> float:
    value = _get_env_var(name)
    return float(value) if value is not None else default


class Config:
    """Configuration class for the application"""

    # Environment Detection
    APP_ENV = os.environ.get("APP_ENV", "development")  # development, staging, production
    IS_PRODUCTION = APP_ENV == "production"
    IS_STAGING = APP_ENV == "staging"
    IS_DEVELOPMENT = APP_ENV == "development"
    IS_TESTING = APP_ENV in {"testing", "test"} or os.environ.get("TESTING", "").lower() in {
        "1",
        "true",
        "yes",
    }

    LOG_LEVEL = _get_env_var("LOG_LEVEL", "INFO")

    # Redis Configuration (threat store backend)
    REDIS_ENABLED = _get_bool("REDIS_ENABLED", True)
    REDIS_URL = _get_env_var("REDIS_URL", "redis://localhost:6379/0")

    # Admin API (operator endpoints under /admin/security)
    ADMIN_API_KEY = _get_env_var("ADMIN_API_KEY")

    # Risk engine policy
    SECURITY_FAIL_OPEN = _get_bool("SECURITY_FAIL_OPEN", True)
    SECURITY_STORE_TIMEOUT = _get_float("SECURITY_STORE_TIMEOUT", 2.0)
    # Recent decisions kept for statistics and the recent-blocked view
    SECURITY_DECISION_LOG_SIZE = _get_int("SECURITY_DECISION_LOG_SIZE", 10000)

    # Rate limits
    SECURITY_LOGIN_ATTEMPTS = _get_int("SECURITY_LOGIN_ATTEMPTS", 5)
    SECURITY_LOGIN_WINDOW = _get_int("SECURITY_LOGIN_WINDOW", 900)  # 15 minutes
    SECURITY_IP_DAILY_LIMIT = _get_int("SECURITY_IP_DAILY_LIMIT", 100)
    SECURITY_USER_DAILY_LIMIT = _get_int("SECURITY_USER_DAILY_LIMIT", 50)
    SECURITY_ENDPOINT_LIMIT = _get_int("SECURITY_ENDPOINT_LIMIT", 20)  # per minute

    # Fingerprint blocking is opt-in
    SECURITY_FINGERPRINT_ENABLED = _get_bool("SECURITY_FINGERPRINT_ENABLED", False)

    # Decaying suspicion scores
    SECURITY_SUSPICION_THRESHOLD = _get_float("SECURITY_SUSPICION_THRESHOLD", 10.0)
    SECURITY_SUSPICION_HALF_LIFE = _get_int("SECURITY_SUSPICION_HALF_LIFE", 300)  # 5 minutes

    # Path prefixes the risk pipeline evaluates; empty means every path
    SECURITY_PROTECTED_PATHS = tuple(
        p.strip() for p in (_get_env_var("SECURITY_PROTECTED_PATHS", "") or "").split(",") if p.strip()
    )
