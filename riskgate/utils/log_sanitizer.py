"""
Helpers for keeping client-controlled values safe to log.

Request data (user agents, emails, endpoints) is attacker controlled, so it is
stripped of control characters before it reaches a log line, and identifiers
are masked so logs never carry a full email address.
"""


def sanitize_for_logging(value) -> str:
    """Replace newlines and drop NUL bytes to prevent log injection."""
    if value is None:
        return ""
    if not isinstance(value, str):
        value = str(value)
    return value.replace("\n", " ").replace("\r", " ").replace("\x00", "")


def mask_identifier(identifier: str | None) -> str:
    """
    Mask an IP or email for logging.

    Emails keep the first two characters of the local part and the domain;
    long identifiers keep their first eight characters.
    """
    if not identifier:
        return ""
    identifier = sanitize_for_logging(identifier)
    if "@" in identifier:
        local, domain = identifier.rsplit("@", 1)
        return f"{local[:2]}***@{domain}"
    if len(identifier) > 8:
        return f"{identifier[:8]}***"
    return identifier
