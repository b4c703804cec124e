"""
Store failure policy.

GuardedThreatStore wraps a ThreatStore and decides what a failed or timed-out
store call means:

- fail-open (default): reads return neutral values (0 counts, not listed,
  not blocked, not suspicious) and writes are dropped. The request continues.
- fail-closed: the call raises StoreUnavailableError and the pipeline denies
  the request.

Either way the failure is logged and counted in security_store_errors_total.
"""

import logging
from collections.abc import Callable
from typing import Any

import redis

from riskgate.schemas.security import AttemptCounts
from riskgate.services.prometheus_metrics import record_store_error
from riskgate.services.threat_store import StoreError, ThreatStore

logger = logging.getLogger(__name__)

STORE_ERRORS = (StoreError, redis.RedisError, OSError, TimeoutError)

# Operation -> factory for the fail-open result
_FAIL_OPEN_DEFAULTS: dict[str, Callable[[], Any]] = {
    "attempt_count": int,
    "endpoint_count": int,
    "distinct_endpoints": int,
    "record_attempt": lambda: None,
    "try_record_attempt": AttemptCounts,
    "clear_attempts": lambda: None,
    "is_whitelisted": bool,
    "is_blacklisted": bool,
    "add_to_whitelist": lambda: None,
    "remove_from_whitelist": bool,
    "add_to_blacklist": lambda: None,
    "remove_from_blacklist": bool,
    "list_entries": list,
    "block_fingerprint": lambda: None,
    "unblock_fingerprint": bool,
    "is_fingerprint_blocked": bool,
    "log_suspicious_activity": float,
    "get_threat_score": lambda: None,
    "suspicion_score": float,
    "is_suspicious": bool,
    "record_decision": lambda: None,
    "decisions_since": list,
    "prune_decisions": int,
    "recent_blocked": list,
    "decision_statistics": dict,
    "ping": bool,
}


class StoreUnavailableError(Exception):
    """Raised under fail-closed policy when the threat store cannot be used."""

    def __init__(self, operation: str, cause: BaseException | None = None):
        super().__init__(f"Threat store unavailable during {operation}: {cause}")
        self.operation = operation
        self.cause = cause


class GuardedThreatStore:
    def __init__(self, store: ThreatStore, fail_open: bool = True):
        self.store = store
        self.fail_open = fail_open

    def __getattr__(self, name: str):
        attr = getattr(self.store, name)
        if name not in _FAIL_OPEN_DEFAULTS or not callable(attr):
            return attr

        def guarded(*args, **kwargs):
            return self._call(name, attr, *args, **kwargs)

        return guarded

    def _call(self, operation: str, fn: Callable, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except STORE_ERRORS as e:
            record_store_error(operation)
            if not self.fail_open:
                logger.error(f"Threat store {operation} failed (fail-closed): {e}")
                raise StoreUnavailableError(operation, e) from e
            logger.warning(f"Threat store {operation} failed, failing open: {e}")
            return _FAIL_OPEN_DEFAULTS[operation]()
