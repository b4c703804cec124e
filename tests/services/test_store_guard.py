"""
Tests for GuardedThreatStore fail-open / fail-closed behaviour.
"""

from unittest.mock import MagicMock, patch

import pytest
import redis

from riskgate.config.security_config import RateLimitSettings
from riskgate.schemas.security import AttemptCounts, IdentifierType, ListKind
from riskgate.services.store_guard import GuardedThreatStore, StoreUnavailableError
from riskgate.services.threat_store import InMemoryThreatStore, StoreError


@pytest.fixture
def broken_store():
    """A store whose every operation fails like an unreachable Redis."""
    store = MagicMock(spec=InMemoryThreatStore)
    error = redis.ConnectionError("Connection refused")
    for name in (
        "attempt_count",
        "endpoint_count",
        "distinct_endpoints",
        "record_attempt",
        "try_record_attempt",
        "is_whitelisted",
        "is_blacklisted",
        "add_to_blacklist",
        "list_entries",
        "is_fingerprint_blocked",
        "log_suspicious_activity",
        "suspicion_score",
        "is_suspicious",
        "record_decision",
        "decisions_since",
        "decision_statistics",
    ):
        getattr(store, name).side_effect = error
    return store


class TestFailOpen:
    def test_reads_return_neutral_defaults(self, broken_store):
        guarded = GuardedThreatStore(broken_store, fail_open=True)

        assert guarded.attempt_count("1.2.3.4", IdentifierType.IP, 900) == 0
        assert guarded.endpoint_count("1.2.3.4", "/login", 60) == 0
        assert guarded.distinct_endpoints("1.2.3.4", 300) == 0
        assert guarded.is_whitelisted("1.2.3.4") is False
        assert guarded.is_blacklisted("1.2.3.4") is False
        assert guarded.is_fingerprint_blocked("fp") is False
        assert guarded.is_suspicious("1.2.3.4") is False
        assert guarded.suspicion_score("1.2.3.4") == 0.0
        assert guarded.list_entries(ListKind.WHITELIST) == []
        assert guarded.decisions_since(0.0) == []
        assert guarded.decision_statistics(7) == {}

    def test_writes_are_dropped(self, broken_store):
        guarded = GuardedThreatStore(broken_store, fail_open=True)

        assert guarded.record_attempt("1.2.3.4", None, "/login") is None
        assert guarded.add_to_blacklist("1.2.3.4", "rate_limit", 3600) is None
        assert guarded.log_suspicious_activity("1.2.3.4", 5) == 0.0
        assert guarded.record_decision(MagicMock()) is None

    def test_failed_check_and_record_counts_nothing(self, broken_store):
        guarded = GuardedThreatStore(broken_store, fail_open=True)

        counts = guarded.try_record_attempt("1.2.3.4", None, "/login", RateLimitSettings())

        assert counts == AttemptCounts()
        assert not counts.recorded

    def test_errors_are_logged_and_counted(self, broken_store, caplog):
        guarded = GuardedThreatStore(broken_store, fail_open=True)

        with patch("riskgate.services.store_guard.record_store_error") as record:
            guarded.attempt_count("1.2.3.4", IdentifierType.IP, 900)

        record.assert_called_once_with("attempt_count")
        assert "failing open" in caplog.text

    def test_custom_backend_errors_are_handled(self):
        store = MagicMock(spec=InMemoryThreatStore)
        store.is_blacklisted.side_effect = StoreError("backend gone")
        assert GuardedThreatStore(store).is_blacklisted("1.2.3.4") is False

    def test_timeouts_are_store_errors(self):
        store = MagicMock(spec=InMemoryThreatStore)
        store.attempt_count.side_effect = redis.TimeoutError("Timeout reading from socket")
        assert GuardedThreatStore(store).attempt_count("1.2.3.4", IdentifierType.IP, 900) == 0


class TestFailClosed:
    def test_raises_store_unavailable(self, broken_store):
        guarded = GuardedThreatStore(broken_store, fail_open=False)

        with pytest.raises(StoreUnavailableError) as exc_info:
            guarded.is_blacklisted("1.2.3.4")

        assert exc_info.value.operation == "is_blacklisted"
        assert isinstance(exc_info.value.cause, redis.ConnectionError)


class TestPassThrough:
    def test_successful_calls_are_untouched(self, store):
        guarded = GuardedThreatStore(store)
        guarded.record_attempt("1.2.3.4", None, "/login")
        assert guarded.attempt_count("1.2.3.4", IdentifierType.IP, 900) == 1

    def test_programming_errors_are_not_swallowed(self):
        store = MagicMock(spec=InMemoryThreatStore)
        store.attempt_count.side_effect = TypeError("bad arguments")
        with pytest.raises(TypeError):
            GuardedThreatStore(store).attempt_count("1.2.3.4", IdentifierType.IP, 900)

    def test_plain_attributes_are_forwarded(self, store):
        assert GuardedThreatStore(store).suspicion_threshold == store.suspicion_threshold

    def test_check_and_record_passes_through(self, store):
        counts = GuardedThreatStore(store).try_record_attempt("1.2.3.4", None, "/login", RateLimitSettings())
        assert counts.recorded
        assert store.attempt_count("1.2.3.4", IdentifierType.IP, 900) == 1
