"""
Tests for the five risk detectors in isolation.
"""

import threading
import time
from unittest.mock import MagicMock

import pytest

from riskgate.config.security_config import EngineConfig
from riskgate.schemas.security import AttemptCounts, ChallengeType, IdentifierType
from riskgate.services.detectors import (
    BehaviorDetector,
    BotDetector,
    Detector,
    EmailDetector,
    FingerprintDetector,
    RateLimitDetector,
    default_detectors,
    levenshtein,
    suggest_email,
)
from riskgate.services.threat_store import InMemoryThreatStore
from tests.helpers import make_signal


class TestDefaultDetectors:
    def test_order_and_weights(self, store):
        detectors = default_detectors(store)
        assert [d.name for d in detectors] == ["rate_limit", "bot_detection", "behavior", "email", "fingerprint"]
        assert [d.weight for d in detectors] == [0.30, 0.25, 0.20, 0.15, 0.10]
        assert sum(d.weight for d in detectors) == pytest.approx(1.0)

    def test_detectors_satisfy_protocol(self, store):
        assert all(isinstance(d, Detector) for d in default_detectors(store))


class TestRateLimitDetector:
    def _seed(self, store, count, ip="1.2.3.4", email=None, endpoint="/login"):
        for _ in range(count):
            store.record_attempt(ip, email, endpoint)

    def test_first_attempt_is_zero_risk_and_recorded(self, store, config):
        result = RateLimitDetector(store).evaluate(make_signal(), config)

        assert result.allowed
        assert result.risk_score == 0.0
        assert not result.challenge_required
        assert store.attempt_count("1.2.3.4", IdentifierType.IP, 900) == 1

    def test_risk_scales_with_prior_attempts(self, store, config):
        self._seed(store, 3)
        result = RateLimitDetector(store).evaluate(make_signal(), config)

        assert result.risk_score == pytest.approx(0.6)
        assert result.challenge_required

    def test_one_below_limit_is_allowed(self, store, config):
        self._seed(store, 4)
        result = RateLimitDetector(store).evaluate(make_signal(), config)

        assert result.allowed
        assert result.risk_score == pytest.approx(0.8)

    def test_at_limit_denies_and_blacklists(self, store, config, clock):
        self._seed(store, 5)
        result = RateLimitDetector(store).evaluate(make_signal(), config)

        assert not result.allowed
        assert result.reason == "Too many attempts from this IP"
        assert result.risk_score == 0.9
        assert store.is_blacklisted("1.2.3.4")
        clock.advance(3601)
        assert not store.is_blacklisted("1.2.3.4")

    def test_denied_attempt_is_not_recorded(self, store, config):
        self._seed(store, 5)
        RateLimitDetector(store).evaluate(make_signal(), config)
        assert store.attempt_count("1.2.3.4", IdentifierType.IP, 900) == 5

    def test_endpoint_limit_checked_first(self, store, config):
        self._seed(store, 20)
        result = RateLimitDetector(store).evaluate(make_signal(), config)

        assert result.reason == "Endpoint rate limit exceeded"
        assert result.risk_score == 0.95
        assert not store.is_blacklisted("1.2.3.4")

    def test_daily_limit(self, store, clock):
        config = EngineConfig().with_setting("rate_limits.ip_daily_limit", 3)
        self._seed(store, 3)
        clock.advance(1000)  # outside the login window, inside the day

        result = RateLimitDetector(store).evaluate(make_signal(), config)

        assert result.reason == "Daily limit exceeded for this IP"
        assert result.risk_score == 0.85

    def test_email_limit(self, store):
        config = EngineConfig().with_setting("rate_limits.user_daily_limit", 2)
        store.record_attempt("5.5.5.5", "user@gmail.com", "/login")
        store.record_attempt("6.6.6.6", "user@gmail.com", "/login")

        result = RateLimitDetector(store).evaluate(make_signal(email="user@gmail.com"), config)

        assert result.reason == "Too many attempts for this account"
        assert result.risk_score == 0.8

    def test_counts_and_record_are_one_store_call(self, config):
        store = MagicMock()
        store.try_record_attempt.return_value = AttemptCounts(ip_attempts=2, recorded=True)

        result = RateLimitDetector(store).evaluate(make_signal(), config)

        store.try_record_attempt.assert_called_once_with("1.2.3.4", None, "/login", config.rate_limits)
        store.attempt_count.assert_not_called()
        store.record_attempt.assert_not_called()
        assert result.risk_score == pytest.approx(0.4)

    def test_concurrent_attempts_cannot_pass_the_limit(self, config):
        """Every request reads its count while others are between read and write."""

        class SlowStore(InMemoryThreatStore):
            def attempt_count(self, identifier, identifier_type, window):
                count = super().attempt_count(identifier, identifier_type, window)
                time.sleep(0.01)
                return count

        store = SlowStore()
        detector = RateLimitDetector(store)
        barrier = threading.Barrier(20)
        results = []

        def attempt():
            barrier.wait()
            results.append(detector.evaluate(make_signal(), config))

        threads = [threading.Thread(target=attempt) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for r in results if r.allowed) == 5
        assert store.attempt_count("1.2.3.4", IdentifierType.IP, 900) == 5


class TestBotDetector:
    def test_browser_is_clean(self, config):
        result = BotDetector().evaluate(make_signal(), config)
        assert result.allowed
        assert result.risk_score == 0.0
        assert result.details == ()

    def test_curl_without_accept(self, config):
        """curl (+2), missing accept (+0.5), a non-browser agent (+1): 3.5 / 10."""
        detector = BotDetector()
        signal = make_signal(user_agent="curl/7.68.0", headers={"accept-language": "en"})

        total, details = detector.indicators(signal, config)
        result = detector.evaluate(signal, config)

        assert total == 3.5
        assert details == ["bot_keyword:curl", "missing_header:accept", "inconsistent_ua"]
        assert result.allowed
        assert result.risk_score == pytest.approx(0.35 * 0.8)
        assert not result.challenge_required

    def test_curl_without_any_headers(self, config):
        detector = BotDetector()
        signal = make_signal(user_agent="curl/7.68.0", headers={})

        total, details = detector.indicators(signal, config)
        result = detector.evaluate(signal, config)

        assert total == 4.0
        assert details == [
            "bot_keyword:curl",
            "missing_header:accept",
            "missing_header:accept-language",
            "inconsistent_ua",
        ]
        # 0.4 is not above the challenge threshold
        assert result.risk_score == pytest.approx(0.32)
        assert not result.challenge_required

    def test_curl_with_accept_is_inconsistent(self, config):
        detector = BotDetector()
        signal = make_signal(user_agent="curl/7.68.0", headers={"accept": "*/*"})

        total, details = detector.indicators(signal, config)
        result = detector.evaluate(signal, config)

        assert total == 3.5
        assert "inconsistent_ua" in details
        assert result.risk_score == pytest.approx(0.28)
        assert not result.challenge_required

    def test_browser_without_accept_is_inconsistent(self, config):
        total, details = BotDetector().indicators(make_signal(headers={"accept-language": "en"}), config)
        assert total == 1.5
        assert details == ["missing_header:accept", "inconsistent_ua"]

    def test_short_user_agent(self, config):
        total, details = BotDetector().indicators(make_signal(user_agent="x", headers={}), config)
        assert "suspicious_ua_length" in details
        assert total == 3.5

    def test_headless_signature(self, config):
        """A headless signature counts once, however many markers match."""
        signal = make_signal(
            user_agent="Mozilla/5.0 HeadlessChrome/120.0 puppeteer",
            headers={"accept": "*/*"},
        )
        total, details = BotDetector().indicators(signal, config)

        assert details == ["missing_header:accept-language", "headless_browser"]
        assert total == 2.0

    def test_challenge_above_point_four(self, config):
        signal = make_signal(user_agent="python spider bot", headers={})
        result = BotDetector().evaluate(signal, config)

        # spider +2, bot +2, two missing headers +1, non-browser agent +1
        assert result.risk_score == pytest.approx(0.6 * 0.8)
        assert result.challenge_required
        assert result.challenge_type == ChallengeType.CAPTCHA

    def test_advanced_captcha_above_point_six(self, config):
        signal = make_signal(user_agent="crawler spider scraper", headers={"accept": "*/*"})
        result = BotDetector().evaluate(signal, config)

        # three keywords +6, missing accept-language +0.5, non-browser agent +1
        assert result.allowed
        assert result.risk_score == pytest.approx(0.75 * 0.8)
        assert result.challenge_type == ChallengeType.ADVANCED_CAPTCHA

    def test_high_confidence_bot_denied(self, config):
        signal = make_signal(user_agent="wget curl bot crawler", headers={"accept": "*/*", "accept-language": "en"})
        result = BotDetector().evaluate(signal, config)

        # four keywords +8, non-browser agent +1 -> 0.9
        assert not result.allowed
        assert result.reason == "Automated bot detected"
        assert result.risk_score == pytest.approx(0.9)

    def test_blocking_can_be_disabled(self):
        config = EngineConfig().with_setting("bot_detection.block_suspicious_bots", False)
        signal = make_signal(user_agent="wget curl bot crawler", headers={"accept": "*/*", "accept-language": "en"})
        result = BotDetector().evaluate(signal, config)

        assert result.allowed
        assert result.risk_score == pytest.approx(0.72)

    def test_score_is_capped(self, config):
        signal = make_signal(user_agent="bot crawler spider scraper curl wget headless", headers={})
        result = BotDetector().evaluate(signal, config)
        assert result.risk_score == 1.0


class TestBehaviorDetector:
    def test_quiet_ip(self, store, config):
        result = BehaviorDetector(store).evaluate(make_signal(), config)
        assert result.allowed
        assert result.risk_score == 0.0

    def test_many_endpoints(self, store, config):
        for i in range(6):
            store.record_attempt("1.2.3.4", None, f"/page/{i}")

        result = BehaviorDetector(store).evaluate(make_signal(), config)

        assert result.risk_score == pytest.approx(0.4)
        assert result.details == ("concurrent_sessions:6",)
        assert not result.challenge_required

    def test_high_frequency(self, store, config):
        for _ in range(11):
            store.record_attempt("1.2.3.4", None, "/login")

        result = BehaviorDetector(store).evaluate(make_signal(), config)

        assert result.risk_score == pytest.approx(0.5)
        assert result.details == ("high_frequency:11",)
        assert not result.challenge_required

    def test_both_signals_require_challenge(self, store, config):
        for i in range(11):
            store.record_attempt("1.2.3.4", None, f"/page/{i}")

        result = BehaviorDetector(store).evaluate(make_signal(), config)

        assert result.allowed
        assert result.risk_score == pytest.approx(0.9)
        assert result.challenge_required

    def test_old_requests_do_not_count(self, store, config, clock):
        for _ in range(11):
            store.record_attempt("1.2.3.4", None, "/login")
        clock.advance(61)

        assert BehaviorDetector(store).evaluate(make_signal(), config).risk_score == 0.0


class TestLevenshtein:
    @pytest.mark.parametrize(
        "a,b,expected",
        [
            ("", "", 0),
            ("abc", "", 3),
            ("gmail.com", "gmail.com", 0),
            ("gmal.com", "gmail.com", 1),
            ("gmial.com", "gmail.com", 2),
            ("kitten", "sitting", 3),
        ],
    )
    def test_distance(self, a, b, expected):
        assert levenshtein(a, b) == expected
        assert levenshtein(b, a) == expected


class TestSuggestEmail:
    def test_typo_is_corrected(self):
        assert suggest_email("user@gmial.com") == "user@gmail.com"

    def test_exact_popular_domain_has_no_suggestion(self):
        assert suggest_email("user@gmail.com") is None

    def test_distant_domain_has_no_suggestion(self):
        assert suggest_email("user@company.io") is None

    def test_domain_is_case_insensitive(self):
        assert suggest_email("user@GMAIL.COM") is None
        assert suggest_email("user@Hotmial.com") == "user@hotmail.com"


class TestEmailDetector:
    def test_no_email_is_noop(self, config):
        result = EmailDetector().evaluate(make_signal(), config)
        assert result.allowed
        assert result.risk_score == 0.0

    def test_invalid_format(self, config):
        result = EmailDetector().evaluate(make_signal(email="not-an-email"), config)
        assert not result.allowed
        assert result.reason == "Invalid email format"
        assert result.risk_score == 0.8

    def test_disposable_domain(self, config):
        result = EmailDetector().evaluate(make_signal(email="someone@Mailinator.com"), config)
        assert not result.allowed
        assert result.reason == "Disposable email addresses not allowed"
        assert result.risk_score == 0.85

    def test_typo_requires_challenge_and_suggests(self, config):
        result = EmailDetector().evaluate(make_signal(email="user@gmial.com"), config)
        assert result.allowed
        assert result.risk_score == 0.8
        assert result.challenge_required
        assert result.suggested_email == "user@gmail.com"

    def test_clean_email(self, config):
        result = EmailDetector().evaluate(make_signal(email="user@gmail.com"), config)
        assert result.allowed
        assert result.risk_score == 0.0
        assert result.suggested_email is None


class TestFingerprintDetector:
    def test_missing_fingerprint_has_baseline_risk(self, store, config):
        result = FingerprintDetector(store).evaluate(make_signal(), config)
        assert result.allowed
        assert result.risk_score == 0.1

    def test_blocked_fingerprint(self, store, config):
        store.block_fingerprint("fp-123")
        result = FingerprintDetector(store).evaluate(make_signal(fingerprint="fp-123"), config)
        assert not result.allowed
        assert result.reason == "Device fingerprint blocked"
        assert result.risk_score == 0.95

    def test_unknown_fingerprint(self, store, config):
        result = FingerprintDetector(store).evaluate(make_signal(fingerprint="fp-999"), config)
        assert result.allowed
        assert result.risk_score == 0.0
