"""
Threat Store

Shared, persistent state behind the risk pipeline:
- Append-only attempt records per identifier (IP or email), counted over
  rolling windows
- IP whitelist / blacklist entries (exact IPs or CIDR ranges, optional expiry)
- Blocked device fingerprints
- Per-identifier suspicion scores with lazy exponential decay
- A bounded log of recent decisions, queried for statistics

ThreatStore is the contract; InMemoryThreatStore is a thread-safe
single-process implementation (tests, development, Redis outages) and
RedisThreatStore (redis_threat_store.py) is the distributed backend.

Every mutation is performed under the store's own synchronization (a lock
here, a MULTI pipeline or Lua script in Redis) so concurrent workers never
lose counts to read-modify-write races in application code. Rate limiting
goes through try_record_attempt(), which counts and records in one step so
two concurrent requests can never both claim the last free attempt.
"""

import ipaddress
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import Counter, deque
from collections.abc import Callable, Iterable
from typing import Any

from riskgate.config.security_config import RateLimitSettings
from riskgate.schemas.security import (
    AttemptCounts,
    DecisionRecord,
    IdentifierType,
    ListEntry,
    ListKind,
    ThreatScore,
)

logger = logging.getLogger(__name__)

# Attempt records older than this are discarded; the longest window any
# detector asks about is the 24h daily limit
DEFAULT_RETENTION_SECONDS = 86400

DEFAULT_DECISION_LOG_SIZE = 10000

# A score is negligible after this many half lives and is forgotten
SCORE_TTL_HALF_LIVES = 20

TOP_N = 10


class StoreError(Exception):
    """Raised by threat store backends when the underlying storage fails."""


def decayed_score(score: float, last_updated: float, now: float, half_life: float) -> float:
    """
    Decay a suspicion score by elapsed time since its last update.

    score(t) = score * 0.5 ** ((t - last_updated) / half_life), never below 0.
    A non-positive half life disables decay.
    """
    if score <= 0:
        return 0.0
    if half_life <= 0:
        return float(score)
    elapsed = max(0.0, now - last_updated)
    return max(0.0, score * 0.5 ** (elapsed / half_life))


def ip_matches(ip: str, pattern: str) -> bool:
    """True if ip equals pattern or falls inside the CIDR range it names."""
    if ip == pattern:
        return True
    if "/" not in pattern:
        return False
    try:
        return ipaddress.ip_address(ip) in ipaddress.ip_network(pattern, strict=False)
    except ValueError:
        return False


def within_limits(counts: AttemptCounts, limits: RateLimitSettings, has_email: bool) -> bool:
    """True when another attempt fits under every rate limit."""
    if counts.endpoint_rate >= limits.endpoint_limit:
        return False
    if counts.ip_attempts >= limits.login_attempts:
        return False
    if counts.ip_daily >= limits.ip_daily_limit:
        return False
    return not (has_email and counts.email_attempts >= limits.user_daily_limit)


def _top(values: Iterable[str], label: str) -> list[dict[str, Any]]:
    return [{label: value, "count": count} for value, count in Counter(values).most_common(TOP_N)]


class ThreatStore(ABC):
    """Contract shared by all threat store backends."""

    def __init__(
        self,
        suspicion_threshold: float = 10.0,
        half_life_seconds: float = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.suspicion_threshold = suspicion_threshold
        self.half_life_seconds = half_life_seconds
        self.clock = clock

    # --- attempts ---

    @abstractmethod
    def attempt_count(self, identifier: str, identifier_type: IdentifierType, window: int) -> int:
        """Number of attempts recorded for identifier within the last window seconds."""

    @abstractmethod
    def endpoint_count(self, ip: str, endpoint: str, window: int) -> int:
        """Number of attempts from ip against endpoint within the window."""

    @abstractmethod
    def distinct_endpoints(self, ip: str, window: int) -> int:
        """Number of distinct endpoints ip touched within the window."""

    @abstractmethod
    def record_attempt(self, ip: str, email: str | None, endpoint: str) -> None:
        """Append an attempt for ip, and for email when present."""

    @abstractmethod
    def try_record_attempt(
        self, ip: str, email: str | None, endpoint: str, limits: RateLimitSettings
    ) -> AttemptCounts:
        """
        Read every rate-limit count and record the attempt only if all limits
        still have room, as a single atomic step.

        Returns:
            The counts as they were before this attempt, with recorded=True
            when the attempt was appended
        """

    @abstractmethod
    def clear_attempts(self, identifier: str, identifier_type: IdentifierType = IdentifierType.IP) -> None:
        """Forget every attempt recorded for identifier."""

    # --- lists ---

    @abstractmethod
    def is_whitelisted(self, ip: str) -> bool: ...

    @abstractmethod
    def is_blacklisted(self, ip: str) -> bool:
        """Expired or inactive blacklist entries never match."""

    @abstractmethod
    def add_to_whitelist(self, ip: str, reason: str | None = None) -> ListEntry: ...

    @abstractmethod
    def remove_from_whitelist(self, ip: str) -> bool: ...

    @abstractmethod
    def add_to_blacklist(self, ip: str, reason: str, duration_seconds: int | None = None) -> ListEntry: ...

    @abstractmethod
    def remove_from_blacklist(self, ip: str) -> bool: ...

    @abstractmethod
    def list_entries(self, kind: ListKind) -> list[ListEntry]:
        """Currently effective entries of one list."""

    # --- fingerprints ---

    @abstractmethod
    def block_fingerprint(self, fingerprint: str, reason: str = "Manual block") -> None: ...

    @abstractmethod
    def unblock_fingerprint(self, fingerprint: str) -> bool: ...

    @abstractmethod
    def is_fingerprint_blocked(self, fingerprint: str) -> bool: ...

    # --- suspicion ---

    @abstractmethod
    def log_suspicious_activity(self, identifier: str, delta: float) -> float:
        """Add delta to the decayed score and return the new score."""

    @abstractmethod
    def get_threat_score(self, identifier: str) -> ThreatScore | None:
        """Raw stored (score, last_updated) pair, undecayed."""

    def suspicion_score(self, identifier: str) -> float:
        record = self.get_threat_score(identifier)
        if record is None:
            return 0.0
        return decayed_score(record.score, record.last_updated, self.clock(), self.half_life_seconds)

    def is_suspicious(self, identifier: str) -> bool:
        return self.suspicion_score(identifier) >= self.suspicion_threshold

    # --- decision log ---

    @abstractmethod
    def record_decision(self, record: DecisionRecord) -> None:
        """Append to the decision log, evicting the oldest entry when full."""

    @abstractmethod
    def decisions_since(self, since: float) -> list[DecisionRecord]:
        """Logged decisions at or after since, newest first."""

    @abstractmethod
    def prune_decisions(self, before: float) -> int:
        """Drop decisions older than before; returns how many were removed."""

    def recent_blocked(self, limit: int = 50) -> list[DecisionRecord]:
        blocked = [record for record in self.decisions_since(0.0) if record.blocked]
        return blocked[:limit]

    def decision_statistics(self, days: int = 7) -> dict[str, Any]:
        """Aggregate the decision log over the last days."""
        records = self.decisions_since(self.clock() - days * 86400)
        blocked = [record for record in records if record.blocked]
        challenged = sum(1 for record in records if record.outcome == "challenged")
        total = len(records)
        return {
            "period_days": days,
            "total_requests": total,
            "blocked_requests": len(blocked),
            "challenged_requests": challenged,
            "allowed_requests": total - len(blocked) - challenged,
            "block_rate": round(len(blocked) / total, 4) if total else 0.0,
            "top_blocked_ips": _top((record.ip for record in blocked), "ip"),
            "top_endpoints": _top((record.endpoint for record in records), "endpoint"),
        }

    def ping(self) -> bool:
        return True


class InMemoryThreatStore(ThreatStore):
    """
    Process-local threat store.

    All state lives in dictionaries guarded by a single re-entrant lock, so
    every public operation is atomic with respect to other threads. Reads
    never create entries. Empty attempt windows and scores older than
    SCORE_TTL_HALF_LIVES half lives are dropped when they are next read, and
    every sweep_interval writes a full sweep drops what idle identifiers
    left behind.
    """

    def __init__(
        self,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
        decision_log_size: int = DEFAULT_DECISION_LOG_SIZE,
        sweep_interval: int = 1000,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.retention_seconds = retention_seconds
        self.sweep_interval = sweep_interval
        self._lock = threading.RLock()
        # (type, identifier) -> deque[(timestamp, endpoint)]
        self._attempts: dict[tuple[str, str], deque] = {}
        self._lists: dict[ListKind, dict[str, ListEntry]] = {
            ListKind.WHITELIST: {},
            ListKind.BLACKLIST: {},
        }
        self._fingerprints: dict[str, str] = {}
        self._scores: dict[str, ThreatScore] = {}
        self._decisions: deque[DecisionRecord] = deque(maxlen=decision_log_size)
        self._writes = 0

    # --- housekeeping ---

    def _window(self, identifier: str, identifier_type: IdentifierType, now: float) -> deque:
        key = (IdentifierType(identifier_type).value, identifier)
        records = self._attempts.get(key)
        if records is None:
            return deque()
        self._prune(records, now)
        if not records:
            del self._attempts[key]
        return records

    def _prune(self, records: deque, now: float) -> None:
        cutoff = now - self.retention_seconds
        while records and records[0][0] < cutoff:
            records.popleft()

    def _append(self, identifier: str, identifier_type: IdentifierType, now: float, endpoint: str) -> None:
        key = (IdentifierType(identifier_type).value, identifier)
        self._attempts.setdefault(key, deque()).append((now, endpoint))
        self._count_write(now)

    def _count_write(self, now: float) -> None:
        self._writes += 1
        if self.sweep_interval > 0 and self._writes % self.sweep_interval == 0:
            self._sweep(now)

    def _sweep(self, now: float) -> None:
        for key in list(self._attempts):
            self._prune(self._attempts[key], now)
            if not self._attempts[key]:
                del self._attempts[key]
        for identifier, record in list(self._scores.items()):
            if self._score_expired(record, now):
                del self._scores[identifier]
        blacklist = self._lists[ListKind.BLACKLIST]
        for pattern, entry in list(blacklist.items()):
            if entry.expires_at is not None and not entry.is_effective(now):
                del blacklist[pattern]

    # --- attempts ---

    def attempt_count(self, identifier, identifier_type, window):
        if not identifier:
            return 0
        with self._lock:
            now = self.clock()
            cutoff = now - window
            return sum(1 for ts, _ in self._window(identifier, identifier_type, now) if ts > cutoff)

    def endpoint_count(self, ip, endpoint, window):
        if not ip:
            return 0
        with self._lock:
            now = self.clock()
            cutoff = now - window
            return sum(
                1
                for ts, ep in self._window(ip, IdentifierType.IP, now)
                if ts > cutoff and ep == endpoint
            )

    def distinct_endpoints(self, ip, window):
        if not ip:
            return 0
        with self._lock:
            now = self.clock()
            cutoff = now - window
            return len({ep for ts, ep in self._window(ip, IdentifierType.IP, now) if ts > cutoff})

    def record_attempt(self, ip, email, endpoint):
        with self._lock:
            now = self.clock()
            self._append(ip, IdentifierType.IP, now, endpoint)
            if email:
                self._append(email, IdentifierType.EMAIL, now, endpoint)

    def try_record_attempt(self, ip, email, endpoint, limits):
        with self._lock:
            counts = AttemptCounts(
                ip_attempts=self.attempt_count(ip, IdentifierType.IP, limits.login_window),
                email_attempts=self.attempt_count(email, IdentifierType.EMAIL, limits.login_window) if email else 0,
                ip_daily=self.attempt_count(ip, IdentifierType.IP, limits.daily_window),
                endpoint_rate=self.endpoint_count(ip, endpoint, limits.endpoint_window),
            )
            if not within_limits(counts, limits, bool(email)):
                return counts
            self.record_attempt(ip, email, endpoint)
            return AttemptCounts(
                ip_attempts=counts.ip_attempts,
                email_attempts=counts.email_attempts,
                ip_daily=counts.ip_daily,
                endpoint_rate=counts.endpoint_rate,
                recorded=True,
            )

    def clear_attempts(self, identifier, identifier_type=IdentifierType.IP):
        with self._lock:
            self._attempts.pop((IdentifierType(identifier_type).value, identifier), None)

    # --- lists ---

    def _is_listed(self, kind: ListKind, ip: str) -> bool:
        with self._lock:
            now = self.clock()
            return any(
                entry.is_effective(now) and ip_matches(ip, pattern)
                for pattern, entry in self._lists[kind].items()
            )

    def is_whitelisted(self, ip):
        return self._is_listed(ListKind.WHITELIST, ip)

    def is_blacklisted(self, ip):
        return self._is_listed(ListKind.BLACKLIST, ip)

    def add_to_whitelist(self, ip, reason=None):
        entry = ListEntry(ip=ip, reason=reason, created_at=self.clock())
        with self._lock:
            self._lists[ListKind.WHITELIST][ip] = entry
        return entry

    def remove_from_whitelist(self, ip):
        with self._lock:
            return self._lists[ListKind.WHITELIST].pop(ip, None) is not None

    def add_to_blacklist(self, ip, reason, duration_seconds=None):
        now = self.clock()
        expires_at = now + duration_seconds if duration_seconds else None
        entry = ListEntry(ip=ip, reason=reason, expires_at=expires_at, created_at=now)
        with self._lock:
            self._lists[ListKind.BLACKLIST][ip] = entry
        return entry

    def remove_from_blacklist(self, ip):
        with self._lock:
            return self._lists[ListKind.BLACKLIST].pop(ip, None) is not None

    def list_entries(self, kind):
        with self._lock:
            now = self.clock()
            return [e for e in self._lists[ListKind(kind)].values() if e.is_effective(now)]

    # --- fingerprints ---

    def block_fingerprint(self, fingerprint, reason="Manual block"):
        with self._lock:
            self._fingerprints[fingerprint] = reason

    def unblock_fingerprint(self, fingerprint):
        with self._lock:
            return self._fingerprints.pop(fingerprint, None) is not None

    def is_fingerprint_blocked(self, fingerprint):
        with self._lock:
            return fingerprint in self._fingerprints

    # --- suspicion ---

    def log_suspicious_activity(self, identifier, delta):
        with self._lock:
            now = self.clock()
            new_score = max(0.0, self.suspicion_score(identifier) + delta)
            if new_score <= 0:
                self._scores.pop(identifier, None)
            else:
                self._scores[identifier] = ThreatScore(identifier, new_score, now)
            self._count_write(now)
            return new_score

    def _score_expired(self, record: ThreatScore, now: float) -> bool:
        if record.score <= 0:
            return True
        if self.half_life_seconds <= 0:
            return False
        return now - record.last_updated >= self.half_life_seconds * SCORE_TTL_HALF_LIVES

    def get_threat_score(self, identifier):
        with self._lock:
            record = self._scores.get(identifier)
            if record is not None and self._score_expired(record, self.clock()):
                del self._scores[identifier]
                return None
            return record

    # --- decision log ---

    def record_decision(self, record):
        with self._lock:
            self._decisions.append(record)

    def decisions_since(self, since):
        with self._lock:
            return [record for record in reversed(self._decisions) if record.timestamp >= since]

    def prune_decisions(self, before):
        with self._lock:
            kept = [record for record in self._decisions if record.timestamp >= before]
            removed = len(self._decisions) - len(kept)
            self._decisions = deque(kept, maxlen=self._decisions.maxlen)
            return removed
