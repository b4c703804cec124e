"""
Redis-backed Threat Store

Distributed implementation of ThreatStore shared by every worker:

- Attempts: one sorted set per identifier, scored by timestamp. Appends run in
  a MULTI pipeline together with trimming and TTL refresh, and windowed counts
  are single ZCOUNT calls, so no count is ever lost to a read-modify-write race.
  try_record_attempt() counts and appends inside one Lua script, so the
  rate-limit check and the write it guards are a single atomic step.
- Lists: one hash per list (ip -> JSON entry) plus a set of CIDR patterns.
- Fingerprints: one hash (fingerprint -> reason).
- Suspicion: one hash per identifier holding (score, updated); decay and
  increment happen atomically inside a Lua script.
- Decisions: one sorted set scored by timestamp, trimmed to the newest
  decision_log_size members on every write.

Redis errors (including socket timeouts) propagate to the caller; the
GuardedThreatStore wrapper applies the fail-open / fail-closed policy.
"""

import json
import logging
import uuid

import redis

from riskgate.schemas.security import (
    AttemptCounts,
    DecisionRecord,
    IdentifierType,
    ListEntry,
    ListKind,
    ThreatScore,
)
from riskgate.services.threat_store import (
    DEFAULT_DECISION_LOG_SIZE,
    DEFAULT_RETENTION_SECONDS,
    SCORE_TTL_HALF_LIVES,
    ThreatStore,
    ip_matches,
)

logger = logging.getLogger(__name__)

# KEYS[1] = score hash; ARGV = delta, now, half_life, ttl
_DECAYING_INCREMENT_LUA = """
local vals = redis.call('HMGET', KEYS[1], 'score', 'updated')
local delta = tonumber(ARGV[1])
local now = tonumber(ARGV[2])
local half_life = tonumber(ARGV[3])
local ttl = tonumber(ARGV[4])
local score = tonumber(vals[1]) or 0
local updated = tonumber(vals[2]) or now
if half_life > 0 and score > 0 then
    local elapsed = now - updated
    if elapsed < 0 then elapsed = 0 end
    score = score * math.pow(0.5, elapsed / half_life)
end
score = score + delta
if score < 0 then score = 0 end
redis.call('HSET', KEYS[1], 'score', tostring(score), 'updated', tostring(now))
if ttl > 0 then redis.call('EXPIRE', KEYS[1], ttl) end
return tostring(score)
"""

# KEYS[1] = IP attempts, KEYS[2] = email attempts (optional)
# ARGV = now, login_window, daily_window, endpoint_window, endpoint_limit,
#        login_attempts, ip_daily_limit, user_daily_limit, endpoint,
#        retention, one member per key
_CHECK_AND_RECORD_LUA = """
local now = tonumber(ARGV[1])
local function since(window) return '(' .. (now - tonumber(window)) end
local ip_attempts = redis.call('ZCOUNT', KEYS[1], since(ARGV[2]), '+inf')
local ip_daily = redis.call('ZCOUNT', KEYS[1], since(ARGV[3]), '+inf')
local endpoint_rate = 0
for _, member in ipairs(redis.call('ZRANGEBYSCORE', KEYS[1], since(ARGV[4]), '+inf')) do
    local sep = string.find(member, '|', 1, true)
    if sep and string.sub(member, sep + 1) == ARGV[9] then
        endpoint_rate = endpoint_rate + 1
    end
end
local email_attempts = 0
if #KEYS > 1 then
    email_attempts = redis.call('ZCOUNT', KEYS[2], since(ARGV[2]), '+inf')
end
local allowed = endpoint_rate < tonumber(ARGV[5])
    and ip_attempts < tonumber(ARGV[6])
    and ip_daily < tonumber(ARGV[7])
    and (#KEYS < 2 or email_attempts < tonumber(ARGV[8]))
local recorded = 0
if allowed then
    local retention = tonumber(ARGV[10])
    for i, key in ipairs(KEYS) do
        redis.call('ZADD', key, ARGV[1], ARGV[10 + i])
        redis.call('ZREMRANGEBYSCORE', key, '-inf', now - retention)
        redis.call('EXPIRE', key, retention)
    end
    recorded = 1
end
return {ip_attempts, email_attempts, ip_daily, endpoint_rate, recorded}
"""


class RedisThreatStore(ThreatStore):
    def __init__(
        self,
        client: redis.Redis,
        key_prefix: str = "riskgate",
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
        decision_log_size: int = DEFAULT_DECISION_LOG_SIZE,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.redis = client
        self.key_prefix = key_prefix
        self.retention_seconds = retention_seconds
        self.decision_log_size = decision_log_size
        self._decaying_increment = client.register_script(_DECAYING_INCREMENT_LUA)
        self._check_and_record = client.register_script(_CHECK_AND_RECORD_LUA)

    # --- keys ---

    def _attempts_key(self, identifier: str, identifier_type: IdentifierType) -> str:
        return f"{self.key_prefix}:attempts:{IdentifierType(identifier_type).value}:{identifier}"

    def _list_key(self, kind: ListKind) -> str:
        return f"{self.key_prefix}:list:{ListKind(kind).value}"

    def _cidr_key(self, kind: ListKind) -> str:
        return f"{self.key_prefix}:list:{ListKind(kind).value}:cidrs"

    def _fingerprint_key(self) -> str:
        return f"{self.key_prefix}:fingerprints"

    def _score_key(self, identifier: str) -> str:
        return f"{self.key_prefix}:suspicion:{identifier}"

    def _decisions_key(self) -> str:
        return f"{self.key_prefix}:decisions"

    # --- attempts ---

    def attempt_count(self, identifier, identifier_type, window):
        if not identifier:
            return 0
        now = self.clock()
        return int(self.redis.zcount(self._attempts_key(identifier, identifier_type), f"({now - window}", "+inf"))

    def _recent_endpoints(self, ip: str, window: int) -> list[str]:
        now = self.clock()
        members = self.redis.zrangebyscore(self._attempts_key(ip, IdentifierType.IP), f"({now - window}", "+inf")
        return [member.split("|", 1)[1] if "|" in member else "" for member in members]

    def endpoint_count(self, ip, endpoint, window):
        if not ip:
            return 0
        return sum(1 for ep in self._recent_endpoints(ip, window) if ep == endpoint)

    def distinct_endpoints(self, ip, window):
        if not ip:
            return 0
        return len(set(self._recent_endpoints(ip, window)))

    def record_attempt(self, ip, email, endpoint):
        now = self.clock()
        pipe = self.redis.pipeline(transaction=True)
        targets = [(ip, IdentifierType.IP)]
        if email:
            targets.append((email, IdentifierType.EMAIL))
        for identifier, identifier_type in targets:
            key = self._attempts_key(identifier, identifier_type)
            # Unique member per attempt; the endpoint rides along for per-endpoint counts
            pipe.zadd(key, {f"{uuid.uuid4().hex}|{endpoint}": now})
            pipe.zremrangebyscore(key, "-inf", now - self.retention_seconds)
            pipe.expire(key, self.retention_seconds)
        pipe.execute()

    def try_record_attempt(self, ip, email, endpoint, limits):
        keys = [self._attempts_key(ip, IdentifierType.IP)]
        if email:
            keys.append(self._attempts_key(email, IdentifierType.EMAIL))
        members = [f"{uuid.uuid4().hex}|{endpoint}" for _ in keys]
        result = self._check_and_record(
            keys=keys,
            args=[
                self.clock(),
                limits.login_window,
                limits.daily_window,
                limits.endpoint_window,
                limits.endpoint_limit,
                limits.login_attempts,
                limits.ip_daily_limit,
                limits.user_daily_limit,
                endpoint,
                self.retention_seconds,
                *members,
            ],
        )
        ip_attempts, email_attempts, ip_daily, endpoint_rate, recorded = (int(value) for value in result)
        return AttemptCounts(
            ip_attempts=ip_attempts,
            email_attempts=email_attempts,
            ip_daily=ip_daily,
            endpoint_rate=endpoint_rate,
            recorded=bool(recorded),
        )

    def clear_attempts(self, identifier, identifier_type=IdentifierType.IP):
        self.redis.delete(self._attempts_key(identifier, identifier_type))

    # --- lists ---

    def _entry(self, kind: ListKind, pattern: str) -> ListEntry | None:
        raw = self.redis.hget(self._list_key(kind), pattern)
        if not raw:
            return None
        return ListEntry.from_dict(json.loads(raw))

    def _is_listed(self, kind: ListKind, ip: str) -> bool:
        now = self.clock()
        entry = self._entry(kind, ip)
        if entry is not None:
            if entry.is_effective(now):
                return True
            if entry.expires_at is not None:
                # Lazily drop expired entries
                self.redis.hdel(self._list_key(kind), ip)

        for pattern in self.redis.smembers(self._cidr_key(kind)):
            if ip_matches(ip, pattern):
                entry = self._entry(kind, pattern)
                if entry is not None and entry.is_effective(now):
                    return True
        return False

    def _add_entry(self, kind: ListKind, entry: ListEntry) -> ListEntry:
        pipe = self.redis.pipeline(transaction=True)
        pipe.hset(self._list_key(kind), entry.ip, json.dumps(entry.to_dict()))
        if "/" in entry.ip:
            pipe.sadd(self._cidr_key(kind), entry.ip)
        pipe.execute()
        return entry

    def _remove_entry(self, kind: ListKind, ip: str) -> bool:
        pipe = self.redis.pipeline(transaction=True)
        pipe.hdel(self._list_key(kind), ip)
        pipe.srem(self._cidr_key(kind), ip)
        removed, _ = pipe.execute()
        return bool(removed)

    def is_whitelisted(self, ip):
        return self._is_listed(ListKind.WHITELIST, ip)

    def is_blacklisted(self, ip):
        return self._is_listed(ListKind.BLACKLIST, ip)

    def add_to_whitelist(self, ip, reason=None):
        return self._add_entry(ListKind.WHITELIST, ListEntry(ip=ip, reason=reason, created_at=self.clock()))

    def remove_from_whitelist(self, ip):
        return self._remove_entry(ListKind.WHITELIST, ip)

    def add_to_blacklist(self, ip, reason, duration_seconds=None):
        now = self.clock()
        expires_at = now + duration_seconds if duration_seconds else None
        entry = ListEntry(ip=ip, reason=reason, expires_at=expires_at, created_at=now)
        return self._add_entry(ListKind.BLACKLIST, entry)

    def remove_from_blacklist(self, ip):
        return self._remove_entry(ListKind.BLACKLIST, ip)

    def list_entries(self, kind):
        now = self.clock()
        entries = [ListEntry.from_dict(json.loads(raw)) for raw in self.redis.hgetall(self._list_key(kind)).values()]
        return [e for e in entries if e.is_effective(now)]

    # --- fingerprints ---

    def block_fingerprint(self, fingerprint, reason="Manual block"):
        self.redis.hset(self._fingerprint_key(), fingerprint, reason)

    def unblock_fingerprint(self, fingerprint):
        return bool(self.redis.hdel(self._fingerprint_key(), fingerprint))

    def is_fingerprint_blocked(self, fingerprint):
        return bool(self.redis.hexists(self._fingerprint_key(), fingerprint))

    # --- suspicion ---

    def log_suspicious_activity(self, identifier, delta):
        ttl = int(self.half_life_seconds * SCORE_TTL_HALF_LIVES) if self.half_life_seconds > 0 else 0
        result = self._decaying_increment(
            keys=[self._score_key(identifier)],
            args=[delta, self.clock(), self.half_life_seconds, ttl],
        )
        return float(result)

    def get_threat_score(self, identifier):
        score, updated = self.redis.hmget(self._score_key(identifier), ["score", "updated"])
        if score is None:
            return None
        return ThreatScore(identifier, float(score), float(updated or 0.0))

    # --- decision log ---

    def record_decision(self, record):
        # The id keeps identical decisions in the same instant distinct
        member = json.dumps({**record.to_dict(), "id": uuid.uuid4().hex})
        pipe = self.redis.pipeline(transaction=True)
        pipe.zadd(self._decisions_key(), {member: record.timestamp})
        pipe.zremrangebyrank(self._decisions_key(), 0, -(self.decision_log_size + 1))
        pipe.execute()

    def decisions_since(self, since):
        members = self.redis.zrevrangebyscore(self._decisions_key(), "+inf", since)
        return [DecisionRecord.from_dict(json.loads(member)) for member in members]

    def prune_decisions(self, before):
        return int(self.redis.zremrangebyscore(self._decisions_key(), "-inf", f"({before}"))

    def ping(self):
        return bool(self.redis.ping())
