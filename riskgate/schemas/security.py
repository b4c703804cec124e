"""
Data model for the request risk-scoring engine.

Engine-internal values (signals, detector results, decisions, store records)
are frozen dataclasses; bodies that cross the HTTP boundary are pydantic
models.
"""

import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType

from pydantic import BaseModel


class ChallengeType(str, Enum):  # noqa: UP042
    """Secondary verification imposed instead of an outright block."""

    CAPTCHA = "captcha"
    ADVANCED_CAPTCHA = "advanced_captcha"
    MULTI_FACTOR = "multi_factor"

    @property
    def strength(self) -> int:
        return _CHALLENGE_STRENGTH[self]


_CHALLENGE_STRENGTH = {
    ChallengeType.CAPTCHA: 1,
    ChallengeType.ADVANCED_CAPTCHA: 2,
    ChallengeType.MULTI_FACTOR: 3,
}


def stronger_challenge(current: ChallengeType | None, candidate: ChallengeType | None) -> ChallengeType | None:
    """Return whichever challenge is stronger; None loses to anything."""
    if current is None:
        return candidate
    if candidate is None:
        return current
    return candidate if candidate.strength > current.strength else current


class IdentifierType(str, Enum):  # noqa: UP042
    IP = "ip"
    EMAIL = "email"


class ListKind(str, Enum):  # noqa: UP042
    WHITELIST = "whitelist"
    BLACKLIST = "blacklist"


@dataclass(frozen=True)
class RequestSignal:
    """Flat, immutable view of one inbound request."""

    ip: str
    user_agent: str
    endpoint: str
    method: str = "GET"
    headers: Mapping[str, str] = field(default_factory=dict)
    email: str | None = None
    fingerprint: str | None = None
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self):
        lowered = {str(k).lower(): v for k, v in self.headers.items()}
        object.__setattr__(self, "headers", MappingProxyType(lowered))


def _check_risk(value: float) -> float:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"risk_score must be within [0, 1], got {value}")
    return float(value)


@dataclass(frozen=True)
class CheckResult:
    """Output of a single detector."""

    allowed: bool
    risk_score: float
    challenge_required: bool = False
    challenge_type: ChallengeType | None = None
    details: tuple[str, ...] = ()
    reason: str | None = None
    suggested_email: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "risk_score", _check_risk(self.risk_score))
        object.__setattr__(self, "details", tuple(self.details))
        if self.allowed and self.reason is not None:
            raise ValueError("reason is only set on denied results")

    @classmethod
    def deny(cls, reason: str, risk_score: float = 1.0, details: tuple[str, ...] = ()) -> "CheckResult":
        return cls(allowed=False, risk_score=risk_score, reason=reason, details=details)

    @classmethod
    def allow(cls, risk_score: float = 0.0, **kwargs) -> "CheckResult":
        return cls(allowed=True, risk_score=risk_score, **kwargs)


@dataclass(frozen=True)
class Decision:
    """Final verdict of the risk pipeline for one request."""

    allowed: bool
    reason: str
    risk_score: float
    challenge_required: bool = False
    challenge_type: ChallengeType | None = None
    checks_passed: frozenset[str] = frozenset()
    checks_failed: frozenset[str] = frozenset()
    timestamp: float = field(default_factory=time.time)
    details: tuple[str, ...] = ()
    suggested_email: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "risk_score", _check_risk(self.risk_score))
        object.__setattr__(self, "checks_passed", frozenset(self.checks_passed))
        object.__setattr__(self, "checks_failed", frozenset(self.checks_failed))

    @property
    def outcome(self) -> str:
        if not self.allowed:
            return "denied"
        if self.challenge_required:
            return "challenged"
        return "allowed"

    @classmethod
    def deny(cls, reason: str, risk_score: float = 1.0, **kwargs) -> "Decision":
        return cls(allowed=False, reason=reason, risk_score=risk_score, **kwargs)

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "risk_score": self.risk_score,
            "challenge_required": self.challenge_required,
            "challenge_type": self.challenge_type.value if self.challenge_type else None,
            "checks_passed": sorted(self.checks_passed),
            "checks_failed": sorted(self.checks_failed),
            "timestamp": self.timestamp,
            "details": list(self.details),
            "suggested_email": self.suggested_email,
        }


@dataclass(frozen=True)
class ListEntry:
    """Whitelist or blacklist membership for one IP."""

    ip: str
    active: bool = True
    reason: str | None = None
    expires_at: float | None = None
    created_at: float = field(default_factory=time.time)

    def is_effective(self, now: float) -> bool:
        if not self.active:
            return False
        return self.expires_at is None or self.expires_at > now

    def to_dict(self) -> dict:
        return {
            "ip": self.ip,
            "active": self.active,
            "reason": self.reason,
            "expires_at": self.expires_at,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "ListEntry":
        return cls(
            ip=data["ip"],
            active=bool(data.get("active", True)),
            reason=data.get("reason"),
            expires_at=data.get("expires_at"),
            created_at=data.get("created_at", 0.0),
        )


@dataclass(frozen=True)
class ThreatScore:
    identifier: str
    score: float
    last_updated: float


@dataclass(frozen=True)
class AttemptCounts:
    """
    Attempt counts read by an atomic check-and-record.

    The counts never include the attempt being checked. recorded is True only
    when every limit had room and the attempt was appended.
    """

    ip_attempts: int = 0
    email_attempts: int = 0
    ip_daily: int = 0
    endpoint_rate: int = 0
    recorded: bool = False


@dataclass(frozen=True)
class DecisionRecord:
    """One entry of the queryable decision log; emails are stored masked."""

    timestamp: float
    ip: str
    endpoint: str
    method: str
    outcome: str
    reason: str
    risk_score: float
    email: str | None = None

    @property
    def blocked(self) -> bool:
        return self.outcome == "denied"

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "ip": self.ip,
            "endpoint": self.endpoint,
            "method": self.method,
            "outcome": self.outcome,
            "reason": self.reason,
            "risk_score": self.risk_score,
            "email": self.email,
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "DecisionRecord":
        return cls(
            timestamp=float(data["timestamp"]),
            ip=data["ip"],
            endpoint=data["endpoint"],
            method=data.get("method", "GET"),
            outcome=data["outcome"],
            reason=data.get("reason", ""),
            risk_score=float(data.get("risk_score", 0.0)),
            email=data.get("email"),
        )


# --- HTTP bodies ---


class DeniedResponse(BaseModel):
    """403 body returned when the pipeline denies a request"""

    error: str = "Security validation failed"
    reason: str
    risk_score: float
    timestamp: float


class ChallengeResponse(BaseModel):
    """429 body returned when a request must pass a challenge first"""

    challenge_required: bool = True
    challenge_type: ChallengeType
    risk_score: float
    message: str = "Please complete the security challenge"
