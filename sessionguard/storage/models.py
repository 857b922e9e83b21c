from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

# Risk score thresholds, checked highest first
CRITICAL_THRESHOLD = 80
HIGH_RISK_THRESHOLD = 60
ELEVATED_THRESHOLD = 30


def utc_now() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so they compare with aware ones."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def clamp_score(score: float) -> int:
    return int(min(100, max(0, score)))


class SecurityLevel(str, Enum):
    """Discrete security tier derived from a 0-100 risk score."""

    NORMAL = "normal"
    ELEVATED = "elevated"
    HIGH_RISK = "high_risk"
    CRITICAL = "critical"

    @classmethod
    def for_score(cls, score: int) -> "SecurityLevel":
        if score >= CRITICAL_THRESHOLD:
            return cls.CRITICAL
        if score >= HIGH_RISK_THRESHOLD:
            return cls.HIGH_RISK
        if score >= ELEVATED_THRESHOLD:
            return cls.ELEVATED
        return cls.NORMAL


class DeviceType(str, Enum):
    MOBILE = "mobile"
    TABLET = "tablet"
    DESKTOP = "desktop"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class GeolocationContext:
    country: Optional[str] = None
    city: Optional[str] = None
    timezone: Optional[str] = None
    coordinates: Optional[Coordinates] = None


@dataclass(frozen=True)
class DeviceDescriptor:
    type: DeviceType = DeviceType.UNKNOWN
    fingerprint: Optional[str] = None
    name: Optional[str] = None
    platform: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    raw_signature: Optional[str] = None

    @classmethod
    def unknown(cls, raw_signature: Optional[str] = None) -> "DeviceDescriptor":
        return cls(type=DeviceType.UNKNOWN, raw_signature=raw_signature)


@dataclass(frozen=True)
class RiskAssessment:
    score: int
    level: SecurityLevel
    factors: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()
    assessed_at: datetime = field(default_factory=utc_now)
    degraded: bool = False

    @classmethod
    def fail_safe(cls, assessed_at: Optional[datetime] = None) -> "RiskAssessment":
        """Default returned when scoring itself fails; never reports ``normal``."""

        return cls(
            score=25,
            level=SecurityLevel.ELEVATED,
            factors=("calculation_error",),
            recommendations=("Security assessment temporarily unavailable",),
            assessed_at=assessed_at or utc_now(),
            degraded=True,
        )


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    is_active: bool = True
    locked_until: Optional[datetime] = None
    failed_login_attempts: int = 0
    two_factor_enabled: bool = False
    password_changed_at: Optional[datetime] = None
    security_level: SecurityLevel = SecurityLevel.NORMAL
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class SessionRecord:
    token: str
    user_id: str
    created_at: datetime
    last_accessed_at: datetime
    device: Optional[DeviceDescriptor] = None
    geolocation: Optional[GeolocationContext] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    risk_score: int = 0
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[str] = None

    @property
    def security_level(self) -> SecurityLevel:
        # Always derived from this record's own score
        return SecurityLevel.for_score(self.risk_score)

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    @property
    def fingerprint(self) -> Optional[str]:
        return self.device.fingerprint if self.device else None

    @classmethod
    def new(
        cls,
        token: str,
        user_id: str,
        now: datetime,
        *,
        device: Optional[DeviceDescriptor] = None,
        geolocation: Optional[GeolocationContext] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        risk_score: int = 0,
    ) -> "SessionRecord":
        return cls(
            token=token,
            user_id=user_id,
            created_at=now,
            last_accessed_at=now,
            device=device,
            geolocation=geolocation,
            ip_address=ip_address,
            user_agent=user_agent,
            risk_score=clamp_score(risk_score),
        )


@dataclass(frozen=True)
class ActiveSession:
    """A non-revoked session as seen by a particular caller."""

    record: SessionRecord
    is_current: bool = False


class AuditEventType(str, Enum):
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    SESSION_EXPIRED = "session_expired"
    PASSWORD_CHANGED = "password_changed"
    ACCOUNT_LOCKED = "account_locked"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    LOGIN_FROM_NEW_DEVICE = "login_from_new_device"
    LOGIN_FROM_NEW_LOCATION = "login_from_new_location"


class AuditStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    ERROR = "error"


class AuditCategory(str, Enum):
    AUTH = "auth"
    SECURITY = "security"
    ADMIN = "admin"


@dataclass(frozen=True)
class AuditEvent:
    event_type: AuditEventType
    status: AuditStatus
    category: AuditCategory
    action: str
    user_id: Optional[str] = None
    session_token: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device: Optional[DeviceDescriptor] = None
    geolocation: Optional[GeolocationContext] = None
    error_message: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utc_now)
