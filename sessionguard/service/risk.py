from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from sessionguard.logging import get_logger
from sessionguard.storage.models import (
    DeviceDescriptor,
    DeviceType,
    GeolocationContext,
    RiskAssessment,
    SecurityLevel,
    SessionRecord,
    as_utc,
    clamp_score,
    utc_now,
)

logger = get_logger(__name__)

SUSPICIOUS_COUNTRIES = frozenset({"CN", "RU", "KP", "IR"})
TRUSTED_COUNTRIES = frozenset({"BR", "US", "CA", "GB", "AU", "DE", "FR", "ES", "NL"})

# Inclusive local hours considered unusual for a sign-in
SUSPICIOUS_HOUR_START = 2
SUSPICIOUS_HOUR_END = 6

MAX_FAILURE_POINTS = 60
POINTS_PER_FAILURE = 15
SESSION_BURST_WINDOW = timedelta(hours=24)
SESSION_BURST_LIMIT = 10

DEVICE_RISK_CAP = 30
LOCATION_RISK_CAP = 40

_LEVEL_RECOMMENDATIONS = {
    SecurityLevel.CRITICAL: "Immediate security review required",
    SecurityLevel.HIGH_RISK: "Enhanced security measures recommended",
    SecurityLevel.ELEVATED: "Additional verification may be required",
}


@dataclass(frozen=True)
class RiskContext:
    """Signals gathered for a single sign-in or session check."""

    user_id: str
    ip_address: Optional[str] = None
    device: Optional[DeviceDescriptor] = None
    geolocation: Optional[GeolocationContext] = None
    is_new_device: bool = False
    is_new_location: bool = False
    # Local time of the attempt; the suspicious-hour rule is skipped when absent
    time_of_day: Optional[datetime] = None
    consecutive_failures: int = 0
    session_history: Sequence[SessionRecord] = field(default_factory=tuple)


def _dedupe(items: List[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(items))


class RiskAssessmentEngine:
    """Additive risk scoring over device, location, timing and history."""

    def __init__(self, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock

    def assess(self, context: RiskContext) -> RiskAssessment:
        now = self._clock()
        try:
            return self._assess(context, now)
        except Exception as exc:
            logger.error(
                "risk_assessment_failed",
                user_id=context.user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return RiskAssessment.fail_safe(assessed_at=now)

    def _assess(self, context: RiskContext, now: datetime) -> RiskAssessment:
        score = 0
        factors: List[str] = []
        recommendations: List[str] = []

        if context.is_new_device:
            score += 25
            factors.append("new_device")
            recommendations.append("Consider enabling device verification")

        if context.device is None or not context.device.fingerprint:
            score += 10
            factors.append("no_device_fingerprint")

        country = context.geolocation.country if context.geolocation else None
        if country:
            country = country.upper()
            if country in SUSPICIOUS_COUNTRIES:
                score += 40
                factors.append("suspicious_country")
                recommendations.append("Additional verification required for this location")
            elif country not in TRUSTED_COUNTRIES:
                score += 15
                factors.append("untrusted_country")

        if context.is_new_location:
            score += 20
            factors.append("new_location")
            recommendations.append("Location change detected")

        local_time = context.time_of_day
        if local_time is not None and SUSPICIOUS_HOUR_START <= local_time.hour <= SUSPICIOUS_HOUR_END:
            score += 10
            factors.append("suspicious_time")

        if context.consecutive_failures > 0:
            score += min(context.consecutive_failures * POINTS_PER_FAILURE, MAX_FAILURE_POINTS)
            factors.append("authentication_failures")
            recommendations.append("Monitor for brute force attacks")

        if not context.ip_address or context.ip_address == "unknown":
            score += 15
            factors.append("no_ip_address")

        window_start = now - SESSION_BURST_WINDOW
        recent = [s for s in context.session_history if as_utc(s.created_at) >= window_start]
        if len(recent) > SESSION_BURST_LIMIT:
            score += 20
            factors.append("excessive_sessions")
            recommendations.append("Unusual session activity detected")

        final_score = clamp_score(score)
        level = SecurityLevel.for_score(final_score)
        if level in _LEVEL_RECOMMENDATIONS:
            recommendations.append(_LEVEL_RECOMMENDATIONS[level])

        logger.debug(
            "risk_assessed",
            user_id=context.user_id,
            score=final_score,
            level=level.value,
            factors=factors,
        )
        return RiskAssessment(
            score=final_score,
            level=level,
            factors=tuple(factors),
            recommendations=_dedupe(recommendations),
            assessed_at=now,
        )

    def assess_device_risk(self, device: Optional[DeviceDescriptor]) -> int:
        """Risk contributed by the device alone, capped at 30."""

        if device is None:
            return DEVICE_RISK_CAP
        score = 0
        if not device.fingerprint:
            score += 10
        if device.type == DeviceType.UNKNOWN:
            score += 15
        if not device.name or device.name == "Unknown Device":
            score += 5
        return min(score, DEVICE_RISK_CAP)

    def assess_location_risk(self, geolocation: Optional[GeolocationContext]) -> int:
        """Risk contributed by the location alone, capped at 40."""

        if geolocation is None or not geolocation.country:
            return 5
        country = geolocation.country.upper()
        score = 0
        if country in SUSPICIOUS_COUNTRIES:
            score += 40
        elif country not in TRUSTED_COUNTRIES:
            score += 15
        return min(score, LOCATION_RISK_CAP)
