from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from sessionguard.config import PasswordPolicy, SessionPolicy
from sessionguard.logging import get_logger
from sessionguard.service.results import SessionValidation, UserSecurityCheck
from sessionguard.storage.models import (
    CRITICAL_THRESHOLD,
    HIGH_RISK_THRESHOLD,
    DeviceDescriptor,
    DeviceType,
    SecurityLevel,
    SessionRecord,
    User,
    as_utc,
    utc_now,
)

logger = get_logger(__name__)

MFA_RISK_THRESHOLD = 50
FAILED_LOGIN_WARNING = 3
FAILED_LOGIN_BLOCK = 5

_TRACKING_RECOMMENDATION = "Enable device tracking for better security"


@dataclass(frozen=True)
class UserSecurityContext:
    ip_address: Optional[str] = None
    device: Optional[DeviceDescriptor] = None
    risk_score: int = 0


class SessionSecurityValidator:
    """Decides whether a session or account may continue.

    Both checks fail secure: an internal error revokes the session or
    blocks the account and requires MFA.
    """

    def __init__(
        self,
        session_policy: SessionPolicy,
        password_policy: Optional[PasswordPolicy] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session_policy = session_policy
        self.password_policy = password_policy or PasswordPolicy()
        self._clock = clock

    def validate(self, session: SessionRecord) -> SessionValidation:
        try:
            return self._validate(session)
        except Exception as exc:
            logger.error(
                "session_validation_failed",
                user_id=getattr(session, "user_id", None),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return SessionValidation.fail_secure()

    def _validate(self, session: SessionRecord) -> SessionValidation:
        now = self._clock()
        warnings: List[str] = []
        recommendations: List[str] = []
        should_revoke = False

        if now - as_utc(session.created_at) > self.session_policy.max_session_age:
            should_revoke = True
            warnings.append("Session has exceeded maximum age")

        idle_budget = self.session_policy.idle_timeout(session.security_level)
        if now - as_utc(session.last_accessed_at) > idle_budget:
            should_revoke = True
            warnings.append("Session has been idle too long")

        if session.risk_score >= CRITICAL_THRESHOLD:
            should_revoke = True
            warnings.append("Session risk score is too high")
        elif session.risk_score >= HIGH_RISK_THRESHOLD:
            warnings.append("Session has elevated risk score")
            recommendations.append("Consider additional verification")

        if not session.fingerprint:
            warnings.append("Session missing device fingerprint")
            recommendations.append(_TRACKING_RECOMMENDATION)

        if not session.ip_address:
            warnings.append("Session missing IP address")
            recommendations.append(_TRACKING_RECOMMENDATION)

        return SessionValidation(
            is_valid=not should_revoke,
            should_revoke=should_revoke,
            warnings=warnings,
            recommendations=list(dict.fromkeys(recommendations)),
        )

    def validate_user_security(
        self, user: User, context: Optional[UserSecurityContext] = None
    ) -> UserSecurityCheck:
        try:
            return self._validate_user(user, context or UserSecurityContext())
        except Exception as exc:
            logger.error(
                "user_security_validation_failed",
                user_id=getattr(user, "id", None),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return UserSecurityCheck.fail_secure()

    def _validate_user(self, user: User, context: UserSecurityContext) -> UserSecurityCheck:
        now = self._clock()
        warnings: List[str] = []
        blocked: List[str] = []
        requires_mfa = False
        requires_password_change = False

        if not user.is_active:
            blocked.append("Account is inactive")
        if user.locked_until and as_utc(user.locked_until) > now:
            blocked.append("Account is temporarily locked")

        if user.password_changed_at:
            if now - as_utc(user.password_changed_at) > self.password_policy.max_age:
                requires_password_change = True
                warnings.append("Password has expired and must be changed")

        if user.two_factor_enabled:
            requires_mfa = True
        elif context.risk_score >= MFA_RISK_THRESHOLD:
            requires_mfa = True
            warnings.append("Two-factor authentication required due to elevated risk")
        elif user.security_level in (SecurityLevel.HIGH_RISK, SecurityLevel.CRITICAL):
            requires_mfa = True
            warnings.append("Two-factor authentication required for high-security account")

        if context.device is not None and context.device.type == DeviceType.UNKNOWN:
            warnings.append("Unrecognized device type")

        if user.failed_login_attempts >= FAILED_LOGIN_WARNING:
            warnings.append(f"{user.failed_login_attempts} failed login attempts detected")
        if user.failed_login_attempts >= FAILED_LOGIN_BLOCK:
            blocked.append("Too many failed login attempts")

        return UserSecurityCheck(
            is_valid=not blocked,
            requires_mfa=requires_mfa,
            requires_password_change=requires_password_change,
            warnings=warnings,
            blocked_reasons=blocked,
        )

    def max_concurrent_sessions(self, level: SecurityLevel) -> int:
        return self.session_policy.session_limit(level)
