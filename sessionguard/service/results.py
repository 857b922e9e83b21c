"""Result values returned by the security core.

Expected outcomes are data, not exceptions. Where a component has to fall
back after an internal failure, the fallback is a named constructor on the
result type (``fail_secure``, ``fail_open``, ``unavailable``) and the value
carries ``degraded=True`` so callers and tests can tell a real decision from
a defaulted one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from sessionguard.storage.models import RiskAssessment, SessionRecord


@dataclass(frozen=True)
class PasswordStrengthResult:
    is_valid: bool
    score: int
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    estimated_crack_time: str = ""


@dataclass(frozen=True)
class ReuseCheckResult:
    is_valid: bool
    error: Optional[str] = None
    degraded: bool = False

    @classmethod
    def fail_open(cls) -> "ReuseCheckResult":
        # Allow the change rather than lock the user out of their account
        return cls(is_valid=True, degraded=True)


@dataclass(frozen=True)
class SessionValidation:
    is_valid: bool
    should_revoke: bool
    warnings: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    degraded: bool = False

    @classmethod
    def fail_secure(cls) -> "SessionValidation":
        return cls(
            is_valid=False,
            should_revoke=True,
            warnings=["Session security validation failed"],
            recommendations=["Revoke session for security"],
            degraded=True,
        )


@dataclass(frozen=True)
class UserSecurityCheck:
    is_valid: bool
    requires_mfa: bool
    requires_password_change: bool
    warnings: List[str] = field(default_factory=list)
    blocked_reasons: List[str] = field(default_factory=list)
    degraded: bool = False

    @classmethod
    def fail_secure(cls) -> "UserSecurityCheck":
        return cls(
            is_valid=False,
            requires_mfa=True,
            requires_password_change=False,
            warnings=["Security validation error"],
            blocked_reasons=["Unable to verify security requirements"],
            degraded=True,
        )


@dataclass(frozen=True)
class RevokeResult:
    success: bool
    transitioned: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class BulkRevokeResult:
    success: bool
    revoked_count: int = 0
    error: Optional[str] = None

    @classmethod
    def unavailable(cls, error: str) -> "BulkRevokeResult":
        return cls(success=False, revoked_count=0, error=error)


@dataclass(frozen=True)
class SweepResult:
    success: bool
    revoked_count: int = 0
    scanned_count: int = 0
    error: Optional[str] = None


@dataclass(frozen=True)
class SignInResult:
    success: bool
    session: Optional[SessionRecord] = None
    risk: Optional[RiskAssessment] = None
    security_check: Optional[UserSecurityCheck] = None
    requires_mfa: bool = False
    requires_password_change: bool = False
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def denied(
        cls,
        error: str,
        *,
        risk: Optional[RiskAssessment] = None,
        security_check: Optional[UserSecurityCheck] = None,
    ) -> "SignInResult":
        return cls(success=False, error=error, risk=risk, security_check=security_check)


@dataclass(frozen=True)
class PasswordChangeResult:
    success: bool
    errors: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    revoked_sessions: int = 0


__all__ = [
    "PasswordStrengthResult",
    "ReuseCheckResult",
    "SessionValidation",
    "UserSecurityCheck",
    "RevokeResult",
    "BulkRevokeResult",
    "SweepResult",
    "SignInResult",
    "PasswordChangeResult",
]
