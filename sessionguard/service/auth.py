from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol

from sessionguard.logging import get_logger, operation_context
from sessionguard.service.audit import AuditSink, emit_audit
from sessionguard.service.devices import DeviceFingerprintService
from sessionguard.service.errors import SessionCreationError
from sessionguard.service.geolocation import GeolocationResolver, NullGeolocationResolver
from sessionguard.service.passwords import PasswordContext, PasswordHashing, PasswordPolicyEngine
from sessionguard.service.results import PasswordChangeResult, ReuseCheckResult, SignInResult
from sessionguard.service.risk import RiskAssessmentEngine, RiskContext
from sessionguard.service.sessions import SessionLifecycleManager, SessionStore
from sessionguard.service.validation import SessionSecurityValidator, UserSecurityContext
from sessionguard.storage.models import (
    AuditCategory,
    AuditEvent,
    AuditEventType,
    AuditStatus,
    DeviceDescriptor,
    SecurityLevel,
    SessionRecord,
    User,
    as_utc,
    utc_now,
)


class UserRepository(Protocol):
    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def get_user_by_email(self, email: str) -> Optional[User]:
        ...

    def get_password_hash(self, user_id: str) -> Optional[str]:
        ...

    def get_password_history(self, user_id: str, limit: int) -> List[str]:
        ...

    def save_password_hash(self, user_id: str, password_hash: str, changed_at: datetime) -> None:
        ...

    def record_failed_login(self, user_id: str, lock_until: Optional[datetime] = None) -> int:
        ...

    def reset_failed_logins(self, user_id: str) -> None:
        ...

    def record_login(self, user_id: str, at: datetime) -> None:
        ...


def _same_device(session: SessionRecord, device: DeviceDescriptor, user_agent: Optional[str]) -> bool:
    if session.fingerprint and device.fingerprint and session.fingerprint == device.fingerprint:
        return True
    return bool(user_agent) and session.user_agent == user_agent


class SignInService:
    """Credential sign-in and password change on top of the security core.

    Sign-in fails secure: any repository error denies the attempt.
    """

    def __init__(
        self,
        users: UserRepository,
        session_store: SessionStore,
        *,
        hashing: PasswordHashing,
        password_engine: PasswordPolicyEngine,
        devices: DeviceFingerprintService,
        risk_engine: RiskAssessmentEngine,
        validator: SessionSecurityValidator,
        sessions: SessionLifecycleManager,
        geolocation: Optional[GeolocationResolver] = None,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = utc_now,
        lockout_threshold: int = 5,
        lockout_duration: timedelta = timedelta(minutes=30),
    ) -> None:
        self.users = users
        self.session_store = session_store
        self.hashing = hashing
        self.password_engine = password_engine
        self.devices = devices
        self.risk_engine = risk_engine
        self.validator = validator
        self.sessions = sessions
        self.geolocation = geolocation or NullGeolocationResolver()
        self.audit = audit
        self._clock = clock
        self.lockout_threshold = lockout_threshold
        self.lockout_duration = lockout_duration
        self.logger = get_logger(__name__)

    def _emit(
        self,
        event_type: AuditEventType,
        status: AuditStatus,
        action: str,
        *,
        category: AuditCategory = AuditCategory.AUTH,
        **fields: Any,
    ) -> None:
        emit_audit(
            self.audit,
            AuditEvent(
                event_type=event_type,
                status=status,
                category=category,
                action=action,
                occurred_at=self._clock(),
                **fields,
            ),
        )

    async def sign_in(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        is_new_location: bool = False,
        client_fingerprint: Optional[str] = None,
        device_extra: Optional[Dict[str, Any]] = None,
        local_time: Optional[datetime] = None,
    ) -> SignInResult:
        with operation_context("sign_in"):
            try:
                return await self._sign_in(
                    email,
                    password,
                    user_agent=user_agent,
                    ip_address=ip_address,
                    is_new_location=is_new_location,
                    client_fingerprint=client_fingerprint,
                    device_extra=device_extra,
                    local_time=local_time,
                )
            except Exception as exc:
                self.logger.error("sign_in_failed", error_type=type(exc).__name__, error=str(exc))
                self._emit(
                    AuditEventType.LOGIN_FAILED,
                    AuditStatus.ERROR,
                    "sign_in",
                    ip_address=ip_address,
                    user_agent=user_agent,
                    error_message=str(exc),
                )
                return SignInResult.denied("service_unavailable")

    async def _sign_in(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str],
        ip_address: Optional[str],
        is_new_location: bool,
        client_fingerprint: Optional[str],
        device_extra: Optional[Dict[str, Any]],
        local_time: Optional[datetime],
    ) -> SignInResult:
        now = self._clock()
        request = {"ip_address": ip_address, "user_agent": user_agent}

        user = self.users.get_user_by_email(email)
        if user is None:
            self._emit(
                AuditEventType.LOGIN_FAILED,
                AuditStatus.FAILURE,
                "sign_in",
                data={"reason": "unknown_user"},
                **request,
            )
            return SignInResult.denied("invalid_credentials")

        if not user.is_active:
            self._emit(
                AuditEventType.LOGIN_FAILED,
                AuditStatus.FAILURE,
                "sign_in",
                user_id=user.id,
                data={"reason": "account_inactive"},
                **request,
            )
            return SignInResult.denied("account_inactive")

        if user.locked_until is not None:
            if as_utc(user.locked_until) > now:
                self._emit(
                    AuditEventType.LOGIN_FAILED,
                    AuditStatus.FAILURE,
                    "sign_in",
                    user_id=user.id,
                    data={"reason": "account_locked"},
                    **request,
                )
                return SignInResult.denied("account_locked")
            # Lock expired; the attempt counter starts over
            self.users.reset_failed_logins(user.id)
            user = replace(user, failed_login_attempts=0, locked_until=None)

        stored = self.users.get_password_hash(user.id)
        if not stored or not await self.hashing.verify_async(password, stored):
            return self._record_failure(user, now, request)

        prior_failures = user.failed_login_attempts
        self.users.reset_failed_logins(user.id)
        self.users.record_login(user.id, now)
        user = replace(user, failed_login_attempts=0, locked_until=None, last_login_at=now)

        device = self.devices.classify_device(user_agent, device_extra)
        if client_fingerprint:
            device = replace(device, fingerprint=client_fingerprint)
        geolocation = self.geolocation.resolve(ip_address)

        history = self.session_store.list_user_sessions(user.id)
        active = [s for s in history if not s.is_revoked]
        is_new_device = not any(_same_device(s, device, user_agent) for s in active)

        risk = self.risk_engine.assess(
            RiskContext(
                user_id=user.id,
                ip_address=ip_address,
                device=device,
                geolocation=geolocation,
                is_new_device=is_new_device,
                is_new_location=is_new_location,
                time_of_day=local_time,
                consecutive_failures=prior_failures,
                session_history=history,
            )
        )
        check = self.validator.validate_user_security(
            user,
            UserSecurityContext(ip_address=ip_address, device=device, risk_score=risk.score),
        )
        if not check.is_valid:
            self._emit(
                AuditEventType.LOGIN_FAILED,
                AuditStatus.FAILURE,
                "sign_in",
                user_id=user.id,
                device=device,
                geolocation=geolocation,
                data={"reason": "security_check_failed", "blocked_reasons": check.blocked_reasons},
                **request,
            )
            return SignInResult.denied("security_check_failed", risk=risk, security_check=check)

        try:
            session = await self.sessions.create_session(
                user.id,
                device,
                risk,
                ip_address=ip_address,
                user_agent=user_agent,
                geolocation=geolocation,
            )
        except SessionCreationError:
            return SignInResult.denied("session_creation_failed", risk=risk, security_check=check)

        if is_new_device and history:
            self._emit(
                AuditEventType.LOGIN_FROM_NEW_DEVICE,
                AuditStatus.SUCCESS,
                "sign_in",
                category=AuditCategory.SECURITY,
                user_id=user.id,
                session_token=session.token,
                device=device,
                **request,
            )
        if is_new_location:
            self._emit(
                AuditEventType.LOGIN_FROM_NEW_LOCATION,
                AuditStatus.SUCCESS,
                "sign_in",
                category=AuditCategory.SECURITY,
                user_id=user.id,
                session_token=session.token,
                geolocation=geolocation,
                **request,
            )
        if risk.level in (SecurityLevel.HIGH_RISK, SecurityLevel.CRITICAL):
            self._emit(
                AuditEventType.SUSPICIOUS_ACTIVITY,
                AuditStatus.SUCCESS,
                "high_risk_sign_in",
                category=AuditCategory.SECURITY,
                user_id=user.id,
                session_token=session.token,
                data={"risk_score": risk.score, "risk_factors": list(risk.factors)},
                **request,
            )

        self.logger.info(
            "sign_in_succeeded",
            user_id=user.id,
            security_level=risk.level.value,
            requires_mfa=check.requires_mfa,
        )
        return SignInResult(
            success=True,
            session=session,
            risk=risk,
            security_check=check,
            requires_mfa=check.requires_mfa,
            requires_password_change=check.requires_password_change,
            warnings=list(check.warnings),
        )

    def _record_failure(self, user: User, now: datetime, request: Dict[str, Any]) -> SignInResult:
        attempts = user.failed_login_attempts + 1
        lock_until = now + self.lockout_duration if attempts >= self.lockout_threshold else None
        count = self.users.record_failed_login(user.id, lock_until)
        if lock_until is not None:
            self.logger.warning("account_locked", user_id=user.id, attempts=count)
            self._emit(
                AuditEventType.ACCOUNT_LOCKED,
                AuditStatus.SUCCESS,
                "account_locked",
                category=AuditCategory.SECURITY,
                user_id=user.id,
                data={"failed_attempts": count, "locked_until": lock_until.isoformat()},
                **request,
            )
        else:
            self._emit(
                AuditEventType.LOGIN_FAILED,
                AuditStatus.FAILURE,
                "sign_in",
                user_id=user.id,
                data={"reason": "invalid_password", "failed_attempts": count},
                **request,
            )
        return SignInResult.denied("invalid_credentials")

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        revoke_other_sessions: bool = False,
        current_token: Optional[str] = None,
    ) -> PasswordChangeResult:
        """Change a user's password; dependency failures become a failed result."""
        with operation_context("change_password"):
            try:
                return await self._change_password(
                    user_id,
                    current_password,
                    new_password,
                    revoke_other_sessions=revoke_other_sessions,
                    current_token=current_token,
                )
            except Exception as exc:
                self.logger.error(
                    "password_change_failed", user_id=user_id, error_type=type(exc).__name__, error=str(exc)
                )
                self._emit(
                    AuditEventType.PASSWORD_CHANGED,
                    AuditStatus.ERROR,
                    "change_password",
                    user_id=user_id,
                    session_token=current_token,
                    error_message=str(exc),
                )
                return PasswordChangeResult(
                    success=False, errors=["Password could not be changed, please try again later"]
                )

    async def _change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        revoke_other_sessions: bool,
        current_token: Optional[str],
    ) -> PasswordChangeResult:
        user = self.users.get_user(user_id)
        if user is None:
            return PasswordChangeResult(success=False, errors=["User not found"])

        stored = self.users.get_password_hash(user_id)
        if not stored or not await self.hashing.verify_async(current_password, stored):
            self._emit(
                AuditEventType.PASSWORD_CHANGED,
                AuditStatus.FAILURE,
                "change_password",
                user_id=user_id,
                data={"reason": "invalid_current_password"},
            )
            return PasswordChangeResult(success=False, errors=["Current password is incorrect"])

        strength = self.password_engine.evaluate_strength(
            new_password, PasswordContext(email=user.email, name=user.name)
        )
        if not strength.is_valid:
            return PasswordChangeResult(
                success=False, errors=list(strength.errors), recommendations=list(strength.suggestions)
            )

        try:
            history = self.users.get_password_history(
                user_id, self.password_engine.policy.reuse_window
            )
        except Exception as exc:
            self.logger.warning(
                "password_history_unavailable", user_id=user_id, error_type=type(exc).__name__, error=str(exc)
            )
            reuse = ReuseCheckResult.fail_open()
        else:
            reuse = await self.password_engine.verify_reuse(new_password, history)
        if not reuse.is_valid:
            return PasswordChangeResult(success=False, errors=[reuse.error or "Password was used recently"])

        new_hash = await self.hashing.hash_async(new_password)
        self.users.save_password_hash(user_id, new_hash, self._clock())

        revoked = 0
        if revoke_other_sessions:
            outcome = await self.sessions.revoke_all(
                user_id,
                keep_current=bool(current_token),
                current_token=current_token,
                reason="password_changed",
            )
            revoked = outcome.revoked_count

        self._emit(
            AuditEventType.PASSWORD_CHANGED,
            AuditStatus.SUCCESS,
            "change_password",
            user_id=user_id,
            session_token=current_token,
            data={"revoked_sessions": revoked, "reuse_check_degraded": reuse.degraded},
        )
        self.logger.info("password_changed", user_id=user_id, revoked_sessions=revoked)
        return PasswordChangeResult(
            success=True, recommendations=list(strength.suggestions), revoked_sessions=revoked
        )
