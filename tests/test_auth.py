"""Tests for sign-in and password change orchestration."""

from datetime import timedelta

import pytest
import structlog
from structlog.testing import capture_logs

from sessionguard.config import PasswordPolicy
from sessionguard.logging import get_correlation_id, operation_context
from sessionguard.service.auth import SignInService
from sessionguard.service.devices import DeviceFingerprintService
from sessionguard.service.geolocation import StaticGeolocationResolver
from sessionguard.service.passwords import PasswordPolicyEngine
from sessionguard.service.risk import RiskAssessmentEngine
from sessionguard.storage.errors import StoreUnavailable
from sessionguard.storage.models import AuditEventType, AuditStatus, SecurityLevel

PASSWORD = "Str0ng!Passw0rd#"
NEW_PASSWORD = "N3w&Better!Secret"
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
PHONE_AGENT = (
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36"
)


def build_service(users, session_store, hashing, manager, validator, audit, clock):
    return SignInService(
        users,
        session_store,
        hashing=hashing,
        password_engine=PasswordPolicyEngine(PasswordPolicy(), hashing, clock=clock),
        devices=DeviceFingerprintService(clock=clock),
        risk_engine=RiskAssessmentEngine(clock=clock),
        validator=validator,
        sessions=manager,
        geolocation=StaticGeolocationResolver(),
        audit=audit,
        clock=clock,
    )


@pytest.fixture
def service(store, hashing, manager, validator, audit, clock):
    """Create a sign-in service over the in-memory store."""
    return build_service(store, store, hashing, manager, validator, audit, clock)


@pytest.fixture
def user(store, hashing, clock):
    """Create a user with a known password."""
    return store.create_user(
        "jane@example.com",
        hashing.hash(PASSWORD),
        name="Jane Doe",
        password_changed_at=clock.now - timedelta(days=1),
    )


async def sign_in(service, password=PASSWORD, **kwargs):
    kwargs.setdefault("user_agent", USER_AGENT)
    kwargs.setdefault("ip_address", "8.8.8.8")
    return await service.sign_in("jane@example.com", password, **kwargs)


class TestSignIn:
    """Tests for credential sign-in."""

    async def test_successful_sign_in(self, service, store, user, clock):
        result = await sign_in(service)

        assert result.success is True
        assert result.error is None
        assert result.session is not None
        assert store.get_session(result.session.token).user_id == user.id
        # First session ever: new device is the only risk factor
        assert result.risk.factors == ("new_device",)
        assert result.risk.level == SecurityLevel.NORMAL
        assert result.requires_mfa is False
        assert result.session.geolocation.country == "BR"
        assert store.get_user(user.id).last_login_at == clock.now

    async def test_known_device_is_not_new(self, service, user):
        await sign_in(service)

        second = await sign_in(service)

        assert "new_device" not in second.risk.factors
        assert second.risk.score == 0

    async def test_client_fingerprint_identifies_device(self, service, user):
        await sign_in(service, client_fingerprint="stable-device-id")

        second = await sign_in(service, user_agent=PHONE_AGENT, client_fingerprint="stable-device-id")

        assert "new_device" not in second.risk.factors
        assert second.session.fingerprint == "stable-device-id"

    async def test_new_device_audited_after_first_session(self, service, user, audit):
        await sign_in(service)

        await sign_in(service, user_agent=PHONE_AGENT)

        assert len(audit.of_type(AuditEventType.LOGIN_FROM_NEW_DEVICE)) == 1

    async def test_new_location_audited(self, service, user, audit):
        result = await sign_in(service, is_new_location=True)

        assert "new_location" in result.risk.factors
        assert len(audit.of_type(AuditEventType.LOGIN_FROM_NEW_LOCATION)) == 1

    async def test_unknown_email(self, service):
        result = await service.sign_in("nobody@example.com", PASSWORD)

        assert result.success is False
        assert result.error == "invalid_credentials"

    async def test_wrong_password_counts_failures(self, service, store, user, audit):
        result = await sign_in(service, password="wrong")

        assert result.error == "invalid_credentials"
        assert store.get_user(user.id).failed_login_attempts == 1
        assert len(audit.of_type(AuditEventType.LOGIN_FAILED)) == 1

    async def test_lockout_after_five_failures(self, service, store, user, audit, clock):
        for _ in range(5):
            await sign_in(service, password="wrong")

        locked = await sign_in(service)

        assert locked.success is False
        assert locked.error == "account_locked"
        assert store.get_user(user.id).locked_until == clock.now + timedelta(minutes=30)
        assert len(audit.of_type(AuditEventType.ACCOUNT_LOCKED)) == 1

    async def test_lock_expires(self, service, store, user, clock):
        for _ in range(5):
            await sign_in(service, password="wrong")
        clock.advance(minutes=31)

        result = await sign_in(service)

        assert result.success is True
        assert store.get_user(user.id).failed_login_attempts == 0
        assert store.get_user(user.id).locked_until is None

    async def test_prior_failures_raise_risk(self, service, user):
        await sign_in(service, password="wrong")
        await sign_in(service, password="wrong")

        result = await sign_in(service)

        assert "authentication_failures" in result.risk.factors
        assert result.risk.score == 25 + 30

    async def test_inactive_account(self, service, store, user):
        store.users[user.id].is_active = False

        result = await sign_in(service)

        assert result.error == "account_inactive"

    async def test_two_factor_requires_mfa(self, service, store, user):
        store.users[user.id].two_factor_enabled = True

        result = await sign_in(service)

        assert result.success is True
        assert result.requires_mfa is True

    async def test_expired_password_flagged(self, service, store, user, clock):
        store.users[user.id].password_changed_at = clock.now - timedelta(days=120)

        result = await sign_in(service)

        assert result.success is True
        assert result.requires_password_change is True

    async def test_repository_failure_denies(self, hashing, manager, validator, audit, clock, store):
        class DownUsers:
            def get_user_by_email(self, email):
                raise StoreUnavailable("user store offline")

        service = build_service(DownUsers(), store, hashing, manager, validator, audit, clock)

        result = await sign_in(service)

        assert result.success is False
        assert result.error == "service_unavailable"
        assert len(audit.of_type(AuditEventType.LOGIN_FAILED)) == 1


class TestChangePassword:
    """Tests for password change."""

    async def test_change_password(self, service, store, user, hashing, clock, audit):
        result = await service.change_password(user.id, PASSWORD, NEW_PASSWORD)

        assert result.success is True
        assert result.errors == []
        assert hashing.verify(NEW_PASSWORD, store.get_password_hash(user.id))
        assert store.get_user(user.id).password_changed_at == clock.now
        assert len(audit.of_type(AuditEventType.PASSWORD_CHANGED)) == 1

    async def test_wrong_current_password(self, service, user):
        result = await service.change_password(user.id, "wrong", NEW_PASSWORD)

        assert result.success is False
        assert result.errors == ["Current password is incorrect"]

    async def test_weak_new_password(self, service, user):
        result = await service.change_password(user.id, PASSWORD, "password123")

        assert result.success is False
        assert "Password is too common and easily guessable" in result.errors

    async def test_new_password_with_personal_info(self, service, user):
        result = await service.change_password(user.id, PASSWORD, "Jane!Secure2024xyz")

        assert result.success is False
        assert "Password should not contain parts of your name" in result.errors

    async def test_reused_password_rejected(self, service, user):
        await service.change_password(user.id, PASSWORD, NEW_PASSWORD)

        result = await service.change_password(user.id, NEW_PASSWORD, PASSWORD)

        assert result.success is False
        assert result.errors == ["Password cannot be the same as your last 5 passwords"]

    async def test_revoke_other_sessions(self, service, store, user):
        first = await sign_in(service)
        await sign_in(service, user_agent=PHONE_AGENT)

        result = await service.change_password(
            user.id,
            PASSWORD,
            NEW_PASSWORD,
            revoke_other_sessions=True,
            current_token=first.session.token,
        )

        assert result.revoked_sessions == 1
        assert [s.token for s in store.list_active_sessions(user.id)] == [first.session.token]

    async def test_unknown_user(self, service):
        result = await service.change_password("missing", PASSWORD, NEW_PASSWORD)

        assert result.success is False


class FlakyUsers:
    """Delegates to a store but fails the named repository methods."""

    def __init__(self, inner, *failing):
        self.inner = inner
        self.failing = set(failing)

    def __getattr__(self, name):
        if name in self.failing:
            def fail(*args, **kwargs):
                raise ConnectionError(f"{name}: user db down")
            return fail
        return getattr(self.inner, name)


class TestChangePasswordDependencyFailures:
    """Tests for password change when the user repository misbehaves."""

    async def test_unreadable_history_allows_change(
        self, store, user, hashing, manager, validator, audit, clock
    ):
        users = FlakyUsers(store, "get_password_history")
        service = build_service(users, store, hashing, manager, validator, audit, clock)

        result = await service.change_password(user.id, PASSWORD, NEW_PASSWORD)

        assert result.success is True
        assert hashing.verify(NEW_PASSWORD, store.get_password_hash(user.id))
        changed = audit.of_type(AuditEventType.PASSWORD_CHANGED)
        assert changed[0].data["reuse_check_degraded"] is True

    async def test_failed_save_is_reported(
        self, store, user, hashing, manager, validator, audit, clock
    ):
        users = FlakyUsers(store, "save_password_hash")
        service = build_service(users, store, hashing, manager, validator, audit, clock)

        result = await service.change_password(user.id, PASSWORD, NEW_PASSWORD)

        assert result.success is False
        assert result.errors == ["Password could not be changed, please try again later"]
        assert hashing.verify(PASSWORD, store.get_password_hash(user.id))
        changed = audit.of_type(AuditEventType.PASSWORD_CHANGED)
        assert [e.status for e in changed] == [AuditStatus.ERROR]

    async def test_failed_lookup_is_reported(
        self, store, user, hashing, manager, validator, audit, clock
    ):
        users = FlakyUsers(store, "get_user")
        service = build_service(users, store, hashing, manager, validator, audit, clock)

        result = await service.change_password(user.id, PASSWORD, NEW_PASSWORD)

        assert result.success is False
        assert len(audit.of_type(AuditEventType.PASSWORD_CHANGED)) == 1


class TestCorrelationIds:
    """Tests that each top-level call tags its log lines with one correlation id."""

    async def test_each_sign_in_gets_its_own_id(
        self, store, user, hashing, manager, validator, audit, clock
    ):
        users = FlakyUsers(store, "get_user_by_email")
        service = build_service(users, store, hashing, manager, validator, audit, clock)

        with capture_logs(processors=[structlog.contextvars.merge_contextvars]) as logs:
            await sign_in(service)
            await sign_in(service)

        failures = [e for e in logs if e["event"] == "sign_in_failed"]
        assert [e["operation"] for e in failures] == ["sign_in", "sign_in"]
        assert failures[0]["correlation_id"] != failures[1]["correlation_id"]
        assert get_correlation_id() is None

    async def test_change_password_keeps_caller_id(
        self, store, user, hashing, manager, validator, audit, clock
    ):
        users = FlakyUsers(store, "save_password_hash")
        service = build_service(users, store, hashing, manager, validator, audit, clock)

        with operation_context("http_request", correlation_id="req-42"):
            with capture_logs(processors=[structlog.contextvars.merge_contextvars]) as logs:
                await service.change_password(user.id, PASSWORD, NEW_PASSWORD)

        failure = next(e for e in logs if e["event"] == "password_change_failed")
        assert failure["correlation_id"] == "req-42"
        assert failure["operation"] == "change_password"
