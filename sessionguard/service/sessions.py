from __future__ import annotations

import asyncio
import contextlib
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Protocol

from sessionguard.config import SessionPolicy
from sessionguard.logging import get_logger, operation_context
from sessionguard.service.audit import AuditSink, emit_audit
from sessionguard.service.errors import SessionCreationError
from sessionguard.service.results import BulkRevokeResult, RevokeResult, SweepResult
from sessionguard.service.validation import SessionSecurityValidator
from sessionguard.storage.models import (
    ActiveSession,
    AuditCategory,
    AuditEvent,
    AuditEventType,
    AuditStatus,
    DeviceDescriptor,
    GeolocationContext,
    RiskAssessment,
    SessionRecord,
    as_utc,
    utc_now,
)

logger = get_logger(__name__)

# Reasons that mean the session ran out rather than being ended by a person
_EXPIRY_REASONS = frozenset({"idle_timeout", "max_age_exceeded", "risk_too_high", "session_limit_exceeded"})

_WARNING_REASONS = (
    ("Session has exceeded maximum age", "max_age_exceeded"),
    ("Session has been idle too long", "idle_timeout"),
    ("Session risk score is too high", "risk_too_high"),
)


class SessionStore(Protocol):
    def create_session(self, record: SessionRecord) -> SessionRecord:
        ...

    def get_session(self, token: str) -> Optional[SessionRecord]:
        ...

    def list_active_sessions(self, user_id: str) -> List[SessionRecord]:
        ...

    def list_sessions_by_fingerprint(self, user_id: str, fingerprint: str) -> List[SessionRecord]:
        ...

    def list_all_active_sessions(self) -> List[SessionRecord]:
        ...

    def list_user_sessions(self, user_id: str) -> List[SessionRecord]:
        ...

    def touch_session(self, token: str, at: datetime) -> bool:
        ...

    def revoke_session(self, token: str, reason: str, at: datetime) -> bool:
        """Mark the session revoked; True only for the call that made the transition."""
        ...


@dataclass
class _TokenLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


def _default_token() -> str:
    return secrets.token_urlsafe(32)


def _sweep_reason(warnings: Iterable[str]) -> str:
    for warning, reason in _WARNING_REASONS:
        if warning in warnings:
            return reason
    return "security_validation_failed"


class SessionLifecycleManager:
    """Creates, lists and revokes sessions.

    Mutations on one token are serialised by a per-token lock, and the
    store's compare-and-set revoke guarantees a single Active to Revoked
    transition even when callers race. Each public mutation emits exactly
    one audit event.
    """

    def __init__(
        self,
        store: SessionStore,
        validator: SessionSecurityValidator,
        *,
        audit: Optional[AuditSink] = None,
        policy: Optional[SessionPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
        token_factory: Callable[[], str] = _default_token,
    ) -> None:
        self.store = store
        self.validator = validator
        self.audit = audit
        self.policy = policy or validator.session_policy
        self._clock = clock
        self._token_factory = token_factory
        self._locks: Dict[str, _TokenLock] = {}
        self._registry_lock = threading.Lock()

    @contextlib.asynccontextmanager
    async def _token_lock(self, token: str) -> AsyncIterator[None]:
        """Serialise work on ``token``; the registry entry lives only while in use."""
        with self._registry_lock:
            entry = self._locks.get(token)
            if entry is None:
                entry = self._locks[token] = _TokenLock()
            entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            with self._registry_lock:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[token]

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

    async def create_session(
        self,
        user_id: str,
        device: Optional[DeviceDescriptor],
        risk: RiskAssessment,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        geolocation: Optional[GeolocationContext] = None,
    ) -> SessionRecord:
        now = self._clock()
        record = SessionRecord.new(
            self._token_factory(),
            user_id,
            now,
            device=device,
            geolocation=geolocation,
            ip_address=ip_address,
            user_agent=user_agent,
            risk_score=risk.score,
        )
        try:
            self.store.create_session(record)
        except Exception as exc:
            logger.error(
                "session_create_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self._emit(
                AuditEventType.LOGIN_FAILED,
                AuditStatus.ERROR,
                "session_create_failed",
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                device=device,
                geolocation=geolocation,
                error_message=str(exc),
            )
            raise SessionCreationError(
                "failed to create session", detail={"user_id": user_id}
            ) from exc

        self._emit(
            AuditEventType.LOGIN_SUCCESS,
            AuditStatus.SUCCESS,
            "session_created",
            user_id=user_id,
            session_token=record.token,
            ip_address=ip_address,
            user_agent=user_agent,
            device=device,
            geolocation=geolocation,
            data={
                "risk_score": record.risk_score,
                "security_level": record.security_level.value,
                "risk_factors": list(risk.factors),
            },
        )
        logger.info(
            "session_created",
            user_id=user_id,
            security_level=record.security_level.value,
            risk_score=record.risk_score,
        )

        if self.policy.enforce_session_limits:
            await self._enforce_session_limit(record)
        return record

    async def _enforce_session_limit(self, record: SessionRecord) -> None:
        limit = self.policy.session_limit(record.security_level)
        try:
            active = self.store.list_active_sessions(record.user_id)
        except Exception as exc:
            logger.warning("session_limit_check_failed", user_id=record.user_id, error=str(exc))
            return
        others = sorted(
            (s for s in active if s.token != record.token and not s.is_revoked),
            key=lambda s: as_utc(s.last_accessed_at),
            reverse=True,
        )
        # The new session always survives; the oldest others go first
        excess = others[max(limit - 1, 0):]
        if not excess:
            return
        for outcome in await asyncio.gather(
            *(self.revoke_one(s.token, "session_limit_exceeded") for s in excess),
            return_exceptions=True,
        ):
            if isinstance(outcome, BaseException):
                logger.warning(
                    "session_limit_revoke_failed",
                    user_id=record.user_id,
                    error_type=type(outcome).__name__,
                )

    async def record_access(self, token: str) -> bool:
        async with self._token_lock(token):
            try:
                record = self.store.get_session(token)
                if record is None or record.is_revoked:
                    return False
                return self.store.touch_session(token, self._clock())
            except Exception as exc:
                logger.warning("session_touch_failed", error_type=type(exc).__name__, error=str(exc))
                return False

    def list_active(
        self, user_id: str, current_token: Optional[str] = None
    ) -> List[ActiveSession]:
        records = [s for s in self.store.list_active_sessions(user_id) if not s.is_revoked]
        records.sort(key=lambda s: as_utc(s.last_accessed_at), reverse=True)
        return [
            ActiveSession(record=s, is_current=current_token is not None and s.token == current_token)
            for s in records
        ]

    async def _revoke(self, token: str, reason: str) -> tuple[RevokeResult, Optional[SessionRecord]]:
        async with self._token_lock(token):
            try:
                record = self.store.get_session(token)
                if record is None:
                    return RevokeResult(success=False, error="session_not_found"), None
                if record.is_revoked:
                    return RevokeResult(success=True, transitioned=False), record
                transitioned = self.store.revoke_session(token, reason, self._clock())
            except Exception as exc:
                logger.error(
                    "session_revoke_failed",
                    reason=reason,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                return RevokeResult(success=False, error="store_unavailable"), None
        return RevokeResult(success=True, transitioned=transitioned), record

    async def revoke_one(self, token: str, reason: str = "user_revoked") -> RevokeResult:
        result, record = await self._revoke(token, reason)
        if result.success and record is not None:
            # A repeat revoke is still audited, marked as a no-op
            event_type = (
                AuditEventType.SESSION_EXPIRED if reason in _EXPIRY_REASONS else AuditEventType.LOGOUT
            )
            self._emit(
                event_type,
                AuditStatus.SUCCESS,
                "session_revoked",
                category=AuditCategory.SECURITY,
                user_id=record.user_id,
                session_token=token,
                ip_address=record.ip_address,
                device=record.device,
                data={"reason": reason, "transitioned": result.transitioned},
            )
        else:
            self._emit(
                AuditEventType.LOGOUT,
                AuditStatus.FAILURE,
                "session_revoke_failed",
                category=AuditCategory.SECURITY,
                session_token=token,
                error_message=result.error,
                data={"reason": reason},
            )
        return result

    async def _revoke_many(self, records: List[SessionRecord], reason: str) -> List[RevokeResult]:
        outcomes = await asyncio.gather(
            *(self._revoke(s.token, reason) for s in records), return_exceptions=True
        )
        results: List[RevokeResult] = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                logger.warning("bulk_revoke_item_failed", error_type=type(outcome).__name__)
                results.append(RevokeResult(success=False, error="revoke_failed"))
            else:
                results.append(outcome[0])
        return results

    async def revoke_all(
        self,
        user_id: str,
        *,
        keep_current: bool = False,
        current_token: Optional[str] = None,
        reason: str = "revoke_all",
    ) -> BulkRevokeResult:
        if keep_current and not current_token:
            logger.warning("revoke_all_missing_current_token", user_id=user_id)
            self._emit(
                AuditEventType.LOGOUT,
                AuditStatus.FAILURE,
                "revoke_all_sessions",
                category=AuditCategory.SECURITY,
                user_id=user_id,
                error_message="keep_current requires current_token",
                data={"reason": reason},
            )
            return BulkRevokeResult(success=False, error="current_token_required")

        try:
            sessions = self.store.list_active_sessions(user_id)
        except Exception as exc:
            logger.error("revoke_all_list_failed", user_id=user_id, error=str(exc))
            self._emit(
                AuditEventType.LOGOUT,
                AuditStatus.ERROR,
                "revoke_all_sessions",
                category=AuditCategory.SECURITY,
                user_id=user_id,
                error_message=str(exc),
            )
            return BulkRevokeResult.unavailable("session_list_unavailable")

        targets = [
            s
            for s in sessions
            if not s.is_revoked and not (keep_current and s.token == current_token)
        ]
        results = await self._revoke_many(targets, reason)
        revoked = sum(1 for r in results if r.transitioned)
        failed = sum(1 for r in results if not r.success)
        self._emit(
            AuditEventType.LOGOUT,
            AuditStatus.SUCCESS if not failed else AuditStatus.FAILURE,
            "revoke_all_sessions",
            category=AuditCategory.SECURITY,
            user_id=user_id,
            session_token=current_token if keep_current else None,
            data={"reason": reason, "revoked_count": revoked, "failed_count": failed, "kept_current": keep_current},
        )
        logger.info("sessions_revoked", user_id=user_id, revoked_count=revoked, failed_count=failed)
        return BulkRevokeResult(success=True, revoked_count=revoked)

    async def revoke_by_device(
        self, user_id: str, fingerprint: str, reason: str = "device_revoked"
    ) -> BulkRevokeResult:
        try:
            sessions = self.store.list_sessions_by_fingerprint(user_id, fingerprint)
        except Exception as exc:
            logger.error("revoke_by_device_list_failed", user_id=user_id, error=str(exc))
            self._emit(
                AuditEventType.LOGOUT,
                AuditStatus.ERROR,
                "revoke_device_sessions",
                category=AuditCategory.SECURITY,
                user_id=user_id,
                error_message=str(exc),
            )
            return BulkRevokeResult.unavailable("session_list_unavailable")

        results = await self._revoke_many([s for s in sessions if not s.is_revoked], reason)
        succeeded = sum(1 for r in results if r.success)
        self._emit(
            AuditEventType.LOGOUT,
            AuditStatus.SUCCESS if succeeded == len(results) else AuditStatus.FAILURE,
            "revoke_device_sessions",
            category=AuditCategory.SECURITY,
            user_id=user_id,
            data={"reason": reason, "revoked_count": succeeded, "device_fingerprint": fingerprint},
        )
        return BulkRevokeResult(success=True, revoked_count=succeeded)

    async def sweep_expired(self) -> SweepResult:
        """Revoke every active session the validator says must end."""
        with operation_context("expiry_sweep"):
            return await self._sweep_expired()

    async def _sweep_expired(self) -> SweepResult:
        try:
            sessions = self.store.list_all_active_sessions()
        except Exception as exc:
            logger.error("session_sweep_list_failed", error_type=type(exc).__name__, error=str(exc))
            self._emit(
                AuditEventType.SESSION_EXPIRED,
                AuditStatus.ERROR,
                "expiry_sweep",
                category=AuditCategory.SECURITY,
                error_message=str(exc),
            )
            return SweepResult(success=False, error="session_list_unavailable")

        doomed: List[SessionRecord] = []
        reasons: Dict[str, str] = {}
        for session in sessions:
            if session.is_revoked:
                continue
            validation = self.validator.validate(session)
            if validation.should_revoke:
                doomed.append(session)
                reasons[session.token] = _sweep_reason(validation.warnings)

        outcomes = await asyncio.gather(
            *(self._revoke(s.token, reasons[s.token]) for s in doomed), return_exceptions=True
        )
        revoked_users: List[str] = []
        failed = 0
        for session, outcome in zip(doomed, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("session_sweep_item_failed", error_type=type(outcome).__name__)
                failed += 1
                continue
            if not outcome[0].success:
                failed += 1
            elif outcome[0].transitioned:
                revoked_users.append(session.user_id)

        self._emit(
            AuditEventType.SESSION_EXPIRED,
            AuditStatus.SUCCESS if not failed else AuditStatus.FAILURE,
            "expiry_sweep",
            category=AuditCategory.SECURITY,
            data={
                "scanned_count": len(sessions),
                "revoked_count": len(revoked_users),
                "failed_count": failed,
                "user_ids": sorted(set(revoked_users)),
            },
        )
        logger.info("session_sweep_complete", scanned=len(sessions), revoked=len(revoked_users))
        return SweepResult(success=True, revoked_count=len(revoked_users), scanned_count=len(sessions))


async def run_expiry_sweeps(manager: SessionLifecycleManager, interval_seconds: int) -> None:
    """Background loop that sweeps expired sessions until cancelled."""

    interval = max(interval_seconds, 1)
    try:
        while True:
            try:
                result = await manager.sweep_expired()
                if not result.success:
                    logger.warning("session_sweep_unsuccessful", error=result.error)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("session_sweep_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("session_sweep_task_cancelled")
