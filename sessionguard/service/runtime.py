from __future__ import annotations

import asyncio
import contextlib
import threading
from datetime import timedelta
from typing import Optional

from sessionguard.config import GeolocationMode, Settings, get_settings, reset_settings_cache
from sessionguard.logging import get_logger
from sessionguard.service.audit import AuditSink, StructlogAuditSink
from sessionguard.service.auth import SignInService
from sessionguard.service.devices import DeviceFingerprintService
from sessionguard.service.errors import ConfigurationError
from sessionguard.service.geolocation import (
    GeolocationResolver,
    NullGeolocationResolver,
    StaticGeolocationResolver,
)
from sessionguard.service.passwords import PasswordHashing, PasswordPolicyEngine
from sessionguard.service.risk import RiskAssessmentEngine
from sessionguard.service.sessions import SessionLifecycleManager, run_expiry_sweeps
from sessionguard.service.validation import SessionSecurityValidator
from sessionguard.storage.memory import MemoryStore

logger = get_logger(__name__)


class Runtime:
    """Builds and holds the security core's service instances."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[MemoryStore] = None,
        audit: Optional[AuditSink] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        if store is None:
            if not self.settings.use_memory_store:
                raise ConfigurationError(
                    "no persistent store is bundled; inject a store or set USE_MEMORY_STORE=true",
                    detail={"use_memory_store": False},
                )
            store = MemoryStore()
        self.store = store
        self.audit = audit or StructlogAuditSink()
        self.password_policy = self.settings.password_policy()
        self.session_policy = self.settings.session_policy()

        self.hashing = PasswordHashing.from_settings(self.settings)
        self.passwords = PasswordPolicyEngine(self.password_policy, self.hashing)
        self.devices = DeviceFingerprintService()
        self.geolocation: GeolocationResolver = (
            StaticGeolocationResolver()
            if self.settings.geolocation_mode == GeolocationMode.STATIC
            else NullGeolocationResolver()
        )
        self.risk = RiskAssessmentEngine()
        self.validator = SessionSecurityValidator(self.session_policy, self.password_policy)
        self.sessions = SessionLifecycleManager(
            self.store,
            self.validator,
            audit=self.audit,
            policy=self.session_policy,
        )
        self.sign_in = SignInService(
            self.store,
            self.store,
            hashing=self.hashing,
            password_engine=self.passwords,
            devices=self.devices,
            risk_engine=self.risk,
            validator=self.validator,
            sessions=self.sessions,
            geolocation=self.geolocation,
            audit=self.audit,
            lockout_threshold=self.settings.lockout_threshold,
            lockout_duration=timedelta(minutes=self.settings.lockout_minutes),
        )
        self._sweep_task: Optional[asyncio.Task] = None
        logger.info(
            "runtime_init_complete",
            hash_scheme=self.settings.password_hash_scheme.value,
            geolocation_mode=self.settings.geolocation_mode.value,
        )

    def start_expiry_sweeps(self) -> asyncio.Task:
        """Start the background sweep loop on the running event loop."""

        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(
                run_expiry_sweeps(self.sessions, self.settings.sweep_interval_seconds)
            )
        return self._sweep_task

    async def close(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None
        self.hashing.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.hashing.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
