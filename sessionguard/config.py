from __future__ import annotations

import os
from datetime import timedelta
from enum import Enum
from typing import Any, Dict

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from sessionguard.logging import get_logger
from sessionguard.service.errors import ConfigurationError
from sessionguard.storage.models import SecurityLevel

logger = get_logger(__name__)


class HashScheme(str, Enum):
    """Password hashing schemes accepted for new hashes.

    Verification accepts both regardless of this setting; stored scrypt
    hashes carry a ``scrypt:`` prefix tag.
    """

    ARGON2ID = "argon2id"
    SCRYPT = "scrypt"


class GeolocationMode(str, Enum):
    NONE = "none"
    STATIC = "static"


DEFAULT_IDLE_TIMEOUTS: Dict[SecurityLevel, timedelta] = {
    SecurityLevel.NORMAL: timedelta(hours=24),
    SecurityLevel.ELEVATED: timedelta(hours=8),
    SecurityLevel.HIGH_RISK: timedelta(hours=2),
    SecurityLevel.CRITICAL: timedelta(minutes=30),
}

DEFAULT_SESSION_LIMITS: Dict[SecurityLevel, int] = {
    SecurityLevel.NORMAL: 5,
    SecurityLevel.ELEVATED: 3,
    SecurityLevel.HIGH_RISK: 2,
    SecurityLevel.CRITICAL: 1,
}


class PasswordPolicy(BaseModel):
    """Password rules, fixed for the lifetime of the process."""

    min_length: int = 8
    max_length: int = 128
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_numbers: bool = True
    require_special_chars: bool = True
    min_special_chars: int = 1
    prevent_common_passwords: bool = True
    prevent_user_info: bool = True
    reuse_window: int = 5
    max_age: timedelta = timedelta(days=90)

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _check_bounds(self) -> "PasswordPolicy":
        if self.min_length < 1:
            raise ValueError("min_length must be positive")
        if self.min_length > self.max_length:
            raise ValueError("min_length must not exceed max_length")
        if self.min_special_chars < 0 or self.reuse_window < 0:
            raise ValueError("min_special_chars and reuse_window must be non-negative")
        if self.max_age <= timedelta(0):
            raise ValueError("max_age must be positive")
        return self


class SessionPolicy(BaseModel):
    """Session age, idle budget and concurrency limits per security level."""

    max_session_age: timedelta = timedelta(days=30)
    idle_timeouts: Dict[SecurityLevel, timedelta] = Field(
        default_factory=lambda: dict(DEFAULT_IDLE_TIMEOUTS)
    )
    enforce_session_limits: bool = False
    session_limits: Dict[SecurityLevel, int] = Field(
        default_factory=lambda: dict(DEFAULT_SESSION_LIMITS)
    )

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _check_levels(self) -> "SessionPolicy":
        missing = [lvl.value for lvl in SecurityLevel if lvl not in self.idle_timeouts]
        if missing:
            raise ValueError(f"idle timeout missing for levels: {missing}")
        if any(limit < 1 for limit in self.session_limits.values()):
            raise ValueError("session limits must be at least 1")
        return self

    def idle_timeout(self, level: SecurityLevel) -> timedelta:
        return self.idle_timeouts.get(level, self.idle_timeouts[SecurityLevel.NORMAL])

    def session_limit(self, level: SecurityLevel) -> int:
        return self.session_limits.get(level, DEFAULT_SESSION_LIMITS[level])


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the security core."""

    # Password policy
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH")
    password_require_uppercase: bool = env_field(True, "PASSWORD_REQUIRE_UPPERCASE")
    password_require_lowercase: bool = env_field(True, "PASSWORD_REQUIRE_LOWERCASE")
    password_require_numbers: bool = env_field(True, "PASSWORD_REQUIRE_NUMBERS")
    password_require_special: bool = env_field(True, "PASSWORD_REQUIRE_SPECIAL")
    password_min_special_chars: int = env_field(1, "PASSWORD_MIN_SPECIAL_CHARS")
    password_reuse_window: int = env_field(
        5,
        "PASSWORD_REUSE_WINDOW",
        description="Number of most recent password hashes a new password may not match",
    )
    password_max_age_days: int = env_field(90, "PASSWORD_MAX_AGE_DAYS")

    # Hashing
    password_hash_scheme: HashScheme = env_field(HashScheme.ARGON2ID, "PASSWORD_HASH_SCHEME")
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(
        65536, "ARGON2_MEMORY_COST", description="Argon2 memory cost in KiB"
    )
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")
    hash_workers: int = env_field(
        4,
        "HASH_WORKERS",
        description="Size of the thread pool that runs hashing off the event loop",
    )

    # Sessions
    max_session_age_days: int = env_field(30, "MAX_SESSION_AGE_DAYS")
    idle_timeout_normal_minutes: int = env_field(24 * 60, "IDLE_TIMEOUT_NORMAL_MINUTES")
    idle_timeout_elevated_minutes: int = env_field(8 * 60, "IDLE_TIMEOUT_ELEVATED_MINUTES")
    idle_timeout_high_risk_minutes: int = env_field(2 * 60, "IDLE_TIMEOUT_HIGH_RISK_MINUTES")
    idle_timeout_critical_minutes: int = env_field(30, "IDLE_TIMEOUT_CRITICAL_MINUTES")
    enforce_session_limits: bool = env_field(False, "ENFORCE_SESSION_LIMITS")
    sweep_interval_seconds: int = env_field(
        300, "SWEEP_INTERVAL_SECONDS", description="Seconds between expiry sweeps"
    )

    # Sign-in
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD")
    lockout_minutes: int = env_field(30, "LOCKOUT_MINUTES")

    geolocation_mode: GeolocationMode = env_field(GeolocationMode.NONE, "GEOLOCATION_MODE")
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle cheap hashing parameters for test runs",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        try:
            return cls(**merged)
        except ValidationError as exc:
            raise ConfigurationError(
                "invalid security core settings", detail={"errors": exc.errors()}
            ) from exc

    @field_validator("password_hash_scheme")
    @classmethod
    def _validate_scheme(cls, value: HashScheme) -> HashScheme:
        return HashScheme(value)

    @field_validator("geolocation_mode")
    @classmethod
    def _validate_geolocation_mode(cls, value: GeolocationMode) -> GeolocationMode:
        return GeolocationMode(value)

    @field_validator("hash_workers", "argon2_time_cost", "argon2_parallelism", "lockout_threshold")
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    def password_policy(self) -> PasswordPolicy:
        try:
            return PasswordPolicy(
                min_length=self.password_min_length,
                max_length=self.password_max_length,
                require_uppercase=self.password_require_uppercase,
                require_lowercase=self.password_require_lowercase,
                require_numbers=self.password_require_numbers,
                require_special_chars=self.password_require_special,
                min_special_chars=self.password_min_special_chars,
                reuse_window=self.password_reuse_window,
                max_age=timedelta(days=self.password_max_age_days),
            )
        except ValidationError as exc:
            logger.error("password_policy_invalid", error=str(exc))
            raise ConfigurationError(
                "invalid password policy", detail={"errors": exc.errors()}
            ) from exc

    def session_policy(self) -> SessionPolicy:
        try:
            return SessionPolicy(
                max_session_age=timedelta(days=self.max_session_age_days),
                idle_timeouts={
                    SecurityLevel.NORMAL: timedelta(minutes=self.idle_timeout_normal_minutes),
                    SecurityLevel.ELEVATED: timedelta(minutes=self.idle_timeout_elevated_minutes),
                    SecurityLevel.HIGH_RISK: timedelta(minutes=self.idle_timeout_high_risk_minutes),
                    SecurityLevel.CRITICAL: timedelta(minutes=self.idle_timeout_critical_minutes),
                },
                enforce_session_limits=self.enforce_session_limits,
            )
        except ValidationError as exc:
            logger.error("session_policy_invalid", error=str(exc))
            raise ConfigurationError(
                "invalid session policy", detail={"errors": exc.errors()}
            ) from exc


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
