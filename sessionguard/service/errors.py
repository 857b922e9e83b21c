from __future__ import annotations

from typing import Optional


class SecurityCoreError(Exception):
    """Base class for errors raised out of the security core.

    Expected outcomes (weak password, locked account, expired session) are
    returned as result values and never raised. Only programmer errors and
    dependency failures that must deny an operation surface as exceptions,
    each with a stable ``error_code``:
    - configuration_error
    - session_creation_failed
    - hashing_failed
    """

    error_code: str = "security_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ConfigurationError(SecurityCoreError):
    """Required configuration is missing or inconsistent (raised at startup)."""
    error_code = "configuration_error"


class SessionCreationError(SecurityCoreError):
    """The session store could not record a new session; sign-in is denied."""
    error_code = "session_creation_failed"


class HashingError(SecurityCoreError):
    """A password could not be hashed."""
    error_code = "hashing_failed"


__all__ = [
    "SecurityCoreError",
    "ConfigurationError",
    "SessionCreationError",
    "HashingError",
]
