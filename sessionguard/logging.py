from __future__ import annotations

import contextlib
import logging
import os
import re
import uuid
from typing import Any, Dict, Iterator, List, Optional

import structlog

_TRUTHY = {"1", "true", "yes", "on"}

# Keys whose values let a reader act as, or follow, a user
_PII_KEYS = frozenset({
    "password",
    "secret",
    "token",
    "api_key",
    "authorization",
    "email",
    "fingerprint",
    "signature",
})


def get_correlation_id() -> Optional[str]:
    """Correlation id bound to the current operation, if any."""
    return structlog.contextvars.get_contextvars().get("correlation_id")


@contextlib.contextmanager
def operation_context(operation: str, correlation_id: Optional[str] = None) -> Iterator[str]:
    """Tag every log line inside the block with ``operation`` and a correlation id.

    An id already bound by the caller is reused, so a sign-in and the session
    writes it triggers share one id. Child tasks started inside the block
    inherit it.
    """
    cid = correlation_id or get_correlation_id() or uuid.uuid4().hex
    with structlog.contextvars.bound_contextvars(correlation_id=cid, operation=operation):
        yield cid


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials and identifying values, keeping two characters at each end.

    Session tokens and device fingerprints correlate a user across requests,
    so they are treated like secrets.
    """
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or len(value) <= 4:
            continue
        if any(pii in key.lower() for pii in _PII_KEYS):
            event_dict[key] = f"{value[:2]}***{value[-2:]}"
    return event_dict


def _processor_chain(json_output: bool, development_mode: bool) -> List[Any]:
    chain: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        chain.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        chain.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])
    return chain


def configure_logging(
    log_level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the sessionguard processor chain.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR; unknown names fall back to INFO
        json_output: render JSON lines, otherwise human-readable console output
        development_mode: force the coloured console renderer
    """
    structlog.configure(
        processors=_processor_chain(json_output, development_mode),
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Text that must not reach an audit record: SQL, paths, inline credentials, tracebacks
_SENSITIVE_PATTERNS = [
    re.compile(p)
    for p in (
        r'(?i)(sql|query|select|insert|update|delete|where|from|join)\s+.{0,50}',
        r'(?i)database\s+error',
        r'(?i)connection\s+.*\s+(failed|refused|timeout)',
        r'(?i)/(?:home|var|etc|usr|opt|tmp)/[^\s]+',
        r'(?i)[a-z]:\\[^\s]+',
        r'(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*[^\s]+',
        r'(?i)traceback\s*\(most recent call last\)',
    )
]

_MAX_ERROR_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Clean an error message before it leaves the process in an audit event."""
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    if len(result) > _MAX_ERROR_LENGTH:
        result = result[: _MAX_ERROR_LENGTH - 3] + "..."
    return result
