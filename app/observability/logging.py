"""
Structured Logging with Structlog.

Reconciliation runs after the webhook has already answered Apple, so these
logs are the only place its failures surface. Signed payloads, bearer tokens
and key material never reach the output: ``redact_secrets`` masks them before
rendering.
"""

import logging
import re
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from app.config import settings
from app.observability.tracing import current_trace_id

# Event keys whose values are always masked
SECRET_KEYS = frozenset(
    {
        "authorization",
        "private_key",
        "signed_payload",
        "signedPayload",
        "signed_transaction_info",
        "signed_renewal_info",
        "token",
    }
)

# Compact JWS: three base64url segments, long enough to be a real token
_JWS_PATTERN = re.compile(r"^[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]*$")

# Chatty third-party loggers (httpx logs every request at INFO)
_QUIET_LOGGERS = ("httpx", "httpcore")


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add service identity and the active trace id to every entry."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    event_dict["apple_environment"] = settings.apple_environment
    trace_id = current_trace_id()
    if trace_id is not None:
        event_dict["trace_id"] = trace_id
    return event_dict


def _mask(value: str) -> str:
    return f"<redacted len={len(value)}>"


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask secret-bearing keys and any string value shaped like a JWS."""
    for key, value in event_dict.items():
        if not isinstance(value, str) or key == "event":
            continue
        if key in SECRET_KEYS or _JWS_PATTERN.match(value):
            event_dict[key] = _mask(value)
    return event_dict


def setup_logging() -> None:
    """
    Configure structured logging with structlog.

    Entries render as JSON (``LOG_FORMAT=json``) or coloured console lines:
    {
        "event": "apple_notification_applied",
        "level": "info",
        "timestamp": "2025-01-08T12:00:00.123456Z",
        "logger": "app.services.notification_reconciler",
        "service": "storekit-reconciler",
        "notification_uuid": "...",
        "app_user_id": "...",
        "trace_id": "...",
    }
    """
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Bind structured logging context for the duration of a block.

    Previous values are restored on exit, so nested contexts (a refresh
    inside a notification) do not clobber the outer binding.

    Usage:
        with log_context(notification_uuid="...", app_user_id="user-456"):
            logger.info("reconciling_customer")
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs
        self._tokens: dict[str, Any] = {}

    def __enter__(self) -> None:
        self._tokens = structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)
