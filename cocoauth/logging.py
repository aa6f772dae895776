from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Correlation ID for per-request tracing
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_PII_KEYS = {"password", "secret", "token", "authorization", "email", "code", "digest"}
# Token metadata that is safe to log even though the key says "token"
_TOKEN_META_KEYS = {"token_kind", "token_id", "jti"}
# Device push tokens (fcm_token, fcmToken claim); only the tail is kept
_DEVICE_TOKEN_KEYS = {"fcm_token", "fcmtoken", "fcm"}
# header.payload.signature; a JSON header always encodes to "eyJ"
_COMPACT_JWS = re.compile(r"^eyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+$")


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add correlation_id to all log entries."""
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask_jws(value: str) -> str:
    # Signature tail is enough to tell two tokens apart in a log
    return "jws:***" + value.rsplit(".", 1)[-1][-4:]


def _mask_value(key: str, value: Any) -> Any:
    lower_key = key.lower()
    if isinstance(value, dict):
        return {k: _mask_value(str(k), v) for k, v in value.items()}
    if not isinstance(value, str) or lower_key in _TOKEN_META_KEYS:
        return value
    if _COMPACT_JWS.match(value):
        return _mask_jws(value)
    if lower_key in _DEVICE_TOKEN_KEYS:
        return "***" + value[-4:] if len(value) > 8 else "***"
    if any(pii in lower_key for pii in _PII_KEYS):
        if len(value) > 4:
            # Keep first/last 2 chars for debugging
            return value[:2] + "***" + value[-2:]
        return "***"
    return value


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to redact credentials, tokens and contact details.

    Signed tokens are masked wherever they appear, whatever the key.
    Nested dicts such as decoded claims or upstream error details are
    walked with the same rules.
    """
    for key in list(event_dict.keys()):
        if key == "event":
            continue
        event_dict[key] = _mask_value(key, event_dict[key])
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Initialize logging on module import
_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_json_output = os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"}
_dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=_log_level,
    json_output=_json_output,
    development_mode=_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)
