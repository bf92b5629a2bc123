"""
Logging infrastructure for the code ledger.

Provides request correlation for every log line written while a request
or a webhook delivery is being handled:

- RequestIDFilter: injects the current request id and subject into records
- SensitiveDataFilter: masks webhook signatures and secrets in messages
- StructuredLogAdapter: keyword-style structured context logging

Usage:
    from apps.common.logging import get_logger

    logger = get_logger(__name__, component="promotions")
    logger.info("Code redeemed", code="SAVE50")
"""

from __future__ import annotations

import logging
import re
import threading
from typing import Any, ClassVar

# Thread-local storage for request context
_request_context = threading.local()

_CONTEXT_ATTRS = ("request_id", "user_id", "ip_address")


# =============================================================================
# REQUEST CONTEXT FUNCTIONS
# =============================================================================


def set_request_context(**kwargs: Any) -> None:
    """Set request context for the current thread"""
    for key, value in kwargs.items():
        setattr(_request_context, key, value)


def get_request_context() -> dict[str, Any]:
    """Get request context for the current thread"""
    return {
        "request_id": getattr(_request_context, "request_id", "-"),
        "user_id": getattr(_request_context, "user_id", None),
        "ip_address": getattr(_request_context, "ip_address", None),
    }


def clear_request_context() -> None:
    """Clear request context for the current thread"""
    for attr in _CONTEXT_ATTRS:
        if hasattr(_request_context, attr):
            delattr(_request_context, attr)


# =============================================================================
# FILTERS
# =============================================================================


class RequestIDFilter(logging.Filter):
    """
    Add request ID and context to log records.

    Records logged outside a request get "-" as request id so format
    strings referencing %(request_id)s never fail.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = getattr(_request_context, "request_id", "-")  # type: ignore[attr-defined]
        if not hasattr(record, "user_id"):
            record.user_id = getattr(_request_context, "user_id", None)  # type: ignore[attr-defined]
        if not hasattr(record, "ip_address"):
            record.ip_address = getattr(_request_context, "ip_address", None)  # type: ignore[attr-defined]
        return True


class SensitiveDataFilter(logging.Filter):
    """
    Redact secrets from log messages.

    Webhook signatures travel as ``sha256=<hex>``; anything matching a
    known secret-bearing key is masked before it reaches a handler.
    """

    SENSITIVE_PATTERNS: ClassVar[list[re.Pattern[str]]] = [
        re.compile(r"(sha256=)[0-9a-fA-F]{16,}"),
        re.compile(r"((?:secret|token|password|signature)\s*[=:]\s*)\S+", re.IGNORECASE),
    ]

    REDACTION_TEXT = "[REDACTED]"

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            for pattern in self.SENSITIVE_PATTERNS:
                record.msg = pattern.sub(rf"\g<1>{self.REDACTION_TEXT}", record.msg)
        return True


# =============================================================================
# STRUCTURED LOGGING
# =============================================================================


class StructuredLogAdapter(logging.LoggerAdapter):
    """
    Log adapter that adds structured context to all log messages.

    Usage:
        logger = StructuredLogAdapter(
            logging.getLogger(__name__),
            {"component": "promotions"}
        )
        logger.info("Reward issued", reward_code="REWARD1A2B3C4D5E")
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:  # type: ignore[override]
        extra = dict(kwargs.get("extra") or {})
        extra.update(self.extra or {})

        # Any keyword argument that logging itself doesn't understand becomes an extra field
        for key, value in list(kwargs.items()):
            if key not in ("exc_info", "stack_info", "stacklevel", "extra"):
                extra[key] = value
                del kwargs[key]

        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str, **context: Any) -> StructuredLogAdapter:
    """
    Get a structured logger with context.

    Args:
        name: Logger name (usually __name__)
        **context: Additional context to include in all log messages
    """
    return StructuredLogAdapter(logging.getLogger(name), context)
