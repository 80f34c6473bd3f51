from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Values under any key containing one of these are masked
_REDACTED_KEYS = ("token", "secret", "authorization", "password")

_TRUTHY = {"1", "true", "yes", "on"}


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Tag every log line in the current context; generates an id when none is given."""
    cid = correlation_id or uuid.uuid4().hex
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if not isinstance(value, str) or len(value) <= 4:
            continue
        if any(marker in key.lower() for marker in _REDACTED_KEYS):
            event_dict[key] = f"{value[:2]}***{value[-2:]}"
    return event_dict


def configure_logging(level: Optional[str] = None, *, json_output: Optional[bool] = None) -> None:
    """Set up structlog from arguments, falling back to LOG_LEVEL / LOG_JSON / LOG_DEV_MODE."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY
        json_output = not dev_mode and os.getenv("LOG_JSON", "true").lower() in _TRUTHY

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_secrets,
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level, logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
