"""Structured logging for sessionguard.

Every event is a structlog key/value record rendered as one JSON line (or
coloured console output with ``LOG_DEV_MODE``). The HTTP middleware opens a
request context holding the ``X-Request-ID``; the session dependency adds the
subject id, so engine events such as ``session_created`` or
``durable_flush_failed`` can be traced back to the request that caused them.
Background activity updates inherit the context of the request that spawned
them.

Bearer tokens and signing secrets must never reach the log stream: values under
credential-like keys are masked, and so is anything shaped like a bearer
header or a JWT wherever it appears.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from typing import Any, Dict, Optional

import structlog

_CREDENTIAL_KEY_MARKERS = ("secret", "token", "authorization", "password", "email")
_JWT_SHAPE = re.compile(r"^[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]+$")


def start_request_context(request_id: Optional[str] = None) -> str:
    """Reset the log context for a new request and return its request id."""
    rid = request_id or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=rid)
    return rid


def get_request_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get("request_id")


def bind_subject(subject_id: str) -> None:
    structlog.contextvars.bind_contextvars(subject_id=subject_id)


def _mask(value: str) -> str:
    if len(value) <= 4:
        return value
    return value[:2] + "***" + value[-2:]


def _mask_credential(value: str) -> str:
    scheme, sep, rest = value.partition(" ")
    if sep and scheme.lower() == "bearer":
        return f"{scheme} {_mask(rest.strip())}"
    return _mask(value)


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or key == "event":
            continue
        lower_key = key.lower()
        if any(marker in lower_key for marker in _CREDENTIAL_KEY_MARKERS):
            event_dict[key] = _mask_credential(value)
        elif value.lower().startswith("bearer ") or _JWT_SHAPE.match(value):
            event_dict[key] = _mask_credential(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """(Re)configure structlog for the service.

    Args:
        log_level: minimum level emitted (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: render JSON lines; otherwise console output
        development_mode: force coloured console output
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name).bind(component=name.rsplit(".", 1)[-1])
