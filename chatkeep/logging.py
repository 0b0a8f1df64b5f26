"""structlog setup shared by the HTTP app, the chat socket and operator scripts.

Output is JSON lines unless LOG_JSON is off or LOG_DEV_MODE is on. Every
event passes through the field masker, so a bearer token or an address that
reaches a log call never lands on stdout in full.
"""
from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

# Request id for HTTP calls, connection id for chat sockets
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# A field is masked when its name contains any of these
_PII_KEYS = {"password", "secret", "token", "authorization", "email", "cookie"}

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the running task."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Keep two characters at each end of a sensitive string, or none if short."""
    for key, value in list(event_dict.items()):
        if key == "event" or not isinstance(value, str):
            continue
        if any(pii in key.lower() for pii in _PII_KEYS):
            event_dict[key] = value[:2] + "***" + value[-2:] if len(value) > 4 else "***"
    return event_dict


def _build_processors(json_output: bool, development_mode: bool) -> List[Any]:
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    return processors


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the chatkeep processor chain.

    Args:
        log_level: minimum level name; unknown names fall back to INFO
        json_output: render JSON lines instead of console text
        development_mode: coloured console output regardless of json_output
    """
    structlog.configure(
        processors=_build_processors(json_output, development_mode),
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in _TRUTHY


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def token_fingerprint(token: Optional[str]) -> Optional[str]:
    """Twelve hex chars of the token's sha256, for correlating log lines."""
    if not token:
        return None
    return hashlib.sha256(token.encode()).hexdigest()[:12]
