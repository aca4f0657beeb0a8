"""
Structured logging for reconciliation events.

Every record carries event_type (the first positional argument), level,
ISO timestamp and logger name; mint_id / collection_id / signature travel as
keyword fields. Lamport amounts are logged as integers and never converted.

LOG_FORMAT=json (default) renders one JSON object per line; anything else
renders the structlog console format. RPC URLs carry provider API keys in the
query string, so api-key values are redacted from every string field.

No royalty_guard imports here; every other module imports this one.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from datetime import datetime, timezone
from typing import Any

import structlog

_API_KEY_RE = re.compile(r"(api[-_]?key=)[^&\s\"']+", re.IGNORECASE)


def _level_from_env() -> int:
    return getattr(logging, os.getenv("LOG_LEVEL", "INFO").strip().upper(), logging.INFO)


def _add_timestamp(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
    return event_dict


def _normalize_event(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog's 'event' becomes event_type."""
    if "event" in event_dict and "event_type" not in event_dict:
        event_dict["event_type"] = event_dict.pop("event")
    return event_dict


def _redact_api_keys(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key, value in event_dict.items():
        if isinstance(value, str) and "key=" in value.lower():
            event_dict[key] = _API_KEY_RE.sub(r"\1***", value)
    return event_dict


def configure_structlog(level: int | None = None, fmt: str | None = None) -> None:
    """(Re)configure structlog. Defaults come from LOG_LEVEL and LOG_FORMAT."""
    fmt = (fmt or os.getenv("LOG_FORMAT", "json")).strip().lower()
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
        _add_timestamp,
        _normalize_event,
        _redact_api_keys,
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level if level is not None else _level_from_env()),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


if not structlog.is_configured():
    configure_structlog()


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Return a structured logger for the given module name.

        logger = get_logger(__name__)
        logger.info("sale_debt_detected", mint_id=mint, signature=sig, debt_lamports=500_000_000)
    """
    return structlog.get_logger(name).bind(logger=name)


def bind_mint(mint: str, collection_id: str | None = None) -> structlog.BoundLogger:
    """Logger with mint_id (and collection_id when known) bound to every call."""
    fields: dict[str, Any] = {"mint_id": mint}
    if collection_id is not None:
        fields["collection_id"] = collection_id
    return get_logger("royalty_guard").bind(**fields)
