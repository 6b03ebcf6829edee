from __future__ import annotations

import logging
import os
import re
import uuid
from collections import Counter
from contextvars import ContextVar
from typing import Any, Dict, Iterable, Optional

import structlog

# Request id of the HTTP call that is being served (also inherited by runs it starts)
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}
_SECRET_KEY = re.compile(r"(?i)password|passwd|secret|token|api[_-]?key|authorization|cookie|otp")
_MASK = "***"
_MAX_REDACT_DEPTH = 8


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid) to the current context and return it."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask(value: Any, depth: int = 0) -> Any:
    if depth > _MAX_REDACT_DEPTH:
        return value
    if isinstance(value, dict):
        return {
            key: _MASK if isinstance(key, str) and _SECRET_KEY.search(key) else _mask(item, depth + 1)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_mask(item, depth + 1) for item in value]
    return value


def _redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask secret-looking keys anywhere in the entry.

    Scope snapshots and ``vars.patch`` payloads are logged as nested dicts, and
    recorded flows keep form input (passwords, one-time codes) in variables.
    """
    for key in list(event_dict):
        if key == "event":
            continue
        if _SECRET_KEY.search(key):
            event_dict[key] = _MASK
        else:
            event_dict[key] = _mask(event_dict[key])
    return event_dict


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    dev_mode: Optional[bool] = None,
) -> None:
    """Configure structlog for the process.

    Arguments left as ``None`` are read from ``LOG_LEVEL``, ``LOG_JSON`` and
    ``LOG_DEV_MODE``. Console rendering wins when either ``dev_mode`` is set
    or JSON output is turned off.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = os.getenv("LOG_JSON", "true").lower() in _TRUTHY
    if dev_mode is None:
        dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level, logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_run_trace(run_id: str, trace: Iterable[Dict[str, Any]], logger: Optional[Any] = None) -> None:
    """Log one summary line per finished run; the full trace only at debug level."""
    log = logger or get_logger("flowkernel.run")
    entries = list(trace)
    outcomes = Counter(entry.get("outcome") for entry in entries)
    failed = [entry.get("nodeId") for entry in entries if entry.get("outcome") == "failed"]
    log.info("run_trace", run_id=run_id, steps=len(entries), outcomes=dict(outcomes), failed_nodes=failed)
    log.debug("run_trace_detail", run_id=run_id, trace=entries)


MAX_ERROR_MESSAGE_CHARS = 500

# File paths, credential assignments and traceback fragments in handler errors
_SENSITIVE = re.compile(
    r"""
      /(?:home|root|var|etc|usr|opt|tmp|srv)/\S+
    | [A-Za-z]:\\\S+
    | (?:password|secret|token|key|credential|api.?key)\s*[:=]\s*\S+
    | Traceback\ \(most\ recent\ call\ last\):?
    | File\ "[^"]+",\ line\ \d+
    """,
    re.IGNORECASE | re.VERBOSE,
)


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Scrub a handler error message before it is returned to API clients."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = _SENSITIVE.sub(replacement, error)
    if len(result) > MAX_ERROR_MESSAGE_CHARS:
        result = result[: MAX_ERROR_MESSAGE_CHARS - 3] + "..."
    return result


def _public_error(error: Any) -> Dict[str, Any]:
    if isinstance(error, dict):
        return {"code": error.get("code"), "message": sanitize_error_message(error.get("message", ""))}
    return {"code": None, "message": sanitize_error_message(str(error))}


def sanitize_run_trace(trace: list) -> list:
    """Reduce trace entries (``TraceEntry.to_dict`` output) to API-safe fields.

    Attempt counters and error ``data``/``cause`` are dropped; error messages
    are scrubbed with :func:`sanitize_error_message`.
    """
    public = []
    for entry in trace:
        if not isinstance(entry, dict):
            continue
        item = {key: entry.get(key) for key in ("nodeId", "outcome", "timestamp")}
        item["depth"] = entry.get("depth", 0)
        if entry.get("label") is not None:
            item["label"] = entry["label"]
        if entry.get("error"):
            item["error"] = _public_error(entry["error"])
        public.append(item)
    return public
