"""
Logging for the Quiver backend.

All modules log through children of the "quiver" logger. Production emits one
JSON object per line; development emits a single readable line. Anything a
caller passes via ``extra=`` (Stripe customer ids, session ids, event ids)
is carried into both formats, with credential-like keys masked.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

ROOT_LOGGER = "quiver"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Attributes every LogRecord carries; anything else arrived through extra=
_RECORD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
    "taskName",
}

_MASKED_KEY_PARTS = ("secret", "signature", "authorization", "password", "api_key")

_MAX_VALUE_CHARS = 500

_LATENCY_BUCKETS = ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms"))


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for upper, label in _LATENCY_BUCKETS:
        if latency_ms < upper:
            return label
    return ">=1000ms"


def _clip(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    text = str(value)
    if len(text) > _MAX_VALUE_CHARS:
        return text[:_MAX_VALUE_CHARS] + "...<truncated>"
    return text


def record_context(record: logging.LogRecord) -> Dict[str, Any]:
    """Fields attached to ``record`` via ``extra=``, masked and clipped, in key order."""
    context: Dict[str, Any] = {}
    for key in sorted(record.__dict__):
        if key in _RECORD_ATTRS or key.startswith("_") or key == "request_id":
            continue
        value = record.__dict__[key]
        if value is None:
            continue
        if any(part in key.lower() for part in _MASKED_KEY_PARTS):
            context[key] = "***"
        else:
            context[key] = _clip(value)
    return context


class RequestIdFilter(logging.Filter):
    """Stamp the current request id on records that do not carry one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": _timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        for key, value in record_context(record).items():
            payload.setdefault(key, value)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        rid = getattr(record, "request_id", None)
        parts = [_timestamp(record), record.levelname, f"[{record.name}]"]
        if rid:
            parts.append(f"[rid={rid}]")
        parts.append(record.getMessage())
        parts.extend(f"{key}={value}" for key, value in record_context(record).items())
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def build_handler(env: str, stream=None) -> logging.Handler:
    """Stream handler with the formatter for ``env`` and request-id stamping."""
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())
    return handler


def configure_logging(env: str = "development", level: str = "INFO") -> None:
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level.upper())
    logger.handlers = [build_handler(env)]
    logger.propagate = True

    # uvicorn keeps its own handlers; don't double-print through root
    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.error").propagate = False


def log_event(
    level: str,
    msg: str,
    *,
    user_id: Optional[str] = None,
    event_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    **context: Any,
) -> None:
    """
    Log a billing or entitlement event on the "quiver" logger.

    Keyword context becomes structured fields; unset identifiers are omitted.
    """
    fields = {
        "user_id": user_id,
        "event_id": event_id,
        "event_type": event_type,
        "error_code": error_code,
        **context,
    }
    logging.getLogger(ROOT_LOGGER).log(
        logging.getLevelName(level.upper()),
        msg,
        extra={k: v for k, v in fields.items() if v is not None},
    )
