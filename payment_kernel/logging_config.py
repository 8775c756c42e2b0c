"""
Structured JSON logging for the payment ledger.

Every ledger write, refund step, credit note change, reconciliation pass
and webhook delivery is logged as a named event (``ledger_entry_written``,
``refund_item_completed``, ``webhook_duplicate_ignored`` ...) with its
identifiers in ``extra``.  One JSON object per line so the stream can be
joined on ``order_id`` or ``idempotency_key`` when a gateway disputes a
payment.

Request-scoped fields are carried in ``LogContext``:

    correlation_id   one PaymentEngine unit of work (and its retries)
    actor_id         the acting principal
    order_id         the order whose ledger is being touched
    idempotency_key  the gateway transaction a webhook resolves to
    session_id       the reconciliation session being worked

Guest checkout and placed-order events carry customer contact details and
session tokens; those fields are masked by the formatter.
"""

__all__ = [
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
    "mask_value",
]

import json
import logging
import sys
import threading
from contextvars import ContextVar
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

# ---------------------------------------------------------------------------
# Context propagation
# ---------------------------------------------------------------------------

_FIELD_NAMES = (
    "correlation_id",
    "actor_id",
    "order_id",
    "idempotency_key",
    "session_id",
)

_VARS: dict[str, ContextVar[str | None]] = {
    name: ContextVar(f"log_{name}", default=None) for name in _FIELD_NAMES
}


class LogContext:
    """Request-scoped payment identifiers merged into every record.

    Values are stringified on the way in so UUIDs can be passed directly.
    Unknown field names are a programming error and raise ``KeyError``.
    """

    @classmethod
    def set(cls, **fields: Any) -> None:
        for name, val in fields.items():
            if name not in _VARS:
                raise KeyError(f"Unknown log context field: {name}")
            if val is not None:
                _VARS[name].set(str(val))

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return {name: var.get() for name, var in _VARS.items() if var.get() is not None}

    @classmethod
    def clear(cls) -> None:
        for var in _VARS.values():
            var.set(None)

    @classmethod
    def bind(cls, **fields: Any) -> "_BoundContext":
        """Scope fields to a ``with`` block, e.g. one engine unit of work."""
        return _BoundContext(**fields)


class _BoundContext:
    def __init__(self, **fields: Any):
        self._fields = fields
        self._tokens: dict[str, Any] = {}

    def __enter__(self) -> type[LogContext]:
        for name, val in self._fields.items():
            if val is not None and name in _VARS:
                self._tokens[name] = _VARS[name].set(str(val))
        return LogContext

    def __exit__(self, *exc: Any) -> None:
        for name, token in self._tokens.items():
            _VARS[name].reset(token)


# ---------------------------------------------------------------------------
# Masking
# ---------------------------------------------------------------------------

# Contact details and bearer values that reach logs through guest checkout,
# placed orders and raw gateway payloads.
MASKED_FIELDS: frozenset[str] = frozenset({
    "guest_email",
    "customer_email",
    "email",
    "guest_phone",
    "phone",
    "session_token",
    "guest_session_token",
    "webhook_secret",
    "api_key",
    "card_number",
})


def mask_value(value: Any) -> str:
    """Keep an email's first letter and domain, or a token's two end characters."""
    text = str(value)
    if "@" in text:
        local, _, domain = text.partition("@")
        return f"{local[:1]}***@{domain}"
    if len(text) <= 4:
        return "****"
    return f"{text[:2]}{'*' * (len(text) - 4)}{text[-2:]}"


def _masked(key: str, val: Any) -> Any:
    if val is None:
        return None
    if key in MASKED_FIELDS:
        return mask_value(val)
    if isinstance(val, dict):
        return {k: _masked(str(k), v) for k, v in val.items()}
    return val


# ---------------------------------------------------------------------------
# JSON Formatter
# ---------------------------------------------------------------------------

_STDLIB_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "taskName"}


class _PaymentJSONEncoder(json.JSONEncoder):
    """Money stays exact: Decimals are written as strings, never floats."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, UUID):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per record.

    Key order: ``ts``, ``level``, ``logger``, ``message``, then the
    ``LogContext`` fields, then the caller's ``extra``.  A ``PaymentKernelError``
    attached through ``exc_info`` contributes its ``code`` and structured
    attributes as ``exc_*`` keys.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        payload.update(LogContext.get_all())

        for key, val in vars(record).items():
            if key not in _STDLIB_KEYS and key not in payload:
                payload[key] = _masked(key, val)

        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            payload["exc_type"] = type(exc).__name__
            payload["exc_message"] = str(exc)
            if hasattr(exc, "code"):
                payload["exc_code"] = exc.code
            for k, v in vars(exc).items():
                if not k.startswith("_") and k not in ("args", "code"):
                    payload[f"exc_{k}"] = _masked(k, v)
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, cls=_PaymentJSONEncoder, default=str)


# ---------------------------------------------------------------------------
# Logger factory and setup
# ---------------------------------------------------------------------------

_ROOT = "payment_kernel"

_configured = False
_lock = threading.Lock()


def get_logger(name: str) -> logging.Logger:
    """``get_logger("services.ledger")`` -> ``payment_kernel.services.ledger``."""
    return logging.getLogger(f"{_ROOT}.{name}")


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """
    Attach one JSON handler to the ``payment_kernel`` logger.

    Only the first call has an effect.  Records do not propagate to the
    root logger, so host applications decide where payment events go.
    """
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    root = logging.getLogger(_ROOT)
    root.setLevel(level)
    root.propagate = False

    h = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    h.setFormatter(StructuredFormatter())
    root.addHandler(h)


def reset_logging() -> None:
    """Drop handlers and allow ``configure_logging`` again. Tests only."""
    global _configured
    with _lock:
        _configured = False
    root = logging.getLogger(_ROOT)
    root.handlers.clear()
    root.setLevel(logging.WARNING)
