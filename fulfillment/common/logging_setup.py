import logging
import sys
import json
import re
from typing import Any, Dict, Optional
from logging.handlers import QueueHandler, QueueListener
from queue import Queue
from fulfillment.config.admin_config import admin_config
from fulfillment.common.constants import order_id_ctx, request_id_ctx

ENV = getattr(admin_config, "ENV", "dev").lower()

# key=value and "key": "value" forms are redacted in free text outside dev
SENSITIVE_KEYS = ("password", "secret", "token", "authorization", "api_key", "signature",
                  "card", "cvv", "vpa")
_SENSITIVE_JSON = re.compile(rf'("(?:{"|".join(SENSITIVE_KEYS)})"\s*:\s*")[^"]+(")', re.IGNORECASE)
_SENSITIVE_KV = re.compile(rf'((?:{"|".join(SENSITIVE_KEYS)})\s*[=:]\s*)[\w\-\./+]+', re.IGNORECASE)

# structured fields that identify a person or a payment get partially masked
MASKED_FIELDS = ("user_id", "email", "phone", "payment_id", "admin_id")

_RECORD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}


def redact(text: str) -> str:
    text = _SENSITIVE_JSON.sub(r"\1[REDACTED]\2", text)
    return _SENSITIVE_KV.sub(r"\1[REDACTED]", text)


def mask_value(val: Any) -> str:
    val = str(val)
    if "@" in val:
        local, _, domain = val.partition("@")
        return f"{local[:2]}***@{domain}"
    if len(val) > 12:
        return val[:6] + "..." + val[-4:]
    return val[:4] + "..."


def record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS and not k.startswith("_")}


class JSONFormatter(logging.Formatter):
    """One json object per line; what log shippers in staging/prod ingest."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "event": redact(record.getMessage()),
            "function": record.funcName,
            "line": record.lineno,
            "env": ENV,
            "service": getattr(admin_config, "SERVICE_NAME", "fulfillment"),
        }

        extras = record_extras(record)
        for field in MASKED_FIELDS:
            if extras.get(field) is not None:
                extras[field] = mask_value(extras[field])
        log_data.update(extras)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class DevFormatter(logging.Formatter):
    """Human readable line with the structured extras appended."""

    def __init__(self):
        super().__init__("%(asctime)s [%(levelname)8s] %(name)s:%(funcName)s:%(lineno)d | %(message)s",
                         datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = record_extras(record)
        if extras:
            line = f"{line} {' '.join(f'{k}={v}' for k, v in extras.items())}"
        return line


_queue_listener: Optional[QueueListener] = None


def setup_logging():
    """Root logging goes through a queue so request handlers never block on stdout."""
    global _queue_listener

    log_level = logging.INFO if ENV in ("prod", "staging") else logging.DEBUG

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    if _queue_listener is not None:
        _queue_listener.stop()

    q: Queue = Queue(-1)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(DevFormatter() if ENV == "dev" else JSONFormatter())

    root.setLevel(log_level)
    root.addHandler(QueueHandler(q))

    _queue_listener = QueueListener(q, console_handler, respect_handler_level=True)
    _queue_listener.start()

    logging.getLogger("uvicorn.access").setLevel(logging.INFO if ENV == "dev" else logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    return get_logger("fulfillment.app")


def stop_logging():
    global _queue_listener
    if _queue_listener is not None:
        _queue_listener.stop()
        _queue_listener = None


class ContextLogger(logging.LoggerAdapter):
    """Adds the current request id and, inside background jobs, the order being worked on."""

    def process(self, msg, kwargs):
        extra = dict(kwargs.get("extra") or {})
        rid = request_id_ctx.get()
        if rid:
            extra.setdefault("request_id", rid)
        oid = order_id_ctx.get()
        if oid:
            extra.setdefault("order_id", oid)
        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str = "fulfillment.app") -> ContextLogger:
    return ContextLogger(logging.getLogger(name), {})
