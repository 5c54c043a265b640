"""Central logging configuration for the NaksYetu backend.

Usage: from .logging_config import configure_logging; configure_logging()

Writes structured key=value logs to stdout (suitable for containers). With
LOG_JSON=true every record is emitted as a single JSON object instead.
"""
from __future__ import annotations

import json
import logging
import os
import re
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler, TimedRotatingFileHandler
from typing import Optional

DOMAIN_LOGGERS = (
    "auth",
    "request",
    "email",
    "orders",
    "payments.mpesa",
    "payouts",
    "promocodes",
    "shortlinks",
    "invitations",
    "verification",
    "audit",
    "notifications",
    "analytics",
    "assistant",
    "listings",
    "partners",
    "advertising",
    "merch",
)

_RESERVED_ATTRS = {
    "args", "msg", "message", "exc_info", "exc_text", "stack_info", "lineno",
    "pathname", "filename", "module", "created", "msecs", "relativeCreated",
    "funcName", "thread", "threadName", "processName", "process", "taskName",
}


def _utc_timestamp(record: logging.LogRecord) -> str:
    dt = datetime.fromtimestamp(record.created, timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S") + f".{int(record.msecs):03d}+00:00"


class KeyValueFormatter(logging.Formatter):
    """Minimal key=value structured formatter.

    Example output:
        2025-09-24T12:00:00.000+00:00 INFO payouts payout.request.created user_id=... rid=...
    """

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:  # type: ignore[override]
        return _utc_timestamp(record)

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        record.asctime = self.formatTime(record)
        extras = []
        for key in ("request_id", "client_ip", "path", "method"):
            val = getattr(record, key, None)
            if val is not None:
                extras.append(f"{key}={val}")
        msg = super().format(record)
        extras_s = " " + " ".join(extras) if extras else ""
        return f"{record.asctime} {record.levelname} {record.name} {msg}{extras_s}"


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        base = {
            "ts": _utc_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for k, v in record.__dict__.items():
            if k.startswith('_') or k in _RESERVED_ATTRS:
                continue
            if isinstance(v, (str, int, float, bool)) or v is None:
                base.setdefault(k, v)
        if record.exc_info:
            base["exc_type"] = record.exc_info[0].__name__ if record.exc_info[0] else None
        return json.dumps(base, ensure_ascii=False)


class PiiMaskFilter(logging.Filter):
    """Mask e-mail local parts and phone numbers (M-Pesa numbers included)."""

    _email_re = re.compile(r"([a-zA-Z0-9_.+-]{1,3})[a-zA-Z0-9_.+-]*@([a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+)")
    _phone_re = re.compile(r"(?<![\w-])(\+?254[0-9]{9}|0[17][0-9]{8})(?!\d)")

    def _mask(self, s: str) -> str:
        s = self._email_re.sub(lambda m: f"{m.group(1)}***@{m.group(2)}", s)
        return self._phone_re.sub("***REDACTED_PHONE***", s)

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._mask(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(self._mask(a) if isinstance(a, str) else a for a in record.args)
        return True


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in {"1", "true", "yes"}


def _parse_size(spec: str) -> int:
    """Parse '10MB', '512k' or a raw byte count; defaults to 5MB."""
    units = (("mb", 1024 * 1024), ("m", 1024 * 1024), ("kb", 1024), ("k", 1024))
    size_str = spec.lower().strip()
    multiplier = 1
    for suffix, mult in units:
        if size_str.endswith(suffix):
            size_str = size_str[: -len(suffix)]
            multiplier = mult
            break
    try:
        return int(size_str) * multiplier
    except ValueError:
        return 5 * 1024 * 1024


def _build_file_handler(base_dir: str, logger_name: str, rotate_when: str, rotate_param: str, backup: int) -> logging.Handler:
    """Create a rotating file handler writing to <base_dir>/<logger>/<date>.log."""
    safe_name = logger_name.replace('.', '_') or 'root'
    log_dir = os.path.join(base_dir, safe_name)
    os.makedirs(log_dir, exist_ok=True)
    today = datetime.now(timezone.utc).strftime('%Y-%m-%d')
    log_path = os.path.join(log_dir, f"{today}.log")
    if rotate_when == 'size':
        return RotatingFileHandler(log_path, maxBytes=_parse_size(rotate_param), backupCount=backup, encoding='utf-8')
    return TimedRotatingFileHandler(log_path, when=rotate_param or 'midnight', backupCount=backup, encoding='utf-8', utc=True)


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root & domain loggers idempotently.

    - LEVEL from LOG_LEVEL env (default INFO)
    - LOG_JSON=true switches to JSON lines
    - LOG_TO_FILES=true adds per-logger rotating files under LOG_DIR
    """
    if getattr(configure_logging, "_configured", False):  # type: ignore[attr-defined]
        return

    log_level = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    json_mode = _env_bool("LOG_JSON", False)
    to_files = _env_bool("LOG_TO_FILES", False)
    base_dir = os.getenv("LOG_DIR", "logs")
    rotate_when = 'size' if os.getenv("LOG_ROTATE_MODE", "size").lower() == 'size' else 'time'
    rotate_param = os.getenv("LOG_ROTATE_PARAM", "10MB")
    backup_count = int(os.getenv("LOG_BACKUP_COUNT", "7"))

    root = logging.getLogger()
    root.setLevel(log_level)
    for h in list(root.handlers):
        root.removeHandler(h)

    formatter: logging.Formatter = JsonFormatter() if json_mode else KeyValueFormatter("%(message)s")
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(PiiMaskFilter())
    root.addHandler(handler)

    for noisy in ("uvicorn", "httpx", "httpcore", "asyncio", "passlib", "google_genai"):
        logging.getLogger(noisy).setLevel(os.getenv("NOISY_LOG_LEVEL", "WARNING").upper())

    if to_files:
        for name in DOMAIN_LOGGERS:
            lg = logging.getLogger(name)
            if not any(isinstance(h, (RotatingFileHandler, TimedRotatingFileHandler)) for h in lg.handlers):
                fh = _build_file_handler(base_dir, name, rotate_when, rotate_param, backup_count)
                fh.setFormatter(formatter)
                fh.addFilter(PiiMaskFilter())
                lg.addHandler(fh)
        root_fh = _build_file_handler(base_dir, 'root', rotate_when, rotate_param, backup_count)
        root_fh.setFormatter(formatter)
        root_fh.addFilter(PiiMaskFilter())
        root.addHandler(root_fh)

    configure_logging._configured = True  # type: ignore[attr-defined]


__all__ = ["configure_logging", "KeyValueFormatter", "JsonFormatter", "PiiMaskFilter", "DOMAIN_LOGGERS"]
