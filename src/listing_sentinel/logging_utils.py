# src/listing_sentinel/logging_utils.py
"""Structured logging for the pipeline.

Log calls are written as ``"event_name key=%s other=%d"``.  The JSON formatter
splits the rendered message back into an ``event`` field plus one field per
``key=value`` pair, so ``jq 'select(.event=="listing_event_accepted")'`` works
on the rotating ``sentinel.jsonl`` without any parsing on the reader side.
"""

import json
import logging
import logging.handlers
import re
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .config import get_settings

# Attributes every LogRecord carries; anything else came in through ``extra``
_RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "taskName",
}

_EVENT_RE = re.compile(r"^([a-z][a-z0-9_]*)(?:\s|$)")
_KV_RE = re.compile(r"(\w+)=(\S+)")

# Third-party loggers that are noisy at INFO
_QUIET_LOGGERS = ("aiohttp.access", "aiohttp.client", "asyncio")


def _jsonify(value: Any) -> Any:
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return str(value)


def split_event(message: str) -> Tuple[str, Dict[str, str]]:
    """``"poll_cycle_done fetched=3 accepted=1"`` -> ``("poll_cycle_done", {...})``."""
    m = _EVENT_RE.match(message)
    if not m:
        return "", {}
    return m.group(1), dict(_KV_RE.findall(message[m.end():]))


def _timestamp(record: logging.LogRecord) -> str:
    return time.strftime(
        "%Y-%m-%dT%H:%M:%S", time.gmtime(record.created)
    ) + ".%03dZ" % record.msecs


def _extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        k: _jsonify(v)
        for k, v in record.__dict__.items()
        if k not in _RESERVED and not k.startswith("_")
    }


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        event, fields = split_event(message)
        doc: Dict[str, Any] = {
            "ts": _timestamp(record),
            "level": record.levelname,
            "logger": record.name,
        }
        if event:
            doc["event"] = event
            for k, v in fields.items():
                doc.setdefault(k, v)
        doc["msg"] = message
        for k, v in _extras(record).items():
            doc.setdefault(k, v)
        if record.exc_info:
            doc["exc"] = self.formatException(record.exc_info)
        return json.dumps(doc, ensure_ascii=False)


class PlainFormatter(logging.Formatter):
    """Single-line console format with coloured levels."""

    COLOURS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        colour = self.COLOURS.get(record.levelno, "")
        level = f"{colour}{record.levelname:<8}{self.RESET if colour else ''}"
        parts = [_timestamp(record), level, f"{record.name}:", record.getMessage()]
        parts.extend(f"{k}={v}" for k, v in _extras(record).items())
        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _rotating(path: Path, backups: int, level: int = logging.NOTSET) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=10 * 1024 * 1024, backupCount=backups, encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(JsonFormatter())
    return handler


def setup_logging(level: Optional[str] = None) -> None:
    """Install console and file handlers on the root logger.

    Console output is JSON unless ``LOG_PLAIN=1``.  ``DATA_DIR/logs`` gets
    ``sentinel.jsonl`` (everything) and ``errors.log`` (WARNING and up), both
    rotated with ``LOG_ROTATION_DAYS`` backups.  An explicit ``level`` wins
    over ``LOG_LEVEL``.
    """
    settings = get_settings()
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel((level or settings.log_level or "INFO").upper())

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(PlainFormatter() if settings.log_plain else JsonFormatter())
    root.addHandler(console)

    log_dir = settings.data_dir / "logs"
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        root.addHandler(_rotating(log_dir / "sentinel.jsonl", settings.log_rotation_days))
        root.addHandler(
            _rotating(log_dir / "errors.log", settings.log_rotation_days, logging.WARNING)
        )
    except OSError as e:
        root.warning("log_files_disabled dir=%s err=%s", log_dir, str(e))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"listing_sentinel.{name}")
