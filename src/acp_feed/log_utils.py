"""Logging setup and structured event helpers for the feed engine.

Every log line is a short dotted event name (`feed.persist.failed`) followed by
`key=value` fields. Task, provider and session identifiers are attached once
per block with `log_context` instead of being passed to every call.
"""

from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator

from acp_feed.paths import log_dir

DEFAULT_LOG_MAX_BYTES = 5_000_000
DEFAULT_LOG_BACKUPS = 3
TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

_LOG_CONTEXT: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("acp_feed_log_context", default={})
_LOG_CHUNKS_ENABLED = False


@dataclass(frozen=True)
class LogConfig:
    """Where and how feed logs are written.

    `logger_levels` narrows or widens individual loggers, e.g.
    `{"acp_feed.persistence": logging.DEBUG}`.
    """

    log_file: Path
    level: int = logging.INFO
    stderr: bool = False
    json: bool = False
    log_chunks: bool = False
    max_bytes: int = DEFAULT_LOG_MAX_BYTES
    backup_count: int = DEFAULT_LOG_BACKUPS
    logger_levels: Dict[str, int] = field(default_factory=dict)


def parse_level(value: str | None, default: int) -> int:
    if not value:
        return default
    value = value.strip()
    if value.isdigit():
        return int(value)
    return logging.getLevelName(value.upper()) if value.upper() in logging._nameToLevel else default


def parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_int(value: str | None, default: int) -> int:
    """Parse an integer setting, returning the default on invalid input."""
    if value is None:
        return default
    with contextlib.suppress(ValueError):
        return int(value)
    return default


def parse_logger_levels(value: str | None) -> Dict[str, int]:
    """Parse `name=LEVEL,name=LEVEL` into a logger level map; bad entries are skipped."""
    levels: Dict[str, int] = {}
    for part in (value or "").split(","):
        name, sep, level = part.partition("=")
        name = name.strip()
        if not sep or not name:
            continue
        parsed = parse_level(level, -1)
        if parsed >= 0:
            levels[name] = parsed
    return levels


def build_log_config(*, log_file_name: str, default_level: int = logging.INFO) -> LogConfig:
    """Read `ACP_FEED_LOG_*` settings into a LogConfig."""
    directory = Path(os.getenv("ACP_FEED_LOG_DIR") or str(log_dir()))
    directory.mkdir(parents=True, exist_ok=True)

    return LogConfig(
        log_file=directory / log_file_name,
        level=parse_level(os.getenv("ACP_FEED_LOG_LEVEL"), default_level),
        stderr=parse_bool(os.getenv("ACP_FEED_LOG_STDERR"), False),
        json=parse_bool(os.getenv("ACP_FEED_LOG_JSON"), False),
        log_chunks=parse_bool(os.getenv("ACP_FEED_LOG_CHUNKS"), False),
        max_bytes=parse_int(os.getenv("ACP_FEED_LOG_MAX_BYTES"), DEFAULT_LOG_MAX_BYTES),
        backup_count=parse_int(os.getenv("ACP_FEED_LOG_BACKUPS"), DEFAULT_LOG_BACKUPS),
        logger_levels=parse_logger_levels(os.getenv("ACP_FEED_LOG_LEVELS")),
    )


def _make_formatter(config: LogConfig) -> logging.Formatter:
    if config.json:
        return JsonFormatter()
    return ContextFormatter(TEXT_FORMAT)


def _prepare(handler: logging.Handler, formatter: logging.Formatter) -> logging.Handler:
    handler.setFormatter(formatter)
    handler.addFilter(ContextFilter())
    return handler


def configure_logging(config: LogConfig) -> None:
    """Install the feed log handlers on the root logger.

    Existing root handlers are removed first so repeated calls (tests, CLI
    re-entry) do not duplicate output.
    """

    global _LOG_CHUNKS_ENABLED
    _LOG_CHUNKS_ENABLED = config.log_chunks

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.setLevel(config.level)

    formatter = _make_formatter(config)
    root_logger.addHandler(
        _prepare(
            RotatingFileHandler(
                config.log_file,
                maxBytes=config.max_bytes,
                backupCount=config.backup_count,
                encoding="utf-8",
            ),
            formatter,
        )
    )
    if config.stderr:
        root_logger.addHandler(_prepare(logging.StreamHandler(), formatter))

    for name, level in config.logger_levels.items():
        logging.getLogger(name).setLevel(level)


def log_chunks_enabled() -> bool:
    """Per-chunk and per-terminal-write logging is opt-in."""
    return _LOG_CHUNKS_ENABLED


@contextlib.contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach context fields to every record logged inside the block. None values are skipped."""
    current = _LOG_CONTEXT.get()
    merged = {**current, **{k: v for k, v in fields.items() if v is not None}}
    token = _LOG_CONTEXT.set(merged)
    try:
        yield
    finally:
        _LOG_CONTEXT.reset(token)


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    logger.log(level, event, extra={"event_fields": fields})


def _format_value(value: Any) -> str:
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, str):
        if value == "":
            return '""'
        if any(ch.isspace() for ch in value) or "=" in value or '"' in value:
            return json.dumps(value)
        return value
    if isinstance(value, (dict, list, tuple, set)):
        if isinstance(value, set):
            value = sorted(value, key=str)
        return json.dumps(value, ensure_ascii=True, separators=(",", ":"), default=str)
    return str(value)


def _format_fields(fields: Dict[str, Any]) -> str:
    return " ".join(f"{key}={_format_value(fields[key])}" for key in sorted(fields) if fields[key] is not None)


class ContextFilter(logging.Filter):
    """Copy the active log context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003 - logging API name
        record.context_fields = dict(_LOG_CONTEXT.get())
        record.event_fields = getattr(record, "event_fields", {})
        return True


class ContextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extra = " ".join(
            part
            for part in (
                _format_fields(getattr(record, "context_fields", {})),
                _format_fields(getattr(record, "event_fields", {})),
            )
            if part
        )
        return f"{base} {extra}" if extra else base


class JsonFormatter(logging.Formatter):
    """One JSON object per line, with context and event fields nested."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        context = getattr(record, "context_fields", {})
        fields = getattr(record, "event_fields", {})
        if context:
            payload["context"] = context
        if fields:
            payload["fields"] = fields
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


__all__ = [
    "LogConfig",
    "build_log_config",
    "configure_logging",
    "log_chunks_enabled",
    "log_context",
    "log_event",
    "parse_bool",
    "parse_int",
    "parse_level",
    "parse_logger_levels",
]
