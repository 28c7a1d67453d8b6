"""Structured logging for the bridge.

Everything goes to a rotating file (and optionally stderr); stdout belongs to
the ACP transport. Call sites log short event names with `log_event` and
attach session/tool identifiers once with `log_context`.
"""

from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import os
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping

from zai_acp.paths import log_dir

ENV_PREFIX = "ZAI_ACP_LOG_"
DEFAULT_MAX_BYTES = 5_000_000
DEFAULT_BACKUPS = 3
# Engine payloads can be large; text lines clip each field to this many characters.
MAX_TEXT_FIELD_CHARS = 2_000
SDK_LOGGERS = ("acp", "claude_agent_sdk")
TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("zai_acp_log_context", default={})
_chunk_logging = False


@dataclass(frozen=True)
class LogConfig:
    log_file: Path
    level: int = logging.INFO
    stderr: bool = False
    json: bool = False
    log_chunks: bool = False
    max_bytes: int = DEFAULT_MAX_BYTES
    backup_count: int = DEFAULT_BACKUPS
    logger_levels: Dict[str, int] = field(default_factory=dict)


def _env(name: str) -> str | None:
    value = os.getenv(ENV_PREFIX + name)
    return value.strip() if value else None


def _level(value: str | None, default: int) -> int:
    if value is None:
        return default
    if value.isdigit():
        return int(value)
    resolved = logging.getLevelName(value.upper())
    return resolved if isinstance(resolved, int) else default


def _flag(value: str | None) -> bool:
    return value is not None and value.lower() in {"1", "true", "yes", "on"}


def _number(value: str | None, default: int) -> int:
    if value is None or not value.lstrip("-").isdigit():
        return default
    return int(value)


def build_log_config(*, log_file_name: str, default_level: int = logging.INFO) -> LogConfig:
    """Read `ZAI_ACP_LOG_*` settings.

    `ZAI_ACP_LOG_DIR` moves the log file, `ZAI_ACP_LOG_LEVEL` sets the bridge
    level and `ZAI_ACP_LOG_SDK_LEVEL` the `acp` / `claude_agent_sdk` loggers.
    `ZAI_ACP_LOG_STDERR`, `ZAI_ACP_LOG_JSON` and `ZAI_ACP_LOG_CHUNKS` are
    toggles; `ZAI_ACP_LOG_MAX_BYTES` and `ZAI_ACP_LOG_BACKUPS` size the
    rotation.
    """
    directory = Path(_env("DIR") or log_dir())
    directory.mkdir(parents=True, exist_ok=True)
    sdk_level = _env("SDK_LEVEL")
    return LogConfig(
        log_file=directory / log_file_name,
        level=_level(_env("LEVEL"), default_level),
        stderr=_flag(_env("STDERR")),
        json=_flag(_env("JSON")),
        log_chunks=_flag(_env("CHUNKS")),
        max_bytes=_number(_env("MAX_BYTES"), DEFAULT_MAX_BYTES),
        backup_count=_number(_env("BACKUPS"), DEFAULT_BACKUPS),
        logger_levels={name: _level(sdk_level, logging.WARNING) for name in SDK_LOGGERS} if sdk_level else {},
    )


def configure_logging(config: LogConfig) -> None:
    """Replace root handlers with the configured file (and stderr) handlers."""
    global _chunk_logging
    _chunk_logging = config.log_chunks

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(config.level)

    handlers: list[logging.Handler] = [
        RotatingFileHandler(
            config.log_file,
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
    ]
    if config.stderr:
        handlers.append(logging.StreamHandler())
    formatter = JsonFormatter() if config.json else EventFormatter(TEXT_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(ContextFilter())
        root.addHandler(handler)

    for name, level in config.logger_levels.items():
        logging.getLogger(name).setLevel(level)


def log_chunks_enabled() -> bool:
    """Per-delta logging of streamed text; off unless `ZAI_ACP_LOG_CHUNKS` is set."""
    return _chunk_logging


@contextlib.contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Add fields (None values skipped) to every record logged inside the block."""
    token = _context.set({**_context.get(), **{key: value for key, value in fields.items() if value is not None}})
    try:
        yield
    finally:
        _context.reset(token)


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Log `event` as the message with `fields` kept on `record.event_fields`."""
    logger.log(level, event, extra={"event_fields": fields})


def payload_text(value: Any) -> str:
    """Render an arbitrary engine payload for a log line, falling back to repr."""
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="json", by_alias=True, exclude_none=True)
    elif hasattr(value, "__dataclass_fields__"):
        value = {"type": type(value).__name__, **vars(value)}
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return repr(value)


def _text_value(value: Any) -> str:
    if isinstance(value, (dict, list, tuple)):
        text = json.dumps(value, separators=(",", ":"), default=str)
    elif isinstance(value, str):
        needs_quotes = not value or any(ch.isspace() or ch in '="' for ch in value)
        text = json.dumps(value) if needs_quotes else value
    else:
        text = str(value)
    if len(text) > MAX_TEXT_FIELD_CHARS:
        return f"{text[:MAX_TEXT_FIELD_CHARS]}...(+{len(text) - MAX_TEXT_FIELD_CHARS})"
    return text


def _text_fields(fields: Mapping[str, Any]) -> str:
    return " ".join(f"{key}={_text_value(fields[key])}" for key in sorted(fields) if fields[key] is not None)


class ContextFilter(logging.Filter):
    """Copy the active `log_context` onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003 - logging API name
        record.context_fields = dict(_context.get())
        if not hasattr(record, "event_fields"):
            record.event_fields = {}
        return True


class EventFormatter(logging.Formatter):
    """`<time> <level> <logger> <event> [session/tool] key=value ...`"""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = dict(getattr(record, "context_fields", {}))
        session_id = context.pop("session_id", None)
        tool_call_id = context.pop("tool_call_id", None)
        scope = "/".join(str(part) for part in (session_id, tool_call_id) if part)
        parts = [line]
        if scope:
            parts.append(f"[{scope}]")
        for fields in (context, getattr(record, "event_fields", {})):
            rendered = _text_fields(fields)
            if rendered:
                parts.append(rendered)
        return " ".join(parts)


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for jq or log shipping."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
            **getattr(record, "context_fields", {}),
        }
        fields = getattr(record, "event_fields", {})
        if fields:
            payload["fields"] = fields
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)
