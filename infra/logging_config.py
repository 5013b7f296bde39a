"""Centralized logging configuration.

Text logs for operators, JSON logs for collectors. Logs always go to stderr:
stdout is reserved for command output (``artifactstream decode`` prints JSON
lines there).
"""

from __future__ import annotations

import json
import logging
import sys
import time
from collections.abc import Mapping
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from infra.config import get_settings

# Run-scoped context (run_id, artifact, kind, ...) merged into JSON logs.
# Each asyncio task gets its own copy, so decode workers can tag their artifact.
request_ctx: ContextVar[dict[str, Any] | None] = ContextVar("request_ctx", default=None)

_STANDARD_ATTRS = frozenset(
    {
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename", "module",
        "exc_info", "exc_text", "stack_info", "lineno", "funcName", "created", "msecs",
        "relativeCreated", "thread", "threadName", "processName", "process", "taskName",
    }
)

_NOISY_LOGGERS = ("confluent_kafka", "duckdb", "pyarrow")


def set_request_context(**kwargs: Any) -> None:
    """Set context values included in all subsequent log entries of this task."""
    current = dict(request_ctx.get() or {})
    current.update(kwargs)
    request_ctx.set(current)


def clear_request_context() -> None:
    request_ctx.set({})


def get_request_context() -> dict[str, Any]:
    ctx = request_ctx.get()
    return dict(ctx) if ctx else {}


def _utc_iso8601() -> str:
    # Example: 2026-01-24T18:03:12.123Z
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line:
      - message escaped via json.dumps, so output is always valid JSON
      - `extra={...}` keys and the run context are merged in
      - exception text included when present
    """

    def __init__(self, *, extra_fields: Mapping[str, Any] | None = None) -> None:
        super().__init__()
        self._extra_fields = dict(extra_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        base: dict[str, Any] = {
            "timestamp": _utc_iso8601(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
            "process": record.process,
            "thread": record.thread,
        }

        for k, v in record.__dict__.items():
            if k not in _STANDARD_ATTRS and k not in base:
                base[k] = v

        for k, v in self._extra_fields.items():
            base.setdefault(k, v)

        if record.exc_info:
            base["exception"] = self.formatException(record.exc_info)

        for k, v in get_request_context().items():
            base.setdefault(k, v)

        return json.dumps(base, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """
    Human-friendly logs, but UTC timestamps.
    """
    converter = time.gmtime  # UTC

    def __init__(self) -> None:
        super().__init__("%(asctime)sZ | %(levelname)s | %(name)s | %(message)s")


class StructuredLogger:
    """
    Event-style logger: an event name plus keyword fields.

    Usage:
        logger = StructuredLogger(__name__)
        set_request_context(run_id="20260124T180312Z-1a2b")
        logger.info("artifact_decoded", artifact="C:/case/Security.evtx", records=1520)
        # {"timestamp": "...", "event": "artifact_decoded", "run_id": "...",
        #  "artifact": "C:/case/Security.evtx", "records": 1520, ...}
    """

    def __init__(self, name: str) -> None:
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event: str, exc_info: bool = False, **kwargs: Any) -> None:
        extra = {"event": event, **kwargs}
        self._logger.log(level, event, extra=extra, exc_info=exc_info)

    def debug(self, event: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, event, **kwargs)

    def info(self, event: str, **kwargs: Any) -> None:
        self._log(logging.INFO, event, **kwargs)

    def warning(self, event: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, event, **kwargs)

    def error(self, event: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, event, **kwargs)

    def exception(self, event: str, **kwargs: Any) -> None:
        """Log at ERROR with the active exception attached."""
        self._log(logging.ERROR, event, exc_info=True, **kwargs)


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    json_logs: bool = False
    override_root_handlers: bool = False
    extra_fields: Mapping[str, Any] | None = None


def setup_logging(
    *,
    level: str | None = None,
    json_logs: bool | None = None,
    override_root_handlers: bool | None = None,
    extra_fields: Mapping[str, Any] | None = None,
) -> None:
    """
    Central logging setup for the CLI.

    Env vars:
      - ARTIFACTSTREAM_LOG_LEVEL: DEBUG|INFO|WARNING|ERROR (default INFO)
      - ARTIFACTSTREAM_LOG_JSON:  1/0 (default 0)
      - ARTIFACTSTREAM_LOG_OVERRIDE: 1/0 (default 0)
         If 1, replaces any pre-configured root handlers.
         If 0, only configures logging if root has no handlers.
    """
    config = get_settings(reload=True).logging

    cfg = LoggingConfig(
        level=(level or config.level).upper(),
        json_logs=json_logs if json_logs is not None else bool(config.json_logs),
        override_root_handlers=override_root_handlers
        if override_root_handlers is not None
        else bool(config.override_root_handlers),
        extra_fields=extra_fields,
    )

    root = logging.getLogger()
    root.setLevel(getattr(logging, cfg.level, logging.INFO))

    handler = logging.StreamHandler(sys.stderr)
    if cfg.json_logs:
        handler.setFormatter(JsonFormatter(extra_fields=cfg.extra_fields))
    else:
        handler.setFormatter(TextFormatter())

    if cfg.override_root_handlers:
        for h in list(root.handlers):
            root.removeHandler(h)
        root.addHandler(handler)
    elif not root.handlers:
        root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
