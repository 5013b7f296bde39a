"""Unit tests for logging setup and the structured log formats."""

from __future__ import annotations

import asyncio
import json
import logging

from infra.logging_config import (
    JsonFormatter,
    StructuredLogger,
    TextFormatter,
    clear_request_context,
    get_request_context,
    set_request_context,
    setup_logging,
)


def _record(msg: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("artifactstream.test", logging.INFO, __file__, 10, msg, (), None)
    for k, v in extra.items():
        setattr(record, k, v)
    return record


def test_json_formatter_merges_extra_and_context() -> None:
    """JSON lines carry extra fields and the task's request context."""
    set_request_context(run_id="run-1", artifact="/case/SYSTEM")
    try:
        line = JsonFormatter(extra_fields={"service": "artifactstream"}).format(_record(records=12))
    finally:
        clear_request_context()
    payload = json.loads(line)

    assert payload["message"] == "hello"
    assert payload["level"] == "INFO"
    assert payload["records"] == 12
    assert payload["service"] == "artifactstream"
    assert payload["run_id"] == "run-1"
    assert payload["artifact"] == "/case/SYSTEM"
    assert payload["timestamp"].endswith("Z")


def test_json_formatter_includes_exception() -> None:
    """Exception text is attached when present."""
    try:
        raise ValueError("boom")
    except ValueError:
        import sys

        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
    payload = json.loads(JsonFormatter().format(record))
    assert "ValueError: boom" in payload["exception"]


def test_text_formatter_uses_utc_marker() -> None:
    """Text logs put a Z after the timestamp."""
    text = TextFormatter().format(_record())
    assert "Z | INFO | artifactstream.test | hello" in text


def test_request_context_is_per_task() -> None:
    """Each asyncio task sees only its own context."""

    async def worker(name: str) -> dict:
        set_request_context(worker=name)
        await asyncio.sleep(0)
        return get_request_context()

    async def main() -> list[dict]:
        return list(await asyncio.gather(worker("a"), worker("b")))

    assert asyncio.run(main()) == [{"worker": "a"}, {"worker": "b"}]


def test_structured_logger_emits_event_fields(caplog) -> None:
    """Event names become the message and keyword fields become record attributes."""
    log = StructuredLogger("artifactstream.events")
    with caplog.at_level(logging.INFO, logger="artifactstream.events"):
        log.info("artifact_decoded", records=5)

    assert caplog.records[0].getMessage() == "artifact_decoded"
    assert caplog.records[0].event == "artifact_decoded"
    assert caplog.records[0].records == 5


def test_setup_logging_override_installs_single_handler(monkeypatch) -> None:
    """Override mode replaces root handlers with one stderr handler."""
    root = logging.getLogger()
    saved = list(root.handlers)
    saved_level = root.level
    monkeypatch.delenv("ARTIFACTSTREAM_LOG_LEVEL", raising=False)
    try:
        setup_logging(level="warning", json_logs=True, override_root_handlers=True)
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert root.level == logging.WARNING
    finally:
        for h in list(root.handlers):
            root.removeHandler(h)
        for h in saved:
            root.addHandler(h)
        root.setLevel(saved_level)
