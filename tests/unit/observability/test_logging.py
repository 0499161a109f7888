"""
data-handler — unit tests for observability logging

File: tests/unit/observability/test_logging.py

What this test file should cover
- structlog events and plain ``logging`` records both render as JSON lines.
- Correlation scopes bind, nest and restore, including handler operations
  that log from worker threads.
- Reconfiguration replaces the handler and honors the level.
"""

from __future__ import annotations

import io
import json
import logging
from typing import TYPE_CHECKING, Any

import pytest
import structlog

from data_handler.domain.records import Record, Schema, persistent_model
from data_handler.handler.crud import DataHandler
from data_handler.observability.logging import (
    DEFAULT_LOGGER_NAME,
    configure_structlog,
    correlation_scope,
    get_correlation_context,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@persistent_model
class Memo(Record):
    text: str

    @classmethod
    def convert(cls, dto: Any) -> Memo | None:
        return cls(text=dto) if isinstance(dto, str) and dto else None

    def update(self, new_item: Memo) -> None:
        self.text = new_item.text


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    yield
    logger = logging.getLogger(DEFAULT_LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()


def _lines(stream: io.StringIO) -> list[dict[str, Any]]:
    return [json.loads(line) for line in stream.getvalue().splitlines()]


def test_structlog_events_render_as_json_with_correlation_fields() -> None:
    stream = io.StringIO()
    configure_structlog(stream=stream)

    with correlation_scope(handler_id="handler-1", operation="create_item"):
        structlog.get_logger("data_handler.tests").info("item_created", entity="Memo")

    (line,) = _lines(stream)
    assert line["event"] == "item_created"
    assert line["entity"] == "Memo"
    assert line["handler_id"] == "handler-1"
    assert line["operation"] == "create_item"
    assert line["level"] == "info"
    assert line["logger"] == "data_handler.tests"
    assert str(line["timestamp"]).endswith("Z")


def test_stdlib_records_share_the_json_format() -> None:
    stream = io.StringIO()
    configure_structlog(stream=stream)

    with correlation_scope(operation="fetch_items"):
        logging.getLogger("data_handler.persistence").warning("slow query", extra={"rows": 3})

    (line,) = _lines(stream)
    assert line["event"] == "slow query"
    assert line["rows"] == 3
    assert line["operation"] == "fetch_items"
    assert line["level"] == "warning"


def test_correlation_scopes_nest_and_restore() -> None:
    with correlation_scope(handler_id="outer"):
        with correlation_scope(handler_id="inner", operation="read_item"):
            assert get_correlation_context() == {"handler_id": "inner", "operation": "read_item"}
        assert get_correlation_context() == {"handler_id": "outer"}
    assert get_correlation_context() == {}


def test_correlation_values_must_not_be_blank() -> None:
    with pytest.raises(ValueError, match="must not be empty"):
        with correlation_scope(operation="   "):
            pass
    assert get_correlation_context() == {}


def test_reconfiguring_replaces_handler_and_applies_level(tmp_path: Path) -> None:
    first = io.StringIO()
    configure_structlog(stream=first)
    log_file = tmp_path / "logs" / "data_handler.jsonl"
    handler = configure_structlog(level="warning", log_file=log_file)

    logger = structlog.get_logger("data_handler.tests")
    logger.info("dropped")
    logger.error("kept", code=7)
    handler.flush()

    assert logging.getLogger(DEFAULT_LOGGER_NAME).handlers == [handler]
    assert first.getvalue() == ""
    lines = [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines()]
    assert [(line["event"], line["code"]) for line in lines] == [("kept", 7)]


def test_unknown_level_is_rejected() -> None:
    with pytest.raises(ValueError, match="unsupported logging level"):
        configure_structlog(level="chatty", stream=io.StringIO())


@pytest.mark.asyncio
async def test_handler_operations_log_their_correlation_fields() -> None:
    stream = io.StringIO()
    configure_structlog(stream=stream)

    async with await DataHandler.open(":memory:", Schema([Memo])) as handler:
        await handler.create_item("remember", Memo)

    events = {line["event"]: line for line in _lines(stream)}
    created = events["item_created"]
    assert created["handler_id"] == handler.handler_id
    assert created["operation"] == "create_item"
    assert created["entity"] == "Memo"
    assert "operation" not in events["handler_opened"]
    assert get_correlation_context() == {}
