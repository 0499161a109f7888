"""Handler environment: default factory, scoped overrides, and lazily built handlers."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from data_handler.config import load_config
from data_handler.handler.crud import CRUDHandler, DataHandler
from data_handler.handler.environment import (
    DataHandlerKey,
    HandlerEnvironment,
    LazyHandlerFactory,
    current_environment,
    current_handler_factory,
    handler_factory_from_config,
    in_memory_handler_factory,
    persistent_handler_factory,
    reset_handler_factory,
    set_handler_factory,
    use_handler_factory,
)
from data_handler.persistence.fetch import FetchDescriptor

from . import SCHEMA, Item, ItemDTO, Label, Parent

if TYPE_CHECKING:
    from pathlib import Path


@pytest.mark.asyncio
async def test_default_factory_yields_no_handler() -> None:
    assert await DataHandlerKey.default_value() is None
    assert await HandlerEnvironment().data_handler() is None
    assert await current_handler_factory()() is None


def test_environment_values_are_immutable_copies() -> None:
    async def factory() -> CRUDHandler | None:
        return None

    base = HandlerEnvironment()
    configured = base.with_value(DataHandlerKey, factory)

    assert base[DataHandlerKey] is DataHandlerKey.default_value
    assert configured.data_handler is factory
    assert configured.without(DataHandlerKey).data_handler is DataHandlerKey.default_value


@pytest.mark.asyncio
async def test_use_handler_factory_is_scoped() -> None:
    factory = in_memory_handler_factory(SCHEMA)

    with use_handler_factory(factory):
        assert current_handler_factory() is factory
        handler = await current_handler_factory()()
        assert isinstance(handler, DataHandler)

    assert current_handler_factory() is DataHandlerKey.default_value
    await factory.aclose()


@pytest.mark.asyncio
async def test_set_and_reset_handler_factory() -> None:
    factory = in_memory_handler_factory([Item, Label, Parent])
    before = current_environment()

    token = set_handler_factory(factory)
    try:
        assert current_handler_factory() is factory
    finally:
        reset_handler_factory(token)

    assert current_environment() is before
    with pytest.raises(TypeError, match="callable"):
        set_handler_factory("not a factory")  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_overrides_do_not_leak_between_tasks() -> None:
    factory = in_memory_handler_factory(SCHEMA)
    seen: dict[str, object] = {}

    async def configured() -> None:
        with use_handler_factory(factory):
            await asyncio.sleep(0)
            seen["configured"] = current_handler_factory()

    async def bare() -> None:
        await asyncio.sleep(0)
        seen["bare"] = current_handler_factory()

    await asyncio.gather(configured(), bare())

    assert seen["configured"] is factory
    assert seen["bare"] is DataHandlerKey.default_value


@pytest.mark.asyncio
async def test_lazy_factory_builds_one_handler_even_under_concurrent_first_calls() -> None:
    factory = in_memory_handler_factory(SCHEMA)
    assert factory.handler is None

    first, second = await asyncio.gather(factory(), factory())
    third = await factory()

    assert first is second is third
    assert factory.handler is first
    assert first is not None
    item_id = await first.create_item(ItemDTO("shared"), Item)
    assert (await first.read_item(item_id, Item)).name == "shared"
    await factory.aclose()
    assert factory.handler is None
    assert isinstance(first, DataHandler)
    assert first.is_closed

    reopened = await factory()
    assert reopened is not first
    assert reopened is not None
    assert await reopened.fetch_items(FetchDescriptor(Item)) == []
    await factory.aclose()


@pytest.mark.asyncio
async def test_lazy_factory_propagates_opener_errors_and_retries_on_next_call() -> None:
    calls = 0

    async def opener() -> DataHandler:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("store unavailable")
        return await DataHandler.open(":memory:", SCHEMA)

    factory = LazyHandlerFactory(opener)

    with pytest.raises(RuntimeError, match="unavailable"):
        await factory()
    handler = await factory()

    assert isinstance(handler, DataHandler)
    assert calls == 2
    await factory.aclose()


@pytest.mark.asyncio
async def test_persistent_factory_opens_file_store(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "records.sqlite3"
    factory = persistent_handler_factory(path, SCHEMA, handler_id="handler-files")

    handler = await factory()

    assert isinstance(handler, DataHandler)
    assert handler.handler_id == "handler-files"
    assert path.exists()
    await factory.aclose()


@pytest.mark.asyncio
async def test_factory_from_loaded_config(tmp_path: Path) -> None:
    config_path = tmp_path / "data_handler.toml"
    config_path.write_text(
        "[store]\npath = \"db/records.sqlite3\"\nbusy_retry_limit = 1\n", encoding="utf-8"
    )
    config = load_config(config_path, environ={})
    assert config["store"]["path"] == (tmp_path.resolve() / "db" / "records.sqlite3").as_posix()

    factory = handler_factory_from_config(config, SCHEMA)
    handler = await factory()

    assert isinstance(handler, DataHandler)
    assert (tmp_path / "db" / "records.sqlite3").exists()
    await factory.aclose()

    in_memory = handler_factory_from_config(
        load_config(config_path, overrides={"store.in_memory": True}, environ={}),
        SCHEMA,
    )
    memory_handler = await in_memory()
    assert isinstance(memory_handler, DataHandler)
    assert memory_handler.context.store.is_in_memory
    await in_memory.aclose()


def test_factory_from_config_requires_store_section() -> None:
    with pytest.raises(ValueError, match="store"):
        handler_factory_from_config({}, SCHEMA)
    with pytest.raises(ValueError, match="store.path"):
        handler_factory_from_config({"store": {"path": ""}}, SCHEMA)
