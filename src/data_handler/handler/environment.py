"""
data-handler — handler environment.

File: src/data_handler/handler/environment.py

Purpose
- Expose a deferred, asynchronous way to obtain a configured CRUD handler
  from ambient context, defaulting to "no handler configured".

Functional requirements
- ``DataHandlerKey.default_value`` is a factory that yields ``None``.
- Store-backed factories open the store and build the handler on first call
  and return that same handler afterwards.
- Scoped overrides use a ``contextvars`` variable, so concurrent tasks see
  their own environment.
"""

from __future__ import annotations

import asyncio
import contextvars
from collections.abc import Awaitable, Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from types import MappingProxyType
from typing import Any, ClassVar, Generic, TypeAlias, TypeVar, cast

from data_handler.constants import IN_MEMORY_STORE_PATH
from data_handler.domain.records import Record, Schema
from data_handler.handler.crud import CRUDHandler, DataHandler

T = TypeVar("T")

HandlerFactory: TypeAlias = Callable[[], Awaitable[CRUDHandler | None]]


async def _no_handler() -> CRUDHandler | None:
    return None


class EnvironmentKey(Generic[T]):
    """Key into a ``HandlerEnvironment``; subclasses provide ``default_value``."""

    default_value: ClassVar[Any]


class DataHandlerKey(EnvironmentKey[HandlerFactory]):
    default_value: ClassVar[HandlerFactory] = staticmethod(_no_handler)


class HandlerEnvironment:
    """Immutable key/value environment with per-key defaults."""

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[type[EnvironmentKey[Any]], object] | None = None) -> None:
        self._values: Mapping[type[EnvironmentKey[Any]], object] = MappingProxyType(
            dict(values or {})
        )

    def __getitem__(self, key: type[EnvironmentKey[T]]) -> T:
        if key in self._values:
            return cast(T, self._values[key])
        return cast(T, key.default_value)

    def with_value(self, key: type[EnvironmentKey[T]], value: T) -> HandlerEnvironment:
        updated = dict(self._values)
        updated[key] = value
        return HandlerEnvironment(updated)

    def without(self, key: type[EnvironmentKey[Any]]) -> HandlerEnvironment:
        updated = dict(self._values)
        updated.pop(key, None)
        return HandlerEnvironment(updated)

    @property
    def data_handler(self) -> HandlerFactory:
        return self[DataHandlerKey]


_CURRENT_ENVIRONMENT: contextvars.ContextVar[HandlerEnvironment] = contextvars.ContextVar(
    "data_handler_environment", default=HandlerEnvironment()
)


def current_environment() -> HandlerEnvironment:
    return _CURRENT_ENVIRONMENT.get()


def current_handler_factory() -> HandlerFactory:
    """Return the handler factory visible in the current context."""
    return current_environment().data_handler


def set_handler_factory(factory: HandlerFactory) -> contextvars.Token[HandlerEnvironment]:
    if not callable(factory):
        raise TypeError("handler factory must be callable")
    return _CURRENT_ENVIRONMENT.set(current_environment().with_value(DataHandlerKey, factory))


def reset_handler_factory(token: contextvars.Token[HandlerEnvironment]) -> None:
    _CURRENT_ENVIRONMENT.reset(token)


@contextmanager
def use_handler_factory(factory: HandlerFactory) -> Iterator[HandlerFactory]:
    """Temporarily install ``factory`` as the current handler factory."""
    token = set_handler_factory(factory)
    try:
        yield factory
    finally:
        reset_handler_factory(token)


class LazyHandlerFactory:
    """Handler factory that builds its handler on first call and then reuses it."""

    def __init__(self, opener: Callable[[], Awaitable[DataHandler]]) -> None:
        self._opener = opener
        self._handler: DataHandler | None = None
        self._lock: asyncio.Lock | None = None

    @property
    def handler(self) -> DataHandler | None:
        """The handler built so far, if any."""
        return self._handler

    async def __call__(self) -> CRUDHandler | None:
        if self._handler is not None:
            return self._handler
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if self._handler is None:
                self._handler = await self._opener()
            return self._handler

    async def aclose(self) -> None:
        """Close the built handler; the next call opens a fresh one."""
        handler, self._handler = self._handler, None
        if handler is not None:
            await handler.close()


def persistent_handler_factory(
    path: str | Path,
    models: Schema | Iterable[type[Record]],
    **options: Any,
) -> LazyHandlerFactory:
    """Factory for a handler over the file-backed store at ``path``.

    ``options`` are forwarded to ``DataHandler.open`` (busy timeouts, retry
    limits, ``async_blocking_policy``, ``handler_id``, ``logger``).
    """

    schema = models if isinstance(models, Schema) else Schema(models)
    resolved = Path(path).expanduser()

    async def opener() -> DataHandler:
        return await DataHandler.open(resolved, schema, **options)

    return LazyHandlerFactory(opener)


def in_memory_handler_factory(
    models: Schema | Iterable[type[Record]],
    **options: Any,
) -> LazyHandlerFactory:
    """Factory for a handler over a private in-memory store."""

    schema = models if isinstance(models, Schema) else Schema(models)

    async def opener() -> DataHandler:
        return await DataHandler.open(IN_MEMORY_STORE_PATH, schema, **options)

    return LazyHandlerFactory(opener)


def handler_factory_from_config(
    config: Mapping[str, Any],
    models: Schema | Iterable[type[Record]],
    **options: Any,
) -> LazyHandlerFactory:
    """Build a factory from the ``[store]`` section of a loaded config."""

    store = config.get("store")
    if not isinstance(store, Mapping):
        raise ValueError("config is missing the [store] section")
    store_options: dict[str, Any] = {
        "busy_timeout_ms": store.get("busy_timeout_ms"),
        "busy_retry_limit": store.get("busy_retry_limit"),
        "busy_retry_backoff_ms": store.get("busy_retry_backoff_ms"),
    }
    policy = store.get("async_blocking_policy")
    if policy is not None:
        store_options["async_blocking_policy"] = policy
    store_options.update(options)

    if store.get("in_memory"):
        return in_memory_handler_factory(models, **store_options)
    path = store.get("path")
    if not isinstance(path, str) or not path:
        raise ValueError("config store.path must be a non-empty string")
    return persistent_handler_factory(path, models, **store_options)


__all__ = [
    "DataHandlerKey",
    "EnvironmentKey",
    "HandlerEnvironment",
    "HandlerFactory",
    "LazyHandlerFactory",
    "current_environment",
    "current_handler_factory",
    "handler_factory_from_config",
    "in_memory_handler_factory",
    "persistent_handler_factory",
    "reset_handler_factory",
    "set_handler_factory",
    "use_handler_factory",
]
