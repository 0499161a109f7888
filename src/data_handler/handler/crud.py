"""
data-handler — serialized CRUD handler.

File: src/data_handler/handler/crud.py

Purpose
- Async façade over one ``ModelContext``: create, read, update, delete, fetch
  and relation linking for any record type implementing ``DTOConvertible``.

Functional requirements
- At most one public operation runs at a time per handler; batch operations
  hold access once for the whole batch.
- Every public operation ends with a commit or a rollback of the context.
- Commit failures surface as the operation's ``HandlerError`` kind, chained to
  the store error.

Non-functional requirements
- Store I/O never runs on the event loop thread.
"""

from __future__ import annotations

import asyncio
import copy
import sqlite3
from collections.abc import AsyncIterator, Callable, Iterable, Sequence
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Protocol, TypeVar, cast, runtime_checkable

import structlog

from data_handler.domain import ids
from data_handler.domain.convertible import ensure_convertible
from data_handler.domain.ids import RecordID
from data_handler.domain.records import Record, Schema
from data_handler.handler.errors import (
    CreationFailedError,
    DeleteFailedError,
    HandlerError,
    InvalidDataError,
    ItemNotFoundError,
    UpdateFailedError,
)
from data_handler.handler.relations import RelationSelector, resolve_selector
from data_handler.observability.logging import correlation_scope
from data_handler.persistence.context import ModelContext, SaveResult
from data_handler.persistence.fetch import FetchDescriptor
from data_handler.persistence.store_db import (
    AsyncBlockingPolicy,
    RecordStore,
    RecordStoreClosedError,
    RecordStoreError,
)
from data_handler.utils.concurrency import ExclusiveAccess

R = TypeVar("R", bound=Record)
P = TypeVar("P", bound=Record)
C = TypeVar("C", bound=Record)
T = TypeVar("T")

HANDLER_ID_PREFIX = "handler"

_COMMIT_ERRORS: tuple[type[Exception], ...] = (
    RecordStoreError,
    sqlite3.Error,
    ValueError,
    TypeError,
)


@runtime_checkable
class CRUDHandler(Protocol):
    """Public surface of a serialized persistence handler."""

    async def create_item(self, dto: Any, item_type: type[R]) -> RecordID: ...

    async def create_items(
        self, dtos: Iterable[Any], item_type: type[R], *, atomic: bool = False
    ) -> list[RecordID]: ...

    async def read_item(self, item_id: RecordID, item_type: type[R]) -> R: ...

    async def read_items(self, item_ids: Iterable[RecordID], item_type: type[R]) -> list[R]: ...

    async def update_item(self, item_id: RecordID, dto: Any | None, item_type: type[R]) -> None: ...

    async def delete_item(self, item_id: RecordID, item_type: type[R]) -> None: ...

    async def delete_items(
        self, item_ids: Iterable[RecordID], item_type: type[R], *, atomic: bool = False
    ) -> None: ...

    async def fetch_items(self, descriptor: FetchDescriptor[R]) -> list[RecordID]: ...

    async def add_relation(
        self,
        parent_id: RecordID,
        parent_type: type[P],
        child_ids: Iterable[RecordID],
        child_type: type[C],
        relation: RelationSelector[P, C] | str,
    ) -> None: ...


class DataHandler:
    """Serialized CRUD handler bound to one model context."""

    def __init__(
        self,
        context: ModelContext,
        *,
        handler_id: str | None = None,
        logger: Any | None = None,
    ) -> None:
        self._context = context
        self._handler_id = (
            handler_id if handler_id is not None else ids.generate_prefixed_id(HANDLER_ID_PREFIX)
        )
        self._access = ExclusiveAccess(name=self._handler_id)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._closed = False

    @classmethod
    async def open(
        cls,
        path: str | Path,
        models: Schema | Iterable[type[Record]],
        *,
        busy_timeout_ms: int | None = None,
        busy_retry_limit: int | None = None,
        busy_retry_backoff_ms: int | None = None,
        async_blocking_policy: AsyncBlockingPolicy = "strict",
        handler_id: str | None = None,
        logger: Any | None = None,
    ) -> DataHandler:
        """Open (creating and migrating if needed) the store at ``path`` and bind a handler."""

        schema = models if isinstance(models, Schema) else Schema(models)
        options: dict[str, Any] = {"async_blocking_policy": async_blocking_policy}
        if busy_timeout_ms is not None:
            options["busy_timeout_ms"] = busy_timeout_ms
        if busy_retry_limit is not None:
            options["busy_retry_limit"] = busy_retry_limit
        if busy_retry_backoff_ms is not None:
            options["busy_retry_backoff_ms"] = busy_retry_backoff_ms
        store = RecordStore(path, **options)
        await store.migrate_async()
        handler = cls(
            ModelContext(store, schema, logger=logger),
            handler_id=handler_id,
            logger=logger,
        )
        handler._logger.info(
            "handler_opened",
            handler_id=handler.handler_id,
            store=store.describe(),
            store_id=store.store_id,
            entities=list(schema.entity_names),
        )
        return handler

    @property
    def handler_id(self) -> str:
        return self._handler_id

    @property
    def context(self) -> ModelContext:
        return self._context

    @property
    def is_closed(self) -> bool:
        return self._closed

    def diagnostics(self) -> dict[str, object]:
        return {
            "handler_id": self._handler_id,
            "store": self._context.store.describe(),
            "closed": self._closed,
            "access": self._access.snapshot(),
        }

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_item(self, dto: Any, item_type: type[R]) -> RecordID:
        model = ensure_convertible(item_type)
        async with self._operation("create_item"):
            return await self._offload(self._create_one, dto, model)

    async def create_items(
        self, dtos: Iterable[Any], item_type: type[R], *, atomic: bool = False
    ) -> list[RecordID]:
        """Create one record per DTO, in order.

        By default each DTO commits on its own and the first failure stops the
        batch, leaving earlier records committed. ``atomic=True`` commits all
        records together or none.
        """

        model = ensure_convertible(item_type)
        batch = list(dtos)
        async with self._operation("create_items"):
            if atomic:
                return await self._offload(self._create_atomic, batch, model)
            return await self._offload(
                lambda: [self._create_one(dto, model) for dto in batch]
            )

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def read_item(self, item_id: RecordID, item_type: type[R]) -> R:
        """Return a detached copy of the stored record; edits to it are never saved."""

        model = ensure_convertible(item_type)
        async with self._operation("read_item"):
            item = await self._offload(lambda: _detached(self._require(item_id, model)))
        return cast(R, item)

    async def read_items(self, item_ids: Iterable[RecordID], item_type: type[R]) -> list[R]:
        """Return records for ``item_ids`` in input order, silently skipping misses."""

        model = ensure_convertible(item_type)
        requested = list(item_ids)
        async with self._operation("read_items"):
            items = await self._offload(lambda: _detached(self._lookup_many(requested, model)))
        return cast(list[R], items)

    # ------------------------------------------------------------------
    # Update / delete
    # ------------------------------------------------------------------

    async def update_item(self, item_id: RecordID, dto: Any | None, item_type: type[R]) -> None:
        """Apply the fields of ``dto`` (when it converts) to the stored record and commit."""

        model = ensure_convertible(item_type)
        async with self._operation("update_item"):
            await self._offload(self._update_one, item_id, dto, model)

    async def delete_item(self, item_id: RecordID, item_type: type[R]) -> None:
        model = ensure_convertible(item_type)
        async with self._operation("delete_item"):
            await self._offload(self._delete_one, item_id, model)

    async def delete_items(
        self, item_ids: Iterable[RecordID], item_type: type[R], *, atomic: bool = False
    ) -> None:
        model = ensure_convertible(item_type)
        requested = list(item_ids)
        async with self._operation("delete_items"):
            if atomic:
                await self._offload(self._delete_atomic, requested, model)
                return
            await self._offload(
                lambda: [self._delete_one(item_id, model) for item_id in requested]
            )

    # ------------------------------------------------------------------
    # Query / relations
    # ------------------------------------------------------------------

    async def fetch_items(self, descriptor: FetchDescriptor[R]) -> list[RecordID]:
        ensure_convertible(descriptor.item_type)
        async with self._operation("fetch_items"):
            return await self._offload(self._context.fetch_identifiers, descriptor)

    async def add_relation(
        self,
        parent_id: RecordID,
        parent_type: type[P],
        child_ids: Iterable[RecordID],
        child_type: type[C],
        relation: RelationSelector[P, C] | str,
    ) -> None:
        """Append the existing children among ``child_ids`` to a parent relationship.

        Children already linked and repeated ids are skipped; missing children
        are ignored. Existing order is preserved.
        """

        parent_model = ensure_convertible(parent_type)
        child_model = ensure_convertible(child_type)
        selector = resolve_selector(parent_type, relation, child_type)
        requested = list(child_ids)
        async with self._operation("add_relation"):
            await self._offload(
                self._link, parent_id, parent_model, requested, child_model, selector
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying store once no operation is in flight."""

        async with self._access.hold("close"):
            if self._closed:
                return
            self._closed = True
            await asyncio.to_thread(self._context.store.close)
        self._logger.info("handler_closed", handler_id=self._handler_id)

    async def __aenter__(self) -> DataHandler:
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
        del exc_type, exc, tb
        await self.close()

    # ------------------------------------------------------------------
    # Internals (run on a worker thread while access is held)
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _operation(self, name: str) -> AsyncIterator[None]:
        async with self._access.hold(name):
            if self._closed:
                raise RecordStoreClosedError(f"handler {self._handler_id} is closed")
            with correlation_scope(handler_id=self._handler_id, operation=name):
                yield

    async def _offload(self, func: Callable[..., T], /, *args: Any) -> T:
        task = asyncio.ensure_future(asyncio.to_thread(self._unit_of_work, func, *args))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # The worker thread cannot be interrupted; keep access held until it ends.
            await asyncio.wait({task})
            if not task.cancelled():
                task.exception()
            raise

    def _unit_of_work(self, func: Callable[..., T], /, *args: Any) -> T:
        try:
            return func(*args)
        except Exception:
            self._context.rollback()
            raise

    def _commit(
        self,
        failure: type[HandlerError],
        *,
        entity: str,
        record_id: RecordID | None = None,
    ) -> SaveResult:
        try:
            return self._context.save()
        except _COMMIT_ERRORS as exc:
            self._context.rollback()
            self._logger.warning(
                "commit_failed",
                kind=failure.default_kind.value if failure.default_kind else None,
                entity=entity,
                record_id=None if record_id is None else str(record_id),
                error=str(exc),
            )
            raise failure(f"commit failed: {exc}", entity=entity, record_id=record_id) from exc

    def _convert(self, dto: Any, model: type[R]) -> R | None:
        item = cast(Any, model).convert(dto)
        if item is not None and not isinstance(item, model):
            raise TypeError(
                f"{model.__name__}.convert returned {type(item).__name__}, expected {model.__name__}"
            )
        return cast("R | None", item)

    def _create_one(self, dto: Any, model: type[R]) -> RecordID:
        entity = model.__entity_name__
        item = self._convert(dto, model)
        if item is None:
            raise InvalidDataError(entity=entity)
        self._context.insert(item)
        self._commit(CreationFailedError, entity=entity)
        record_id = cast(RecordID, item.record_id)
        self._logger.info("item_created", entity=entity, record_id=str(record_id))
        return record_id

    def _create_atomic(self, dtos: Sequence[Any], model: type[R]) -> list[RecordID]:
        entity = model.__entity_name__
        items: list[R] = []
        for index, dto in enumerate(dtos):
            item = self._convert(dto, model)
            if item is None:
                raise InvalidDataError(f"DTO at index {index} could not be converted", entity=entity)
            items.append(item)
        for item in items:
            self._context.insert(item)
        self._commit(CreationFailedError, entity=entity)
        created = [cast(RecordID, item.record_id) for item in items]
        self._logger.info("items_created", entity=entity, count=len(created), atomic=True)
        return created

    def _lookup(self, item_id: RecordID, model: type[R]) -> R | None:
        return self._context.model(item_id, model)

    def _require(self, item_id: RecordID, model: type[R]) -> R:
        item = self._lookup(item_id, model)
        if item is None:
            raise ItemNotFoundError(entity=model.__entity_name__, record_id=item_id)
        return item

    def _lookup_many(self, item_ids: Sequence[RecordID], model: type[R]) -> list[R]:
        found: list[R] = []
        for item_id in item_ids:
            item = self._lookup(item_id, model)
            if item is not None:
                found.append(item)
        return found

    def _update_one(self, item_id: RecordID, dto: Any | None, model: type[R]) -> None:
        entity = model.__entity_name__
        existing = self._require(item_id, model)
        if dto is not None:
            replacement = self._convert(dto, model)
            if replacement is not None:
                cast(Any, existing).update(replacement)
        result = self._commit(UpdateFailedError, entity=entity, record_id=item_id)
        self._logger.info(
            "item_updated",
            entity=entity,
            record_id=str(item_id),
            changed=not result.is_empty,
        )

    def _delete_one(self, item_id: RecordID, model: type[R]) -> None:
        entity = model.__entity_name__
        existing = self._require(item_id, model)
        self._context.delete(existing)
        self._commit(DeleteFailedError, entity=entity, record_id=item_id)
        self._logger.info("item_deleted", entity=entity, record_id=str(item_id))

    def _delete_atomic(self, item_ids: Sequence[RecordID], model: type[R]) -> None:
        entity = model.__entity_name__
        targets: dict[RecordID, R] = {}
        for item_id in item_ids:
            if item_id not in targets:
                targets[item_id] = self._require(item_id, model)
        for item in targets.values():
            self._context.delete(item)
        self._commit(DeleteFailedError, entity=entity)
        self._logger.info("items_deleted", entity=entity, count=len(targets), atomic=True)

    def _link(
        self,
        parent_id: RecordID,
        parent_model: type[P],
        child_ids: Sequence[RecordID],
        child_model: type[C],
        selector: RelationSelector[P, C],
    ) -> None:
        parent = self._require(parent_id, parent_model)
        children = self._lookup_many(child_ids, child_model)
        before = len(selector.get(parent))
        merged = selector.link(parent, children)
        self._commit(UpdateFailedError, entity=parent_model.__entity_name__, record_id=parent_id)
        self._logger.info(
            "relation_added",
            entity=parent_model.__entity_name__,
            record_id=str(parent_id),
            relation=selector.name,
            requested=len(child_ids),
            linked=len(merged) - before,
        )


def _detached(value: T) -> T:
    # Read results never alias identity-map instances.
    return copy.deepcopy(value)


__all__ = ["CRUDHandler", "DataHandler", "HANDLER_ID_PREFIX"]
