"""
data-handler — model context (unit of work).

File: src/data_handler/persistence/context.py

Purpose
- Track the records loaded from, inserted into, and deleted from one
  ``RecordStore`` and write all pending changes in a single transaction.

Functional requirements
- Identity map: at most one live instance per ``RecordID``.
- ``save()`` is all-or-nothing; on failure pending changes remain pending so the
  caller can ``rollback()``.
- ``rollback()`` restores field values and relationship lists of every tracked
  record to their last committed state, drops pending inserts and un-deletes.
- Deleting a record removes it from every tracked relationship list.
- Unsaved records reachable through a relationship of a saved record are
  inserted with it.

Non-functional requirements
- Synchronous and not thread-safe; callers serialize access (see
  ``DataHandler``) and run it off the event loop.
"""

from __future__ import annotations

import copy
import json
import sqlite3
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar, cast

import structlog

from data_handler.domain import ids
from data_handler.domain.ids import RecordID
from data_handler.domain.records import JSONValue, Record, Schema
from data_handler.persistence.fetch import FetchDescriptor, compile_select
from data_handler.persistence.store_db import (
    RecordStore,
    RecordStoreError,
    RowValue,
    utc_now_iso,
)

R = TypeVar("R", bound=Record)


@dataclass(frozen=True, slots=True)
class SaveResult:
    inserted: tuple[RecordID, ...] = ()
    updated: tuple[RecordID, ...] = ()
    deleted: tuple[RecordID, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.inserted or self.updated or self.deleted)


@dataclass(slots=True)
class _Snapshot:
    payload: dict[str, JSONValue]
    relations: dict[str, list[Record]]


class ModelContext:
    """Unit of work over one record store and its schema."""

    def __init__(self, store: RecordStore, schema: Schema, *, logger: Any | None = None) -> None:
        self._store = store
        self._schema = schema
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._registry: dict[RecordID, Record] = {}
        self._snapshots: dict[RecordID, _Snapshot] = {}
        self._inserted: dict[int, Record] = {}
        self._deleted: dict[RecordID, Record] = {}

    @property
    def store(self) -> RecordStore:
        return self._store

    @property
    def schema(self) -> Schema:
        return self._schema

    @property
    def has_changes(self) -> bool:
        if self._inserted or self._deleted:
            return True
        return any(self._is_dirty(record) for record in self._registry.values())

    def registered(self, record_id: RecordID) -> Record | None:
        """Return the tracked instance for ``record_id`` without touching the store."""
        if record_id in self._deleted:
            return None
        return self._registry.get(record_id)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def insert(self, record: Record) -> None:
        """Schedule an unsaved record for insertion; tracked records are a no-op."""

        self._require_schema_model(type(record))
        record_id = record.record_id
        if record_id is not None:
            if self._registry.get(record_id) is not record:
                raise ValueError(f"{record_id} belongs to another context or store")
            self._deleted.pop(record_id, None)
            return
        self._inserted[id(record)] = record

    def delete(self, record: Record) -> None:
        """Schedule ``record`` for deletion and unlink it from tracked relationships."""

        record_id = record.record_id
        if record_id is None:
            if self._inserted.pop(id(record), None) is None:
                raise ValueError("cannot delete a record this context does not track")
        else:
            if self._registry.get(record_id) is not record:
                raise ValueError(f"{record_id} is not tracked by this context")
            self._deleted[record_id] = record
        self._unlink_everywhere(record)

    def save(self) -> SaveResult:
        """Write every pending change in one transaction."""

        deleted = list(self._deleted.items())
        inserted = self._collect_inserts()
        new_ids: dict[int, RecordID] = {
            id(record): RecordID(
                store_id=self._store.store_id,
                entity=record.entity_name(),
                key=ids.generate_record_key(),
            )
            for record in inserted
        }

        def identity_of(record: Record) -> RecordID:
            record_id = record.record_id if record.record_id is not None else new_ids.get(id(record))
            if record_id is None:
                raise ValueError(f"{record.entity_name()} record is not tracked by this context")
            return record_id

        updated_payload: list[Record] = []
        updated_relations: list[Record] = []
        for record_id, record in self._registry.items():
            if record_id in self._deleted:
                continue
            snapshot = self._snapshots[record_id]
            if record.to_dict() != snapshot.payload:
                updated_payload.append(record)
            if self._relations_changed(record, snapshot):
                updated_relations.append(record)

        now = utc_now_iso()
        with self._store.transaction(immediate=True) as tx:
            for record_id, _record in deleted:
                tx.execute("DELETE FROM records WHERE id = ?", (record_id.key,))
            for record in inserted:
                tx.execute(
                    """
                    INSERT INTO records (id, entity, payload_json, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (new_ids[id(record)].key, record.entity_name(), record.to_json(), now, now),
                )
            for record in updated_payload:
                tx.execute(
                    "UPDATE records SET payload_json = ?, updated_at = ? WHERE id = ?",
                    (record.to_json(), now, identity_of(record).key),
                )
            for record in [*inserted, *updated_relations]:
                self._write_relations(tx, record, identity_of)

        for record in inserted:
            record_id = new_ids[id(record)]
            record._record_id = record_id
            self._registry[record_id] = record
        for record_id, _record in deleted:
            self._registry.pop(record_id, None)
            self._snapshots.pop(record_id, None)
        touched = {id(record): record for record in [*inserted, *updated_payload, *updated_relations]}
        for record in touched.values():
            self._snapshots[identity_of(record)] = self._snapshot(record)
        self._inserted.clear()
        self._deleted.clear()

        seen_updates = {id(record) for record in inserted}
        result = SaveResult(
            inserted=tuple(new_ids[id(record)] for record in inserted),
            updated=tuple(
                identity_of(record) for record in touched.values() if id(record) not in seen_updates
            ),
            deleted=tuple(record_id for record_id, _record in deleted),
        )
        if not result.is_empty:
            self._logger.debug(
                "context_saved",
                store=self._store.describe(),
                inserted=len(result.inserted),
                updated=len(result.updated),
                deleted=len(result.deleted),
            )
        return result

    def rollback(self) -> None:
        """Discard pending changes and restore tracked records to their committed state."""

        for record_id, record in self._registry.items():
            snapshot = self._snapshots[record_id]
            for name, value in snapshot.payload.items():
                setattr(record, name, copy.deepcopy(value))
            for name, children in snapshot.relations.items():
                record.related(name)[:] = children
        self._inserted.clear()
        self._deleted.clear()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def model(self, record_id: RecordID, item_type: type[R]) -> R | None:
        """Return the record for ``record_id`` when it exists and is an ``item_type``."""

        if not isinstance(record_id, RecordID):
            raise TypeError(f"record_id must be a RecordID, got {type(record_id).__name__}")
        self._require_schema_model(item_type)
        if record_id.store_id != self._store.store_id:
            return None
        if record_id.entity != item_type.__entity_name__:
            return None
        if record_id in self._deleted:
            return None

        cached = self._registry.get(record_id)
        if cached is not None:
            return cast(R, cached)

        row = self._store.query_one(
            "SELECT id, entity, payload_json FROM records WHERE id = ? AND entity = ?",
            (record_id.key, record_id.entity),
        )
        if row is None:
            return None
        loaded = self._materialize([row])
        return cast(R, loaded[0])

    def fetch(self, descriptor: FetchDescriptor[R]) -> list[R]:
        """Return committed records matching ``descriptor``, as tracked instances."""

        self._require_schema_model(descriptor.item_type)
        windowed = descriptor.predicate is None
        query = compile_select(descriptor, columns="id, entity, payload_json", windowed=windowed)
        rows = self._store.query_all(query.sql, query.params)
        records = [
            cast(R, record)
            for record in self._materialize(rows)
            if record.record_id not in self._deleted
        ]
        if windowed:
            return records
        return descriptor.window([record for record in records if descriptor.matches(record)])

    def fetch_identifiers(self, descriptor: FetchDescriptor[R]) -> list[RecordID]:
        if descriptor.predicate is not None:
            return [cast(RecordID, record.record_id) for record in self.fetch(descriptor)]
        self._require_schema_model(descriptor.item_type)
        query = compile_select(descriptor, columns="id", windowed=True)
        store_id = self._store.store_id
        out: list[RecordID] = []
        for row in self._store.query_all(query.sql, query.params):
            record_id = RecordID(store_id=store_id, entity=descriptor.entity, key=str(row["id"]))
            if record_id not in self._deleted:
                out.append(record_id)
        return out

    def fetch_count(self, descriptor: FetchDescriptor[R]) -> int:
        if descriptor.predicate is not None or self._deleted:
            return len(self.fetch_identifiers(descriptor))
        self._require_schema_model(descriptor.item_type)
        query = compile_select(descriptor, columns="id", windowed=True)
        row = self._store.query_one(f"SELECT COUNT(*) AS total FROM ({query.sql})", query.params)
        total = 0 if row is None else row["total"]
        if not isinstance(total, int):
            raise RecordStoreError("COUNT(*) returned a non-integer value")
        return total

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_schema_model(self, item_type: type[Record]) -> None:
        if item_type not in self._schema:
            raise TypeError(
                f"{getattr(item_type, '__name__', item_type)!r} is not part of the store schema"
            )

    def _materialize(self, rows: Sequence[dict[str, RowValue]]) -> list[Record]:
        """Resolve rows through the identity map, loading relationship graphs of new instances."""

        store_id = self._store.store_id
        out: list[Record] = []
        fresh: list[Record] = []
        for row in rows:
            record_id = RecordID(store_id=store_id, entity=str(row["entity"]), key=str(row["id"]))
            existing = self._registry.get(record_id)
            if existing is not None:
                out.append(existing)
                continue
            record = self._instantiate(record_id, row["payload_json"])
            out.append(record)
            fresh.append(record)
        self._load_relations(fresh)
        return out

    def _instantiate(self, record_id: RecordID, payload_json: RowValue) -> Record:
        model = self._schema.model(record_id.entity)
        if not isinstance(payload_json, str):
            raise RecordStoreError(f"{record_id}: payload_json must be text")
        try:
            payload = json.loads(payload_json)
        except json.JSONDecodeError as exc:
            raise RecordStoreError(f"{record_id}: stored payload is not valid JSON") from exc
        record = model.from_dict(payload)
        record._record_id = record_id
        self._registry[record_id] = record
        return record

    def _load_relations(self, fresh: Iterable[Record]) -> None:
        store_id = self._store.store_id
        pending = list(fresh)
        loaded: list[Record] = []
        while pending:
            parent = pending.pop()
            loaded.append(parent)
            parent_id = cast(RecordID, parent.record_id)
            declared = type(parent).__relationships__
            children: dict[str, list[Record]] = {name: [] for name in declared}
            rows = self._store.query_all(
                """
                SELECT rel.relation AS relation, rel.child_id AS id,
                       child.entity AS entity, child.payload_json AS payload_json
                FROM relations AS rel
                JOIN records AS child ON child.id = rel.child_id
                WHERE rel.parent_id = ?
                ORDER BY rel.relation ASC, rel.position ASC
                """,
                (parent_id.key,),
            )
            for row in rows:
                relation = str(row["relation"])
                if relation not in declared:
                    self._logger.warning(
                        "context_relation_undeclared",
                        entity=parent_id.entity,
                        relation=relation,
                    )
                    continue
                child_id = RecordID(store_id=store_id, entity=str(row["entity"]), key=str(row["id"]))
                child = self._registry.get(child_id)
                if child is None:
                    child = self._instantiate(child_id, row["payload_json"])
                    pending.append(child)
                children[relation].append(child)
            for name, items in children.items():
                parent.related(name)[:] = items
        for record in loaded:
            self._snapshots[cast(RecordID, record.record_id)] = self._snapshot(record)

    def _collect_inserts(self) -> list[Record]:
        """Pending inserts plus unsaved records reachable from any live record."""

        ordered: dict[int, Record] = dict(self._inserted)
        frontier: list[Record] = list(ordered.values())
        frontier.extend(
            record for record_id, record in self._registry.items() if record_id not in self._deleted
        )
        while frontier:
            record = frontier.pop(0)
            for info in type(record).__relationships__.values():
                for child in record.related(info.name):
                    if not isinstance(child, Record):
                        raise TypeError(
                            f"{record.entity_name()}.{info.name} holds a non-Record value"
                        )
                    if child.entity_name() != info.target:
                        raise ValueError(
                            f"{record.entity_name()}.{info.name} expects {info.target}, "
                            f"got {child.entity_name()}"
                        )
                    if child.record_id is not None or id(child) in ordered:
                        continue
                    self._require_schema_model(type(child))
                    ordered[id(child)] = child
                    frontier.append(child)
        return list(ordered.values())

    def _write_relations(
        self,
        tx: sqlite3.Connection,
        record: Record,
        identity_of: Callable[[Record], RecordID],
    ) -> None:
        parent_key = identity_of(record).key
        for info in type(record).__relationships__.values():
            tx.execute(
                "DELETE FROM relations WHERE parent_id = ? AND relation = ?",
                (parent_key, info.name),
            )
            children = [
                child
                for child in record.related(info.name)
                if child.record_id is None or child.record_id not in self._deleted
            ]
            tx.executemany(
                """
                INSERT INTO relations (parent_id, relation, position, child_id)
                VALUES (?, ?, ?, ?)
                """,
                [
                    (parent_key, info.name, position, identity_of(child).key)
                    for position, child in enumerate(children)
                ],
            )

    def _unlink_everywhere(self, target: Record) -> None:
        holders = [*self._registry.values(), *self._inserted.values()]
        for holder in holders:
            for info in type(holder).__relationships__.values():
                items = holder.related(info.name)
                if any(item is target for item in items):
                    items[:] = [item for item in items if item is not target]

    def _is_dirty(self, record: Record) -> bool:
        record_id = cast(RecordID, record.record_id)
        snapshot = self._snapshots[record_id]
        return record.to_dict() != snapshot.payload or self._relations_changed(record, snapshot)

    @staticmethod
    def _relations_changed(record: Record, snapshot: _Snapshot) -> bool:
        for name, committed in snapshot.relations.items():
            current = record.related(name)
            if len(current) != len(committed):
                return True
            if any(left is not right for left, right in zip(current, committed, strict=True)):
                return True
        return False

    @staticmethod
    def _snapshot(record: Record) -> _Snapshot:
        return _Snapshot(
            payload=record.to_dict(),
            relations={
                name: list(record.related(name)) for name in type(record).__relationships__
            },
        )


__all__ = ["ModelContext", "SaveResult"]
