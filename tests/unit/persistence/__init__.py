"""Shared deterministic models and builders for persistence tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

from data_handler.domain.records import Record, Schema, persistent_model, relationship
from data_handler.persistence.context import ModelContext
from data_handler.persistence.store_db import RecordStore

if TYPE_CHECKING:
    from pathlib import Path


@persistent_model
class Tag(Record):
    label: str


@persistent_model
class Note(Record):
    title: str
    body: str = ""
    priority: int = 0
    archived: bool = False
    tags: list[Tag] = relationship("Tag")


@persistent_model(entity="Notebook")
class NoteBook(Record):
    name: str
    notes: list[Note] = relationship(Note)


SCHEMA = Schema([Tag, Note, NoteBook])


def make_store(path: Path | str = ":memory:") -> RecordStore:
    store = RecordStore(path, busy_timeout_ms=2_000, busy_retry_limit=2, busy_retry_backoff_ms=1)
    store.migrate()
    return store


def make_context(path: Path | str = ":memory:") -> ModelContext:
    return ModelContext(make_store(path), SCHEMA)


def make_note(title: str = "note", *, priority: int = 0, archived: bool = False) -> Note:
    return Note(title=title, body=f"body of {title}", priority=priority, archived=archived)


__all__ = [
    "SCHEMA",
    "Note",
    "NoteBook",
    "Tag",
    "make_context",
    "make_note",
    "make_store",
]
