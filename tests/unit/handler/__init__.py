"""Shared record types, DTOs, and builders for handler tests."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any

from data_handler.domain.records import Record, Schema, persistent_model, relationship
from data_handler.handler.crud import DataHandler


@dataclass(frozen=True)
class ItemDTO:
    name: str | None
    quantity: int = 0
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ParentDTO:
    title: str | None


@persistent_model
class Item(Record):
    name: str
    quantity: int = 0
    attributes: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def convert(cls, dto: ItemDTO) -> Item | None:
        if not isinstance(dto, ItemDTO) or not dto.name:
            return None
        return cls(name=dto.name, quantity=dto.quantity, attributes=dict(dto.attributes))

    def update(self, new_item: Item) -> None:
        self.name = new_item.name
        self.quantity = new_item.quantity
        self.attributes = dict(new_item.attributes)


@persistent_model
class Label(Record):
    text: str

    @classmethod
    def convert(cls, dto: str) -> Label | None:
        if not isinstance(dto, str) or not dto.strip():
            return None
        return cls(text=dto.strip())

    def update(self, new_item: Label) -> None:
        self.text = new_item.text


@persistent_model
class Parent(Record):
    title: str
    items: list[Item] = relationship(Item)
    labels: list[Label] = relationship(Label)

    @classmethod
    def convert(cls, dto: ParentDTO) -> Parent | None:
        if not isinstance(dto, ParentDTO) or not dto.title:
            return None
        return cls(title=dto.title)

    def update(self, new_item: Parent) -> None:
        self.title = new_item.title


@persistent_model
class Unconvertible(Record):
    value: int = 0


class ConcurrencyGauge:
    """Counts overlapping calls made from worker threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.active = 0
        self.peak = 0
        self.calls = 0

    def reset(self) -> None:
        with self._lock:
            self.active = self.peak = self.calls = 0

    def enter(self) -> None:
        with self._lock:
            self.active += 1
            self.calls += 1
            self.peak = max(self.peak, self.active)

    def exit(self) -> None:
        with self._lock:
            self.active -= 1


TRACKED_CALLS = ConcurrencyGauge()


@persistent_model
class Tracked(Record):
    name: str

    @classmethod
    def convert(cls, dto: str) -> Tracked | None:
        TRACKED_CALLS.enter()
        try:
            time.sleep(0.002)
            return cls(name=dto) if isinstance(dto, str) and dto else None
        finally:
            TRACKED_CALLS.exit()

    def update(self, new_item: Tracked) -> None:
        TRACKED_CALLS.enter()
        try:
            time.sleep(0.002)
            self.name = new_item.name
        finally:
            TRACKED_CALLS.exit()


SCHEMA = Schema([Item, Label, Parent, Tracked, Unconvertible])


async def open_handler(path: str = ":memory:", **options: Any) -> DataHandler:
    return await DataHandler.open(path, SCHEMA, **options)


__all__ = [
    "SCHEMA",
    "TRACKED_CALLS",
    "ConcurrencyGauge",
    "Item",
    "ItemDTO",
    "Label",
    "Parent",
    "ParentDTO",
    "Tracked",
    "Unconvertible",
    "open_handler",
]
