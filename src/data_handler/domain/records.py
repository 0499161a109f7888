"""
data-handler — persistent record model.

File: src/data_handler/domain/records.py

Purpose
- Define the ``Record`` base class every storable entity derives from.
- Provide the ``persistent_model`` decorator that turns a ``Record`` subclass
  into a dataclass with entity metadata, and the ``relationship`` field helper
  that declares an ordered one-to-many association.
- Provide ``Schema``, the closed set of entity types a store understands.

Functional requirements
- Record equality is identity: same ``RecordID`` (or the same instance when
  not yet persisted). Field values never participate in ``==``.
- Field payloads must be JSON-compatible; relationships are excluded from the
  payload and stored separately.
"""

from __future__ import annotations

import dataclasses
import json
import math
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, ClassVar, Final, Self, TypeVar, cast, overload

from data_handler.domain.ids import RecordID, validate_entity_name

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

RELATIONSHIP_METADATA_KEY: Final[str] = "data_handler.relationship"

R = TypeVar("R", bound="Record")


@dataclass(frozen=True, slots=True)
class RelationshipInfo:
    """Declared relationship: attribute ``name`` holding ``target`` entity records."""

    name: str
    target: str


def relationship(target: str | type[Record]) -> Any:
    """Declare an ordered to-many relationship field targeting ``target``.

    ``target`` may be the child class or its entity name (for forward references).
    """

    target_name = target if isinstance(target, str) else _entity_name_of(target)
    validate_entity_name(target_name)
    return field(
        default_factory=list,
        compare=False,
        metadata={RELATIONSHIP_METADATA_KEY: target_name},
    )


class Record:
    """Base class for storable entities. Use together with ``@persistent_model``."""

    __entity_name__: ClassVar[str]
    __relationships__: ClassVar[Mapping[str, RelationshipInfo]]
    __field_names__: ClassVar[tuple[str, ...]]

    _record_id: RecordID | None = None

    @property
    def record_id(self) -> RecordID | None:
        """Store-assigned identifier; ``None`` until the record is first saved."""
        return self._record_id

    @property
    def is_persisted(self) -> bool:
        return self._record_id is not None

    def __eq__(self, other: object) -> bool:
        if self is other:
            return True
        if not isinstance(other, Record):
            return NotImplemented
        return self._record_id is not None and self._record_id == other._record_id

    def __hash__(self) -> int:
        # Unsaved records hash by instance; do not keep them in sets across a save.
        if self._record_id is None:
            return object.__hash__(self)
        return hash(self._record_id)

    @classmethod
    def entity_name(cls) -> str:
        return _entity_name_of(cls)

    def to_dict(self) -> dict[str, JSONValue]:
        """Return the persisted field set as JSON-compatible values."""
        entity = _entity_name_of(type(self))
        return {
            name: _as_json_value(getattr(self, name), f"{entity}.{name}")
            for name in type(self).__field_names__
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> Self:
        """Build an unsaved instance from a persisted field payload."""
        entity = _entity_name_of(cls)
        if not isinstance(payload, Mapping):
            raise ValueError(f"{entity}: expected object payload")
        values = {name: payload[name] for name in cls.__field_names__ if name in payload}
        return cls(**values)

    @classmethod
    def from_json(cls, payload: str) -> Self:
        try:
            loaded = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ValueError(f"{_entity_name_of(cls)}: invalid JSON ({exc})") from exc
        if not isinstance(loaded, dict):
            raise ValueError(f"{_entity_name_of(cls)}: JSON root must be object")
        return cls.from_dict(loaded)

    def related(self, name: str) -> list[Record]:
        """Return the live list behind relationship ``name``."""
        info = type(self).__relationships__.get(name)
        if info is None:
            raise AttributeError(f"{_entity_name_of(type(self))} has no relationship {name!r}")
        value = getattr(self, name)
        if not isinstance(value, list):
            raise TypeError(f"{_entity_name_of(type(self))}.{name} must be a list")
        return value


@overload
def persistent_model(cls: type[R], /) -> type[R]: ...


@overload
def persistent_model(*, entity: str | None = None) -> Callable[[type[R]], type[R]]: ...


def persistent_model(
    cls: type[R] | None = None,
    /,
    *,
    entity: str | None = None,
) -> type[R] | Callable[[type[R]], type[R]]:
    """Turn a ``Record`` subclass into a persistent dataclass model.

    Applies ``dataclass(eq=False)`` so identity-based equality from ``Record``
    is kept, then records entity name, persisted field names, and relationships.
    """

    def wrap(klass: type[R]) -> type[R]:
        if not isinstance(klass, type) or not issubclass(klass, Record):
            raise TypeError("@persistent_model can only decorate Record subclasses")
        if "__dataclass_fields__" not in klass.__dict__:
            klass = dataclass(eq=False)(klass)

        name = entity if entity is not None else klass.__name__
        validate_entity_name(name)

        relationships: dict[str, RelationshipInfo] = {}
        field_names: list[str] = []
        for item in dataclasses.fields(klass):
            target = item.metadata.get(RELATIONSHIP_METADATA_KEY)
            if target is not None:
                relationships[item.name] = RelationshipInfo(name=item.name, target=target)
            elif item.init and not item.name.startswith("_"):
                field_names.append(item.name)

        klass.__entity_name__ = name
        klass.__relationships__ = MappingProxyType(relationships)
        klass.__field_names__ = tuple(field_names)
        return klass

    if cls is not None:
        return wrap(cls)
    return wrap


def is_persistent_model(value: object) -> bool:
    return (
        isinstance(value, type)
        and issubclass(value, Record)
        and "__entity_name__" in value.__dict__
    )


class Schema:
    """Closed set of persistent models known to one store."""

    def __init__(self, models: Iterable[type[Record]]) -> None:
        by_name: dict[str, type[Record]] = {}
        for model in models:
            if not is_persistent_model(model):
                raise TypeError(f"{model!r} is not a @persistent_model Record subclass")
            name = model.__entity_name__
            existing = by_name.get(name)
            if existing is not None and existing is not model:
                raise ValueError(f"duplicate entity name {name!r} in schema")
            by_name[name] = model

        for model in by_name.values():
            for info in model.__relationships__.values():
                if info.target not in by_name:
                    raise ValueError(
                        f"{model.__entity_name__}.{info.name} targets unknown entity "
                        f"{info.target!r}; add it to the schema"
                    )

        self._models: Final[Mapping[str, type[Record]]] = MappingProxyType(by_name)

    @property
    def entity_names(self) -> tuple[str, ...]:
        return tuple(sorted(self._models))

    def model(self, entity: str) -> type[Record]:
        try:
            return self._models[entity]
        except KeyError:
            raise ValueError(f"entity {entity!r} is not part of this schema") from None

    def __contains__(self, item: object) -> bool:
        if isinstance(item, str):
            return item in self._models
        if not is_persistent_model(item):
            return False
        model = cast("type[Record]", item)
        return self._models.get(model.__entity_name__) is model

    def __iter__(self) -> Iterator[type[Record]]:
        return iter(self._models[name] for name in sorted(self._models))

    def __len__(self) -> int:
        return len(self._models)


def _entity_name_of(model: type[Record]) -> str:
    name = model.__dict__.get("__entity_name__")
    if not isinstance(name, str):
        raise TypeError(f"{model.__name__} is not decorated with @persistent_model")
    return name


def _as_json_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"{path}: float must be finite")
        return value
    if isinstance(value, (list, tuple)):
        return [_as_json_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError(f"{path}: object key must be string")
            out[key] = _as_json_value(item, f"{path}.{key}")
        return out
    raise ValueError(f"{path}: value of type {type(value).__name__} is not JSON-serializable")


__all__ = [
    "JSONScalar",
    "JSONValue",
    "RELATIONSHIP_METADATA_KEY",
    "Record",
    "RelationshipInfo",
    "Schema",
    "is_persistent_model",
    "persistent_model",
    "relationship",
]
