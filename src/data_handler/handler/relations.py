"""Order-preserving, duplicate-free merging of to-many relationship collections."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar, cast

from data_handler.domain.records import Record, is_persistent_model

T = TypeVar("T")
P = TypeVar("P", bound=Record)
C = TypeVar("C", bound=Record)


def merge_relation(existing: Sequence[T], candidates: Iterable[T]) -> list[T]:
    """Return ``existing`` followed by each candidate not already present.

    Membership uses ``==`` (record identity for ``Record``); the first occurrence
    of a duplicated candidate wins. Neither input is mutated.
    """

    merged = list(existing)
    for candidate in candidates:
        if candidate not in merged:
            merged.append(candidate)
    return merged


@dataclass(frozen=True, slots=True)
class RelationSelector(Generic[P, C]):
    """Accessor/mutator pair naming one to-many relationship on a parent type."""

    name: str
    get: Callable[[P], Sequence[C]]
    set: Callable[[P, list[C]], None]
    target: str | None = None

    @classmethod
    def for_attribute(
        cls,
        parent_type: type[P],
        name: str,
        child_type: type[C] | None = None,
    ) -> RelationSelector[P, C]:
        """Build a selector for relationship attribute ``name`` declared on ``parent_type``."""

        if not is_persistent_model(parent_type):
            raise TypeError(f"{parent_type!r} is not a @persistent_model Record subclass")
        info = parent_type.__relationships__.get(name)
        if info is None:
            raise ValueError(f"{parent_type.__entity_name__} has no relationship {name!r}")
        if child_type is not None and child_type.__entity_name__ != info.target:
            raise ValueError(
                f"{parent_type.__entity_name__}.{name} targets {info.target}, "
                f"not {child_type.__entity_name__}"
            )

        def getter(parent: P) -> Sequence[C]:
            return cast("Sequence[C]", parent.related(name))

        def setter(parent: P, children: list[C]) -> None:
            parent.related(name)[:] = children

        return cls(name=name, get=getter, set=setter, target=info.target)

    def link(self, parent: P, children: Iterable[C]) -> list[C]:
        """Merge ``children`` into the parent's collection and return the new contents."""
        merged = merge_relation(self.get(parent), children)
        self.set(parent, merged)
        return merged


def resolve_selector(
    parent_type: type[P],
    relation: RelationSelector[P, C] | str,
    child_type: type[C],
) -> RelationSelector[P, C]:
    if isinstance(relation, RelationSelector):
        if relation.target is not None and relation.target != child_type.__entity_name__:
            raise ValueError(
                f"relation {relation.name!r} targets {relation.target}, "
                f"not {child_type.__entity_name__}"
            )
        return relation
    if isinstance(relation, str):
        return RelationSelector.for_attribute(parent_type, relation, child_type)
    raise TypeError("relation must be a RelationSelector or a relationship attribute name")


__all__ = ["RelationSelector", "merge_relation", "resolve_selector"]
