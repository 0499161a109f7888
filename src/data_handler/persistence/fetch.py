"""Query descriptors over stored records and their SQL compilation."""

from __future__ import annotations

import dataclasses
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from types import MappingProxyType
from typing import Generic, TypeVar

from data_handler.domain.records import JSONScalar, Record, is_persistent_model

R = TypeVar("R", bound=Record)


@dataclass(frozen=True, slots=True)
class SortDescriptor:
    field: str
    ascending: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.field, str) or not self.field:
            raise ValueError("SortDescriptor.field must be a non-empty string")


@dataclass(frozen=True, slots=True)
class FetchDescriptor(Generic[R]):
    """Selects records of ``item_type``.

    ``filters`` match persisted fields by equality and run in SQL. ``predicate``
    runs in Python on materialized records, so ``limit``/``offset`` are applied
    after it when present. Without ``sort_by`` results come back in insertion
    order.
    """

    item_type: type[R]
    filters: Mapping[str, JSONScalar] = dataclasses.field(default_factory=dict)
    predicate: Callable[[R], bool] | None = None
    sort_by: Sequence[SortDescriptor] = ()
    limit: int | None = None
    offset: int = 0

    def __post_init__(self) -> None:
        if not is_persistent_model(self.item_type):
            raise TypeError(f"{self.item_type!r} is not a @persistent_model Record subclass")
        known = set(self.item_type.__field_names__)

        filters = dict(self.filters)
        for name, value in filters.items():
            if name not in known:
                raise ValueError(f"{self.entity}: unknown filter field {name!r}")
            if value is not None and not isinstance(value, (str, int, float, bool)):
                raise ValueError(f"{self.entity}.{name}: filter value must be a JSON scalar")
        object.__setattr__(self, "filters", MappingProxyType(filters))

        sort_by = tuple(self.sort_by)
        for sort in sort_by:
            if not isinstance(sort, SortDescriptor):
                raise TypeError("sort_by entries must be SortDescriptor instances")
            if sort.field not in known:
                raise ValueError(f"{self.entity}: unknown sort field {sort.field!r}")
        object.__setattr__(self, "sort_by", sort_by)

        if self.limit is not None and self.limit < 0:
            raise ValueError("limit must be >= 0")
        if self.offset < 0:
            raise ValueError("offset must be >= 0")

    @property
    def entity(self) -> str:
        return self.item_type.__entity_name__

    def matches(self, record: R) -> bool:
        return self.predicate is None or bool(self.predicate(record))

    def window(self, items: Sequence[R]) -> list[R]:
        """Apply ``offset``/``limit`` to already-filtered items."""
        end = None if self.limit is None else self.offset + self.limit
        return list(items[self.offset : end])


@dataclass(frozen=True, slots=True)
class CompiledQuery:
    sql: str
    params: tuple[str | int | float | None, ...]


def compile_select(descriptor: FetchDescriptor[R], *, columns: str, windowed: bool) -> CompiledQuery:
    """Build the ``SELECT`` for ``descriptor`` against the ``records`` table.

    ``windowed`` pushes ``LIMIT``/``OFFSET`` into SQL; callers disable it when a
    Python predicate still has to run.
    """

    clauses = ["entity = ?"]
    params: list[str | int | float | None] = [descriptor.entity]
    for name, value in descriptor.filters.items():
        path = f"$.{name}"
        if value is None:
            clauses.append("json_type(payload_json, ?) = 'null'")
            params.append(path)
            continue
        clauses.append("json_extract(payload_json, ?) = ?")
        params.append(path)
        params.append(int(value) if isinstance(value, bool) else value)

    order_terms: list[str] = []
    for sort in descriptor.sort_by:
        order_terms.append(f"json_extract(payload_json, ?) {'ASC' if sort.ascending else 'DESC'}")
        params.append(f"$.{sort.field}")
    order_terms.append("rowid ASC")

    sql = f"SELECT {columns} FROM records WHERE {' AND '.join(clauses)} ORDER BY {', '.join(order_terms)}"
    if windowed and (descriptor.limit is not None or descriptor.offset):
        sql += " LIMIT ? OFFSET ?"
        params.append(-1 if descriptor.limit is None else descriptor.limit)
        params.append(descriptor.offset)
    return CompiledQuery(sql=sql, params=tuple(params))


__all__ = ["CompiledQuery", "FetchDescriptor", "SortDescriptor", "compile_select"]
