"""Conversion contract between external DTOs and persistent records."""

from __future__ import annotations

from typing import Protocol, Self, TypeVar, cast, runtime_checkable

from data_handler.domain.records import Record, is_persistent_model

DTO_contra = TypeVar("DTO_contra", contravariant=True)


@runtime_checkable
class DTOConvertible(Protocol[DTO_contra]):
    """Capability every storable record type implements.

    ``convert`` builds a new, unsaved record from an external DTO. It must be
    free of side effects and return ``None`` (never raise) when the DTO is not
    valid for this type.

    ``update`` copies the field values of ``new_item`` onto ``self`` in place.
    The identifier and relationship collections stay untouched unless a type
    explicitly treats them as part of its field set. It must not fail for two
    instances of the same type.
    """

    @classmethod
    def convert(cls, dto: DTO_contra) -> Self | None: ...

    def update(self, new_item: Self) -> None: ...


def ensure_convertible(item_type: object) -> type[Record]:
    """Validate that ``item_type`` is a persistent model implementing the contract."""

    if not is_persistent_model(item_type):
        raise TypeError(f"{item_type!r} is not a @persistent_model Record subclass")
    for name in ("convert", "update"):
        if not callable(getattr(item_type, name, None)):
            raise TypeError(f"{item_type!r} does not implement DTOConvertible.{name}")
    return cast("type[Record]", item_type)


__all__ = ["DTOConvertible", "ensure_convertible"]
