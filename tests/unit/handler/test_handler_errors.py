"""Handler error taxonomy tests."""

from __future__ import annotations

import pytest

from data_handler.domain import ids
from data_handler.domain.ids import RecordID
from data_handler.handler.errors import (
    CreationFailedError,
    DeleteFailedError,
    HandlerError,
    HandlerErrorKind,
    InvalidDataError,
    ItemNotFoundError,
    UpdateFailedError,
)


def _record_id() -> RecordID:
    return RecordID(store_id=ids.generate_store_id(), entity="Item", key=ids.generate_record_key())


def test_kinds_are_stable_string_values() -> None:
    assert [kind.value for kind in HandlerErrorKind] == [
        "invalid_data",
        "item_not_found",
        "creation_failed",
        "update_failed",
        "delete_failed",
    ]


@pytest.mark.parametrize(
    ("error_type", "kind"),
    [
        (InvalidDataError, HandlerErrorKind.INVALID_DATA),
        (ItemNotFoundError, HandlerErrorKind.ITEM_NOT_FOUND),
        (CreationFailedError, HandlerErrorKind.CREATION_FAILED),
        (UpdateFailedError, HandlerErrorKind.UPDATE_FAILED),
        (DeleteFailedError, HandlerErrorKind.DELETE_FAILED),
    ],
)
def test_subclasses_carry_their_kind(error_type: type[HandlerError], kind: HandlerErrorKind) -> None:
    error = error_type()

    assert isinstance(error, HandlerError)
    assert error.kind is kind
    assert HandlerError.for_kind(kind.value).__class__ is error_type


def test_message_names_entity_and_record() -> None:
    record_id = _record_id()

    error = ItemNotFoundError(record_id=record_id)

    assert error.entity == "Item"
    assert str(error) == f"Item: record not found ({record_id.to_uri()})"
    assert str(InvalidDataError("bad dto", entity="Widget")) == "Widget: bad dto"


def test_base_error_requires_a_kind() -> None:
    with pytest.raises(TypeError, match="explicit kind"):
        HandlerError("no kind")
    with pytest.raises(ValueError):
        HandlerError.for_kind("exploded")

    error = HandlerError("custom", kind="update_failed")
    assert error.kind is HandlerErrorKind.UPDATE_FAILED
