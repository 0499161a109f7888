"""Error taxonomy raised by CRUD handlers."""

from __future__ import annotations

from enum import StrEnum
from typing import ClassVar

from data_handler.domain.ids import RecordID


class HandlerErrorKind(StrEnum):
    INVALID_DATA = "invalid_data"
    ITEM_NOT_FOUND = "item_not_found"
    CREATION_FAILED = "creation_failed"
    UPDATE_FAILED = "update_failed"
    DELETE_FAILED = "delete_failed"


_DEFAULT_MESSAGES: dict[HandlerErrorKind, str] = {
    HandlerErrorKind.INVALID_DATA: "DTO could not be converted into a record",
    HandlerErrorKind.ITEM_NOT_FOUND: "record not found",
    HandlerErrorKind.CREATION_FAILED: "failed to commit new record",
    HandlerErrorKind.UPDATE_FAILED: "failed to commit record update",
    HandlerErrorKind.DELETE_FAILED: "failed to commit record deletion",
}


class HandlerError(Exception):
    """Base class for handler failures; ``kind`` names the failure category."""

    default_kind: ClassVar[HandlerErrorKind | None] = None

    def __init__(
        self,
        message: str | None = None,
        *,
        kind: HandlerErrorKind | str | None = None,
        record_id: RecordID | None = None,
        entity: str | None = None,
    ) -> None:
        resolved = kind if kind is not None else self.default_kind
        if resolved is None:
            raise TypeError(f"{type(self).__name__} requires an explicit kind")
        self.kind = HandlerErrorKind(resolved)
        self.record_id = record_id
        self.entity = entity if entity is not None or record_id is None else record_id.entity

        text = message if message is not None else _DEFAULT_MESSAGES[self.kind]
        if self.entity is not None:
            text = f"{self.entity}: {text}"
        if record_id is not None:
            text = f"{text} ({record_id})"
        super().__init__(text)

    @classmethod
    def for_kind(
        cls,
        kind: HandlerErrorKind | str,
        message: str | None = None,
        *,
        record_id: RecordID | None = None,
        entity: str | None = None,
    ) -> HandlerError:
        """Build the most specific subclass for ``kind``."""
        resolved = HandlerErrorKind(kind)
        error_type = _ERRORS_BY_KIND.get(resolved, HandlerError)
        return error_type(message, kind=resolved, record_id=record_id, entity=entity)


class InvalidDataError(HandlerError):
    """The DTO did not convert into a valid record."""

    default_kind = HandlerErrorKind.INVALID_DATA


class ItemNotFoundError(HandlerError):
    """No record of the requested type exists for the identifier."""

    default_kind = HandlerErrorKind.ITEM_NOT_FOUND


class CreationFailedError(HandlerError):
    default_kind = HandlerErrorKind.CREATION_FAILED


class UpdateFailedError(HandlerError):
    default_kind = HandlerErrorKind.UPDATE_FAILED


class DeleteFailedError(HandlerError):
    default_kind = HandlerErrorKind.DELETE_FAILED


_ERRORS_BY_KIND: dict[HandlerErrorKind, type[HandlerError]] = {
    HandlerErrorKind.INVALID_DATA: InvalidDataError,
    HandlerErrorKind.ITEM_NOT_FOUND: ItemNotFoundError,
    HandlerErrorKind.CREATION_FAILED: CreationFailedError,
    HandlerErrorKind.UPDATE_FAILED: UpdateFailedError,
    HandlerErrorKind.DELETE_FAILED: DeleteFailedError,
}


__all__ = [
    "CreationFailedError",
    "DeleteFailedError",
    "HandlerError",
    "HandlerErrorKind",
    "InvalidDataError",
    "ItemNotFoundError",
    "UpdateFailedError",
]
