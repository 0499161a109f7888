"""
data-handler — domain layer.

File: src/data_handler/domain/__init__.py

Purpose
- Record identity, the persistent record model, and the DTO conversion contract.

Functional requirements
- No storage or asyncio imports; domain types stay usable without a store.
"""

from data_handler.domain.convertible import DTOConvertible, ensure_convertible
from data_handler.domain.ids import RecordID
from data_handler.domain.records import (
    JSONValue,
    Record,
    RelationshipInfo,
    Schema,
    is_persistent_model,
    persistent_model,
    relationship,
)

__all__ = [
    "DTOConvertible",
    "JSONValue",
    "Record",
    "RecordID",
    "RelationshipInfo",
    "Schema",
    "ensure_convertible",
    "is_persistent_model",
    "persistent_model",
    "relationship",
]
