"""
data-handler — package root.

File: src/data_handler/__init__.py

Purpose
- Typed, serialized async CRUD access to records kept in an embedded SQLite
  store, with a uniform DTO conversion contract and relation linking.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

from data_handler.domain import (
    DTOConvertible,
    Record,
    RecordID,
    Schema,
    persistent_model,
    relationship,
)
from data_handler.handler import (
    CRUDHandler,
    DataHandler,
    HandlerError,
    HandlerErrorKind,
    RelationSelector,
    current_handler_factory,
    in_memory_handler_factory,
    persistent_handler_factory,
    use_handler_factory,
)
from data_handler.persistence import FetchDescriptor, SortDescriptor

__version__ = "0.1.0"

__all__ = [
    "CRUDHandler",
    "DTOConvertible",
    "DataHandler",
    "FetchDescriptor",
    "HandlerError",
    "HandlerErrorKind",
    "Record",
    "RecordID",
    "RelationSelector",
    "Schema",
    "SortDescriptor",
    "__version__",
    "current_handler_factory",
    "in_memory_handler_factory",
    "persistent_handler_factory",
    "persistent_model",
    "relationship",
    "use_handler_factory",
]
