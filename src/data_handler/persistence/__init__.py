"""
data-handler — persistence layer.

File: src/data_handler/persistence/__init__.py

Purpose
- Embedded record store, unit-of-work model context, and fetch descriptors.

Functional requirements
- Must support file-backed stores that survive reopen and private in-memory
  stores for tests.

Non-functional requirements
- SQLite-first; no heavy DB dependencies.
"""

from data_handler.persistence.context import ModelContext, SaveResult
from data_handler.persistence.fetch import FetchDescriptor, SortDescriptor
from data_handler.persistence.store_db import (
    RecordStore,
    RecordStoreAsyncPolicyError,
    RecordStoreBusyError,
    RecordStoreClosedError,
    RecordStoreCorruptionError,
    RecordStoreError,
    RecordStoreMigrationError,
)

__all__ = [
    "FetchDescriptor",
    "ModelContext",
    "RecordStore",
    "RecordStoreAsyncPolicyError",
    "RecordStoreBusyError",
    "RecordStoreClosedError",
    "RecordStoreCorruptionError",
    "RecordStoreError",
    "RecordStoreMigrationError",
    "SaveResult",
    "SortDescriptor",
]
