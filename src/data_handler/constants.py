"""Stable constants shared across the data handler layers."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema version of the record store tables.
RECORD_STORE_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file).
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
DEFAULT_STORE_FILENAME: Final[str] = "records.sqlite3"

# Special store path that selects a private in-memory database.
IN_MEMORY_STORE_PATH: Final[str] = ":memory:"

# Record identifier prefix used for every store-assigned key.
RECORD_ID_PREFIX: Final[str] = "rec"

__all__ = [
    "DEFAULT_STORE_FILENAME",
    "IN_MEMORY_STORE_PATH",
    "RECORD_ID_PREFIX",
    "RECORD_STORE_SCHEMA_VERSION",
    "STATE_DIR",
]
