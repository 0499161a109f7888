"""
data-handler — handler layer.

File: src/data_handler/handler/__init__.py

Purpose
- Serialized async CRUD handler, its error taxonomy, the relation linker, and
  the environment accessor that hands out configured handlers.
"""

from data_handler.handler.crud import CRUDHandler, DataHandler
from data_handler.handler.environment import (
    DataHandlerKey,
    EnvironmentKey,
    HandlerEnvironment,
    HandlerFactory,
    LazyHandlerFactory,
    current_handler_factory,
    handler_factory_from_config,
    in_memory_handler_factory,
    persistent_handler_factory,
    reset_handler_factory,
    set_handler_factory,
    use_handler_factory,
)
from data_handler.handler.errors import (
    CreationFailedError,
    DeleteFailedError,
    HandlerError,
    HandlerErrorKind,
    InvalidDataError,
    ItemNotFoundError,
    UpdateFailedError,
)
from data_handler.handler.relations import RelationSelector, merge_relation

__all__ = [
    "CRUDHandler",
    "CreationFailedError",
    "DataHandler",
    "DataHandlerKey",
    "DeleteFailedError",
    "EnvironmentKey",
    "HandlerEnvironment",
    "HandlerError",
    "HandlerErrorKind",
    "HandlerFactory",
    "InvalidDataError",
    "ItemNotFoundError",
    "LazyHandlerFactory",
    "RelationSelector",
    "UpdateFailedError",
    "current_handler_factory",
    "handler_factory_from_config",
    "in_memory_handler_factory",
    "merge_relation",
    "persistent_handler_factory",
    "reset_handler_factory",
    "set_handler_factory",
    "use_handler_factory",
]
