"""
data-handler — config schema.

File: src/data_handler/config/schema.py

Purpose
- Describe the ``[store]`` section read by ``handler_factory_from_config`` and
  report every problem in a candidate config at once.

Functional requirements
- Unknown sections and fields are errors, so typos never fall back to defaults.
- Issues carry dotted paths (``store.busy_timeout_ms``) for direct lookup in TOML.
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Final, TypedDict

from data_handler.constants import DEFAULT_STORE_FILENAME, STATE_DIR
from data_handler.persistence.store_db import (
    ASYNC_BLOCKING_POLICIES,
    DEFAULT_BUSY_RETRY_BACKOFF_MS,
    DEFAULT_BUSY_RETRY_LIMIT,
    DEFAULT_BUSY_TIMEOUT_MS,
)


class StoreConfig(TypedDict):
    path: str
    in_memory: bool
    busy_timeout_ms: int
    busy_retry_limit: int
    busy_retry_backoff_ms: int
    async_blocking_policy: str


class DataHandlerConfig(TypedDict):
    store: StoreConfig


STORE_DEFAULTS: Final[StoreConfig] = {
    "path": (STATE_DIR / DEFAULT_STORE_FILENAME).as_posix(),
    "in_memory": False,
    "busy_timeout_ms": DEFAULT_BUSY_TIMEOUT_MS,
    "busy_retry_limit": DEFAULT_BUSY_RETRY_LIMIT,
    "busy_retry_backoff_ms": DEFAULT_BUSY_RETRY_BACKOFF_MS,
    "async_blocking_policy": "strict",
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


class ConfigValidationError(ValueError):
    """Raised by ``assert_valid_config`` with every issue found."""

    def __init__(self, issues: tuple[ConfigValidationIssue, ...]) -> None:
        self.issues = issues
        super().__init__("invalid config: " + "; ".join(str(issue) for issue in issues))


_Check = Callable[[object], str | None]


def _integer(minimum: int) -> _Check:
    def check(value: object) -> str | None:
        if isinstance(value, bool) or not isinstance(value, int):
            return "must be an integer"
        if value < minimum:
            return f"must be >= {minimum}"
        return None

    return check


def _boolean(value: object) -> str | None:
    return None if isinstance(value, bool) else "must be a boolean"


def _path_text(value: object) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return "must be a non-empty string"
    return None


def _choice(*options: str) -> _Check:
    def check(value: object) -> str | None:
        if value not in options:
            return f"must be one of {', '.join(options)}"
        return None

    return check


_STORE_RULES: Final[Mapping[str, _Check]] = {
    "path": _path_text,
    "in_memory": _boolean,
    "busy_timeout_ms": _integer(0),
    "busy_retry_limit": _integer(0),
    "busy_retry_backoff_ms": _integer(0),
    "async_blocking_policy": _choice(*ASYNC_BLOCKING_POLICIES),
}


def default_config() -> dict[str, Any]:
    return {"store": dict(STORE_DEFAULTS)}


def merge_config(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively overlay ``overlay`` onto a deep copy of ``base``."""

    merged = copy.deepcopy(dict(base))
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def validate_config(config: object) -> tuple[ConfigValidationIssue, ...]:
    if not isinstance(config, Mapping):
        return (ConfigValidationIssue("<root>", "config must be a table"),)

    issues = [
        ConfigValidationIssue(str(name), "unknown section")
        for name in config
        if name != "store"
    ]
    store = config.get("store")
    if not isinstance(store, Mapping):
        issues.append(ConfigValidationIssue("store", "missing required section"))
        return tuple(issues)

    for name in store:
        if name not in _STORE_RULES:
            issues.append(ConfigValidationIssue(f"store.{name}", "unknown field"))
    for name, check in _STORE_RULES.items():
        if name not in store:
            issues.append(ConfigValidationIssue(f"store.{name}", "missing required field"))
            continue
        problem = check(store[name])
        if problem is not None:
            issues.append(ConfigValidationIssue(f"store.{name}", problem))
    return tuple(issues)


def assert_valid_config(config: Mapping[str, Any]) -> DataHandlerConfig:
    issues = validate_config(config)
    if issues:
        raise ConfigValidationError(issues)
    return {"store": StoreConfig(**config["store"])}


__all__ = [
    "ConfigValidationError",
    "ConfigValidationIssue",
    "DataHandlerConfig",
    "STORE_DEFAULTS",
    "StoreConfig",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "validate_config",
]
