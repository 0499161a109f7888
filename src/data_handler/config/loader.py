"""
data-handler — runtime config loader.

File: src/data_handler/config/loader.py

Purpose
- Build the effective ``[store]`` config from defaults, ``data_handler.toml``,
  ``DATA_HANDLER_STORE_*`` environment variables and explicit overrides.

Functional requirements
- Precedence: overrides > environment > file > defaults.
- A relative ``store.path`` is resolved against the config file's directory.
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

from data_handler.config.schema import (
    STORE_DEFAULTS,
    DataHandlerConfig,
    assert_valid_config,
    default_config,
    merge_config,
)
from data_handler.constants import IN_MEMORY_STORE_PATH

DEFAULT_CONFIG_FILE: Final[str] = "data_handler.toml"
ENV_PREFIX: Final[str] = "DATA_HANDLER_"

_TRUE_WORDS: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on"})
_FALSE_WORDS: Final[frozenset[str]] = frozenset({"0", "false", "no", "off"})


class ConfigLoadError(ValueError):
    """Raised when a config file or environment variable cannot be read."""


def load_config(
    config_path: str | Path | None = None,
    *,
    overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> DataHandlerConfig:
    """Return the validated effective config.

    ``overrides`` takes dotted keys (``{"store.in_memory": True}``) or nested
    tables. Without ``config_path`` a ``data_handler.toml`` in the working
    directory is used when present; an explicit path must exist.
    """

    if config_path is None:
        source = Path.cwd() / DEFAULT_CONFIG_FILE
        payload = _read_toml(source) if source.exists() else {}
    else:
        source = Path(config_path).expanduser()
        if not source.exists():
            raise ConfigLoadError(f"config file not found: {source}")
        payload = _read_toml(source)

    merged = merge_config(default_config(), payload)
    merged = merge_config(merged, _environment_layer(os.environ if environ is None else environ))
    merged = merge_config(merged, _override_layer(overrides or {}))
    config = assert_valid_config(merged)

    store = config["store"]
    if store["path"] != IN_MEMORY_STORE_PATH:
        store_path = Path(store["path"]).expanduser()
        if not store_path.is_absolute():
            store_path = source.resolve().parent / store_path
        store["path"] = store_path.resolve().as_posix()
    return config


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _environment_layer(environ: Mapping[str, str]) -> dict[str, Any]:
    store: dict[str, object] = {}
    for name, default in STORE_DEFAULTS.items():
        env_name = f"{ENV_PREFIX}STORE_{name.upper()}"
        raw = environ.get(env_name)
        if raw is not None:
            store[name] = _coerce(raw.strip(), default, env_name)
    return {"store": store} if store else {}


def _coerce(raw: str, default: object, env_name: str) -> object:
    if isinstance(default, bool):
        lowered = raw.lower()
        if lowered in _TRUE_WORDS:
            return True
        if lowered in _FALSE_WORDS:
            return False
        raise ConfigLoadError(f"{env_name} must be a boolean (true/false/1/0/yes/no/on/off)")
    if isinstance(default, int):
        try:
            return int(raw)
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} must be an integer, got {raw!r}") from exc
    return raw


def _override_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for key, value in overrides.items():
        parts = [part for part in key.split(".") if part]
        if not parts:
            raise ConfigLoadError(f"invalid override key {key!r}")
        nested: object = value
        for part in reversed(parts[1:]):
            nested = {part: nested}
        layer = merge_config(layer, {parts[0]: nested})
    return layer


__all__ = ["ConfigLoadError", "DEFAULT_CONFIG_FILE", "ENV_PREFIX", "load_config"]
