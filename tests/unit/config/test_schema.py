"""
data-handler — unit tests for config schema validation

File: tests/unit/config/test_schema.py

What this test file should cover
- The repository's data_handler.toml and the defaults validate.
- Unknown, missing, mistyped and out-of-range fields are reported by path.
- Merging is deep and leaves its inputs alone.
"""

from __future__ import annotations

import tomllib
from pathlib import Path

import pytest

from data_handler.config.schema import (
    STORE_DEFAULTS,
    ConfigValidationError,
    assert_valid_config,
    default_config,
    merge_config,
    validate_config,
)

REPO_ROOT = Path(__file__).resolve().parents[3]


def _issue_paths(config: object) -> set[str]:
    return {issue.path for issue in validate_config(config)}


def test_live_config_and_defaults_validate() -> None:
    with (REPO_ROOT / "data_handler.toml").open("rb") as handle:
        live = tomllib.load(handle)

    assert validate_config(live) == ()
    assert validate_config(default_config()) == ()
    assert assert_valid_config(live)["store"]["async_blocking_policy"] == "strict"


def test_default_config_returns_independent_copies() -> None:
    first = default_config()
    first["store"]["busy_retry_limit"] = 99

    assert default_config()["store"]["busy_retry_limit"] == STORE_DEFAULTS["busy_retry_limit"]


def test_unknown_and_missing_keys_are_reported_with_paths() -> None:
    config = merge_config(default_config(), {"store": {"journal": "wal"}, "extras": {}})
    del config["store"]["busy_timeout_ms"]

    issues = {issue.path: issue.message for issue in validate_config(config)}

    assert issues == {
        "extras": "unknown section",
        "store.journal": "unknown field",
        "store.busy_timeout_ms": "missing required field",
    }


def test_missing_store_section_is_reported() -> None:
    assert _issue_paths({}) == {"store"}


def test_type_and_range_errors_are_actionable() -> None:
    config = merge_config(
        default_config(),
        {
            "store": {
                "busy_timeout_ms": "slow",
                "busy_retry_limit": -1,
                "in_memory": "yes",
                "path": "   ",
                "busy_retry_backoff_ms": True,
            },
        },
    )

    messages = {issue.path: issue.message for issue in validate_config(config)}

    assert messages == {
        "store.busy_timeout_ms": "must be an integer",
        "store.busy_retry_limit": "must be >= 0",
        "store.in_memory": "must be a boolean",
        "store.path": "must be a non-empty string",
        "store.busy_retry_backoff_ms": "must be an integer",
    }


def test_assert_valid_config_lists_every_issue() -> None:
    config = merge_config(
        default_config(),
        {"store": {"async_blocking_policy": "lenient", "busy_retry_limit": -2}},
    )

    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(config)

    rendered = str(excinfo.value)
    assert "store.async_blocking_policy: must be one of allow, strict" in rendered
    assert "store.busy_retry_limit" in rendered
    assert len(excinfo.value.issues) == 2


def test_root_must_be_a_table() -> None:
    assert [issue.path for issue in validate_config(["not", "a", "mapping"])] == ["<root>"]


def test_merge_config_is_deep_and_does_not_mutate_inputs() -> None:
    base = default_config()
    overlay = {"store": {"busy_retry_limit": 1}}

    merged = merge_config(base, overlay)
    merged["store"]["path"] = "elsewhere.sqlite3"

    assert merged["store"]["busy_retry_limit"] == 1
    assert merged["store"]["busy_timeout_ms"] == base["store"]["busy_timeout_ms"]
    assert base["store"]["busy_retry_limit"] == 4
    assert base["store"]["path"] == "state/records.sqlite3"
    assert overlay == {"store": {"busy_retry_limit": 1}}
