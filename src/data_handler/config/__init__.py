"""Config loading and validation for ``handler_factory_from_config``."""

from data_handler.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    load_config,
)
from data_handler.config.schema import (
    STORE_DEFAULTS,
    ConfigValidationError,
    ConfigValidationIssue,
    DataHandlerConfig,
    StoreConfig,
    assert_valid_config,
    default_config,
    merge_config,
    validate_config,
)

__all__ = [
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "DEFAULT_CONFIG_FILE",
    "DataHandlerConfig",
    "ENV_PREFIX",
    "STORE_DEFAULTS",
    "StoreConfig",
    "assert_valid_config",
    "default_config",
    "load_config",
    "merge_config",
    "validate_config",
]
