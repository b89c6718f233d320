"""Configuration: ``strata.toml`` settings and the YAML config resource."""

from strata.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_settings,
    load_config,
    load_settings,
    normalize_paths,
    resolve_mysql_password,
)
from strata.config.schema import (
    DEFAULT_CONFIG,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    DocumentSettings,
    LoggingSettings,
    MigrationSettings,
    MySQLSettings,
    SQLiteSettings,
    StrataSettings,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    settings_from_config,
    validate_config,
)
from strata.config.store import ConfigStore, ConfigStoreError

__all__ = [
    "ConfigLoadError",
    "ConfigStore",
    "ConfigStoreError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "DocumentSettings",
    "ENV_PREFIX",
    "LoggingSettings",
    "MigrationSettings",
    "MySQLSettings",
    "SQLiteSettings",
    "StrataSettings",
    "assert_valid_config",
    "default_config",
    "dump_effective_settings",
    "load_config",
    "load_settings",
    "merge_config",
    "normalize_paths",
    "redact_config",
    "resolve_mysql_password",
    "settings_from_config",
    "validate_config",
]
