"""
strata — runtime settings loader.

File: src/strata/config/loader.py

Purpose
- Build the effective ``strata.toml`` configuration from four layers.

Layers (later wins)
- Built-in defaults from ``strata.config.schema``.
- The TOML file (``tomllib``); a missing default file is an empty layer.
- ``STRATA_<SECTION>_<KEY>`` environment variables, parsed by the type of the default.
- Explicit overrides, as dotted keys (``"mysql.port"``) or nested mappings.

Functional requirements
- Relative paths resolve against the directory holding the config file.
- The merged result is validated once; secrets must come from ``*_env`` variables.
"""

from __future__ import annotations

import dataclasses
import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from strata.config.schema import (
    PATH_FIELDS,
    StrataSettings,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    settings_from_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "strata.toml"
ENV_PREFIX: Final[str] = "STRATA_"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})


class ConfigLoadError(ValueError):
    """The config file is unreadable or an override cannot be interpreted."""


def load_config(
    config_path: str | Path | None = None,
    *,
    overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated effective configuration mapping."""

    path = (
        Path.cwd() / DEFAULT_CONFIG_FILE
        if config_path is None
        else Path(config_path).expanduser()
    ).resolve()

    layers = (
        _read_toml(path, required=config_path is not None),
        _env_layer(os.environ if environ is None else environ),
        _override_layer(overrides or {}),
    )
    merged: Mapping[str, object] = default_config()
    for layer in layers:
        merged = merge_config(merged, layer)
    return assert_valid_config(normalize_paths(merged, base_dir=path.parent))


def load_settings(
    config_path: str | Path | None = None,
    *,
    overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> StrataSettings:
    return settings_from_config(load_config(config_path, overrides=overrides, environ=environ))


def resolve_mysql_password(
    settings: StrataSettings, environ: Mapping[str, str] | None = None
) -> str | None:
    """Value of the variable named by ``mysql.password_env``; blank counts as unset."""

    value = (os.environ if environ is None else environ).get(settings.mysql.password_env)
    return value if value and value.strip() else None


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Copy of ``config`` with path fields made absolute against ``base_dir``."""

    result = merge_config({}, config)
    for section, key in PATH_FIELDS:
        table = result.get(section)
        if isinstance(table, dict) and isinstance(table.get(key), str):
            candidate = Path(os.path.expandvars(table[key])).expanduser()
            if not candidate.is_absolute():
                candidate = base_dir / candidate
            table[key] = Path(os.path.normpath(candidate)).as_posix()
    return result


def dump_effective_settings(settings: StrataSettings | Mapping[str, object]) -> str:
    """Redacted, key-sorted JSON of the effective settings."""

    if isinstance(settings, StrataSettings):
        payload: Mapping[str, object] = {
            **dataclasses.asdict(settings),
            "data_dir": settings.data_dir.as_posix(),
        }
    else:
        payload = settings
    return json.dumps(
        redact_config(payload), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def env_var_name(path: tuple[str, ...]) -> str:
    """``("mysql", "max_pool_size")`` -> ``STRATA_MYSQL_MAX_POOL_SIZE``."""

    return ENV_PREFIX + "_".join(part.upper() for part in path)


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError:
        if required:
            raise ConfigLoadError(f"config file not found: {path}") from None
        return {}
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _parse_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError("expected a boolean (true/false, 1/0, yes/no, on/off)")


_ENV_PARSERS: Final[dict[type, Callable[[str], object]]] = {
    bool: _parse_bool,
    int: int,
    float: float,
    str: str,
}


def _leaves(
    table: Mapping[str, object], prefix: tuple[str, ...] = ()
) -> Iterator[tuple[tuple[str, ...], object]]:
    for key in sorted(table):
        value = table[key]
        if isinstance(value, Mapping):
            yield from _leaves(value, (*prefix, key))
        else:
            yield (*prefix, key), value


def _env_layer(environ: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for path, default in _leaves(default_config()):
        name = env_var_name(path)
        raw = environ.get(name)
        parse = _ENV_PARSERS.get(type(default))
        if path[0] == "meta" or raw is None or parse is None:
            continue
        try:
            value = parse(raw.strip())
        except ValueError as exc:
            raise ConfigLoadError(f"{name} -> {'.'.join(path)}: {exc}") from exc
        _assign(layer, path, value)
    return layer


def _override_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for dotted in sorted(overrides):
        path = tuple(part for part in dotted.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid override key {dotted!r}")
        _assign(layer, path, overrides[dotted])
    return layer


def _assign(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    *parents, leaf = path
    for part in parents:
        target = target.setdefault(part, {})
        if not isinstance(target, dict):
            raise ConfigLoadError(f"override {'.'.join(path)!r} crosses a scalar value")
    if isinstance(value, Mapping) and isinstance(target.get(leaf), dict):
        target[leaf] = merge_config(target[leaf], value)
    else:
        target[leaf] = dict(value) if isinstance(value, Mapping) else value


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_settings",
    "env_var_name",
    "load_config",
    "load_settings",
    "normalize_paths",
    "resolve_mysql_password",
]
