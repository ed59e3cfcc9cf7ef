"""YAML + environment variable config loader."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, cast

import yaml
from pydantic import ValidationError

from stackplan.config.models import EngineConfig, StackConfig
from stackplan.errors import ConfigError

# Matches ${VAR} or ${VAR:-default}
_ENV_PATTERN = re.compile(r"\$\{([^}:]+)(?::-((?:[^}\\]|\\.)*))?}")


def _resolve_env_str(value: str) -> str:
    """Replace all ${VAR} / ${VAR:-default} references in a string."""

    def _replace(match: re.Match[str]) -> str:
        var_name = match.group(1)
        default = match.group(2)
        env_val = os.environ.get(var_name)
        if env_val is not None:
            return env_val
        if default is not None:
            return default.replace("\\}", "}")
        msg = f"Environment variable '{var_name}' is not set and no default provided"
        raise ConfigError(msg)

    return _ENV_PATTERN.sub(_replace, value)


def resolve_env_vars(data: Any) -> Any:
    """Recursively resolve ${VAR} and ${VAR:-default} in parsed YAML data."""
    if isinstance(data, str):
        return _resolve_env_str(data)
    if isinstance(data, dict):
        return {k: resolve_env_vars(v) for k, v in data.items()}
    if isinstance(data, list):
        return [resolve_env_vars(item) for item in data]
    return data


def load_yaml(path: str | Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict."""
    p = Path(path)
    if not p.exists():
        msg = f"Config file not found: {p}"
        raise FileNotFoundError(msg)
    try:
        with p.open() as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        msg = f"Failed to parse YAML in {p}"
        if hasattr(exc, "problem_mark") and exc.problem_mark is not None:
            mark = exc.problem_mark
            msg += f" at line {mark.line + 1}, column {mark.column + 1}"
        msg += f": {exc}"
        raise ConfigError(msg) from exc
    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping at top level in {p}, got {type(data).__name__}"
        raise ConfigError(msg)
    return cast(dict[str, Any], resolve_env_vars(data))


DEFAULTS_PATH = Path(__file__).parent / "defaults" / "engine.yaml"


def merge_configs(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge *overrides* over *base* without mutating either.

    Nested mappings merge key by key; lists and scalars replace.
    """
    merged: dict[str, Any] = dict(base)
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = merge_configs(current, value)
        else:
            merged[key] = value
    return merged


def build_engine_config(overrides: dict[str, Any] | None = None) -> EngineConfig:
    """Validate *overrides* merged over the bundled engine defaults."""
    with DEFAULTS_PATH.open() as f:
        base = cast(dict[str, Any], yaml.safe_load(f))
    return EngineConfig.model_validate(merge_configs(base, overrides or {}))


def load_engine_config(path: str | Path | None = None) -> EngineConfig:
    """Load engine config from built-in defaults, optionally merged with overrides."""
    overrides = load_yaml(path) if path is not None else {}
    try:
        return build_engine_config(overrides)
    except ValidationError as exc:
        source = path or "built-in defaults"
        msg = f"Invalid engine config ({source}):\n{exc}"
        raise ConfigError(msg) from exc


def load_stack_config(path: str | Path) -> StackConfig:
    """Load and validate a stack declaration YAML."""
    data = load_yaml(path)
    try:
        return StackConfig.model_validate(data)
    except ValidationError as exc:
        msg = f"Invalid stack config ({path}):\n{exc}"
        raise ConfigError(msg) from exc
