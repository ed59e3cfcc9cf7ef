"""Bundled stack templates."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from stackplan.config.loader import merge_configs, resolve_env_vars
from stackplan.config.models import StackConfig

TEMPLATES_DIR = Path(__file__).parent / "templates"


def list_templates() -> list[str]:
    return sorted(p.stem for p in TEMPLATES_DIR.glob("*.yaml"))


def template_path(name: str) -> Path:
    path = TEMPLATES_DIR / f"{name}.yaml"
    if not path.exists():
        msg = f"Template '{name}' not found at {path}"
        raise FileNotFoundError(msg)
    return path


def load_template(name: str = "pixel_tracking") -> dict[str, Any]:
    """Load a YAML template by name from the templates directory."""
    with template_path(name).open() as f:
        return resolve_env_vars(yaml.safe_load(f))  # type: ignore[no-any-return]


def build_stack_config(
    overrides: dict[str, Any] | None = None,
    *,
    template: str = "pixel_tracking",
) -> StackConfig:
    """Build a validated StackConfig by merging a template with overrides.

    Only top-level mappings are merged; a ``resources`` list in *overrides*
    replaces the template's list wholesale.
    """
    base = load_template(template)
    merged = merge_configs(base, overrides or {})
    return StackConfig.model_validate(merged)
