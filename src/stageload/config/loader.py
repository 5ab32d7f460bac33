"""
Configuration loading utilities.

Supports environment variable interpolation and inheritance from a
sibling base.yaml. Named definitions (schemas, formats, stages,
transforms) are written as YAML mappings keyed by name.
"""

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from stageload.config.settings import PipelineConfig
from stageload.errors import ConfigError

_NAMED_SECTIONS = ("schemas", "formats", "stages")


def _interpolate_env_vars(value: str) -> str:
    """
    Interpolate environment variables in string values.

    Supports ${VAR} and ${VAR:default} syntax.
    """
    pattern = r"\$\{([^}:]+)(?::([^}]*))?\}"

    def replacer(match: re.Match[str]) -> str:
        default = match.group(2)
        return os.environ.get(match.group(1), default if default is not None else "")

    return re.sub(pattern, replacer, value)


def _process_config_values(obj: Any) -> Any:
    """Recursively interpolate environment variables."""
    if isinstance(obj, str):
        return _interpolate_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _process_config_values(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_process_config_values(item) for item in obj]
    return obj


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries, with override taking precedence."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _named(section: Any, section_name: str) -> dict[str, dict[str, Any]]:
    """Inject each mapping key as the record's name."""
    if section is None:
        return {}
    if not isinstance(section, dict):
        msg = f"'{section_name}' must be a mapping of name -> definition"
        raise ConfigError(msg)
    named: dict[str, dict[str, Any]] = {}
    for name, body in section.items():
        record = dict(body or {})
        record.setdefault("name", str(name))
        named[str(name)] = record
    return named


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and process environment variables."""
    with path.open(encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is not None and not isinstance(data, dict):
        msg = f"Top level of {path} must be a mapping"
        raise ConfigError(msg)
    return _process_config_values(data) if data else {}


def build_config(data: dict[str, Any], *, root: Path | None = None) -> PipelineConfig:
    """
    Build a validated PipelineConfig from a plain dictionary.

    Args:
        data: Merged configuration mapping.
        root: Directory relative data_root values resolve against.

    Returns:
        Validated configuration.

    Raises:
        ConfigError: If required keys are missing or validation fails.
    """
    project = data.get("project")
    if not project:
        msg = "Config must specify 'project' name"
        raise ConfigError(msg)

    payload: dict[str, Any] = {k: v for k, v in data.items() if k not in _NAMED_SECTIONS}
    for section in _NAMED_SECTIONS:
        payload[section] = _named(data.get(section), section)

    transforms = data.get("transforms") or {}
    if isinstance(transforms, dict):
        payload["transforms"] = list(_named(transforms, "transforms").values())

    data_root = Path(data.get("data_root", "./data"))
    if root is not None and not data_root.is_absolute():
        data_root = root / data_root
    payload["data_root"] = data_root

    try:
        return PipelineConfig.model_validate(payload)
    except ValidationError as e:
        msg = f"Invalid configuration for project '{project}':\n{e}"
        raise ConfigError(msg) from e


def load_config(
    config_path: Path,
    base_path: Path | None = None,
) -> PipelineConfig:
    """
    Load pipeline configuration from YAML file(s).

    Args:
        config_path: Path to the main configuration file.
        base_path: Optional base configuration; defaults to a base.yaml
            next to config_path when one exists.

    Returns:
        Fully validated PipelineConfig instance.
    """
    if not config_path.exists():
        msg = f"Config file not found: {config_path}"
        raise ConfigError(msg)

    if base_path is not None:
        base_data = load_yaml(base_path)
    else:
        potential_base = config_path.parent / "base.yaml"
        if potential_base.exists() and potential_base.resolve() != config_path.resolve():
            base_data = load_yaml(potential_base)
        else:
            base_data = {}

    merged = _deep_merge(base_data, load_yaml(config_path))
    return build_config(merged, root=config_path.parent)
