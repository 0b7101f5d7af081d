"""
Configuration Loader (``approval_config.loader``).

Responsibility
--------------
Reads a settings YAML file and parses it into a frozen
``WorkflowSettings``.  Runtime callers go through
``approval_config.get_active_settings()`` instead of calling this module.

Invariants enforced
-------------------
* Unknown keys and wrongly typed values raise ``ConfigurationError``;
  nothing is coerced silently.
* ``compute_checksum`` is a deterministic SHA-256 over canonical JSON.

Failure modes
-------------
* Missing file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Top level not a mapping, unknown key, bad type -> ``ConfigurationError``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import replace
from pathlib import Path
from typing import Any

import yaml

from approval_config.schema import SETTING_TYPES, WorkflowSettings
from approval_kernel.exceptions import ConfigurationError


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file; an empty file yields an empty dict."""
    with open(path) as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError("<root>", f"{path} must contain a mapping")
    return data


def _check_type(name: str, value: Any) -> None:
    expected = SETTING_TYPES[name]
    # bool is an int subclass; "max_retries: true" is not a number.
    if isinstance(value, bool) and expected is not bool:
        raise ConfigurationError(name, f"expected {_type_name(expected)}, got bool")
    if not isinstance(value, expected):
        raise ConfigurationError(
            name, f"expected {_type_name(expected)}, got {type(value).__name__}",
        )


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def parse_settings(data: dict[str, Any]) -> WorkflowSettings:
    """
    Build ``WorkflowSettings`` from a parsed YAML mapping.

    Keys that are absent keep their defaults.

    Raises:
        ConfigurationError: Unknown key or a value of the wrong type.
    """
    unknown = sorted(set(data) - set(SETTING_TYPES))
    if unknown:
        raise ConfigurationError(unknown[0], "unknown setting")

    values: dict[str, Any] = {}
    for name, value in data.items():
        _check_type(name, value)
        if name == "role_hierarchy":
            if not all(isinstance(role, str) for role in value):
                raise ConfigurationError(name, "roles must be strings")
            value = tuple(value)
        values[name] = value

    settings = WorkflowSettings(**values)
    return replace(settings, checksum=compute_checksum(settings.as_dict()))


def load_settings(path: Path) -> WorkflowSettings:
    return parse_settings(load_yaml_file(path))


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
