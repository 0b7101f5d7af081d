"""
approval_config -- single public entrypoint for workflow settings.

Responsibility:
    ``get_active_settings()`` is the ONLY way to obtain settings at
    runtime.  No other component reads settings files or environment
    variables directly.

Architecture position:
    Configuration.  Sits above ``approval_kernel``; the kernel MUST NEVER
    import from ``approval_config``.  ``approval_config.bridges``
    translates settings into kernel inputs.

Failure modes:
    - ``FileNotFoundError`` -- an explicit config path does not exist.
    - ``ConfigurationError`` -- unknown key, bad type or failed validation.

Audit relevance:
    Every successful call logs ``approval_config_loaded`` with the source
    path and a SHA-256 checksum of the effective settings.
"""

from __future__ import annotations

import logging
import os
from dataclasses import replace
from pathlib import Path

from approval_config.loader import compute_checksum, load_settings
from approval_config.schema import WorkflowSettings
from approval_config.validator import validate_settings
from approval_kernel.exceptions import ConfigurationError

_logger = logging.getLogger("approval_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"

DATABASE_URL_ENV = "APPROVAL_DATABASE_URL"


def get_active_settings(config_path: Path | str | None = None) -> WorkflowSettings:
    """Load, validate and return the effective workflow settings.

    Args:
        config_path: YAML file to read.  Defaults to the packaged
            ``defaults.yaml``.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
        ConfigurationError: If the file fails parsing or validation.
    """
    path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH
    settings = load_settings(path)

    database_url = os.environ.get(DATABASE_URL_ENV)
    if database_url:
        settings = replace(settings, database_url=database_url)
        settings = replace(settings, checksum=compute_checksum(settings.as_dict()))

    validation = validate_settings(settings)
    if not validation.is_valid:
        field_name, reason = validation.errors[0]
        raise ConfigurationError(field_name, reason)

    _logger.info(
        "approval_config_loaded",
        extra={
            "config_path": str(path),
            "checksum": settings.checksum,
            "max_retries": settings.max_retries,
            "require_comment_on_veto": settings.require_comment_on_veto,
            "database_url_set": settings.database_url is not None,
        },
    )
    return settings


__all__ = ["DEFAULT_CONFIG_PATH", "WorkflowSettings", "get_active_settings"]
