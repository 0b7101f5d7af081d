"""
Settings Validator (``approval_config.validator``).

Checks cross-field rules that the loader's per-key type checks cannot:
numeric ranges, a well-formed role hierarchy, and role thresholds that
exist in that hierarchy.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from approval_config.schema import WorkflowSettings


@dataclass
class SettingsValidationResult:
    """Collected problems, each as ``(field_name, reason)``."""

    errors: list[tuple[str, str]] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def add_error(self, field_name: str, reason: str) -> None:
        self.errors.append((field_name, reason))


def validate_settings(settings: WorkflowSettings) -> SettingsValidationResult:
    result = SettingsValidationResult()

    if settings.max_retries < 1:
        result.add_error("max_retries", "must be at least 1")
    if settings.retry_backoff_ms < 0:
        result.add_error("retry_backoff_ms", "cannot be negative")
    if settings.max_comment_length < 1:
        result.add_error("max_comment_length", "must be at least 1")

    roles = settings.role_hierarchy
    if not roles:
        result.add_error("role_hierarchy", "must name at least one role")
    elif len(set(roles)) != len(roles):
        result.add_error("role_hierarchy", "contains duplicate roles")

    for name in ("comment_min_role", "view_min_role"):
        role = getattr(settings, name)
        if role not in roles:
            result.add_error(name, f"'{role}' is not in role_hierarchy")

    if settings.database_url is not None and not settings.database_url.strip():
        result.add_error("database_url", "cannot be blank")

    return result
