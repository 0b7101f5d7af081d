"""
WorkflowSettings schema.

The parsed, reviewable form of ``defaults.yaml`` (or an override file).
The loader builds it, the validator checks it, and the bridges turn it
into kernel inputs.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


@dataclass(frozen=True)
class WorkflowSettings:
    """Runtime settings for the approval workflow."""

    max_retries: int = 5
    retry_backoff_ms: int = 10
    require_comment_on_veto: bool = False
    max_comment_length: int = 5000
    role_hierarchy: tuple[str, ...] = ("viewer", "member", "admin", "owner")
    comment_min_role: str = "member"
    view_min_role: str = "viewer"
    database_url: str | None = None
    checksum: str = ""

    def as_dict(self) -> dict[str, Any]:
        """Settings values without the checksum, as hashed by the loader."""
        data = asdict(self)
        data.pop("checksum")
        data["role_hierarchy"] = list(self.role_hierarchy)
        return data


# Field name -> accepted Python type(s) for values read from YAML.
SETTING_TYPES: dict[str, type | tuple[type, ...]] = {
    "max_retries": int,
    "retry_backoff_ms": int,
    "require_comment_on_veto": bool,
    "max_comment_length": int,
    "role_hierarchy": list,
    "comment_min_role": str,
    "view_min_role": str,
    "database_url": (str, type(None)),
}
