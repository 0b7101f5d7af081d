"""
Workflow policy knobs consumed by the workflow service.

Built from configuration by ``approval_config.bridges``; the kernel never
reads configuration files itself.  Defaults match the shipped settings.
"""

from __future__ import annotations

from dataclasses import dataclass

from approval_kernel.domain.approval import ContainerRole


@dataclass(frozen=True)
class WorkflowPolicy:
    """Tunables for retries, comment rules and role thresholds."""

    max_retries: int = 5
    retry_backoff_ms: int = 10
    require_comment_on_veto: bool = False
    comment_min_role: str = ContainerRole.MEMBER.value
    view_min_role: str = ContainerRole.VIEWER.value
    max_comment_length: int = 5000

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.retry_backoff_ms < 0:
            raise ValueError("retry_backoff_ms cannot be negative")
        if self.max_comment_length < 1:
            raise ValueError("max_comment_length must be at least 1")
