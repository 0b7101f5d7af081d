"""
Config -> Kernel Bridges.

Turn ``WorkflowSettings`` into the objects the kernel consumes.  They live
here because ``approval_kernel`` never imports ``approval_config``.

Usage:
    from approval_config import get_active_settings
    from approval_config.bridges import build_membership_provider, build_workflow_policy

    settings = get_active_settings()
    service = ApprovalWorkflowService(
        session_factory,
        membership=build_membership_provider(settings),
        policy=build_workflow_policy(settings),
    )
"""

from __future__ import annotations

from approval_config.schema import WorkflowSettings
from approval_kernel.domain.policy import WorkflowPolicy
from approval_kernel.services.membership import StaticMembershipProvider


def build_workflow_policy(settings: WorkflowSettings) -> WorkflowPolicy:
    return WorkflowPolicy(
        max_retries=settings.max_retries,
        retry_backoff_ms=settings.retry_backoff_ms,
        require_comment_on_veto=settings.require_comment_on_veto,
        comment_min_role=settings.comment_min_role,
        view_min_role=settings.view_min_role,
        max_comment_length=settings.max_comment_length,
    )


def build_membership_provider(settings: WorkflowSettings) -> StaticMembershipProvider:
    """Empty in-memory provider ranked by the configured role hierarchy."""
    return StaticMembershipProvider(settings.role_hierarchy)
