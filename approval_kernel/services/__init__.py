"""Kernel services - transactional operations over approval rounds."""

from approval_kernel.services.approval_store import ApprovalRoundStore
from approval_kernel.services.event_emitter import RoundEventEmitter
from approval_kernel.services.membership import StaticMembershipProvider
from approval_kernel.services.workflow_service import ApprovalWorkflowService

__all__ = [
    "ApprovalRoundStore",
    "ApprovalWorkflowService",
    "RoundEventEmitter",
    "StaticMembershipProvider",
]
