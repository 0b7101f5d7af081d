"""ORM models for the approval kernel."""

from approval_kernel.models.approval import (
    ApprovalCommentModel,
    ApprovalRoundModel,
    ApproverAssignmentModel,
    ApproverResponseModel,
)

__all__ = [
    "ApprovalCommentModel",
    "ApprovalRoundModel",
    "ApproverAssignmentModel",
    "ApproverResponseModel",
]
