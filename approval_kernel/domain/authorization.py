"""
Authorization Gate (``approval_kernel.domain.authorization``).

Responsibility
--------------
Answers "may user U perform action A on approval round R?" by combining
round membership (owner / assigned approver) with the external role
hierarchy exposed by a ``MembershipProvider``.

Architecture position
---------------------
**Kernel domain layer**.  Synchronous and side-effect free: the only
outside call is the provider's read-only ``has_container_access`` query.

Contract
--------
Checks never raise.  Each returns an ``AuthorizationResult`` tagged with a
``Denial`` so the workflow service can map it to the right exception:

* ``NOT_OWNER`` / ``NOT_APPROVER`` / ``NO_CONTAINER_ACCESS``
  -> ``AuthorizationError``
* ``WRONG_STATUS``  -> ``InvalidStateError``
* ``NO_APPROVERS``  -> ``PreconditionFailedError``

Relationship checks run before status checks, so a user with no
assignment is always told they are not a reviewer, whatever the round's
status.
"""

from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from approval_kernel.domain.approval import (
    REOPENABLE_ROUND_STATUSES,
    ApprovalRound,
    ContainerRole,
    MembershipProvider,
    RoundStatus,
)


class Action(str, Enum):
    SUBMIT = "submit"
    RESPOND = "respond"
    COMMENT = "comment"
    VIEW = "view"
    UPDATE_APPROVERS = "update_approvers"
    REOPEN = "reopen"


class Denial(str, Enum):
    NOT_OWNER = "not_owner"
    NOT_APPROVER = "not_approver"
    NO_CONTAINER_ACCESS = "no_container_access"
    WRONG_STATUS = "wrong_status"
    NO_APPROVERS = "no_approvers"


# Stable user-facing messages, keyed by (action, denial).
_MESSAGES: dict[tuple[Action, Denial], str] = {
    (Action.SUBMIT, Denial.NOT_OWNER):
        "Only the owner of this item can submit it for approval",
    (Action.SUBMIT, Denial.WRONG_STATUS):
        "This item has already been submitted for approval",
    (Action.SUBMIT, Denial.NO_APPROVERS):
        "At least one approver must be assigned before submitting",
    (Action.RESPOND, Denial.NOT_APPROVER):
        "You are not an assigned reviewer for this item",
    (Action.RESPOND, Denial.WRONG_STATUS):
        "This item is not awaiting review",
    (Action.COMMENT, Denial.NO_CONTAINER_ACCESS):
        "You do not have permission to comment on this item",
    (Action.VIEW, Denial.NO_CONTAINER_ACCESS):
        "You do not have permission to view this item",
    (Action.UPDATE_APPROVERS, Denial.NOT_OWNER):
        "Only the owner of this item can change its approvers",
    (Action.UPDATE_APPROVERS, Denial.WRONG_STATUS):
        "Approvers cannot be changed after submission",
    (Action.REOPEN, Denial.NOT_OWNER):
        "Only the owner of this item can resubmit it",
    (Action.REOPEN, Denial.WRONG_STATUS):
        "Only declined items or items sent back for revision can be resubmitted",
}


@dataclass(frozen=True)
class AuthorizationResult:
    """Outcome of one gate check."""

    allowed: bool
    action: Action
    denial: Denial | None = None

    @property
    def reason(self) -> str:
        if self.allowed or self.denial is None:
            return ""
        return _MESSAGES.get(
            (self.action, self.denial),
            f"{self.action.value} denied: {self.denial.value}",
        )


def _allow(action: Action) -> AuthorizationResult:
    return AuthorizationResult(allowed=True, action=action)


def _deny(action: Action, denial: Denial) -> AuthorizationResult:
    return AuthorizationResult(allowed=False, action=action, denial=denial)


class AuthorizationGate:
    """Relationship + role checks for every workflow action.

    ``comment_min_role`` / ``view_min_role`` are the minimum container roles
    handed to the membership provider for users who are neither owner nor
    approver.
    """

    def __init__(
        self,
        membership: MembershipProvider,
        comment_min_role: str = ContainerRole.MEMBER.value,
        view_min_role: str = ContainerRole.VIEWER.value,
    ) -> None:
        self._membership = membership
        self._comment_min_role = comment_min_role
        self._view_min_role = view_min_role

    def can_submit(
        self,
        user_id: UUID,
        approval_round: ApprovalRound,
        approver_ids: Collection[UUID],
    ) -> AuthorizationResult:
        if user_id != approval_round.owner_id:
            return _deny(Action.SUBMIT, Denial.NOT_OWNER)
        if approval_round.status != RoundStatus.DRAFT:
            return _deny(Action.SUBMIT, Denial.WRONG_STATUS)
        if not approver_ids:
            return _deny(Action.SUBMIT, Denial.NO_APPROVERS)
        return _allow(Action.SUBMIT)

    def can_respond(
        self,
        user_id: UUID,
        approval_round: ApprovalRound,
        approver_ids: Collection[UUID],
    ) -> AuthorizationResult:
        # No other permission substitutes for an assignment.
        if user_id not in approver_ids:
            return _deny(Action.RESPOND, Denial.NOT_APPROVER)
        if approval_round.status != RoundStatus.SUBMITTED:
            return _deny(Action.RESPOND, Denial.WRONG_STATUS)
        return _allow(Action.RESPOND)

    def can_comment(
        self,
        user_id: UUID,
        approval_round: ApprovalRound,
        approver_ids: Collection[UUID],
    ) -> AuthorizationResult:
        if user_id == approval_round.owner_id or user_id in approver_ids:
            return _allow(Action.COMMENT)
        if self._has_role(user_id, approval_round, self._comment_min_role):
            return _allow(Action.COMMENT)
        return _deny(Action.COMMENT, Denial.NO_CONTAINER_ACCESS)

    def can_view(
        self,
        user_id: UUID,
        approval_round: ApprovalRound,
        approver_ids: Collection[UUID],
    ) -> AuthorizationResult:
        if self.can_comment(user_id, approval_round, approver_ids).allowed:
            return _allow(Action.VIEW)
        if self._has_role(user_id, approval_round, self._view_min_role):
            return _allow(Action.VIEW)
        return _deny(Action.VIEW, Denial.NO_CONTAINER_ACCESS)

    def can_update_approvers(
        self,
        user_id: UUID,
        approval_round: ApprovalRound,
    ) -> AuthorizationResult:
        if user_id != approval_round.owner_id:
            return _deny(Action.UPDATE_APPROVERS, Denial.NOT_OWNER)
        if approval_round.status != RoundStatus.DRAFT:
            return _deny(Action.UPDATE_APPROVERS, Denial.WRONG_STATUS)
        return _allow(Action.UPDATE_APPROVERS)

    def can_reopen(
        self,
        user_id: UUID,
        previous: ApprovalRound,
    ) -> AuthorizationResult:
        if user_id != previous.owner_id:
            return _deny(Action.REOPEN, Denial.NOT_OWNER)
        if previous.status not in REOPENABLE_ROUND_STATUSES:
            return _deny(Action.REOPEN, Denial.WRONG_STATUS)
        return _allow(Action.REOPEN)

    def _has_role(self, user_id: UUID, approval_round: ApprovalRound, min_role: str) -> bool:
        if approval_round.container_id is None:
            return False
        return bool(
            self._membership.has_container_access(
                user_id, approval_round.container_id, min_role,
            )
        )
