"""
Approval domain types (``approval_kernel.domain.approval``).

Responsibility
--------------
Pure value objects for the approval workflow engine.  Defines the round
lifecycle state machine, approver decisions, the frozen records handed to
callers, lifecycle events, and the membership collaborator protocol.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``models/``, ``services/`` or outer layers.

Invariants enforced
-------------------
* Lifecycle state machine -- ``ROUND_TRANSITIONS`` lists the only valid
  status changes.  Terminal-for-round states have no outgoing edges.
* A round is either open (Draft/Submitted) or terminal-for-round
  (Approved/Declined/RevisionRequested); only Declined and
  RevisionRequested rounds may be followed by a new round.
* Every record is a frozen dataclass: callers can never write ``status``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol
from uuid import UUID


# =========================================================================
# Round Status Lifecycle
# =========================================================================


class RoundStatus(str, Enum):
    """Overall disposition of an approval round."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    DECLINED = "declined"
    REVISION_REQUESTED = "revision_requested"


ROUND_TRANSITIONS: dict[RoundStatus, frozenset[RoundStatus]] = {
    RoundStatus.DRAFT: frozenset({RoundStatus.SUBMITTED}),
    RoundStatus.SUBMITTED: frozenset({
        RoundStatus.SUBMITTED,
        RoundStatus.APPROVED,
        RoundStatus.DECLINED,
        RoundStatus.REVISION_REQUESTED,
    }),
    RoundStatus.APPROVED: frozenset(),
    RoundStatus.DECLINED: frozenset(),
    RoundStatus.REVISION_REQUESTED: frozenset(),
}

OPEN_ROUND_STATUSES: frozenset[RoundStatus] = frozenset({
    RoundStatus.DRAFT,
    RoundStatus.SUBMITTED,
})

TERMINAL_ROUND_STATUSES: frozenset[RoundStatus] = frozenset({
    RoundStatus.APPROVED,
    RoundStatus.DECLINED,
    RoundStatus.REVISION_REQUESTED,
})

# Approved ends the entity's journey; the other two invite a new round.
REOPENABLE_ROUND_STATUSES: frozenset[RoundStatus] = frozenset({
    RoundStatus.DECLINED,
    RoundStatus.REVISION_REQUESTED,
})


def is_valid_transition(current: RoundStatus, new: RoundStatus) -> bool:
    """True iff ``current -> new`` is an edge of the round state machine."""
    return new in ROUND_TRANSITIONS.get(current, frozenset())


class Decision(str, Enum):
    """Decision an assigned approver can register."""

    APPROVED = "approved"
    DECLINED = "declined"
    REVISION_REQUESTED = "revision_requested"


# Decisions that dominate any number of approvals.
VETO_DECISIONS: frozenset[Decision] = frozenset({
    Decision.DECLINED,
    Decision.REVISION_REQUESTED,
})


# =========================================================================
# Records
# =========================================================================


@dataclass(frozen=True)
class ApprovalRound:
    """Immutable snapshot of one attempt at getting an entity approved."""

    round_id: UUID
    entity_type: str
    entity_id: str
    round_number: int
    status: RoundStatus
    owner_id: UUID
    created_at: datetime
    container_id: str | None = None
    submitted_at: datetime | None = None
    resolved_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = 1

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_ROUND_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ROUND_STATUSES


@dataclass(frozen=True)
class ApproverAssignment:
    """``user_id`` is one of the named reviewers for ``round_id``."""

    round_id: UUID
    user_id: UUID


@dataclass(frozen=True)
class ApproverResponse:
    """The current decision of one approver on one round."""

    round_id: UUID
    approver_id: UUID
    decision: Decision
    comment: str | None = None
    responded_at: datetime | None = None


@dataclass(frozen=True)
class Comment:
    """Append-only discussion entry on a round."""

    comment_id: UUID
    round_id: UUID
    author_id: UUID
    body: str
    created_at: datetime


@dataclass(frozen=True)
class RoundDetails:
    """Everything a viewer needs to render one round."""

    round: ApprovalRound
    assignments: tuple[ApproverAssignment, ...] = ()
    responses: tuple[ApproverResponse, ...] = ()
    comments: tuple[Comment, ...] = ()

    @property
    def approver_ids(self) -> frozenset[UUID]:
        return frozenset(a.user_id for a in self.assignments)

    def response_for(self, approver_id: UUID) -> ApproverResponse | None:
        for response in self.responses:
            if response.approver_id == approver_id:
                return response
        return None


# =========================================================================
# Lifecycle Events
# =========================================================================


class RoundEventKind(str, Enum):
    """Invalidation signals emitted after a committed change."""

    ROUND_CREATED = "round_created"
    ROUND_UPDATED = "round_updated"


@dataclass(frozen=True)
class RoundEvent:
    """Cache-invalidation signal keyed by ``(entity_type, entity_id)``.

    Carries no payload beyond identifiers; subscribers re-fetch details.
    """

    kind: RoundEventKind
    entity_type: str
    entity_id: str
    round_id: UUID | None = None
    occurred_at: datetime | None = None


# =========================================================================
# Membership Collaborator Protocol
# =========================================================================


class ContainerRole(str, Enum):
    """Roles a user can hold in an organization/project container."""

    VIEWER = "viewer"
    MEMBER = "member"
    ADMIN = "admin"
    OWNER = "owner"


# Lowest to highest.
DEFAULT_ROLE_HIERARCHY: tuple[str, ...] = tuple(r.value for r in ContainerRole)


class MembershipProvider(Protocol):
    """Pluggable interface onto the external organization/project roles."""

    def has_container_access(
        self,
        user_id: UUID,
        container_id: str,
        min_role: str,
    ) -> bool:
        """True iff ``user_id`` holds ``min_role`` or above in the container."""
        ...
