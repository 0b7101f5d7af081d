"""
Status Aggregator (``approval_kernel.domain.aggregation``).

Responsibility
--------------
Pure function mapping the approver roster and the recorded responses of a
round to the round's overall status.  The workflow service persists its
output; nothing else ever writes a round's status.

Architecture position
---------------------
**Kernel domain layer** -- ZERO I/O.  Imports only ``domain.approval``.

Rule
----
1. No assignments                               -> DRAFT
2. Any response DECLINED                        -> DECLINED
3. Any response REVISION_REQUESTED              -> REVISION_REQUESTED
4. Every assigned approver responded APPROVED   -> APPROVED
5. Otherwise                                    -> SUBMITTED

Declined outranks RevisionRequested, and both outrank any number of
approvals.  Approval needs unanimity among the assigned approvers.  The
result does not depend on the order responses arrived in.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from uuid import UUID

from approval_kernel.domain.approval import (
    ApproverAssignment,
    ApproverResponse,
    Decision,
    RoundStatus,
)


@dataclass(frozen=True)
class RoundTally:
    """Per-decision counts over the assigned approvers of a round."""

    assigned: int = 0
    approved: int = 0
    declined: int = 0
    revision_requested: int = 0

    @property
    def responded(self) -> int:
        return self.approved + self.declined + self.revision_requested

    @property
    def pending(self) -> int:
        return self.assigned - self.responded


def tally(
    assignments: Iterable[ApproverAssignment],
    responses: Iterable[ApproverResponse],
) -> RoundTally:
    """Count the latest decision of each assigned approver.

    Responses from users outside the roster are ignored; the store never
    holds such rows, so this only matters for hand-built inputs.
    """
    roster: set[UUID] = {a.user_id for a in assignments}
    latest: dict[UUID, Decision] = {}
    for response in responses:
        if response.approver_id in roster:
            latest[response.approver_id] = response.decision

    decisions = list(latest.values())
    return RoundTally(
        assigned=len(roster),
        approved=decisions.count(Decision.APPROVED),
        declined=decisions.count(Decision.DECLINED),
        revision_requested=decisions.count(Decision.REVISION_REQUESTED),
    )


def status_from_tally(counts: RoundTally) -> RoundStatus:
    if counts.assigned == 0:
        return RoundStatus.DRAFT
    if counts.declined:
        return RoundStatus.DECLINED
    if counts.revision_requested:
        return RoundStatus.REVISION_REQUESTED
    if counts.approved == counts.assigned:
        return RoundStatus.APPROVED
    return RoundStatus.SUBMITTED


def aggregate(
    assignments: Iterable[ApproverAssignment],
    responses: Iterable[ApproverResponse],
) -> RoundStatus:
    """Derive a round's overall status from its roster and responses."""
    return status_from_tally(tally(assignments, responses))
