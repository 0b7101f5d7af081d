"""
approval_kernel.services.approval_store -- Approval Round Store.

Responsibility:
    Reads and writes approval rounds, assignments, responses and comments
    through one SQLAlchemy ``Session``.  The workflow service wraps every
    call in a transaction; the store never commits.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.

Invariants enforced:
    - Status writes go through ``apply_status`` only, which checks the
      round state machine and bumps the optimistic ``version``.
    - Responses are upserted on (round_id, approver_id).
    - Comments get the next 1-based ``position`` in their round; a racing
      insert with the same position fails the UNIQUE constraint.

Failure modes:
    - RoundNotFoundError if a round id does not exist.
    - InvalidStateError on a status change outside ROUND_TRANSITIONS.
    - IntegrityError / StaleDataError propagate to the caller's retry loop.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from approval_kernel.domain.approval import (
    TERMINAL_ROUND_STATUSES,
    ApprovalRound,
    ApproverAssignment,
    ApproverResponse,
    Decision,
    RoundDetails,
    RoundStatus,
    is_valid_transition,
)
from approval_kernel.exceptions import InvalidStateError, RoundNotFoundError
from approval_kernel.models.approval import (
    ApprovalCommentModel,
    ApprovalRoundModel,
    ApproverAssignmentModel,
    ApproverResponseModel,
)



class ApprovalRoundStore:
    """Repository over the four approval tables."""

    def __init__(self, session: Session) -> None:
        self._session = session

    @property
    def session(self) -> Session:
        return self._session

    # ------------------------------------------------------------------
    # Rounds
    # ------------------------------------------------------------------

    def load_round(
        self,
        round_id: UUID,
        *,
        for_update: bool = False,
    ) -> ApprovalRoundModel:
        """Load a round by id, raise RoundNotFoundError if absent.

        ``for_update`` takes a row lock on PostgreSQL; on SQLite it is a
        no-op and the version check at flush time does the serializing.
        """
        stmt = select(ApprovalRoundModel).where(ApprovalRoundModel.id == round_id)
        if for_update:
            stmt = stmt.with_for_update()
        model = self._session.execute(
            stmt.execution_options(populate_existing=True)
        ).scalar_one_or_none()

        if model is None:
            raise RoundNotFoundError(str(round_id))
        return model

    def latest_round(
        self,
        entity_type: str,
        entity_id: str,
        *,
        for_update: bool = False,
    ) -> ApprovalRoundModel | None:
        """Highest-numbered round for an entity, or None."""
        stmt = (
            select(ApprovalRoundModel)
            .where(
                ApprovalRoundModel.entity_type == entity_type,
                ApprovalRoundModel.entity_id == entity_id,
            )
            .order_by(ApprovalRoundModel.round_number.desc())
            .limit(1)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.execute(
            stmt.execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def rounds_for_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[ApprovalRoundModel]:
        return list(
            self._session.execute(
                select(ApprovalRoundModel)
                .where(
                    ApprovalRoundModel.entity_type == entity_type,
                    ApprovalRoundModel.entity_id == entity_id,
                )
                .order_by(ApprovalRoundModel.round_number)
            ).scalars().all()
        )

    def rounds_for_owner(self, owner_id: UUID) -> list[ApprovalRoundModel]:
        return list(
            self._session.execute(
                select(ApprovalRoundModel)
                .where(ApprovalRoundModel.owner_id == owner_id)
                .order_by(
                    ApprovalRoundModel.created_at.desc(),
                    ApprovalRoundModel.round_number.desc(),
                )
            ).scalars().all()
        )

    def rounds_awaiting_response(self, approver_id: UUID) -> list[ApprovalRoundModel]:
        """Submitted rounds where ``approver_id`` is assigned and silent."""
        responded = (
            select(ApproverResponseModel.round_id)
            .where(ApproverResponseModel.approver_id == approver_id)
        )
        return list(
            self._session.execute(
                select(ApprovalRoundModel)
                .join(
                    ApproverAssignmentModel,
                    ApproverAssignmentModel.round_id == ApprovalRoundModel.id,
                )
                .where(
                    ApproverAssignmentModel.user_id == approver_id,
                    ApprovalRoundModel.status == RoundStatus.SUBMITTED.value,
                    ApprovalRoundModel.id.not_in(responded),
                )
                .order_by(
                    ApprovalRoundModel.submitted_at,
                    ApprovalRoundModel.created_at,
                )
            ).scalars().all()
        )

    def insert_round(
        self,
        *,
        entity_type: str,
        entity_id: str,
        round_number: int,
        owner_id: UUID,
        container_id: str | None,
        created_at: datetime,
    ) -> ApprovalRoundModel:
        model = ApprovalRoundModel(
            entity_type=entity_type,
            entity_id=entity_id,
            round_number=round_number,
            status=RoundStatus.DRAFT.value,
            owner_id=owner_id,
            container_id=container_id,
            created_at=created_at,
            updated_at=created_at,
            version=1,
        )
        self._session.add(model)
        self._session.flush()
        return model

    def apply_status(
        self,
        model: ApprovalRoundModel,
        new_status: RoundStatus,
        now: datetime,
    ) -> None:
        """Persist an aggregator result on the round.

        Always bumps ``version`` so that a concurrent writer holding the
        previous version fails its flush, even when the status is unchanged.
        """
        current = RoundStatus(model.status)
        if not is_valid_transition(current, new_status):
            raise InvalidStateError(
                "apply_status",
                current.value,
                f"Round cannot move from {current.value} to {new_status.value}",
            )

        if current == RoundStatus.DRAFT and new_status == RoundStatus.SUBMITTED:
            model.submitted_at = now
        if new_status in TERMINAL_ROUND_STATUSES:
            model.resolved_at = now

        model.status = new_status.value
        self.touch(model, now)

    def touch(self, model: ApprovalRoundModel, now: datetime) -> None:
        """Bump the optimistic version and flush."""
        model.updated_at = now
        model.version = model.version + 1
        self._session.flush()

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    def assignments(self, round_id: UUID) -> list[ApproverAssignmentModel]:
        return list(
            self._session.execute(
                select(ApproverAssignmentModel)
                .where(ApproverAssignmentModel.round_id == round_id)
                .order_by(ApproverAssignmentModel.position)
            ).scalars().all()
        )

    def approver_ids(self, round_id: UUID) -> tuple[UUID, ...]:
        return tuple(a.user_id for a in self.assignments(round_id))

    def add_assignments(
        self,
        round_id: UUID,
        approver_ids: Sequence[UUID],
    ) -> None:
        for position, user_id in enumerate(approver_ids):
            self._session.add(
                ApproverAssignmentModel(
                    round_id=round_id,
                    user_id=user_id,
                    position=position,
                )
            )
        self._session.flush()

    def replace_assignments(
        self,
        round_id: UUID,
        approver_ids: Sequence[UUID],
    ) -> None:
        """Swap the whole roster of a draft round."""
        for existing in self.assignments(round_id):
            self._session.delete(existing)
        self._session.flush()
        self.add_assignments(round_id, approver_ids)

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    def responses(self, round_id: UUID) -> list[ApproverResponseModel]:
        return list(
            self._session.execute(
                select(ApproverResponseModel)
                .where(ApproverResponseModel.round_id == round_id)
                .order_by(ApproverResponseModel.responded_at)
                .execution_options(populate_existing=True)
            ).scalars().all()
        )

    def upsert_response(
        self,
        *,
        round_id: UUID,
        approver_id: UUID,
        decision: Decision,
        comment: str | None,
        responded_at: datetime,
    ) -> ApproverResponseModel:
        """Insert or overwrite the approver's single response row."""
        model = self._session.execute(
            select(ApproverResponseModel).where(
                ApproverResponseModel.round_id == round_id,
                ApproverResponseModel.approver_id == approver_id,
            )
        ).scalar_one_or_none()

        if model is None:
            model = ApproverResponseModel(
                round_id=round_id,
                approver_id=approver_id,
                status=decision.value,
                comment=comment,
                responded_at=responded_at,
            )
            self._session.add(model)
        else:
            model.status = decision.value
            model.comment = comment
            model.responded_at = responded_at

        self._session.flush()
        return model

    # ------------------------------------------------------------------
    # Comments
    # ------------------------------------------------------------------

    def comments(self, round_id: UUID) -> list[ApprovalCommentModel]:
        return list(
            self._session.execute(
                select(ApprovalCommentModel)
                .where(ApprovalCommentModel.round_id == round_id)
                .order_by(ApprovalCommentModel.position)
            ).scalars().all()
        )

    def append_comment(
        self,
        *,
        round_id: UUID,
        author_id: UUID,
        body: str,
        created_at: datetime,
    ) -> ApprovalCommentModel:
        last_position = self._session.execute(
            select(func.max(ApprovalCommentModel.position))
            .where(ApprovalCommentModel.round_id == round_id)
        ).scalar_one()

        model = ApprovalCommentModel(
            round_id=round_id,
            author_id=author_id,
            body=body,
            position=(last_position or 0) + 1,
            created_at=created_at,
        )
        self._session.add(model)
        self._session.flush()
        return model

    # ------------------------------------------------------------------
    # Read model
    # ------------------------------------------------------------------

    def snapshot(
        self,
        model: ApprovalRoundModel,
    ) -> tuple[ApprovalRound, tuple[ApproverAssignment, ...], tuple[ApproverResponse, ...]]:
        """Round DTO plus its roster and responses, as the gate and
        aggregator consume them."""
        return (
            model.to_dto(),
            tuple(a.to_dto() for a in self.assignments(model.id)),
            tuple(r.to_dto() for r in self.responses(model.id)),
        )

    def details(self, model: ApprovalRoundModel) -> RoundDetails:
        round_dto, assignments, responses = self.snapshot(model)
        return RoundDetails(
            round=round_dto,
            assignments=assignments,
            responses=responses,
            comments=tuple(c.to_dto() for c in self.comments(model.id)),
        )

