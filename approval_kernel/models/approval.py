"""
Module: approval_kernel.models.approval
Responsibility: ORM persistence for approval rounds, approver assignments,
    approver responses and round comments.

Architecture position: Kernel > Models.  May import from db/base.py and
    exceptions.py only (domain DTOs are imported lazily in to_dto()).

Invariants enforced:
    - At most one open (draft/submitted) round per (entity_type, entity_id):
      partial UNIQUE index ``ix_approval_rounds_one_open``.
    - Round numbers are unique per entity: UNIQUE(entity_type, entity_id,
      round_number).
    - Status values limited by CHECK constraint.
    - Optimistic concurrency: ``version`` is the mapper's version_id_col; an
      UPDATE against a stale version raises StaleDataError.
    - Assignment uniqueness: UNIQUE(round_id, user_id).
    - Response upsert key: UNIQUE(round_id, approver_id).
    - A response needs an assignment: composite FK (round_id, approver_id)
      -> approver_assignments(round_id, user_id).
    - Comments are append-only and ordered: UNIQUE(round_id, position),
      ORM listeners reject UPDATE and DELETE.

Failure modes:
    - IntegrityError on a second open round, a duplicate response row, a
      response without assignment, or a duplicate comment position.
    - StaleDataError when the round row was changed by another transaction.
    - ImmutabilityViolationError on comment/assignment UPDATE or round DELETE.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from approval_kernel.db.base import Base, UUIDString
from approval_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from approval_kernel.domain.approval import (
        ApprovalRound,
        ApproverAssignment,
        ApproverResponse,
        Comment,
    )

_OPEN_STATUS_SQL = "status IN ('draft', 'submitted')"


class ApprovalRoundModel(Base):
    """Persistent approval round.

    Contract:
        ``status`` is only ever written by the workflow service with the
        aggregator's output.  Every write bumps ``version``.
    """

    __tablename__ = "approval_rounds"

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'submitted', 'approved', 'declined', "
            "'revision_requested')",
            name="ck_approval_rounds_valid_status",
        ),
        CheckConstraint(
            "round_number >= 1",
            name="ck_approval_rounds_round_number_positive",
        ),
        UniqueConstraint(
            "entity_type", "entity_id", "round_number",
            name="uq_approval_rounds_entity_round",
        ),
        Index(
            "ix_approval_rounds_one_open",
            "entity_type", "entity_id",
            unique=True,
            postgresql_where=text(_OPEN_STATUS_SQL),
            sqlite_where=text(_OPEN_STATUS_SQL),
        ),
        Index("ix_approval_rounds_owner", "owner_id", "created_at"),
        Index("ix_approval_rounds_status", "status", "created_at"),
    )

    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    round_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="draft")
    owner_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    container_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    submitted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {
        "version_id_col": version,
        "version_id_generator": False,
    }

    assignments: Mapped[list["ApproverAssignmentModel"]] = relationship(
        "ApproverAssignmentModel",
        order_by="ApproverAssignmentModel.position",
        lazy="selectin",
        viewonly=True,
    )
    responses: Mapped[list["ApproverResponseModel"]] = relationship(
        "ApproverResponseModel",
        order_by="ApproverResponseModel.responded_at",
        lazy="selectin",
        viewonly=True,
    )
    comments: Mapped[list["ApprovalCommentModel"]] = relationship(
        "ApprovalCommentModel",
        order_by="ApprovalCommentModel.position",
        lazy="selectin",
        viewonly=True,
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalRound {self.id} "
            f"{self.entity_type}/{self.entity_id} #{self.round_number} "
            f"status={self.status}>"
        )

    def to_dto(self) -> ApprovalRound:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.approval import (
            ApprovalRound as ApprovalRoundDTO,
            RoundStatus,
        )

        return ApprovalRoundDTO(
            round_id=self.id,
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            round_number=self.round_number,
            status=RoundStatus(self.status),
            owner_id=self.owner_id,
            created_at=self.created_at,
            container_id=self.container_id,
            submitted_at=self.submitted_at,
            resolved_at=self.resolved_at,
            updated_at=self.updated_at,
            version=self.version,
        )


class ApproverAssignmentModel(Base):
    """``user_id`` is a named reviewer of ``round_id``.

    Rows are inserted or removed while the round is a draft and frozen
    afterwards; they are never updated in place.
    """

    __tablename__ = "approver_assignments"

    __table_args__ = (
        UniqueConstraint(
            "round_id", "user_id",
            name="uq_approver_assignments_round_user",
        ),
        Index("ix_approver_assignments_user", "user_id"),
    )

    round_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_rounds.id"),
        nullable=False,
    )
    user_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    # Roster order as supplied by the owner.
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<ApproverAssignment round={self.round_id} user={self.user_id}>"

    def to_dto(self) -> ApproverAssignment:
        from approval_kernel.domain.approval import (
            ApproverAssignment as ApproverAssignmentDTO,
        )

        return ApproverAssignmentDTO(round_id=self.round_id, user_id=self.user_id)


class ApproverResponseModel(Base):
    """Current decision of one approver on one round (upserted in place)."""

    __tablename__ = "approver_responses"

    __table_args__ = (
        CheckConstraint(
            "status IN ('approved', 'declined', 'revision_requested')",
            name="ck_approver_responses_valid_status",
        ),
        UniqueConstraint(
            "round_id", "approver_id",
            name="uq_approver_responses_round_approver",
        ),
        ForeignKeyConstraint(
            ["round_id", "approver_id"],
            ["approver_assignments.round_id", "approver_assignments.user_id"],
            name="fk_approver_responses_assignment",
        ),
    )

    round_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_rounds.id"),
        nullable=False,
    )
    approver_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    responded_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return (
            f"<ApproverResponse round={self.round_id} "
            f"approver={self.approver_id} status={self.status}>"
        )

    def to_dto(self) -> ApproverResponse:
        from approval_kernel.domain.approval import (
            ApproverResponse as ApproverResponseDTO,
            Decision,
        )

        return ApproverResponseDTO(
            round_id=self.round_id,
            approver_id=self.approver_id,
            decision=Decision(self.status),
            comment=self.comment,
            responded_at=self.responded_at,
        )


class ApprovalCommentModel(Base):
    """Append-only discussion entry on a round.

    ``position`` is the 1-based insertion order within the round.
    """

    __tablename__ = "approval_comments"

    __table_args__ = (
        UniqueConstraint(
            "round_id", "position",
            name="uq_approval_comments_round_position",
        ),
    )

    round_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_rounds.id"),
        nullable=False,
    )
    author_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<ApprovalComment {self.id} round={self.round_id} #{self.position}>"

    def to_dto(self) -> Comment:
        from approval_kernel.domain.approval import Comment as CommentDTO

        return CommentDTO(
            comment_id=self.id,
            round_id=self.round_id,
            author_id=self.author_id,
            body=self.body,
            created_at=self.created_at,
        )


# =============================================================================
# ORM-Level Immutability
# =============================================================================


@event.listens_for(ApprovalCommentModel, "before_update")
def prevent_comment_update(mapper, connection, target):
    """Comments are immutable once created."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalComment",
        entity_id=str(target.id),
        reason="Comments are append-only -- cannot modify",
    )


@event.listens_for(ApprovalCommentModel, "before_delete")
def prevent_comment_delete(mapper, connection, target):
    """Comment history only grows."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalComment",
        entity_id=str(target.id),
        reason="Comments are append-only -- cannot delete",
    )


@event.listens_for(ApproverAssignmentModel, "before_update")
def prevent_assignment_update(mapper, connection, target):
    """Assignments are replaced, never edited in place."""
    raise ImmutabilityViolationError(
        entity_type="ApproverAssignment",
        entity_id=str(target.id),
        reason="Approver assignments cannot be modified",
    )


@event.listens_for(ApproverResponseModel, "before_delete")
def prevent_response_delete(mapper, connection, target):
    """Responses are overwritten by the same approver, never removed."""
    raise ImmutabilityViolationError(
        entity_type="ApproverResponse",
        entity_id=str(target.id),
        reason="Approver responses cannot be deleted",
    )


@event.listens_for(ApprovalRoundModel, "before_delete")
def prevent_round_delete(mapper, connection, target):
    """Past rounds are retained for audit."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalRound",
        entity_id=str(target.id),
        reason="Approval rounds are retained for audit -- cannot delete",
    )
