"""
Storage-level guarantees of the approval tables.

- One open round per entity (partial UNIQUE index)
- Unique round numbers per entity
- One response row per (round, approver), only for assigned approvers
- Comments append-only; rounds never deleted
- Optimistic version check on the round row
"""

from datetime import datetime, timezone
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from approval_kernel.domain.approval import Decision, RoundStatus
from approval_kernel.exceptions import ImmutabilityViolationError
from approval_kernel.models.approval import (
    ApprovalCommentModel,
    ApprovalRoundModel,
    ApproverAssignmentModel,
    ApproverResponseModel,
)

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def add_round(session, *, entity_id="entry-1", round_number=1, status="draft"):
    model = ApprovalRoundModel(
        entity_type="diary_entry",
        entity_id=entity_id,
        round_number=round_number,
        status=status,
        owner_id=uuid4(),
        created_at=NOW,
        version=1,
    )
    session.add(model)
    session.flush()
    return model


class TestRoundConstraints:
    def test_second_open_round_rejected(self, session):
        add_round(session, round_number=1, status="submitted")
        with pytest.raises(IntegrityError):
            add_round(session, round_number=2, status="draft")

    def test_new_round_allowed_after_terminal(self, session):
        add_round(session, round_number=1, status="declined")
        second = add_round(session, round_number=2, status="draft")
        assert second.round_number == 2

    def test_round_number_unique_per_entity(self, session):
        add_round(session, round_number=1, status="declined")
        with pytest.raises(IntegrityError):
            add_round(session, round_number=1, status="revision_requested")

    def test_other_entities_are_independent(self, session):
        add_round(session, entity_id="entry-1")
        add_round(session, entity_id="entry-2")

    def test_invalid_status_rejected(self, session):
        with pytest.raises(IntegrityError):
            add_round(session, status="pending")

    def test_round_cannot_be_deleted(self, session):
        model = add_round(session)
        session.delete(model)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_to_dto_round_trips_status_and_timezone(self, session):
        model = add_round(session, status="submitted")
        session.commit()
        session.expire_all()

        dto = session.get(ApprovalRoundModel, model.id).to_dto()
        assert dto.status == RoundStatus.SUBMITTED
        assert dto.created_at == NOW
        assert dto.created_at.tzinfo is not None


class TestOptimisticVersion:
    def test_stale_version_fails_flush(self, session_factory):
        with session_factory() as setup:
            model = add_round(setup, status="submitted")
            setup.commit()
            round_id = model.id

        first = session_factory()
        second = session_factory()
        try:
            a = first.get(ApprovalRoundModel, round_id)
            b = second.get(ApprovalRoundModel, round_id)

            a.status = "approved"
            a.version = a.version + 1
            first.commit()

            b.status = "declined"
            b.version = b.version + 1
            with pytest.raises(StaleDataError):
                second.flush()
        finally:
            second.rollback()
            first.close()
            second.close()


class TestResponseConstraints:
    def _assigned_round(self, session):
        model = add_round(session, status="submitted")
        approver = uuid4()
        session.add(ApproverAssignmentModel(round_id=model.id, user_id=approver))
        session.flush()
        return model, approver

    def test_one_response_per_approver(self, session):
        model, approver = self._assigned_round(session)
        for decision in (Decision.APPROVED, Decision.DECLINED):
            session.add(
                ApproverResponseModel(
                    round_id=model.id,
                    approver_id=approver,
                    status=decision.value,
                    responded_at=NOW,
                )
            )
        with pytest.raises(IntegrityError):
            session.flush()

    def test_response_requires_assignment(self, session):
        model, _ = self._assigned_round(session)
        session.add(
            ApproverResponseModel(
                round_id=model.id,
                approver_id=uuid4(),
                status="approved",
                responded_at=NOW,
            )
        )
        with pytest.raises(IntegrityError):
            session.flush()

    def test_response_cannot_be_deleted(self, session):
        model, approver = self._assigned_round(session)
        response = ApproverResponseModel(
            round_id=model.id,
            approver_id=approver,
            status="approved",
            responded_at=NOW,
        )
        session.add(response)
        session.flush()

        session.delete(response)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_duplicate_assignment_rejected(self, session):
        model, approver = self._assigned_round(session)
        session.add(ApproverAssignmentModel(round_id=model.id, user_id=approver))
        with pytest.raises(IntegrityError):
            session.flush()

    def test_assignment_cannot_be_edited(self, session):
        model, _ = self._assigned_round(session)
        assignment = session.query(ApproverAssignmentModel).filter_by(round_id=model.id).one()
        assignment.user_id = uuid4()
        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestCommentImmutability:
    def _comment(self, session, position=1):
        model = add_round(session)
        comment = ApprovalCommentModel(
            round_id=model.id,
            author_id=uuid4(),
            body="Looks good",
            position=position,
            created_at=NOW,
        )
        session.add(comment)
        session.flush()
        return model, comment

    def test_comment_cannot_be_edited(self, session):
        _, comment = self._comment(session)
        comment.body = "Changed my mind"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_comment_cannot_be_deleted(self, session):
        _, comment = self._comment(session)
        session.delete(comment)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_comment_position_unique_in_round(self, session):
        model, _ = self._comment(session)
        session.add(
            ApprovalCommentModel(
                round_id=model.id,
                author_id=uuid4(),
                body="Second",
                position=1,
                created_at=NOW,
            )
        )
        with pytest.raises(IntegrityError):
            session.flush()
