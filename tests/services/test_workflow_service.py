"""
Tests for ApprovalWorkflowService -- the approval round controller.

Covers:
- create_round(): draft creation, one open round per entity, input checks
- submit(): owner only, draft only, approvers required
- respond(): assigned approvers only, upsert, veto dominance, comments
- comment(): who may comment, ordering, validation
- reopen(): after decline / revision request only, history preserved
- update_approvers(), get_details() and the list/history queries
- events after commit, structured logs
"""

from uuid import uuid4

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from approval_kernel.db.engine import drop_tables
from approval_kernel.domain.approval import (
    Decision,
    RoundEventKind,
    RoundStatus,
)
from approval_kernel.domain.policy import WorkflowPolicy
from approval_kernel.exceptions import (
    AuthorizationError,
    ConfigurationError,
    InvalidStateError,
    PreconditionFailedError,
    RoundNotFoundError,
)
from approval_kernel.logging_config import LogContext
from approval_kernel.services.workflow_service import (
    ApprovalWorkflowService,
    is_write_conflict,
)

ENTITY = ("diary_entry", "entry-1")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def events(emitter):
    """Every event the emitter delivers, in order."""
    received = []
    emitter.subscribe(received.append)
    return received


@pytest.fixture
def draft_round(workflow, owner_id, approver_a, approver_b, container_id):
    return workflow.create_round(
        *ENTITY, owner_id, [approver_a, approver_b], container_id=container_id,
    )


# ---------------------------------------------------------------------------
# create_round
# ---------------------------------------------------------------------------


class TestCreateRound:
    def test_creates_draft_round_one(self, workflow, owner_id, approver_a):
        created = workflow.create_round(*ENTITY, owner_id, [approver_a])

        assert created.status == RoundStatus.DRAFT
        assert created.round_number == 1
        assert created.owner_id == owner_id
        assert created.version == 1
        assert created.submitted_at is None

    def test_approvers_are_deduplicated_in_order(
        self, workflow, owner_id, approver_a, approver_b,
    ):
        created = workflow.create_round(
            *ENTITY, owner_id, [approver_b, approver_a, approver_b],
        )
        details = workflow.get_details(created.round_id, owner_id)
        assert [a.user_id for a in details.assignments] == [approver_b, approver_a]

    def test_empty_roster_allowed(self, workflow, owner_id):
        created = workflow.create_round(*ENTITY, owner_id, [])
        assert created.status == RoundStatus.DRAFT

    def test_second_open_round_fails_invalid_state(self, workflow, owner_id, approver_a):
        workflow.create_round(*ENTITY, owner_id, [approver_a])
        with pytest.raises(InvalidStateError) as exc_info:
            workflow.create_round(*ENTITY, owner_id, [approver_a])
        assert exc_info.value.current_status == "draft"

    def test_submitted_round_also_blocks_creation(self, workflow, submitted_round, owner_id):
        with pytest.raises(InvalidStateError):
            workflow.create_round(
                submitted_round.entity_type, submitted_round.entity_id, owner_id,
            )

    def test_other_entity_unaffected(self, workflow, owner_id, approver_a):
        workflow.create_round(*ENTITY, owner_id, [approver_a])
        other = workflow.create_round("diary_entry", "entry-2", owner_id, [approver_a])
        assert other.round_number == 1

    @pytest.mark.parametrize("entity_type,entity_id", [("", "1"), ("form", ""), ("  ", "1")])
    def test_blank_entity_key_rejected(self, workflow, owner_id, entity_type, entity_id):
        with pytest.raises(PreconditionFailedError):
            workflow.create_round(entity_type, entity_id, owner_id)

    def test_emits_round_created(self, workflow, events, owner_id):
        created = workflow.create_round(*ENTITY, owner_id)
        assert len(events) == 1
        assert events[0].kind == RoundEventKind.ROUND_CREATED
        assert (events[0].entity_type, events[0].entity_id) == ENTITY
        assert events[0].round_id == created.round_id


# ---------------------------------------------------------------------------
# submit
# ---------------------------------------------------------------------------


class TestSubmit:
    def test_owner_submits(self, workflow, draft_round, owner_id, deterministic_clock):
        deterministic_clock.advance(60)
        submitted = workflow.submit(draft_round.round_id, owner_id)

        assert submitted.status == RoundStatus.SUBMITTED
        assert submitted.version == draft_round.version + 1
        assert submitted.submitted_at == deterministic_clock.now()

    def test_non_owner_denied(self, workflow, draft_round, approver_a):
        with pytest.raises(AuthorizationError) as exc_info:
            workflow.submit(draft_round.round_id, approver_a)
        assert exc_info.value.code == "AUTHORIZATION_DENIED"

    def test_double_submit_invalid_state(self, workflow, submitted_round, owner_id):
        with pytest.raises(InvalidStateError):
            workflow.submit(submitted_round.round_id, owner_id)

    def test_zero_approvers_precondition_failed_and_stays_draft(self, workflow, owner_id):
        created = workflow.create_round(*ENTITY, owner_id, [])

        with pytest.raises(PreconditionFailedError):
            workflow.submit(created.round_id, owner_id)

        current = workflow.get_current_round(*ENTITY)
        assert current.status == RoundStatus.DRAFT
        assert current.version == created.version

    def test_unknown_round(self, workflow, owner_id):
        with pytest.raises(RoundNotFoundError):
            workflow.submit(uuid4(), owner_id)

    def test_emits_round_updated(self, workflow, draft_round, owner_id, events):
        workflow.submit(draft_round.round_id, owner_id)
        assert [e.kind for e in events] == [RoundEventKind.ROUND_UPDATED]


# ---------------------------------------------------------------------------
# respond
# ---------------------------------------------------------------------------


class TestRespond:
    def test_approve_then_decline_is_declined(
        self, workflow, submitted_round, approver_a, approver_b,
    ):
        workflow.respond(submitted_round.round_id, approver_a, Decision.APPROVED)
        result = workflow.respond(submitted_round.round_id, approver_b, Decision.DECLINED)

        assert result.status == RoundStatus.DECLINED
        assert result.resolved_at is not None

    def test_unanimous_approval(self, workflow, submitted_round, approver_a, approver_b):
        first = workflow.respond(submitted_round.round_id, approver_a, Decision.APPROVED)
        assert first.status == RoundStatus.SUBMITTED

        second = workflow.respond(submitted_round.round_id, approver_b, Decision.APPROVED)
        assert second.status == RoundStatus.APPROVED

    def test_re_response_overwrites_own_row_only(self, workflow, owner_id):
        a, b, c = uuid4(), uuid4(), uuid4()
        created = workflow.create_round(*ENTITY, owner_id, [a, b, c])
        workflow.submit(created.round_id, owner_id)

        workflow.respond(created.round_id, a, Decision.APPROVED, "a: fine")
        workflow.respond(created.round_id, b, Decision.APPROVED, "b: first")
        again = workflow.respond(created.round_id, b, Decision.APPROVED, "b: second")

        details = workflow.get_details(created.round_id, owner_id)
        assert again.status == RoundStatus.SUBMITTED
        assert len(details.responses) == 2
        assert details.response_for(a).comment == "a: fine"
        assert details.response_for(b).comment == "b: second"
        assert details.response_for(c) is None

    def test_veto_with_comment_is_recorded(
        self, workflow, submitted_round, approver_a, approver_b, owner_id,
    ):
        round_id = submitted_round.round_id
        workflow.respond(round_id, approver_b, Decision.REVISION_REQUESTED, "Fix totals")

        details = workflow.get_details(round_id, owner_id)
        assert details.round.status == RoundStatus.REVISION_REQUESTED
        assert details.response_for(approver_b).comment == "Fix totals"
        assert details.response_for(approver_a) is None

    def test_string_decision_accepted(self, workflow, submitted_round, approver_a):
        result = workflow.respond(submitted_round.round_id, approver_a, "approved")
        assert result.status == RoundStatus.SUBMITTED

    def test_unknown_decision_rejected(self, workflow, submitted_round, approver_a):
        with pytest.raises(PreconditionFailedError):
            workflow.respond(submitted_round.round_id, approver_a, "maybe")

    def test_non_approver_denied_and_status_untouched(
        self, workflow, submitted_round, outsider_id, membership, container_id, owner_id,
    ):
        membership.grant(outsider_id, container_id, "owner")

        with pytest.raises(AuthorizationError) as exc_info:
            workflow.respond(submitted_round.round_id, outsider_id, Decision.APPROVED)

        assert exc_info.value.reason == "You are not an assigned reviewer for this item"
        current = workflow.get_details(submitted_round.round_id, owner_id).round
        assert current.status == RoundStatus.SUBMITTED
        assert current.version == submitted_round.version

    def test_owner_cannot_approve_own_round(self, workflow, submitted_round, owner_id):
        with pytest.raises(AuthorizationError):
            workflow.respond(submitted_round.round_id, owner_id, Decision.APPROVED)

    def test_respond_on_draft_invalid_state(self, workflow, draft_round, approver_a):
        with pytest.raises(InvalidStateError):
            workflow.respond(draft_round.round_id, approver_a, Decision.APPROVED)

    def test_declined_round_cannot_become_approved(
        self, workflow, submitted_round, approver_a, approver_b,
    ):
        round_id = submitted_round.round_id
        workflow.respond(round_id, approver_a, Decision.DECLINED)

        with pytest.raises(InvalidStateError):
            workflow.respond(round_id, approver_a, Decision.APPROVED)
        with pytest.raises(InvalidStateError):
            workflow.respond(round_id, approver_b, Decision.APPROVED)

    def test_every_response_bumps_version(self, workflow, submitted_round, approver_a):
        first = workflow.respond(submitted_round.round_id, approver_a, Decision.APPROVED)
        second = workflow.respond(submitted_round.round_id, approver_a, Decision.APPROVED)
        assert second.version == first.version + 1 == submitted_round.version + 2

    def test_blank_comment_stored_as_none(
        self, workflow, submitted_round, approver_a, owner_id,
    ):
        workflow.respond(submitted_round.round_id, approver_a, Decision.APPROVED, "   ")
        details = workflow.get_details(submitted_round.round_id, owner_id)
        assert details.response_for(approver_a).comment is None

    def test_emits_round_updated(self, workflow, submitted_round, approver_a, events):
        workflow.respond(submitted_round.round_id, approver_a, Decision.APPROVED)
        assert events[-1].kind == RoundEventKind.ROUND_UPDATED
        assert events[-1].round_id == submitted_round.round_id


class TestVetoComment:
    @pytest.fixture
    def policy(self):
        return WorkflowPolicy(require_comment_on_veto=True, retry_backoff_ms=1)

    @pytest.mark.parametrize("decision", [Decision.DECLINED, Decision.REVISION_REQUESTED])
    def test_veto_without_comment_rejected(
        self, workflow, submitted_round, approver_a, decision,
    ):
        with pytest.raises(PreconditionFailedError):
            workflow.respond(submitted_round.round_id, approver_a, decision)

    def test_veto_with_comment_accepted(self, workflow, submitted_round, approver_a):
        result = workflow.respond(
            submitted_round.round_id, approver_a, Decision.DECLINED, "Wrong project code",
        )
        assert result.status == RoundStatus.DECLINED

    def test_approval_needs_no_comment(self, workflow, submitted_round, approver_a):
        workflow.respond(submitted_round.round_id, approver_a, Decision.APPROVED)


# ---------------------------------------------------------------------------
# comment
# ---------------------------------------------------------------------------


class TestComment:
    def test_participants_comment_in_order(
        self, workflow, submitted_round, owner_id, approver_a, deterministic_clock,
    ):
        round_id = submitted_round.round_id
        workflow.comment(round_id, approver_a, "Please attach the receipt")
        deterministic_clock.tick()
        workflow.comment(round_id, owner_id, "Attached")

        details = workflow.get_details(round_id, owner_id)
        assert [c.body for c in details.comments] == ["Please attach the receipt", "Attached"]
        assert [c.author_id for c in details.comments] == [approver_a, owner_id]

    def test_comment_does_not_change_status_or_version(
        self, workflow, submitted_round, owner_id,
    ):
        workflow.comment(submitted_round.round_id, owner_id, "Ping")
        current = workflow.get_current_round(*ENTITY)
        assert current.status == RoundStatus.SUBMITTED
        assert current.version == submitted_round.version

    def test_container_member_may_comment(
        self, workflow, submitted_round, membership, container_id,
    ):
        colleague = uuid4()
        membership.grant(colleague, container_id, "member")
        added = workflow.comment(submitted_round.round_id, colleague, "FYI")
        assert added.author_id == colleague

    def test_viewer_may_not_comment(
        self, workflow, submitted_round, membership, container_id,
    ):
        reader = uuid4()
        membership.grant(reader, container_id, "viewer")
        with pytest.raises(AuthorizationError):
            workflow.comment(submitted_round.round_id, reader, "Hi")

    def test_comment_allowed_on_resolved_round(
        self, workflow, submitted_round, approver_a, owner_id,
    ):
        workflow.respond(submitted_round.round_id, approver_a, Decision.DECLINED)
        added = workflow.comment(submitted_round.round_id, owner_id, "Will fix")
        assert added.body == "Will fix"

    @pytest.mark.parametrize("body", ["", "   ", None])
    def test_empty_body_rejected(self, workflow, submitted_round, owner_id, body):
        with pytest.raises(PreconditionFailedError):
            workflow.comment(submitted_round.round_id, owner_id, body)

    def test_body_over_limit_rejected(self, workflow, submitted_round, owner_id):
        too_long = "x" * (workflow.policy.max_comment_length + 1)
        with pytest.raises(PreconditionFailedError):
            workflow.comment(submitted_round.round_id, owner_id, too_long)

    def test_body_is_trimmed(self, workflow, submitted_round, owner_id):
        added = workflow.comment(submitted_round.round_id, owner_id, "  spaced  ")
        assert added.body == "spaced"


# ---------------------------------------------------------------------------
# reopen
# ---------------------------------------------------------------------------


class TestReopen:
    def test_reopen_after_decline_creates_next_round(
        self, workflow, submitted_round, owner_id, approver_a, approver_b, container_id,
    ):
        workflow.respond(submitted_round.round_id, approver_a, Decision.APPROVED)
        workflow.respond(submitted_round.round_id, approver_b, Decision.DECLINED, "No")

        reopened = workflow.reopen(*ENTITY, owner_id, [approver_a, approver_b])

        assert reopened.round_number == 2
        assert reopened.status == RoundStatus.DRAFT
        assert reopened.container_id == container_id

        old = workflow.get_details(submitted_round.round_id, owner_id)
        assert old.round.round_number == 1
        assert old.round.status == RoundStatus.DECLINED
        assert old.response_for(approver_b).comment == "No"
        assert old.response_for(approver_a).decision == Decision.APPROVED

    def test_reopen_after_revision_request(
        self, workflow, submitted_round, owner_id, approver_a,
    ):
        workflow.respond(submitted_round.round_id, approver_a, Decision.REVISION_REQUESTED)
        reopened = workflow.reopen(*ENTITY, owner_id, [approver_a])
        assert reopened.round_number == 2

    def test_new_round_can_reach_approved(
        self, workflow, submitted_round, owner_id, approver_a,
    ):
        workflow.respond(submitted_round.round_id, approver_a, Decision.DECLINED)
        reopened = workflow.reopen(*ENTITY, owner_id, [approver_a])
        workflow.submit(reopened.round_id, owner_id)

        final = workflow.respond(reopened.round_id, approver_a, Decision.APPROVED)
        assert final.status == RoundStatus.APPROVED

    def test_approved_round_not_reopenable(
        self, workflow, submitted_round, owner_id, approver_a, approver_b,
    ):
        workflow.respond(submitted_round.round_id, approver_a, Decision.APPROVED)
        workflow.respond(submitted_round.round_id, approver_b, Decision.APPROVED)

        with pytest.raises(InvalidStateError):
            workflow.reopen(*ENTITY, owner_id, [approver_a])

    def test_open_round_not_reopenable(self, workflow, submitted_round, owner_id, approver_a):
        with pytest.raises(InvalidStateError):
            workflow.reopen(*ENTITY, owner_id, [approver_a])

    def test_only_previous_owner_may_reopen(
        self, workflow, submitted_round, approver_a, outsider_id,
    ):
        workflow.respond(submitted_round.round_id, approver_a, Decision.DECLINED)
        with pytest.raises(AuthorizationError):
            workflow.reopen(*ENTITY, outsider_id, [approver_a])

    def test_reopen_without_history_starts_round_one(self, workflow, owner_id):
        started = workflow.reopen("form_entry", "99", owner_id)
        assert started.round_number == 1

    def test_emits_round_created(
        self, workflow, submitted_round, owner_id, approver_a, events,
    ):
        workflow.respond(submitted_round.round_id, approver_a, Decision.DECLINED)
        reopened = workflow.reopen(*ENTITY, owner_id, [approver_a])
        assert events[-1].kind == RoundEventKind.ROUND_CREATED
        assert events[-1].round_id == reopened.round_id


# ---------------------------------------------------------------------------
# update_approvers
# ---------------------------------------------------------------------------


class TestUpdateApprovers:
    def test_owner_replaces_roster_on_draft(
        self, workflow, draft_round, owner_id, approver_b,
    ):
        newcomer = uuid4()
        updated = workflow.update_approvers(
            draft_round.round_id, owner_id, [approver_b, newcomer, newcomer],
        )
        details = workflow.get_details(draft_round.round_id, owner_id)

        assert [a.user_id for a in details.assignments] == [approver_b, newcomer]
        assert updated.version == draft_round.version + 1
        assert updated.status == RoundStatus.DRAFT

    def test_roster_frozen_after_submit(self, workflow, submitted_round, owner_id):
        with pytest.raises(InvalidStateError):
            workflow.update_approvers(submitted_round.round_id, owner_id, [uuid4()])

    def test_non_owner_denied(self, workflow, draft_round, approver_a):
        with pytest.raises(AuthorizationError):
            workflow.update_approvers(draft_round.round_id, approver_a, [approver_a])

    def test_empty_roster_then_submit_fails(self, workflow, draft_round, owner_id):
        workflow.update_approvers(draft_round.round_id, owner_id, [])
        with pytest.raises(PreconditionFailedError):
            workflow.submit(draft_round.round_id, owner_id)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestGetDetails:
    def test_stranger_denied(self, workflow, submitted_round, outsider_id):
        with pytest.raises(AuthorizationError):
            workflow.get_details(submitted_round.round_id, outsider_id)

    def test_container_viewer_allowed(
        self, workflow, submitted_round, membership, container_id,
    ):
        reader = uuid4()
        membership.grant(reader, container_id, "viewer")
        details = workflow.get_details(submitted_round.round_id, reader)
        assert details.round.round_id == submitted_round.round_id

    def test_approver_sees_full_roster(
        self, workflow, submitted_round, approver_a, approver_b,
    ):
        details = workflow.get_details(submitted_round.round_id, approver_a)
        assert details.approver_ids == {approver_a, approver_b}


class TestListQueries:
    def test_pending_for_approver(
        self, workflow, owner_id, approver_a, approver_b, deterministic_clock,
    ):
        first = workflow.create_round("form_entry", "1", owner_id, [approver_a])
        workflow.submit(first.round_id, owner_id)
        deterministic_clock.advance(10)
        second = workflow.create_round("form_entry", "2", owner_id, [approver_a, approver_b])
        workflow.submit(second.round_id, owner_id)
        workflow.create_round("form_entry", "3", owner_id, [approver_a])  # still draft

        pending = workflow.list_pending_for_approver(approver_a)
        assert [r.round_id for r in pending] == [first.round_id, second.round_id]

        workflow.respond(first.round_id, approver_a, Decision.APPROVED)
        pending = workflow.list_pending_for_approver(approver_a)
        assert [r.round_id for r in pending] == [second.round_id]
        assert [r.round_id for r in workflow.list_pending_for_approver(approver_b)] == [
            second.round_id
        ]

    def test_rounds_for_owner_newest_first(
        self, workflow, owner_id, approver_a, deterministic_clock,
    ):
        older = workflow.create_round("form_entry", "1", owner_id, [approver_a])
        deterministic_clock.advance(5)
        newer = workflow.create_round("form_entry", "2", owner_id, [approver_a])
        workflow.create_round("form_entry", "3", uuid4(), [approver_a])

        owned = workflow.list_rounds_for_owner(owner_id)
        assert [r.round_id for r in owned] == [newer.round_id, older.round_id]

    def test_history_and_current_round(
        self, workflow, submitted_round, owner_id, approver_a,
    ):
        workflow.respond(submitted_round.round_id, approver_a, Decision.DECLINED)
        second = workflow.reopen(*ENTITY, owner_id, [approver_a])

        history = workflow.get_round_history(*ENTITY)
        assert [r.round_number for r in history] == [1, 2]
        assert [r.status for r in history] == [RoundStatus.DECLINED, RoundStatus.DRAFT]
        assert workflow.get_current_round(*ENTITY).round_id == second.round_id

    def test_current_round_none_for_unknown_entity(self, workflow):
        assert workflow.get_current_round("form_entry", "missing") is None
        assert workflow.get_round_history("form_entry", "missing") == []


# ---------------------------------------------------------------------------
# Events and logs
# ---------------------------------------------------------------------------


class TestEventsAndLogging:
    def test_failed_operation_emits_nothing(self, workflow, draft_round, approver_a, events):
        with pytest.raises(AuthorizationError):
            workflow.submit(draft_round.round_id, approver_a)
        assert events == []

    def test_subscriber_failure_does_not_fail_operation(
        self, workflow, emitter, draft_round, owner_id,
    ):
        def broken(event):
            raise RuntimeError("cache unavailable")

        emitter.subscribe(broken)
        submitted = workflow.submit(draft_round.round_id, owner_id)
        assert submitted.status == RoundStatus.SUBMITTED

    def test_filtered_subscription(self, workflow, emitter, owner_id):
        seen = []
        emitter.subscribe(seen.append, entity_type="form_entry", entity_id="2")
        workflow.create_round("form_entry", "1", owner_id)
        workflow.create_round("form_entry", "2", owner_id)
        assert [e.entity_id for e in seen] == ["2"]

    def test_operation_logs(
        self, workflow, captured_logs, owner_id, approver_a,
    ):
        created = workflow.create_round(*ENTITY, owner_id, [approver_a])
        workflow.submit(created.round_id, owner_id)
        workflow.respond(created.round_id, approver_a, Decision.APPROVED)
        workflow.comment(created.round_id, owner_id, "Thanks")

        messages = [r["message"] for r in captured_logs()]
        for expected in (
            "approval_round_created",
            "approval_round_submitted",
            "approver_response_recorded",
            "approval_comment_added",
        ):
            assert expected in messages

        recorded = next(
            r for r in captured_logs() if r["message"] == "approver_response_recorded"
        )
        assert recorded["decision"] == "approved"
        assert recorded["status"] == "approved"
        assert recorded["actor_id"] == str(approver_a)
        assert recorded["round_id"] == str(created.round_id)

    def test_denial_logs_rollback(self, workflow, captured_logs, draft_round, approver_a):
        with pytest.raises(AuthorizationError):
            workflow.submit(draft_round.round_id, approver_a)

        rolled_back = [
            r for r in captured_logs() if r["message"] == "approval_transaction_rolled_back"
        ]
        assert rolled_back
        assert rolled_back[0]["level"] == "WARNING"
        assert rolled_back[0]["error_code"] == "AUTHORIZATION_DENIED"

    def test_caller_correlation_id_on_records(
        self, workflow, captured_logs, owner_id, approver_a,
    ):
        with LogContext.bind(correlation_id="req-42"):
            workflow.create_round(*ENTITY, owner_id, [approver_a])

        created = next(
            r for r in captured_logs() if r["message"] == "approval_round_created"
        )
        assert created["correlation_id"] == "req-42"
        assert created["actor_id"] == str(owner_id)
        assert "correlation_id" not in LogContext.get_all()


class TestServiceDefaults:
    def test_default_collaborators(self, session_factory, membership):
        service = ApprovalWorkflowService(session_factory, membership)
        assert service.policy == WorkflowPolicy()
        assert service.emitter.subscriber_count == 0

    def test_unknown_role_threshold_rejected(self, session_factory, membership):
        with pytest.raises(ConfigurationError) as exc_info:
            ApprovalWorkflowService(
                session_factory,
                membership,
                policy=WorkflowPolicy(comment_min_role="editor"),
            )
        assert exc_info.value.field_name == "comment_min_role"

    def test_provider_without_hierarchy_is_not_checked(self, session_factory):
        class AllowAll:
            def has_container_access(self, user_id, container_id, min_role):
                return True

        service = ApprovalWorkflowService(
            session_factory,
            AllowAll(),
            policy=WorkflowPolicy(view_min_role="auditor"),
        )
        assert service.policy.view_min_role == "auditor"


# ---------------------------------------------------------------------------
# Database faults and conflict classification
# ---------------------------------------------------------------------------


class TestDatabaseFaults:
    def test_missing_tables_raise_original_error(
        self, engine, workflow, captured_logs, owner_id,
    ):
        drop_tables(engine)

        with pytest.raises(DBAPIError):
            workflow.create_round(*ENTITY, owner_id, [])

        messages = [r["message"] for r in captured_logs()]
        assert "approval_concurrency_retry" not in messages
        assert "approval_concurrency_exhausted" not in messages
        assert messages.count("approval_transaction_rolled_back") == 1


class _PgError(Exception):
    def __init__(self, message, pgcode):
        super().__init__(message)
        self.pgcode = pgcode


class TestWriteConflictClassification:
    @pytest.mark.parametrize(
        "message",
        [
            "UNIQUE constraint failed: approval_rounds.entity_type, approval_rounds.entity_id",
            "UNIQUE constraint failed: approval_comments.round_id, approval_comments.position",
            "UNIQUE constraint failed: approver_responses.round_id, approver_responses.approver_id",
            'duplicate key value violates unique constraint "ix_approval_rounds_one_open"',
            'duplicate key value violates unique constraint "uq_approval_rounds_entity_round"',
        ],
    )
    def test_race_constraint_is_retried(self, message):
        assert is_write_conflict(IntegrityError("INSERT", {}, Exception(message)))

    @pytest.mark.parametrize(
        "message",
        [
            "FOREIGN KEY constraint failed",
            "CHECK constraint failed: ck_approval_rounds_valid_status",
            "NOT NULL constraint failed: approval_rounds.owner_id",
        ],
    )
    def test_other_integrity_errors_are_not(self, message):
        assert not is_write_conflict(IntegrityError("INSERT", {}, Exception(message)))

    def test_sqlite_lock_is_retried(self):
        assert is_write_conflict(
            OperationalError("UPDATE", {}, Exception("database is locked"))
        )

    @pytest.mark.parametrize("pgcode", ["40001", "40P01"])
    def test_postgres_serialization_and_deadlock_are_retried(self, pgcode):
        error = OperationalError("UPDATE", {}, _PgError("could not serialize", pgcode))
        assert is_write_conflict(error)

    @pytest.mark.parametrize(
        "orig",
        [
            Exception("no such table: approval_rounds"),
            Exception("unable to open database file"),
            _PgError("server closed the connection unexpectedly", "08006"),
        ],
    )
    def test_infrastructure_faults_are_not(self, orig):
        assert not is_write_conflict(OperationalError("SELECT", {}, orig))

    def test_stale_version_is_retried(self):
        assert is_write_conflict(StaleDataError("expected 1 row"))

    def test_kernel_errors_are_not(self):
        assert not is_write_conflict(InvalidStateError("submit", "submitted", "no"))
