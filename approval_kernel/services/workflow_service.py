"""
approval_kernel.services.workflow_service -- Approval Workflow Controller.

Responsibility:
    Public entry point for approval rounds: create, submit, respond,
    comment, reopen, roster changes and read views.  Each call runs as one
    transaction; authorization is checked by ``AuthorizationGate`` and the
    round status is always the ``aggregate`` of its roster and responses.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.

Invariants enforced:
    - Only the aggregator's output is written to ``approval_rounds.status``.
    - At most one open round per entity (checked here, backed by a partial
      UNIQUE index).
    - No lost responses: every round write bumps ``version``; a concurrent
      writer holding the old version fails its flush and the whole
      transaction is retried on a fresh session.
    - Events are delivered only after commit and never fail the caller.

Failure modes:
    - AuthorizationError when the caller lacks the needed relationship.
    - InvalidStateError when the round status forbids the operation.
    - PreconditionFailedError on structural input problems.
    - RoundNotFoundError for unknown round ids.
    - ConcurrencyConflictError once the retry budget is spent.
    - Database errors that are not write conflicts propagate unchanged.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import TypeVar
from uuid import UUID

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from approval_kernel.domain.aggregation import aggregate
from approval_kernel.domain.approval import (
    VETO_DECISIONS,
    ApprovalRound,
    Comment,
    Decision,
    MembershipProvider,
    RoundDetails,
    RoundEvent,
    RoundEventKind,
)
from approval_kernel.domain.authorization import (
    AuthorizationGate,
    AuthorizationResult,
    Denial,
)
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.policy import WorkflowPolicy
from approval_kernel.exceptions import (
    ApprovalKernelError,
    AuthorizationError,
    ConcurrencyConflictError,
    ConfigurationError,
    InvalidStateError,
    PreconditionFailedError,
)
from approval_kernel.logging_config import LogContext, get_logger
from approval_kernel.models.approval import ApprovalRoundModel
from approval_kernel.services.approval_store import ApprovalRoundStore
from approval_kernel.services.event_emitter import RoundEventEmitter

logger = get_logger("services.workflow")

_T = TypeVar("_T")

# Unique constraints two writers can collide on.  PostgreSQL reports the
# constraint name; SQLite only lists the columns.
_RACE_CONSTRAINT_MARKERS = (
    "ix_approval_rounds_one_open",
    "uq_approval_rounds_entity_round",
    "uq_approver_assignments_round_user",
    "uq_approver_responses_round_approver",
    "uq_approval_comments_round_position",
    "UNIQUE constraint failed: approval_rounds.entity_type, approval_rounds.entity_id",
    "UNIQUE constraint failed: approver_assignments.round_id, approver_assignments.user_id",
    "UNIQUE constraint failed: approver_responses.round_id, approver_responses.approver_id",
    "UNIQUE constraint failed: approval_comments.round_id, approval_comments.position",
)

# serialization_failure, deadlock_detected
_PG_RETRY_SQLSTATES = frozenset({"40001", "40P01"})

_SQLITE_LOCK_MESSAGES = ("database is locked", "database table is locked")


def is_write_conflict(exc: BaseException) -> bool:
    """True when ``exc`` means another transaction wrote first.

    Only these errors are replayed.  Anything else (missing tables, lost
    connections, foreign key failures) propagates unchanged.
    """
    if isinstance(exc, StaleDataError):
        return True
    if isinstance(exc, IntegrityError):
        message = str(exc.orig)
        return any(marker in message for marker in _RACE_CONSTRAINT_MARKERS)
    if isinstance(exc, OperationalError):
        sqlstate = getattr(exc.orig, "pgcode", None) or getattr(exc.orig, "sqlstate", None)
        if sqlstate in _PG_RETRY_SQLSTATES:
            return True
        message = str(exc.orig).lower()
        return any(text in message for text in _SQLITE_LOCK_MESSAGES)
    return False


def _unique(user_ids: Iterable[UUID]) -> tuple[UUID, ...]:
    """Drop duplicate ids, keeping first-seen order."""
    return tuple(dict.fromkeys(user_ids))


class _UnitOfWork:
    """One transaction attempt and the events it will publish on commit."""

    def __init__(self, session: Session) -> None:
        self.store = ApprovalRoundStore(session)
        self.events: list[RoundEvent] = []

    def record(
        self,
        kind: RoundEventKind,
        model: ApprovalRoundModel,
        occurred_at: datetime,
    ) -> None:
        self.events.append(
            RoundEvent(
                kind=kind,
                entity_type=model.entity_type,
                entity_id=model.entity_id,
                round_id=model.id,
                occurred_at=occurred_at,
            )
        )


class ApprovalWorkflowService:
    """
    Coordinates approval rounds for arbitrary ``(entity_type, entity_id)``
    keys.

    Args:
        session_factory: Zero-argument callable returning a new Session,
            typically a ``sessionmaker``.  Each attempt uses its own session.
        membership: Answers container-role questions for the gate.
        emitter: Receives RoundCreated/RoundUpdated after commit.
        clock: Time source; defaults to ``SystemClock``.
        policy: Retry budget, comment rules and role thresholds.

    Raises:
        ConfigurationError: A policy role threshold is missing from the
            provider's ``role_hierarchy``.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        membership: MembershipProvider,
        emitter: RoundEventEmitter | None = None,
        clock: Clock | None = None,
        policy: WorkflowPolicy | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._policy = policy or WorkflowPolicy()
        self._check_role_thresholds(membership)
        self._clock = clock or SystemClock()
        self._emitter = emitter or RoundEventEmitter()
        self._gate = AuthorizationGate(
            membership,
            comment_min_role=self._policy.comment_min_role,
            view_min_role=self._policy.view_min_role,
        )

    def _check_role_thresholds(self, membership: MembershipProvider) -> None:
        """Reject role thresholds the membership provider cannot rank."""
        hierarchy = getattr(membership, "role_hierarchy", None)
        if hierarchy is None:
            return
        for name in ("comment_min_role", "view_min_role"):
            role = getattr(self._policy, name)
            if role not in hierarchy:
                raise ConfigurationError(
                    name, f"'{role}' is not in role_hierarchy {tuple(hierarchy)}",
                )

    @property
    def emitter(self) -> RoundEventEmitter:
        return self._emitter

    @property
    def policy(self) -> WorkflowPolicy:
        return self._policy

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def create_round(
        self,
        entity_type: str,
        entity_id: str,
        owner_id: UUID,
        approver_ids: Iterable[UUID] = (),
        container_id: str | None = None,
    ) -> ApprovalRound:
        """Open round 1 (or the next number) for an entity, in Draft.

        Raises:
            InvalidStateError: The entity already has a Draft or Submitted round.
            PreconditionFailedError: Blank entity type or id.
        """
        self._require_entity("create_round", entity_type, entity_id)
        approvers = _unique(approver_ids)

        def work(uow: _UnitOfWork) -> ApprovalRound:
            latest = uow.store.latest_round(entity_type, entity_id, for_update=True)
            if latest is not None and latest.to_dto().is_open:
                raise InvalidStateError(
                    "create_round",
                    latest.status,
                    "An approval round is already open for this item",
                )
            model = self._open_round(
                uow, entity_type, entity_id, owner_id, approvers, container_id, latest,
            )
            return model.to_dto()

        with LogContext.bind(
            actor_id=owner_id, entity_type=entity_type, entity_id=entity_id,
        ):
            created = self._execute("create_round", work)
            logger.info(
                "approval_round_created",
                extra={
                    "round_id": str(created.round_id),
                    "round_number": created.round_number,
                    "approver_count": len(approvers),
                    "container_id": created.container_id,
                },
            )
        return created

    def submit(self, round_id: UUID, caller_id: UUID) -> ApprovalRound:
        """Move a Draft round to review.

        Raises:
            AuthorizationError: Caller is not the owner.
            InvalidStateError: Round is not a Draft.
            PreconditionFailedError: Round has no approvers.
        """

        def work(uow: _UnitOfWork) -> ApprovalRound:
            model = uow.store.load_round(round_id, for_update=True)
            approval_round, assignments, responses = uow.store.snapshot(model)
            self._enforce(
                self._gate.can_submit(
                    caller_id, approval_round, [a.user_id for a in assignments],
                ),
                approval_round,
                caller_id,
            )
            now = self._clock.now()
            uow.store.apply_status(model, aggregate(assignments, responses), now)
            uow.record(RoundEventKind.ROUND_UPDATED, model, now)
            return model.to_dto()

        with LogContext.bind(actor_id=caller_id, round_id=round_id):
            submitted = self._execute("submit", work, round_id=round_id)
            logger.info(
                "approval_round_submitted",
                extra={
                    "entity_type": submitted.entity_type,
                    "entity_id": submitted.entity_id,
                    "status": submitted.status.value,
                    "version": submitted.version,
                },
            )
        return submitted

    def respond(
        self,
        round_id: UUID,
        approver_id: UUID,
        decision: Decision | str,
        comment: str | None = None,
    ) -> ApprovalRound:
        """Record (or overwrite) an approver's decision and re-aggregate.

        Raises:
            AuthorizationError: Caller is not an assigned approver.
            InvalidStateError: Round is not awaiting review.
            PreconditionFailedError: Unknown decision, or comment rules broken.
        """
        decision = self._parse_decision(decision)
        note = self._response_comment(decision, comment)

        def work(uow: _UnitOfWork) -> ApprovalRound:
            model = uow.store.load_round(round_id, for_update=True)
            approval_round = model.to_dto()
            self._enforce(
                self._gate.can_respond(
                    approver_id, approval_round, uow.store.approver_ids(model.id),
                ),
                approval_round,
                approver_id,
            )
            now = self._clock.now()
            uow.store.upsert_response(
                round_id=model.id,
                approver_id=approver_id,
                decision=decision,
                comment=note,
                responded_at=now,
            )
            _, assignments, responses = uow.store.snapshot(model)
            uow.store.apply_status(model, aggregate(assignments, responses), now)
            uow.record(RoundEventKind.ROUND_UPDATED, model, now)
            return model.to_dto()

        with LogContext.bind(actor_id=approver_id, round_id=round_id):
            updated = self._execute("respond", work, round_id=round_id)
            logger.info(
                "approver_response_recorded",
                extra={
                    "decision": decision.value,
                    "status": updated.status.value,
                    "version": updated.version,
                    "has_comment": note is not None,
                },
            )
        return updated

    def comment(self, round_id: UUID, author_id: UUID, body: str) -> Comment:
        """Append a discussion entry.  Round status is untouched."""
        text = self._comment_body("comment", body)

        def work(uow: _UnitOfWork) -> Comment:
            model = uow.store.load_round(round_id)
            approval_round = model.to_dto()
            self._enforce(
                self._gate.can_comment(
                    author_id, approval_round, uow.store.approver_ids(model.id),
                ),
                approval_round,
                author_id,
            )
            now = self._clock.now()
            row = uow.store.append_comment(
                round_id=model.id,
                author_id=author_id,
                body=text,
                created_at=now,
            )
            uow.record(RoundEventKind.ROUND_UPDATED, model, now)
            return row.to_dto()

        with LogContext.bind(actor_id=author_id, round_id=round_id):
            added = self._execute("comment", work, round_id=round_id)
            logger.info(
                "approval_comment_added",
                extra={"comment_id": str(added.comment_id), "length": len(text)},
            )
        return added

    def reopen(
        self,
        entity_type: str,
        entity_id: str,
        owner_id: UUID,
        approver_ids: Iterable[UUID] = (),
        container_id: str | None = None,
    ) -> ApprovalRound:
        """Start the next round after a Declined or RevisionRequested one.

        The previous round's rows are left as they are.  ``container_id``
        defaults to the previous round's container.

        Raises:
            AuthorizationError: Caller did not own the previous round.
            InvalidStateError: Previous round is open or was Approved.
        """
        self._require_entity("reopen", entity_type, entity_id)
        approvers = _unique(approver_ids)

        def work(uow: _UnitOfWork) -> ApprovalRound:
            latest = uow.store.latest_round(entity_type, entity_id, for_update=True)
            container = container_id
            if latest is not None:
                previous = latest.to_dto()
                self._enforce(
                    self._gate.can_reopen(owner_id, previous), previous, owner_id,
                )
                if container is None:
                    container = previous.container_id
            model = self._open_round(
                uow, entity_type, entity_id, owner_id, approvers, container, latest,
            )
            return model.to_dto()

        with LogContext.bind(
            actor_id=owner_id, entity_type=entity_type, entity_id=entity_id,
        ):
            reopened = self._execute("reopen", work)
            logger.info(
                "approval_round_reopened",
                extra={
                    "round_id": str(reopened.round_id),
                    "round_number": reopened.round_number,
                    "approver_count": len(approvers),
                },
            )
        return reopened

    def update_approvers(
        self,
        round_id: UUID,
        caller_id: UUID,
        approver_ids: Iterable[UUID],
    ) -> ApprovalRound:
        """Replace the roster of a Draft round (owner only)."""
        approvers = _unique(approver_ids)

        def work(uow: _UnitOfWork) -> ApprovalRound:
            model = uow.store.load_round(round_id, for_update=True)
            approval_round = model.to_dto()
            self._enforce(
                self._gate.can_update_approvers(caller_id, approval_round),
                approval_round,
                caller_id,
            )
            now = self._clock.now()
            uow.store.replace_assignments(model.id, approvers)
            uow.store.touch(model, now)
            uow.record(RoundEventKind.ROUND_UPDATED, model, now)
            return model.to_dto()

        with LogContext.bind(actor_id=caller_id, round_id=round_id):
            updated = self._execute("update_approvers", work, round_id=round_id)
            logger.info(
                "approvers_updated",
                extra={"approver_count": len(approvers), "version": updated.version},
            )
        return updated

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_details(self, round_id: UUID, caller_id: UUID) -> RoundDetails:
        """Round, roster, responses and comments, for anyone who can view."""

        def work(uow: _UnitOfWork) -> RoundDetails:
            details = uow.store.details(uow.store.load_round(round_id))
            self._enforce(
                self._gate.can_view(caller_id, details.round, details.approver_ids),
                details.round,
                caller_id,
            )
            return details

        with LogContext.bind(actor_id=caller_id, round_id=round_id):
            return self._execute("get_details", work, round_id=round_id)

    def list_pending_for_approver(self, approver_id: UUID) -> list[ApprovalRound]:
        """Submitted rounds still waiting on ``approver_id``, oldest first."""
        return self._execute(
            "list_pending_for_approver",
            lambda uow: [
                m.to_dto() for m in uow.store.rounds_awaiting_response(approver_id)
            ],
        )

    def list_rounds_for_owner(self, owner_id: UUID) -> list[ApprovalRound]:
        """Every round ``owner_id`` owns, newest first."""
        return self._execute(
            "list_rounds_for_owner",
            lambda uow: [m.to_dto() for m in uow.store.rounds_for_owner(owner_id)],
        )

    def get_round_history(self, entity_type: str, entity_id: str) -> list[ApprovalRound]:
        """All rounds of an entity in round_number order."""
        return self._execute(
            "get_round_history",
            lambda uow: [
                m.to_dto() for m in uow.store.rounds_for_entity(entity_type, entity_id)
            ],
        )

    def get_current_round(self, entity_type: str, entity_id: str) -> ApprovalRound | None:
        def work(uow: _UnitOfWork) -> ApprovalRound | None:
            latest = uow.store.latest_round(entity_type, entity_id)
            return latest.to_dto() if latest is not None else None

        return self._execute("get_current_round", work)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _open_round(
        self,
        uow: _UnitOfWork,
        entity_type: str,
        entity_id: str,
        owner_id: UUID,
        approvers: tuple[UUID, ...],
        container_id: str | None,
        latest: ApprovalRoundModel | None,
    ) -> ApprovalRoundModel:
        now = self._clock.now()
        model = uow.store.insert_round(
            entity_type=entity_type,
            entity_id=entity_id,
            round_number=latest.round_number + 1 if latest is not None else 1,
            owner_id=owner_id,
            container_id=container_id,
            created_at=now,
        )
        if approvers:
            uow.store.add_assignments(model.id, approvers)
        uow.record(RoundEventKind.ROUND_CREATED, model, now)
        return model

    def _execute(
        self,
        operation: str,
        work: Callable[[_UnitOfWork], _T],
        round_id: UUID | None = None,
    ) -> _T:
        """Run ``work`` in a fresh transaction, replaying it on write conflicts.

        Events collected by the successful attempt are published after
        commit; events from failed attempts are discarded with the session.
        """
        attempt = 0
        while True:
            attempt += 1
            session = self._session_factory()
            uow = _UnitOfWork(session)
            try:
                result = work(uow)
                session.commit()
            except Exception as exc:
                session.rollback()
                if not is_write_conflict(exc):
                    logger.warning(
                        "approval_transaction_rolled_back",
                        extra={
                            "operation": operation,
                            "error_code": (
                                exc.code
                                if isinstance(exc, ApprovalKernelError)
                                else type(exc).__name__
                            ),
                        },
                    )
                    raise
                if attempt >= self._policy.max_retries:
                    logger.warning(
                        "approval_concurrency_exhausted",
                        extra={
                            "operation": operation,
                            "attempts": attempt,
                            "error_type": type(exc).__name__,
                        },
                    )
                    raise ConcurrencyConflictError(
                        operation,
                        str(round_id) if round_id is not None else None,
                        attempt,
                    ) from exc
                logger.warning(
                    "approval_concurrency_retry",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "error_type": type(exc).__name__,
                    },
                )
                time.sleep(self._policy.retry_backoff_ms * attempt / 1000.0)
                continue
            finally:
                session.close()

            for event in uow.events:
                self._emitter.notify(event)
            return result

    def _enforce(
        self,
        result: AuthorizationResult,
        approval_round: ApprovalRound,
        user_id: UUID,
    ) -> None:
        """Turn a gate denial into the matching typed error."""
        if result.allowed:
            return

        if result.denial == Denial.WRONG_STATUS:
            raise InvalidStateError(
                result.action.value, approval_round.status.value, result.reason,
            )
        if result.denial == Denial.NO_APPROVERS:
            raise PreconditionFailedError(result.action.value, result.reason)
        raise AuthorizationError(
            action=result.action.value,
            round_id=str(approval_round.round_id),
            user_id=str(user_id),
            reason=result.reason,
        )

    @staticmethod
    def _require_entity(operation: str, entity_type: str, entity_id: str) -> None:
        if not entity_type or not entity_type.strip():
            raise PreconditionFailedError(operation, "entity_type is required")
        if not entity_id or not entity_id.strip():
            raise PreconditionFailedError(operation, "entity_id is required")

    @staticmethod
    def _parse_decision(decision: Decision | str) -> Decision:
        try:
            return Decision(decision)
        except ValueError:
            raise PreconditionFailedError(
                "respond",
                f"Unknown decision '{decision}'; expected one of "
                f"{[d.value for d in Decision]}",
            ) from None

    def _comment_body(self, operation: str, body: str | None) -> str:
        text = (body or "").strip()
        if not text:
            raise PreconditionFailedError(operation, "Comment cannot be empty")
        if len(text) > self._policy.max_comment_length:
            raise PreconditionFailedError(
                operation,
                f"Comment exceeds {self._policy.max_comment_length} characters",
            )
        return text

    def _response_comment(self, decision: Decision, comment: str | None) -> str | None:
        if comment is None or not comment.strip():
            if self._policy.require_comment_on_veto and decision in VETO_DECISIONS:
                raise PreconditionFailedError(
                    "respond",
                    "A comment is required when declining or requesting revision",
                )
            return None
        return self._comment_body("respond", comment)
