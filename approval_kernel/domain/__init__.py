"""
Pure domain layer.

Value objects, the status aggregation rule and the authorization gate,
with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- I/O

All domain objects are immutable and deterministic.
"""

from approval_kernel.domain.aggregation import RoundTally, aggregate, tally
from approval_kernel.domain.approval import (
    OPEN_ROUND_STATUSES,
    REOPENABLE_ROUND_STATUSES,
    ROUND_TRANSITIONS,
    TERMINAL_ROUND_STATUSES,
    ApprovalRound,
    ApproverAssignment,
    ApproverResponse,
    Comment,
    ContainerRole,
    Decision,
    MembershipProvider,
    RoundDetails,
    RoundEvent,
    RoundEventKind,
    RoundStatus,
)
from approval_kernel.domain.authorization import (
    Action,
    AuthorizationGate,
    AuthorizationResult,
    Denial,
)
from approval_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from approval_kernel.domain.policy import WorkflowPolicy

__all__ = [
    "OPEN_ROUND_STATUSES",
    "REOPENABLE_ROUND_STATUSES",
    "ROUND_TRANSITIONS",
    "TERMINAL_ROUND_STATUSES",
    "Action",
    "ApprovalRound",
    "ApproverAssignment",
    "ApproverResponse",
    "AuthorizationGate",
    "AuthorizationResult",
    "Clock",
    "Comment",
    "ContainerRole",
    "Decision",
    "Denial",
    "DeterministicClock",
    "MembershipProvider",
    "RoundDetails",
    "RoundEvent",
    "RoundEventKind",
    "RoundStatus",
    "RoundTally",
    "SystemClock",
    "WorkflowPolicy",
    "aggregate",
    "tally",
]
