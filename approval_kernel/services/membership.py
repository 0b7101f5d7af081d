"""
approval_kernel.services.membership -- In-process container membership.

``StaticMembershipProvider`` satisfies the ``MembershipProvider`` protocol
from an in-memory role table.  Deployments that own a real
organization/project service plug their own provider in instead.
"""

from __future__ import annotations

import threading
from collections.abc import Sequence
from uuid import UUID

from approval_kernel.domain.approval import DEFAULT_ROLE_HIERARCHY


class StaticMembershipProvider:
    """Role grants held in a dict, ranked by ``role_hierarchy``.

    ``role_hierarchy`` lists role names from lowest to highest; holding a
    role implies every role before it.
    """

    def __init__(self, role_hierarchy: Sequence[str] = DEFAULT_ROLE_HIERARCHY) -> None:
        if not role_hierarchy:
            raise ValueError("role_hierarchy must name at least one role")
        if len(set(role_hierarchy)) != len(role_hierarchy):
            raise ValueError("role_hierarchy contains duplicate roles")
        self._rank = {role: i for i, role in enumerate(role_hierarchy)}
        self._grants: dict[tuple[str, UUID], str] = {}
        self._lock = threading.Lock()

    @property
    def role_hierarchy(self) -> tuple[str, ...]:
        return tuple(sorted(self._rank, key=self._rank.__getitem__))

    def grant(self, user_id: UUID, container_id: str, role: str) -> None:
        self._require_known(role)
        with self._lock:
            self._grants[(container_id, user_id)] = role

    def revoke(self, user_id: UUID, container_id: str) -> None:
        with self._lock:
            self._grants.pop((container_id, user_id), None)

    def role_of(self, user_id: UUID, container_id: str) -> str | None:
        with self._lock:
            return self._grants.get((container_id, user_id))

    def has_container_access(
        self,
        user_id: UUID,
        container_id: str,
        min_role: str,
    ) -> bool:
        self._require_known(min_role)
        role = self.role_of(user_id, container_id)
        if role is None:
            return False
        return self._rank[role] >= self._rank[min_role]

    def _require_known(self, role: str) -> None:
        if role not in self._rank:
            raise ValueError(
                f"Unknown role '{role}'; expected one of {self.role_hierarchy}"
            )
