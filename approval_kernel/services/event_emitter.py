"""
approval_kernel.services.event_emitter -- Round change notifications.

Responsibility:
    Fan out ``RoundEvent`` signals to in-process subscribers once the
    workflow service has committed a change.  Subscribers use them to
    invalidate cached views keyed by ``(entity_type, entity_id)``.

Architecture position:
    Kernel > Services.  Imports domain/ only.

Contract:
    - Delivery is best-effort: a failing subscriber is logged and skipped,
      it never fails the operation that produced the event.
    - A subscriber may filter by entity type and, optionally, entity id.
    - ``subscribe`` returns a handle; calling it removes the subscription.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass

from approval_kernel.domain.approval import RoundEvent
from approval_kernel.logging_config import get_logger

logger = get_logger("services.event_emitter")

RoundEventCallback = Callable[[RoundEvent], None]


# Compared by identity so each handle removes only its own entry.
@dataclass(frozen=True, eq=False)
class _Subscription:
    callback: RoundEventCallback
    entity_type: str | None = None
    entity_id: str | None = None

    def matches(self, event: RoundEvent) -> bool:
        if self.entity_type is not None and self.entity_type != event.entity_type:
            return False
        if self.entity_id is not None and self.entity_id != event.entity_id:
            return False
        return True


class RoundEventEmitter:
    """Thread-safe synchronous publisher for round lifecycle events."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: list[_Subscription] = []

    def subscribe(
        self,
        callback: RoundEventCallback,
        entity_type: str | None = None,
        entity_id: str | None = None,
    ) -> Callable[[], None]:
        """Register ``callback``; return a function that unregisters it."""
        if entity_id is not None and entity_type is None:
            raise ValueError("entity_id filter requires entity_type")

        subscription = _Subscription(callback, entity_type, entity_id)
        with self._lock:
            self._subscriptions.append(subscription)

        def unsubscribe() -> None:
            with self._lock:
                if subscription in self._subscriptions:
                    self._subscriptions.remove(subscription)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def notify(self, event: RoundEvent) -> int:
        """Deliver ``event`` to matching subscribers.

        Returns the number of subscribers that received it without error.
        """
        with self._lock:
            targets = [s for s in self._subscriptions if s.matches(event)]

        delivered = 0
        for subscription in targets:
            try:
                subscription.callback(event)
            except Exception:
                logger.warning(
                    "round_event_delivery_failed",
                    extra={
                        "event_kind": event.kind.value,
                        "entity_type": event.entity_type,
                        "entity_id": event.entity_id,
                        "round_id": str(event.round_id) if event.round_id else None,
                    },
                    exc_info=True,
                )
                continue
            delivered += 1
        return delivered
