"""
Dispatch notifier - best-effort "new jobs" signal after a compile commits.

Notifications only let idle workers wake up before their next poll. Workers
still poll the ledger on an interval, so a dropped, duplicated or reordered
notification never affects correctness.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DispatchEvent:
    """Published once per successful compile, after the ledger write commits."""
    manifest_id: str
    job_count: int
    user_id: Optional[str] = None
    event_type: str = "jobs.created"
    emitted_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "manifest_id": self.manifest_id,
            "job_count": self.job_count,
            "user_id": self.user_id,
            "emitted_at": self.emitted_at.isoformat(),
        }


Subscriber = Callable[[DispatchEvent], None]


class DispatchNotifier(ABC):
    """Publish/subscribe channel for dispatch events."""

    @abstractmethod
    def publish(self, event: DispatchEvent) -> None:
        pass

    @abstractmethod
    def subscribe(self, handler: Subscriber) -> Callable[[], None]:
        """
        Register a handler.

        Returns:
            Callable that removes the handler again
        """
        pass


class InMemoryNotifier(DispatchNotifier):
    """
    In-process fan-out to every subscriber.

    A subscriber that raises is logged and skipped; the publisher never sees
    the error.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: list[Subscriber] = []
        self.published: list[DispatchEvent] = []

    def publish(self, event: DispatchEvent) -> None:
        with self._lock:
            self.published.append(event)
            subscribers = list(self._subscribers)

        logger.debug(f"Publishing {event.event_type} for manifest {event.manifest_id}")
        for handler in subscribers:
            try:
                handler(event)
            except Exception as e:
                logger.warning(f"Dispatch subscriber failed for manifest {event.manifest_id}: {e}")

    def subscribe(self, handler: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._subscribers:
                    self._subscribers.remove(handler)

        return unsubscribe


class NullNotifier(DispatchNotifier):
    """Notifier that drops every event. Workers fall back to polling."""

    def publish(self, event: DispatchEvent) -> None:
        pass

    def subscribe(self, handler: Subscriber) -> Callable[[], None]:
        return lambda: None
