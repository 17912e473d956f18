"""Migration event channel.

The orchestrator and progress tracker publish events here; notification,
audit and streaming collaborators subscribe without the engine knowing how
events are delivered.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set
from enum import Enum
from datetime import datetime
import logging
import threading

from .timeutil import utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of events published by the engine."""
    PIPELINE_CREATED = "pipeline_created"
    PROGRESS_UPDATED = "progress_updated"
    MIGRATION_COMPLETED = "migration_completed"
    MIGRATION_FAILED = "migration_failed"
    MIGRATION_PAUSED = "migration_paused"
    MIGRATION_RESUMED = "migration_resumed"
    MIGRATION_ROLLED_BACK = "migration_rolled_back"
    BACKUP_CREATED = "backup_created"
    ROLLBACK_FAILED = "rollback_failed"


@dataclass
class MigrationEvent:
    """A single published event."""
    type: EventType
    pipeline_id: str
    timestamp: datetime = field(default_factory=utcnow)
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "type": self.type.value,
            "pipeline_id": self.pipeline_id,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }


Listener = Callable[[MigrationEvent], None]


class EventBus:
    """In-process observer registry.

    Listeners are called synchronously in subscription order. A listener that
    raises is logged and skipped; it never breaks the publisher.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._subscriptions: List[tuple] = []

    def subscribe(
        self,
        listener: Listener,
        event_types: Optional[Iterable[EventType]] = None,
    ) -> Callable[[], None]:
        """
        Register a listener.

        Args:
            listener: Callable receiving each MigrationEvent
            event_types: Only deliver these types (all types when None)

        Returns:
            A function that removes the subscription
        """
        types: Optional[Set[EventType]] = set(event_types) if event_types else None
        entry = (listener, types)
        with self._lock:
            self._subscriptions.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._subscriptions:
                    self._subscriptions.remove(entry)

        return unsubscribe

    def publish(self, event: MigrationEvent) -> None:
        """Deliver an event to every matching listener."""
        with self._lock:
            subscriptions = list(self._subscriptions)

        for listener, types in subscriptions:
            if types is not None and event.type not in types:
                continue
            try:
                listener(event)
            except Exception:
                logger.exception(f"Event listener failed for {event.type.value} ({event.pipeline_id})")

    def emit(self, event_type: EventType, pipeline_id: str, **data: Any) -> MigrationEvent:
        """Build and publish an event."""
        event = MigrationEvent(type=event_type, pipeline_id=pipeline_id, data=data)
        self.publish(event)
        return event


class EventRecorder:
    """Listener that keeps every event it receives (useful for audit trails and tests)."""

    def __init__(self):
        self.events: List[MigrationEvent] = []
        self._lock = threading.Lock()

    def __call__(self, event: MigrationEvent) -> None:
        with self._lock:
            self.events.append(event)

    def types(self, pipeline_id: Optional[str] = None) -> List[str]:
        """Event type values received, optionally for one pipeline."""
        with self._lock:
            return [
                e.type.value for e in self.events
                if pipeline_id is None or e.pipeline_id == pipeline_id
            ]
