"""
Event System Module

Outbound domain events for workflow state changes. Publishing is
fire-and-forget: a failing subscriber or transport is logged and never
rolls back the state change that produced the event.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
import queue
import threading
from threading import RLock


class WorkflowEvent(Enum):
    """Domain events emitted by the workflow engine"""

    # Instance lifecycle
    INSTANCE_STARTED = "instance.started"
    INSTANCE_TRANSITIONED = "instance.transitioned"
    INSTANCE_COMPLETED = "instance.completed"
    INSTANCE_CANCELLED = "instance.cancelled"
    INSTANCE_PAUSED = "instance.paused"
    INSTANCE_RESUMED = "instance.resumed"
    INSTANCE_SLA_ESCALATED = "instance.sla_escalated"

    # Template lifecycle
    TEMPLATE_PUBLISHED = "template.published"
    TEMPLATE_VERSION_CREATED = "template.version_created"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: WorkflowEvent
    organization_id: str
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    actor_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'organization_id': self.organization_id,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'actor_id': self.actor_id,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventPayload':
        """Create from dictionary"""
        return cls(
            event_type=WorkflowEvent(data['event_type']),
            organization_id=data['organization_id'],
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            data=data['data'],
            actor_id=data.get('actor_id'),
            timestamp=datetime.fromisoformat(data['timestamp']) if isinstance(data['timestamp'], str) else data['timestamp'],
            event_id=data['event_id']
        )


class EventPublisher(ABC):
    """Outbound event port"""

    @abstractmethod
    def publish(self, event: EventPayload) -> None:
        pass


def _handler_name(handler: Callable) -> str:
    return getattr(handler, '__name__', repr(handler))


class EventDispatcher(EventPublisher):
    """In-process publish/subscribe dispatcher"""

    def __init__(self):
        self._handlers: Dict[WorkflowEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []  # catch-all handlers
        self._lock = RLock()
        self.logger = logging.getLogger("cwf.events")

    def subscribe(self, event_type: WorkflowEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {_handler_name(handler)}")

    def unsubscribe(self, event_type: WorkflowEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {_handler_name(handler)} was not subscribed to {event_type.value}")

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                # Log but don't break the main operation
                self.logger.error(f"Error in event handler {_handler_name(handler)} for {event.event_type.value}: {e}")

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[WorkflowEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)


class OutboxPublisher(EventPublisher):
    """
    Bounded queue in front of a slower publisher.

    ``publish`` never blocks the caller: when the queue is full the event is
    dropped and logged. A daemon thread drains the queue into ``downstream``.
    """

    def __init__(self, downstream: EventPublisher, max_size: int = 10000):
        self.downstream = downstream
        self._queue: "queue.Queue[EventPayload]" = queue.Queue(maxsize=max_size)
        self._thread: Optional[threading.Thread] = None
        self.running = False
        self.dropped = 0
        self.logger = logging.getLogger("cwf.events.outbox")

    def publish(self, event: EventPayload) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            self.logger.error(f"Outbox full, dropped event {event.event_type.value} ({event.event_id})")

    def start(self) -> None:
        """Start the delivery thread"""
        if self.running:
            return
        self.running = True
        self._thread = threading.Thread(target=self._drain, name="cwf-outbox", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop after delivering what is already queued"""
        self.running = False
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        self._deliver_pending()

    def flush(self) -> None:
        """Block until every queued event has been handed to downstream"""
        if not self.running:
            self._deliver_pending()
            return
        self._queue.join()

    def pending(self) -> int:
        return self._queue.qsize()

    def _drain(self) -> None:
        while self.running or not self._queue.empty():
            try:
                event = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            self._deliver(event)

    def _deliver_pending(self) -> None:
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                return
            self._deliver(event)

    def _deliver(self, event: EventPayload) -> None:
        try:
            self.downstream.publish(event)
        except Exception as e:
            self.logger.error(f"Failed to deliver event {event.event_type.value} ({event.event_id}): {e}")
        finally:
            self._queue.task_done()


def safe_publish(publisher: Optional[EventPublisher], event: EventPayload,
                 logger: Optional[logging.Logger] = None) -> None:
    """Publish without letting a transport failure reach the caller"""
    if publisher is None:
        return
    try:
        publisher.publish(event)
    except Exception as e:
        (logger or logging.getLogger("cwf.events")).error(
            f"Failed to publish {event.event_type.value} for {event.entity_type}:{event.entity_id}: {e}"
        )


def create_instance_event(event_type: WorkflowEvent, instance, actor_id: Optional[str] = None,
                          timestamp: Optional[datetime] = None, **extra: Any) -> EventPayload:
    """Create an instance-related event"""
    data = {
        "entity_type": instance.entity_type.value,
        "entity_id": instance.entity_id,
        "template_id": instance.template_id,
        "template_version": instance.template_version,
        "current_stage": instance.current_stage,
        "previous_stage": instance.previous_stage,
        "status": instance.status.value,
        "sla_status": instance.sla_status.value,
        "due_date": instance.due_date.isoformat() if instance.due_date else None,
        "owner_id": instance.owner_id,
        "revision": instance.revision
    }
    data.update(extra)
    return EventPayload(
        event_type=event_type,
        organization_id=instance.organization_id,
        entity_type="workflow_instance",
        entity_id=instance.id,
        data=data,
        actor_id=actor_id,
        timestamp=timestamp or datetime.now(timezone.utc)
    )


def create_template_event(event_type: WorkflowEvent, template, actor_id: Optional[str] = None,
                          timestamp: Optional[datetime] = None, **extra: Any) -> EventPayload:
    """Create a template-related event"""
    data = {
        "name": template.name,
        "version": template.version,
        "entity_type": template.entity_type.value,
        "is_default": template.is_default,
        "source_template_id": template.source_template_id
    }
    data.update(extra)
    return EventPayload(
        event_type=event_type,
        organization_id=template.organization_id,
        entity_type="workflow_template",
        entity_id=template.id,
        data=data,
        actor_id=actor_id,
        timestamp=timestamp or datetime.now(timezone.utc)
    )
