"""
Kafka Integration Module

Publishes workflow events onto an event bus for audit and notification
consumers. Provides an abstract bus with InMemory, Log and Kafka
implementations, and an adapter that plugs a bus into the engine's
EventPublisher port.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Any, Callable

# Try to import confluent-kafka, fall back gracefully
try:
    from confluent_kafka import Producer
    KAFKA_AVAILABLE = True
except ImportError:
    KAFKA_AVAILABLE = False
    Producer = None

from .events import EventPayload, EventPublisher, WorkflowEvent


logger = logging.getLogger("cwf.kafka")


class WorkflowTopics(Enum):
    """Topic suffixes; the configured prefix is prepended"""
    INSTANCES_LIFECYCLE = "workflow.instances.lifecycle"
    INSTANCES_SLA = "workflow.instances.sla"
    TEMPLATES = "workflow.templates"


_TOPIC_FOR_EVENT = {
    WorkflowEvent.INSTANCE_STARTED: WorkflowTopics.INSTANCES_LIFECYCLE,
    WorkflowEvent.INSTANCE_TRANSITIONED: WorkflowTopics.INSTANCES_LIFECYCLE,
    WorkflowEvent.INSTANCE_COMPLETED: WorkflowTopics.INSTANCES_LIFECYCLE,
    WorkflowEvent.INSTANCE_CANCELLED: WorkflowTopics.INSTANCES_LIFECYCLE,
    WorkflowEvent.INSTANCE_PAUSED: WorkflowTopics.INSTANCES_LIFECYCLE,
    WorkflowEvent.INSTANCE_RESUMED: WorkflowTopics.INSTANCES_LIFECYCLE,
    WorkflowEvent.INSTANCE_SLA_ESCALATED: WorkflowTopics.INSTANCES_SLA,
    WorkflowEvent.TEMPLATE_PUBLISHED: WorkflowTopics.TEMPLATES,
    WorkflowEvent.TEMPLATE_VERSION_CREATED: WorkflowTopics.TEMPLATES,
}


def topic_name(event_type: WorkflowEvent, prefix: str = "cwf") -> str:
    """Full topic name for an event type"""
    suffix = _TOPIC_FOR_EVENT[event_type].value
    return f"{prefix}.{suffix}" if prefix else suffix


@dataclass
class EventSchema:
    """CloudEvents-inspired event schema"""
    event_id: str
    event_type: str
    timestamp: datetime
    source: str = "compliance-workflows"
    version: str = "1.0"
    organization_id: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        result = asdict(self)
        result['timestamp'] = self.timestamp.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventSchema':
        """Create from dictionary"""
        data = data.copy()
        if 'timestamp' in data and isinstance(data['timestamp'], str):
            data['timestamp'] = datetime.fromisoformat(data['timestamp'])
        return cls(**data)

    @classmethod
    def from_payload(cls, payload: EventPayload) -> 'EventSchema':
        return cls(
            event_id=payload.event_id,
            event_type=payload.event_type.value,
            timestamp=payload.timestamp,
            organization_id=payload.organization_id,
            entity_type=payload.entity_type,
            entity_id=payload.entity_id,
            data=payload.data,
            metadata={'actor_id': payload.actor_id} if payload.actor_id else {}
        )


class EventBus(ABC):
    """Abstract event bus interface"""

    @abstractmethod
    def publish(self, topic: str, event: EventSchema, key: Optional[str] = None) -> None:
        """Publish an event to a topic"""
        pass

    @abstractmethod
    def publish_batch(self, topic: str, events: List[EventSchema], keys: Optional[List[str]] = None) -> None:
        """Publish multiple events to a topic"""
        pass

    @abstractmethod
    def start(self) -> None:
        pass

    @abstractmethod
    def stop(self) -> None:
        pass

    @abstractmethod
    def is_running(self) -> bool:
        pass


class _SubscriberMixin:
    """Local fan-out shared by the non-Kafka buses"""

    def _init_subscribers(self):
        self.subscribers: Dict[str, List[Callable]] = {}
        self._lock = threading.RLock()

    def subscribe(self, topic: str, handler: Callable[[EventSchema], None]) -> None:
        with self._lock:
            self.subscribers.setdefault(topic, []).append(handler)

    def _notify(self, topic: str, event: EventSchema) -> None:
        with self._lock:
            handlers = list(self.subscribers.get(topic, []))
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Error in event handler for {topic}: {e}")


class InMemoryEventBus(_SubscriberMixin, EventBus):
    """In-memory event bus for testing"""

    def __init__(self):
        self._init_subscribers()
        self.events: List[tuple] = []  # (topic, event, key)
        self.running = False

    def publish(self, topic: str, event: EventSchema, key: Optional[str] = None) -> None:
        with self._lock:
            self.events.append((topic, event, key))
        self._notify(topic, event)

    def publish_batch(self, topic: str, events: List[EventSchema], keys: Optional[List[str]] = None) -> None:
        keys = keys or [None] * len(events)
        for event, key in zip(events, keys):
            self.publish(topic, event, key)

    def start(self) -> None:
        self.running = True

    def stop(self) -> None:
        self.running = False

    def is_running(self) -> bool:
        return self.running

    def get_events(self, topic: Optional[str] = None) -> List[tuple]:
        """Get all events or events for a specific topic"""
        with self._lock:
            if topic:
                return [(t, e, k) for t, e, k in self.events if t == topic]
            return self.events.copy()

    def clear_events(self) -> None:
        with self._lock:
            self.events.clear()


class LogEventBus(_SubscriberMixin, EventBus):
    """Event bus that just logs events (for development)"""

    def __init__(self, log: Optional[logging.Logger] = None):
        self._init_subscribers()
        self.logger = log or logger
        self.running = False

    def publish(self, topic: str, event: EventSchema, key: Optional[str] = None) -> None:
        self.logger.info(f"EVENT: {topic} - {event.event_type} - {event.entity_type}:{event.entity_id}")
        self._notify(topic, event)

    def publish_batch(self, topic: str, events: List[EventSchema], keys: Optional[List[str]] = None) -> None:
        keys = keys or [None] * len(events)
        for event, key in zip(events, keys):
            self.publish(topic, event, key)

    def start(self) -> None:
        self.running = True
        self.logger.info("LogEventBus started")

    def stop(self) -> None:
        self.running = False
        self.logger.info("LogEventBus stopped")

    def is_running(self) -> bool:
        return self.running


class KafkaEventBus(EventBus):
    """Kafka producer bus; downstream services own their consumers"""

    def __init__(self, bootstrap_servers: str, client_id: str = "compliance-workflows", **config):
        if not KAFKA_AVAILABLE:
            raise ImportError("confluent-kafka is not available. Install it or use InMemoryEventBus.")

        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self.config = config
        self.producer = None
        self.running = False
        self._lock = threading.RLock()

    def _create_producer(self):
        return Producer({
            'bootstrap.servers': self.bootstrap_servers,
            'client.id': self.client_id,
            **self.config
        })

    @staticmethod
    def _delivery_callback(err, msg):
        if err:
            logger.error(f"Failed to publish event to {msg.topic()}: {err}")
        else:
            logger.debug(f"Event published to {msg.topic()}:{msg.partition()}:{msg.offset()}")

    def publish(self, topic: str, event: EventSchema, key: Optional[str] = None) -> None:
        """Queue an event on the producer; delivery is confirmed asynchronously"""
        with self._lock:
            if not self.producer:
                self.producer = self._create_producer()
            self.producer.produce(topic, json.dumps(event.to_dict()), key=key,
                                  callback=self._delivery_callback)
            self.producer.poll(0)

    def publish_batch(self, topic: str, events: List[EventSchema], keys: Optional[List[str]] = None) -> None:
        keys = keys or [None] * len(events)
        for event, key in zip(events, keys):
            self.publish(topic, event, key)
        self.flush()

    def flush(self, timeout: float = 10.0) -> None:
        with self._lock:
            if self.producer:
                remaining = self.producer.flush(timeout)
                if remaining:
                    logger.warning(f"{remaining} events still undelivered after {timeout}s flush")

    def start(self) -> None:
        self.running = True
        logger.info("KafkaEventBus started")

    def stop(self) -> None:
        self.running = False
        self.flush()
        logger.info("KafkaEventBus stopped")

    def is_running(self) -> bool:
        return self.running


class BusEventPublisher(EventPublisher):
    """Adapts an EventBus to the engine's EventPublisher port"""

    def __init__(self, event_bus: EventBus, topic_prefix: str = "cwf"):
        self.event_bus = event_bus
        self.topic_prefix = topic_prefix

    def publish(self, event: EventPayload) -> None:
        # Keyed by entity id so one instance's events stay ordered within a partition
        self.event_bus.publish(
            topic_name(event.event_type, self.topic_prefix),
            EventSchema.from_payload(event),
            key=event.entity_id
        )


def create_event_bus(settings) -> EventBus:
    """Pick a bus from settings: Kafka when enabled and configured, otherwise logging"""
    if settings.enable_kafka_events and settings.kafka_bootstrap_servers:
        return KafkaEventBus(settings.kafka_bootstrap_servers)
    return LogEventBus()
