"""
Workflow Engine Module

Facade that wires the template store, instance state machine, SLA
scheduler, assignment router and event publishing together and exposes
the engine's operations. Every operation returns the resulting record or
raises a ``WorkflowError`` subclass carrying a stable ``code``.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from .assignment import AssignmentResult, AssignmentRouter, StrategyFn
from .clock import SystemClock
from .config import WorkflowSettings, get_config
from .errors import NotFoundError
from .events import EventDispatcher, EventPublisher, OutboxPublisher
from .instances import ActorLike, InstanceStateMachine, coerce_entity_type
from .kafka_integration import BusEventPublisher, EventBus, create_event_bus
from .models import EntityType, InstanceStatus, WorkflowInstance, WorkflowTemplate
from .sla import SlaClock, SlaScheduler
from .storage import StorageInterface, InMemoryStorage, create_storage
from .templates import DefinitionLike, TemplateStore
from .validator import TransitionValidator


logger = logging.getLogger("cwf.engine")


class WorkflowEngine:
    """Compliance workflow engine"""

    def __init__(self, storage: Optional[StorageInterface] = None, clock=None,
                 publisher: Optional[EventPublisher] = None,
                 settings: Optional[WorkflowSettings] = None):
        self.settings = settings or get_config()
        self.storage = storage or InMemoryStorage()
        self.clock = clock or SystemClock()
        self.dispatcher = EventDispatcher()
        if publisher is not None:
            self.dispatcher.subscribe_all(publisher.publish)
        self.event_bus: Optional[EventBus] = None
        self.outbox: Optional[OutboxPublisher] = None

        self.sla_clock = SlaClock(
            self.settings.default_warning_threshold_pct,
            self.settings.default_critical_threshold_hours
        )
        self.validator = TransitionValidator()
        self.templates = TemplateStore(
            self.storage, self.clock, self.dispatcher,
            max_retries=self.settings.publish_max_retries
        )
        self.router = AssignmentRouter(self.storage, self.clock)
        self.instances = InstanceStateMachine(
            self.storage, self.templates, self.clock, self.sla_clock,
            validator=self.validator, publisher=self.dispatcher, router=self.router
        )
        self.scheduler = SlaScheduler(
            self.instances, self.templates, self.sla_clock, self.dispatcher, self.clock,
            interval_seconds=self.settings.sla_sweep_interval_seconds
        )

    @classmethod
    def from_settings(cls, settings: Optional[WorkflowSettings] = None) -> 'WorkflowEngine':
        """Build storage and event delivery from configuration"""
        settings = settings or get_config()
        engine = cls(storage=create_storage(settings.database_url), settings=settings)
        engine.event_bus = create_event_bus(settings)
        engine.outbox = OutboxPublisher(
            BusEventPublisher(engine.event_bus, settings.kafka_topic_prefix),
            max_size=settings.outbox_max_size
        )
        engine.dispatcher.subscribe_all(engine.outbox.publish)
        return engine

    # Lifecycle

    def start(self) -> None:
        """Start background delivery and the SLA sweep"""
        if self.event_bus is not None:
            self.event_bus.start()
        if self.outbox is not None:
            self.outbox.start()
        self.scheduler.start()

    def stop(self) -> None:
        """Stop the sweep, deliver queued events, then release the bus"""
        self.scheduler.stop()
        if self.outbox is not None:
            self.outbox.stop()
        if self.event_bus is not None:
            self.event_bus.stop()

    def close(self) -> None:
        self.stop()
        self.storage.close()

    # Templates

    def create_template(self, definition: DefinitionLike) -> WorkflowTemplate:
        return self.templates.create_draft(definition)

    def publish_template(self, template_id: str, definition: Optional[DefinitionLike] = None,
                         make_default: bool = False, actor_id: Optional[str] = None) -> WorkflowTemplate:
        return self.templates.publish(template_id, definition, make_default, actor_id)

    def get_template(self, template_id: str, organization_id: Optional[str] = None) -> WorkflowTemplate:
        return self.templates.get_template(template_id, organization_id)

    def list_templates(self, organization_id: str, entity_type: Optional[EntityType] = None,
                       is_active: Optional[bool] = None) -> List[WorkflowTemplate]:
        return self.templates.list_templates(organization_id, entity_type, is_active)

    def delete_template(self, template_id: str, organization_id: Optional[str] = None) -> None:
        self.templates.delete_draft(template_id, organization_id)

    # Instances

    def start_instance(self, entity_type: Union[EntityType, str], entity_id: str, organization_id: str,
                       actor: ActorLike = None, template_id: Optional[str] = None, assign: bool = True,
                       context: Optional[Dict[str, Any]] = None) -> WorkflowInstance:
        return self.instances.start(entity_type, entity_id, organization_id, actor,
                                    template_id=template_id, assign=assign, context=context)

    def transition_instance(self, instance_id: str, to_stage: str, actor: ActorLike = None,
                            context: Optional[Dict[str, Any]] = None, expected_revision: Optional[int] = None,
                            organization_id: Optional[str] = None) -> WorkflowInstance:
        return self.instances.transition(instance_id, to_stage, actor, context=context,
                                         expected_revision=expected_revision,
                                         organization_id=organization_id)

    def cancel_instance(self, instance_id: str, reason: Optional[str] = None, actor: ActorLike = None,
                        organization_id: Optional[str] = None) -> WorkflowInstance:
        return self.instances.cancel(instance_id, reason, actor, organization_id)

    def pause_instance(self, instance_id: str, actor: ActorLike = None, reason: Optional[str] = None,
                       organization_id: Optional[str] = None) -> WorkflowInstance:
        return self.instances.pause(instance_id, actor, reason, organization_id)

    def resume_instance(self, instance_id: str, actor: ActorLike = None,
                        organization_id: Optional[str] = None) -> WorkflowInstance:
        return self.instances.resume(instance_id, actor, organization_id)

    def get_instance(self, instance_id: str, organization_id: Optional[str] = None) -> WorkflowInstance:
        return self.instances.get(instance_id, organization_id)

    def get_instance_by_entity(self, organization_id: str, entity_type: Union[EntityType, str],
                               entity_id: str) -> Optional[WorkflowInstance]:
        return self.instances.get_by_entity(organization_id, entity_type, entity_id)

    def allowed_transitions(self, instance_id: str, actor: ActorLike = None,
                            organization_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.instances.allowed_transitions(instance_id, actor, organization_id)

    def list_instances(self, organization_id: str, status: Optional[InstanceStatus] = None,
                       entity_type: Optional[EntityType] = None) -> List[WorkflowInstance]:
        return self.instances.list_instances(organization_id, status, entity_type)

    def list_active_instances_for_sweep(self, organization_id: Optional[str] = None) -> List[WorkflowInstance]:
        return self.instances.list_active_for_sweep(organization_id)

    # SLA

    def run_sla_sweep(self, organization_id: Optional[str] = None) -> Dict[str, int]:
        return self.scheduler.run_once(organization_id)

    def check_sla(self, instance_id: str) -> Dict[str, Any]:
        return self.scheduler.check_instance(instance_id)

    # Assignment

    def register_assignment_strategy(self, key: str, fn: StrategyFn) -> None:
        self.router.register_strategy(key, fn)

    def assign_owner(self, organization_id: str, entity_type: Union[EntityType, str], entity_id: str,
                     category: Optional[str] = None, location_id: Optional[str] = None,
                     context: Optional[Dict[str, Any]] = None,
                     instance_id: Optional[str] = None) -> AssignmentResult:
        """
        Route an entity to an owner. With ``instance_id`` the chosen owner is
        also written to that instance.
        """
        entity_type = coerce_entity_type(entity_type)
        result = self.router.assign(organization_id, entity_type, entity_id,
                                    category=category, location_id=location_id, context=context)
        if instance_id is not None and result.is_assigned:
            instance = self.instances.get(instance_id, organization_id)
            if instance.entity_type != entity_type or instance.entity_id != entity_id:
                raise NotFoundError(
                    f"Instance {instance_id} does not govern {entity_type.value}:{entity_id}",
                    {'instance_id': instance_id}
                )
            instance.owner_id = result.owner_id
            self.instances.save_system_update(instance)
        return result
