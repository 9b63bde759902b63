"""
Instance State Machine Module

Lifecycle of a single workflow instance:

    ACTIVE <-> PAUSED
    ACTIVE -> COMPLETED          (entering a terminal stage)
    ACTIVE | PAUSED -> CANCELLED (explicit abort)

Every mutation reads the instance, applies the change in memory and writes
it back with a compare-and-swap on ``revision``. A lost race surfaces as
STALE_INSTANCE; nothing blocks and nothing is retried here.
"""

import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

from .errors import (
    AlreadyTerminalError, DuplicateInstanceError, IllegalTransitionError,
    NotFoundError, StaleInstanceError,
)
from .events import EventPayload, EventPublisher, WorkflowEvent, create_instance_event, safe_publish
from .logging_config import log_action
from .models import (
    Actor, EntityType, InstanceStatus, StepState, WorkflowInstance, WorkflowTemplate,
    INSTANCES_TABLE, LIVE_INSTANCE_KEYS,
)
from .sla import SlaClock
from .storage import StorageInterface
from .tenancy import can_access
from .validator import TransitionValidator


logger = logging.getLogger("cwf.instances")

ActorLike = Union[Actor, str, Dict[str, Any], None]


def coerce_actor(actor: ActorLike) -> Actor:
    if actor is None:
        return Actor.system()
    if isinstance(actor, str):
        return Actor(user_id=actor)
    if isinstance(actor, dict):
        return Actor(user_id=actor["user_id"], roles=list(actor.get("roles", [])))
    return actor


def coerce_entity_type(entity_type: Union[EntityType, str]) -> EntityType:
    return entity_type if isinstance(entity_type, EntityType) else EntityType(entity_type.upper())


class InstanceStateMachine:
    """Start, move, pause, resume and cancel workflow instances"""

    def __init__(self, storage: StorageInterface, templates, clock, sla_clock: SlaClock,
                 validator: Optional[TransitionValidator] = None,
                 publisher: Optional[EventPublisher] = None, router=None):
        self.storage = storage
        self.templates = templates
        self.clock = clock
        self.sla_clock = sla_clock
        self.validator = validator or TransitionValidator()
        self.publisher = publisher
        self.router = router

    # Reads

    def get(self, instance_id: str, organization_id: Optional[str] = None) -> WorkflowInstance:
        """Load an instance; other tenants' instances are reported as missing"""
        data = self.storage.load(INSTANCES_TABLE, instance_id)
        if not data or not can_access(data['organization_id'], organization_id):
            raise NotFoundError(f"Instance {instance_id} not found", {'instance_id': instance_id})
        return WorkflowInstance.from_dict(data)

    def get_by_entity(self, organization_id: str, entity_type: Union[EntityType, str],
                      entity_id: str) -> Optional[WorkflowInstance]:
        """The live instance for an entity, else its most recent one"""
        entity_type = coerce_entity_type(entity_type)
        rows = self.storage.find(INSTANCES_TABLE, {
            'organization_id': organization_id,
            'entity_type': entity_type.value,
            'entity_id': entity_id
        })
        if not rows:
            return None
        instances = [WorkflowInstance.from_dict(d) for d in rows]
        live = [i for i in instances if i.status.is_live]
        return live[0] if live else max(instances, key=lambda i: i.created_at)

    def list_instances(self, organization_id: str, status: Optional[InstanceStatus] = None,
                       entity_type: Optional[EntityType] = None) -> List[WorkflowInstance]:
        filters: Dict[str, Any] = {'organization_id': organization_id}
        if status is not None:
            filters['status'] = status.value
        if entity_type is not None:
            filters['entity_type'] = entity_type.value
        instances = [WorkflowInstance.from_dict(d) for d in self.storage.find(INSTANCES_TABLE, filters)]
        return sorted(instances, key=lambda i: i.created_at)

    def list_active_for_sweep(self, organization_id: Optional[str] = None) -> List[WorkflowInstance]:
        """ACTIVE (not PAUSED) instances, earliest deadline first"""
        filters: Dict[str, Any] = {'status': InstanceStatus.ACTIVE.value}
        if organization_id is not None:
            filters['organization_id'] = organization_id
        instances = [WorkflowInstance.from_dict(d) for d in self.storage.find(INSTANCES_TABLE, filters)]
        return sorted(instances, key=lambda i: i.due_date)

    def allowed_transitions(self, instance_id: str, actor: ActorLike = None,
                            organization_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Edges the actor could attempt now; conditions are not evaluated"""
        instance = self.get(instance_id, organization_id)
        if instance.status != InstanceStatus.ACTIVE:
            return []
        template = self.templates.resolve_for_instance(instance.template_id, instance.template_version)
        actor = coerce_actor(actor) if actor is not None else None
        return [
            {
                'to': edge.to_stage,
                'label': edge.label or (template.get_stage(edge.to_stage).label),
                'condition_expr': edge.condition_expr,
                'is_terminal': template.get_stage(edge.to_stage).is_terminal
            }
            for edge in self.validator.allowed_targets(template, instance.current_stage, actor)
        ]

    # Mutations

    def start(self, entity_type: Union[EntityType, str], entity_id: str, organization_id: str,
              actor: ActorLike = None, template_id: Optional[str] = None, assign: bool = True,
              context: Optional[Dict[str, Any]] = None) -> WorkflowInstance:
        """Put an entity under workflow on the default (or given) active template"""
        entity_type = coerce_entity_type(entity_type)
        actor = coerce_actor(actor)
        context = context or {}
        template = self._resolve_start_template(entity_type, organization_id, template_id)

        now = self.clock.now()
        instance = WorkflowInstance(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            organization_id=organization_id,
            template_id=template.id,
            template_version=template.version,
            entity_type=entity_type,
            entity_id=entity_id,
            current_stage=template.initial_stage,
            due_date=self.sla_clock.initial_due_date(now, template.stage_sla_hours(template.initial_stage)),
            step_states={template.initial_stage: StepState(entered_at=now, actor_id=actor.user_id)},
            started_by=actor.user_id
        )

        self._claim_live_key(instance)
        try:
            if assign and self.router is not None:
                result = self.router.assign(
                    organization_id, entity_type, entity_id,
                    category=context.get('category'),
                    location_id=context.get('location_id'),
                    context=context
                )
                instance.owner_id = result.owner_id if result.is_assigned else None
            if not self.storage.insert(INSTANCES_TABLE, instance.id, instance.to_dict()):
                raise DuplicateInstanceError(f"Instance {instance.id} already exists", {'instance_id': instance.id})
        except Exception:
            self.storage.release_key(LIVE_INSTANCE_KEYS, instance.live_key, instance.id)
            raise

        log_action(logger, "info", f"Started instance for {instance.live_key} on {template.name} "
                   f"v{template.version}", user_id=actor.user_id, action="instance.start",
                   instance_id=instance.id, organization_id=organization_id)
        self.emit(create_instance_event(WorkflowEvent.INSTANCE_STARTED, instance, actor.user_id,
                                        instance.updated_at))
        return instance

    def transition(self, instance_id: str, to_stage: str, actor: ActorLike = None,
                   context: Optional[Dict[str, Any]] = None, expected_revision: Optional[int] = None,
                   organization_id: Optional[str] = None) -> WorkflowInstance:
        """Move an ACTIVE instance along one edge of its pinned template"""
        actor = coerce_actor(actor)
        context = context or {}
        instance = self.get(instance_id, organization_id)

        if expected_revision is not None and instance.revision != expected_revision:
            raise StaleInstanceError(
                f"Instance {instance_id} is at revision {instance.revision}, expected {expected_revision}",
                {'instance_id': instance_id, 'revision': instance.revision}
            )
        if instance.status.is_terminal:
            raise AlreadyTerminalError(
                f"Instance {instance_id} is {instance.status.value}",
                {'instance_id': instance_id, 'status': instance.status.value}
            )
        if instance.status == InstanceStatus.PAUSED:
            raise IllegalTransitionError(
                f"Instance {instance_id} is paused; resume it first",
                {'instance_id': instance_id, 'status': instance.status.value}
            )

        template = self.templates.resolve_for_instance(instance.template_id, instance.template_version)
        edge = self.validator.check(template, instance.current_stage, to_stage, actor, context)

        now = self.clock.now()
        from_stage = instance.current_stage
        instance.step_states[from_stage].exited_at = now
        instance.step_states[to_stage] = StepState(entered_at=now, actor_id=actor.user_id)
        instance.previous_stage = from_stage
        instance.current_stage = to_stage

        # Entering a stage resets the stage clock
        instance.stage_paused_offset = instance.paused_duration_total
        instance.due_date = self.sla_clock.initial_due_date(now, template.stage_sla_hours(to_stage))
        instance.sla_status = self.sla_clock.evaluate_instance(instance, template, now)

        completed = template.get_stage(to_stage).is_terminal
        if completed:
            instance.status = InstanceStatus.COMPLETED
            instance.completed_at = now
            instance.outcome = context.get('outcome')
            instance.step_states[to_stage].exited_at = now

        instance = self._commit(instance)
        if completed:
            self.storage.release_key(LIVE_INSTANCE_KEYS, instance.live_key, instance.id)

        log_action(logger, "info", f"Moved {instance.live_key} from {from_stage} to {to_stage}",
                   user_id=actor.user_id, action="instance.transition", instance_id=instance.id,
                   organization_id=instance.organization_id)
        self.emit(create_instance_event(
            WorkflowEvent.INSTANCE_TRANSITIONED, instance, actor.user_id, instance.updated_at,
            **{'from': from_stage, 'to': to_stage, 'label': edge.label}
        ))
        if completed:
            self.emit(create_instance_event(
                WorkflowEvent.INSTANCE_COMPLETED, instance, actor.user_id, instance.updated_at,
                outcome=instance.outcome
            ))
        return instance

    def cancel(self, instance_id: str, reason: Optional[str] = None, actor: ActorLike = None,
               organization_id: Optional[str] = None) -> WorkflowInstance:
        """Abort an ACTIVE/PAUSED instance; cancelling twice returns the cancelled state"""
        actor = coerce_actor(actor)
        instance = self.get(instance_id, organization_id)
        if instance.status == InstanceStatus.CANCELLED:
            return instance
        if instance.status == InstanceStatus.COMPLETED:
            raise AlreadyTerminalError(
                f"Instance {instance_id} is already completed",
                {'instance_id': instance_id, 'status': instance.status.value}
            )

        now = self.clock.now()
        self._close_pause(instance, now)
        instance.status = InstanceStatus.CANCELLED
        instance.cancelled_at = now
        instance.cancel_reason = reason
        current = instance.step_states.get(instance.current_stage)
        if current and current.exited_at is None:
            current.exited_at = now

        try:
            instance = self._commit(instance)
        except StaleInstanceError:
            # A concurrent cancel is the same outcome
            latest = self.get(instance_id, organization_id)
            if latest.status == InstanceStatus.CANCELLED:
                return latest
            raise

        self.storage.release_key(LIVE_INSTANCE_KEYS, instance.live_key, instance.id)
        log_action(logger, "info", f"Cancelled instance for {instance.live_key}", user_id=actor.user_id,
                   action="instance.cancel", instance_id=instance.id,
                   organization_id=instance.organization_id, extra={'reason': reason})
        self.emit(create_instance_event(
            WorkflowEvent.INSTANCE_CANCELLED, instance, actor.user_id, instance.updated_at, reason=reason
        ))
        return instance

    def pause(self, instance_id: str, actor: ActorLike = None, reason: Optional[str] = None,
              organization_id: Optional[str] = None) -> WorkflowInstance:
        """Stop the SLA clock without leaving the current stage"""
        actor = coerce_actor(actor)
        instance = self.get(instance_id, organization_id)
        self._require_not_terminal(instance)
        if instance.status == InstanceStatus.PAUSED:
            raise IllegalTransitionError(f"Instance {instance_id} is already paused",
                                         {'instance_id': instance_id})

        instance.status = InstanceStatus.PAUSED
        instance.paused_at = self.clock.now()
        instance = self._commit(instance)

        log_action(logger, "info", f"Paused instance for {instance.live_key}", user_id=actor.user_id,
                   action="instance.pause", instance_id=instance.id,
                   organization_id=instance.organization_id)
        self.emit(create_instance_event(
            WorkflowEvent.INSTANCE_PAUSED, instance, actor.user_id, instance.updated_at, reason=reason
        ))
        return instance

    def resume(self, instance_id: str, actor: ActorLike = None,
               organization_id: Optional[str] = None) -> WorkflowInstance:
        """Restart the SLA clock; the deadline moves out by the paused span"""
        actor = coerce_actor(actor)
        instance = self.get(instance_id, organization_id)
        self._require_not_terminal(instance)
        if instance.status != InstanceStatus.PAUSED:
            raise IllegalTransitionError(f"Instance {instance_id} is not paused",
                                         {'instance_id': instance_id})

        now = self.clock.now()
        paused_seconds = self._close_pause(instance, now)
        instance.status = InstanceStatus.ACTIVE
        instance.due_date = instance.due_date + timedelta(seconds=paused_seconds)

        template = self.templates.resolve_for_instance(instance.template_id, instance.template_version)
        instance.sla_status = self.sla_clock.evaluate_instance(instance, template, now)
        if instance.sla_status.is_breach and instance.sla_breached_at is None:
            instance.sla_breached_at = now
        instance = self._commit(instance)

        log_action(logger, "info", f"Resumed instance for {instance.live_key} after {paused_seconds:.0f}s",
                   user_id=actor.user_id, action="instance.resume", instance_id=instance.id,
                   organization_id=instance.organization_id)
        self.emit(create_instance_event(
            WorkflowEvent.INSTANCE_RESUMED, instance, actor.user_id, instance.updated_at,
            paused_seconds=paused_seconds
        ))
        return instance

    def save_system_update(self, instance: WorkflowInstance) -> WorkflowInstance:
        """Persist a change made by a background process (same CAS rules as users)"""
        return self._commit(instance)

    def emit(self, event: EventPayload) -> None:
        safe_publish(self.publisher, event, logger)

    # Internals

    def _resolve_start_template(self, entity_type: EntityType, organization_id: str,
                                template_id: Optional[str]) -> WorkflowTemplate:
        if template_id is None:
            return self.templates.resolve_default(organization_id, entity_type)
        template = self.templates.get_template(template_id, organization_id)
        if not template.is_active or template.entity_type != entity_type:
            raise NotFoundError(
                f"No active {entity_type.value} template {template_id}",
                {'template_id': template_id, 'entity_type': entity_type.value}
            )
        return template

    def _claim_live_key(self, instance: WorkflowInstance) -> None:
        """One ACTIVE/PAUSED instance per entity; a leftover claim from a finished instance is reclaimed"""
        key = instance.live_key
        for _ in range(2):
            if self.storage.claim_key(LIVE_INSTANCE_KEYS, key, instance.id):
                return
            owner = self.storage.key_owner(LIVE_INSTANCE_KEYS, key)
            if owner is None:
                continue
            existing = self.storage.load(INSTANCES_TABLE, owner)
            if existing is None or InstanceStatus(existing['status']).is_live:
                # A missing row is a start still in flight on another caller
                raise DuplicateInstanceError(
                    f"Entity {key} already has live instance {owner}",
                    {'entity_type': instance.entity_type.value, 'entity_id': instance.entity_id,
                     'instance_id': owner}
                )
            self.storage.release_key(LIVE_INSTANCE_KEYS, key, owner)
        raise DuplicateInstanceError(
            f"Entity {key} is being started concurrently",
            {'entity_type': instance.entity_type.value, 'entity_id': instance.entity_id}
        )

    def _require_not_terminal(self, instance: WorkflowInstance) -> None:
        if instance.status.is_terminal:
            raise AlreadyTerminalError(
                f"Instance {instance.id} is {instance.status.value}",
                {'instance_id': instance.id, 'status': instance.status.value}
            )

    @staticmethod
    def _close_pause(instance: WorkflowInstance, now) -> float:
        """Fold an open pause into the cumulative counter; returns the span in seconds"""
        if instance.paused_at is None:
            return 0.0
        span = max((now - instance.paused_at).total_seconds(), 0.0)
        instance.paused_duration_total += span
        instance.paused_at = None
        return span

    def _commit(self, instance: WorkflowInstance) -> WorkflowInstance:
        expected = instance.revision
        instance.revision = expected + 1
        instance.updated_at = self.clock.now()
        if not self.storage.compare_and_swap(INSTANCES_TABLE, instance.id, expected, instance.to_dict()):
            instance.revision = expected
            raise StaleInstanceError(
                f"Instance {instance.id} was modified concurrently",
                {'instance_id': instance.id, 'expected_revision': expected}
            )
        return instance
