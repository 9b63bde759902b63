"""
Workflow Data Model

Templates describe a stage graph for one entity type; instances are the
running state of a single governed entity pinned to one template version.
"""

from datetime import datetime
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum

from .storage import StorageRecord, parse_datetime, format_datetime


WILDCARD_STAGE = "*"

# Record tables and key namespaces
TEMPLATES_TABLE = "workflow_templates"
INSTANCES_TABLE = "workflow_instances"
RULES_TABLE = "assignment_rules"
TEMPLATE_VERSION_KEYS = "template_versions"
LIVE_INSTANCE_KEYS = "live_instances"
ROTATION_CURSORS = "rotation_cursors"


class EntityType(Enum):
    """Compliance records that can be governed by a workflow"""
    CASE = "CASE"
    INVESTIGATION = "INVESTIGATION"
    DISCLOSURE = "DISCLOSURE"
    POLICY = "POLICY"
    CAMPAIGN = "CAMPAIGN"


class InstanceStatus(Enum):
    """Lifecycle status of a workflow instance"""
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (InstanceStatus.COMPLETED, InstanceStatus.CANCELLED)

    @property
    def is_live(self) -> bool:
        return self in (InstanceStatus.ACTIVE, InstanceStatus.PAUSED)


class SlaStatus(Enum):
    """Deadline health, ordered by severity"""
    ON_TRACK = "ON_TRACK"
    WARNING = "WARNING"
    OVERDUE = "OVERDUE"
    CRITICAL = "CRITICAL"

    @property
    def severity(self) -> int:
        return _SLA_SEVERITY[self]

    @property
    def is_breach(self) -> bool:
        return self.severity >= _SLA_SEVERITY[SlaStatus.OVERDUE]


_SLA_SEVERITY = {
    SlaStatus.ON_TRACK: 0,
    SlaStatus.WARNING: 1,
    SlaStatus.OVERDUE: 2,
    SlaStatus.CRITICAL: 3,
}


@dataclass
class Actor:
    """Who is performing an operation"""
    user_id: str
    roles: List[str] = field(default_factory=list)

    @classmethod
    def system(cls) -> 'Actor':
        return cls(user_id="system", roles=["system"])


@dataclass
class Stage:
    """A named node in the template graph"""
    key: str
    label: str = ""
    is_terminal: bool = False
    sla_hours_override: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': self.key,
            'label': self.label,
            'is_terminal': self.is_terminal,
            'sla_hours_override': self.sla_hours_override
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Stage':
        override = data.get('sla_hours_override')
        return cls(
            key=data['key'],
            label=data.get('label') or data['key'],
            is_terminal=bool(data.get('is_terminal', False)),
            sla_hours_override=None if override is None else float(override)
        )


@dataclass
class Transition:
    """A directed edge; ``from_stage`` may be the wildcard ``*``"""
    from_stage: str
    to_stage: str
    label: Optional[str] = None
    allowed_roles: Optional[List[str]] = None
    condition_expr: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'from': self.from_stage,
            'to': self.to_stage,
            'label': self.label,
            'allowed_roles': self.allowed_roles,
            'condition_expr': self.condition_expr
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transition':
        return cls(
            from_stage=data.get('from', data.get('from_stage')),
            to_stage=data.get('to', data.get('to_stage')),
            label=data.get('label'),
            allowed_roles=data.get('allowed_roles') or None,
            condition_expr=data.get('condition_expr') or None
        )


@dataclass
class SlaConfig:
    """Thresholds for SLA status computation"""
    warning_threshold_pct: float = 0.8
    critical_threshold_hours: float = 24.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'warning_threshold_pct': self.warning_threshold_pct,
            'critical_threshold_hours': self.critical_threshold_hours
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'SlaConfig':
        data = data or {}
        return cls(
            warning_threshold_pct=float(data.get('warning_threshold_pct', 0.8)),
            critical_threshold_hours=float(data.get('critical_threshold_hours', 24.0))
        )


@dataclass
class TemplateDefinition:
    """Author-supplied template content, before versioning"""
    organization_id: str
    name: str
    entity_type: EntityType
    stages: List[Stage]
    transitions: List[Transition]
    initial_stage: str
    default_sla_hours: float
    description: str = ""
    sla_config: SlaConfig = field(default_factory=SlaConfig)
    tags: List[str] = field(default_factory=list)
    created_by: str = "system"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TemplateDefinition':
        entity_type = data['entity_type']
        return cls(
            organization_id=data['organization_id'],
            name=data['name'],
            entity_type=entity_type if isinstance(entity_type, EntityType) else EntityType(entity_type),
            stages=[s if isinstance(s, Stage) else Stage.from_dict(s) for s in data.get('stages', [])],
            transitions=[t if isinstance(t, Transition) else Transition.from_dict(t)
                         for t in data.get('transitions', [])],
            initial_stage=data['initial_stage'],
            default_sla_hours=float(data['default_sla_hours']),
            description=data.get('description', ""),
            sla_config=data['sla_config'] if isinstance(data.get('sla_config'), SlaConfig)
            else SlaConfig.from_dict(data.get('sla_config')),
            tags=list(data.get('tags', [])),
            created_by=data.get('created_by', "system")
        )


@dataclass
class WorkflowTemplate(StorageRecord):
    """One persisted version of a template"""
    organization_id: str
    name: str
    entity_type: EntityType
    stages: List[Stage]
    transitions: List[Transition]
    initial_stage: str
    default_sla_hours: float
    version: int = 1
    description: str = ""
    is_active: bool = False
    is_default: bool = False
    sla_config: SlaConfig = field(default_factory=SlaConfig)
    tags: List[str] = field(default_factory=list)
    source_template_id: Optional[str] = None
    published_at: Optional[datetime] = None
    created_by: str = "system"
    revision: int = 0

    @property
    def version_key(self) -> str:
        return f"{self.organization_id}:{self.name}:{self.version}"

    def get_stage(self, key: str) -> Optional[Stage]:
        for stage in self.stages:
            if stage.key == key:
                return stage
        return None

    def stage_sla_hours(self, key: str) -> float:
        """SLA for a stage: the stage override wins over the template default"""
        stage = self.get_stage(key)
        if stage and stage.sla_hours_override is not None:
            return stage.sla_hours_override
        return self.default_sla_hours

    def outgoing(self, from_stage: str) -> List[Transition]:
        """Edges usable from a stage, explicit edges first, wildcard edges after"""
        stage = self.get_stage(from_stage)
        if stage is None or stage.is_terminal:
            return []
        explicit = [t for t in self.transitions if t.from_stage == from_stage]
        wildcard = [t for t in self.transitions
                    if t.from_stage == WILDCARD_STAGE and t.to_stage != from_stage]
        return explicit + wildcard

    def definition(self) -> TemplateDefinition:
        return TemplateDefinition(
            organization_id=self.organization_id,
            name=self.name,
            entity_type=self.entity_type,
            stages=list(self.stages),
            transitions=list(self.transitions),
            initial_stage=self.initial_stage,
            default_sla_hours=self.default_sla_hours,
            description=self.description,
            sla_config=self.sla_config,
            tags=list(self.tags),
            created_by=self.created_by
        )

    def apply_definition(self, definition: TemplateDefinition) -> None:
        """Replace graph content; identity (org, name) is kept"""
        self.entity_type = definition.entity_type
        self.stages = list(definition.stages)
        self.transitions = list(definition.transitions)
        self.initial_stage = definition.initial_stage
        self.default_sla_hours = definition.default_sla_hours
        self.description = definition.description
        self.sla_config = definition.sla_config
        self.tags = list(definition.tags)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'organization_id': self.organization_id,
            'name': self.name,
            'entity_type': self.entity_type.value,
            'stages': [s.to_dict() for s in self.stages],
            'transitions': [t.to_dict() for t in self.transitions],
            'initial_stage': self.initial_stage,
            'default_sla_hours': self.default_sla_hours,
            'version': self.version,
            'description': self.description,
            'is_active': self.is_active,
            'is_default': self.is_default,
            'sla_config': self.sla_config.to_dict(),
            'tags': self.tags,
            'source_template_id': self.source_template_id,
            'published_at': format_datetime(self.published_at),
            'created_by': self.created_by,
            'revision': self.revision,
            'created_at': format_datetime(self.created_at),
            'updated_at': format_datetime(self.updated_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowTemplate':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            organization_id=data['organization_id'],
            name=data['name'],
            entity_type=EntityType(data['entity_type']),
            stages=[Stage.from_dict(s) for s in data['stages']],
            transitions=[Transition.from_dict(t) for t in data['transitions']],
            initial_stage=data['initial_stage'],
            default_sla_hours=data['default_sla_hours'],
            version=data['version'],
            description=data.get('description', ""),
            is_active=data.get('is_active', False),
            is_default=data.get('is_default', False),
            sla_config=SlaConfig.from_dict(data.get('sla_config')),
            tags=data.get('tags', []),
            source_template_id=data.get('source_template_id'),
            published_at=parse_datetime(data.get('published_at')),
            created_by=data.get('created_by', "system"),
            revision=data.get('revision', 0)
        )


@dataclass
class StepState:
    """Entry/exit record of one stage visit"""
    entered_at: datetime
    exited_at: Optional[datetime] = None
    actor_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entered_at': format_datetime(self.entered_at),
            'exited_at': format_datetime(self.exited_at),
            'actor_id': self.actor_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StepState':
        return cls(
            entered_at=parse_datetime(data['entered_at']),
            exited_at=parse_datetime(data.get('exited_at')),
            actor_id=data.get('actor_id')
        )


@dataclass
class WorkflowInstance(StorageRecord):
    """Running state of one entity inside one pinned template version"""
    organization_id: str
    template_id: str
    template_version: int
    entity_type: EntityType
    entity_id: str
    current_stage: str
    due_date: datetime
    status: InstanceStatus = InstanceStatus.ACTIVE
    previous_stage: Optional[str] = None
    step_states: Dict[str, StepState] = field(default_factory=dict)
    sla_status: SlaStatus = SlaStatus.ON_TRACK
    sla_breached_at: Optional[datetime] = None
    paused_duration_total: float = 0.0  # seconds
    paused_at: Optional[datetime] = None
    stage_paused_offset: float = 0.0  # paused total when the current stage was entered
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    outcome: Optional[str] = None
    owner_id: Optional[str] = None
    started_by: Optional[str] = None
    revision: int = 0

    @property
    def live_key(self) -> str:
        return f"{self.entity_type.value}:{self.entity_id}"

    @property
    def stage_entered_at(self) -> datetime:
        state = self.step_states.get(self.current_stage)
        return state.entered_at if state else self.created_at

    @property
    def stage_paused_seconds(self) -> float:
        """Paused time accrued since the current stage was entered"""
        return self.paused_duration_total - self.stage_paused_offset

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'organization_id': self.organization_id,
            'template_id': self.template_id,
            'template_version': self.template_version,
            'entity_type': self.entity_type.value,
            'entity_id': self.entity_id,
            'current_stage': self.current_stage,
            'due_date': format_datetime(self.due_date),
            'status': self.status.value,
            'previous_stage': self.previous_stage,
            'step_states': {k: v.to_dict() for k, v in self.step_states.items()},
            'sla_status': self.sla_status.value,
            'sla_breached_at': format_datetime(self.sla_breached_at),
            'paused_duration_total': self.paused_duration_total,
            'paused_at': format_datetime(self.paused_at),
            'stage_paused_offset': self.stage_paused_offset,
            'completed_at': format_datetime(self.completed_at),
            'cancelled_at': format_datetime(self.cancelled_at),
            'cancel_reason': self.cancel_reason,
            'outcome': self.outcome,
            'owner_id': self.owner_id,
            'started_by': self.started_by,
            'revision': self.revision,
            'created_at': format_datetime(self.created_at),
            'updated_at': format_datetime(self.updated_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowInstance':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            organization_id=data['organization_id'],
            template_id=data['template_id'],
            template_version=data['template_version'],
            entity_type=EntityType(data['entity_type']),
            entity_id=data['entity_id'],
            current_stage=data['current_stage'],
            due_date=parse_datetime(data['due_date']),
            status=InstanceStatus(data['status']),
            previous_stage=data.get('previous_stage'),
            step_states={k: StepState.from_dict(v) for k, v in data.get('step_states', {}).items()},
            sla_status=SlaStatus(data.get('sla_status', SlaStatus.ON_TRACK.value)),
            sla_breached_at=parse_datetime(data.get('sla_breached_at')),
            paused_duration_total=data.get('paused_duration_total', 0.0),
            paused_at=parse_datetime(data.get('paused_at')),
            stage_paused_offset=data.get('stage_paused_offset', 0.0),
            completed_at=parse_datetime(data.get('completed_at')),
            cancelled_at=parse_datetime(data.get('cancelled_at')),
            cancel_reason=data.get('cancel_reason'),
            outcome=data.get('outcome'),
            owner_id=data.get('owner_id'),
            started_by=data.get('started_by'),
            revision=data.get('revision', 0)
        )
