"""
Template Store Module

Persists and versions workflow templates. Versions are allocated per
(organization, name) through a unique key claim, so two writers racing for
the same version number cannot both win. Re-publishing a changed definition
while instances are pinned to the live version creates a new version row;
the pinned version is never modified.
"""

import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Union

from .errors import NotFoundError, VersionConflictError, TemplateInUseError, InvalidGraphError
from .events import EventPublisher, WorkflowEvent, create_template_event, safe_publish
from .models import (
    EntityType, InstanceStatus, TemplateDefinition, WorkflowTemplate,
    TEMPLATES_TABLE, INSTANCES_TABLE, TEMPLATE_VERSION_KEYS,
)
from .storage import StorageInterface
from .tenancy import can_access
from .validator import validate_graph


logger = logging.getLogger("cwf.templates")

DefinitionLike = Union[TemplateDefinition, Dict[str, Any]]


def coerce_definition(definition: DefinitionLike) -> TemplateDefinition:
    if isinstance(definition, TemplateDefinition):
        return definition
    try:
        return TemplateDefinition.from_dict(definition)
    except (KeyError, ValueError, TypeError) as e:
        raise InvalidGraphError(f"Malformed template definition: {e}", {'errors': [str(e)]}) from e


class TemplateStore:
    """Versioned template persistence"""

    def __init__(self, storage: StorageInterface, clock, publisher: Optional[EventPublisher] = None,
                 max_retries: int = 5):
        self.storage = storage
        self.clock = clock
        self.publisher = publisher
        self.max_retries = max_retries

    # Reads

    def get_template(self, template_id: str, organization_id: Optional[str] = None) -> WorkflowTemplate:
        data = self.storage.load(TEMPLATES_TABLE, template_id)
        if not data or not can_access(data['organization_id'], organization_id):
            raise NotFoundError(f"Template {template_id} not found", {'template_id': template_id})
        return WorkflowTemplate.from_dict(data)

    def resolve_for_instance(self, template_id: str, version: int) -> WorkflowTemplate:
        """Exact pinned version; does not care whether it is still active"""
        data = self.storage.load(TEMPLATES_TABLE, template_id)
        if not data or data['version'] != version:
            raise NotFoundError(
                f"Template {template_id} version {version} not found",
                {'template_id': template_id, 'version': version}
            )
        return WorkflowTemplate.from_dict(data)

    def resolve_default(self, organization_id: str, entity_type: EntityType) -> WorkflowTemplate:
        """Latest active default version for an organization and entity type"""
        candidates = self.storage.find(TEMPLATES_TABLE, {
            'organization_id': organization_id,
            'entity_type': entity_type.value,
            'is_active': True,
            'is_default': True
        })
        if not candidates:
            raise NotFoundError(
                f"No default {entity_type.value} template for organization {organization_id}",
                {'organization_id': organization_id, 'entity_type': entity_type.value}
            )
        return WorkflowTemplate.from_dict(max(candidates, key=lambda d: d['version']))

    def list_templates(self, organization_id: str, entity_type: Optional[EntityType] = None,
                       is_active: Optional[bool] = None) -> List[WorkflowTemplate]:
        filters: Dict[str, Any] = {'organization_id': organization_id}
        if entity_type is not None:
            filters['entity_type'] = entity_type.value
        if is_active is not None:
            filters['is_active'] = is_active
        templates = [WorkflowTemplate.from_dict(d) for d in self.storage.find(TEMPLATES_TABLE, filters)]
        return sorted(templates, key=lambda t: (t.name, t.version))

    def list_versions(self, organization_id: str, name: str) -> List[WorkflowTemplate]:
        rows = self.storage.find(TEMPLATES_TABLE, {'organization_id': organization_id, 'name': name})
        return sorted((WorkflowTemplate.from_dict(d) for d in rows), key=lambda t: t.version)

    # Writes

    def create_draft(self, definition: DefinitionLike) -> WorkflowTemplate:
        """Validate and persist an inactive template at the next free version"""
        definition = coerce_definition(definition)
        validate_graph(definition)

        now = self.clock.now()
        template = WorkflowTemplate(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            organization_id=definition.organization_id,
            name=definition.name,
            entity_type=definition.entity_type,
            stages=list(definition.stages),
            transitions=list(definition.transitions),
            initial_stage=definition.initial_stage,
            default_sla_hours=definition.default_sla_hours,
            description=definition.description,
            sla_config=definition.sla_config,
            tags=list(definition.tags),
            created_by=definition.created_by
        )
        template.version = self._allocate_version(template)
        self.storage.insert(TEMPLATES_TABLE, template.id, template.to_dict())

        logger.info(f"Created draft template {template.name} v{template.version} ({template.id})")
        return template

    def publish(self, template_id: str, definition: Optional[DefinitionLike] = None,
                make_default: bool = False, actor_id: Optional[str] = None) -> WorkflowTemplate:
        """
        Activate a template, optionally with an edited definition.

        An edit to a version that still has ACTIVE/PAUSED instances pinned to
        it, retired or not, is published as a new version derived from it.
        """
        if definition is not None:
            definition = coerce_definition(definition)
            validate_graph(definition)

        for _ in range(self.max_retries):
            template = self.get_template(template_id)
            if definition is not None:
                self._check_identity(template, definition)
                if self._has_live_instances(template):
                    return self._publish_new_version(template, definition, make_default, actor_id)
                template.apply_definition(definition)
            else:
                validate_graph(template)

            expected = template.revision
            inherits_default = self._inherits_default(template)
            template.is_active = True
            template.is_default = make_default or inherits_default
            template.published_at = self.clock.now()
            template.updated_at = template.published_at
            template.revision = expected + 1
            if self.storage.compare_and_swap(TEMPLATES_TABLE, template.id, expected, template.to_dict()):
                break
        else:
            raise VersionConflictError(
                f"Template {template_id} changed concurrently; gave up after {self.max_retries} attempts",
                {'template_id': template_id}
            )

        self._retire_siblings(template)
        logger.info(f"Published template {template.name} v{template.version} ({template.id})")
        safe_publish(self.publisher, create_template_event(
            WorkflowEvent.TEMPLATE_PUBLISHED, template, actor_id=actor_id,
            timestamp=template.published_at
        ), logger)
        return template

    def delete_draft(self, template_id: str, organization_id: Optional[str] = None) -> None:
        """Remove an inactive template nobody has run; its version number is not reused"""
        template = self.get_template(template_id, organization_id)
        if template.is_active:
            raise TemplateInUseError(f"Template {template_id} is published", {'template_id': template_id})
        if self.storage.find(INSTANCES_TABLE, {'template_id': template_id}):
            raise TemplateInUseError(f"Template {template_id} has instances", {'template_id': template_id})
        self.storage.delete(TEMPLATES_TABLE, template_id)
        logger.info(f"Deleted draft template {template.name} v{template.version} ({template_id})")

    # Internals

    def _allocate_version(self, template: WorkflowTemplate) -> int:
        """Claim (org, name, version) starting at max+1; the loser of a race moves up one"""
        existing = self.list_versions(template.organization_id, template.name)
        version = (existing[-1].version + 1) if existing else 1
        for _ in range(self.max_retries):
            key = f"{template.organization_id}:{template.name}:{version}"
            if self.storage.claim_key(TEMPLATE_VERSION_KEYS, key, template.id):
                return version
            version += 1
        raise VersionConflictError(
            f"Could not allocate a version for {template.name} after {self.max_retries} attempts",
            {'organization_id': template.organization_id, 'name': template.name}
        )

    def _check_identity(self, template: WorkflowTemplate, definition: TemplateDefinition) -> None:
        if definition.organization_id != template.organization_id or definition.name != template.name:
            raise InvalidGraphError(
                "A published definition must keep the template's organization and name",
                {'errors': ['organization_id/name mismatch']}
            )

    def _has_live_instances(self, template: WorkflowTemplate) -> bool:
        for data in self.storage.find(INSTANCES_TABLE, {'template_id': template.id}):
            if data['template_version'] == template.version and InstanceStatus(data['status']).is_live:
                return True
        return False

    def _inherits_default(self, template: WorkflowTemplate) -> bool:
        return template.is_default or self._active_default_sibling(template) is not None

    def _active_default_sibling(self, template: WorkflowTemplate) -> Optional[WorkflowTemplate]:
        for sibling in self.list_versions(template.organization_id, template.name):
            if sibling.id != template.id and sibling.is_active and sibling.is_default \
                    and sibling.entity_type == template.entity_type:
                return sibling
        return None

    def _publish_new_version(self, source: WorkflowTemplate, definition: TemplateDefinition,
                             make_default: bool, actor_id: Optional[str]) -> WorkflowTemplate:
        now = self.clock.now()
        template = WorkflowTemplate(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            organization_id=source.organization_id,
            name=source.name,
            entity_type=definition.entity_type,
            stages=[],
            transitions=[],
            initial_stage=definition.initial_stage,
            default_sla_hours=definition.default_sla_hours,
            is_active=True,
            is_default=make_default or self._inherits_default(source),
            source_template_id=source.id,
            published_at=now,
            created_by=actor_id or definition.created_by
        )
        template.apply_definition(definition)
        template.version = self._allocate_version(template)
        self.storage.insert(TEMPLATES_TABLE, template.id, template.to_dict())

        self._retire_siblings(template)
        logger.info(
            f"Template {template.name} has live instances on v{source.version}; "
            f"published edit as v{template.version} ({template.id})"
        )
        safe_publish(self.publisher, create_template_event(
            WorkflowEvent.TEMPLATE_VERSION_CREATED, template, actor_id=actor_id,
            timestamp=template.published_at,
            source_version=source.version
        ), logger)
        safe_publish(self.publisher, create_template_event(
            WorkflowEvent.TEMPLATE_PUBLISHED, template, actor_id=actor_id,
            timestamp=template.published_at
        ), logger)
        return template

    def _retire_siblings(self, template: WorkflowTemplate) -> None:
        """Deactivate other versions of the name and clear competing defaults"""
        for sibling in self.list_versions(template.organization_id, template.name):
            if sibling.id != template.id and (sibling.is_active or sibling.is_default):
                self._update_flags(sibling.id, lambda t: self._set_flags(t, active=False, default=False))

        if template.is_default:
            for other in self.list_templates(template.organization_id, template.entity_type):
                if other.id != template.id and other.is_default:
                    self._update_flags(other.id, lambda t: self._set_flags(t, default=False))

    @staticmethod
    def _set_flags(template: WorkflowTemplate, active: Optional[bool] = None,
                   default: Optional[bool] = None) -> bool:
        changed = False
        if active is not None and template.is_active != active:
            template.is_active = active
            changed = True
        if default is not None and template.is_default != default:
            template.is_default = default
            changed = True
        return changed

    def _update_flags(self, template_id: str, mutate: Callable[[WorkflowTemplate], bool]) -> None:
        """Revision compare-and-swap on flag columns only; the definition is untouched"""
        for _ in range(self.max_retries):
            data = self.storage.load(TEMPLATES_TABLE, template_id)
            if data is None:
                return
            template = WorkflowTemplate.from_dict(data)
            if not mutate(template):
                return
            expected = template.revision
            template.revision = expected + 1
            template.updated_at = self.clock.now()
            if self.storage.compare_and_swap(TEMPLATES_TABLE, template_id, expected, template.to_dict()):
                return
        raise VersionConflictError(
            f"Template {template_id} changed concurrently; gave up after {self.max_retries} attempts",
            {'template_id': template_id}
        )
