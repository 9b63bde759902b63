"""
Tests for template drafting, publishing and version-on-publish
"""

import pytest

from compliance_workflows.errors import (
    InvalidGraphError, NotFoundError, TemplateInUseError, VersionConflictError
)
from compliance_workflows.models import EntityType, TEMPLATE_VERSION_KEYS
from compliance_workflows.storage import InMemoryStorage
from compliance_workflows.templates import TemplateStore
from compliance_workflows.tenancy import organization_context

from conftest import ORG, review_definition


@pytest.fixture
def store(storage, clock, recorder):
    return TemplateStore(storage, clock, recorder, max_retries=3)


def edited_definition():
    """Review pipeline with an extra approval stage"""
    definition = review_definition()
    definition['stages'].insert(2, {'key': 'APPROVAL', 'label': 'Approval'})
    definition['transitions'].append({'from': 'REVIEW', 'to': 'APPROVAL'})
    definition['transitions'].append({'from': 'APPROVAL', 'to': 'CLOSED'})
    return definition


class TestCreateDraft:
    """Drafting templates"""

    def test_first_draft_is_version_one_and_inactive(self, store):
        draft = store.create_draft(review_definition())
        assert draft.version == 1
        assert not draft.is_active
        assert not draft.is_default
        assert draft.entity_type == EntityType.CASE
        assert store.get_template(draft.id).stage_sla_hours('REVIEW') == 24

    def test_drafts_for_same_name_take_next_version(self, store):
        v1 = store.create_draft(review_definition())
        v2 = store.create_draft(review_definition())
        assert (v1.version, v2.version) == (1, 2)

    def test_versions_are_per_organization_and_name(self, store):
        store.create_draft(review_definition())
        assert store.create_draft(review_definition(organization_id="org-other")).version == 1
        assert store.create_draft(review_definition(name="Disclosure Intake")).version == 1

    def test_invalid_graph_is_rejected(self, store, storage):
        with pytest.raises(InvalidGraphError):
            store.create_draft(review_definition(initial_stage='NOPE'))
        assert storage.count("workflow_templates") == 0

    def test_malformed_definition(self, store):
        definition = review_definition()
        del definition['initial_stage']
        with pytest.raises(InvalidGraphError, match="Malformed"):
            store.create_draft(definition)

    def test_numeric_strings_are_accepted_as_hours(self, store):
        definition = review_definition(default_sla_hours="48")
        definition['stages'][1]['sla_hours_override'] = "24"
        draft = store.create_draft(definition)
        assert draft.default_sla_hours == 48.0
        assert draft.stage_sla_hours('REVIEW') == 24.0

    @pytest.mark.parametrize("field,value", [
        ('default_sla_hours', "abc"),
        ('default_sla_hours', None),
        ('sla_hours_override', "soon"),
        ('sla_hours_override', [24]),
    ])
    def test_non_numeric_hours_are_malformed(self, store, storage, field, value):
        definition = review_definition()
        if field == 'default_sla_hours':
            definition[field] = value
        else:
            definition['stages'][1][field] = value
        with pytest.raises(InvalidGraphError, match="Malformed"):
            store.create_draft(definition)
        assert storage.count("workflow_templates") == 0

    def test_version_race_loser_moves_up(self, store, storage):
        """Test that a version taken by a concurrent writer is skipped"""
        storage.claim_key(TEMPLATE_VERSION_KEYS, f"{ORG}:Case Review:1", "someone-else")
        assert store.create_draft(review_definition()).version == 2

    def test_version_conflict_after_retries(self, store, storage):
        for version in range(1, 4):
            storage.claim_key(TEMPLATE_VERSION_KEYS, f"{ORG}:Case Review:{version}", "someone-else")
        with pytest.raises(VersionConflictError) as exc_info:
            store.create_draft(review_definition())
        assert exc_info.value.retryable


class TestPublish:
    """Activation and default handling"""

    def test_publish_activates(self, store, recorder, clock):
        draft = store.create_draft(review_definition())
        published = store.publish(draft.id, make_default=True)

        assert published.is_active and published.is_default
        assert published.published_at == clock.now()
        assert published.revision == draft.revision + 1
        assert recorder.types() == ["template.published"]

    def test_resolve_default(self, store):
        draft = store.create_draft(review_definition())
        store.publish(draft.id, make_default=True)
        assert store.resolve_default(ORG, EntityType.CASE).id == draft.id

    def test_resolve_default_missing(self, store):
        store.create_draft(review_definition())
        with pytest.raises(NotFoundError):
            store.resolve_default(ORG, EntityType.CASE)

    def test_publishing_new_version_retires_old_and_keeps_default(self, store):
        v1 = store.publish(store.create_draft(review_definition()).id, make_default=True)
        v2 = store.publish(store.create_draft(review_definition()).id)

        old = store.get_template(v1.id)
        assert not old.is_active and not old.is_default
        assert v2.is_active and v2.is_default
        assert store.resolve_default(ORG, EntityType.CASE).id == v2.id

    def test_one_default_per_entity_type(self, store):
        first = store.publish(store.create_draft(review_definition()).id, make_default=True)
        second = store.publish(store.create_draft(review_definition(name="Escalated Review")).id,
                               make_default=True)

        assert not store.get_template(first.id).is_default
        assert store.get_template(first.id).is_active
        assert store.resolve_default(ORG, EntityType.CASE).id == second.id

    def test_default_of_other_entity_type_untouched(self, store):
        case = store.publish(store.create_draft(review_definition()).id, make_default=True)
        store.publish(store.create_draft(review_definition(name="Policy Review", entity_type="POLICY")).id,
                      make_default=True)
        assert store.get_template(case.id).is_default

    def test_edit_without_live_instances_replaces_in_place(self, store):
        v1 = store.publish(store.create_draft(review_definition()).id, make_default=True)
        updated = store.publish(v1.id, edited_definition())

        assert updated.id == v1.id
        assert updated.version == 1
        assert updated.get_stage('APPROVAL') is not None
        assert len(store.list_versions(ORG, "Case Review")) == 1

    def test_edit_must_keep_identity(self, store):
        v1 = store.publish(store.create_draft(review_definition()).id)
        with pytest.raises(InvalidGraphError):
            store.publish(v1.id, review_definition(name="Renamed"))

    def test_invalid_edit_is_rejected(self, store):
        v1 = store.publish(store.create_draft(review_definition()).id)
        with pytest.raises(InvalidGraphError):
            store.publish(v1.id, review_definition(initial_stage='NOPE'))
        assert store.get_template(v1.id).initial_stage == 'INTAKE'


class TestVersionOnPublish:
    """Editing a template that has running instances"""

    def test_edit_with_live_instance_creates_new_version(self, engine, recorder):
        v1 = engine.publish_template(engine.create_template(review_definition()).id, make_default=True)
        instance = engine.start_instance("CASE", "case-1", ORG)

        v2 = engine.publish_template(v1.id, edited_definition())

        assert v2.id != v1.id
        assert v2.version == 2
        assert v2.source_template_id == v1.id
        assert v2.is_active and v2.is_default

        old = engine.templates.resolve_for_instance(v1.id, 1)
        assert old.get_stage('APPROVAL') is None
        assert not old.is_active
        assert [s.key for s in old.stages] == ['INTAKE', 'REVIEW', 'CLOSED']

        pinned = engine.get_instance(instance.id)
        assert pinned.template_version == 1
        assert pinned.template_id == v1.id
        assert old.get_stage(pinned.current_stage) is not None

        assert "template.version_created" in recorder.types()

    def test_pinned_instance_keeps_old_graph(self, engine):
        v1 = engine.publish_template(engine.create_template(review_definition()).id, make_default=True)
        old_instance = engine.start_instance("CASE", "case-1", ORG)
        engine.publish_template(v1.id, edited_definition())
        new_instance = engine.start_instance("CASE", "case-2", ORG)

        engine.transition_instance(old_instance.id, 'REVIEW')
        engine.transition_instance(new_instance.id, 'REVIEW')

        old_moves = {t['to'] for t in engine.allowed_transitions(old_instance.id)}
        new_moves = {t['to'] for t in engine.allowed_transitions(new_instance.id)}
        assert 'APPROVAL' not in old_moves
        assert 'APPROVAL' in new_moves
        assert engine.get_instance(new_instance.id).template_version == 2

    def test_edit_to_retired_version_with_live_instance_creates_new_version(self, engine):
        v1 = engine.publish_template(engine.create_template(review_definition()).id, make_default=True)
        instance = engine.start_instance("CASE", "case-1", ORG)
        engine.publish_template(v1.id, edited_definition())
        assert not engine.templates.get_template(v1.id).is_active

        v3 = engine.publish_template(v1.id, review_definition(
            stages=[{'key': 'TRIAGE'}, {'key': 'DONE', 'is_terminal': True}],
            transitions=[{'from': 'TRIAGE', 'to': 'DONE'}],
            initial_stage='TRIAGE',
        ))

        assert v3.id != v1.id
        assert v3.version == 3
        assert v3.source_template_id == v1.id
        assert v3.is_active and v3.is_default
        assert engine.templates.resolve_default(ORG, EntityType.CASE).id == v3.id

        old = engine.templates.resolve_for_instance(v1.id, 1)
        assert [s.key for s in old.stages] == ['INTAKE', 'REVIEW', 'CLOSED']
        pinned = engine.get_instance(instance.id)
        assert old.get_stage(pinned.current_stage) is not None
        assert engine.transition_instance(instance.id, 'REVIEW').current_stage == 'REVIEW'

    def test_finished_instances_do_not_force_a_new_version(self, engine):
        v1 = engine.publish_template(engine.create_template(review_definition()).id, make_default=True)
        instance = engine.start_instance("CASE", "case-1", ORG)
        engine.cancel_instance(instance.id, "duplicate")

        updated = engine.publish_template(v1.id, edited_definition())
        assert updated.id == v1.id

    def test_resolve_for_instance_checks_version(self, store):
        draft = store.create_draft(review_definition())
        with pytest.raises(NotFoundError):
            store.resolve_for_instance(draft.id, 2)


class TestListingAndDeletion:
    """Reads and draft deletion"""

    def test_list_templates_filters(self, store):
        a = store.publish(store.create_draft(review_definition()).id)
        store.create_draft(review_definition(name="Policy Review", entity_type="POLICY"))

        assert [t.id for t in store.list_templates(ORG, EntityType.CASE)] == [a.id]
        assert len(store.list_templates(ORG, is_active=False)) == 1
        assert store.list_templates("org-empty") == []

    def test_get_template_is_tenant_scoped(self, store):
        draft = store.create_draft(review_definition())
        with pytest.raises(NotFoundError):
            store.get_template(draft.id, "org-other")
        with organization_context("org-other"):
            with pytest.raises(NotFoundError):
                store.get_template(draft.id)
        with organization_context(ORG):
            assert store.get_template(draft.id).id == draft.id

    def test_delete_draft(self, store):
        draft = store.create_draft(review_definition())
        store.delete_draft(draft.id)
        with pytest.raises(NotFoundError):
            store.get_template(draft.id)

    def test_deleted_version_number_is_not_reused(self, store):
        draft = store.create_draft(review_definition())
        store.delete_draft(draft.id)
        assert store.create_draft(review_definition()).version == 2

    def test_cannot_delete_published(self, store):
        published = store.publish(store.create_draft(review_definition()).id)
        with pytest.raises(TemplateInUseError):
            store.delete_draft(published.id)


class TestConcurrentFlagUpdates:
    """Template rows are updated through revision compare-and-swap"""

    def test_publish_gives_up_when_row_keeps_moving(self, clock, recorder):
        class MovingStorage(InMemoryStorage):
            def compare_and_swap(self, table, record_id, expected_revision, data):
                if table == "workflow_templates":
                    return False
                return super().compare_and_swap(table, record_id, expected_revision, data)

        store = TemplateStore(MovingStorage(), clock, recorder, max_retries=2)
        draft = store.create_draft(review_definition())
        with pytest.raises(VersionConflictError):
            store.publish(draft.id)
        assert recorder.events == []
