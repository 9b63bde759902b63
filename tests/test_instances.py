"""
Tests for the instance state machine
"""

import pytest
import threading
from datetime import timedelta

from compliance_workflows.errors import (
    AlreadyTerminalError, ConditionNotMetError, DuplicateInstanceError, ForbiddenError,
    IllegalTransitionError, NotFoundError, StaleInstanceError
)
from compliance_workflows.models import Actor, EntityType, InstanceStatus, SlaStatus
from compliance_workflows.storage import InMemoryStorage
from compliance_workflows.tenancy import organization_context

from conftest import ORG, T0, review_definition


INVESTIGATOR = Actor("inv-1", ["investigator"])
ANALYST = Actor("ana-1", ["analyst"])


class TestStart:
    """Creating instances"""

    def test_start_on_default_template(self, engine, published, recorder):
        instance = engine.start_instance("CASE", "case-1", ORG, actor=ANALYST)

        assert instance.status == InstanceStatus.ACTIVE
        assert instance.template_id == published.id
        assert instance.template_version == 1
        assert instance.current_stage == 'INTAKE'
        assert instance.previous_stage is None
        assert instance.due_date == T0 + timedelta(hours=48)
        assert instance.sla_status == SlaStatus.ON_TRACK
        assert instance.step_states['INTAKE'].entered_at == T0
        assert instance.step_states['INTAKE'].actor_id == "ana-1"
        assert instance.started_by == "ana-1"
        assert instance.revision == 0
        assert recorder.types()[-1] == "instance.started"

    def test_start_requires_a_default_template(self, engine):
        with pytest.raises(NotFoundError):
            engine.start_instance("CASE", "case-1", ORG)

    def test_start_on_explicit_template(self, engine):
        other = engine.publish_template(engine.create_template(review_definition(name="Fast Track")).id)
        instance = engine.start_instance(EntityType.CASE, "case-1", ORG, template_id=other.id)
        assert instance.template_id == other.id

    def test_explicit_template_must_be_active(self, engine):
        draft = engine.create_template(review_definition())
        with pytest.raises(NotFoundError):
            engine.start_instance("CASE", "case-1", ORG, template_id=draft.id)

    def test_explicit_template_must_match_entity_type(self, engine, published):
        with pytest.raises(NotFoundError):
            engine.start_instance("POLICY", "pol-1", ORG, template_id=published.id)

    def test_duplicate_live_instance(self, engine, published):
        first = engine.start_instance("CASE", "case-1", ORG)
        with pytest.raises(DuplicateInstanceError) as exc_info:
            engine.start_instance("CASE", "case-1", ORG)
        assert exc_info.value.details['instance_id'] == first.id

    def test_paused_instance_still_blocks(self, engine, published):
        first = engine.start_instance("CASE", "case-1", ORG)
        engine.pause_instance(first.id)
        with pytest.raises(DuplicateInstanceError):
            engine.start_instance("CASE", "case-1", ORG)

    def test_restart_after_cancel(self, engine, published):
        first = engine.start_instance("CASE", "case-1", ORG)
        engine.cancel_instance(first.id, "opened in error")
        second = engine.start_instance("CASE", "case-1", ORG)
        assert second.id != first.id

    def test_restart_after_completion(self, engine, published):
        first = engine.start_instance("CASE", "case-1", ORG)
        engine.transition_instance(first.id, 'REVIEW')
        engine.transition_instance(first.id, 'CLOSED', INVESTIGATOR, {'findings': 'ok'})
        assert engine.start_instance("CASE", "case-1", ORG).id != first.id

    def test_same_entity_id_other_type(self, engine, published):
        engine.publish_template(
            engine.create_template(review_definition(name="Policy Review", entity_type="POLICY")).id,
            make_default=True)
        engine.start_instance("CASE", "x-1", ORG)
        assert engine.start_instance("POLICY", "x-1", ORG).entity_type == EntityType.POLICY

    def test_concurrent_starts_create_one_instance(self, engine, published):
        results, errors = [], []
        barrier = threading.Barrier(5)

        def start():
            barrier.wait()
            try:
                results.append(engine.start_instance("CASE", "case-race", ORG))
            except DuplicateInstanceError as e:
                errors.append(e)

        threads = [threading.Thread(target=start) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 1
        assert len(errors) == 4

    def test_start_seeds_owner_from_router(self, engine, published):
        engine.router.set_default_pool(ORG, EntityType.CASE, ["alice"])
        assert engine.start_instance("CASE", "case-1", ORG).owner_id == "alice"

    def test_start_without_assignment(self, engine, published):
        engine.router.set_default_pool(ORG, EntityType.CASE, ["alice"])
        assert engine.start_instance("CASE", "case-1", ORG, assign=False).owner_id is None


class TestTransition:
    """Moving instances along edges"""

    def test_transition_updates_stage_and_history(self, engine, published, clock, recorder):
        instance = engine.start_instance("CASE", "case-1", ORG)
        clock.advance(hours=5)
        moved = engine.transition_instance(instance.id, 'REVIEW', ANALYST)

        assert moved.current_stage == 'REVIEW'
        assert moved.previous_stage == 'INTAKE'
        assert moved.step_states['INTAKE'].exited_at == T0 + timedelta(hours=5)
        assert moved.step_states['REVIEW'].entered_at == T0 + timedelta(hours=5)
        assert moved.step_states['REVIEW'].actor_id == "ana-1"
        assert moved.revision == 1

        event = recorder.of_type("instance.transitioned")[-1]
        assert event.data['from'] == 'INTAKE'
        assert event.data['to'] == 'REVIEW'
        assert event.actor_id == "ana-1"

    def test_stage_override_resets_due_date(self, engine, published, clock):
        instance = engine.start_instance("CASE", "case-1", ORG)
        clock.advance(hours=10)
        moved = engine.transition_instance(instance.id, 'REVIEW')
        assert moved.due_date == T0 + timedelta(hours=10 + 24)

    def test_illegal_edge(self, engine, published):
        instance = engine.start_instance("CASE", "case-1", ORG)
        with pytest.raises(IllegalTransitionError):
            engine.transition_instance(instance.id, 'CLOSED', INVESTIGATOR, {'findings': 'x'})
        assert engine.get_instance(instance.id).current_stage == 'INTAKE'

    def test_forbidden(self, engine, published):
        instance = engine.start_instance("CASE", "case-1", ORG)
        engine.transition_instance(instance.id, 'REVIEW')
        with pytest.raises(ForbiddenError):
            engine.transition_instance(instance.id, 'CLOSED', ANALYST, {'findings': 'x'})

    def test_condition_not_met(self, engine, published):
        instance = engine.start_instance("CASE", "case-1", ORG)
        engine.transition_instance(instance.id, 'REVIEW')
        with pytest.raises(ConditionNotMetError):
            engine.transition_instance(instance.id, 'CLOSED', INVESTIGATOR, {})

    def test_terminal_stage_completes(self, engine, published, clock, recorder):
        instance = engine.start_instance("CASE", "case-1", ORG)
        engine.transition_instance(instance.id, 'REVIEW')
        clock.advance(hours=3)
        done = engine.transition_instance(instance.id, 'CLOSED', INVESTIGATOR,
                                          {'findings': 'none', 'outcome': 'UNSUBSTANTIATED'})

        assert done.status == InstanceStatus.COMPLETED
        assert done.completed_at == T0 + timedelta(hours=3)
        assert done.outcome == 'UNSUBSTANTIATED'
        assert recorder.types()[-2:] == ["instance.transitioned", "instance.completed"]

    def test_completed_rejects_transitions(self, engine, published):
        instance = engine.start_instance("CASE", "case-1", ORG)
        engine.transition_instance(instance.id, 'REVIEW')
        engine.transition_instance(instance.id, 'CLOSED', INVESTIGATOR, {'findings': 'x'})
        with pytest.raises(AlreadyTerminalError):
            engine.transition_instance(instance.id, 'INTAKE')

    def test_paused_rejects_transitions(self, engine, published):
        instance = engine.start_instance("CASE", "case-1", ORG)
        engine.pause_instance(instance.id)
        with pytest.raises(IllegalTransitionError):
            engine.transition_instance(instance.id, 'REVIEW')

    def test_expected_revision_mismatch(self, engine, published):
        instance = engine.start_instance("CASE", "case-1", ORG)
        engine.transition_instance(instance.id, 'REVIEW', expected_revision=0)
        with pytest.raises(StaleInstanceError):
            engine.transition_instance(instance.id, 'INTAKE', expected_revision=0)

    def test_loop_back_reopens_stage(self, engine, published, clock):
        instance = engine.start_instance("CASE", "case-1", ORG)
        engine.transition_instance(instance.id, 'REVIEW')
        clock.advance(hours=1)
        back = engine.transition_instance(instance.id, 'INTAKE')
        assert back.current_stage == 'INTAKE'
        assert back.previous_stage == 'REVIEW'
        assert back.step_states['INTAKE'].exited_at is None
        assert back.step_states['INTAKE'].entered_at == T0 + timedelta(hours=1)


class BarrierStorage(InMemoryStorage):
    """Holds instance reads until every racer has read the same revision"""

    def __init__(self, parties):
        super().__init__()
        self.barrier = None
        self.parties = parties

    def arm(self):
        self.barrier = threading.Barrier(self.parties)

    def load(self, table, record_id):
        record = super().load(table, record_id)
        if table == "workflow_instances" and self.barrier is not None:
            self.barrier.wait(timeout=5)
        return record


class TestConcurrentTransitions:
    """Racing transitions on one instance"""

    def test_exactly_one_racer_wins(self, clock, recorder, settings):
        from compliance_workflows.engine import WorkflowEngine

        storage = BarrierStorage(parties=2)
        engine = WorkflowEngine(storage=storage, clock=clock, publisher=recorder, settings=settings)
        definition = review_definition()
        definition['stages'].append({'key': 'TRIAGE', 'label': 'Triage'})
        definition['transitions'].append({'from': 'INTAKE', 'to': 'TRIAGE'})
        definition['transitions'].append({'from': 'TRIAGE', 'to': 'CLOSED'})
        engine.publish_template(engine.create_template(definition).id, make_default=True)
        instance = engine.start_instance("CASE", "case-1", ORG)

        outcomes = {}

        def move(target):
            try:
                outcomes[target] = engine.transition_instance(instance.id, target)
            except StaleInstanceError as e:
                outcomes[target] = e

        storage.arm()
        threads = [threading.Thread(target=move, args=(t,)) for t in ('REVIEW', 'TRIAGE')]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        storage.barrier = None

        winners = [k for k, v in outcomes.items() if not isinstance(v, StaleInstanceError)]
        losers = [k for k, v in outcomes.items() if isinstance(v, StaleInstanceError)]
        assert len(winners) == 1 and len(losers) == 1
        assert outcomes[losers[0]].code == "STALE_INSTANCE"

        final = engine.get_instance(instance.id)
        assert final.current_stage == winners[0]
        assert final.revision == 1


class TestCancel:
    """Cancellation semantics"""

    def test_cancel_active(self, engine, published, clock, recorder):
        instance = engine.start_instance("CASE", "case-1", ORG)
        clock.advance(hours=2)
        cancelled = engine.cancel_instance(instance.id, "withdrawn by reporter", ANALYST)

        assert cancelled.status == InstanceStatus.CANCELLED
        assert cancelled.cancelled_at == T0 + timedelta(hours=2)
        assert cancelled.cancel_reason == "withdrawn by reporter"
        assert cancelled.step_states['INTAKE'].exited_at == T0 + timedelta(hours=2)
        assert recorder.types()[-1] == "instance.cancelled"

    def test_cancel_is_idempotent(self, engine, published, recorder):
        instance = engine.start_instance("CASE", "case-1", ORG)
        first = engine.cancel_instance(instance.id, "dup")
        events = len(recorder.events)
        second = engine.cancel_instance(instance.id, "dup again")

        assert second.status == InstanceStatus.CANCELLED
        assert second.revision == first.revision
        assert second.cancel_reason == "dup"
        assert len(recorder.events) == events

    def test_cancel_completed_fails(self, engine, published):
        instance = engine.start_instance("CASE", "case-1", ORG)
        engine.transition_instance(instance.id, 'REVIEW')
        engine.transition_instance(instance.id, 'CLOSED', INVESTIGATOR, {'findings': 'x'})
        with pytest.raises(AlreadyTerminalError):
            engine.cancel_instance(instance.id, "too late")

    def test_cancel_paused_accrues_pause(self, engine, published, clock):
        instance = engine.start_instance("CASE", "case-1", ORG)
        engine.pause_instance(instance.id)
        clock.advance(hours=4)
        cancelled = engine.cancel_instance(instance.id, "closed externally")
        assert cancelled.paused_duration_total == 4 * 3600
        assert cancelled.paused_at is None

    def test_cancelled_rejects_transitions(self, engine, published):
        instance = engine.start_instance("CASE", "case-1", ORG)
        engine.cancel_instance(instance.id)
        with pytest.raises(AlreadyTerminalError):
            engine.transition_instance(instance.id, 'REVIEW')


class TestPauseResume:
    """Stopping the SLA clock"""

    def test_pause_and_resume_moves_due_date(self, engine, published, clock, recorder):
        instance = engine.start_instance("CASE", "case-1", ORG)
        clock.advance(hours=10)
        paused = engine.pause_instance(instance.id, reason="awaiting documents")
        assert paused.status == InstanceStatus.PAUSED
        assert paused.current_stage == 'INTAKE'
        assert paused.paused_at == T0 + timedelta(hours=10)

        clock.advance(hours=6)
        resumed = engine.resume_instance(instance.id)
        assert resumed.status == InstanceStatus.ACTIVE
        assert resumed.paused_duration_total == 6 * 3600
        assert resumed.paused_at is None
        assert resumed.due_date == T0 + timedelta(hours=48 + 6)
        assert recorder.types()[-2:] == ["instance.paused", "instance.resumed"]

    def test_pause_twice(self, engine, published):
        instance = engine.start_instance("CASE", "case-1", ORG)
        engine.pause_instance(instance.id)
        with pytest.raises(IllegalTransitionError):
            engine.pause_instance(instance.id)

    def test_resume_active(self, engine, published):
        instance = engine.start_instance("CASE", "case-1", ORG)
        with pytest.raises(IllegalTransitionError):
            engine.resume_instance(instance.id)

    def test_pause_terminal(self, engine, published):
        instance = engine.start_instance("CASE", "case-1", ORG)
        engine.cancel_instance(instance.id)
        with pytest.raises(AlreadyTerminalError):
            engine.pause_instance(instance.id)
        with pytest.raises(AlreadyTerminalError):
            engine.resume_instance(instance.id)

    def test_pause_before_transition_does_not_leak_into_next_stage(self, engine, published, clock):
        instance = engine.start_instance("CASE", "case-1", ORG)
        engine.pause_instance(instance.id)
        clock.advance(hours=5)
        engine.resume_instance(instance.id)
        moved = engine.transition_instance(instance.id, 'REVIEW')

        assert moved.stage_paused_offset == 5 * 3600
        assert moved.stage_paused_seconds == 0
        assert moved.due_date == T0 + timedelta(hours=5 + 24)


class TestReads:
    """Lookup, tenancy and listing"""

    def test_get_missing(self, engine):
        with pytest.raises(NotFoundError):
            engine.get_instance("nope")

    def test_cross_tenant_read_is_not_found(self, engine, published):
        instance = engine.start_instance("CASE", "case-1", ORG)
        with pytest.raises(NotFoundError):
            engine.get_instance(instance.id, organization_id="org-other")
        with organization_context("org-other"):
            with pytest.raises(NotFoundError):
                engine.get_instance(instance.id)
        with organization_context(ORG):
            assert engine.get_instance(instance.id).id == instance.id

    def test_cross_tenant_mutation_is_not_found(self, engine, published):
        instance = engine.start_instance("CASE", "case-1", ORG)
        with pytest.raises(NotFoundError):
            engine.transition_instance(instance.id, 'REVIEW', organization_id="org-other")

    def test_get_by_entity(self, engine, published):
        first = engine.start_instance("CASE", "case-1", ORG)
        engine.cancel_instance(first.id)
        second = engine.start_instance("CASE", "case-1", ORG)

        assert engine.get_instance_by_entity(ORG, "CASE", "case-1").id == second.id
        assert engine.get_instance_by_entity(ORG, "CASE", "case-404") is None

    def test_allowed_transitions(self, engine, published):
        instance = engine.start_instance("CASE", "case-1", ORG)
        engine.transition_instance(instance.id, 'REVIEW')

        moves = engine.allowed_transitions(instance.id, INVESTIGATOR)
        assert {m['to'] for m in moves} == {'INTAKE', 'CLOSED'}
        closing = next(m for m in moves if m['to'] == 'CLOSED')
        assert closing['is_terminal'] and closing['condition_expr'] == "findings is not None"
        assert next(m for m in moves if m['to'] == 'INTAKE')['label'] == 'Send back'

    def test_allowed_transitions_empty_when_paused(self, engine, published):
        instance = engine.start_instance("CASE", "case-1", ORG)
        engine.pause_instance(instance.id)
        assert engine.allowed_transitions(instance.id) == []

    def test_list_active_for_sweep(self, engine, published, clock):
        a = engine.start_instance("CASE", "case-a", ORG)
        clock.advance(hours=1)
        b = engine.start_instance("CASE", "case-b", ORG)
        c = engine.start_instance("CASE", "case-c", ORG)
        engine.pause_instance(c.id)

        assert [i.id for i in engine.list_active_instances_for_sweep()] == [a.id, b.id]
        assert engine.list_active_instances_for_sweep("org-other") == []
