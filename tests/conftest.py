"""
Shared fixtures for the workflow engine tests
"""

import pytest
from datetime import datetime, timezone

from compliance_workflows.clock import ManualClock
from compliance_workflows.config import WorkflowSettings
from compliance_workflows.engine import WorkflowEngine
from compliance_workflows.events import EventPublisher
from compliance_workflows.storage import InMemoryStorage


T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
ORG = "org-acme"


class RecordingPublisher(EventPublisher):
    """Collects published events in order"""

    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)

    def types(self):
        return [e.event_type.value for e in self.events]

    def of_type(self, event_type):
        return [e for e in self.events if e.event_type.value == event_type]


def review_definition(organization_id=ORG, name="Case Review", **overrides):
    """Three-stage case pipeline with a role-restricted closing edge"""
    definition = {
        'organization_id': organization_id,
        'name': name,
        'entity_type': 'CASE',
        'stages': [
            {'key': 'INTAKE', 'label': 'Intake'},
            {'key': 'REVIEW', 'label': 'Review', 'sla_hours_override': 24},
            {'key': 'CLOSED', 'label': 'Closed', 'is_terminal': True},
        ],
        'transitions': [
            {'from': 'INTAKE', 'to': 'REVIEW'},
            {'from': 'REVIEW', 'to': 'INTAKE', 'label': 'Send back'},
            {'from': 'REVIEW', 'to': 'CLOSED', 'allowed_roles': ['investigator'],
             'condition_expr': "findings is not None"},
        ],
        'initial_stage': 'INTAKE',
        'default_sla_hours': 48,
    }
    definition.update(overrides)
    return definition


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def clock():
    return ManualClock(T0)


@pytest.fixture
def recorder():
    return RecordingPublisher()


@pytest.fixture
def settings():
    return WorkflowSettings(_env_file=None, database_url="memory://")


@pytest.fixture
def engine(storage, clock, recorder, settings):
    return WorkflowEngine(storage=storage, clock=clock, publisher=recorder, settings=settings)


@pytest.fixture
def published(engine):
    """Default active Case Review template"""
    draft = engine.create_template(review_definition())
    return engine.publish_template(draft.id, make_default=True)
