"""
Tests for rule based owner assignment
"""

import pytest
import threading
from collections import Counter

from compliance_workflows.assignment import (
    AssignmentContext, AssignmentRouter, Matcher, UNASSIGNED, least_loaded_strategy, lookup_strategy
)
from compliance_workflows.errors import NotFoundError
from compliance_workflows.models import EntityType

from conftest import ORG


@pytest.fixture
def router(storage, clock):
    return AssignmentRouter(storage, clock)


def context(**kwargs):
    defaults = {'organization_id': ORG, 'entity_type': EntityType.CASE, 'entity_id': "case-1"}
    defaults.update(kwargs)
    return AssignmentContext(**defaults)


class TestMatchers:
    """Matcher operators"""

    @pytest.mark.parametrize("operator,value,actual,expected", [
        ("equals", "fraud", "fraud", True),
        ("equals", "fraud", "harassment", False),
        ("not_equals", "fraud", "harassment", True),
        ("in", ["fraud", "theft"], "theft", True),
        ("in", ["fraud", "theft"], None, False),
        ("not_in", ["fraud"], "theft", True),
        ("exists", True, "anything", True),
        ("exists", True, None, False),
        ("exists", False, None, True),
        ("prefix", "loc-eu", "loc-eu-17", True),
        ("prefix", "loc-eu", 17, False),
    ])
    def test_operator(self, operator, value, actual, expected):
        assert Matcher("category", operator, value).matches({'category': actual}) is expected


class TestRuleEvaluation:
    """First matching rule by ascending priority"""

    def test_first_matching_rule_wins(self, router):
        router.create_rule(ORG, "CASE", "direct", {'owner_id': "general"}, priority=50)
        router.create_rule(ORG, "CASE", "direct", {'owner_id': "fraud-team"}, priority=10,
                           matchers=[{'field': 'category', 'value': 'fraud'}])

        assert router.assign(ORG, "CASE", "c1", category="fraud").owner_id == "fraud-team"
        assert router.assign(ORG, "CASE", "c2", category="harassment").owner_id == "general"

    def test_equal_priority_uses_creation_order(self, router, clock):
        first = router.create_rule(ORG, "CASE", "direct", {'owner_id': "first"})
        clock.advance(seconds=1)
        router.create_rule(ORG, "CASE", "direct", {'owner_id': "second"})
        result = router.assign(ORG, "CASE", "c1")
        assert result.owner_id == "first"
        assert result.rule_id == first.id
        assert result.strategy_key == "direct"
        assert not result.fallback

    def test_location_and_context_attributes(self, router):
        router.create_rule(ORG, "CASE", "direct", {'owner_id': "eu-team"},
                           matchers=[{'field': 'location_id', 'operator': 'prefix', 'value': 'eu-'},
                                     {'field': 'severity', 'operator': 'in', 'value': ['high', 'critical']}])

        assert router.assign(ORG, "CASE", "c1", location_id="eu-paris",
                             context={'severity': 'high'}).owner_id == "eu-team"
        assert router.assign(ORG, "CASE", "c2", location_id="eu-paris",
                             context={'severity': 'low'}).owner_id == UNASSIGNED

    def test_rules_are_scoped_by_entity_type_and_org(self, router):
        router.create_rule(ORG, "POLICY", "direct", {'owner_id': "policy-owner"})
        router.create_rule("org-other", "CASE", "direct", {'owner_id': "other-org"})
        assert router.assign(ORG, "CASE", "c1").owner_id == UNASSIGNED

    def test_unknown_strategy_is_rejected(self, router):
        with pytest.raises(ValueError, match="Unknown assignment strategy"):
            router.create_rule(ORG, "CASE", "telepathy")

    def test_unknown_operator_is_rejected(self, router):
        with pytest.raises(ValueError, match="Unknown matcher operator"):
            router.create_rule(ORG, "CASE", "direct", matchers=[{'field': 'x', 'operator': 'regex'}])

    def test_delete_rule(self, router):
        rule = router.create_rule(ORG, "CASE", "direct", {'owner_id': "someone"})
        with pytest.raises(NotFoundError):
            router.delete_rule(rule.id, "org-other")
        router.delete_rule(rule.id)
        assert router.list_rules(ORG) == []


class TestRoundRobin:
    """Rotation over a candidate pool"""

    def test_rotation_order(self, router):
        router.create_rule(ORG, "CASE", "round_robin", {'candidates': ["A", "B", "C"]})
        owners = [router.assign(ORG, "CASE", f"c{i}").owner_id for i in range(6)]
        assert owners == ["A", "B", "C", "A", "B", "C"]

    def test_each_rule_has_its_own_cursor(self, router):
        router.create_rule(ORG, "CASE", "round_robin", {'candidates': ["A", "B"]},
                           matchers=[{'field': 'category', 'value': 'fraud'}])
        router.create_rule(ORG, "CASE", "round_robin", {'candidates': ["X", "Y"]}, priority=200)

        assert router.assign(ORG, "CASE", "c1", category="fraud").owner_id == "A"
        assert router.assign(ORG, "CASE", "c2").owner_id == "X"
        assert router.assign(ORG, "CASE", "c3", category="fraud").owner_id == "B"

    def test_concurrent_assignments_are_fair(self, router):
        """30 concurrent calls over three candidates give each one exactly ten"""
        router.create_rule(ORG, "CASE", "round_robin", {'candidates': ["A", "B", "C"]})
        owners = []
        lock = threading.Lock()
        barrier = threading.Barrier(30)

        def assign(n):
            barrier.wait()
            owner = router.assign(ORG, "CASE", f"c{n}").owner_id
            with lock:
                owners.append(owner)

        threads = [threading.Thread(target=assign, args=(i,)) for i in range(30)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert Counter(owners) == {"A": 10, "B": 10, "C": 10}


class TestFallback:
    """Default pool and UNASSIGNED"""

    def test_unassigned_without_rules_or_pool(self, router):
        result = router.assign(ORG, "CASE", "c1")
        assert result.owner_id == UNASSIGNED
        assert result.fallback
        assert not result.is_assigned

    def test_default_pool_rotates(self, router):
        router.set_default_pool(ORG, "CASE", ["P", "Q"])
        owners = [router.assign(ORG, "CASE", f"c{i}").owner_id for i in range(3)]
        assert owners == ["P", "Q", "P"]

    def test_strategy_without_owner_falls_back(self, router):
        router.set_default_pool(ORG, "CASE", ["pool-owner"])
        router.create_rule(ORG, "CASE", "round_robin", {'candidates': []})
        result = router.assign(ORG, "CASE", "c1")
        assert result.owner_id == "pool-owner"
        assert result.fallback

    def test_failing_strategy_falls_back(self, router):
        def explode(config, pool, ctx):
            raise RuntimeError("directory offline")

        router.register_strategy("directory", explode)
        router.create_rule(ORG, "CASE", "directory")
        router.set_default_pool(ORG, "CASE", ["pool-owner"])
        assert router.assign(ORG, "CASE", "c1").owner_id == "pool-owner"

    def test_only_first_matching_rule_is_tried(self, router):
        router.create_rule(ORG, "CASE", "direct", {}, priority=1)
        router.create_rule(ORG, "CASE", "direct", {'owner_id': "later"}, priority=2)
        assert router.assign(ORG, "CASE", "c1").owner_id == UNASSIGNED


class TestStrategies:
    """Built-in and custom strategies"""

    def test_custom_strategy(self, router):
        seen = {}

        def by_entity(config, pool, ctx):
            seen['context'] = ctx
            return f"{config['prefix']}-{ctx.entity_id}"

        router.register_strategy("by_entity", by_entity)
        router.create_rule(ORG, "CASE", "by_entity", {'prefix': "owner"})

        assert router.assign(ORG, "CASE", "c9", category="fraud").owner_id == "owner-c9"
        assert seen['context'].category == "fraud"
        assert "by_entity" in router.strategy_keys

    def test_register_requires_callable(self, router):
        with pytest.raises(ValueError):
            router.register_strategy("broken", "not a function")

    def test_least_loaded(self):
        ctx = context(attributes={'workload': {'A': 5, 'B': 1, 'C': 1}})
        assert least_loaded_strategy({}, ["A", "B", "C"], ctx) == "B"
        assert least_loaded_strategy({'workload': {'A': 0}}, ["B", "A"], context()) == "B"
        assert least_loaded_strategy({}, [], context()) is None

    def test_lookup(self):
        config = {'field': 'location_id', 'mapping': {'loc-1': "alice"}, 'default': "bob"}
        assert lookup_strategy(config, [], context(location_id="loc-1")) == "alice"
        assert lookup_strategy(config, [], context(location_id="loc-2")) == "bob"

    def test_engine_assign_owner_writes_instance(self, engine, published):
        engine.router.create_rule(ORG, "CASE", "direct", {'owner_id': "carol"},
                                  matchers=[{'field': 'category', 'value': 'fraud'}])
        instance = engine.start_instance("CASE", "case-1", ORG)
        assert instance.owner_id is None

        result = engine.assign_owner(ORG, "CASE", "case-1", category="fraud", instance_id=instance.id)
        assert result.owner_id == "carol"
        assert engine.get_instance(instance.id).owner_id == "carol"

    def test_engine_assign_owner_entity_mismatch(self, engine, published):
        engine.router.create_rule(ORG, "CASE", "direct", {'owner_id': "carol"})
        instance = engine.start_instance("CASE", "case-1", ORG)
        with pytest.raises(NotFoundError):
            engine.assign_owner(ORG, "CASE", "case-2", instance_id=instance.id)
