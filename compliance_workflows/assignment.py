"""
Assignment Router Module

Chooses an owner for a governed entity from organization routing rules.

Rules are evaluated in ascending ``priority`` order; the first rule whose
matchers all match decides the strategy. Strategies are plain functions
registered under a string key::

    def strategy(config: dict, candidate_pool: list, context: AssignmentContext) -> Optional[str]

Stateful strategies get their state through handles on the context (the
rotation cursor), never through module globals.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from .errors import NotFoundError
from .models import EntityType, RULES_TABLE, ROTATION_CURSORS
from .storage import StorageInterface, StorageRecord, parse_datetime, format_datetime
from .tenancy import can_access


logger = logging.getLogger("cwf.assignment")

UNASSIGNED = "UNASSIGNED"
DEFAULT_POOLS_TABLE = "assignment_default_pools"

StrategyFn = Callable[[Dict[str, Any], List[str], 'AssignmentContext'], Optional[str]]


MATCH_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    'equals': lambda actual, expected: actual == expected,
    'not_equals': lambda actual, expected: actual != expected,
    'in': lambda actual, expected: actual in (expected or []),
    'not_in': lambda actual, expected: actual not in (expected or []),
    'exists': lambda actual, expected: (actual is not None) == (expected is not False),
    'prefix': lambda actual, expected: isinstance(actual, str) and actual.startswith(str(expected)),
}


@dataclass
class Matcher:
    """One predicate over the assignment context"""
    field: str
    operator: str = "equals"
    value: Any = None

    def matches(self, values: Dict[str, Any]) -> bool:
        return MATCH_OPERATORS[self.operator](values.get(self.field), self.value)

    def to_dict(self) -> Dict[str, Any]:
        return {'field': self.field, 'operator': self.operator, 'value': self.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Matcher':
        return cls(field=data['field'], operator=data.get('operator', 'equals'), value=data.get('value'))


@dataclass
class AssignmentRule(StorageRecord):
    """Routing rule for one organization and entity type"""
    organization_id: str
    entity_type: EntityType
    strategy_key: str
    priority: int = 100
    matchers: List[Matcher] = field(default_factory=list)
    strategy_config: Dict[str, Any] = field(default_factory=dict)
    name: str = ""
    is_active: bool = True

    @property
    def candidates(self) -> List[str]:
        return list(self.strategy_config.get('candidates', []))

    def matches(self, values: Dict[str, Any]) -> bool:
        # No matchers means catch-all
        return all(matcher.matches(values) for matcher in self.matchers)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'organization_id': self.organization_id,
            'entity_type': self.entity_type.value,
            'strategy_key': self.strategy_key,
            'priority': self.priority,
            'matchers': [m.to_dict() for m in self.matchers],
            'strategy_config': self.strategy_config,
            'name': self.name,
            'is_active': self.is_active,
            'created_at': format_datetime(self.created_at),
            'updated_at': format_datetime(self.updated_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AssignmentRule':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            organization_id=data['organization_id'],
            entity_type=EntityType(data['entity_type']),
            strategy_key=data['strategy_key'],
            priority=data.get('priority', 100),
            matchers=[Matcher.from_dict(m) for m in data.get('matchers', [])],
            strategy_config=data.get('strategy_config', {}),
            name=data.get('name', ""),
            is_active=data.get('is_active', True)
        )


class RotationCursor:
    """Handle on a persisted round-robin position"""

    def __init__(self, storage: StorageInterface, key: str):
        self.storage = storage
        self.key = key

    def next_slot(self, size: int) -> int:
        """Slot to use now, in [0, size); advances atomically"""
        return self.storage.increment_and_wrap(ROTATION_CURSORS, self.key, size)


@dataclass
class AssignmentContext:
    """Everything a strategy may look at"""
    organization_id: str
    entity_type: EntityType
    entity_id: str
    category: Optional[str] = None
    location_id: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    rule_id: Optional[str] = None
    cursor: Optional[RotationCursor] = None

    def values(self) -> Dict[str, Any]:
        """Flat view used by matchers and the lookup strategy"""
        values = dict(self.attributes)
        values.update({
            'organization_id': self.organization_id,
            'entity_type': self.entity_type.value,
            'entity_id': self.entity_id,
            'category': self.category,
            'location_id': self.location_id,
        })
        return values


@dataclass
class AssignmentResult:
    owner_id: str
    rule_id: Optional[str] = None
    strategy_key: Optional[str] = None
    fallback: bool = False

    @property
    def is_assigned(self) -> bool:
        return self.owner_id != UNASSIGNED


# Built-in strategies

def direct_strategy(config: Dict[str, Any], candidate_pool: List[str],
                    context: AssignmentContext) -> Optional[str]:
    """Fixed owner, or the first candidate"""
    return config.get('owner_id') or (candidate_pool[0] if candidate_pool else None)


def round_robin_strategy(config: Dict[str, Any], candidate_pool: List[str],
                         context: AssignmentContext) -> Optional[str]:
    if not candidate_pool or context.cursor is None:
        return None
    return candidate_pool[context.cursor.next_slot(len(candidate_pool))]


def least_loaded_strategy(config: Dict[str, Any], candidate_pool: List[str],
                          context: AssignmentContext) -> Optional[str]:
    """
    Candidate with the smallest open workload; ties go to pool order.

    Workload comes from ``context.attributes['workload']`` (owner -> count),
    falling back to ``config['workload']``.
    """
    if not candidate_pool:
        return None
    workload = context.attributes.get('workload') or config.get('workload') or {}
    return min(candidate_pool, key=lambda owner: (workload.get(owner, 0), candidate_pool.index(owner)))


def lookup_strategy(config: Dict[str, Any], candidate_pool: List[str],
                    context: AssignmentContext) -> Optional[str]:
    """Owner from ``config['mapping']`` keyed by the value of ``config['field']``"""
    value = context.values().get(config.get('field', 'category'))
    owner = config.get('mapping', {}).get(str(value)) if value is not None else None
    return owner or config.get('default')


BUILTIN_STRATEGIES: Dict[str, StrategyFn] = {
    'direct': direct_strategy,
    'round_robin': round_robin_strategy,
    'least_loaded': least_loaded_strategy,
    'lookup': lookup_strategy,
}


class AssignmentRouter:
    """Rule evaluation plus an open strategy registry"""

    def __init__(self, storage: StorageInterface, clock):
        self.storage = storage
        self.clock = clock
        self._strategies: Dict[str, StrategyFn] = dict(BUILTIN_STRATEGIES)
        self._lock = threading.RLock()

    def register_strategy(self, key: str, fn: StrategyFn) -> None:
        """Add or replace a strategy"""
        if not callable(fn):
            raise ValueError(f"Strategy {key} must be callable")
        with self._lock:
            self._strategies[key] = fn
        logger.info(f"Registered assignment strategy {key}")

    def get_strategy(self, key: str) -> Optional[StrategyFn]:
        with self._lock:
            return self._strategies.get(key)

    @property
    def strategy_keys(self) -> List[str]:
        with self._lock:
            return sorted(self._strategies)

    # Rule management

    def create_rule(self, organization_id: str, entity_type: Union[EntityType, str], strategy_key: str,
                    strategy_config: Optional[Dict[str, Any]] = None,
                    matchers: Optional[List[Union[Matcher, Dict[str, Any]]]] = None,
                    priority: int = 100, name: str = "") -> AssignmentRule:
        if self.get_strategy(strategy_key) is None:
            raise ValueError(f"Unknown assignment strategy: {strategy_key}")
        matchers = [m if isinstance(m, Matcher) else Matcher.from_dict(m) for m in matchers or []]
        for matcher in matchers:
            if matcher.operator not in MATCH_OPERATORS:
                raise ValueError(f"Unknown matcher operator: {matcher.operator}")

        now = self.clock.now()
        rule = AssignmentRule(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            organization_id=organization_id,
            entity_type=entity_type if isinstance(entity_type, EntityType) else EntityType(entity_type),
            strategy_key=strategy_key,
            priority=priority,
            matchers=matchers,
            strategy_config=dict(strategy_config or {}),
            name=name
        )
        self.storage.save(RULES_TABLE, rule.id, rule.to_dict())
        return rule

    def list_rules(self, organization_id: str, entity_type: Optional[EntityType] = None,
                   active_only: bool = True) -> List[AssignmentRule]:
        """Rules in evaluation order: priority, then creation time"""
        filters: Dict[str, Any] = {'organization_id': organization_id}
        if entity_type is not None:
            filters['entity_type'] = entity_type.value
        rules = [AssignmentRule.from_dict(d) for d in self.storage.find(RULES_TABLE, filters)]
        if active_only:
            rules = [r for r in rules if r.is_active]
        return sorted(rules, key=lambda r: (r.priority, r.created_at))

    def delete_rule(self, rule_id: str, organization_id: Optional[str] = None) -> None:
        data = self.storage.load(RULES_TABLE, rule_id)
        if not data or not can_access(data['organization_id'], organization_id):
            raise NotFoundError(f"Assignment rule {rule_id} not found", {'rule_id': rule_id})
        self.storage.delete(RULES_TABLE, rule_id)

    def set_default_pool(self, organization_id: str, entity_type: Union[EntityType, str],
                         candidates: List[str]) -> None:
        entity_type = entity_type if isinstance(entity_type, EntityType) else EntityType(entity_type)
        key = f"{organization_id}:{entity_type.value}"
        self.storage.save(DEFAULT_POOLS_TABLE, key, {
            'id': key,
            'organization_id': organization_id,
            'entity_type': entity_type.value,
            'candidates': list(candidates),
            'updated_at': format_datetime(self.clock.now())
        })

    def get_default_pool(self, organization_id: str, entity_type: EntityType) -> List[str]:
        data = self.storage.load(DEFAULT_POOLS_TABLE, f"{organization_id}:{entity_type.value}")
        return list(data['candidates']) if data else []

    # Routing

    def assign(self, organization_id: str, entity_type: Union[EntityType, str], entity_id: str,
               category: Optional[str] = None, location_id: Optional[str] = None,
               context: Optional[Dict[str, Any]] = None) -> AssignmentResult:
        """Route an entity to an owner; never raises for a missing match"""
        entity_type = entity_type if isinstance(entity_type, EntityType) else EntityType(entity_type)
        assignment_context = AssignmentContext(
            organization_id=organization_id,
            entity_type=entity_type,
            entity_id=entity_id,
            category=category,
            location_id=location_id,
            attributes=dict(context or {})
        )
        values = assignment_context.values()

        for rule in self.list_rules(organization_id, entity_type):
            if not rule.matches(values):
                continue
            assignment_context.rule_id = rule.id
            assignment_context.cursor = RotationCursor(self.storage, f"rule:{rule.id}")
            owner = self._invoke(rule.strategy_key, rule.strategy_config, rule.candidates, assignment_context)
            if owner:
                logger.debug(f"Rule {rule.id} assigned {entity_type.value}:{entity_id} to {owner}")
                return AssignmentResult(owner_id=owner, rule_id=rule.id, strategy_key=rule.strategy_key)
            break

        return self._fallback(assignment_context)

    def _invoke(self, key: str, config: Dict[str, Any], pool: List[str],
                context: AssignmentContext) -> Optional[str]:
        strategy = self.get_strategy(key)
        if strategy is None:
            logger.error(f"Assignment strategy {key} is not registered; using fallback")
            return None
        try:
            return strategy(config, pool, context)
        except Exception as e:
            logger.error(f"Assignment strategy {key} failed: {e}", exc_info=True)
            return None

    def _fallback(self, context: AssignmentContext) -> AssignmentResult:
        pool = self.get_default_pool(context.organization_id, context.entity_type)
        if not pool:
            return AssignmentResult(owner_id=UNASSIGNED, fallback=True)
        cursor = RotationCursor(self.storage, f"default:{context.organization_id}:{context.entity_type.value}")
        return AssignmentResult(owner_id=pool[cursor.next_slot(len(pool))], fallback=True)
