"""
Transition Validation Module

Two concerns live here:

- ``validate_graph`` checks a template definition's stage/transition graph
  before it is persisted or published.
- ``TransitionValidator.check`` decides whether a proposed stage change is
  allowed for a given actor and context. It is pure: no storage, no clock.
"""

from collections import deque
from typing import Dict, List, Optional, Any, Union
import threading

from .conditions import CompiledCondition, ConditionSyntaxError, compile_condition
from .errors import InvalidGraphError, IllegalTransitionError, ConditionNotMetError, ForbiddenError
from .models import Actor, TemplateDefinition, WorkflowTemplate, Transition, WILDCARD_STAGE


def graph_errors(definition: Union[TemplateDefinition, WorkflowTemplate]) -> List[str]:
    """Collect every structural problem with a definition"""
    errors = []
    keys = [stage.key for stage in definition.stages]
    key_set = set(keys)

    if not definition.stages:
        errors.append("Template must define at least one stage")

    duplicates = sorted({key for key in keys if keys.count(key) > 1})
    if duplicates:
        errors.append(f"Duplicate stage keys: {', '.join(duplicates)}")

    if WILDCARD_STAGE in key_set:
        errors.append(f"'{WILDCARD_STAGE}' is reserved and cannot be a stage key")

    if definition.initial_stage not in key_set:
        errors.append(f"Initial stage '{definition.initial_stage}' does not exist")

    if not any(stage.is_terminal for stage in definition.stages):
        errors.append("Template must have at least one terminal stage")

    if definition.default_sla_hours is None or definition.default_sla_hours <= 0:
        errors.append("default_sla_hours must be positive")

    for stage in definition.stages:
        if stage.sla_hours_override is not None and stage.sla_hours_override <= 0:
            errors.append(f"Stage '{stage.key}' has a non-positive SLA override")

    sla = definition.sla_config
    if not 0 < sla.warning_threshold_pct <= 1:
        errors.append("warning_threshold_pct must be in (0, 1]")
    if sla.critical_threshold_hours < 0:
        errors.append("critical_threshold_hours must not be negative")

    for transition in definition.transitions:
        if transition.from_stage != WILDCARD_STAGE and transition.from_stage not in key_set:
            errors.append(f"Transition source '{transition.from_stage}' does not exist")
        if transition.to_stage not in key_set:
            errors.append(f"Transition target '{transition.to_stage}' does not exist")
        if transition.condition_expr:
            try:
                compile_condition(transition.condition_expr)
            except ConditionSyntaxError as e:
                errors.append(str(e))

    if definition.initial_stage in key_set:
        unreachable = sorted(key_set - _reachable(definition))
        if unreachable:
            errors.append(f"Unreachable stages: {', '.join(unreachable)}")

    return errors


def _reachable(definition) -> set:
    """Breadth-first search from the initial stage; wildcard edges leave any non-terminal stage"""
    terminal = {stage.key for stage in definition.stages if stage.is_terminal}
    wildcard_targets = [t.to_stage for t in definition.transitions if t.from_stage == WILDCARD_STAGE]

    seen = {definition.initial_stage}
    queue = deque([definition.initial_stage])
    while queue:
        current = queue.popleft()
        if current in terminal:
            continue
        targets = [t.to_stage for t in definition.transitions if t.from_stage == current]
        for target in targets + wildcard_targets:
            if target not in seen:
                seen.add(target)
                queue.append(target)
    return seen


def validate_graph(definition: Union[TemplateDefinition, WorkflowTemplate]) -> None:
    """Raise INVALID_GRAPH listing all problems"""
    errors = graph_errors(definition)
    if errors:
        raise InvalidGraphError(
            f"Template '{definition.name}' is invalid: {errors[0]}",
            {'errors': errors}
        )


class TransitionValidator:
    """Checks a proposed stage change against one pinned template version"""

    def __init__(self):
        self._compiled: Dict[str, CompiledCondition] = {}
        self._lock = threading.Lock()

    def _condition(self, expression: str) -> CompiledCondition:
        with self._lock:
            compiled = self._compiled.get(expression)
            if compiled is None:
                compiled = compile_condition(expression)
                self._compiled[expression] = compiled
            return compiled

    def candidate_edges(self, template: WorkflowTemplate, from_stage: str, to_stage: str) -> List[Transition]:
        return [t for t in template.outgoing(from_stage) if t.to_stage == to_stage]

    def is_permitted(self, transition: Transition, actor: Optional[Actor]) -> bool:
        if not transition.allowed_roles:
            return True
        roles = set(actor.roles) if actor else set()
        return bool(roles & set(transition.allowed_roles))

    def check(self, template: WorkflowTemplate, from_stage: str, to_stage: str,
              actor: Optional[Actor] = None, context: Optional[Dict[str, Any]] = None) -> Transition:
        """
        Return the edge that authorizes the move.

        Raises:
            IllegalTransitionError: no edge from ``from_stage`` to ``to_stage``
            ForbiddenError: every matching edge restricts roles the actor lacks
            ConditionNotMetError: a permitted edge exists but its condition is false
        """
        edges = self.candidate_edges(template, from_stage, to_stage)
        if not edges:
            raise IllegalTransitionError(
                f"No transition from '{from_stage}' to '{to_stage}'",
                {'from': from_stage, 'to': to_stage, 'template_id': template.id,
                 'template_version': template.version}
            )

        permitted = [edge for edge in edges if self.is_permitted(edge, actor)]
        if not permitted:
            raise ForbiddenError(
                f"Actor lacks the roles required to move from '{from_stage}' to '{to_stage}'",
                {'required_roles': sorted({r for e in edges for r in e.allowed_roles or []}),
                 'actor_roles': list(actor.roles) if actor else []}
            )

        for edge in permitted:
            if not edge.condition_expr or self._condition(edge.condition_expr).evaluate(context):
                return edge

        raise ConditionNotMetError(
            f"Condition for '{from_stage}' -> '{to_stage}' is not met",
            {'conditions': [e.condition_expr for e in permitted]}
        )

    def allowed_targets(self, template: WorkflowTemplate, from_stage: str,
                        actor: Optional[Actor] = None) -> List[Transition]:
        """Edges the actor may attempt (conditions not evaluated)"""
        return [edge for edge in template.outgoing(from_stage) if self.is_permitted(edge, actor)]
