"""
Transition Condition Expressions

Conditions are small Python-syntax boolean expressions evaluated against the
context supplied with a transition, e.g.::

    risk_score >= 7 and evidence.count > 0
    outcome in ("SUBSTANTIATED", "UNSUBSTANTIATED")

They are parsed and checked against a node whitelist when a template is
drafted or published, so evaluation at transition time never has to deal
with malformed input.
"""

import ast
import logging
import operator
from typing import Any, Dict, Optional


logger = logging.getLogger("cwf.conditions")


class ConditionSyntaxError(ValueError):
    """Expression does not parse or uses a construct outside the whitelist"""
    pass


SAFE_FUNCTIONS = {
    "len": len,
    "abs": abs,
    "min": min,
    "max": max,
    "any": any,
    "all": all,
    "lower": lambda s: s.lower() if isinstance(s, str) else s,
}

OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
    ast.Not: operator.not_,
}

_ALLOWED_NODES = (
    ast.Expression, ast.BoolOp, ast.And, ast.Or, ast.UnaryOp, ast.BinOp,
    ast.Compare, ast.Name, ast.Load, ast.Attribute, ast.Subscript,
    ast.Constant, ast.Tuple, ast.List, ast.Set, ast.Call, ast.IfExp,
) + tuple(OPERATORS)


class CompiledCondition:
    """A validated expression ready for repeated evaluation"""

    def __init__(self, expression: str, tree: ast.Expression):
        self.expression = expression
        self._tree = tree

    def evaluate(self, context: Optional[Dict[str, Any]] = None) -> bool:
        """
        Evaluate against a context mapping.

        Unknown names resolve to None. An error while evaluating (comparing
        None with a number, max() of an empty list, a missing index) makes
        the condition false.
        """
        try:
            return bool(_Evaluator(context or {}).visit(self._tree.body))
        except (TypeError, ValueError, AttributeError, LookupError, ArithmeticError) as e:
            logger.debug(f"Condition '{self.expression}' evaluated false: {e}")
            return False

    def __repr__(self) -> str:
        return f"CompiledCondition({self.expression!r})"


def compile_condition(expression: str) -> CompiledCondition:
    """Parse and whitelist-check an expression"""
    if not expression or not expression.strip():
        raise ConditionSyntaxError("Condition expression is empty")

    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise ConditionSyntaxError(f"Invalid condition syntax: {expression}") from e

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ConditionSyntaxError(
                f"Unsupported construct {type(node).__name__} in condition: {expression}"
            )
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ConditionSyntaxError(f"Private attribute access in condition: {expression}")
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in SAFE_FUNCTIONS:
                raise ConditionSyntaxError(f"Unsupported function call in condition: {expression}")
            if node.keywords:
                raise ConditionSyntaxError(f"Keyword arguments are not supported: {expression}")

    return CompiledCondition(expression, tree)


class _Evaluator:
    """Walks a whitelisted tree"""

    def __init__(self, variables: Dict[str, Any]):
        self.variables = variables

    def visit(self, node: ast.AST) -> Any:
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            if node.id in SAFE_FUNCTIONS:
                return SAFE_FUNCTIONS[node.id]
            return self.variables.get(node.id)

        if isinstance(node, ast.Attribute):
            value = self.visit(node.value)
            if value is None:
                return None
            if isinstance(value, dict):
                return value.get(node.attr)
            return getattr(value, node.attr, None)

        if isinstance(node, ast.Subscript):
            value = self.visit(node.value)
            if value is None:
                return None
            try:
                return value[self.visit(node.slice)]
            except (KeyError, IndexError):
                return None

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                result = True
                for value in node.values:
                    result = self.visit(value)
                    if not result:
                        return result
                return result
            result = False
            for value in node.values:
                result = self.visit(value)
                if result:
                    return result
            return result

        if isinstance(node, ast.UnaryOp):
            return OPERATORS[type(node.op)](self.visit(node.operand))

        if isinstance(node, ast.BinOp):
            return OPERATORS[type(node.op)](self.visit(node.left), self.visit(node.right))

        if isinstance(node, ast.Compare):
            left = self.visit(node.left)
            for op, comparator in zip(node.ops, node.comparators):
                right = self.visit(comparator)
                if not OPERATORS[type(op)](left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.IfExp):
            return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)

        if isinstance(node, (ast.Tuple, ast.List, ast.Set)):
            items = [self.visit(elt) for elt in node.elts]
            return set(items) if isinstance(node, ast.Set) else items

        if isinstance(node, ast.Call):
            func = self.visit(node.func)
            return func(*[self.visit(arg) for arg in node.args])

        raise ConditionSyntaxError(f"Unsupported node: {type(node).__name__}")
