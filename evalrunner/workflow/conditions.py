"""Context lookups, validation rules and the restricted condition expression language.

Expressions are a small subset of Python: literals, names, attribute and
subscript access, arithmetic, comparisons and ``and``/``or``/``not``. Names
resolve against the context variables first and then against stage outputs;
``variables``, ``artifacts`` and ``outputs`` name the raw maps. Function calls
and anything else are rejected when the workflow is created.
"""
import ast
import operator
import re
from typing import Any, Optional

from pydantic import BaseModel

from ..errors import ValidationError
from .models import ValidationOperator, ValidationRule, WorkflowContext

_MISSING = object()

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
}

_CMP_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_ALLOWED = (
    ast.Expression, ast.BoolOp, ast.And, ast.Or, ast.UnaryOp, ast.Not, ast.USub, ast.UAdd,
    ast.BinOp, ast.Compare, ast.Name, ast.Load, ast.Constant, ast.Attribute, ast.Subscript,
    ast.List, ast.Tuple,
) + tuple(_BIN_OPS) + tuple(_CMP_OPS)


def descend(value: Any, key: str) -> Any:
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get(key)
    if isinstance(value, (list, tuple)):
        try:
            return value[int(key)]
        except (ValueError, IndexError):
            return None
    if isinstance(value, BaseModel):
        return getattr(value, key, None)
    return None


def _named(name: str, context: WorkflowContext) -> Any:
    if name in context.variables:
        return context.variables[name]
    return context.stage_outputs.get(name)


def get_context_value(path: str, context: WorkflowContext) -> Any:
    """Resolve a dotted path such as ``$batch-eval.summary.success_rate``.

    A ``$name`` segment restarts the lookup at that variable (or stage
    output); a leading ``variables``/``artifacts``/``stage_outputs`` segment
    selects that map.
    """
    if not path:
        return None
    value: Any = _MISSING
    for part in path.split("."):
        if part.startswith("$"):
            value = _named(part[1:], context)
        elif value is _MISSING:
            value = getattr(context, part, None) if part in ("variables", "artifacts", "stage_outputs") else None
        else:
            value = descend(value, part)
    return None if value is _MISSING else value


def evaluate_rule(rule: ValidationRule, value: Any) -> bool:
    op = rule.operator
    try:
        if op == ValidationOperator.EQUALS:
            return value == rule.value
        if op == ValidationOperator.NOT_EQUALS:
            return value != rule.value
        if op == ValidationOperator.GREATER_THAN:
            return value is not None and value > rule.value
        if op == ValidationOperator.LESS_THAN:
            return value is not None and value < rule.value
        if op == ValidationOperator.CONTAINS:
            return str(rule.value) in str(value)
        if op == ValidationOperator.MATCHES:
            return re.search(str(rule.value), str(value)) is not None
    except TypeError:
        return False
    return False


def parse_expression(expression: str) -> ast.Expression:
    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as exc:
        raise ValidationError(f"invalid condition expression {expression!r}: {exc.msg}") from exc
    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED):
            raise ValidationError(f"unsupported syntax in condition expression {expression!r}: {type(node).__name__}")
    return tree


class _Evaluator:
    def __init__(self, context: WorkflowContext):
        self.context = context

    def eval(self, node: ast.AST) -> Any:
        if isinstance(node, ast.Expression):
            return self.eval(node.body)
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            if node.id == "variables":
                return self.context.variables
            if node.id == "artifacts":
                return self.context.artifacts
            if node.id == "outputs":
                return self.context.stage_outputs
            return _named(node.id, self.context)
        if isinstance(node, ast.Attribute):
            return descend(self.eval(node.value), node.attr)
        if isinstance(node, ast.Subscript):
            return descend(self.eval(node.value), str(self.eval(node.slice)))
        if isinstance(node, (ast.List, ast.Tuple)):
            return [self.eval(e) for e in node.elts]
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                result = True
                for value in node.values:
                    result = self.eval(value)
                    if not result:
                        return result
                return result
            result = False
            for value in node.values:
                result = self.eval(value)
                if result:
                    return result
            return result
        if isinstance(node, ast.UnaryOp):
            operand = self.eval(node.operand)
            if isinstance(node.op, ast.Not):
                return not operand
            if isinstance(node.op, ast.USub):
                return -operand
            return +operand
        if isinstance(node, ast.BinOp):
            return _BIN_OPS[type(node.op)](self.eval(node.left), self.eval(node.right))
        if isinstance(node, ast.Compare):
            left = self.eval(node.left)
            for op, comparator in zip(node.ops, node.comparators):
                right = self.eval(comparator)
                if not _CMP_OPS[type(op)](left, right):
                    return False
                left = right
            return True
        raise ValidationError(f"unsupported expression node {type(node).__name__}")


def evaluate_expression(expression: str, context: WorkflowContext) -> bool:
    tree = parse_expression(expression)
    try:
        return bool(_Evaluator(context).eval(tree))
    except (TypeError, ZeroDivisionError):
        # comparing against a missing value counts as false
        return False


def meets_threshold(value: Any, threshold: Optional[float]) -> bool:
    try:
        return value is not None and value >= (threshold or 0)
    except TypeError:
        return False
