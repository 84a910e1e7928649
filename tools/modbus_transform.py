#!/usr/bin/env python3
"""
modbus_transform.py - Post-decode value transforms

A field's raw numeric value goes through at most one of:
    expression - remap via a restricted expression of `x` (any result type)
    lookup     - remap an integer code to a label
    scale      - multiply by a constant (default 1)

Remaps are modelled as evaluators behind one narrow interface,
`evaluate(x) -> value` raising EvalError, so the expression language can be
swapped without touching the decoder.

Expression syntax:
    x * 0.1 + 3           arithmetic on the raw value (`value` is an alias)
    sqrt(x) / 2           math functions: sqrt, pow, log, log10, exp, ...
    x > 0 ? 'ON' : 'OFF'  C-style ternary (rewritten to Python's form)
    'ON' if x else 'OFF'  Python conditional expression
"""

import ast
import math
import re
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from modbus_errors import EvalError


class ValueEvaluator:
    """Interface: turn a raw decoded number into an output value."""

    def evaluate(self, x: float) -> Any:
        raise NotImplementedError


_MATH_FUNCTIONS = {
    name: getattr(math, name)
    for name in ('sqrt', 'pow', 'log', 'log10', 'log2', 'exp', 'floor', 'ceil',
                 'fabs', 'sin', 'cos', 'tan', 'atan2', 'hypot', 'isnan', 'isinf',
                 'pi', 'e')
}

_SAFE_BUILTINS = {
    'abs': abs, 'min': min, 'max': max, 'round': round,
    'int': int, 'float': float, 'str': str, 'bool': bool, 'hex': hex,
}

_INPUT_NAMES = ('x', 'value')

ALLOWED_NAMES = frozenset(_MATH_FUNCTIONS) | frozenset(_SAFE_BUILTINS) | frozenset(_INPUT_NAMES) | {'math'}

_TERNARY = re.compile(r'^(.+?)\s*\?\s*(.+?)\s*:\s*(.+)$')


class ExpressionEvaluator(ValueEvaluator):
    """
    Restricted Python expression evaluated against the raw value.

    The expression is parsed and checked once at construction; only the
    names in ALLOWED_NAMES may appear and attribute access is limited to
    public names (e.g. `math.sqrt`). Builtins are not reachable.
    """

    def __init__(self, source: str):
        if not isinstance(source, str) or not source.strip():
            raise EvalError("Expression must be a non-empty string")
        self.source = source

        expr = source.strip()
        # Convert C-style ternary (cond ? a : b) to Python (a if cond else b)
        ternary = _TERNARY.match(expr)
        if ternary:
            cond, true_val, false_val = ternary.groups()
            expr = f"({true_val}) if ({cond}) else ({false_val})"
        self.expr = expr

        try:
            tree = ast.parse(expr, mode='eval')
        except SyntaxError as e:
            raise EvalError(f"Invalid expression '{source}': {e.msg}") from e
        self._check(tree)
        self._code = compile(tree, f"<expression {source!r}>", 'eval')

    def _check(self, tree: ast.AST) -> None:
        for node in ast.walk(tree):
            if isinstance(node, ast.Name) and node.id not in ALLOWED_NAMES:
                raise EvalError(f"Invalid expression '{self.source}': unknown name '{node.id}'")
            if isinstance(node, ast.Attribute) and node.attr.startswith('_'):
                raise EvalError(f"Invalid expression '{self.source}': access to '{node.attr}' not allowed")
            if isinstance(node, (ast.Lambda, ast.ListComp, ast.SetComp, ast.DictComp,
                                 ast.GeneratorExp, ast.NamedExpr)):
                raise EvalError(f"Invalid expression '{self.source}': "
                                f"{type(node).__name__} not allowed")

    def evaluate(self, x: float) -> Any:
        namespace: Dict[str, Any] = {'__builtins__': {}, 'math': math}
        namespace.update(_MATH_FUNCTIONS)
        namespace.update(_SAFE_BUILTINS)
        namespace['x'] = x
        namespace['value'] = x
        try:
            return eval(self._code, namespace)
        except Exception as e:
            raise EvalError(f"Expression evaluation failed: '{self.source}' with x={x}: {e}") from e

    def __repr__(self) -> str:
        return f"ExpressionEvaluator({self.source!r})"


class LookupEvaluator(ValueEvaluator):
    """Map integer codes to labels; unmapped codes become 'unknown(<n>)'."""

    def __init__(self, table: Mapping[Any, Any]):
        if not isinstance(table, Mapping) or not table:
            raise EvalError("Lookup table must be a non-empty mapping")
        normalized = {}
        for key, label in table.items():
            # YAML may hand us string keys
            try:
                normalized[int(key)] = label
            except (TypeError, ValueError) as e:
                raise EvalError(f"Lookup key {key!r} is not an integer") from e
        self.table = MappingProxyType(normalized)

    def evaluate(self, x: float) -> Any:
        if not isinstance(x, (int, float)) or isinstance(x, bool):
            raise EvalError(f"Lookup needs a number, got {type(x).__name__}")
        if isinstance(x, float) and not x.is_integer():
            return f"unknown({x})"
        code = int(x)
        if code in self.table:
            return self.table[code]
        return f"unknown({code})"

    def __repr__(self) -> str:
        return f"LookupEvaluator({dict(self.table)!r})"


def apply_transform(field_spec, raw_value: float) -> Any:
    """
    Apply a field's transform to its raw decoded value.

    An evaluator (expression or lookup) wins over scale; its result is used
    verbatim. Otherwise the value is scaled and value_type is applied.

    Raises:
        EvalError: the evaluator failed
    """
    evaluator: Optional[ValueEvaluator] = field_spec.evaluator
    if evaluator is not None:
        return evaluator.evaluate(raw_value)

    value = raw_value * field_spec.scale
    if field_spec.value_type == 'int':
        if math.isnan(value) or math.isinf(value):
            raise EvalError(f"Cannot convert {value} to int")
        value = int(round(value))
    elif field_spec.value_type == 'float':
        value = float(value)
    return value
