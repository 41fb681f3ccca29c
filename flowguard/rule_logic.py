"""
Rule expression interpreter for compliance rules.

Expressions are small JSON trees:

    {"and": [{">=": [{"var": "amount"}, 100]}, {"==": [{"var": "country"}, "US"]}]}

Supported nodes are ``and``, ``or``, ``>=``, ``==`` and ``>``. Operands are
literals or ``{"var": "dotted.path"}`` references resolved against the
evaluation data. A missing path resolves to None and any comparison involving
None is False. Unknown node types evaluate to False.
"""

import logging
from decimal import Decimal
from numbers import Number
from typing import Any, Mapping, Optional

logger = logging.getLogger("rule_logic")

COMPARISON_OPERATORS = (">=", "==", ">")
LOGICAL_OPERATORS = ("and", "or")
KNOWN_OPERATORS = LOGICAL_OPERATORS + COMPARISON_OPERATORS


class RuleEvaluationError(Exception):
    """Raised when a known node is malformed or its operands cannot be compared."""


def resolve_path(data: Any, path: str) -> Any:
    """Resolve a dotted path against nested mappings. Missing keys yield None."""
    value = data
    for key in path.split("."):
        if isinstance(value, Mapping):
            value = value.get(key)
        elif isinstance(value, (list, tuple)) and key.isdigit():
            index = int(key)
            value = value[index] if index < len(value) else None
        else:
            return None
        if value is None:
            return None
    return value


def _operand(ref: Any, data: Mapping[str, Any]) -> Any:
    if isinstance(ref, Mapping) and "var" in ref:
        path = ref["var"]
        if not isinstance(path, str):
            raise RuleEvaluationError(f"var reference must be a string, got {type(path).__name__}")
        return resolve_path(data, path)
    return ref


def _is_number(value: Any) -> bool:
    return isinstance(value, (Number, Decimal)) and not isinstance(value, bool)


def _equals(left: Any, right: Any) -> bool:
    if _is_number(left) and _is_number(right):
        return left == right
    if type(left) is not type(right):
        return False
    return left == right


def _compare(operator: str, args: Any, data: Mapping[str, Any]) -> bool:
    if not isinstance(args, (list, tuple)) or len(args) != 2:
        raise RuleEvaluationError(f"'{operator}' expects exactly two operands")

    left = _operand(args[0], data)
    right = _operand(args[1], data)
    if left is None or right is None:
        return False

    if operator == "==":
        return _equals(left, right)

    try:
        if operator == ">=":
            return bool(left >= right)
        return bool(left > right)
    except TypeError as e:
        raise RuleEvaluationError(
            f"cannot compare {type(left).__name__} {operator} {type(right).__name__}"
        ) from e


def evaluate_logic(expression: Any, data: Mapping[str, Any]) -> bool:
    """
    Evaluate an expression tree against data.

    Raises:
        RuleEvaluationError: for malformed known nodes or incomparable operands
    """
    if not isinstance(expression, Mapping) or len(expression) != 1:
        logger.debug("Unrecognised rule node treated as false: %r", expression)
        return False

    operator, args = next(iter(expression.items()))

    if operator in LOGICAL_OPERATORS:
        if not isinstance(args, (list, tuple)):
            raise RuleEvaluationError(f"'{operator}' expects a list of conditions")
        if operator == "and":
            return all(evaluate_logic(condition, data) for condition in args)
        return any(evaluate_logic(condition, data) for condition in args)

    if operator in COMPARISON_OPERATORS:
        return _compare(operator, args, data)

    logger.debug("Unknown rule operator '%s' treated as false", operator)
    return False


def unknown_operators(expression: Any, found: Optional[list[str]] = None) -> list[str]:
    """List operators in an expression tree that the interpreter does not support."""
    found = [] if found is None else found
    if not isinstance(expression, Mapping):
        return found
    for operator, args in expression.items():
        if operator == "var":
            continue
        if operator not in KNOWN_OPERATORS:
            found.append(operator)
        elif operator in LOGICAL_OPERATORS and isinstance(args, (list, tuple)):
            for condition in args:
                unknown_operators(condition, found)
    return found
