"""
Threshold conditions evaluated against reading values.

Conditions are plain data (a comparison of a named value against a literal
or a named threshold) and are interpreted by `evaluate`. String rules such
as "power > high_usage" are parsed into the same structures; nothing is
ever executed as code.
"""
import operator
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Tuple, Union

OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Ref:
    """Named threshold looked up at evaluation time."""
    name: str


@dataclass(frozen=True)
class Comparison:
    field: str
    op: str
    operand: Union[Literal, Ref]

    def __post_init__(self):
        if self.op not in OPERATORS:
            raise ValueError(f"Unsupported operator: {self.op}")


@dataclass(frozen=True)
class AllOf:
    terms: Tuple["Condition", ...]


@dataclass(frozen=True)
class AnyOf:
    terms: Tuple["Condition", ...]


Condition = Union[Comparison, AllOf, AnyOf]

_RULE = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*(<=|>=|==|!=|<|>|=)\s*(.+?)\s*$")


def _operand(text: str) -> Union[Literal, Ref]:
    lowered = text.lower()
    if lowered in ("true", "false"):
        return Literal(lowered == "true")
    try:
        return Literal(float(text))
    except ValueError:
        pass
    if re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", text):
        return Ref(text)
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
        return Literal(text[1:-1])
    return Literal(text)


def parse_condition(rule: str) -> Comparison:
    """Parse "field op operand", e.g. "voltage < low_voltage" or "temperature > 28"."""
    match = _RULE.match(rule)
    if not match:
        raise ValueError(f"Cannot parse condition: {rule!r}")
    field, op, rhs = match.groups()
    if op == "=":
        op = "=="
    return Comparison(field, op, _operand(rhs))


def evaluate(condition: Condition, values: Mapping[str, Any],
             thresholds: Mapping[str, Any] = None) -> bool:
    """
    Interpret a condition against a set of values.

    A comparison whose field or threshold is absent evaluates to False.
    """
    thresholds = thresholds or {}
    if isinstance(condition, AllOf):
        return all(evaluate(t, values, thresholds) for t in condition.terms)
    if isinstance(condition, AnyOf):
        return any(evaluate(t, values, thresholds) for t in condition.terms)
    if isinstance(condition, Comparison):
        if condition.field not in values:
            return False
        operand = condition.operand
        if isinstance(operand, Ref):
            if operand.name not in thresholds:
                return False
            rhs = thresholds[operand.name]
        else:
            rhs = operand.value
        try:
            return bool(OPERATORS[condition.op](values[condition.field], rhs))
        except TypeError:
            return False
    raise TypeError(f"Not a condition: {condition!r}")


# Alert name → condition over reading values and meter alert thresholds
ALERT_RULES: Dict[str, Condition] = {
    "high_usage": parse_condition("power > high_usage"),
    "low_voltage": parse_condition("voltage < low_voltage"),
    "high_voltage": parse_condition("voltage > high_voltage"),
    "low_power_factor": parse_condition("power_factor < power_factor"),
}


def check_alerts(values: Mapping[str, Any], thresholds: Mapping[str, Any],
                 rules: Mapping[str, Condition] = None) -> List[str]:
    """Names of the alert rules that fire for the given values."""
    rules = ALERT_RULES if rules is None else rules
    return [name for name, cond in rules.items() if evaluate(cond, values, thresholds)]
