"""Trigger condition variants and their parser.

Conditions are stored on the rule as JSON and parsed once per catalog refresh
into the frozen structures below. Supported shapes::

    {"type": "threshold", "field": "sql_health.cpu_usage", "operator": ">=", "value": 80}
    {"type": "sustained", "field": "sql_health.cpu_usage", "operator": ">=", "value": 80,
     "duration_seconds": 60}
    {"type": "equals", "field": "alert.type", "value": "Deadlock"}
    {"type": "in", "field": "alert.severity", "values": ["High", "Critical"]}
    {"type": "all", "conditions": [...]}
    {"type": "expression", "expression": "sql_health_cpu_usage > 80 and alert_count > 0"}
"""

import ast
import operator
from dataclasses import dataclass
from typing import Any, Callable, Union

from axremediation.core.errors import RuleConfigurationError
from axremediation.models.signal import (
    ALERT_FIELDS,
    BLOCKING_FIELDS,
    COLLECTION_SOURCES,
    SCALAR_SOURCES,
    SOURCE_ALERT,
    SOURCE_BLOCKING,
    SOURCE_SQL_HEALTH,
    SQL_HEALTH_FIELDS,
)

OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}

_KNOWN_ATTRIBUTES = {
    SOURCE_SQL_HEALTH: SQL_HEALTH_FIELDS,
    SOURCE_ALERT: ALERT_FIELDS,
    SOURCE_BLOCKING: BLOCKING_FIELDS,
}


@dataclass(frozen=True)
class FieldRef:
    """Reference to a signal field, e.g. ``blocking.duration_seconds``."""

    source: str
    name: str

    @property
    def path(self) -> str:
        return f"{self.source}.{self.name}"

    @property
    def is_collection(self) -> bool:
        return self.source in COLLECTION_SOURCES


@dataclass(frozen=True)
class ThresholdCondition:
    field: FieldRef
    op: str
    value: float


@dataclass(frozen=True)
class SustainedCondition:
    field: FieldRef
    op: str
    value: float
    duration_seconds: float


@dataclass(frozen=True)
class EqualsCondition:
    field: FieldRef
    value: str


@dataclass(frozen=True)
class MembershipCondition:
    field: FieldRef
    values: frozenset[str]


@dataclass(frozen=True)
class AllCondition:
    conditions: tuple["Condition", ...]


@dataclass(frozen=True)
class ExpressionCondition:
    expression: str


Condition = Union[
    ThresholdCondition,
    SustainedCondition,
    EqualsCondition,
    MembershipCondition,
    AllCondition,
    ExpressionCondition,
]


def parse_field(path: Any) -> FieldRef:
    """Parse and validate a ``source.name`` field path.

    Raises:
        RuleConfigurationError: If the source or attribute is unknown
    """
    if not isinstance(path, str) or "." not in path:
        raise RuleConfigurationError(f"Invalid field reference: {path!r}")

    source, name = path.split(".", 1)
    if source not in SCALAR_SOURCES | COLLECTION_SOURCES:
        raise RuleConfigurationError(f"Unknown signal source '{source}' in {path!r}")
    if not name:
        raise RuleConfigurationError(f"Missing field name in {path!r}")

    # KPI names are open-ended; the other sources are typed
    known = _KNOWN_ATTRIBUTES.get(source)
    if known is not None and name not in known:
        raise RuleConfigurationError(f"Unknown field '{name}' for source '{source}'")

    return FieldRef(source=source, name=name)


def _parse_operator(raw: dict[str, Any]) -> str:
    op = raw.get("operator", ">=")
    if op not in OPERATORS:
        raise RuleConfigurationError(f"Unsupported operator: {op!r}")
    return op


def _parse_number(raw: dict[str, Any], key: str) -> float:
    value = raw.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise RuleConfigurationError(f"'{key}' must be a number, got {value!r}")
    return float(value)


def parse_condition(raw: Any) -> Condition:
    """Parse a serialized trigger condition into its evaluable form.

    Args:
        raw: Decoded JSON condition

    Returns:
        Immutable condition structure

    Raises:
        RuleConfigurationError: If the condition is malformed
    """
    if not isinstance(raw, dict):
        raise RuleConfigurationError(f"Condition must be an object, got {type(raw).__name__}")

    kind = raw.get("type")

    if kind == "threshold":
        return ThresholdCondition(
            field=parse_field(raw.get("field")),
            op=_parse_operator(raw),
            value=_parse_number(raw, "value"),
        )

    if kind == "sustained":
        field = parse_field(raw.get("field"))
        if field.is_collection:
            raise RuleConfigurationError(
                f"Sustained conditions need a scalar field, got {field.path!r}"
            )
        duration = _parse_number(raw, "duration_seconds")
        if duration <= 0:
            raise RuleConfigurationError("'duration_seconds' must be positive")
        return SustainedCondition(
            field=field,
            op=_parse_operator(raw),
            value=_parse_number(raw, "value"),
            duration_seconds=duration,
        )

    if kind == "equals":
        value = raw.get("value")
        if not isinstance(value, str):
            raise RuleConfigurationError(f"'value' must be a string, got {value!r}")
        return EqualsCondition(field=parse_field(raw.get("field")), value=value)

    if kind == "in":
        values = raw.get("values")
        if not isinstance(values, list) or not values or not all(isinstance(v, str) for v in values):
            raise RuleConfigurationError("'values' must be a non-empty list of strings")
        return MembershipCondition(field=parse_field(raw.get("field")), values=frozenset(values))

    if kind == "all":
        children = raw.get("conditions")
        if not isinstance(children, list) or not children:
            raise RuleConfigurationError("'conditions' must be a non-empty list")
        return AllCondition(conditions=tuple(parse_condition(child) for child in children))

    if kind == "expression":
        expression = raw.get("expression")
        if not isinstance(expression, str) or not expression.strip():
            raise RuleConfigurationError("'expression' must be a non-empty string")
        try:
            ast.parse(expression.strip(), mode="eval")
        except SyntaxError as e:
            raise RuleConfigurationError(f"Invalid expression {expression!r}: {e.msg}") from e
        return ExpressionCondition(expression=expression.strip())

    raise RuleConfigurationError(f"Unknown condition type: {kind!r}")
