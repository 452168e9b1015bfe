"""Tests for trigger condition parsing."""

import pytest

from axremediation.core.errors import RuleConfigurationError
from axremediation.engine.conditions import (
    AllCondition,
    EqualsCondition,
    ExpressionCondition,
    MembershipCondition,
    SustainedCondition,
    ThresholdCondition,
    parse_condition,
    parse_field,
)
from axremediation.models.rule import Rule


def test_parse_threshold():
    condition = parse_condition({
        "type": "threshold",
        "field": "sql_health.cpu_usage",
        "operator": ">",
        "value": 80,
    })

    assert isinstance(condition, ThresholdCondition)
    assert condition.field.path == "sql_health.cpu_usage"
    assert condition.op == ">"
    assert condition.value == 80.0


def test_parse_sustained_defaults_operator():
    condition = parse_condition({
        "type": "sustained",
        "field": "kpi.batch_backlog",
        "value": 100,
        "duration_seconds": 60,
    })

    assert isinstance(condition, SustainedCondition)
    assert condition.op == ">="
    assert condition.duration_seconds == 60.0


def test_parse_nested_all():
    condition = parse_condition({
        "type": "all",
        "conditions": [
            {"type": "equals", "field": "alert.type", "value": "Deadlock"},
            {"type": "in", "field": "alert.severity", "values": ["High", "Critical"]},
            {"type": "expression", "expression": "alert_count > 0"},
        ],
    })

    assert isinstance(condition, AllCondition)
    equals, membership, expression = condition.conditions
    assert isinstance(equals, EqualsCondition)
    assert isinstance(membership, MembershipCondition)
    assert membership.values == frozenset({"High", "Critical"})
    assert isinstance(expression, ExpressionCondition)


def test_kpi_names_are_open_ended():
    assert parse_field("kpi.anything_the_dashboard_reports").name == "anything_the_dashboard_reports"


@pytest.mark.parametrize(
    "path",
    [
        "cpu_usage",
        "disk.free_space",
        "sql_health.not_a_metric",
        "blocking.",
        None,
    ],
)
def test_invalid_field_reference(path):
    with pytest.raises(RuleConfigurationError):
        parse_field(path)


@pytest.mark.parametrize(
    "raw",
    [
        {"type": "threshold", "field": "sql_health.cpu_usage", "operator": "=>", "value": 80},
        {"type": "threshold", "field": "sql_health.cpu_usage", "value": "80"},
        {"type": "sustained", "field": "blocking.duration_seconds", "value": 60, "duration_seconds": 60},
        {"type": "sustained", "field": "sql_health.cpu_usage", "value": 80, "duration_seconds": 0},
        {"type": "in", "field": "alert.type", "values": []},
        {"type": "all", "conditions": []},
        {"type": "expression", "expression": "cpu >"},
        {"type": "regex", "field": "alert.message"},
        ["not", "an", "object"],
    ],
)
def test_malformed_conditions_are_rejected(raw):
    with pytest.raises(RuleConfigurationError):
        parse_condition(raw)


def test_rule_accepts_serialized_condition():
    rule = Rule(
        rule_id="rule_cpu",
        name="CPU",
        trigger_condition='{"type": "threshold", "field": "sql_health.cpu_usage", "value": 90}',
    )

    assert rule.trigger_condition["type"] == "threshold"


def test_rule_treats_plain_text_as_expression():
    rule = Rule(rule_id="rule_text", name="Text", trigger_condition="sql_health_cpu_usage > 90")

    assert rule.trigger_condition == {"type": "expression", "expression": "sql_health_cpu_usage > 90"}
