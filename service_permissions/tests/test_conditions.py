"""
Unit tests for binding condition parsing and evaluation.
"""

import pytest

from shared.errors import DataIntegrityError
from service_permissions.app.rbac.conditions import (
    ConditionEvaluator, ConditionOutcome, conditions_to_dicts, parse_conditions, request_fields
)
from service_permissions.app.rbac.models import BindingCondition, ConditionOperator


class TestParseConditions:
    """Test cases for parse_conditions."""

    def test_empty_inputs(self):
        """Test absent conditions."""
        assert parse_conditions(None) == ()
        assert parse_conditions("") == ()
        assert parse_conditions("   ") == ()
        assert parse_conditions({}) == ()

    def test_mapping_means_equality(self):
        """Test the object form."""
        conditions = parse_conditions('{"region": "eu", "tier": 2}')

        assert conditions == (
            BindingCondition("region", ConditionOperator.EQUALS, "eu"),
            BindingCondition("tier", ConditionOperator.EQUALS, 2),
        )

    def test_list_with_operators(self):
        """Test the explicit operator form."""
        conditions = parse_conditions([
            {"field": "env", "operator": "in", "value": ["dev", "staging"], "description": "non-prod"},
            {"field": "size", "operator": "less_than", "value": 10},
        ])

        assert conditions[0].operator == ConditionOperator.IN
        assert conditions[0].value == ("dev", "staging")
        assert conditions[0].description == "non-prod"
        assert conditions[1].operator == ConditionOperator.LESS_THAN

    def test_operator_defaults_to_equals(self):
        """Test entries without an operator."""
        (condition,) = parse_conditions([{"field": "env", "value": "dev"}])

        assert condition.operator == ConditionOperator.EQUALS

    @pytest.mark.parametrize("raw", [
        "{not json",
        "42",
        [{"field": "env"}],
        [{"field": "env", "operator": "resembles", "value": "dev"}],
        [{"field": "env", "operator": "in", "value": "dev"}],
        ["env == dev"],
    ])
    def test_malformed_conditions_rejected(self, raw):
        """Test malformed conditions are data-integrity errors."""
        with pytest.raises(DataIntegrityError):
            parse_conditions(raw)

    def test_conditions_to_dicts(self):
        """Test the serializable form."""
        conditions = parse_conditions([{"field": "env", "operator": "in", "value": ["dev"]}])

        assert conditions_to_dicts(conditions) == [
            {"field": "env", "operator": "in", "value": ["dev"], "description": None}
        ]


class TestConditionEvaluator:
    """Test cases for ConditionEvaluator."""

    @pytest.fixture
    def evaluator(self):
        """Create ConditionEvaluator instance."""
        return ConditionEvaluator()

    @pytest.fixture
    def request_context(self):
        """Request special fields."""
        return request_fields("user-1", "workspace", "ws-w", "read")

    def test_no_conditions_met(self, evaluator, request_context):
        """Test an empty condition list holds."""
        assert evaluator.evaluate((), None, request_context) == ConditionOutcome.MET

    def test_equality_met_and_unmet(self, evaluator, request_context):
        """Test equality against attributes."""
        conditions = parse_conditions({"region": "eu"})

        assert evaluator.evaluate(conditions, {"region": "eu"}, request_context) == ConditionOutcome.MET
        assert evaluator.evaluate(conditions, {"region": "us"}, request_context) == ConditionOutcome.UNMET

    def test_missing_field_unknown(self, evaluator, request_context):
        """Test absent attributes make the outcome unknown."""
        conditions = parse_conditions({"region": "eu"})

        assert evaluator.evaluate(conditions, {}, request_context) == ConditionOutcome.UNKNOWN
        assert evaluator.evaluate(conditions, None, request_context) == ConditionOutcome.UNKNOWN

    def test_known_failure_beats_unknown(self, evaluator, request_context):
        """Test a failing condition decides even when another is unknown."""
        conditions = parse_conditions({"region": "eu", "tier": 2})

        assert evaluator.evaluate(conditions, {"tier": 3}, request_context) == ConditionOutcome.UNMET

    def test_request_fields_available(self, evaluator, request_context):
        """Test special request fields."""
        conditions = parse_conditions([{"field": "resource_id", "operator": "starts_with", "value": "ws-"}])

        assert evaluator.evaluate(conditions, {}, request_context) == ConditionOutcome.MET

    def test_attributes_shadow_request_fields(self, evaluator, request_context):
        """Test attributes take precedence."""
        conditions = parse_conditions({"action": "write"})

        assert evaluator.evaluate(conditions, {"action": "write"}, request_context) == ConditionOutcome.MET

    def test_dotted_path(self, evaluator, request_context):
        """Test nested attribute lookup."""
        conditions = parse_conditions({"project.owner": "user-1"})

        assert evaluator.evaluate(conditions, {"project": {"owner": "user-1"}}, request_context) == ConditionOutcome.MET
        assert evaluator.evaluate(conditions, {"project": {}}, request_context) == ConditionOutcome.UNKNOWN

    def test_loose_equality(self, evaluator, request_context):
        """Test stored JSON values compare loosely."""
        conditions = parse_conditions({"tier": "2"})

        assert evaluator.evaluate(conditions, {"tier": 2}, request_context) == ConditionOutcome.MET

    @pytest.mark.parametrize("operator,value,attribute,expected", [
        ("not_equals", "prod", "dev", ConditionOutcome.MET),
        ("in", ["dev", "qa"], "qa", ConditionOutcome.MET),
        ("not_in", ["dev", "qa"], "qa", ConditionOutcome.UNMET),
        ("greater_than", 5, 7, ConditionOutcome.MET),
        ("less_than", 5, 7, ConditionOutcome.UNMET),
        ("contains", "ops", ["dev", "ops"], ConditionOutcome.MET),
        ("contains", "ops", "devops", ConditionOutcome.MET),
        ("ends_with", "-prod", "eu-prod", ConditionOutcome.MET),
    ])
    def test_operators(self, evaluator, request_context, operator, value, attribute, expected):
        """Test each operator."""
        conditions = parse_conditions([{"field": "x", "operator": operator, "value": value}])

        assert evaluator.evaluate(conditions, {"x": attribute}, request_context) == expected

    def test_incomparable_types_unmet(self, evaluator, request_context):
        """Test ordering comparisons across types fail instead of raising."""
        conditions = parse_conditions([{"field": "x", "operator": "greater_than", "value": 3}])

        assert evaluator.evaluate(conditions, {"x": "abc"}, request_context) == ConditionOutcome.UNMET
