"""
Binding condition parsing and evaluation.

Conditions arrive from the store as JSON text, a mapping or a list:

- ``{"field": value, ...}``: every field must equal its value.
- ``[{"field": ..., "operator": ..., "value": ...}, ...]``: explicit
  operators (see ``ConditionOperator``).

Parsing happens once at the loading boundary; malformed conditions are a
data-integrity defect, not a deny.
"""

import json
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from shared.errors import DataIntegrityError
from shared.logging import get_logger
from .models import BindingCondition, ConditionOperator


logger = get_logger("permissions.conditions")

_MISSING = object()


class ConditionOutcome(str, Enum):
    """Result of evaluating a binding's conditions."""
    MET = "met"
    UNMET = "unmet"
    UNKNOWN = "unknown"  # a referenced field is absent from the request


def parse_conditions(raw: Any) -> Tuple[BindingCondition, ...]:
    """Parse stored conditions into immutable ``BindingCondition`` values."""
    if raw is None:
        return ()
    if isinstance(raw, str):
        if not raw.strip():
            return ()
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise DataIntegrityError("Conditions are not valid JSON", {"error": str(e)})

    if isinstance(raw, Mapping):
        return tuple(
            BindingCondition(field=str(key), operator=ConditionOperator.EQUALS, value=_freeze(value))
            for key, value in sorted(raw.items())
        )

    if isinstance(raw, (list, tuple)):
        return tuple(_parse_condition(item) for item in raw)

    raise DataIntegrityError("Conditions must be an object or a list", {"type": type(raw).__name__})


def _parse_condition(item: Any) -> BindingCondition:
    if isinstance(item, BindingCondition):
        return item
    if not isinstance(item, Mapping) or "field" not in item or "value" not in item:
        raise DataIntegrityError("Condition entries need 'field' and 'value'", {"condition": repr(item)})
    try:
        operator = ConditionOperator(item.get("operator", ConditionOperator.EQUALS.value))
    except ValueError:
        raise DataIntegrityError("Unknown condition operator", {"operator": item.get("operator")})
    if operator in (ConditionOperator.IN, ConditionOperator.NOT_IN) and not isinstance(item["value"], (list, tuple)):
        raise DataIntegrityError("'in' conditions need a list value", {"field": item["field"]})
    return BindingCondition(
        field=str(item["field"]),
        operator=operator,
        value=_freeze(item["value"]),
        description=item.get("description")
    )


def _freeze(value: Any) -> Any:
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def conditions_to_dicts(conditions: Iterable[BindingCondition]) -> list:
    """Serializable form, used in decisions."""
    return [
        {
            "field": c.field,
            "operator": c.operator.value,
            "value": list(c.value) if isinstance(c.value, tuple) else c.value,
            "description": c.description
        }
        for c in conditions
    ]


class ConditionEvaluator:
    """Evaluates binding conditions against request attributes."""

    def evaluate(self, conditions: Iterable[BindingCondition], attributes: Optional[Mapping[str, Any]],
                 request: Mapping[str, Any]) -> ConditionOutcome:
        """All conditions must hold. A missing field makes the outcome UNKNOWN
        unless another condition is already known to fail."""
        outcome = ConditionOutcome.MET
        for condition in conditions:
            value = self._get_field_value(condition.field, attributes or {}, request)
            if value is _MISSING:
                outcome = ConditionOutcome.UNKNOWN
                continue
            if not self._evaluate_condition(condition, value):
                return ConditionOutcome.UNMET
        return outcome

    def _evaluate_condition(self, condition: BindingCondition, field_value: Any) -> bool:
        """Evaluate a single condition."""
        try:
            if condition.operator == ConditionOperator.EQUALS:
                return _loose_equals(field_value, condition.value)

            elif condition.operator == ConditionOperator.NOT_EQUALS:
                return not _loose_equals(field_value, condition.value)

            elif condition.operator == ConditionOperator.IN:
                return any(_loose_equals(field_value, v) for v in condition.value)

            elif condition.operator == ConditionOperator.NOT_IN:
                return not any(_loose_equals(field_value, v) for v in condition.value)

            elif condition.operator == ConditionOperator.GREATER_THAN:
                return field_value > condition.value

            elif condition.operator == ConditionOperator.LESS_THAN:
                return field_value < condition.value

            elif condition.operator == ConditionOperator.CONTAINS:
                if isinstance(field_value, (list, tuple, set, frozenset)):
                    return any(_loose_equals(v, condition.value) for v in field_value)
                return str(condition.value) in str(field_value)

            elif condition.operator == ConditionOperator.STARTS_WITH:
                return str(field_value).startswith(str(condition.value))

            elif condition.operator == ConditionOperator.ENDS_WITH:
                return str(field_value).endswith(str(condition.value))

        except TypeError as e:
            # Incomparable types (e.g. "abc" > 3) never satisfy a condition
            logger.warning("Condition not comparable", field=condition.field, error=str(e))
            return False

        return False

    def _get_field_value(self, field: str, attributes: Mapping[str, Any], request: Mapping[str, Any]) -> Any:
        """Get field value from attributes, then the request itself."""
        if field in attributes:
            return attributes[field]

        if field in request:
            return request[field]

        # Nested fields (e.g. "project.owner")
        if "." in field:
            value: Any = attributes
            for part in field.split("."):
                if isinstance(value, Mapping) and part in value:
                    value = value[part]
                else:
                    return _MISSING
            return value

        return _MISSING


def _loose_equals(left: Any, right: Any) -> bool:
    """Equality that treats "1" and 1 alike, as stored JSON conditions are loosely typed."""
    if left == right:
        return True
    return str(left) == str(right)


def request_fields(user_id: str, resource_type: str, resource_id: str, action: str) -> Dict[str, Any]:
    """Special fields always available to conditions."""
    return {
        "user_id": user_id,
        "resource_type": resource_type,
        "resource_id": resource_id,
        "action": action,
    }
