"""
Deterministic visibility evaluator for form fields.

A field is visible when its static `visible` flag is set and its
`visibilityCondition` (if any) holds against the current values. A
condition whose controlling field is itself hidden never holds, so
hiding a field hides everything that depends on it.
"""

from collections.abc import Mapping
from typing import Any

from formdesk.core.schema import InputField, VisibilityCondition


def is_field_visible(
    field: InputField,
    values: Mapping[str, Any],
    fields_by_key: Mapping[str, InputField] | None = None,
) -> bool:
    """Determine if a field should be visible given the current values.

    Args:
        field: The input field to evaluate.
        values: Current values keyed by field key.
        fields_by_key: Optional lookup of the template's input fields.
            When supplied, the controlling field's own visibility is
            evaluated too (chained conditions).

    Returns:
        True if the field should be visible, False otherwise.
    """
    if not field.visible:
        return False
    return is_condition_met(field, values, fields_by_key)


def is_condition_met(
    field: InputField,
    values: Mapping[str, Any],
    fields_by_key: Mapping[str, InputField] | None = None,
) -> bool:
    """Evaluate only the conditional part of a field's visibility.

    Statically hidden fields are not rejected here; callers that build
    pages have already dropped them.
    """
    condition = field.visibility_condition
    if condition is None:
        return True

    if fields_by_key is not None:
        controller = fields_by_key.get(condition.depends_on_field_key)
        # Template validation rejects cycles, so this recursion terminates
        if controller is not None and not is_condition_met(controller, values, fields_by_key):
            return False

    return _evaluate_condition(condition, values)


def _evaluate_condition(condition: VisibilityCondition, values: Mapping[str, Any]) -> bool:
    current = values.get(condition.depends_on_field_key)
    expected = condition.equals_value

    if expected is None:
        return _is_blank(current)
    if current is None:
        return False

    if isinstance(current, (list, tuple)):
        if isinstance(expected, (list, tuple)):
            return [_normalize(v) for v in current] == [_normalize(v) for v in expected]
        # A multi-valued controller matches when the expected option is selected
        return _normalize(expected) in {_normalize(v) for v in current}

    return _normalize(current) == _normalize(expected)


def _normalize(value: Any) -> str:
    """Compare values the way they arrive from form widgets: as text."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple)):
        return len(value) == 0
    return False
