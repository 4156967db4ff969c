"""
Submission-time validation of field values.

Pure functions: the result depends only on the field definitions and
the values passed in. Malformed rules (an uncompilable pattern, a
non-numeric value under a numeric bound) degrade to "no constraint"
rather than raising.
"""

import math
import re
from collections.abc import Iterable, Mapping
from functools import lru_cache
from typing import Any

from formdesk.core.schema import FieldDefinition, InputField


def is_empty(value: Any) -> bool:
    """None, a whitespace-only string, or an empty sequence."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple)):
        return len(value) == 0
    return False


def validate_field(field: FieldDefinition, value: Any) -> str | None:
    """Validate a single value against its field definition.

    Checks run in order and the first failure wins: required-ness,
    numeric bounds, length bounds, pattern.

    Args:
        field: The field definition. Page breaks carry no value and
            always pass.
        value: The current value (any type; never raises).

    Returns:
        An error message, or None if the value is acceptable.
    """
    if field.is_page_break:
        return None

    label = field.display_name

    if field.required and is_empty(value):
        return f"{label} is required"

    rule = field.validation_rule
    if rule is None:
        return None

    if field.is_numeric and not is_empty(value):
        number = _as_number(value)
        if number is not None:
            if rule.min is not None and number < rule.min:
                return f"{label} must be ≥ {rule.min}"
            if rule.max is not None and number > rule.max:
                return f"{label} must be ≤ {rule.max}"

    if isinstance(value, (str, list, tuple)):
        unit = "characters" if isinstance(value, str) else "items"
        if rule.min_length is not None and len(value) < rule.min_length:
            return f"{label} must have at least {rule.min_length} {unit}"
        if rule.max_length is not None and len(value) > rule.max_length:
            return f"{label} must have at most {rule.max_length} {unit}"

    if rule.pattern and isinstance(value, str) and value != "":
        compiled = _compile_pattern(rule.pattern)
        if compiled is not None and compiled.search(value) is None:
            return f"{label} does not match required format"

    return None


def validate_page(
    fields: Iterable[FieldDefinition],
    values: Mapping[str, Any],
) -> dict[str, str]:
    """Validate every field of a page.

    Returns:
        {field_key: message} for failing fields; empty when the page is valid.
    """
    errors: dict[str, str] = {}
    for field in fields:
        if field.is_page_break:
            continue
        message = validate_field(field, values.get(field.field_key))
        if message:
            errors[field.field_key] = message
    return errors


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return None if math.isnan(number) else number


@lru_cache(maxsize=256)
def _compile_pattern(pattern: str) -> re.Pattern | None:
    """Compile a stored pattern; a broken one means no constraint."""
    try:
        return re.compile(pattern)
    except (re.error, OverflowError):
        return None
