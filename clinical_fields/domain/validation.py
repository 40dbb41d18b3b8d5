"""Value validation for user-entered custom fields.

Raw values are checked against the definition's type and validation rules and
converted to the typed storage column they live in.

Supported rules (from ``FieldDefinition.parsed_validation_rules``):
    text/textarea: ``maxLength`` (or ``max_length``), ``pattern`` (regex search)
    number: ``min``, ``max``
    date: ``min_date``, ``max_date`` (ISO dates)
"""

import logging
import re
from datetime import date, datetime
from typing import Any, List, Optional

from clinical_fields.domain.models import FieldDefinition, FieldType, TypedValue
from clinical_fields.domain.ports import ValidationError

logger = logging.getLogger(__name__)

REQUIRED_MESSAGE = "This field is required"


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    if isinstance(value, (list, tuple, dict)) and not value:
        return True
    return False


def _fail(definition: FieldDefinition, message: str, value: Any = None) -> None:
    raise ValidationError(
        f"{definition.field_label}: {message}",
        field_name=definition.field_name,
        details={"definition_id": definition.id, "value": value}
    )


def _option_values(options: List[Any]) -> List[Any]:
    values = []
    for option in options or []:
        if isinstance(option, dict):
            values.append(option.get("value"))
        else:
            values.append(option)
    return values


def _numeric_rule(definition: FieldDefinition, rules: dict, key: str, convert=float) -> Optional[Any]:
    """Return a numeric rule value, or None when it is unset or malformed."""
    raw = rules.get(key)
    if raw is None:
        return None
    try:
        if isinstance(raw, bool):
            raise TypeError(key)
        return convert(raw)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring invalid {key} rule on field {definition.field_name}: {raw!r}")
        return None


def _parse_date(text: Any) -> date:
    if isinstance(text, datetime):
        return text.date()
    if isinstance(text, date):
        return text
    return date.fromisoformat(str(text).strip()[:10])


def validate_value(definition: FieldDefinition, value: Any) -> TypedValue:
    """Validate a raw value and convert it to its typed storage column.

    Parameters:
        definition: Target field definition
        value: Raw user input

    Returns:
        TypedValue: Value ready for storage (empty when the input is empty)

    Raises:
        ValidationError: The value violates the definition's constraints
    """
    if definition.is_calculated:
        _fail(definition, "Calculated fields cannot be set directly", value)

    if definition.field_type == FieldType.SEPARATOR:
        return TypedValue()

    if _is_empty(value):
        if definition.is_required:
            _fail(definition, REQUIRED_MESSAGE, value)
        return TypedValue()

    rules = definition.parsed_validation_rules
    field_type = definition.field_type

    if field_type in (FieldType.TEXT, FieldType.TEXTAREA):
        if isinstance(value, (dict, list, bool)):
            _fail(definition, "Must be text", value)
        text = str(value)
        length_key = "maxLength" if rules.get("maxLength") is not None else "max_length"
        max_length = _numeric_rule(definition, rules, length_key, int)
        if max_length is not None and len(text) > max_length:
            _fail(definition, f"Must be at most {max_length} characters", value)
        pattern = rules.get("pattern")
        if pattern:
            try:
                matched = re.search(pattern, text)
            except re.error:
                logger.warning(f"Ignoring invalid pattern rule on field {definition.field_name}")
                matched = True
            if not matched:
                _fail(definition, rules.get("pattern_message", "Invalid format"), value)
        return TypedValue(value_text=text)

    if field_type == FieldType.NUMBER:
        if isinstance(value, bool):
            _fail(definition, "Must be a number", value)
        try:
            number = float(value)
        except (TypeError, ValueError):
            _fail(definition, "Must be a number", value)
        if number != number or number in (float("inf"), float("-inf")):
            _fail(definition, "Must be a finite number", value)
        minimum = _numeric_rule(definition, rules, "min")
        maximum = _numeric_rule(definition, rules, "max")
        if minimum is not None and number < minimum:
            _fail(definition, f"Must be at least {rules['min']}", value)
        if maximum is not None and number > maximum:
            _fail(definition, f"Must be at most {rules['max']}", value)
        return TypedValue(value_number=number)

    if field_type == FieldType.DATE:
        try:
            parsed = _parse_date(value)
        except (TypeError, ValueError):
            _fail(definition, "Must be a valid date (YYYY-MM-DD)", value)
        for key, compare, label in (
            ("min_date", lambda d, limit: d < limit, "on or after"),
            ("max_date", lambda d, limit: d > limit, "on or before"),
        ):
            if rules.get(key):
                try:
                    limit = _parse_date(rules[key])
                except (TypeError, ValueError):
                    logger.warning(f"Ignoring invalid {key} rule on field {definition.field_name}")
                    continue
                if compare(parsed, limit):
                    _fail(definition, f"Date must be {label} {limit.isoformat()}", value)
        return TypedValue(value_text=parsed.isoformat())

    if field_type == FieldType.SELECT:
        allowed = _option_values(definition.select_options)
        if definition.allow_multiple:
            if not isinstance(value, (list, tuple)):
                _fail(definition, "Must be a list of options", value)
            selected = list(value)
        else:
            if isinstance(value, (list, tuple, dict)):
                _fail(definition, "Only one option may be selected", value)
            selected = [value]
        if allowed:
            invalid = [v for v in selected if v not in allowed]
            if invalid:
                _fail(definition, f"Invalid option(s): {', '.join(str(v) for v in invalid)}", value)
        if definition.allow_multiple:
            return TypedValue(value_json=selected)
        return TypedValue(value_text=str(selected[0]))

    if field_type == FieldType.BOOLEAN:
        if isinstance(value, bool):
            return TypedValue(value_boolean=value)
        if isinstance(value, str) and value.strip().lower() in ("true", "false"):
            return TypedValue(value_boolean=value.strip().lower() == "true")
        _fail(definition, "Must be true or false", value)

    _fail(definition, f"Unsupported field type {field_type.value}", value)
