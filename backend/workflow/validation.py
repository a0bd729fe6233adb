"""Field-level validation of submitted step input.

Rules are the field definitions stored on a step (``WorkflowStep.validation``
or a FORM step's ``config.fields``)::

    [
        {"id": "amount", "type": "number", "required": true,
         "validation": {"min": 1, "max": 500000}},
        {"id": "account", "type": "text",
         "validation": {"pattern": "^\\\\d{10}$", "errorMessage": "10 digits"}},
    ]

A pattern that does not compile is logged and treated as no constraint.
"""

import math
import re
from typing import Any, Iterable, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

logger = structlog.get_logger(__name__)

REQUIRED_MESSAGE = "This field is required"


class FieldConstraints(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    min_length: Optional[int] = None
    max_length: Optional[int] = None
    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[str] = None
    error_message: Optional[str] = None


class FieldRule(BaseModel):
    """Declared rules for one input field."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: str
    type: str = "text"
    label: Optional[str] = None
    required: bool = False
    validation: FieldConstraints = Field(default_factory=FieldConstraints)


def parse_rules(rules: Union[None, dict, Iterable[Any]]) -> list[FieldRule]:
    """Accept a list of field dicts, or ``{"fields": [...]}``."""
    if not rules:
        return []
    if isinstance(rules, dict):
        rules = rules.get("fields") or []
    return [rule if isinstance(rule, FieldRule) else FieldRule.model_validate(rule) for rule in rules]


def _is_empty(value: Any) -> bool:
    return value is None or str(value).strip() == ""


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


def _fmt(bound: float) -> str:
    return str(int(bound)) if float(bound).is_integer() else str(bound)


def _check_text(rule: FieldRule, value: Any) -> Optional[str]:
    text = str(value)
    c = rule.validation
    if c.min_length is not None and len(text) < c.min_length:
        return c.error_message or f"Must be at least {c.min_length} characters"
    if c.max_length is not None and len(text) > c.max_length:
        return c.error_message or f"Must be at most {c.max_length} characters"
    if c.pattern:
        try:
            compiled = re.compile(c.pattern)
        except re.error as exc:
            logger.warning(
                "validation_pattern_ignored",
                field=rule.id,
                pattern=c.pattern,
                error=str(exc),
                outcome="no constraint",
            )
            return None
        if not compiled.search(text):
            return c.error_message or "Invalid format"
    return None


def _check_number(rule: FieldRule, value: Any) -> Optional[str]:
    c = rule.validation
    number = _as_number(value)
    if number is None:
        return c.error_message or "Must be a number"
    if c.min is not None and number < c.min:
        return c.error_message or f"Must be >= {_fmt(c.min)}"
    if c.max is not None and number > c.max:
        return c.error_message or f"Must be <= {_fmt(c.max)}"
    return None


def validate(rules: Union[None, dict, Iterable[Any]], data: Optional[dict]) -> dict[str, str]:
    """Validate ``data`` against ``rules``.

    Returns:
        field id -> error message; empty when the input is valid
    """
    data = data or {}
    errors: dict[str, str] = {}

    for rule in parse_rules(rules):
        value = data.get(rule.id)
        if _is_empty(value):
            if rule.required:
                errors[rule.id] = rule.validation.error_message or REQUIRED_MESSAGE
            continue

        if rule.type == "number":
            error = _check_number(rule, value)
        else:
            error = _check_text(rule, value)
        if error:
            errors[rule.id] = error

    return errors
