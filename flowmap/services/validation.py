from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from functools import lru_cache
from typing import Any

from ..errors import MappingStructureError
from ..transforms.numeric import as_number
from ..transforms.temporal import to_datetime
from ..transforms.utility import FALSE_TOKENS, TRUE_TOKENS

"""Field-level validation rules.

Rules are pipe separated (``required|string|max:100``). Supported rules:
required, nullable, string, integer, numeric, boolean, email, date, min:N,
max:N, in:a,b,... and regex:pattern. ``regex`` must be the last rule of a
string since its pattern may itself contain pipes. An empty value only
fails ``required``; every other rule is skipped for it.
"""

__all__ = [
    "Rule",
    "RULE_NAMES",
    "parse_rules",
    "validate_value",
    "validate_fields",
]

RULE_NAMES = (
    "required", "nullable", "string", "integer", "numeric", "boolean",
    "email", "date", "min", "max", "in", "regex",
)
_PARAMETRIZED = ("min", "max", "in", "regex")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class Rule:
    name: str
    argument: str | None = None


@lru_cache(maxsize=512)
def parse_rules(rule_string: str) -> tuple[Rule, ...]:
    """Parse a pipe separated rule string. Unknown rules raise MappingStructureError."""
    rules: list[Rule] = []
    rest = rule_string.strip()
    while rest:
        if rest.startswith("regex:"):
            rules.append(Rule("regex", rest[len("regex:"):]))
            break
        token, _, rest = rest.partition("|")
        token = token.strip()
        if not token:
            continue
        name, sep, argument = token.partition(":")
        name = name.strip()
        if name not in RULE_NAMES:
            raise MappingStructureError(f"Unknown validation rule '{name}' in '{rule_string}'")
        if name in _PARAMETRIZED and not sep:
            raise MappingStructureError(f"Validation rule '{name}' needs a parameter")
        if name in ("min", "max") and as_number(argument) is None:
            raise MappingStructureError(f"Validation rule '{name}' needs a numeric parameter")
        rules.append(Rule(name, argument if sep else None))
    for rule in rules:
        if rule.name == "regex":
            try:
                re.compile(_regex_body(rule.argument or ""))
            except re.error as e:
                raise MappingStructureError(f"Invalid regex rule '{rule.argument}': {e}") from e
    return tuple(rules)


def _regex_body(pattern: str) -> str:
    if len(pattern) >= 2 and pattern.startswith("/") and pattern.rfind("/") > 0:
        return pattern[1:pattern.rfind("/")]
    return pattern


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def _is_integer(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    if isinstance(value, str):
        return value.strip().lstrip("+-").isdigit()
    return False


def _is_boolean(value: Any) -> bool:
    if isinstance(value, bool) or value in (0, 1):
        return True
    return isinstance(value, str) and value.strip().lower() in (TRUE_TOKENS | FALSE_TOKENS)


def _is_date(value: Any) -> bool:
    if isinstance(value, (date, datetime)):
        return True
    try:
        to_datetime(value)
    except ValueError:
        return False
    return True


def _size(value: Any, numeric: bool) -> float | None:
    if numeric:
        number = as_number(value)
        return float(number) if number is not None else None
    if isinstance(value, str):
        return float(len(value))
    if isinstance(value, (list, tuple, dict)):
        return float(len(value))
    number = as_number(value)
    return float(number) if number is not None else None


def _label(field: str) -> str:
    return field.replace("_", " ")


def validate_value(field: str, value: Any, rules: tuple[Rule, ...]) -> list[str]:
    """Return the messages for one field; an empty list means valid."""
    label = _label(field)
    names = {r.name for r in rules}
    if _is_empty(value):
        return [f"The {label} field is required."] if "required" in names else []

    numeric = bool(names & {"numeric", "integer"})
    messages: list[str] = []
    for rule in rules:
        if rule.name in ("required", "nullable"):
            continue
        if rule.name == "string" and not isinstance(value, str):
            messages.append(f"The {label} field must be a string.")
        elif rule.name == "integer" and not _is_integer(value):
            messages.append(f"The {label} field must be an integer.")
        elif rule.name == "numeric" and as_number(value) is None and not isinstance(value, Decimal):
            messages.append(f"The {label} field must be a number.")
        elif rule.name == "boolean" and not _is_boolean(value):
            messages.append(f"The {label} field must be true or false.")
        elif rule.name == "email" and not (isinstance(value, str) and _EMAIL_RE.match(value.strip())):
            messages.append(f"The {label} field must be a valid email address.")
        elif rule.name == "date" and not _is_date(value):
            messages.append(f"The {label} field must be a valid date.")
        elif rule.name in ("min", "max"):
            limit = float(as_number(rule.argument))
            size = _size(value, numeric)
            if size is None:
                continue
            unit = "" if numeric or not isinstance(value, str) else " characters"
            shown = rule.argument.strip()
            if rule.name == "min" and size < limit:
                messages.append(f"The {label} field must be at least {shown}{unit}.")
            elif rule.name == "max" and size > limit:
                messages.append(f"The {label} field must not be greater than {shown}{unit}.")
        elif rule.name == "in":
            allowed = [a.strip() for a in (rule.argument or "").split(",")]
            if str(value).strip() not in allowed:
                messages.append(f"The selected {label} is invalid.")
        elif rule.name == "regex":
            pattern = _regex_body(rule.argument or "")
            if not re.search(pattern, str(value)):
                messages.append(f"The {label} field format is invalid.")
    return messages


def validate_fields(values: Mapping[str, Any], rules: Mapping[str, str]) -> dict[str, list[str]]:
    """Validate ``values`` (keyed by target field) against ``rules``; returns only failing fields."""
    errors: dict[str, list[str]] = {}
    for field, rule_string in rules.items():
        if not rule_string:
            continue
        messages = validate_value(field, values.get(field), parse_rules(rule_string))
        if messages:
            errors[field] = messages
    return errors
