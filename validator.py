"""Declarative request parameter validation."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List


VALIDATION_OK = 0
VALIDATION_ERROR = 1
VALIDATION_FATAL_ERROR = 2

ZBX_MAX_INT32 = 2**31 - 1
ZBX_MIN_INT32 = -(2**31)
ZBX_DB_MAX_ID = 2**63 - 1

# Formats of the database fields referenced by `db` and `array_db` rules.
DB_SCHEMA: Dict[str, Dict[str, dict]] = {
    "module": {
        "moduleid": {"type": "id"},
        "id": {"type": "string", "length": 255},
        "relative_path": {"type": "string", "length": 255},
        "status": {"type": "int"},
    },
    "triggers": {
        "triggerid": {"type": "id"},
        "description": {"type": "string", "length": 255},
        "priority": {"type": "int"},
        "status": {"type": "int"},
    },
    "hosts": {
        "hostid": {"type": "id"},
        "name": {"type": "string", "length": 128},
    },
    "hstgrp": {
        "groupid": {"type": "id"},
    },
    "users": {
        "userid": {"type": "id"},
        "url": {"type": "string", "length": 2048},
    },
    "widget": {
        "name": {"type": "string", "length": 255},
    },
}

_INT_RE = re.compile(r"^-?\d+$")
_ID_RE = re.compile(r"^\d+$")

_FLAG_RULES = {"required", "not_empty", "fatal", "int32", "id", "string", "json", "array", "array_id"}
_ARG_RULES = {"array_db", "db", "in", "ge", "le", "exists"}
_ARRAY_RULES = {"array", "array_id", "array_db"}

Lookup = Callable[[str, str, List[Any]], Iterable[Any]]


@dataclass
class ValidationResult:
    status: int
    input: Dict[str, Any] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == VALIDATION_OK

    @property
    def is_fatal(self) -> bool:
        return self.status == VALIDATION_FATAL_ERROR


def parse_rule(expression: str) -> dict:
    """Parse ``"required|array_db module.moduleid"`` into a rule dict."""
    rule: dict = {}
    if not isinstance(expression, str):
        raise ValueError(f"Rule must be a string, got {type(expression).__name__}")
    for token in expression.split("|"):
        token = token.strip()
        if not token:
            continue
        name, _, arg = token.partition(" ")
        arg = arg.strip()
        if name in _FLAG_RULES:
            if arg:
                raise ValueError(f"Rule '{name}' takes no argument")
            rule[name] = True
        elif name in _ARG_RULES:
            if not arg:
                raise ValueError(f"Rule '{name}' requires an argument")
            if name in ("db", "array_db", "exists"):
                table, dot, column = arg.partition(".")
                if not dot or not table or not column:
                    raise ValueError(f"Rule '{name}' expects <table>.<field>, got '{arg}'")
                if name != "exists" and column not in DB_SCHEMA.get(table, {}):
                    raise ValueError(f"Unknown database field '{arg}'")
                rule[name] = (table, column)
            elif name == "in":
                rule["in"] = [item.strip() for item in arg.split(",")]
            else:
                if not _INT_RE.match(arg):
                    raise ValueError(f"Rule '{name}' expects an integer, got '{arg}'")
                rule[name] = int(arg)
        else:
            raise ValueError(f"Unknown validation rule '{name}'")
    if len(_ARRAY_RULES & rule.keys()) > 1:
        raise ValueError("Only one array rule may be given per field")
    return rule


def _is_int32(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return ZBX_MIN_INT32 <= value <= ZBX_MAX_INT32
    if isinstance(value, str) and _INT_RE.match(value):
        return ZBX_MIN_INT32 <= int(value) <= ZBX_MAX_INT32
    return False


def _is_id(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return 0 <= value <= ZBX_DB_MAX_ID
    if isinstance(value, str) and _ID_RE.match(value):
        return int(value) <= ZBX_DB_MAX_ID
    return False


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float)) and not isinstance(value, bool)


def _check_db_field(value: Any, table: str, column: str) -> str | None:
    column_def = DB_SCHEMA[table][column]
    kind = column_def["type"]
    if kind == "id":
        return None if _is_id(value) else "a number is expected"
    if kind == "int":
        return None if _is_int32(value) else "a number is expected"
    if not isinstance(value, str):
        return "a character string is expected"
    length = column_def.get("length")
    if length is not None and len(value) > length:
        return "value is too long"
    return None


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _check_array(name: str, value: Any, rule: dict) -> str | None:
    if not isinstance(value, (list, tuple)):
        return f'Incorrect value for field "{name}": an array is expected.'
    if rule.get("not_empty") and not value:
        return f'Incorrect value for field "{name}": cannot be empty.'
    if rule.get("array_id"):
        for item in value:
            if not _is_id(item):
                return f'Incorrect value for field "{name}": a number is expected.'
    if "array_db" in rule:
        table, column = rule["array_db"]
        for item in value:
            reason = _check_db_field(item, table, column)
            if reason:
                return f'Incorrect value for field "{name}": {reason}.'
    return None


def _check_scalar(name: str, value: Any, rule: dict) -> str | None:
    if not _is_scalar(value):
        return f'Incorrect value for field "{name}": a character string is expected.'
    if rule.get("not_empty") and str(value).strip() == "":
        return f'Incorrect value for field "{name}": cannot be empty.'
    if rule.get("string") and not isinstance(value, str):
        return f'Incorrect value for field "{name}": a character string is expected.'
    if rule.get("int32") and not _is_int32(value):
        return f'Incorrect value for field "{name}": a number is expected.'
    if rule.get("id") and not _is_id(value):
        return f'Incorrect value for field "{name}": a number is expected.'
    if "db" in rule:
        table, column = rule["db"]
        reason = _check_db_field(value, table, column)
        if reason:
            return f'Incorrect value for field "{name}": {reason}.'
    if "in" in rule and str(value) not in rule["in"]:
        allowed = ", ".join(rule["in"])
        return f'Incorrect value for field "{name}": value must be one of {allowed}.'
    if "ge" in rule or "le" in rule:
        number = _as_number(value)
        if number is None:
            return f'Incorrect value for field "{name}": a number is expected.'
        if "ge" in rule and number < rule["ge"]:
            return f'Incorrect value for field "{name}": value must be no less than "{rule["ge"]}".'
        if "le" in rule and number > rule["le"]:
            return f'Incorrect value for field "{name}": value must be no greater than "{rule["le"]}".'
    if rule.get("json"):
        if not isinstance(value, str):
            return f'Incorrect value for field "{name}": JSON is expected.'
        try:
            json.loads(value)
        except ValueError:
            return f'Incorrect value for field "{name}": JSON is expected.'
    return None


def _check_exists(name: str, value: Any, rule: dict, lookup: Lookup | None) -> str | None:
    if "exists" not in rule:
        return None
    if lookup is None:
        raise ValueError(f"Field '{name}' uses an 'exists' rule but no lookup was supplied")
    table, column = rule["exists"]
    values = list(value) if isinstance(value, (list, tuple)) else [value]
    found = {str(item) for item in lookup(table, column, values)}
    missing = [str(item) for item in values if str(item) not in found]
    if missing:
        return f'Incorrect value for field "{name}": object does not exist or you have no permissions to it.'
    return None


def validate(raw_params: dict, rules: Dict[str, str], lookup: Lookup | None = None) -> ValidationResult:
    """Check ``raw_params`` against ``rules``.

    Failures of required fields and of array-shaped fields make the whole
    result fatal. Scalar failures are recoverable: the failing field is left
    out of the cleaned input and every passing field is kept.
    """
    parsed = {name: parse_rule(expr) for name, expr in rules.items()}
    params = raw_params if isinstance(raw_params, dict) else {}
    cleaned: Dict[str, Any] = {}
    errors: List[str] = []
    fatal = False

    for name, rule in parsed.items():
        if name not in params:
            if rule.get("required"):
                errors.append(f'Field "{name}" is mandatory.')
                fatal = True
            continue
        value = params[name]
        is_array = bool(_ARRAY_RULES & rule.keys())
        message = _check_array(name, value, rule) if is_array else _check_scalar(name, value, rule)
        if message:
            errors.append(message)
            if is_array or rule.get("fatal"):
                fatal = True
            continue
        message = _check_exists(name, value, rule, lookup)
        if message:
            errors.append(message)
            if rule.get("fatal"):
                fatal = True
            continue
        cleaned[name] = value

    if fatal:
        return ValidationResult(status=VALIDATION_FATAL_ERROR, input={}, errors=errors)
    if errors:
        return ValidationResult(status=VALIDATION_ERROR, input=cleaned, errors=errors)
    return ValidationResult(status=VALIDATION_OK, input=cleaned, errors=[])
