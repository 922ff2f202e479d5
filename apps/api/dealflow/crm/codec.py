"""Type rules for custom field values.

Every writer of custom field values (record forms, CSV import, promotion) goes
through these functions, so a value's meaning depends only on the declared
``field_type`` of its definition.

Values travel through three shapes:

* raw input: whatever a form or CSV cell supplied (``str``, ``int``, ``list`` ...)
* typed value: ``str``, ``Decimal``, ``date`` or ``list[str]`` for multi-choice types
* stored text: the text persisted in ``crm_field_value.value``; multi-choice values
  are a JSON array, every other type a plain scalar

Nothing here raises on bad input in the validation path; ``validate_value`` returns a
``FieldValidationError`` so that callers can keep processing other fields.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from pydantic import AnyUrl, TypeAdapter, ValidationError

from dealflow.crm.models import CRMFieldDefinition


TEXT_TYPES = frozenset({"text", "textarea"})
SINGLE_CHOICE_TYPES = frozenset({"select"})
MULTI_CHOICE_TYPES = frozenset({"multiselect", "multiselect_dropdown"})
CHOICE_TYPES = SINGLE_CHOICE_TYPES | MULTI_CHOICE_TYPES
FIELD_TYPES = TEXT_TYPES | CHOICE_TYPES | frozenset({"email", "phone", "url", "number", "date"})

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+?[0-9\s\-()]+$")
MULTI_VALUE_DELIMITER = ";"
CSV_MULTI_VALUE_JOINER = "; "

_url_adapter = TypeAdapter(AnyUrl)


class ValidationKind(str, Enum):
    REQUIRED_MISSING = "RequiredMissing"
    TYPE_MISMATCH = "TypeMismatch"


@dataclass(frozen=True)
class FieldValidationError:
    kind: ValidationKind
    field: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "field": self.field, "message": self.message}


def is_blank(raw: Any) -> bool:
    if raw is None:
        return True
    if isinstance(raw, str):
        return raw.strip() == ""
    if isinstance(raw, (list, tuple, set)):
        return all(is_blank(item) for item in raw)
    return False


def active_option_values(field: CRMFieldDefinition) -> list[str]:
    return [option.value for option in field.options if option.is_active]


def split_tokens(raw: Any, delimiter: str = MULTI_VALUE_DELIMITER) -> list[str]:
    """Normalize multi-choice input into an ordered, de-duplicated token list.

    Accepts a list, a JSON array string (the stored form) or delimiter-separated text
    (the CSV form).
    """
    if raw is None:
        return []
    if isinstance(raw, (list, tuple, set)):
        items = [str(item) for item in raw if item is not None]
    else:
        text = str(raw).strip()
        decoded: Any = None
        if text.startswith("["):
            try:
                decoded = json.loads(text)
            except json.JSONDecodeError:
                decoded = None
        if isinstance(decoded, list):
            items = [str(item) for item in decoded if item is not None]
        else:
            items = text.split(delimiter)

    tokens: list[str] = []
    for item in items:
        token = item.strip()
        if token and token not in tokens:
            tokens.append(token)
    return tokens


def _to_decimal(raw: Any) -> Decimal | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, Decimal):
        candidate = raw
    elif isinstance(raw, (int, float)):
        candidate = Decimal(str(raw))
    else:
        text = str(raw).strip()
        # Decimal accepts digit grouping like "1_000"
        if "_" in text:
            return None
        try:
            candidate = Decimal(text)
        except InvalidOperation:
            return None
    if not candidate.is_finite():
        return None
    return candidate


def _to_date(raw: Any) -> date | None:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    text = str(raw).strip()
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        return None


def _is_url(raw: Any) -> bool:
    try:
        _url_adapter.validate_python(str(raw).strip())
    except ValidationError:
        return False
    return True


def validate_value(
    field: CRMFieldDefinition,
    raw: Any,
    *,
    strict_choices: bool = False,
) -> FieldValidationError | None:
    label = field.label
    if is_blank(raw):
        if field.is_required:
            return FieldValidationError(ValidationKind.REQUIRED_MISSING, label, f"{label} is required")
        return None

    field_type = field.field_type
    mismatch: str | None = None

    if field_type == "email":
        if not EMAIL_RE.match(str(raw).strip()):
            mismatch = f"Invalid email format: {raw}"
    elif field_type == "phone":
        if not PHONE_RE.match(str(raw).strip()):
            mismatch = f"Invalid phone format: {raw}"
    elif field_type == "url":
        if not _is_url(raw):
            mismatch = f"Invalid URL format: {raw}"
    elif field_type == "number":
        if _to_decimal(raw) is None:
            mismatch = f"Invalid number: {raw}"
    elif field_type == "date":
        if _to_date(raw) is None:
            mismatch = f"Invalid date: {raw}"
    elif field_type in SINGLE_CHOICE_TYPES:
        if isinstance(raw, (list, dict)):
            mismatch = f"{label} accepts a single option"
        elif strict_choices and str(raw).strip() not in active_option_values(field):
            mismatch = f"Invalid option for {label}: {raw}"
    elif field_type in MULTI_CHOICE_TYPES:
        if isinstance(raw, dict):
            mismatch = f"{label} accepts a list of options"
        elif strict_choices:
            allowed = set(active_option_values(field))
            unknown = [token for token in split_tokens(raw) if token not in allowed]
            if unknown:
                mismatch = f"Invalid options for {label}: {', '.join(unknown)}"
    elif isinstance(raw, (dict, list)):
        mismatch = f"{label} accepts plain text"

    if mismatch is not None:
        return FieldValidationError(ValidationKind.TYPE_MISMATCH, label, mismatch)
    return None


def parse_value(field: CRMFieldDefinition, raw: Any) -> str | Decimal | date | list[str] | None:
    field_type = field.field_type
    if field_type in MULTI_CHOICE_TYPES:
        return split_tokens(raw)
    if is_blank(raw):
        return None
    if field_type == "number":
        number = _to_decimal(raw)
        if number is None:
            raise ValueError(f"Invalid number: {raw}")
        return number
    if field_type == "date":
        parsed = _to_date(raw)
        if parsed is None:
            raise ValueError(f"Invalid date: {raw}")
        return parsed
    return str(raw).strip()


def _format_decimal(number: Decimal) -> str:
    if number == 0:
        return "0"
    return format(number.normalize(), "f")


def format_value(field: CRMFieldDefinition, typed: Any) -> str | None:
    """Render a typed value as stored text; ``None`` means "no value"."""
    if typed is None:
        return None
    field_type = field.field_type
    if field_type in MULTI_CHOICE_TYPES:
        tokens = split_tokens(typed)
        if not tokens:
            return None
        return json.dumps(tokens, separators=(",", ":"), ensure_ascii=False)
    if field_type == "number":
        number = typed if isinstance(typed, Decimal) else _to_decimal(typed)
        if number is None:
            raise ValueError(f"Invalid number: {typed}")
        return _format_decimal(number)
    if field_type == "date":
        parsed = typed if isinstance(typed, date) and not isinstance(typed, datetime) else _to_date(typed)
        if parsed is None:
            raise ValueError(f"Invalid date: {typed}")
        return parsed.isoformat()
    text = str(typed)
    return text if text.strip() else None


def encode(field: CRMFieldDefinition, raw: Any) -> str | None:
    return format_value(field, parse_value(field, raw))


def read_value(field: CRMFieldDefinition, stored: str | None) -> str | list[str] | None:
    """Display value for stored text; unreadable multi-choice text becomes ``[]``."""
    if field.field_type in MULTI_CHOICE_TYPES:
        if not stored:
            return []
        try:
            decoded = json.loads(stored)
        except (TypeError, json.JSONDecodeError):
            return []
        if not isinstance(decoded, list):
            return []
        return [str(item) for item in decoded if item is not None]
    return stored


def format_for_csv(field: CRMFieldDefinition, stored: str | None) -> str:
    value = read_value(field, stored)
    if value is None:
        return ""
    if isinstance(value, list):
        return CSV_MULTI_VALUE_JOINER.join(value)
    return value


def unknown_choice_tokens(field: CRMFieldDefinition, raw: Any) -> list[str]:
    if field.field_type not in CHOICE_TYPES or is_blank(raw):
        return []
    allowed = set(active_option_values(field))
    if field.field_type in MULTI_CHOICE_TYPES:
        tokens = split_tokens(raw)
    else:
        tokens = [str(raw).strip()]
    return [token for token in tokens if token not in allowed]
