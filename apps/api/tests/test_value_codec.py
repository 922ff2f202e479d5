from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from dealflow.crm import codec
from dealflow.crm.models import CRMFieldDefinition, CRMFieldOption


def _field(
    field_type: str,
    *,
    label: str = "Budget",
    required: bool = False,
    options: tuple[str, ...] = (),
) -> CRMFieldDefinition:
    return CRMFieldDefinition(
        entity_type="lead",
        name=label.lower().replace(" ", "_"),
        label=label,
        field_type=field_type,
        is_required=required,
        is_active=True,
        is_system_field=False,
        options=[
            CRMFieldOption(value=value, label=value.title(), sort_order=index, is_active=True)
            for index, value in enumerate(options)
        ],
    )


def test_required_blank_is_reported_and_optional_blank_is_accepted() -> None:
    required = _field("text", label="Company Name", required=True)
    error = codec.validate_value(required, "   ")
    assert error is not None
    assert error.kind == codec.ValidationKind.REQUIRED_MISSING
    assert error.to_dict() == {
        "kind": "RequiredMissing",
        "field": "Company Name",
        "message": "Company Name is required",
    }

    assert codec.validate_value(_field("text"), "") is None
    assert codec.validate_value(_field("multiselect"), []) is None
    assert codec.validate_value(_field("multiselect", required=True), ["", " "]) is not None


@pytest.mark.parametrize(
    ("field_type", "raw", "message"),
    [
        ("email", "not-an-email", "Invalid email format: not-an-email"),
        ("phone", "call me", "Invalid phone format: call me"),
        ("url", "example dot com", "Invalid URL format: example dot com"),
        ("number", "12abc", "Invalid number: 12abc"),
        ("number", "NaN", "Invalid number: NaN"),
        ("number", "1_000", "Invalid number: 1_000"),
        ("date", "15/01/2025", "Invalid date: 15/01/2025"),
    ],
)
def test_type_mismatch_messages(field_type: str, raw: str, message: str) -> None:
    error = codec.validate_value(_field(field_type), raw)
    assert error is not None
    assert error.kind == codec.ValidationKind.TYPE_MISMATCH
    assert error.message == message


@pytest.mark.parametrize(
    ("field_type", "raw"),
    [
        ("email", "ops@dealflow.io"),
        ("phone", "+90 (555) 123-45-67"),
        ("url", "https://example.com/path?q=1"),
        ("number", "-12.50"),
        ("number", 7),
        ("date", "2025-01-15"),
        ("date", "2025-01-15T09:30:00Z"),
        ("textarea", "line one\nline two"),
    ],
)
def test_valid_values_pass(field_type: str, raw: object) -> None:
    assert codec.validate_value(_field(field_type), raw) is None


def test_number_and_date_are_stored_in_canonical_form() -> None:
    number = _field("number")
    assert codec.parse_value(number, " 12.50 ") == Decimal("12.50")
    assert codec.encode(number, "12.50") == "12.5"
    assert codec.encode(number, "1e3") == "1000"
    assert codec.encode(number, "0.00") == "0"

    when = _field("date")
    assert codec.parse_value(when, "2025-01-15T23:10:00+00:00") == date(2025, 1, 15)
    assert codec.encode(when, "2025-01-15T23:10:00Z") == "2025-01-15"
    with pytest.raises(ValueError):
        codec.parse_value(when, "yesterday")


def test_text_values_are_trimmed_and_blank_means_no_value() -> None:
    text = _field("text")
    assert codec.encode(text, "  hello  ") == "hello"
    assert codec.encode(text, "   ") is None
    assert codec.encode(text, None) is None


def test_multi_choice_accepts_lists_json_and_delimited_text() -> None:
    tags = _field("multiselect", options=("stocks", "crypto", "forex"))
    assert codec.encode(tags, ["stocks", "crypto", "stocks"]) == '["stocks","crypto"]'
    assert codec.encode(tags, "stocks; crypto") == '["stocks","crypto"]'
    assert codec.encode(tags, '["forex", " crypto "]') == '["forex","crypto"]'
    assert codec.encode(tags, "") is None
    assert codec.encode(tags, "[]") is None
    assert codec.split_tokens("a;;b; a ") == ["a", "b"]


def test_stored_multi_choice_reads_back_as_list() -> None:
    tags = _field("multiselect_dropdown", options=("stocks", "crypto"))
    assert codec.read_value(tags, '["stocks","crypto"]') == ["stocks", "crypto"]
    assert codec.read_value(tags, "not json") == []
    assert codec.read_value(tags, '{"a": 1}') == []
    assert codec.read_value(tags, None) == []
    assert codec.read_value(_field("text"), "plain") == "plain"


def test_csv_formatting_joins_multi_choice_with_semicolons() -> None:
    tags = _field("multiselect", options=("stocks", "crypto"))
    assert codec.format_for_csv(tags, '["stocks","crypto"]') == "stocks; crypto"
    assert codec.format_for_csv(_field("number"), "100") == "100"
    assert codec.format_for_csv(_field("text"), None) == ""


def test_single_choice_is_lax_unless_strict() -> None:
    stage = _field("select", label="Stage", options=("cold", "warm"))
    assert codec.validate_value(stage, "hot") is None
    assert codec.unknown_choice_tokens(stage, "hot") == ["hot"]
    assert codec.unknown_choice_tokens(stage, "warm") == []

    error = codec.validate_value(stage, "hot", strict_choices=True)
    assert error is not None
    assert error.message == "Invalid option for Stage: hot"

    list_error = codec.validate_value(stage, ["cold", "warm"])
    assert list_error is not None
    assert list_error.kind == codec.ValidationKind.TYPE_MISMATCH


def test_strict_multi_choice_lists_every_unknown_token() -> None:
    tags = _field("multiselect", label="Products", options=("stocks",))
    error = codec.validate_value(tags, "stocks; gold; oil", strict_choices=True)
    assert error is not None
    assert error.message == "Invalid options for Products: gold, oil"


def test_inactive_options_do_not_count_as_known() -> None:
    stage = _field("select", label="Stage", options=("cold", "warm"))
    stage.options[1].is_active = False
    assert codec.active_option_values(stage) == ["cold"]
    assert codec.unknown_choice_tokens(stage, "warm") == ["warm"]
