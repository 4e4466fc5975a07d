"""
Shared validation helpers for the memory services.
"""

from __future__ import annotations

from typing import Optional, Sequence

from core.config import MAX_EMBEDDING_TEXT_LENGTH
from core.errors import ValidationIssue
from core.models import CLASSIFICATIONS, EMBEDDING_STATUSES, SCOPES

EMBEDDING_STATUS_FILTERS = EMBEDDING_STATUSES + ("none",)


def validate_required_text(value: str, field: str, max_len: int) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationIssue(f"{field} must be a non-empty string", field=field, error_type="required")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_optional_text(value: Optional[str], field: str, max_len: int) -> None:
    if value is None:
        return
    if not isinstance(value, str):
        raise ValidationIssue(f"{field} must be a string", field=field, error_type="invalid_type")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_limit(value: int, field: str, max_value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationIssue(f"{field} must be an integer", field=field, error_type="invalid_type")
    if value <= 0 or value > max_value:
        raise ValidationIssue(f"{field} must be between 1 and {max_value}", field=field, error_type="out_of_range")


def validate_string_list(
    values: Optional[Sequence[str]],
    field: str,
    max_items: int,
    max_item_length: int,
) -> None:
    if values is None:
        return
    if isinstance(values, str) or not isinstance(values, (list, tuple)):
        raise ValidationIssue(f"{field} must be a list of strings", field=field, error_type="invalid_type")
    if len(values) > max_items:
        raise ValidationIssue(f"{field} exceeds max items {max_items}", field=field, error_type="max_items")
    for item in values:
        if not isinstance(item, str):
            raise ValidationIssue(f"{field} must contain only strings", field=field, error_type="invalid_type")
        if len(item) > max_item_length:
            raise ValidationIssue(
                f"{field} item exceeds max length {max_item_length}",
                field=field,
                error_type="max_length",
            )


def validate_choice(value: Optional[str], field: str, choices: Sequence[str]) -> None:
    if value is None:
        return
    if value not in choices:
        raise ValidationIssue(
            f"{field} must be one of: {', '.join(choices)}",
            field=field,
            error_type="invalid_value",
        )


def validate_scope(value: Optional[str], field: str = "scope") -> None:
    validate_choice(value, field, SCOPES)


def validate_classification(value: Optional[str]) -> None:
    validate_choice(value, "classification", CLASSIFICATIONS)


def validate_embedding_status_filter(value: Optional[str]) -> None:
    validate_choice(value, "embedding_status", EMBEDDING_STATUS_FILTERS)


def validate_embedding_text(text: str) -> None:
    validate_required_text(text, "text", MAX_EMBEDDING_TEXT_LENGTH)
