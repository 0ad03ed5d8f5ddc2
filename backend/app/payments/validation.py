"""Input validation helpers returning a uniform result shape."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Pattern, Union

from email_validator import EmailNotValidError, validate_email as _validate_email_address

MAX_EMAIL_LENGTH = 254
REFERENCE_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
REFERENCE_MAX_LENGTH = 100


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating a single client supplied value."""

    is_valid: bool
    sanitized_value: Optional[str] = None
    errors: List[str] = field(default_factory=list)


def validate_string(
    value: object,
    *,
    required: bool = False,
    min_length: Optional[int] = None,
    max_length: Optional[int] = None,
    pattern: Optional[Union[str, Pattern[str]]] = None,
    trim: bool = True,
) -> ValidationResult:
    if value is None:
        errors = ["Value is required"] if required else []
        return ValidationResult(is_valid=not errors, errors=errors)

    text = str(value)
    if trim:
        text = text.strip()

    if not text:
        if required:
            return ValidationResult(is_valid=False, errors=["Value cannot be empty"])
        return ValidationResult(is_valid=True, sanitized_value=text)

    errors: List[str] = []
    if min_length is not None and len(text) < min_length:
        errors.append(f"Value must be at least {min_length} characters")
    if max_length is not None and len(text) > max_length:
        errors.append(f"Value must be at most {max_length} characters")
    if pattern is not None:
        compiled = re.compile(pattern) if isinstance(pattern, str) else pattern
        if not compiled.match(text):
            errors.append("Value has an invalid format")

    return ValidationResult(is_valid=not errors, sanitized_value=text, errors=errors)


def validate_enum(
    value: object,
    allowed_values: Iterable[str],
    *,
    required: bool = True,
    case_sensitive: bool = False,
) -> ValidationResult:
    allowed = list(allowed_values)
    if value is None or value == "":
        if required:
            return ValidationResult(is_valid=False, errors=["Value is required"])
        return ValidationResult(is_valid=True)

    text = str(value).strip()
    candidate = text if case_sensitive else text.lower()
    normalized_allowed = allowed if case_sensitive else [item.lower() for item in allowed]
    if candidate not in normalized_allowed:
        return ValidationResult(
            is_valid=False,
            errors=[f"Value must be one of: {', '.join(allowed)}"],
        )
    return ValidationResult(is_valid=True, sanitized_value=candidate)


def validate_email(value: object) -> ValidationResult:
    if not value:
        return ValidationResult(is_valid=False, errors=["Email is required"])

    candidate = str(value).strip().lower()
    if len(candidate) > MAX_EMAIL_LENGTH:
        return ValidationResult(is_valid=False, errors=["Email address is too long"])

    try:
        validated = _validate_email_address(candidate, check_deliverability=False)
    except EmailNotValidError:
        return ValidationResult(is_valid=False, errors=["Invalid email format"])

    return ValidationResult(is_valid=True, sanitized_value=validated.normalized.lower())


def validate_reference(value: object) -> ValidationResult:
    """Validate a payment reference as issued by this service."""

    return validate_string(
        value,
        required=True,
        min_length=1,
        max_length=REFERENCE_MAX_LENGTH,
        pattern=REFERENCE_PATTERN,
    )


__all__ = [
    "REFERENCE_PATTERN",
    "ValidationResult",
    "validate_email",
    "validate_enum",
    "validate_reference",
    "validate_string",
]
