"""Validation of evaluated flag values after resolution."""

from __future__ import annotations

import re
from typing import Any, Protocol

from flagkit.core import EvaluationDetails, HookContext

HEX_COLOR_PATTERN = r"^#(?:[0-9a-fA-F]{3}){1,2}\Z"


class ValidationError(ValueError):
    """Raised when a flag value fails validation."""


class _Validator(Protocol):
    def is_valid(self, details: EvaluationDetails) -> None: ...


class RegexValidator:
    """Checks that a flag value is a string matching a regular expression."""

    def __init__(self, pattern: str) -> None:
        self.regular_expression = re.compile(pattern)

    def is_valid(self, details: EvaluationDetails) -> None:
        """Raise ValidationError unless the value is a matching string."""
        value = details.value
        if not isinstance(value, str):
            raise ValidationError("flag value isn't of type string")
        if self.regular_expression.search(value) is None:
            raise ValidationError("regex doesn't match on flag value")


def hex_validator() -> RegexValidator:
    """A validator accepting hex colours such as #abc or #a1b2c3."""
    return RegexValidator(HEX_COLOR_PATTERN)


class ValidationHook:
    """A hook that validates evaluation details after flag resolution."""

    def __init__(self, validator: _Validator) -> None:
        self.validator = validator

    def after(self, hook_context: HookContext, details: EvaluationDetails, hints: Any) -> None:
        """Raise the validator's error if the details are invalid."""
        self.validator.is_valid(details)