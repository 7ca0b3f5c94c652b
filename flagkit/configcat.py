"""A flag provider backed by a ConfigCat-style client."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Protocol

from flagkit.core import ErrorCode, Metadata, Reason, ResolutionDetail, ResolutionError

IDENTIFIER_KEY = "targetingKey"
EMAIL_KEY = "email"
COUNTRY_KEY = "country"


@dataclass
class UserData:
    """User attributes that targeting rules are evaluated against."""

    identifier: str = ""
    email: str = ""
    country: str = ""
    custom: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RolloutRule:
    """A targeting rule that matched during evaluation."""

    comparison_attribute: str = ""
    comparison_value: str = ""
    comparator: int = 0


@dataclass(frozen=True)
class PercentageRule:
    """A percentage rule that matched during evaluation."""

    percentage: int = 0


@dataclass
class EvaluationData:
    """What the client reports about an evaluation besides its value."""

    key: str = ""
    user: Optional[UserData] = None
    variation_id: str = ""
    is_default_value: bool = False
    error: Optional[Exception] = None
    matched_evaluation_rule: Optional[RolloutRule] = None
    matched_evaluation_percentage_rule: Optional[PercentageRule] = None


@dataclass
class ValueDetails:
    """An evaluated value together with its evaluation data."""

    value: Any = None
    data: EvaluationData = field(default_factory=EvaluationData)


class KeyNotFoundError(LookupError):
    """The requested setting key does not exist in the configuration."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"failed to evaluate setting {key!r} (the key was not found in config JSON)")


class _Client(Protocol):
    def get_bool_value_details(self, key: str, default_value: bool, user: Optional[UserData]) -> ValueDetails: ...
    def get_string_value_details(self, key: str, default_value: str, user: Optional[UserData]) -> ValueDetails: ...
    def get_float_value_details(self, key: str, default_value: float, user: Optional[UserData]) -> ValueDetails: ...
    def get_int_value_details(self, key: str, default_value: int, user: Optional[UserData]) -> ValueDetails: ...


class _InvalidContext(Exception):
    def __init__(self, detail: ResolutionDetail) -> None:
        super().__init__(str(detail.error))
        self.detail = detail


class ConfigCatProvider:
    """Resolves flags through a ConfigCat client."""

    def __init__(self, client: _Client) -> None:
        self.client = client

    def metadata(self) -> Metadata:
        return Metadata(name="ConfigCat")

    def hooks(self) -> list:
        """The provider has no hooks."""
        return []

    def _evaluate(
        self,
        getter: Callable[[str, Any, Optional[UserData]], ValueDetails],
        flag: str,
        default_value: Any,
        eval_ctx: Optional[Mapping[str, Any]],
        convert: Callable[[Any], Any] = lambda value: value,
    ) -> ResolutionDetail:
        try:
            user = _to_user_data(eval_ctx)
        except _InvalidContext as exc:
            exc.detail.value = default_value
            return exc.detail
        evaluation = getter(flag, default_value, user)
        detail = _to_resolution_detail(evaluation.data)
        detail.value = convert(evaluation.value)
        return detail

    def boolean_evaluation(self, flag: str, default_value: bool, eval_ctx: Optional[Mapping[str, Any]]) -> ResolutionDetail:
        return self._evaluate(self.client.get_bool_value_details, flag, default_value, eval_ctx)

    def string_evaluation(self, flag: str, default_value: str, eval_ctx: Optional[Mapping[str, Any]]) -> ResolutionDetail:
        return self._evaluate(self.client.get_string_value_details, flag, default_value, eval_ctx)

    def float_evaluation(self, flag: str, default_value: float, eval_ctx: Optional[Mapping[str, Any]]) -> ResolutionDetail:
        return self._evaluate(self.client.get_float_value_details, flag, default_value, eval_ctx)

    def int_evaluation(self, flag: str, default_value: int, eval_ctx: Optional[Mapping[str, Any]]) -> ResolutionDetail:
        return self._evaluate(
            lambda key, default, user: self.client.get_int_value_details(key, int(default), user),
            flag,
            default_value,
            eval_ctx,
            convert=int,
        )

    def object_evaluation(self, flag: str, default_value: Any, eval_ctx: Optional[Mapping[str, Any]]) -> ResolutionDetail:
        """Evaluate a string flag and parse its value as a JSON object."""
        try:
            user = _to_user_data(eval_ctx)
        except _InvalidContext as exc:
            exc.detail.value = default_value
            return exc.detail

        evaluation = self.client.get_string_value_details(flag, "", user)
        if evaluation.data.is_default_value or evaluation.data.error is not None:
            # evaluated with a stand-in default, so hand back the caller's own
            detail = _to_resolution_detail(evaluation.data)
            detail.value = default_value
            return detail

        try:
            parsed = json.loads(evaluation.value)
            if parsed is not None and not isinstance(parsed, dict):
                raise ValueError(f"cannot unmarshal {type(parsed).__name__} into an object")
        except (ValueError, TypeError) as exc:
            return ResolutionDetail(
                value=default_value,
                reason=Reason.ERROR,
                error=ResolutionError(
                    ErrorCode.TYPE_MISMATCH, f"failed to unmarshal string flag as json: {exc}"
                ),
            )

        detail = _to_resolution_detail(evaluation.data)
        detail.value = parsed
        return detail


def _to_user_data(eval_ctx: Optional[Mapping[str, Any]]) -> Optional[UserData]:
    if not eval_ctx:
        return None

    user = UserData()
    custom: dict[str, str] = {}
    for key, original in eval_ctx.items():
        value = _to_str(original)
        if value is None:
            raise _InvalidContext(
                ResolutionDetail(
                    reason=Reason.ERROR,
                    error=ResolutionError(
                        ErrorCode.INVALID_CONTEXT, f"key `{key}` can not be converted to string"
                    ),
                )
            )
        if key == IDENTIFIER_KEY:
            user.identifier = value
        elif key == EMAIL_KEY:
            user.email = value
        elif key == COUNTRY_KEY:
            user.country = value
        else:
            custom[key] = value

    user.custom = custom
    return user


def _to_str(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return f"{value:.6f}"
    return None


def _to_resolution_detail(data: EvaluationData) -> ResolutionDetail:
    if data.error is not None:
        return ResolutionDetail(reason=Reason.ERROR, error=_to_resolution_error(data.error))

    reason = Reason.DEFAULT
    if data.matched_evaluation_rule is not None or data.matched_evaluation_percentage_rule is not None:
        reason = Reason.TARGETING_MATCH
    return ResolutionDetail(reason=reason, variant=data.variation_id)


def _to_resolution_error(error: Exception) -> ResolutionError:
    if isinstance(error, KeyNotFoundError):
        return ResolutionError(ErrorCode.FLAG_NOT_FOUND, str(error))
    return ResolutionError(ErrorCode.GENERAL, str(error))