"""A recording stand-in for a ConfigCat client."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

from flagkit.configcat import EvaluationData, KeyNotFoundError, UserData, ValueDetails

Evaluator = Callable[["Request"], ValueDetails]


@dataclass(frozen=True)
class Request:
    """One flag lookup made against the stub client."""

    key: str
    default_value: Any
    user: Optional[UserData]

    @property
    def user_data(self) -> UserData:
        """The request's user; raises TypeError if it carries none."""
        if not isinstance(self.user, UserData):
            raise TypeError("user is not of type UserData")
        return self.user


class StubClient:
    """Records every lookup and answers with configurable evaluators."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._requests: list[Request] = []
        self._evaluators: dict[str, Evaluator] = {}

    def reset(self) -> None:
        """Forget recorded requests and configured evaluators."""
        with self._lock:
            self._requests = []
            self._evaluators = {}

    def requests(self) -> list[Request]:
        """A copy of the recorded requests, oldest first."""
        with self._lock:
            return list(self._requests)

    def _set(self, kind: str, evaluate: Evaluator) -> None:
        with self._lock:
            self._evaluators[kind] = evaluate

    def with_bool_evaluation(self, evaluate: Evaluator) -> None:
        self._set("bool", evaluate)

    def with_string_evaluation(self, evaluate: Evaluator) -> None:
        self._set("string", evaluate)

    def with_float_evaluation(self, evaluate: Evaluator) -> None:
        self._set("float", evaluate)

    def with_int_evaluation(self, evaluate: Evaluator) -> None:
        self._set("int", evaluate)

    def _lookup(self, kind: str, key: str, default_value: Any, user: Optional[UserData]) -> ValueDetails:
        with self._lock:
            request = Request(key=key, default_value=default_value, user=user)
            self._requests.append(request)
            evaluate = self._evaluators.get(kind)
            if evaluate is None:
                return ValueDetails(value=default_value, data=_not_found(key, user))
            return evaluate(request)

    def get_bool_value_details(self, key: str, default_value: bool, user: Optional[UserData]) -> ValueDetails:
        return self._lookup("bool", key, default_value, user)

    def get_string_value_details(self, key: str, default_value: str, user: Optional[UserData]) -> ValueDetails:
        return self._lookup("string", key, default_value, user)

    def get_float_value_details(self, key: str, default_value: float, user: Optional[UserData]) -> ValueDetails:
        return self._lookup("float", key, default_value, user)

    def get_int_value_details(self, key: str, default_value: int, user: Optional[UserData]) -> ValueDetails:
        return self._lookup("int", key, default_value, user)


def _not_found(key: str, user: Optional[UserData]) -> EvaluationData:
    return EvaluationData(key=key, user=user, is_default_value=True, error=KeyNotFoundError(key))