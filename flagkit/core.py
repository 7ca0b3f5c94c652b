"""Shared evaluation types: reasons, error codes, resolution details, events and the flag service protocol."""

from __future__ import annotations

import queue
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Protocol, runtime_checkable


class _StrEnum(str, Enum):
    def __str__(self) -> str:
        return self.value

    def __format__(self, spec: str) -> str:
        return format(self.value, spec)


class Reason(_StrEnum):
    """Why a flag resolved to the value it did."""

    STATIC = "STATIC"
    DEFAULT = "DEFAULT"
    TARGETING_MATCH = "TARGETING_MATCH"
    SPLIT = "SPLIT"
    CACHED = "CACHED"
    DISABLED = "DISABLED"
    UNKNOWN = "UNKNOWN"
    ERROR = "ERROR"


class ErrorCode(_StrEnum):
    """Categories of resolution failures."""

    PROVIDER_NOT_READY = "PROVIDER_NOT_READY"
    FLAG_NOT_FOUND = "FLAG_NOT_FOUND"
    PARSE_ERROR = "PARSE_ERROR"
    TYPE_MISMATCH = "TYPE_MISMATCH"
    TARGETING_KEY_MISSING = "TARGETING_KEY_MISSING"
    INVALID_CONTEXT = "INVALID_CONTEXT"
    GENERAL = "GENERAL"


class FlagType(_StrEnum):
    """The value type a flag is evaluated as."""

    BOOLEAN = "bool"
    STRING = "string"
    FLOAT = "float"
    INT = "int"
    OBJECT = "object"


class EventType(_StrEnum):
    """Kinds of events a provider or service emits."""

    PROVIDER_READY = "PROVIDER_READY"
    PROVIDER_CONFIGURATION_CHANGED = "PROVIDER_CONFIGURATION_CHANGED"
    PROVIDER_STALE = "PROVIDER_STALE"
    PROVIDER_ERROR = "PROVIDER_ERROR"


class ProviderState(_StrEnum):
    """Lifecycle state of a provider."""

    NOT_READY = "NOT_READY"
    READY = "READY"
    ERROR = "ERROR"
    STALE = "STALE"


class ResolutionError(Exception):
    """A failure to resolve a flag, tagged with an error code."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        self.code = ErrorCode(code)
        self.message = message
        super().__init__(f"{self.code}: {message}")

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResolutionError):
            return NotImplemented
        return (self.code, self.message) == (other.code, other.message)

    def __hash__(self) -> int:
        return hash((self.code, self.message))


class FlagMetadata(dict):
    """Flag metadata with typed accessors."""

    def _lookup(self, key: str) -> Any:
        try:
            return self[key]
        except KeyError:
            raise KeyError(f"metadata key {key!r} not found") from None

    def get_bool(self, key: str) -> bool:
        value = self._lookup(key)
        if not isinstance(value, bool):
            raise TypeError(f"metadata key {key!r} is not a bool")
        return value

    def get_string(self, key: str) -> str:
        value = self._lookup(key)
        if not isinstance(value, str):
            raise TypeError(f"metadata key {key!r} is not a string")
        return value

    def get_int(self, key: str) -> int:
        value = self._lookup(key)
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"metadata key {key!r} is not an int")
        return value

    def get_float(self, key: str) -> float:
        value = self._lookup(key)
        if not isinstance(value, float):
            raise TypeError(f"metadata key {key!r} is not a float")
        return value


def _as_metadata(value: Optional[Mapping[str, Any]]) -> FlagMetadata:
    if isinstance(value, FlagMetadata):
        return value
    return FlagMetadata(value or {})


@dataclass
class ResolutionDetail:
    """The outcome of resolving one flag in a provider."""

    value: Any = None
    reason: str = ""
    variant: str = ""
    flag_metadata: FlagMetadata = field(default_factory=FlagMetadata)
    error: Optional[ResolutionError] = None

    def __post_init__(self) -> None:
        self.flag_metadata = _as_metadata(self.flag_metadata)

    @property
    def error_code(self) -> Optional[ErrorCode]:
        return self.error.code if self.error is not None else None


@dataclass
class EvaluationDetails:
    """The outcome of a flag evaluation as seen by hooks."""

    flag_key: str = ""
    flag_type: FlagType = FlagType.BOOLEAN
    value: Any = None
    variant: str = ""
    reason: str = ""
    flag_metadata: FlagMetadata = field(default_factory=FlagMetadata)
    error_code: Optional[ErrorCode] = None
    error_message: str = ""

    def __post_init__(self) -> None:
        self.flag_metadata = _as_metadata(self.flag_metadata)


@dataclass(frozen=True)
class Metadata:
    """Descriptive metadata of a provider."""

    name: str = ""


@dataclass(frozen=True)
class HookContext:
    """What a hook knows about the evaluation it runs for."""

    flag_key: str = ""
    flag_type: FlagType = FlagType.BOOLEAN
    default_value: Any = None
    client_name: str = ""
    provider_metadata: Metadata = field(default_factory=Metadata)
    evaluation_context: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class Event:
    """An event emitted by a provider or flag service."""

    provider_name: str
    event_type: EventType
    message: str = ""
    flag_changes: list[str] = field(default_factory=list)


@runtime_checkable
class FlagService(Protocol):
    """The contract between a flagd provider and its resolving service."""

    def init(self) -> None:
        """Start the service; raises if it cannot be started."""

    def shutdown(self) -> None:
        """Stop the service and release its resources."""

    def resolve_boolean(self, key: str, default_value: bool, eval_ctx: Mapping[str, Any]) -> ResolutionDetail:
        """Resolve a boolean flag."""

    def resolve_string(self, key: str, default_value: str, eval_ctx: Mapping[str, Any]) -> ResolutionDetail:
        """Resolve a string flag."""

    def resolve_float(self, key: str, default_value: float, eval_ctx: Mapping[str, Any]) -> ResolutionDetail:
        """Resolve a float flag."""

    def resolve_int(self, key: str, default_value: int, eval_ctx: Mapping[str, Any]) -> ResolutionDetail:
        """Resolve an integer flag."""

    def resolve_object(self, key: str, default_value: Any, eval_ctx: Mapping[str, Any]) -> ResolutionDetail:
        """Resolve an object flag."""

    def events(self) -> queue.Queue[Event]:
        """The queue the service publishes its events on."""