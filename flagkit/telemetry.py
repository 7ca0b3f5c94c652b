"""Metrics and tracing hooks for flag evaluations, with in-memory instruments and spans."""

from __future__ import annotations

import contextvars
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional

from flagkit.core import EvaluationDetails, FlagMetadata, HookContext

METER_NAME = "go.openfeature.dev"

EVALUATION_ACTIVE = "feature_flag.evaluation_active_count"
EVALUATION_REQUESTS = "feature_flag.evaluation_requests_total"
EVALUATION_SUCCESS = "feature_flag.evaluation_success_total"
EVALUATION_ERRORS = "feature_flag.evaluation_error_total"

EVENT_NAME = "feature_flag"
EVENT_PROPERTY_FLAG_KEY = "feature_flag.key"
EVENT_PROPERTY_PROVIDER_NAME = "feature_flag.provider_name"
EVENT_PROPERTY_VARIANT = "feature_flag.variant"
EXCEPTION_EVENT_NAME = "exception"

AttributeMapper = Callable[[FlagMetadata], Mapping[str, Any]]


class DimensionType(IntEnum):
    """The type a metadata dimension is read as."""

    BOOL = 0
    STRING = 1
    INT = 2
    FLOAT = 3


@dataclass(frozen=True)
class DimensionDescription:
    """A flag metadata key to copy onto success metrics, with its type."""

    key: str
    type: DimensionType


def _attribute_key(attributes: Mapping[str, Any]) -> tuple:
    return tuple(sorted(attributes.items(), key=lambda item: item[0]))


class Counter:
    """A counter keyed by attribute set; monotonic counters refuse negative amounts."""

    def __init__(self, name: str, description: str = "", monotonic: bool = True) -> None:
        self.name = name
        self.description = description
        self.monotonic = monotonic
        self._lock = threading.Lock()
        self._points: dict[tuple, tuple[dict[str, Any], int]] = {}

    def add(self, amount: int, attributes: Optional[Mapping[str, Any]] = None) -> None:
        """Add amount to the data point for the given attributes."""
        if self.monotonic and amount < 0:
            raise ValueError(f"counter {self.name!r} cannot be decreased")
        attrs = dict(attributes or {})
        key = _attribute_key(attrs)
        with self._lock:
            _, current = self._points.get(key, (attrs, 0))
            self._points[key] = (attrs, current + amount)

    def value(self, attributes: Optional[Mapping[str, Any]] = None) -> int:
        """The value for exactly these attributes, or the total over all points when None."""
        with self._lock:
            if attributes is None:
                return sum(value for _, value in self._points.values())
            return self._points.get(_attribute_key(attributes), ({}, 0))[1]

    def data_points(self) -> list[tuple[dict[str, Any], int]]:
        with self._lock:
            return [(dict(attrs), value) for attrs, value in self._points.values()]


class MeterProvider:
    """Creates counters and collects their recorded data points."""

    def __init__(self, name: str = METER_NAME) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._instruments: dict[str, Counter] = {}

    def _register(self, name: str, description: str, monotonic: bool) -> Counter:
        with self._lock:
            instrument = self._instruments.get(name)
            if instrument is None:
                instrument = Counter(name, description, monotonic)
                self._instruments[name] = instrument
            elif instrument.monotonic != monotonic:
                raise ValueError(f"instrument {name!r} already registered with another kind")
            return instrument

    def counter(self, name: str, description: str = "") -> Counter:
        return self._register(name, description, monotonic=True)

    def up_down_counter(self, name: str, description: str = "") -> Counter:
        return self._register(name, description, monotonic=False)

    def collect(self) -> dict[str, list[tuple[dict[str, Any], int]]]:
        """Data points per metric name, for instruments that have recorded anything."""
        with self._lock:
            instruments = list(self._instruments.values())
        collected = {}
        for instrument in instruments:
            points = instrument.data_points()
            if points:
                collected[instrument.name] = points
        return collected


class StatusCode(Enum):
    """Span status codes."""

    UNSET = 0
    ERROR = 1
    OK = 2


@dataclass(frozen=True)
class SpanEvent:
    """A named event recorded on a span."""

    name: str
    attributes: dict[str, Any] = field(default_factory=dict)


class Span:
    """A span collecting events and a status; a non-recording span ignores everything."""

    def __init__(self, name: str = "", recording: bool = True) -> None:
        self.name = name
        self.recording = recording
        self.events: list[SpanEvent] = []
        self.status = StatusCode.UNSET
        self.status_description = ""

    def add_event(self, name: str, attributes: Optional[Mapping[str, Any]] = None) -> None:
        if self.recording:
            self.events.append(SpanEvent(name, dict(attributes or {})))

    def set_status(self, code: StatusCode, description: str = "") -> None:
        """Set the status; OK is final and UNSET never overrides."""
        if not self.recording or code is StatusCode.UNSET or self.status is StatusCode.OK:
            return
        self.status = code
        self.status_description = description if code is StatusCode.ERROR else ""

    def record_error(self, error: BaseException, attributes: Optional[Mapping[str, Any]] = None) -> None:
        """Record an exception event describing the error."""
        attrs = {
            "exception.type": type(error).__name__,
            "exception.message": str(error),
        }
        attrs.update(attributes or {})
        self.add_event(EXCEPTION_EVENT_NAME, attrs)


_current_span: contextvars.ContextVar[Optional[Span]] = contextvars.ContextVar(
    "flagkit_current_span", default=None
)


@contextmanager
def use_span(span: Span) -> Iterator[Span]:
    """Make span the current span for the duration of the block."""
    token = _current_span.set(span)
    try:
        yield span
    finally:
        _current_span.reset(token)


def current_span() -> Span:
    """The active span, or a non-recording span when there is none."""
    span = _current_span.get()
    return span if span is not None else Span(recording=False)


def _flag_attributes(hook_context: HookContext) -> dict[str, Any]:
    return {
        EVENT_PROPERTY_FLAG_KEY: hook_context.flag_key,
        EVENT_PROPERTY_PROVIDER_NAME: hook_context.provider_metadata.name,
    }


def _descriptions_to_attributes(
    metadata: FlagMetadata, descriptions: Iterable[DimensionDescription]
) -> dict[str, Any]:
    getters = {
        DimensionType.BOOL: metadata.get_bool,
        DimensionType.STRING: metadata.get_string,
        DimensionType.INT: metadata.get_int,
        DimensionType.FLOAT: metadata.get_float,
    }
    attributes: dict[str, Any] = {}
    for dimension in descriptions:
        getter = getters.get(dimension.type)
        if getter is None:
            continue
        try:
            attributes[dimension.key] = getter(dimension.key)
        except (KeyError, TypeError):
            continue
    return attributes


class MetricsHook:
    """Counts active, requested, successful and failed flag evaluations."""

    def __init__(
        self,
        provider: MeterProvider,
        flag_metadata_dimensions: Iterable[DimensionDescription] = (),
        attribute_mapper: Optional[AttributeMapper] = None,
    ) -> None:
        self.active_counter = provider.up_down_counter(EVALUATION_ACTIVE, "active flag evaluations counter")
        self.request_counter = provider.counter(EVALUATION_REQUESTS, "feature flag evaluation request counter")
        self.success_counter = provider.counter(EVALUATION_SUCCESS, "feature flag evaluation success counter")
        self.error_counter = provider.counter(EVALUATION_ERRORS, "feature flag evaluation error counter")
        self.flag_metadata_dimensions = list(flag_metadata_dimensions)
        self.attribute_mapper = attribute_mapper

    def before(self, hook_context: HookContext, hints: Any) -> None:
        self.active_counter.add(1, {EVENT_PROPERTY_FLAG_KEY: hook_context.flag_key})
        self.request_counter.add(1, _flag_attributes(hook_context))
        return None

    def after(self, hook_context: HookContext, details: EvaluationDetails, hints: Any) -> None:
        attributes = _flag_attributes(hook_context)
        if details.variant:
            attributes[EVENT_PROPERTY_VARIANT] = details.variant
        if details.reason:
            attributes["reason"] = str(details.reason)
        attributes.update(_descriptions_to_attributes(details.flag_metadata, self.flag_metadata_dimensions))
        if self.attribute_mapper is not None:
            attributes.update(self.attribute_mapper(details.flag_metadata))
        self.success_counter.add(1, attributes)

    def error(self, hook_context: HookContext, error: BaseException, hints: Any) -> None:
        attributes = _flag_attributes(hook_context)
        attributes[EXCEPTION_EVENT_NAME] = str(error)
        self.error_counter.add(1, attributes)

    def finally_after(self, hook_context: HookContext, hints: Any) -> None:
        self.active_counter.add(-1, {EVENT_PROPERTY_FLAG_KEY: hook_context.flag_key})


class TracesHook:
    """Adds evaluation events and errors to the current span."""

    def __init__(self, set_error_status: bool = False, attribute_mapper: Optional[AttributeMapper] = None) -> None:
        self.set_error_status = set_error_status
        self.attribute_mapper = attribute_mapper

    def after(self, hook_context: HookContext, details: EvaluationDetails, hints: Any) -> None:
        """Add a feature_flag event with key, provider and variant to the current span."""
        attributes = _flag_attributes(hook_context)
        if details.variant:
            attributes[EVENT_PROPERTY_VARIANT] = details.variant
        if self.attribute_mapper is not None:
            attributes.update(self.attribute_mapper(details.flag_metadata))
        current_span().add_event(EVENT_NAME, attributes)

    def error(self, hook_context: HookContext, error: BaseException, hints: Any) -> None:
        """Record the error on the current span, optionally marking it failed."""
        span = current_span()
        if self.set_error_status:
            span.set_status(
                StatusCode.ERROR,
                f"error evaluating flag '{hook_context.flag_key}' of type '{hook_context.flag_type}'",
            )
        span.record_error(error, _flag_attributes(hook_context))