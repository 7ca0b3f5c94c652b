"""In-process flag evaluation over flag configurations synced from a source."""

from __future__ import annotations

import logging
import os
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Protocol

from flagkit.core import ErrorCode, Event, EventType, FlagMetadata, Reason, ResolutionDetail, ResolutionError

log = logging.getLogger("flagd-provider")

FLAG_NOT_FOUND = "FLAG_NOT_FOUND"
FLAG_DISABLED = "FLAG_DISABLED"
TYPE_MISMATCH = "TYPE_MISMATCH"
PARSE_ERROR = "PARSE_ERROR"
GENERAL = "GENERAL"

_POLL_INTERVAL = 0.2

Resolution = tuple  # (value, variant, reason, metadata)


class _Evaluator(Protocol):
    def set_state(self, data: Any) -> Optional[Mapping[str, Any]]: ...
    def resolve_boolean_value(self, key: str, context: Mapping[str, Any]) -> Resolution: ...
    def resolve_string_value(self, key: str, context: Mapping[str, Any]) -> Resolution: ...
    def resolve_float_value(self, key: str, context: Mapping[str, Any]) -> Resolution: ...
    def resolve_int_value(self, key: str, context: Mapping[str, Any]) -> Resolution: ...
    def resolve_object_value(self, key: str, context: Mapping[str, Any]) -> Resolution: ...


class _Sync(Protocol):
    def init(self) -> None: ...
    def sync(self, stop: threading.Event, publish: Callable[[Any], None]) -> None: ...


@dataclass
class InProcessConfiguration:
    """Where the in-process service obtains its flag configuration from."""

    host: str = "localhost"
    port: int = 8013
    selector: str = ""
    tls_enabled: bool = False
    offline_flag_source: str = ""


class FileSync:
    """Publishes the contents of a flag file, and again whenever the file changes."""

    def __init__(self, path: str) -> None:
        self.path = path

    def init(self) -> None:
        """Check that the flag file exists."""
        if not os.path.isfile(self.path):
            raise FileNotFoundError(f"flag source file not found: {self.path}")

    def sync(self, stop: threading.Event, publish: Callable[[Any], None]) -> None:
        """Publish the file's contents until stop is set, re-publishing on change."""
        last = None
        while not stop.is_set():
            stat = os.stat(self.path)
            marker = (stat.st_mtime_ns, stat.st_size)
            if marker != last:
                last = marker
                with open(self.path, encoding="utf-8") as handle:
                    publish(handle.read())
            stop.wait(_POLL_INTERVAL)


def map_error(flag_key: str, error: BaseException) -> ResolutionError:
    """Translate an evaluator error code into a resolution error."""
    code = str(error)
    if code == FLAG_NOT_FOUND:
        return ResolutionError(ErrorCode.FLAG_NOT_FOUND, f"flag: {flag_key} not found")
    if code == FLAG_DISABLED:
        return ResolutionError(ErrorCode.FLAG_NOT_FOUND, f"flag: {flag_key} is disabled")
    if code == TYPE_MISMATCH:
        return ResolutionError(ErrorCode.TYPE_MISMATCH, f"flag: {flag_key} evaluated type not valid")
    if code == PARSE_ERROR:
        return ResolutionError(ErrorCode.PARSE_ERROR, f"flag: {flag_key} parsing error")
    return ResolutionError(ErrorCode.GENERAL, f"flag: {flag_key} unable to evaluate")


class InProcessService:
    """Evaluates flags locally with an evaluator fed by a flag sync source."""

    def __init__(
        self,
        config: InProcessConfiguration,
        evaluator: Optional[_Evaluator] = None,
        sync: Optional[_Sync] = None,
    ) -> None:
        if evaluator is None:
            raise ValueError("an evaluator is required for in-process resolution")
        self.config = config
        self.evaluator = evaluator
        self.sync = sync
        self.service_metadata: dict[str, Any] = {"scope": config.selector} if config.selector else {}
        self._events: queue.Queue[Event] = queue.Queue()
        self._stop: Optional[threading.Event] = None
        if config.offline_flag_source:
            log.info(
                "operating in in-process mode with offline flags sourced from %s", config.offline_flag_source
            )
        else:
            log.info("operating in in-process mode with flags sourced from %s:%s", config.host, config.port)

    def _sync_source(self) -> _Sync:
        if self.sync is None:
            if not self.config.offline_flag_source:
                raise ValueError("no flag sync source configured for in-process resolution")
            self.sync = FileSync(self.config.offline_flag_source)
        return self.sync

    def init(self) -> None:
        """Start syncing and wait until the first flag configuration arrived."""
        source = self._sync_source()
        source.init()

        stop = threading.Event()
        self._stop = stop
        outcome: queue.Queue[Optional[BaseException]] = queue.Queue()
        ready = threading.Event()

        def publish(data: Any) -> None:
            if stop.is_set():
                return
            try:
                changes = self.evaluator.set_state(data) or {}
            except Exception as exc:
                changes = {}
                self._events.put(
                    Event("flagd", EventType.PROVIDER_ERROR, message=f"Error from flag sync {exc}")
                )
            if not ready.is_set():
                ready.set()
                self._events.put(Event("flagd", EventType.PROVIDER_READY))
                outcome.put(None)
            self._events.put(
                Event(
                    "flagd",
                    EventType.PROVIDER_CONFIGURATION_CHANGED,
                    message="New flag sync",
                    flag_changes=list(changes),
                )
            )

        def run() -> None:
            try:
                source.sync(stop, publish)
            except Exception as exc:
                outcome.put(exc)
                return
            if not ready.is_set():
                outcome.put(RuntimeError("flag sync ended before delivering flags"))

        threading.Thread(target=run, daemon=True).start()
        result = outcome.get()
        if result is not None:
            raise result

    def shutdown(self) -> None:
        if self._stop is not None:
            self._stop.set()
            log.info("Shutting down data sync listener")

    def events(self) -> queue.Queue[Event]:
        return self._events

    def _metadata(self, metadata: Optional[Mapping[str, Any]]) -> FlagMetadata:
        merged = FlagMetadata(metadata or {})
        merged.update(self.service_metadata)
        return merged

    def _resolve(
        self,
        method: Callable[[str, Mapping[str, Any]], Resolution],
        key: str,
        default_value: Any,
        eval_ctx: Optional[Mapping[str, Any]],
    ) -> ResolutionDetail:
        try:
            value, variant, reason, metadata = method(key, dict(eval_ctx or {}))
        except Exception as exc:
            return ResolutionDetail(
                value=default_value,
                reason=getattr(exc, "reason", Reason.ERROR),
                variant=getattr(exc, "variant", ""),
                flag_metadata=self._metadata(getattr(exc, "metadata", None)),
                error=map_error(key, exc),
            )
        return ResolutionDetail(
            value=value, reason=reason, variant=variant, flag_metadata=self._metadata(metadata)
        )

    def resolve_boolean(self, key: str, default_value: bool, eval_ctx: Optional[Mapping[str, Any]]) -> ResolutionDetail:
        return self._resolve(self.evaluator.resolve_boolean_value, key, default_value, eval_ctx)

    def resolve_string(self, key: str, default_value: str, eval_ctx: Optional[Mapping[str, Any]]) -> ResolutionDetail:
        return self._resolve(self.evaluator.resolve_string_value, key, default_value, eval_ctx)

    def resolve_float(self, key: str, default_value: float, eval_ctx: Optional[Mapping[str, Any]]) -> ResolutionDetail:
        return self._resolve(self.evaluator.resolve_float_value, key, default_value, eval_ctx)

    def resolve_int(self, key: str, default_value: int, eval_ctx: Optional[Mapping[str, Any]]) -> ResolutionDetail:
        return self._resolve(self.evaluator.resolve_int_value, key, default_value, eval_ctx)

    def resolve_object(self, key: str, default_value: Any, eval_ctx: Optional[Mapping[str, Any]]) -> ResolutionDetail:
        return self._resolve(self.evaluator.resolve_object_value, key, default_value, eval_ctx)