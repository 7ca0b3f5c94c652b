"""Remote flag resolution against a flagd server over the Connect protocol."""

from __future__ import annotations

import json
import logging
import queue
import ssl
import struct
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional, Protocol

import httpx

from flagkit.cache import CacheService
from flagkit.core import ErrorCode, Event, EventType, FlagMetadata, Reason, ResolutionDetail, ResolutionError
from flagkit.retry import RetryCounter

log = logging.getLogger("flagd-provider")

REASON_CACHED = "CACHED"
CLIENT_NOT_READY_MSG = "client did not yet finish the initialization"
CONNECTION_ERROR = "connection not made"

CLIENT_NOT_READY = ResolutionError(ErrorCode.PROVIDER_NOT_READY, CLIENT_NOT_READY_MSG)

_SERVICE_PATH = "/schema.v1.Service"
_END_STREAM = 0x02

_CONFIGURATION_CHANGE = "configuration_change"
_PROVIDER_READY = "provider_ready"
_SHUTDOWN = "provider_shutdown"
_KEEP_ALIVE = "keep_alive"

_STATUS_CODES = {
    401: "unauthenticated",
    403: "permission_denied",
    404: "unimplemented",
    429: "unavailable",
    502: "unavailable",
    503: "unavailable",
    504: "unavailable",
}


@dataclass
class RpcConfiguration:
    """Where and how to reach the flagd server."""

    port: int = 8013
    host: str = "localhost"
    certificate_path: str = ""
    socket_path: str = ""
    tls_enabled: bool = False
    otel_interceptor: bool = False


class ConnectError(Exception):
    """An error reported by the Connect protocol, carrying its code."""

    def __init__(self, code: str, message: str = "") -> None:
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}" if message else code)


@dataclass
class ResolveResponse:
    """A flag resolution as returned by the server."""

    value: Any = None
    reason: str = ""
    variant: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class StreamMessage:
    """One message from the server's event stream."""

    type: str = ""
    data: Optional[dict[str, Any]] = None


class _Client(Protocol):
    def resolve(self, method: str, flag_key: str, context: Mapping[str, Any]) -> ResolveResponse: ...
    def event_stream(self) -> Iterable[StreamMessage]: ...


def _envelope(payload: bytes, flags: int = 0) -> bytes:
    return struct.pack(">BI", flags, len(payload)) + payload


def _frames(chunks: Iterable[bytes]) -> Iterator[tuple[int, bytes]]:
    buffer = bytearray()
    for chunk in chunks:
        buffer.extend(chunk)
        while len(buffer) >= 5:
            flags, length = struct.unpack(">BI", bytes(buffer[:5]))
            if len(buffer) < 5 + length:
                break
            payload = bytes(buffer[5 : 5 + length])
            del buffer[: 5 + length]
            yield flags, payload


def _error_from_response(response: httpx.Response) -> ConnectError:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("code"):
        return ConnectError(str(body["code"]), str(body.get("message", "")))
    return ConnectError(_STATUS_CODES.get(response.status_code, "unknown"), f"HTTP status {response.status_code}")


class ConnectClient:
    """A JSON Connect client for the flagd evaluation service."""

    def __init__(self, config: RpcConfiguration) -> None:
        self.config = config
        scheme = "http"
        verify: Any = True
        if config.tls_enabled:
            scheme = "https"
            if config.certificate_path:
                try:
                    verify = ssl.create_default_context(cafile=config.certificate_path)
                except ssl.SSLError as exc:
                    raise ValueError(
                        "error appending provider certificate file. please check and try again"
                    ) from exc
        if config.socket_path:
            transport = httpx.HTTPTransport(uds=config.socket_path, verify=verify)
        else:
            transport = httpx.HTTPTransport(verify=verify)
        self.base_url = f"{scheme}://{config.host}:{config.port}"
        self._http = httpx.Client(transport=transport, base_url=self.base_url, timeout=None)

    def resolve(self, method: str, flag_key: str, context: Mapping[str, Any]) -> ResolveResponse:
        """Call a unary resolve method such as ResolveBoolean."""
        try:
            response = self._http.post(
                f"{_SERVICE_PATH}/{method}",
                json={"flagKey": flag_key, "context": dict(context)},
                headers={"Connect-Protocol-Version": "1"},
            )
        except httpx.TransportError as exc:
            raise ConnectError("unavailable", str(exc)) from exc
        if response.status_code != 200:
            raise _error_from_response(response)
        body = response.json()
        return ResolveResponse(
            value=body.get("value"),
            reason=body.get("reason", ""),
            variant=body.get("variant", ""),
            metadata=dict(body.get("metadata") or {}),
        )

    def event_stream(self) -> Iterator[StreamMessage]:
        """Open the server event stream and yield its messages until it ends."""
        try:
            with self._http.stream(
                "POST",
                f"{_SERVICE_PATH}/EventStream",
                content=_envelope(b"{}"),
                headers={"Content-Type": "application/connect+json", "Connect-Protocol-Version": "1"},
            ) as response:
                if response.status_code != 200:
                    response.read()
                    raise _error_from_response(response)
                for flags, payload in _frames(response.iter_bytes()):
                    message = json.loads(payload) if payload else {}
                    if flags & _END_STREAM:
                        error = message.get("error")
                        if error:
                            raise ConnectError(str(error.get("code", "unknown")), str(error.get("message", "")))
                        return
                    yield StreamMessage(type=message.get("type", ""), data=message.get("data"))
        except httpx.TransportError as exc:
            raise ConnectError("unavailable", str(exc)) from exc

    def close(self) -> None:
        self._http.close()


@dataclass(frozen=True)
class _Kind:
    method: str
    accepts: Callable[[Any], bool]
    convert: Callable[[Any], Any]


_BOOLEAN = _Kind("ResolveBoolean", lambda v: isinstance(v, bool), lambda v: bool(v or False))
_STRING = _Kind("ResolveString", lambda v: isinstance(v, str), lambda v: "" if v is None else str(v))
_FLOAT = _Kind("ResolveFloat", lambda v: isinstance(v, float), lambda v: float(v or 0.0))
_INT = _Kind(
    "ResolveInt", lambda v: isinstance(v, int) and not isinstance(v, bool), lambda v: int(v or 0)
)
_OBJECT = _Kind("ResolveObject", lambda v: isinstance(v, dict), lambda v: dict(v or {}))


def _handle_error(error: ConnectError) -> ResolutionError:
    if error.code == "unavailable":
        return ResolutionError(ErrorCode.PROVIDER_NOT_READY, CONNECTION_ERROR)
    if error.code == "not_found":
        return ResolutionError(ErrorCode.FLAG_NOT_FOUND, str(error))
    if error.code == "invalid_argument":
        return ResolutionError(ErrorCode.TYPE_MISMATCH, str(error))
    if error.code == "data_loss":
        return ResolutionError(ErrorCode.PARSE_ERROR, str(error))
    return ResolutionError(ErrorCode.GENERAL, str(error))


class RpcService:
    """Resolves flags remotely, caching static results and following the server's events."""

    def __init__(
        self,
        config: RpcConfiguration,
        cache: CacheService,
        retries: int,
        client: Optional[_Client] = None,
    ) -> None:
        log.info("operating in rpc mode with flags sourced from %s:%d", config.host, config.port)
        self.config = config
        self.cache = cache
        self.client = client
        self.retry_counter = RetryCounter(retries)
        self._events: queue.Queue[Event] = queue.Queue()
        self._stop: Optional[threading.Event] = None
        self._owns_client = False

    def init(self) -> None:
        """Connect the client and start following the event stream in the background."""
        if self.client is None:
            self.client = ConnectClient(self.config)
            self._owns_client = True
        self._stop = threading.Event()
        threading.Thread(target=self.run_event_stream, args=(self._stop,), daemon=True).start()

    def shutdown(self) -> None:
        if self._stop is not None:
            self._stop.set()
        if self._owns_client and isinstance(self.client, ConnectClient):
            self.client.close()

    def is_initialised(self) -> bool:
        return self.client is not None

    def events(self) -> queue.Queue[Event]:
        return self._events

    def resolve_boolean(self, key: str, default_value: bool, eval_ctx: Optional[Mapping[str, Any]]) -> ResolutionDetail:
        return self._resolve(_BOOLEAN, key, default_value, eval_ctx)

    def resolve_string(self, key: str, default_value: str, eval_ctx: Optional[Mapping[str, Any]]) -> ResolutionDetail:
        return self._resolve(_STRING, key, default_value, eval_ctx)

    def resolve_float(self, key: str, default_value: float, eval_ctx: Optional[Mapping[str, Any]]) -> ResolutionDetail:
        return self._resolve(_FLOAT, key, default_value, eval_ctx)

    def resolve_int(self, key: str, default_value: int, eval_ctx: Optional[Mapping[str, Any]]) -> ResolutionDetail:
        return self._resolve(_INT, key, default_value, eval_ctx)

    def resolve_object(self, key: str, default_value: Any, eval_ctx: Optional[Mapping[str, Any]]) -> ResolutionDetail:
        return self._resolve(_OBJECT, key, default_value, eval_ctx)

    def _resolve(
        self, kind: _Kind, key: str, default_value: Any, eval_ctx: Optional[Mapping[str, Any]]
    ) -> ResolutionDetail:
        if self.cache.is_enabled():
            cached = self.cache.cache.get(key)
            if isinstance(cached, ResolutionDetail) and kind.accepts(cached.value):
                return replace(cached, reason=REASON_CACHED, flag_metadata=FlagMetadata(cached.flag_metadata))

        if not self.is_initialised():
            return ResolutionDetail(value=default_value, error=CLIENT_NOT_READY)

        try:
            response = self._call(kind.method, key, eval_ctx)
        except ResolutionError as exc:
            return ResolutionDetail(value=default_value, error=exc)

        detail = ResolutionDetail(
            value=kind.convert(response.value),
            reason=response.reason,
            variant=response.variant,
            flag_metadata=dict(response.metadata or {}),
        )
        if self.cache.is_enabled() and detail.reason == Reason.STATIC:
            self.cache.cache.add(key, replace(detail, flag_metadata=FlagMetadata(detail.flag_metadata)))
        return detail

    def _call(self, method: str, key: str, eval_ctx: Optional[Mapping[str, Any]]) -> ResolveResponse:
        try:
            context = json.loads(json.dumps(dict(eval_ctx or {})))
        except (TypeError, ValueError) as exc:
            log.error("struct from evaluation context: %s", exc)
            raise ResolutionError(ErrorCode.PARSE_ERROR, str(exc)) from exc
        try:
            return self.client.resolve(method, key, context)
        except ResolutionError:
            raise
        except ConnectError as exc:
            raise _handle_error(exc) from exc
        except Exception as exc:
            raise ResolutionError(ErrorCode.GENERAL, str(exc)) from exc

    def run_event_stream(self, stop: threading.Event) -> None:
        """Follow the event stream with retries; emit an error event once retries run out."""
        while self.retry_counter.retry():
            log.debug("connecting to event stream")
            try:
                self._stream_client(stop)
            except Exception as exc:
                if stop.is_set():
                    log.debug("context cancelled, exiting")
                    return
                log.warning("connection to event stream failed, attempting again: %s", exc)
                if self.cache.is_enabled():
                    self.cache.cache.purge()
            stop.wait(self.retry_counter.sleep())
            if stop.is_set():
                return

        self.cache.disable()
        self._events.put(
            Event(
                provider_name="flagd",
                event_type=EventType.PROVIDER_ERROR,
                message="grpc connection establishment failed",
            )
        )

    def _stream_client(self, stop: threading.Event) -> None:
        messages = self.client.event_stream()
        log.info("connected to event stream")
        for message in messages:
            if stop.is_set():
                return
            self.retry_counter.reset()
            if message.type == _CONFIGURATION_CHANGE:
                self.handle_configuration_change_event(message.data)
            elif message.type == _PROVIDER_READY:
                self._events.put(Event(provider_name="flagd", event_type=EventType.PROVIDER_READY))
            elif message.type == _SHUTDOWN:
                return

    def handle_configuration_change_event(self, data: Optional[Mapping[str, Any]]) -> None:
        """Drop changed flags from the cache and announce the change."""
        if not self.cache.is_enabled():
            return
        flags = data.get("flags") if isinstance(data, Mapping) else None
        if not isinstance(flags, Mapping):
            self.cache.cache.purge()
            return

        keys = []
        for flag_key in flags:
            self.cache.cache.remove(flag_key)
            keys.append(flag_key)

        self._events.put(
            Event(
                provider_name="flagd",
                event_type=EventType.PROVIDER_CONFIGURATION_CHANGED,
                message="flags changed",
                flag_changes=keys,
            )
        )