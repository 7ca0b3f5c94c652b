import json
import queue
import struct
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from flagkit.cache import CacheService, CacheType
from flagkit.core import ErrorCode, EventType, Reason, ResolutionDetail, ResolutionError
from flagkit.retry import RetryCounter
from flagkit.rpc import (
    CLIENT_NOT_READY_MSG,
    ConnectClient,
    ConnectError,
    ResolveResponse,
    RpcConfiguration,
    RpcService,
    StreamMessage,
)

FLAG_KEY = "key"
METADATA = {"scope": "flagd-scope"}


class FakeClient:
    def __init__(self, response=None, error=None, streams=()):
        self.response = response
        self.error = error
        self.calls = []
        self._streams = list(streams)

    def resolve(self, method, flag_key, context):
        self.calls.append((method, flag_key, context))
        if self.error is not None:
            raise self.error
        return self.response

    def event_stream(self):
        if not self._streams:
            raise ConnectError("unavailable", "streaming error")
        item = self._streams.pop(0)
        if isinstance(item, Exception):
            raise item
        yield from item


KINDS = [
    ("resolve_boolean", "ResolveBoolean", False, True, True),
    ("resolve_string", "ResolveString", "other", "valid", "valid"),
    ("resolve_float", "ResolveFloat", 0.05, 1.005, 1.005),
    ("resolve_int", "ResolveInt", 1, "2", 2),
    ("resolve_object", "ResolveObject", {"f1": "zero", "f2": "0"}, {"f1": "one", "f2": "1"}, {"f1": "one", "f2": "1"}),
]


def make_service(cache_type=CacheType.DISABLED, client=None, retries=5):
    return RpcService(RpcConfiguration(), CacheService(cache_type, 10), retries, client=client)


@pytest.mark.parametrize("method, wire, default, response_value, expected", KINDS)
def test_uncached_evaluation(method, wire, default, response_value, expected):
    client = FakeClient(ResolveResponse(value=response_value, reason="STATIC", variant="on", metadata=dict(METADATA)))
    service = make_service(client=client)
    detail = getattr(service, method)(FLAG_KEY, default, {})
    assert detail == ResolutionDetail(value=expected, reason=Reason.STATIC, variant="on", flag_metadata=METADATA)
    assert client.calls == [(wire, FLAG_KEY, {})]


@pytest.mark.parametrize("method, wire, default, response_value, expected", KINDS)
def test_cached_flags_are_served_with_cache_reason(method, wire, default, response_value, expected):
    client = FakeClient()
    service = make_service(CacheType.IN_MEMORY, client)
    service.cache.cache.add(
        FLAG_KEY, ResolutionDetail(value=expected, reason=Reason.STATIC, variant="on", flag_metadata=METADATA)
    )
    detail = getattr(service, method)(FLAG_KEY, default, {})
    assert detail == ResolutionDetail(value=expected, reason=Reason.CACHED, variant="on", flag_metadata=METADATA)
    assert client.calls == []


@pytest.mark.parametrize("method, wire, default, response_value, expected", KINDS)
def test_static_resolving_is_cached(method, wire, default, response_value, expected):
    client = FakeClient(ResolveResponse(value=response_value, reason="STATIC", variant="on", metadata=dict(METADATA)))
    service = make_service(CacheType.IN_MEMORY, client)
    detail = getattr(service, method)(FLAG_KEY, default, {})
    assert detail.reason == Reason.STATIC
    assert detail.value == expected
    assert FLAG_KEY in service.cache.cache
    again = getattr(service, method)(FLAG_KEY, default, {})
    assert again.reason == Reason.CACHED
    assert len(client.calls) == 1


def test_targeting_match_is_not_cached():
    client = FakeClient(ResolveResponse(value=True, reason="TARGETING_MATCH", variant="on"))
    service = make_service(CacheType.IN_MEMORY, client)
    service.resolve_boolean(FLAG_KEY, False, {})
    assert FLAG_KEY not in service.cache.cache


def test_cached_value_of_other_type_is_ignored():
    client = FakeClient(ResolveResponse(value="valid", reason="DEFAULT", variant="v"))
    service = make_service(CacheType.IN_MEMORY, client)
    service.cache.cache.add(FLAG_KEY, ResolutionDetail(value=True, reason=Reason.STATIC))
    detail = service.resolve_string(FLAG_KEY, "other", {})
    assert detail.value == "valid"
    assert detail.reason == "DEFAULT"


@pytest.mark.parametrize("method, wire, default, response_value, expected", KINDS)
def test_flag_not_found_returns_default(method, wire, default, response_value, expected):
    client = FakeClient(error=ResolutionError(ErrorCode.FLAG_NOT_FOUND, "requested flag not found"))
    service = make_service(client=client)
    detail = getattr(service, method)(FLAG_KEY, default, {})
    assert detail.value == default
    assert detail.error.code is ErrorCode.FLAG_NOT_FOUND


@pytest.mark.parametrize("method, wire, default, response_value, expected", KINDS)
def test_client_not_initialised(method, wire, default, response_value, expected):
    service = make_service(client=None)
    detail = getattr(service, method)(FLAG_KEY, default, {})
    assert detail.value == default
    assert detail.error.code is ErrorCode.PROVIDER_NOT_READY
    assert detail.error.message == CLIENT_NOT_READY_MSG


@pytest.mark.parametrize(
    "code, expected",
    [
        ("unavailable", ErrorCode.PROVIDER_NOT_READY),
        ("not_found", ErrorCode.FLAG_NOT_FOUND),
        ("invalid_argument", ErrorCode.TYPE_MISMATCH),
        ("data_loss", ErrorCode.PARSE_ERROR),
        ("internal", ErrorCode.GENERAL),
    ],
)
def test_connect_error_mapping(code, expected):
    service = make_service(client=FakeClient(error=ConnectError(code, "boom")))
    detail = service.resolve_boolean(FLAG_KEY, False, {})
    assert detail.error.code is expected
    assert detail.value is False


def test_unavailable_message():
    service = make_service(client=FakeClient(error=ConnectError("unavailable", "down")))
    assert service.resolve_boolean(FLAG_KEY, False, {}).error.message == "connection not made"


def test_unexpected_exception_is_general():
    service = make_service(client=FakeClient(error=RuntimeError("odd")))
    detail = service.resolve_string(FLAG_KEY, "x", {})
    assert detail.error == ResolutionError(ErrorCode.GENERAL, "odd")


def test_unserialisable_context_is_parse_error():
    client = FakeClient(ResolveResponse(value=True))
    service = make_service(client=client)
    detail = service.resolve_boolean(FLAG_KEY, False, {"x": object()})
    assert detail.error.code is ErrorCode.PARSE_ERROR
    assert client.calls == []


@pytest.mark.parametrize("client, expected", [(None, False), (FakeClient(), True)])
def test_is_initialised(client, expected):
    assert make_service(client=client).is_initialised() is expected


def test_retries_exhausted_emit_error_event():
    service = make_service(client=FakeClient(), retries=1)
    service.retry_counter = RetryCounter(1, 0.0)
    service.run_event_stream(threading.Event())
    event = service.events().get(timeout=1)
    assert event.event_type is EventType.PROVIDER_ERROR
    assert event.message == "grpc connection establishment failed"


def test_retries_in_background_thread():
    service = make_service(client=FakeClient(), retries=1)
    service.retry_counter = RetryCounter(1, 0.1)
    threading.Thread(target=service.run_event_stream, args=(threading.Event(),), daemon=True).start()
    event = service.events().get(timeout=1)
    assert event.event_type is EventType.PROVIDER_ERROR


def test_exhausted_retries_disable_cache():
    service = make_service(CacheType.IN_MEMORY, FakeClient(), retries=1)
    service.retry_counter = RetryCounter(1, 0.0)
    service.cache.cache.add(FLAG_KEY, ResolutionDetail(value=True))
    service.run_event_stream(threading.Event())
    assert service.cache.is_enabled() is False
    assert len(service.cache.cache) == 0


def test_stopped_stream_exits_without_event():
    stop = threading.Event()
    stop.set()
    service = make_service(client=FakeClient(), retries=3)
    service.run_event_stream(stop)
    assert service.events().empty()


def test_stream_messages_are_dispatched():
    messages = [
        StreamMessage(type="provider_ready"),
        StreamMessage(type="keep_alive"),
        StreamMessage(type="configuration_change", data={"flags": {"a": {}}}),
        StreamMessage(type="provider_shutdown"),
    ]
    service = make_service(CacheType.IN_MEMORY, FakeClient(streams=[messages]), retries=1)
    service.retry_counter = RetryCounter(1, 0.0)
    service.run_event_stream(threading.Event())
    kinds = [service.events().get_nowait().event_type for _ in range(3)]
    assert kinds == [EventType.PROVIDER_READY, EventType.PROVIDER_CONFIGURATION_CHANGED, EventType.PROVIDER_ERROR]


DATA = {"flags": {"a": "", "b": ""}}


def test_config_change_without_cache_emits_nothing():
    service = make_service(CacheType.DISABLED)
    service.handle_configuration_change_event(DATA)
    with pytest.raises(queue.Empty):
        service.events().get(timeout=0.1)


def test_config_change_with_cache_emits_event():
    service = make_service(CacheType.IN_MEMORY)
    service.cache.cache.add("a", ResolutionDetail(value=True))
    service.cache.cache.add("c", ResolutionDetail(value=True))
    service.handle_configuration_change_event(DATA)
    event = service.events().get(timeout=0.1)
    assert event.event_type is EventType.PROVIDER_CONFIGURATION_CHANGED
    assert sorted(event.flag_changes) == ["a", "b"]
    assert "a" not in service.cache.cache
    assert "c" in service.cache.cache


@pytest.mark.parametrize("data", [None, {}, {"flags": "nope"}])
def test_config_change_without_flags_purges(data):
    service = make_service(CacheType.IN_MEMORY)
    service.cache.cache.add("a", ResolutionDetail(value=True))
    service.handle_configuration_change_event(data)
    assert len(service.cache.cache) == 0
    assert service.events().empty()


def _frame(flags, message):
    payload = json.dumps(message).encode()
    return struct.pack(">BI", flags, len(payload)) + payload


class _Handler(BaseHTTPRequestHandler):
    def log_message(self, *args):
        pass

    def _send(self, status, content_type, body):
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_POST(self):
        length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(length)
        self.server.received.append((self.path, self.headers.get("Content-Type"), body))
        if self.path.endswith("/ResolveBoolean"):
            reply = {"value": True, "reason": "STATIC", "variant": "on", "metadata": METADATA}
            self._send(200, "application/json", json.dumps(reply).encode())
        elif self.path.endswith("/ResolveString"):
            reply = {"code": "not_found", "message": "flag not found"}
            self._send(404, "application/json", json.dumps(reply).encode())
        elif self.path.endswith("/EventStream"):
            frames = (
                _frame(0, {"type": "provider_ready"})
                + _frame(0, {"type": "configuration_change", "data": {"flags": {"a": {}}}})
                + _frame(2, {})
            )
            self._send(200, "application/connect+json", frames)
        else:
            self._send(404, "text/plain", b"missing")


@pytest.fixture
def server():
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    httpd.received = []
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    yield httpd
    httpd.shutdown()
    httpd.server_close()


def _config(server):
    return RpcConfiguration(host="127.0.0.1", port=server.server_address[1])


def test_connect_client_resolve(server):
    client = ConnectClient(_config(server))
    try:
        response = client.resolve("ResolveBoolean", "flag", {"a": 1})
    finally:
        client.close()
    assert response == ResolveResponse(value=True, reason="STATIC", variant="on", metadata=METADATA)
    path, _, body = server.received[0]
    assert path == "/schema.v1.Service/ResolveBoolean"
    assert json.loads(body) == {"flagKey": "flag", "context": {"a": 1}}


def test_connect_client_error(server):
    client = ConnectClient(_config(server))
    try:
        with pytest.raises(ConnectError) as info:
            client.resolve("ResolveString", "flag", {})
    finally:
        client.close()
    assert info.value.code == "not_found"
    assert info.value.message == "flag not found"


def test_connect_client_event_stream(server):
    client = ConnectClient(_config(server))
    try:
        messages = list(client.event_stream())
    finally:
        client.close()
    assert messages == [
        StreamMessage(type="provider_ready"),
        StreamMessage(type="configuration_change", data={"flags": {"a": {}}}),
    ]
    assert server.received[0][1] == "application/connect+json"


def test_connect_client_unreachable():
    client = ConnectClient(RpcConfiguration(host="127.0.0.1", port=1))
    try:
        with pytest.raises(ConnectError) as info:
            client.resolve("ResolveBoolean", "flag", {})
    finally:
        client.close()
    assert info.value.code == "unavailable"


def test_connect_client_tls_urls(tmp_path):
    client = ConnectClient(RpcConfiguration(host="flags.example.com", port=9000, tls_enabled=True))
    try:
        assert client.base_url == "https://flags.example.com:9000"
    finally:
        client.close()


def test_connect_client_missing_certificate(tmp_path):
    config = RpcConfiguration(tls_enabled=True, certificate_path=str(tmp_path / "missing.pem"))
    with pytest.raises(FileNotFoundError):
        ConnectClient(config)


def test_connect_client_invalid_certificate(tmp_path):
    cert = tmp_path / "cert.pem"
    cert.write_text("not a certificate")
    with pytest.raises(ValueError, match="error appending provider certificate file"):
        ConnectClient(RpcConfiguration(tls_enabled=True, certificate_path=str(cert)))


def test_service_init_against_server(server):
    service = RpcService(_config(server), CacheService(CacheType.IN_MEMORY, 10), 5)
    service.init()
    try:
        event = service.events().get(timeout=2)
        assert event.event_type is EventType.PROVIDER_READY
        detail = service.resolve_boolean("flag", False, {})
        assert detail.value is True
        assert detail.flag_metadata == METADATA
    finally:
        service.shutdown()