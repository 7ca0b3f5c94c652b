# flagkit

Feature flag providers and evaluation hooks.

flagkit contains these modules:

- `flagkit.core` holds the shared types: `Reason`, `ErrorCode`, `FlagType`, `EventType`, `ProviderState`,
  `ResolutionError`, `FlagMetadata`, `ResolutionDetail`, `EvaluationDetails`, `Metadata`, `HookContext`,
  `Event`, and the `FlagService` protocol that the flagd resolving services implement.
- `flagkit.provider.FlagdProvider` is a provider for flagd. It resolves flags either remotely
  (`flagkit.rpc.RpcService`) or in-process (`flagkit.in_process.InProcessService`).
- `flagkit.cache` holds `InMemoryCache`, `LRUCache` and `CacheService`. The RPC service uses them to cache
  results whose reason is `STATIC`.
- `flagkit.configuration` holds `ProviderConfiguration` and `default_configuration()`, which give the flagd
  defaults and read the environment variable overrides.
- `flagkit.retry.RetryCounter` counts event stream reconnection attempts. The delay doubles after each one.
- `flagkit.configcat.ConfigCatProvider` is a provider that wraps a ConfigCat-style client.
  `flagkit.configcat_stub.StubClient` is a client of that kind which records every request it receives.
- `flagkit.validator` holds `RegexValidator`, `hex_validator()` and `ValidationHook`.
- `flagkit.telemetry` holds `MetricsHook` and `TracesHook`, with the in-memory `MeterProvider`, `Counter`
  and `Span` they record into.

## Installation

```
pip install flagkit
```

The only runtime dependency is `httpx`. The RPC client uses it.

## flagd provider over RPC

```python
from flagkit.provider import FlagdProvider

provider = FlagdProvider(host="localhost", port=8013)
provider.init(None)   # blocks until the service reports PROVIDER_READY

detail = provider.boolean_evaluation("my-flag", False, {"targetingKey": "user-1"})
print(detail.value, detail.reason, detail.variant, detail.error)

provider.shutdown()
```

The RPC service uses `ConnectClient`, which speaks the Connect protocol with JSON bodies over HTTP. It
posts to `/schema.v1.Service/ResolveBoolean`, `ResolveString` and so on, and it follows
`/schema.v1.Service/EventStream` on a background thread. When that stream fails, the service retries
`max_event_stream_attempts` times, waiting 1 s before the first retry and doubling the wait each time. Once
the retries run out, it disables the cache and emits a `PROVIDER_ERROR` event.

A configuration change event on the stream removes the changed flags from the cache.

Evaluation failures do not raise. They come back as a `ResolutionDetail` that holds the default value and
a `ResolutionError` in `error`.

`provider.events()` returns a `queue.Queue` of `Event`s. When a configuration change event arrives, the
provider status becomes `READY`. When an error event arrives, it becomes `ERROR`.

### Keyword arguments and environment variables

`FlagdProvider` takes these keyword arguments:

- `host`, `port`
- `socket_path`: connect through a Unix socket
- `certificate_path`: enables TLS
- `tls`
- `cache_type`: `lru`, `mem` or `disabled`
- `max_cache_size`
- `max_event_stream_attempts`
- `otel_intercept`
- `resolver`: `rpc` or `in-process`
- `offline_file_path`
- `selector`
- `from_env`
- `evaluator`
- `service`

By default (`from_env=True`) the provider reads these environment variables first:

- `FLAGD_HOST`
- `FLAGD_PORT`
- `FLAGD_TLS`
- `FLAGD_SOCKET_PATH`
- `FLAGD_SERVER_CERT_PATH`
- `FLAGD_CACHE`
- `FLAGD_MAX_CACHE_SIZE`
- `FLAGD_MAX_EVENT_STREAM_RETRIES`
- `FLAGD_RESOLVER`
- `FLAGD_SOURCE_SELECTOR`
- `FLAGD_OFFLINE_FLAG_SOURCE_PATH`

Explicit keyword arguments override the environment. `from_env` also takes a mapping to read in place of
`os.environ`, or `False` to ignore the environment. Invalid numbers are logged and ignored. An unknown
cache or resolver type falls back to the default.

## In-process resolution

In-process resolution needs an evaluator that you supply. The evaluator has two kinds of method:

- `set_state(data)` receives each synced flag configuration. It returns a mapping whose keys are the
  changed flags.
- `resolve_<type>_value(key, context)` returns `(value, variant, reason, metadata)`. The types are
  `boolean`, `string`, `float`, `int` and `object`. On failure it raises an exception whose text is
  `FLAG_NOT_FOUND`, `FLAG_DISABLED`, `TYPE_MISMATCH` or `PARSE_ERROR`. `map_error()` turns that into a
  `ResolutionError`; any other text maps to `GENERAL`.

```python
provider = FlagdProvider(resolver="in-process", offline_file_path="flags.json", evaluator=my_evaluator)
provider.init(None)
```

`FileSync` publishes the file's contents at start-up. It checks the file every 0.2 s and publishes it
again whenever the file changes. If a selector is set, it is added to every result's metadata as `scope`.

## ConfigCat provider

```python
from flagkit.configcat import ConfigCatProvider
from flagkit.configcat_stub import StubClient

client = StubClient()
provider = ConfigCatProvider(client)
detail = provider.boolean_evaluation("flag", False, {"targetingKey": "user-1", "email": "user@example.com"})
# With no evaluation configured, the stub answers "key not found": reason ERROR, error code FLAG_NOT_FOUND.
print(client.requests()[0].user_data.identifier)   # "user-1"
```

The provider maps the evaluation context onto `UserData` as follows:

- `targetingKey` becomes the identifier.
- `email` and `country` map to the fields of the same name.
- Every other key goes into `custom`.

Context values are converted to strings before they are passed on. Floats are formatted with six
decimals. A value that is not a string, bool, int or float yields an `INVALID_CONTEXT` error.

`object_evaluation` evaluates a string flag and parses its value as a JSON object.

## Validating flag values

```python
from flagkit.validator import ValidationHook, hex_validator

hook = ValidationHook(hex_validator())
hook.after(hook_context, details, hints)  # raises ValidationError unless details.value is e.g. "#abc" or "#a1b2c3"
```

## Telemetry

```python
from flagkit.telemetry import MeterProvider, MetricsHook, Span, TracesHook, use_span

meters = MeterProvider()
metrics = MetricsHook(meters)
metrics.before(hook_context, None)
metrics.after(hook_context, details, None)
metrics.finally_after(hook_context, None)
print(meters.collect())   # data points per metric name

traces = TracesHook(set_error_status=True)
with use_span(Span("request")) as span:
    traces.after(hook_context, details, None)
print(span.events)        # [SpanEvent(name="feature_flag", ...)]
```

### Dimensions from flag metadata

`MetricsHook` accepts `flag_metadata_dimensions`, a list of `DimensionDescription`s. These copy typed
values from the flag metadata onto the success metric.

Both hooks also accept an `attribute_mapper`, a callable that derives extra attributes from the flag
metadata.

## What the package does not do

- It has no built-in flag evaluation engine for in-process mode. You must pass an `evaluator`, or
  constructing the in-process service raises `ValueError`.
- The only bundled in-process sync source is the file-based `FileSync`. There is no remote sync stream.
- The `otel_intercept` setting is stored and passed along, but the RPC client adds no tracing
  instrumentation.
- `ConfigCatProvider` ships no real ConfigCat client. Only the recording `StubClient` is included.
- The telemetry hooks record into in-memory counters and spans and export nothing.

## Running the tests

```
pip install -e ".[test]"
pytest
```