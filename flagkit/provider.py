"""The flagd flag provider, resolving over RPC or in-process."""

from __future__ import annotations

import queue
import threading
from typing import Any, Mapping, Optional, Union

from flagkit.cache import CacheService, CacheType
from flagkit.configuration import ProviderConfiguration, ResolverType, default_configuration
from flagkit.core import Event, EventType, FlagService, Metadata, ProviderState, ResolutionDetail
from flagkit.in_process import InProcessConfiguration, InProcessService
from flagkit.rpc import RpcConfiguration, RpcService

_FORWARD_POLL = 0.1


class FlagdProvider:
    """A feature flag provider backed by flagd."""

    def __init__(
        self,
        *,
        host: Optional[str] = None,
        port: Optional[int] = None,
        socket_path: Optional[str] = None,
        certificate_path: Optional[str] = None,
        tls: Optional[bool] = None,
        cache_type: Optional[Union[CacheType, str]] = None,
        max_cache_size: Optional[int] = None,
        max_event_stream_attempts: Optional[int] = None,
        otel_intercept: Optional[bool] = None,
        resolver: Optional[Union[ResolverType, str]] = None,
        offline_file_path: Optional[str] = None,
        selector: Optional[str] = None,
        from_env: Union[bool, Mapping[str, str]] = True,
        evaluator: Any = None,
        service: Optional[FlagService] = None,
    ) -> None:
        """Build the provider; environment settings apply first, explicit arguments override them."""
        if from_env is True:
            config = default_configuration()
        elif from_env is False:
            config = ProviderConfiguration()
        else:
            config = default_configuration(from_env)

        if socket_path is not None:
            config.socket_path = socket_path
        if certificate_path is not None:
            config.certificate_path = certificate_path
            config.tls_enabled = True
        if tls is not None:
            config.tls_enabled = tls
        if port is not None:
            config.port = port
        if host is not None:
            config.host = host
        if cache_type is not None:
            config.cache_type = CacheType(cache_type)
        if max_cache_size is not None and max_cache_size > 0:
            config.max_cache_size = max_cache_size
        if max_event_stream_attempts is not None:
            config.event_stream_connection_max_attempts = max_event_stream_attempts
        if otel_intercept is not None:
            config.otel_intercept = otel_intercept
        if resolver is not None:
            config.resolver = ResolverType(resolver)
        if offline_file_path is not None:
            config.offline_flag_source_path = offline_file_path
        if selector is not None:
            config.selector = selector

        self.configuration = config
        self.initialized = False
        self._status = ProviderState.NOT_READY
        self._lock = threading.Lock()
        self._events: queue.Queue[Event] = queue.Queue()
        self._forward_stop: Optional[threading.Event] = None
        self.service = service if service is not None else self._build_service(evaluator)

    def _build_service(self, evaluator: Any) -> FlagService:
        config = self.configuration
        if config.resolver == ResolverType.RPC:
            cache = CacheService(config.cache_type, config.max_cache_size)
            return RpcService(
                RpcConfiguration(
                    port=config.port,
                    host=config.host,
                    certificate_path=config.certificate_path,
                    socket_path=config.socket_path,
                    tls_enabled=config.tls_enabled,
                    otel_interceptor=config.otel_intercept,
                ),
                cache,
                config.event_stream_connection_max_attempts,
            )
        return InProcessService(
            InProcessConfiguration(
                host=config.host,
                port=config.port,
                selector=config.selector,
                tls_enabled=config.tls_enabled,
                offline_flag_source=config.offline_flag_source_path,
            ),
            evaluator,
        )

    def init(self, evaluation_context: Optional[Mapping[str, Any]] = None) -> None:
        """Start the service and wait for it to become ready; a second call does nothing."""
        with self._lock:
            if self.initialized:
                return
            self.service.init()

            source = self.service.events()
            event = source.get()
            if event.event_type != EventType.PROVIDER_READY:
                raise RuntimeError(f"provider initialization failed: {event.message}")

            self._status = ProviderState.READY
            self.initialized = True
            stop = threading.Event()
            self._forward_stop = stop
            threading.Thread(target=self._forward, args=(source, stop), daemon=True).start()

    def _forward(self, source: queue.Queue, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                event = source.get(timeout=_FORWARD_POLL)
            except queue.Empty:
                continue
            if event.event_type == EventType.PROVIDER_CONFIGURATION_CHANGED:
                self._set_status(ProviderState.READY)
            elif event.event_type == EventType.PROVIDER_ERROR:
                self._set_status(ProviderState.ERROR)
            self._events.put(event)

    def _set_status(self, status: ProviderState) -> None:
        with self._lock:
            self._status = status

    def status(self) -> ProviderState:
        with self._lock:
            return self._status

    def shutdown(self) -> None:
        with self._lock:
            self.initialized = False
            if self._forward_stop is not None:
                self._forward_stop.set()
                self._forward_stop = None
            self.service.shutdown()

    def events(self) -> queue.Queue[Event]:
        return self._events

    def hooks(self) -> list:
        """The provider has no hooks."""
        return []

    def metadata(self) -> Metadata:
        return Metadata(name="flagd")

    def boolean_evaluation(self, flag_key: str, default_value: bool, eval_ctx: Optional[Mapping[str, Any]] = None) -> ResolutionDetail:
        return self.service.resolve_boolean(flag_key, default_value, eval_ctx or {})

    def string_evaluation(self, flag_key: str, default_value: str, eval_ctx: Optional[Mapping[str, Any]] = None) -> ResolutionDetail:
        return self.service.resolve_string(flag_key, default_value, eval_ctx or {})

    def float_evaluation(self, flag_key: str, default_value: float, eval_ctx: Optional[Mapping[str, Any]] = None) -> ResolutionDetail:
        return self.service.resolve_float(flag_key, default_value, eval_ctx or {})

    def int_evaluation(self, flag_key: str, default_value: int, eval_ctx: Optional[Mapping[str, Any]] = None) -> ResolutionDetail:
        return self.service.resolve_int(flag_key, default_value, eval_ctx or {})

    def object_evaluation(self, flag_key: str, default_value: Any, eval_ctx: Optional[Mapping[str, Any]] = None) -> ResolutionDetail:
        return self.service.resolve_object(flag_key, default_value, eval_ctx or {})