"""flagd provider configuration: defaults and overrides from environment variables."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional

from flagkit.cache import CacheType

log = logging.getLogger("flagd-provider")


class ResolverType(str, Enum):
    """How flags are resolved: remotely over RPC or locally in-process."""

    RPC = "rpc"
    IN_PROCESS = "in-process"

    def __str__(self) -> str:
        return self.value


DEFAULT_MAX_CACHE_SIZE = 1000
DEFAULT_PORT = 8013
DEFAULT_MAX_EVENT_STREAM_RETRIES = 5
DEFAULT_TLS = False
DEFAULT_CACHE = CacheType.LRU
DEFAULT_HOST = "localhost"
DEFAULT_RESOLVER = ResolverType.RPC

FLAGD_HOST = "FLAGD_HOST"
FLAGD_PORT = "FLAGD_PORT"
FLAGD_TLS = "FLAGD_TLS"
FLAGD_SOCKET_PATH = "FLAGD_SOCKET_PATH"
FLAGD_SERVER_CERT_PATH = "FLAGD_SERVER_CERT_PATH"
FLAGD_CACHE = "FLAGD_CACHE"
FLAGD_MAX_CACHE_SIZE = "FLAGD_MAX_CACHE_SIZE"
FLAGD_MAX_EVENT_STREAM_RETRIES = "FLAGD_MAX_EVENT_STREAM_RETRIES"
FLAGD_RESOLVER = "FLAGD_RESOLVER"
FLAGD_SOURCE_SELECTOR = "FLAGD_SOURCE_SELECTOR"
FLAGD_OFFLINE_FLAG_SOURCE_PATH = "FLAGD_OFFLINE_FLAG_SOURCE_PATH"

_INTEGER = re.compile(r"[+-]?[0-9]+")


def _parse_int(text: str) -> int:
    if not _INTEGER.fullmatch(text):
        raise ValueError(f"invalid syntax: {text!r}")
    return int(text)


def _env_int(environ: Mapping[str, str], name: str, default: int) -> Optional[int]:
    text = environ.get(name, "")
    if not text:
        return None
    try:
        return _parse_int(text)
    except ValueError as exc:
        log.error("invalid env config for %s provided, using default value: %d: %s", name, default, exc)
        return None


@dataclass
class ProviderConfiguration:
    """Settings a flagd provider is built from."""

    cache_type: CacheType = DEFAULT_CACHE
    certificate_path: str = ""
    event_stream_connection_max_attempts: int = DEFAULT_MAX_EVENT_STREAM_RETRIES
    host: str = DEFAULT_HOST
    max_cache_size: int = DEFAULT_MAX_CACHE_SIZE
    offline_flag_source_path: str = ""
    otel_intercept: bool = False
    port: int = DEFAULT_PORT
    resolver: ResolverType = DEFAULT_RESOLVER
    selector: str = ""
    socket_path: str = ""
    tls_enabled: bool = DEFAULT_TLS

    def update_from_env(self, environ: Optional[Mapping[str, str]] = None) -> None:
        """Apply any flagd environment variables that are set and valid."""
        env = os.environ if environ is None else environ

        port = _env_int(env, FLAGD_PORT, DEFAULT_PORT)
        if port is not None:
            self.port = port % 65536

        host = env.get(FLAGD_HOST, "")
        if host:
            self.host = host

        socket_path = env.get(FLAGD_SOCKET_PATH, "")
        if socket_path:
            self.socket_path = socket_path

        certificate_path = env.get(FLAGD_SERVER_CERT_PATH, "")
        if certificate_path or env.get(FLAGD_TLS, "") == "true":
            self.tls_enabled = True
            self.certificate_path = certificate_path

        max_cache_size = _env_int(env, FLAGD_MAX_CACHE_SIZE, DEFAULT_MAX_CACHE_SIZE)
        if max_cache_size is not None:
            self.max_cache_size = max_cache_size

        cache_value = env.get(FLAGD_CACHE, "")
        if cache_value:
            try:
                self.cache_type = CacheType(cache_value)
            except ValueError:
                log.info("invalid cache type configured: %s, falling back to default: %s", cache_value, DEFAULT_CACHE)
                self.cache_type = DEFAULT_CACHE

        retries = _env_int(env, FLAGD_MAX_EVENT_STREAM_RETRIES, DEFAULT_MAX_EVENT_STREAM_RETRIES)
        if retries is not None:
            self.event_stream_connection_max_attempts = retries

        resolver = env.get(FLAGD_RESOLVER, "")
        if resolver:
            try:
                self.resolver = ResolverType(resolver)
            except ValueError:
                log.info("invalid resolver type: %s, falling back to default: %s", resolver, DEFAULT_RESOLVER)
                self.resolver = DEFAULT_RESOLVER

        offline_path = env.get(FLAGD_OFFLINE_FLAG_SOURCE_PATH, "")
        if offline_path:
            self.offline_flag_source_path = offline_path

        selector = env.get(FLAGD_SOURCE_SELECTOR, "")
        if selector:
            self.selector = selector


def default_configuration(environ: Optional[Mapping[str, str]] = None) -> ProviderConfiguration:
    """The default configuration with environment overrides applied."""
    config = ProviderConfiguration()
    config.update_from_env(environ)
    return config