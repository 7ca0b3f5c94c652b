"""Feature flag providers (flagd over RPC or in-process, ConfigCat), caches, and validation and telemetry hooks."""

__version__ = "0.1.0"