"""Core layer: service lifecycle, persistence, logging, metrics and config loading.

Sits between ``nostrmirror.models`` (which it depends on) and
``nostrmirror.services`` (which depends on it).

Attributes:
    BaseService: Abstract generic base class with lifecycle management
        ([run()][nostrmirror.core.base_service.BaseService.run] /
        [run_forever()][nostrmirror.core.base_service.BaseService.run_forever] /
        shutdown) and factory methods.
    HostContext: Secret store plus state store handed to services.
        See [HostContext][nostrmirror.core.store.HostContext].
    Pool: Async PostgreSQL connection pool backing
        [PostgresStore][nostrmirror.core.store.PostgresStore].
    Logger: Structured logger supporting key=value and JSON output modes.
    MetricsServer: Prometheus ``/metrics`` HTTP endpoint.
"""

from .base_service import (
    BaseService,
    BaseServiceConfig,
    ConfigT,
)
from .exceptions import (
    ConfigurationError,
    ConnectivityError,
    EngineStateError,
    NostrMirrorError,
    ProtocolError,
    PublishingError,
    StoreError,
)
from .logger import Logger, StructuredFormatter, format_kv_pairs
from .metrics import (
    CYCLE_DURATION_SECONDS,
    SERVICE_COUNTER,
    SERVICE_GAUGE,
    SERVICE_INFO,
    MetricsConfig,
    MetricsServer,
    start_metrics_server,
)
from .pool import (
    DatabaseConfig,
    Pool,
    PoolConfig,
    PoolLimitsConfig,
    PoolRetryConfig,
)
from .store import (
    HostContext,
    KeyValueStore,
    MemoryStore,
    PostgresStore,
    SecretStore,
    StoreConfig,
    open_host_context,
)
from .yaml import load_yaml


__all__ = [
    "CYCLE_DURATION_SECONDS",
    "SERVICE_COUNTER",
    "SERVICE_GAUGE",
    "SERVICE_INFO",
    "BaseService",
    "BaseServiceConfig",
    "ConfigT",
    "ConfigurationError",
    "ConnectivityError",
    "DatabaseConfig",
    "EngineStateError",
    "HostContext",
    "KeyValueStore",
    "Logger",
    "MemoryStore",
    "MetricsConfig",
    "MetricsServer",
    "NostrMirrorError",
    "Pool",
    "PoolConfig",
    "PoolLimitsConfig",
    "PoolRetryConfig",
    "PostgresStore",
    "ProtocolError",
    "PublishingError",
    "SecretStore",
    "StoreConfig",
    "StoreError",
    "StructuredFormatter",
    "format_kv_pairs",
    "load_yaml",
    "open_host_context",
]
