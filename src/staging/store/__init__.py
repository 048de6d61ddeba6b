"""
Staging store backends.

Two interchangeable backends implement the same three protocols:

- json: local JSON files, single process (development, tests, small hosts)
- sql: SQLAlchemy async engine (SQLite, PostgreSQL), safe across processes

The backend is chosen once from configuration by create_backend().
"""

import logging

from core.errors import ConfigurationError
from staging.store.base import (
    MAX_RETRIES_EXCEEDED_PREFIX,
    StagingBackend,
    StagingStore,
    SubscriptionRegistry,
    TransportLockTracker,
)
from staging.store.json_store import JsonStagingBackend
from staging.store.sql_store import SqlStagingBackend

logger = logging.getLogger(__name__)


def create_backend(config) -> StagingBackend:
    """Build the backend named by config.store.backend (StagingConfig or StoreConfig)."""
    store_config = getattr(config, "store", config)
    backend = store_config.backend

    if backend == "json":
        return JsonStagingBackend(store_config.path)
    if backend == "sql":
        return SqlStagingBackend(
            store_config.url,
            echo=store_config.echo,
            pool_size=store_config.pool_size,
        )
    raise ConfigurationError(
        f"Unknown staging store backend: {backend!r}",
        context={"backend": backend},
    )


__all__ = [
    "MAX_RETRIES_EXCEEDED_PREFIX",
    "StagingBackend",
    "StagingStore",
    "SubscriptionRegistry",
    "TransportLockTracker",
    "JsonStagingBackend",
    "SqlStagingBackend",
    "create_backend",
]
