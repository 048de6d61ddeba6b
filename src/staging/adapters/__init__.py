"""
Source and destination adapters.

Adapters are selected once, at configuration time, from ADAPTER_REGISTRY by
their kind. Call sites only ever see the SourceAdapter / DestinationAdapter
capabilities.
"""

from typing import Any, Callable

from core.errors import ConfigurationError
from staging.adapters.base import DestinationAdapter, Record, SourceAdapter
from staging.adapters.csv_file import CsvFileAdapter

# kind -> factory(csv_config=None, **settings)
ADAPTER_REGISTRY: dict[str, Callable[..., Any]] = {
    CsvFileAdapter.kind: CsvFileAdapter.from_settings,
}


def build_adapter(kind: str, csv_config=None, **settings: Any):
    """Instantiate the adapter registered under kind.

    Raises:
        ConfigurationError: Unknown kind or settings the adapter does not accept
    """
    factory = ADAPTER_REGISTRY.get(kind)
    if factory is None:
        raise ConfigurationError(
            f"Unknown adapter kind: {kind!r}. Available: {sorted(ADAPTER_REGISTRY)}",
            context={"adapter_name": settings.get("name", kind)},
        )
    try:
        return factory(csv_config=csv_config, **settings)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"Invalid settings for adapter kind {kind!r}: {e}", cause=e
        ) from e


def build_from_config(adapter_settings, csv_config=None):
    """Build from config.AdapterSettings."""
    return build_adapter(
        adapter_settings.kind,
        csv_config=csv_config,
        name=adapter_settings.name,
        **adapter_settings.settings,
    )


__all__ = [
    "ADAPTER_REGISTRY",
    "CsvFileAdapter",
    "DestinationAdapter",
    "Record",
    "SourceAdapter",
    "build_adapter",
    "build_from_config",
]
