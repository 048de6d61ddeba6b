"""Configuration loading for the staging engine.

Configuration lives in a single YAML file (default ``src/config/config.yaml``)
under a top-level ``staging:`` key.

Main Functions
--------------

    - load_config(): Load StagingConfig from YAML
    - get_config(): Get or load singleton config instance
    - set_config(): Replace the singleton (tests)
    - reset_config(): Reset singleton config instance

Usage Examples
--------------

    >>> from config import load_config
    >>> config = load_config()
    >>> config.store.backend
    'json'
    >>> config.get_interface("orders").destinations.keys()
    dict_keys(['orders-archive'])

Configuration Priority
----------------------

1. ``overrides`` passed to load_config() (deep-merged)
2. YAML values, after ${VAR:-default} environment expansion
3. Dataclass defaults
"""

from config.config import (
    AdapterSettings,
    CsvConfig,
    DeliveryConfig,
    InterfaceConfig,
    LocksConfig,
    LoggingConfig,
    ReaperConfig,
    RetryConfig,
    StagingConfig,
    StoreConfig,
    get_config,
    load_config,
    reset_config,
    set_config,
)

__all__ = [
    # Core config functions
    "load_config",
    "get_config",
    "set_config",
    "reset_config",
    # Config classes
    "StagingConfig",
    "StoreConfig",
    "DeliveryConfig",
    "RetryConfig",
    "ReaperConfig",
    "CsvConfig",
    "LocksConfig",
    "LoggingConfig",
    "InterfaceConfig",
    "AdapterSettings",
]
