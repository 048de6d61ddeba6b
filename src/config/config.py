"""Staging engine configuration from YAML file.

Loads from config/config.yaml with all settings in one place:
- Store backend (local JSON files or a SQL database)
- Delivery loop, retry policy and stale-lease reaper settings
- CSV parsing defaults
- Transport lock renewal settings
- Interfaces with their source and destination adapters

Environment variables ARE supported using ${VAR_NAME} and ${VAR_NAME:-default}
syntax in YAML files.
"""

import json
import logging
import os
import re
import sys
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

# Configure module logger
logger = logging.getLogger(__name__)


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file and return dict."""
    if not path.exists():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _expand_env_vars(data: Any) -> Any:
    """Recursively expand ${VAR_NAME} and ${VAR_NAME:-default} environment variables in config data."""
    if isinstance(data, dict):
        return {key: _expand_env_vars(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    elif isinstance(data, str):
        pattern = r"\$\{([^}:]+)(?::-(([^}]*))?)?\}"

        def replacer(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else match.group(0)
            return os.getenv(var_name, default_value)

        return re.sub(pattern, replacer, data)
    else:
        return data


def _deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base dict."""
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _known_fields(cls: type, data: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only keys that are dataclass fields of cls, warning on the rest."""
    names = {f.name for f in fields(cls)}
    unknown = set(data) - names
    if unknown:
        logger.warning(f"Ignoring unknown {cls.__name__} keys: {sorted(unknown)}")
    return {k: v for k, v in data.items() if k in names}


# Default config file: config/config.yaml in src/ directory
DEFAULT_CONFIG_FILE = Path(__file__).parent.parent / "config" / "config.yaml"

VALID_BACKENDS = ["json", "sql"]
VALID_RETRY_MODES = ["flat", "exponential"]


@dataclass
class StoreConfig:
    """Where staged messages, subscriptions and transport locks live."""

    backend: str = "json"
    # json backend: directory holding messages.json / subscriptions.json / ...
    path: str = "data/staging"
    # sql backend: SQLAlchemy async URL
    url: str = "sqlite+aiosqlite:///data/staging.db"
    echo: bool = False
    pool_size: int = 5


@dataclass
class DeliveryConfig:
    poll_interval_seconds: float = 5.0
    batch_size: int = 100
    lease_timeout_seconds: float = 300.0
    stats_interval_seconds: int = 30


@dataclass
class RetryConfig:
    """Retry gating for messages in Error.

    mode "flat": due once min_delay_seconds passed since the last attempt.
    mode "exponential": base_delay_seconds * 2**(retry_count - 1), capped.
    """

    mode: str = "flat"
    max_retries: int = 3
    min_delay_seconds: float = 60.0
    base_delay_seconds: float = 60.0
    max_delay_seconds: float = 3600.0


@dataclass
class ReaperConfig:
    interval_seconds: float = 60.0
    grace_seconds: float = 0.0
    # None keeps dead letters forever
    dead_letter_retention_days: Optional[float] = None
    # Reaper warns when an interface holds more dead letters than this
    dead_letter_alert_threshold: int = 100


@dataclass
class CsvConfig:
    separator: str = "║"
    quote_char: Optional[str] = '"'
    skip_leading_lines: int = 0
    skip_trailing_lines: int = 0
    streaming_threshold: int = 1024 * 1024
    chunk_size: int = 1000


@dataclass
class LocksConfig:
    """Transport lock renewal. Only used when the substrate is a managed queue.

    receiver_module/receiver_class name the QueueReceiver wrapping the queue
    client; it is constructed as receiver_class(config=receiver_settings).
    """

    renewal_interval_seconds: float = 30.0
    renewal_threshold_seconds: float = 60.0
    retention_days: float = 7.0
    receiver_module: Optional[str] = None
    receiver_class: Optional[str] = None
    receiver_settings: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LoggingConfig:
    level: str = "INFO"
    log_dir: str = "logs"
    json_format: bool = True
    log_to_stdout: bool = False


@dataclass
class AdapterSettings:
    """One adapter: its kind (registry key) and kind-specific settings."""

    kind: str
    name: str = ""
    settings: Dict[str, Any] = field(default_factory=dict)
    # Disabled destinations keep their subscription row but stop being owed messages
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AdapterSettings":
        data = dict(data)
        kind = data.pop("kind", "")
        name = data.pop("name", "") or kind
        enabled = data.pop("enabled", True)
        settings = data.pop("settings", {}) or {}
        # Any remaining flat keys are settings too
        settings = {**data, **settings}
        return cls(kind=kind, name=name, settings=settings, enabled=enabled)


@dataclass
class InterfaceConfig:
    """An interface: one source feeding N destination instances."""

    name: str
    source: Optional[AdapterSettings] = None
    # instance_id -> destination adapter
    destinations: Dict[str, AdapterSettings] = field(default_factory=dict)
    deduplicate: bool = False
    max_retries: Optional[int] = None

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "InterfaceConfig":
        source = data.get("source")
        return cls(
            name=name,
            source=AdapterSettings.from_dict(source) if source else None,
            destinations={
                instance_id: AdapterSettings.from_dict(dest or {})
                for instance_id, dest in (data.get("destinations") or {}).items()
            },
            deduplicate=bool(data.get("deduplicate", False)),
            max_retries=data.get("max_retries"),
        )


@dataclass
class StagingConfig:
    """Staging engine configuration.

    Configuration structure:
        staging:
          instance_id: ...          # Hosting instance (lock ownership)
          store: {...}              # Backend selection
          delivery: {...}           # Poll loop
          retry: {...}              # Retry gating
          reaper: {...}             # Stale-lease reaper
          csv: {...}                # Parser defaults
          locks: {...}              # Transport lock renewal
          logging: {...}
          interfaces:
            orders:
              source: {kind: csv_file, path: ...}
              destinations:
                erp-1: {kind: csv_file, path: ...}
    """

    instance_id: str = "default"
    store: StoreConfig = field(default_factory=StoreConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    reaper: ReaperConfig = field(default_factory=ReaperConfig)
    csv: CsvConfig = field(default_factory=CsvConfig)
    locks: LocksConfig = field(default_factory=LocksConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    interfaces: Dict[str, InterfaceConfig] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StagingConfig":
        return cls(
            instance_id=str(data.get("instance_id") or "default"),
            store=StoreConfig(**_known_fields(StoreConfig, data.get("store") or {})),
            delivery=DeliveryConfig(**_known_fields(DeliveryConfig, data.get("delivery") or {})),
            retry=RetryConfig(**_known_fields(RetryConfig, data.get("retry") or {})),
            reaper=ReaperConfig(**_known_fields(ReaperConfig, data.get("reaper") or {})),
            csv=CsvConfig(**_known_fields(CsvConfig, data.get("csv") or {})),
            locks=LocksConfig(**_known_fields(LocksConfig, data.get("locks") or {})),
            logging=LoggingConfig(**_known_fields(LoggingConfig, data.get("logging") or {})),
            interfaces={
                name: InterfaceConfig.from_dict(name, body or {})
                for name, body in (data.get("interfaces") or {}).items()
            },
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def get_interface(self, name: str) -> InterfaceConfig:
        if name not in self.interfaces:
            raise ValueError(
                f"Interface '{name}' not configured. "
                f"Available interfaces: {sorted(self.interfaces)}"
            )
        return self.interfaces[name]

    def max_retries_for(self, interface_name: str) -> int:
        interface = self.interfaces.get(interface_name)
        if interface is not None and interface.max_retries is not None:
            return interface.max_retries
        return self.retry.max_retries

    def validate(self) -> None:
        """Validate configuration for correctness and constraints."""
        if self.store.backend not in VALID_BACKENDS:
            raise ValueError(
                f"store: backend must be one of {VALID_BACKENDS}, got '{self.store.backend}'"
            )
        if self.store.backend == "json" and not self.store.path:
            raise ValueError("store: path is required for the json backend")
        if self.store.backend == "sql" and not self.store.url:
            raise ValueError("store: url is required for the sql backend")

        self._validate_min("delivery", "poll_interval_seconds", self.delivery.poll_interval_seconds, 0, False)
        self._validate_min("delivery", "batch_size", self.delivery.batch_size, 1, True)
        self._validate_min("delivery", "lease_timeout_seconds", self.delivery.lease_timeout_seconds, 0, False)

        if self.retry.mode not in VALID_RETRY_MODES:
            raise ValueError(
                f"retry: mode must be one of {VALID_RETRY_MODES}, got '{self.retry.mode}'"
            )
        self._validate_min("retry", "max_retries", self.retry.max_retries, 0, True)
        self._validate_min("retry", "min_delay_seconds", self.retry.min_delay_seconds, 0, True)
        if self.retry.max_delay_seconds < self.retry.base_delay_seconds:
            raise ValueError(
                f"retry: max_delay_seconds ({self.retry.max_delay_seconds}) must be >= "
                f"base_delay_seconds ({self.retry.base_delay_seconds})"
            )

        self._validate_min("reaper", "interval_seconds", self.reaper.interval_seconds, 0, False)
        self._validate_min("reaper", "grace_seconds", self.reaper.grace_seconds, 0, True)
        self._validate_min(
            "reaper", "dead_letter_alert_threshold", self.reaper.dead_letter_alert_threshold, 0, True
        )

        if not self.csv.separator:
            raise ValueError("csv: separator must not be empty")
        if self.csv.quote_char is not None and len(self.csv.quote_char) != 1:
            raise ValueError(
                f"csv: quote_char must be a single character or null, got '{self.csv.quote_char}'"
            )
        if self.csv.quote_char is not None and self.csv.quote_char in self.csv.separator:
            raise ValueError("csv: quote_char must not appear in separator")
        self._validate_min("csv", "skip_leading_lines", self.csv.skip_leading_lines, 0, True)
        self._validate_min("csv", "skip_trailing_lines", self.csv.skip_trailing_lines, 0, True)
        self._validate_min("csv", "chunk_size", self.csv.chunk_size, 1, True)

        if self.locks.renewal_threshold_seconds < self.locks.renewal_interval_seconds:
            raise ValueError(
                f"locks: renewal_threshold_seconds ({self.locks.renewal_threshold_seconds}) must be >= "
                f"renewal_interval_seconds ({self.locks.renewal_interval_seconds})"
            )

        for name, interface in self.interfaces.items():
            for instance_id, dest in interface.destinations.items():
                if not dest.kind:
                    raise ValueError(f"interfaces.{name}.destinations.{instance_id}: kind is required")
                if not isinstance(dest.enabled, bool):
                    raise ValueError(
                        f"interfaces.{name}.destinations.{instance_id}: enabled must be true or false"
                    )
            if interface.source is not None and not interface.source.kind:
                raise ValueError(f"interfaces.{name}.source: kind is required")
            if interface.max_retries is not None and interface.max_retries < 0:
                raise ValueError(f"interfaces.{name}: max_retries must be >= 0")

    @staticmethod
    def _validate_min(
        section: str,
        key: str,
        value: float,
        min_value: float,
        inclusive: bool,
    ) -> None:
        """Validate that a setting's value meets a minimum threshold."""
        if inclusive and value < min_value:
            raise ValueError(f"{section}: {key} must be >= {min_value}, got {value}")
        elif not inclusive and value <= min_value:
            raise ValueError(f"{section}: {key} must be > {min_value}, got {value}")


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> StagingConfig:
    """Load staging configuration from config.yaml file.

    Overrides are deep-merged over the ``staging:`` section before the
    dataclasses are built, so tests can tweak one nested value.
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_FILE

    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path}\n" f"Expected file: config/config.yaml"
        )

    logger.info(f"Loading configuration from file: {config_path}")
    yaml_data = load_yaml(config_path)
    yaml_data = _expand_env_vars(yaml_data)

    if "staging" not in yaml_data:
        raise ValueError(
            "Invalid config file: missing 'staging:' section\n"
            "See src/config/config.yaml for correct structure"
        )

    staging_config = yaml_data["staging"] or {}
    if overrides:
        logger.debug(f"Applying overrides: {list(overrides.keys())}")
        staging_config = _deep_merge(staging_config, overrides)

    config = StagingConfig.from_dict(staging_config)

    logger.debug("Configuration loaded successfully:")
    logger.debug(f"  - Store backend: {config.store.backend}")
    logger.debug(f"  - Interfaces: {sorted(config.interfaces)}")

    config.validate()
    logger.debug("Configuration validation passed")

    return config


_staging_config: Optional[StagingConfig] = None


def get_config() -> StagingConfig:
    """Get or load the singleton staging config instance."""
    global _staging_config
    if _staging_config is None:
        _staging_config = load_config()
    return _staging_config


def set_config(config: StagingConfig) -> None:
    """Set the singleton staging config instance (useful for testing)."""
    global _staging_config
    _staging_config = config


def reset_config() -> None:
    """Reset the singleton config instance (forces reload on next get_config() call)."""
    global _staging_config
    _staging_config = None


def _cli_main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for config validation and debugging."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Staging Engine Configuration Tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Validate configuration
  python -m config.config --validate

  # Show merged configuration
  python -m config.config --show-merged

  # Use custom config file
  python -m config.config --config /path/to/config.yaml --validate

  # JSON output for automation
  python -m config.config --validate --json
        """,
    )
    parser.add_argument(
        "--validate",
        action="store_true",
        help="Validate configuration structure and completeness",
    )
    parser.add_argument(
        "--show-merged",
        action="store_true",
        help="Display effective configuration (defaults applied)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config.yaml file (default: src/config/config.yaml)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output in JSON format instead of human-readable",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    if not args.validate and not args.show_merged:
        parser.print_help()
        return 0

    try:
        config = load_config(config_path=args.config)
        output: Dict[str, Any] = {}

        if args.validate:
            # load_config() validates; reaching here means it passed
            if args.json:
                output["validation"] = {"passed": True, "errors": []}
            else:
                print("✓ Configuration validation passed")
                print(f"  - Store backend: {config.store.backend}")
                for name, interface in config.interfaces.items():
                    print(f"  - Interface {name}: {len(interface.destinations)} destination(s)")

        if args.show_merged:
            if args.json:
                output["merged_config"] = config.to_dict()
            else:
                print("\nConfiguration:")
                print("=" * 80)
                print(yaml.dump({"staging": config.to_dict()}, default_flow_style=False, sort_keys=False, allow_unicode=True))
                print("=" * 80)

        if args.json:
            print(json.dumps(output, indent=2, ensure_ascii=False))

        return 0

    except FileNotFoundError as e:
        if args.json:
            print(json.dumps({"error": str(e)}))
        else:
            print(f"✗ Error: {e}", file=sys.stderr)
        return 1

    except ValueError as e:
        if args.json:
            print(json.dumps({"error": str(e)}))
        else:
            print(f"✗ Validation error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(_cli_main())
