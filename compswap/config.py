"""
Configuration management for compswap.

Loads config.yaml from the compswap home directory:

    $COMPSWAP_HOME/config.yaml   (default: ~/.config/compswap/config.yaml)

Any scalar key can be overridden with a COMPSWAP_<KEY> environment
variable, e.g. COMPSWAP_PAGE_SIZE=50 or COMPSWAP_LOG_LEVEL=DEBUG.
"""

import dataclasses
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

ENV_PREFIX = "COMPSWAP_"

LOG_FORMATS = ("pretty", "structured")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(Exception):
    """Configuration validation error."""
    pass


def get_compswap_home() -> Path:
    """Directory holding config.yaml (COMPSWAP_HOME or ~/.config/compswap)."""
    home = os.environ.get("COMPSWAP_HOME")
    if home:
        return Path(home).expanduser()
    return Path("~/.config/compswap").expanduser()


@dataclass
class CompswapConfig:
    """
    Runtime settings.

    Attributes:
        sqlite_path: Database holding jobs, rules, audit, checkpoints, locks
            and definitions
        catalog_root: Component catalog directory for FileComponentRegistry
        lock_key: Name of the fleet-wide tick lock
        lock_lease_ms: Lock lease length
        page_size: Projects per all-projects window, rules and templates per page
        tick_interval_s: Seconds between scheduler ticks (start to start)
        honor_succeeded_rules: Requeue leaves out rules that already succeeded
        actor: Identity recorded as modifier on status changes
        log_level: Logging level name
        log_format: "pretty" (rich console) or "structured" (JSON lines)
        log_file: Optional log file path
        bigquery_audit_table: Optional project.dataset.table mirror target
        bigquery_project: Billing project for the BigQuery client
    """
    sqlite_path: str = "~/.local/share/compswap/compswap.db"
    catalog_root: str = "~/.local/share/compswap/catalog"
    lock_key: str = "compswap:replace:lock"
    lock_lease_ms: int = 60_000
    page_size: int = 100
    tick_interval_s: float = 60.0
    honor_succeeded_rules: bool = True
    actor: str = "compswap"
    log_level: str = "INFO"
    log_format: str = "pretty"
    log_file: Optional[str] = None
    bigquery_audit_table: Optional[str] = None
    bigquery_project: Optional[str] = None

    @property
    def sqlite_file(self) -> Path:
        return Path(self.sqlite_path).expanduser()

    @property
    def catalog_dir(self) -> Path:
        return Path(self.catalog_root).expanduser()

    @property
    def log_path(self) -> Optional[Path]:
        return Path(self.log_file).expanduser() if self.log_file else None

    def validate(self) -> None:
        """Raise ConfigError on out-of-range values."""
        if self.lock_lease_ms <= 0:
            raise ConfigError("lock_lease_ms must be > 0")
        if self.page_size < 1:
            raise ConfigError("page_size must be >= 1")
        if self.tick_interval_s <= 0:
            raise ConfigError("tick_interval_s must be > 0")
        if not self.lock_key:
            raise ConfigError("lock_key is required")
        if not self.actor:
            raise ConfigError("actor is required")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {', '.join(LOG_LEVELS)}, got '{self.log_level}'")
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"log_format must be one of {', '.join(LOG_FORMATS)}, got '{self.log_format}'")
        if self.bigquery_audit_table and self.bigquery_audit_table.count(".") != 2:
            raise ConfigError("bigquery_audit_table must be 'project.dataset.table'")

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CompswapConfig":
        known = {f.name: f for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - set(known))
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")

        values: dict[str, Any] = {}
        for name, raw in data.items():
            values[name] = _coerce(name, known[name].type, raw)
        config = cls(**values)
        config.validate()
        return config


def _coerce(name: str, declared: Any, raw: Any) -> Any:
    """Convert YAML or environment values to the field's declared type."""
    if raw is None:
        if "Optional" in str(declared):
            return None
        raise ConfigError(f"{name} must not be empty")
    try:
        if declared is bool:
            if isinstance(raw, bool):
                return raw
            text = str(raw).strip().lower()
            if text in ("1", "true", "yes", "on"):
                return True
            if text in ("0", "false", "no", "off"):
                return False
            raise ValueError(f"not a boolean: {raw!r}")
        if declared is int:
            return int(raw)
        if declared is float:
            return float(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {e}") from e
    return str(raw)


def _env_overrides() -> dict[str, str]:
    overrides = {}
    for field in dataclasses.fields(CompswapConfig):
        value = os.environ.get(f"{ENV_PREFIX}{field.name.upper()}")
        if value is not None:
            overrides[field.name] = value
    return overrides


def load_config(config_path: Optional[Path] = None) -> CompswapConfig:
    """
    Load configuration from YAML plus COMPSWAP_ environment overrides.

    Args:
        config_path: Path to config file. Defaults to <compswap home>/config.yaml

    Returns:
        Validated CompswapConfig

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigError: If the file or a value is invalid
    """
    if config_path is None:
        config_path = get_compswap_home() / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(
            f"compswap config.yaml not found at {config_path}. Run 'compswap init' to create one."
        )

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")

    data.update(_env_overrides())
    return CompswapConfig.from_dict(data)
