"""
BillTier Configuration Management

Loads settings from the packaged default JSON file, an optional user JSON
file, and BILLTIER_* environment variables, in that order of precedence.
"""

import json
import os
from pathlib import Path
from typing import Dict, Any, Optional
from dataclasses import asdict, dataclass, fields
from datetime import timedelta


DEFAULT_CONFIG_PATH = Path(__file__).parent / "billtier_config.json"


@dataclass
class StorageConfig:
    """Storage locations, relative to base_path."""
    base_path: str
    index_path: str
    bulk_path: str
    dead_letter_path: str
    checkpoint_path: str
    logs_path: str


@dataclass
class MigrationConfig:
    """Sweep parameters."""
    archive_after_days: float
    batch_size: int
    max_workers: int
    sweep_budget_seconds: float

    @property
    def archive_after(self) -> timedelta:
        return timedelta(days=self.archive_after_days)


@dataclass
class RetryConfig:
    """Backoff schedule applied to every store call."""
    max_attempts: int
    base_delay_seconds: float
    multiplier: float
    max_delay_seconds: float


@dataclass
class TimeoutConfig:
    """Per-call timeouts."""
    index_timeout_seconds: float
    bulk_timeout_seconds: float


@dataclass
class IndexConfig:
    """Index store configuration."""
    max_metadata_bytes: int
    wal_enabled: bool
    wal_segment_max_mb: int


@dataclass
class BulkConfig:
    """Bulk store configuration."""
    max_thread_workers: int


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str
    console_output: bool


@dataclass
class DebugConfig:
    """Debug configuration."""
    enabled: bool


# Attribute name on BillTierConfig -> section dataclass
SECTIONS = {
    'storage': StorageConfig,
    'migration': MigrationConfig,
    'retry': RetryConfig,
    'timeouts': TimeoutConfig,
    'index': IndexConfig,
    'bulk': BulkConfig,
    'logging': LoggingConfig,
    'debug': DebugConfig,
}

ENV_OVERRIDES = {
    'BILLTIER_STORAGE_PATH': ('storage', 'base_path'),
    'BILLTIER_ARCHIVE_AFTER_DAYS': ('migration', 'archive_after_days'),
    'BILLTIER_BATCH_SIZE': ('migration', 'batch_size'),
    'BILLTIER_MAX_WORKERS': ('migration', 'max_workers'),
    'BILLTIER_SWEEP_BUDGET_SECONDS': ('migration', 'sweep_budget_seconds'),
    'BILLTIER_RETRY_MAX_ATTEMPTS': ('retry', 'max_attempts'),
    'BILLTIER_INDEX_TIMEOUT_SECONDS': ('timeouts', 'index_timeout_seconds'),
    'BILLTIER_BULK_TIMEOUT_SECONDS': ('timeouts', 'bulk_timeout_seconds'),
    'BILLTIER_WAL_ENABLED': ('index', 'wal_enabled'),
    'BILLTIER_LOG_LEVEL': ('logging', 'level'),
    'BILLTIER_DEBUG': ('debug', 'enabled'),
}


def deep_merge(base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    """Merge update into base in place; nested sections merge key by key."""
    for key, value in update.items():
        current = base.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            deep_merge(current, value)
        else:
            base[key] = value
    return base


def _read_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path, 'r') as f:
        return json.load(f)


def _coerce(section: str, key: str, raw: str) -> Any:
    """Convert an environment string to the type the section field declares."""
    field_types = {f.name: f.type for f in fields(SECTIONS[section])}
    target = field_types.get(key, str)
    if target is bool:
        return raw.strip().lower() in ('true', '1', 'yes', 'on')
    if target in (int, float):
        return target(raw)
    return raw


class BillTierConfig:
    """
    Typed view over the merged configuration.

    Precedence, lowest first: packaged defaults, the user JSON file,
    BILLTIER_* environment variables, then the overrides dict.
    """

    storage: StorageConfig
    migration: MigrationConfig
    retry: RetryConfig
    timeouts: TimeoutConfig
    index: IndexConfig
    bulk: BulkConfig
    logging: LoggingConfig
    debug: DebugConfig

    def __init__(self, config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None):
        self.config_path = config_path

        data = _read_json(DEFAULT_CONFIG_PATH)
        if config_path:
            deep_merge(data, _read_json(Path(config_path)))
        deep_merge(data, self._env_layer())
        if overrides:
            deep_merge(data, overrides)

        for name, section_cls in SECTIONS.items():
            setattr(self, name, section_cls(**data.get(name, {})))
        self.validate()

    @staticmethod
    def _env_layer() -> Dict[str, Dict[str, Any]]:
        layer: Dict[str, Dict[str, Any]] = {}
        for env_var, (section, key) in ENV_OVERRIDES.items():
            raw = os.getenv(env_var)
            if raw is None:
                continue
            try:
                layer.setdefault(section, {})[key] = _coerce(section, key, raw)
            except ValueError as e:
                raise ValueError(f"{env_var}={raw!r} is not a valid {section}.{key}: {e}") from e
        return layer

    def validate(self):
        if self.migration.batch_size < 1:
            raise ValueError("migration.batch_size must be at least 1")
        if self.migration.max_workers < 1:
            raise ValueError("migration.max_workers must be at least 1")
        if self.migration.archive_after_days < 0:
            raise ValueError("migration.archive_after_days must be non-negative")
        if self.retry.max_attempts < 1:
            raise ValueError("retry.max_attempts must be at least 1")

    def get_storage_path(self) -> Path:
        return Path(self.storage.base_path)

    def get_index_path(self) -> Path:
        return self.get_storage_path() / self.storage.index_path

    def get_bulk_path(self) -> Path:
        return self.get_storage_path() / self.storage.bulk_path

    def get_dead_letter_path(self) -> Path:
        return self.get_storage_path() / self.storage.dead_letter_path

    def get_checkpoint_path(self) -> Path:
        return self.get_storage_path() / self.storage.checkpoint_path

    def get_logs_path(self) -> Path:
        return self.get_storage_path() / self.storage.logs_path

    def to_dict(self) -> Dict[str, Any]:
        """Current section values, including changes made after loading."""
        return {name: asdict(getattr(self, name)) for name in SECTIONS}

    def save_to_file(self, path: str):
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def __repr__(self) -> str:
        return f"BillTierConfig(config_path={self.config_path}, base_path={self.storage.base_path})"


# Global configuration instance
_global_config: Optional[BillTierConfig] = None


def get_config(config_path: Optional[str] = None) -> BillTierConfig:
    """
    Get the global configuration instance.

    Args:
        config_path: Path to config file. Only used on first call.
    """
    global _global_config
    if _global_config is None:
        _global_config = BillTierConfig(config_path)
    return _global_config


def reset_config():
    """Reset the global configuration (mainly for testing)."""
    global _global_config
    _global_config = None
