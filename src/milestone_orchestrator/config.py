"""Configuration loading from files, dicts and environment variables."""

import json
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path

from milestone_orchestrator.errors import ConfigError


@dataclass
class TierThresholds:
    hybrid: int = 25
    database: int = 100


@dataclass
class Config:
    data_dir: Path = field(default_factory=lambda: Path.home() / ".milestone_orchestrator")
    tier_thresholds: TierThresholds = field(default_factory=TierThresholds)
    heartbeat_timeout_seconds: int = 300
    disconnect_grace_seconds: int = 120
    checkpoint_retention_count: int = 10
    migration_hysteresis_samples: int = 1
    heartbeat_poll_seconds: float = 15.0
    latency_threshold_ms: float = 500.0
    no_work_retry_seconds: float = 10.0
    auto_migrate: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "Config":
        """Build a config from a mapping, rejecting keys it does not recognize.

        Keys may be given in snake_case or camelCase (``tierThresholds``).
        """
        known = {f.name for f in fields(cls)}
        config = cls()
        for raw_key, value in data.items():
            key = _snake(raw_key)
            if key not in known:
                raise ConfigError(f"Unknown configuration key: {raw_key}")
            if key == "tier_thresholds":
                value = _thresholds(value)
            elif key == "data_dir":
                value = Path(value).expanduser()
            setattr(config, key, value)
        config.validate()
        return config

    @classmethod
    def load(cls, path: Path) -> "Config":
        """Load a JSON config file."""
        try:
            data = json.loads(Path(path).read_text())
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid config file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a JSON object")
        return cls.from_dict(data)

    @classmethod
    def from_env(cls) -> "Config":
        if path := os.environ.get("MO_CONFIG"):
            config = cls.load(Path(path))
        else:
            config = cls()

        if data_dir := os.environ.get("MO_DATA_DIR"):
            config.data_dir = Path(data_dir)

        config.validate()
        return config

    def validate(self):
        t = self.tier_thresholds
        if not isinstance(t.hybrid, int) or not isinstance(t.database, int):
            raise ConfigError("Tier thresholds must be integers")
        if t.hybrid < 1 or t.database <= t.hybrid:
            raise ConfigError(
                f"Tier thresholds must satisfy 1 <= hybrid < database (got {t.hybrid}, {t.database})"
            )
        for name in (
            "heartbeat_timeout_seconds",
            "checkpoint_retention_count",
            "migration_hysteresis_samples",
        ):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ConfigError(f"{name} must be a positive integer (got {value!r})")
        if not isinstance(self.disconnect_grace_seconds, int) or self.disconnect_grace_seconds < 0:
            raise ConfigError("disconnect_grace_seconds must be a non-negative integer")
        for name in ("heartbeat_poll_seconds", "latency_threshold_ms", "no_work_retry_seconds"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or value <= 0:
                raise ConfigError(f"{name} must be a positive number (got {value!r})")
        if not isinstance(self.auto_migrate, bool):
            raise ConfigError("auto_migrate must be a boolean")


def get_config() -> Config:
    return Config.from_env()


def _snake(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _thresholds(value) -> TierThresholds:
    if isinstance(value, TierThresholds):
        return value
    if not isinstance(value, dict):
        raise ConfigError("tier_thresholds must be a mapping with 'hybrid' and 'database'")
    unknown = set(value) - {"hybrid", "database"}
    if unknown:
        raise ConfigError(f"Unknown tier threshold keys: {', '.join(sorted(unknown))}")
    return TierThresholds(**value)
