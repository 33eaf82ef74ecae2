"""
Configuration System

Manages exit gate configuration from multiple sources:
1. Default values
2. Configuration file (.deep/config.yaml)
3. Environment variables (highest priority)
"""

import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigurationError
from .schema import ComplexityTier

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path(".deep/config.yaml")
ENV_PREFIX = "EXIT_GATE"


@dataclass
class GateLimits:
    """Thresholds used by the gate and its managers"""
    stale_hours: float = 8.0
    lock_timeout_seconds: int = 300  # 5 minutes
    cost_warning: int = 30
    cost_limit: int = 50
    max_task_failures: int = 3
    failure_history: int = 20
    cost_history_size: int = 10
    task_stale_hours: float = 24.0
    validation_window_minutes: int = 60


@dataclass
class StoreConfig:
    """Signal store configuration"""
    state_dir: str = ".deep"


@dataclass
class SessionConfig:
    """Session start configuration"""
    default_tier: str = ComplexityTier.STANDARD.value
    cleanup_days: int = 7  # 0 disables cleanup


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "WARNING"
    file: Optional[str] = None


@dataclass
class GateConfig:
    """Complete exit gate configuration"""
    limits: GateLimits = field(default_factory=GateLimits)
    store: StoreConfig = field(default_factory=StoreConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GateConfig":
        """Create configuration from dictionary"""
        config = cls()

        try:
            if "limits" in data:
                config.limits = GateLimits(**data["limits"])
            if "store" in data:
                config.store = StoreConfig(**data["store"])
            if "session" in data:
                config.session = SessionConfig(**data["session"])
            if "logging" in data:
                config.logging = LoggingConfig(**data["logging"])
        except TypeError as e:
            raise ConfigurationError(f"Unknown configuration key: {e}") from e

        return config


# (section, key, env name suffix, converter)
_ENV_OVERRIDES = [
    ("limits", "stale_hours", "LIMITS_STALE_HOURS", float),
    ("limits", "lock_timeout_seconds", "LIMITS_LOCK_TIMEOUT_SECONDS", int),
    ("limits", "cost_warning", "LIMITS_COST_WARNING", int),
    ("limits", "cost_limit", "LIMITS_COST_LIMIT", int),
    ("limits", "max_task_failures", "LIMITS_MAX_TASK_FAILURES", int),
    ("limits", "task_stale_hours", "LIMITS_TASK_STALE_HOURS", float),
    ("limits", "validation_window_minutes", "LIMITS_VALIDATION_WINDOW_MINUTES", int),
    ("store", "state_dir", "STATE_DIR", str),
    ("session", "default_tier", "SESSION_DEFAULT_TIER", str),
    ("session", "cleanup_days", "SESSION_CLEANUP_DAYS", int),
    ("logging", "level", "LOG_LEVEL", str),
    ("logging", "file", "LOG_FILE", str),
]


class ConfigManager:
    """
    Configuration manager with multiple source support

    Load priority (highest to lowest):
    1. Environment variables
    2. Configuration file
    3. Defaults
    """

    def __init__(self, config_file: Optional[Path] = None, environ: Optional[Dict[str, str]] = None):
        """
        Initialize configuration manager

        Args:
            config_file: Optional path to configuration file
            environ: Environment mapping (default: os.environ)
        """
        self.config_file = Path(config_file) if config_file else DEFAULT_CONFIG_FILE
        self._environ = environ if environ is not None else os.environ
        self._config = self._load_config()

    def _load_config(self) -> GateConfig:
        """
        Load configuration from all sources

        Returns:
            Complete configuration

        Raises:
            ConfigurationError: If the file or an environment value is invalid
        """
        config = GateConfig()

        if self.config_file.exists():
            try:
                with open(self.config_file, 'r') as f:
                    file_data = yaml.safe_load(f)
            except (OSError, yaml.YAMLError) as e:
                raise ConfigurationError(f"Failed to load config file {self.config_file}: {e}") from e

            if file_data:
                if not isinstance(file_data, dict):
                    raise ConfigurationError(f"Config file {self.config_file} must contain a mapping")
                config = GateConfig.from_dict(file_data)
            logger.debug(f"Loaded configuration from {self.config_file}")

        return self._apply_env_overrides(config)

    def _apply_env_overrides(self, config: GateConfig) -> GateConfig:
        """
        Apply environment variable overrides

        Environment variables format: EXIT_GATE_<SECTION>_<KEY>
        Example: EXIT_GATE_LIMITS_COST_LIMIT=80

        Args:
            config: Base configuration

        Returns:
            Configuration with environment overrides applied
        """
        for section, key, suffix, convert in _ENV_OVERRIDES:
            raw = self._environ.get(f"{ENV_PREFIX}_{suffix}")
            if raw is None or raw == "":
                continue
            try:
                value = convert(raw)
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {ENV_PREFIX}_{suffix}: {raw!r}") from e
            setattr(getattr(config, section), key, value)

        return config

    def get(self, section: Optional[str] = None) -> Any:
        """
        Get configuration section or entire config

        Args:
            section: Optional section name (limits, store, etc.)

        Returns:
            Configuration section or entire config
        """
        if section is None:
            return self._config

        return getattr(self._config, section, None)

    def update(self, section: str, key: str, value: Any) -> None:
        """
        Update configuration value at runtime

        Args:
            section: Configuration section
            key: Configuration key
            value: New value
        """
        section_obj = getattr(self._config, section, None)
        if section_obj is None:
            raise ConfigurationError(f"Unknown configuration section: {section}")

        if not hasattr(section_obj, key):
            raise ConfigurationError(f"Unknown configuration key: {section}.{key}")

        setattr(section_obj, key, value)

    def save(self, file_path: Optional[Path] = None) -> None:
        """
        Save configuration to file

        Args:
            file_path: Optional path to save to (defaults to self.config_file)
        """
        save_path = file_path or self.config_file
        save_path.parent.mkdir(parents=True, exist_ok=True)

        with open(save_path, 'w') as f:
            yaml.safe_dump(self._config.to_dict(), f, default_flow_style=False)

    def validate(self) -> tuple[bool, list[str]]:
        """
        Validate configuration

        Returns:
            Tuple of (is_valid, errors)
        """
        errors = []
        limits = self._config.limits

        if limits.stale_hours <= 0:
            errors.append("Stale threshold must be positive")
        if limits.lock_timeout_seconds < 1:
            errors.append("Lock timeout must be at least 1 second")
        if limits.cost_warning < 0:
            errors.append("Cost warning threshold must be non-negative")
        if limits.cost_limit < limits.cost_warning:
            errors.append("Cost limit must be >= cost warning threshold")
        if limits.max_task_failures < 1:
            errors.append("Max task failures must be at least 1")
        if limits.failure_history < limits.max_task_failures:
            errors.append("Failure history must hold at least max task failures entries")
        if limits.cost_history_size < 1:
            errors.append("Cost history size must be at least 1")
        if limits.task_stale_hours <= 0:
            errors.append("Task stale threshold must be positive")
        if limits.validation_window_minutes < 1:
            errors.append("Validation window must be at least 1 minute")

        valid_tiers = [t.value for t in ComplexityTier]
        if self._config.session.default_tier not in valid_tiers:
            errors.append(f"Default tier must be one of: {', '.join(valid_tiers)}")
        if self._config.session.cleanup_days < 0:
            errors.append("Cleanup days must be non-negative")

        if not self._config.store.state_dir:
            errors.append("State directory must not be empty")

        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self._config.logging.level.upper() not in valid_levels:
            errors.append(f"Logging level must be one of: {', '.join(valid_levels)}")

        return len(errors) == 0, errors

    def reload(self) -> None:
        """Reload configuration from file"""
        self._config = self._load_config()


def load_config(config_file: Optional[Path] = None, working_dir: Optional[Path] = None) -> GateConfig:
    """
    Load and validate configuration.

    Args:
        config_file: Explicit config file; defaults to .deep/config.yaml
            under working_dir
        working_dir: Project directory (default: cwd)

    Raises:
        ConfigurationError: If the configuration is invalid
    """
    if config_file is None:
        config_file = Path(working_dir or Path.cwd()) / DEFAULT_CONFIG_FILE

    manager = ConfigManager(config_file)
    ok, errors = manager.validate()
    if not ok:
        raise ConfigurationError("; ".join(errors))
    return manager.get()
