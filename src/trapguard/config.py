#!/usr/bin/env python3
"""
Configuration loading and validation.

Configuration is YAML, loaded with yaml.safe_load, validated section by
section, and merged over built-in defaults. ${VAR} references are expanded
from the environment so secrets stay out of the file.

Security Considerations:
- safe_load only: no arbitrary object construction from YAML
- Every section is type-checked; invalid values raise ConfigurationError
- Redis without a password is refused when ENVIRONMENT=production
"""

import copy
import logging
import os
import re
from dataclasses import dataclass
from typing import Dict, Optional

import yaml

from .block_registry import BlockDuration
from .country_gate import CountryBlockConfig
from .exceptions import ConfigurationError, RuleValidationError
from .rules import rules_from_config


DEFAULT_CONFIG_PATH = "config/trapguard.yml"

_ENV_VAR_PATTERN = re.compile(r'\$\{([^}]+)\}')


@dataclass(frozen=True)
class TrapGuardSettings:
    """
    Operational tunables.

    All values are seconds or record counts.
    """

    default_block_duration: BlockDuration = BlockDuration.ONE_HOUR
    history_retention_seconds: float = 3600
    history_cleanup_interval_seconds: float = 300
    max_stats_records: int = 10000
    stats_recent_limit: int = 50
    stats_top_limit: int = 10

    def __post_init__(self):
        if not isinstance(self.default_block_duration, BlockDuration):
            raise ValueError("default_block_duration must be BlockDuration enum")
        if self.history_retention_seconds <= 0:
            raise ValueError("history_retention_seconds must be positive")
        if self.history_cleanup_interval_seconds <= 0:
            raise ValueError("history_cleanup_interval_seconds must be positive")
        if self.max_stats_records < 1:
            raise ValueError("max_stats_records must be at least 1")
        if self.stats_recent_limit < 0 or self.stats_top_limit < 0:
            raise ValueError("stats limits cannot be negative")

    @classmethod
    def from_config_dict(cls, config: dict) -> 'TrapGuardSettings':
        """
        Create from configuration dictionary with validation.

        Raises:
            ValueError: If any tunable is malformed or out of range
        """
        try:
            return cls(
                default_block_duration=BlockDuration.parse(
                    config.get('default_block_duration', '1h')
                ),
                history_retention_seconds=float(config.get('history_retention_seconds', 3600)),
                history_cleanup_interval_seconds=float(
                    config.get('history_cleanup_interval_seconds', 300)
                ),
                max_stats_records=int(config.get('max_stats_records', 10000)),
                stats_recent_limit=int(config.get('stats_recent_limit', 50)),
                stats_top_limit=int(config.get('stats_top_limit', 10)),
            )
        except (TypeError, ValueError, AttributeError) as e:
            raise ValueError(f"Invalid trapguard configuration: {e}")

    def to_dict(self) -> dict:
        return {
            'default_block_duration': self.default_block_duration.value,
            'history_retention_seconds': self.history_retention_seconds,
            'history_cleanup_interval_seconds': self.history_cleanup_interval_seconds,
            'max_stats_records': self.max_stats_records,
            'stats_recent_limit': self.stats_recent_limit,
            'stats_top_limit': self.stats_top_limit,
        }


def default_config() -> Dict:
    """Built-in configuration used for missing files and sections."""
    return {
        'trapguard': TrapGuardSettings().to_dict(),
        'redis': {
            'host': 'localhost',
            'port': 6379,
            'db': 0,
            'password': None,
            'timeout': 5,
        },
        'block_storage': {
            'backend': 'memory',
        },
        'country_block': CountryBlockConfig().to_dict(),
        'rules': None,
        'metrics': {
            'enabled': False,
            'port': 9090,
        },
        'logging': {
            'level': 'INFO',
            'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        },
    }


class ConfigManager:
    """Configuration management."""

    def __init__(self, config_path: str = DEFAULT_CONFIG_PATH, config: Optional[Dict] = None):
        """
        Load and validate configuration.

        Args:
            config_path: YAML file to load
            config: Already-parsed configuration; skips reading config_path

        Raises:
            ConfigurationError: If the file or any section is invalid
        """
        self.config_path = config_path
        self.logger = logging.getLogger(__name__)
        if config is not None:
            self.config = self._validate_config(copy.deepcopy(config))
        else:
            self.config = self.load_config()

    def load_config(self) -> Dict:
        """Load configuration from YAML file with validation."""
        try:
            with open(self.config_path, 'r') as f:
                config = yaml.safe_load(f)
        except FileNotFoundError:
            self.logger.warning(f"Config file not found: {self.config_path}, using defaults")
            return default_config()
        except yaml.YAMLError as e:
            self.logger.error(f"YAML parsing error: {e}")
            raise ConfigurationError(f"Invalid configuration file: {e}")

        if config is None:
            self.logger.warning(f"Config file is empty: {self.config_path}, using defaults")
            return default_config()
        return self._validate_config(config)

    @property
    def settings(self) -> TrapGuardSettings:
        return TrapGuardSettings.from_config_dict(self.config['trapguard'])

    @property
    def country_block(self) -> CountryBlockConfig:
        return CountryBlockConfig.from_config_dict(self.config['country_block'])

    def _validate_config(self, config: Dict) -> Dict:
        """
        Validate configuration and fill missing sections from defaults.

        Raises:
            ConfigurationError: On any invalid section
        """
        if not isinstance(config, dict):
            raise ConfigurationError("Configuration must be a dictionary")

        config = self._expand_env_vars(config)
        defaults = default_config()

        for section, default in defaults.items():
            value = config.get(section)
            if value is None:
                config[section] = copy.deepcopy(default)
            elif isinstance(default, dict):
                if not isinstance(value, dict):
                    raise ConfigurationError(f"Section '{section}' must be a mapping")
                merged = copy.deepcopy(default)
                merged.update(value)
                config[section] = merged

        self._validate_trapguard_config(config['trapguard'])
        self._validate_block_storage_config(config['block_storage'])
        self._validate_redis_config(config['redis'], config['block_storage'])
        self._validate_country_block_config(config['country_block'])
        self._validate_rules_config(config['rules'])
        self._validate_metrics_config(config['metrics'])
        self._validate_logging_config(config['logging'])

        return config

    def _validate_trapguard_config(self, section: Dict) -> None:
        try:
            TrapGuardSettings.from_config_dict(section)
        except ValueError as e:
            raise ConfigurationError(str(e))

    def _validate_block_storage_config(self, section: Dict) -> None:
        backend = section.get('backend')
        if backend not in ('memory', 'redis'):
            raise ConfigurationError(f"Invalid block_storage backend: {backend!r}")

    def _validate_redis_config(self, redis_config: Dict, block_storage: Dict) -> None:
        """Validate Redis configuration with security checks."""
        host = redis_config.get('host')
        if not isinstance(host, str) or not host or len(host) > 255:
            raise ConfigurationError(f"Invalid Redis host: {host}")

        port = redis_config.get('port')
        if not isinstance(port, int) or port < 1 or port > 65535:
            raise ConfigurationError(f"Invalid Redis port: {port}")

        db = redis_config.get('db')
        if not isinstance(db, int) or db < 0:
            raise ConfigurationError(f"Invalid Redis db: {db}")

        if block_storage.get('backend') == 'redis' and not redis_config.get('password'):
            if os.getenv('ENVIRONMENT', 'development') == 'production':
                raise ConfigurationError("SECURITY: Redis password is required in production")
            self.logger.warning("SECURITY: Redis block storage configured without authentication")

    def _validate_country_block_config(self, section: Dict) -> None:
        try:
            CountryBlockConfig.from_config_dict(section)
        except ValueError as e:
            raise ConfigurationError(str(e))

    def _validate_rules_config(self, rules) -> None:
        # None keeps the built-in policy set
        if rules is None:
            return
        try:
            rules_from_config(rules)
        except RuleValidationError as e:
            raise ConfigurationError(f"Invalid rules configuration: {e}")

    def _validate_metrics_config(self, section: Dict) -> None:
        if not isinstance(section.get('enabled'), bool):
            raise ConfigurationError("metrics.enabled must be boolean")
        port = section.get('port')
        if not isinstance(port, int) or port < 1 or port > 65535:
            raise ConfigurationError(f"Invalid metrics port: {port}")

    def _validate_logging_config(self, section: Dict) -> None:
        level = str(section.get('level', 'INFO')).upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ConfigurationError(f"Invalid log level: {level}")

    def _expand_env_vars(self, config: Dict) -> Dict:
        """
        Expand environment variables in configuration.

        Supports ${VAR_NAME} syntax for sensitive values; unset variables
        expand to an empty string with a warning.
        """

        def expand_value(value):
            if isinstance(value, str):
                for var_name in _ENV_VAR_PATTERN.findall(value):
                    env_value = os.getenv(var_name)
                    if env_value is None:
                        self.logger.warning(f"Environment variable not set: {var_name}")
                        env_value = ''
                    value = value.replace(f'${{{var_name}}}', env_value)
            elif isinstance(value, dict):
                return {k: expand_value(v) for k, v in value.items()}
            elif isinstance(value, list):
                return [expand_value(item) for item in value]
            return value

        return expand_value(config)
