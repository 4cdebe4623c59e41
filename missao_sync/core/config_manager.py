"""
Configuration Management System for missao-sync
"""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, ValidationError, field_validator

from .errors import ConfigurationError

logger = logging.getLogger('missao_sync.core.config_manager')

ENV_PREFIX = 'MISSAO_'


class Environment(Enum):
    """Supported deployment environments"""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class SyncConfiguration(BaseModel):
    """Synchronization core configuration with Pydantic validation"""

    # Local persistence
    storage_dir: str = ".missao"
    storage_key: str = "missao-ieab-state-v2"
    legacy_storage_key: Optional[str] = "missao-ieab-state"
    poll_interval: float = 0.25

    # Remote store
    remote_url: Optional[str] = None
    remote_document_id: int = 1
    remote_timeout: float = 10.0
    reconnect_delay: float = 2.0
    push_retry_attempts: int = 3
    push_retry_delay: float = 0.5

    # Logging
    log_level: str = "INFO"
    log_file_path: Optional[str] = None
    log_max_bytes: int = 32 * 1024 * 1024  # 32MB
    log_backup_count: int = 5

    # Relay server
    relay_host: str = "0.0.0.0"
    relay_port: int = 8080
    relay_database_path: str = "relay.db"

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'log_level must be one of {valid_levels}')
        return v.upper()

    @field_validator('poll_interval', 'remote_timeout', 'reconnect_delay')
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError('must be greater than 0')
        return v

    @field_validator('push_retry_attempts')
    @classmethod
    def validate_retry_attempts(cls, v):
        if not 0 <= v <= 10:
            raise ValueError('push_retry_attempts must be between 0 and 10')
        return v

    @field_validator('push_retry_delay')
    @classmethod
    def validate_retry_delay(cls, v):
        if v < 0:
            raise ValueError('push_retry_delay must be >= 0')
        return v

    @field_validator('remote_url')
    @classmethod
    def validate_remote_url(cls, v):
        if v is None or not v.strip():
            return None
        v = v.strip().rstrip('/')
        if not (v.startswith('http://') or v.startswith('https://')):
            raise ValueError('remote_url must start with http:// or https://')
        return v

    @field_validator('storage_key')
    @classmethod
    def validate_storage_key(cls, v):
        if not v or not v.strip():
            raise ValueError('storage_key cannot be empty')
        return v.strip()


# Environment variables understood on top of the YAML files, with their types
ENV_MAPPINGS: Dict[str, str] = {
    'STORAGE_DIR': 'storage_dir',
    'STORAGE_KEY': 'storage_key',
    'LEGACY_STORAGE_KEY': 'legacy_storage_key',
    'POLL_INTERVAL': 'poll_interval',
    'REMOTE_URL': 'remote_url',
    'REMOTE_DOCUMENT_ID': 'remote_document_id',
    'REMOTE_TIMEOUT': 'remote_timeout',
    'RECONNECT_DELAY': 'reconnect_delay',
    'PUSH_RETRY_ATTEMPTS': 'push_retry_attempts',
    'PUSH_RETRY_DELAY': 'push_retry_delay',
    'LOG_LEVEL': 'log_level',
    'LOG_FILE_PATH': 'log_file_path',
    'RELAY_HOST': 'relay_host',
    'RELAY_PORT': 'relay_port',
    'RELAY_DATABASE_PATH': 'relay_database_path',
}

_INT_KEYS = {'remote_document_id', 'push_retry_attempts', 'relay_port'}
_FLOAT_KEYS = {'poll_interval', 'remote_timeout', 'reconnect_delay', 'push_retry_delay'}


class ConfigurationManager:
    """
    Loads configuration from, in increasing priority:

    1. ``config/default.yaml``
    2. ``config/<environment>.yaml`` (deep-merged)
    3. ``.env`` in the base path
    4. ``MISSAO_*`` process environment variables
    """

    def __init__(self, base_path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None):
        self.base_path = Path(base_path) if base_path else Path.cwd()
        self.config_dir = self.base_path / "config"
        self._environ = environ if environ is not None else os.environ
        self.environment = self._detect_environment()
        self._configuration: Optional[SyncConfiguration] = None

        logger.debug(f"ConfigurationManager initialized for environment: {self.environment.value}")

    def load_configuration(self, overrides: Optional[Dict[str, Any]] = None) -> SyncConfiguration:
        """
        Load and validate configuration from all sources.

        Args:
            overrides: Values applied last, e.g. from command-line flags

        Raises:
            ConfigurationError: If configuration is invalid
        """
        config_data = self._load_yaml_file(self.config_dir / "default.yaml")
        config_data = self._deep_merge(
            config_data,
            self._load_yaml_file(self.config_dir / f"{self.environment.value}.yaml")
        )
        config_data.update(self._load_env_file())
        config_data.update(self._read_variables(self._environ, 'environment'))
        if overrides:
            config_data.update({k: v for k, v in overrides.items() if v is not None})

        try:
            self._configuration = SyncConfiguration(**config_data)
        except ValidationError as e:
            logger.error(f"Failed to load configuration: {e}")
            raise ConfigurationError(f"Configuration loading failed: {e}")

        logger.info("Configuration loaded successfully")
        return self._configuration

    def get_configuration(self) -> SyncConfiguration:
        if self._configuration is None:
            return self.load_configuration()
        return self._configuration

    def reload_configuration(self) -> SyncConfiguration:
        self._configuration = None
        return self.load_configuration()

    def get_config_value(self, key: str, default: Any = None) -> Any:
        return getattr(self.get_configuration(), key, default)

    def _detect_environment(self) -> Environment:
        env_var = self._environ.get(f'{ENV_PREFIX}ENVIRONMENT', '').lower()
        if env_var:
            try:
                return Environment(env_var)
            except ValueError:
                logger.warning(f"Unknown environment '{env_var}', falling back to development")
        return Environment.DEVELOPMENT

    def _load_yaml_file(self, path: Path) -> Dict[str, Any]:
        if not path.exists():
            return {}
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load YAML file {path}: {e}")
        if not isinstance(data, dict):
            raise ConfigurationError(f"{path} must contain a mapping")
        logger.debug(f"Loaded configuration from {path}")
        return data

    def _load_env_file(self) -> Dict[str, Any]:
        env_file = self.base_path / '.env'
        if not env_file.exists():
            return {}
        values = {k: v for k, v in dotenv_values(env_file).items() if v is not None}
        return self._read_variables(values, str(env_file))

    def _read_variables(self, variables, source: str) -> Dict[str, Any]:
        config_data: Dict[str, Any] = {}
        for suffix, config_key in ENV_MAPPINGS.items():
            raw = variables.get(f'{ENV_PREFIX}{suffix}')
            if raw is None:
                continue
            try:
                if config_key in _INT_KEYS:
                    config_data[config_key] = int(raw)
                elif config_key in _FLOAT_KEYS:
                    config_data[config_key] = float(raw)
                else:
                    config_data[config_key] = raw
            except ValueError:
                raise ConfigurationError(f"Invalid value for {ENV_PREFIX}{suffix} in {source}: {raw!r}")
            logger.debug(f"Applied {ENV_PREFIX}{suffix} from {source}")
        return config_data

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value
        return result
