"""
Configuration management for tablezure.

Client-wide defaults live in an immutable ``ClientConfig``; per-call knobs
live in ``TableRequestOptions`` and are merged over the defaults when an
operation runs.
"""

import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from tablezure.table.codec import TablePayloadFormat
from tablezure.transport.retry import LocationMode, RetryPolicy, build_retry_policy

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "2014-02-14"


class LogLevel(str, Enum):
    """Valid log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class RetryPolicyType(str, Enum):
    """Supported retry policies."""
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    NONE = "none"


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: LogLevel = LogLevel.INFO
    format: str = "text"
    file: Optional[str] = None
    rotation_size: str = "10MB"
    rotation_count: int = 5
    module_levels: Optional[Dict[str, str]] = Field(
        default=None,
        description="Per-module log levels, e.g., {'tablezure.transport.retry': 'DEBUG'}"
    )

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v not in ("json", "text"):
            raise ValueError("Log format must be 'json' or 'text'")
        return v


class RetryConfig(BaseModel):
    """Retry policy configuration."""
    policy: RetryPolicyType = RetryPolicyType.EXPONENTIAL
    max_attempts: int = Field(default=4, ge=1)
    backoff_seconds: float = Field(default=3.0, ge=0.0)
    max_backoff_seconds: float = Field(default=90.0, ge=0.0)
    max_execution_time_seconds: Optional[float] = Field(default=None, gt=0.0)


def _enum_by_name_or_value(enum_type, v: Any) -> Any:
    if isinstance(v, str) and not isinstance(v, enum_type):
        key = v.strip().upper()
        if key in enum_type.__members__:
            return enum_type.__members__[key]
    return v


class ClientConfig(BaseModel):
    """Immutable client-wide defaults."""
    model_config = ConfigDict(frozen=True)

    payload_format: TablePayloadFormat = TablePayloadFormat.JSON_MINIMAL_METADATA
    location_mode: LocationMode = LocationMode.PRIMARY_ONLY
    retry: RetryConfig = Field(default_factory=RetryConfig)
    timeout_seconds: float = Field(default=30.0, gt=0.0)
    api_version: str = DEFAULT_API_VERSION
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("payload_format", mode="before")
    @classmethod
    def parse_payload_format(cls, v: Any) -> Any:
        return _enum_by_name_or_value(TablePayloadFormat, v)

    @field_validator("location_mode", mode="before")
    @classmethod
    def parse_location_mode(cls, v: Any) -> Any:
        return _enum_by_name_or_value(LocationMode, v)


class TableRequestOptions(BaseModel):
    """
    Per-request options. Unset fields fall back to the client's ``ClientConfig``.

    Attributes:
        payload_format: Response format to request
        property_resolver: Resolver for un-annotated properties
        retry_policy: Policy instance overriding the configured one
        location_mode: Location mode overriding the configured one
        max_execution_time: Overall budget in seconds across retries
        timeout: Per-attempt timeout in seconds
        client_request_id: Value for ``x-ms-client-request-id``
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    payload_format: Optional[TablePayloadFormat] = None
    property_resolver: Optional[Callable[..., Any]] = None
    retry_policy: Optional[RetryPolicy] = None
    location_mode: Optional[LocationMode] = None
    max_execution_time: Optional[float] = Field(default=None, gt=0.0)
    timeout: Optional[float] = Field(default=None, gt=0.0)
    client_request_id: Optional[str] = None

    def apply_defaults(self, config: ClientConfig) -> "TableRequestOptions":
        """Return a copy with every unset field taken from ``config``."""
        return self.model_copy(update={
            "payload_format": self.payload_format or config.payload_format,
            "retry_policy": self.retry_policy or build_retry_policy(config.retry),
            "location_mode": self.location_mode or config.location_mode,
            "max_execution_time": self.max_execution_time or config.retry.max_execution_time_seconds,
            "timeout": self.timeout or config.timeout_seconds,
        })


class ConfigManager:
    """
    Loads tablezure configuration.

    Configuration precedence (highest to lowest):
    1. Explicit overrides
    2. Environment variables (TABLEZURE_*)
    3. Configuration file (YAML/JSON)
    4. Defaults
    """

    ENV_PREFIX = "TABLEZURE_"

    def __init__(self):
        self._config: Optional[ClientConfig] = None
        self._config_file: Optional[Path] = None

    def load(
        self,
        config_file: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None
    ) -> ClientConfig:
        """
        Load and validate configuration from multiple sources.

        Args:
            config_file: Path to configuration file (YAML or JSON)
            overrides: Dictionary of explicit overrides

        Returns:
            Validated ClientConfig instance

        Raises:
            ValidationError: If configuration is invalid
            FileNotFoundError: If specified config file doesn't exist
        """
        config_dict: Dict[str, Any] = {}

        if config_file:
            config_dict = self._load_from_file(config_file)
            self._config_file = Path(config_file)
            logger.info(f"Loaded configuration from file: {config_file}")

        env_config = self._load_from_env()
        config_dict = self._merge_configs(config_dict, env_config)
        if env_config:
            logger.info(f"Applied {len(env_config)} environment variable overrides")

        if overrides:
            config_dict = self._merge_configs(config_dict, overrides)

        try:
            self._config = ClientConfig(**config_dict)
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise
        logger.debug(f"Active configuration: {json.dumps(self._config.model_dump(mode='json'))}")
        return self._config

    def _load_from_file(self, file_path: str) -> Dict[str, Any]:
        """Load configuration from YAML or JSON file."""
        path = Path(file_path)

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {file_path}")

        with open(path, "r", encoding="utf-8") as f:
            if path.suffix in [".yaml", ".yml"]:
                return yaml.safe_load(f) or {}
            elif path.suffix == ".json":
                return json.load(f)
            else:
                raise ValueError(f"Unsupported config file format: {path.suffix}")

    def _load_from_env(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        config: Dict[str, Any] = {}
        prefix = self.ENV_PREFIX

        if payload_format := os.getenv(f"{prefix}PAYLOAD_FORMAT"):
            config["payload_format"] = payload_format
        if location_mode := os.getenv(f"{prefix}LOCATION_MODE"):
            config["location_mode"] = location_mode
        if timeout := os.getenv(f"{prefix}TIMEOUT"):
            config["timeout_seconds"] = float(timeout)
        if api_version := os.getenv(f"{prefix}API_VERSION"):
            config["api_version"] = api_version

        if policy := os.getenv(f"{prefix}RETRY_POLICY"):
            config.setdefault("retry", {})["policy"] = policy.lower()
        if max_attempts := os.getenv(f"{prefix}RETRY_MAX_ATTEMPTS"):
            config.setdefault("retry", {})["max_attempts"] = int(max_attempts)
        if backoff := os.getenv(f"{prefix}RETRY_BACKOFF"):
            config.setdefault("retry", {})["backoff_seconds"] = float(backoff)
        if max_execution := os.getenv(f"{prefix}MAX_EXECUTION_TIME"):
            config.setdefault("retry", {})["max_execution_time_seconds"] = float(max_execution)

        if log_level := os.getenv(f"{prefix}LOG_LEVEL"):
            config.setdefault("logging", {})["level"] = log_level.upper()
        if log_format := os.getenv(f"{prefix}LOG_FORMAT"):
            config.setdefault("logging", {})["format"] = log_format.lower()
        if log_file := os.getenv(f"{prefix}LOG_FILE"):
            config.setdefault("logging", {})["file"] = log_file

        return config

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two configuration dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result

    def get_config(self) -> ClientConfig:
        """
        Get the loaded configuration.

        Raises:
            RuntimeError: If configuration hasn't been loaded
        """
        if self._config is None:
            raise RuntimeError("Configuration not loaded. Call load() first.")
        return self._config

    def reload(self) -> ClientConfig:
        """Reload configuration from the same sources."""
        config_file = str(self._config_file) if self._config_file else None
        return self.load(config_file=config_file)
