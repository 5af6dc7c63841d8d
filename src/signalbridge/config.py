"""
Configuration Management for SignalBridge Clients

Dataclass configuration covering the connection, reconnect policy, MQTT
passthrough and logging. Configurations can be built per environment, from
dictionaries, from JSON/YAML files or from ``SIGNALBRIDGE_*`` environment
variables.
"""

import json
import logging
import logging.handlers
import os
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union, get_args, get_origin

from .errors import ConfigurationError

DEFAULT_PORT = 8080
DEFAULT_MQTT_PREFIX = "petra/signals/"
_LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1", "")


def default_url(host: str = "localhost", port: int = DEFAULT_PORT) -> str:
    """Backend WebSocket URL for a page served from ``host``."""
    if host in _LOCAL_HOSTS:
        return f"ws://localhost:{port}/ws"
    return f"wss://{host}/ws"


class Environment(Enum):
    """Deployment environments"""
    DEVELOPMENT = "development"
    TESTING = "testing"
    PRODUCTION = "production"


@dataclass
class ConnectionConfig:
    """WebSocket connection and reconnect policy"""
    url: str = field(default_factory=default_url)
    reconnect_interval: float = 5.0
    max_reconnect_attempts: int = 10
    backoff: str = "fixed"  # fixed | exponential
    max_backoff: float = 60.0
    jitter: float = 0.0
    heartbeat_interval: float = 30.0
    open_timeout: float = 10.0
    outbox_size: int = 1000

    def validate(self) -> None:
        _normalize(self, "connection")
        if not self.url.startswith(("ws://", "wss://")):
            raise ConfigurationError(f"Connection url must be ws:// or wss://, got {self.url!r}")
        if self.reconnect_interval < 0:
            raise ConfigurationError("reconnect_interval must be >= 0")
        if self.max_reconnect_attempts < 1:
            raise ConfigurationError("max_reconnect_attempts must be >= 1")
        if self.backoff not in ("fixed", "exponential"):
            raise ConfigurationError(f"Unknown backoff policy: {self.backoff!r}")
        if not 0.0 <= self.jitter <= 1.0:
            raise ConfigurationError("jitter must be between 0 and 1")
        if self.heartbeat_interval < 0:
            raise ConfigurationError("heartbeat_interval must be >= 0")
        if self.open_timeout <= 0:
            raise ConfigurationError("open_timeout must be > 0")
        if self.outbox_size < 1:
            raise ConfigurationError("outbox_size must be >= 1")


@dataclass
class MqttConfig:
    """MQTT passthrough"""
    enabled: bool = False
    signal_prefix: str = DEFAULT_MQTT_PREFIX


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file_path: Optional[str] = None
    max_file_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5


@dataclass
class SyncConfig:
    """Complete client configuration"""
    environment: Environment = Environment.DEVELOPMENT
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    mqtt: MqttConfig = field(default_factory=MqttConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def validate(self) -> "SyncConfig":
        self.connection.validate()
        _normalize(self.mqtt, "mqtt")
        _normalize(self.logging, "logging")
        if self.logging.level.upper() not in logging.getLevelNamesMapping():
            raise ConfigurationError(f"Unknown log level: {self.logging.level!r}")
        return self

    @classmethod
    def for_environment(cls, environment: Environment) -> "SyncConfig":
        """Create configuration for a specific environment"""
        config = cls(environment=environment)

        if environment == Environment.DEVELOPMENT:
            config.logging.level = "DEBUG"

        elif environment == Environment.TESTING:
            config.logging.level = "WARNING"
            config.connection.reconnect_interval = 0.01
            config.connection.heartbeat_interval = 0
            config.connection.max_reconnect_attempts = 3

        elif environment == Environment.PRODUCTION:
            config.logging.level = "INFO"
            config.connection.backoff = "exponential"
            config.connection.jitter = 0.2

        return config

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "SyncConfig":
        """Create configuration from a dictionary; unknown keys are rejected"""
        environment = Environment.DEVELOPMENT
        if "environment" in config_dict:
            try:
                environment = Environment(config_dict["environment"])
            except ValueError as e:
                raise ConfigurationError(f"Unknown environment: {config_dict['environment']!r}") from e

        config = cls.for_environment(environment)
        for section in ("connection", "mqtt", "logging"):
            if section in config_dict:
                _update_section(getattr(config, section), section, config_dict[section])

        return config.validate()

    @classmethod
    def from_file(cls, config_path: Union[str, Path]) -> "SyncConfig":
        """Load configuration from a JSON or YAML file"""
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        if config_path.suffix == ".json":
            with open(config_path) as f:
                config_dict = json.load(f)
        elif config_path.suffix in (".yml", ".yaml"):
            try:
                import yaml
            except ImportError:
                raise ImportError("PyYAML is required for YAML configuration files")
            with open(config_path) as f:
                config_dict = yaml.safe_load(f) or {}
        else:
            raise ConfigurationError(f"Unsupported configuration file format: {config_path.suffix}")

        if not isinstance(config_dict, dict):
            raise ConfigurationError(f"Configuration file must contain a mapping: {config_path}")
        return cls.from_dict(config_dict)

    @classmethod
    def from_environment(cls) -> "SyncConfig":
        """Create configuration from SIGNALBRIDGE_* environment variables"""
        env_name = os.getenv("SIGNALBRIDGE_ENV", "development")
        try:
            environment = Environment(env_name)
        except ValueError as e:
            raise ConfigurationError(f"Unknown environment: {env_name!r}") from e

        config = cls.for_environment(environment)

        if os.getenv("SIGNALBRIDGE_URL"):
            config.connection.url = os.getenv("SIGNALBRIDGE_URL")
        elif os.getenv("SIGNALBRIDGE_HOST"):
            config.connection.url = default_url(os.getenv("SIGNALBRIDGE_HOST"))

        overrides = {
            "SIGNALBRIDGE_RECONNECT_INTERVAL": ("reconnect_interval", float),
            "SIGNALBRIDGE_MAX_RECONNECT_ATTEMPTS": ("max_reconnect_attempts", int),
            "SIGNALBRIDGE_BACKOFF": ("backoff", str),
            "SIGNALBRIDGE_HEARTBEAT_INTERVAL": ("heartbeat_interval", float),
        }
        for var, (attr, convert) in overrides.items():
            raw = os.getenv(var)
            if not raw:
                continue
            try:
                setattr(config.connection, attr, convert(raw))
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {var}: {raw!r}") from e

        if os.getenv("SIGNALBRIDGE_MQTT"):
            config.mqtt.enabled = os.getenv("SIGNALBRIDGE_MQTT").lower() == "true"

        if os.getenv("SIGNALBRIDGE_LOG_LEVEL"):
            config.logging.level = os.getenv("SIGNALBRIDGE_LOG_LEVEL").upper()

        if os.getenv("SIGNALBRIDGE_LOG_FILE"):
            config.logging.file_path = os.getenv("SIGNALBRIDGE_LOG_FILE")

        return config.validate()

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to a JSON-compatible dictionary"""
        return {
            "environment": self.environment.value,
            "connection": asdict(self.connection),
            "mqtt": asdict(self.mqtt),
            "logging": asdict(self.logging),
        }


def _update_section(target: Any, section: str, values: Any) -> None:
    if not isinstance(values, dict):
        raise ConfigurationError(f"Configuration section {section!r} must be a mapping")
    known = {f.name: f for f in fields(target)}
    for key, value in values.items():
        if key not in known:
            raise ConfigurationError(f"Unknown {section} option: {key!r}")
        setattr(target, key, _coerce(f"{section}.{key}", known[key].type, value))


def _normalize(target: Any, section: str) -> None:
    for f in fields(target):
        value = getattr(target, f.name)
        setattr(target, f.name, _coerce(f"{section}.{f.name}", f.type, value))


def _coerce(option: str, expected: Any, value: Any) -> Any:
    """Convert a loaded value to the field type, e.g. "3" for an int option."""
    if get_origin(expected) is Union:
        if value is None and type(None) in get_args(expected):
            return None
        expected = next(t for t in get_args(expected) if t is not type(None))

    if expected is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ("true", "false"):
            return value.lower() == "true"
    elif expected in (int, float):
        if not isinstance(value, bool):
            try:
                converted = expected(value)
            except (TypeError, ValueError):
                pass
            else:
                if expected is float or not isinstance(value, float) or value.is_integer():
                    return converted
    elif expected is str:
        if isinstance(value, str):
            return value
    else:
        return value

    raise ConfigurationError(f"Invalid value for {option}: expected {expected.__name__}, got {value!r}")


def configure_logging(config: LoggingConfig) -> logging.Logger:
    """Install handlers for the ``signalbridge`` logger."""
    logger = logging.getLogger("signalbridge")
    logger.setLevel(config.level.upper())

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(config.format)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)

    if config.file_path:
        Path(config.file_path).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            config.file_path,
            maxBytes=config.max_file_size,
            backupCount=config.backup_count,
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
