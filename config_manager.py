#!/usr/bin/env python3
"""
Configuration Management System for L4Proxy
Handles YAML/JSON configuration loading, validation, and environment-specific overrides
"""

import os
import yaml
from typing import Dict, Any, Optional, List, Tuple
from dataclasses import dataclass, field
from copy import deepcopy

from safe_logger import get_safe_logger

logger = get_safe_logger(__name__)

DEFAULT_LISTEN_ADDR = "localhost:8080"
DEFAULT_BACKENDS = ("localhost:5001", "localhost:5002", "localhost:5003")
DEFAULT_CONNECTION_TIMEOUT = 60
DEFAULT_DIAL_TIMEOUT = 5.0

SELECTION_POLICIES = ("random", "round_robin")

# Key names used by the original JSON config files
LEGACY_KEYS = {
    'listenAddr': 'listen_addr',
    'server': 'backends',
    'servers': 'backends',
    'connectionTimeout': 'connection_timeout',
    'dialTimeout': 'dial_timeout',
    'drainTimeout': 'drain_timeout',
}

@dataclass
class FileLoggingConfig:
    """File logging configuration"""
    enabled: bool = False
    path: str = "l4proxy.log"
    max_size: str = "10MB"
    rotate_count: int = 5

@dataclass
class LoggingConfig:
    """Logging configuration"""
    enabled: bool = True
    level: str = "INFO"
    format: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    file: FileLoggingConfig = field(default_factory=FileLoggingConfig)
    components: Dict[str, str] = field(default_factory=dict)

@dataclass(frozen=True)
class Config:
    """Main configuration, built once and shared read-only"""
    listen_addr: str = DEFAULT_LISTEN_ADDR
    backends: Tuple[str, ...] = DEFAULT_BACKENDS
    connection_timeout: int = DEFAULT_CONNECTION_TIMEOUT
    dial_timeout: float = DEFAULT_DIAL_TIMEOUT
    drain_timeout: Optional[float] = None
    wait_for_drain: bool = True
    selection_policy: str = "random"
    buffer_size: int = 64 * 1024
    logging: LoggingConfig = field(default_factory=LoggingConfig)

class ConfigurationError(Exception):
    """Configuration-related error"""
    pass

def parse_address(addr: str) -> Tuple[str, int]:
    """
    Split a "host:port" string. IPv6 hosts may be bracketed ("[::1]:80").

    Raises:
        ValueError: if the port is missing or out of range
    """
    if not isinstance(addr, str) or ':' not in addr:
        raise ValueError(f"address must be host:port, got {addr!r}")

    host, _, port_text = addr.rpartition(':')
    if host.startswith('[') and host.endswith(']'):
        host = host[1:-1]

    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"invalid port in address {addr!r}")

    if not 0 <= port <= 65535:
        raise ValueError(f"port out of range in address {addr!r}")

    return host, port

def _is_positive(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0

def validate_config(config: Config):
    """Validate configuration for consistency and correctness"""
    errors = []

    try:
        parse_address(config.listen_addr)
    except ValueError as e:
        errors.append(f"Invalid listen address: {e}")

    if not config.backends:
        errors.append("At least one backend address must be configured")
    for backend in config.backends:
        try:
            host, port = parse_address(backend)
            if not host or port == 0:
                errors.append(f"Backend must name a host and a non-zero port: {backend!r}")
        except ValueError as e:
            errors.append(f"Invalid backend address: {e}")

    if not isinstance(config.connection_timeout, int) or config.connection_timeout <= 0:
        errors.append(f"connection_timeout must be a positive integer: {config.connection_timeout!r}")

    if not _is_positive(config.dial_timeout):
        errors.append(f"dial_timeout must be positive: {config.dial_timeout!r}")

    if config.drain_timeout is not None and not _is_positive(config.drain_timeout):
        errors.append(f"drain_timeout must be positive when set: {config.drain_timeout!r}")

    if config.selection_policy not in SELECTION_POLICIES:
        errors.append(f"Invalid selection policy: {config.selection_policy}")

    if not isinstance(config.buffer_size, int) or config.buffer_size <= 0:
        errors.append("buffer_size must be positive")

    valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
    if config.logging.level not in valid_levels:
        errors.append(f"Invalid log level: {config.logging.level}")
    for component, level in config.logging.components.items():
        if level not in valid_levels:
            errors.append(f"Invalid log level for {component}: {level}")

    if errors:
        raise ConfigurationError("Configuration validation failed:\n" +
                               "\n".join(f"  - {error}" for error in errors))

def build_config(**overrides) -> Config:
    """Create a validated Config from keyword arguments (defaults elsewhere)"""
    if 'backends' in overrides:
        overrides['backends'] = tuple(overrides['backends'])
    config = Config(**overrides)
    validate_config(config)
    return config

class ConfigManager:
    """Configuration manager with validation and environment support"""

    def __init__(self):
        self.config: Optional[Config] = None

    def load_config(self, config_file: Optional[str] = None,
                   environment: Optional[str] = None) -> Config:
        """
        Load configuration from file with environment-specific overrides

        Args:
            config_file: Path to main config file (searched for when omitted)
            environment: Environment name for overrides (dev/prod/test)

        Returns:
            Loaded and validated configuration
        """
        if config_file is None:
            config_file = self._find_config_file()

        if config_file is None:
            logger.warning("No configuration file found, using built-in defaults")
            main_config = {}
        else:
            main_config = self._load_yaml_file(config_file)

            if environment:
                env_config = self._load_environment_config(config_file, environment)
                if env_config:
                    main_config = self._merge_configs(main_config, env_config)

        main_config = self._apply_env_overrides(self._normalize_keys(main_config))

        self.config = self._create_config_objects(main_config)
        validate_config(self.config)

        if config_file:
            logger.info(f"Configuration loaded from {config_file}")
        if environment:
            logger.info(f"Applied environment overrides for: {environment}")

        return self.config

    def _find_config_file(self) -> Optional[str]:
        """Find configuration file in standard locations"""
        search_paths = [
            "config.yaml",
            "config.yml",
            "config.json",
            "l4proxy.yaml",
            "/etc/l4proxy/config.yaml",
            os.path.expanduser("~/.config/l4proxy/config.yaml"),
        ]

        for path in search_paths:
            if os.path.isfile(path):
                return path

        return None

    def _load_yaml_file(self, file_path: str) -> Dict[str, Any]:
        """Load YAML (or JSON) configuration file"""
        try:
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {file_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {file_path}: {e}")
        except OSError as e:
            raise ConfigurationError(f"Error loading {file_path}: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError(f"Top level of {file_path} must be a mapping")
        return data

    def _load_environment_config(self, base_config_path: str,
                                environment: str) -> Optional[Dict[str, Any]]:
        """Load environment-specific configuration overrides"""
        base_dir = os.path.dirname(base_config_path)
        base_name = os.path.splitext(os.path.basename(base_config_path))[0]

        env_file = os.path.join(base_dir, f"{base_name}.{environment}.yaml")

        if os.path.isfile(env_file):
            logger.info(f"Loading environment config: {env_file}")
            return self._load_yaml_file(env_file)

        return None

    def _merge_configs(self, base: Dict[str, Any],
                      override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge configuration dictionaries"""
        result = deepcopy(base)

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result

    def _normalize_keys(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Map legacy camelCase keys onto their snake_case names"""
        result = {}
        for key, value in config.items():
            result[LEGACY_KEYS.get(key, key)] = value
        return result

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides using L4PROXY_ prefix"""
        result = deepcopy(config)

        env_mappings = {
            'L4PROXY_LISTEN_ADDR': ['listen_addr'],
            'L4PROXY_BACKENDS': ['backends'],
            'L4PROXY_CONNECTION_TIMEOUT': ['connection_timeout'],
            'L4PROXY_DIAL_TIMEOUT': ['dial_timeout'],
            'L4PROXY_DRAIN_TIMEOUT': ['drain_timeout'],
            'L4PROXY_SELECTION_POLICY': ['selection_policy'],
            'L4PROXY_LOG_LEVEL': ['logging', 'level'],
            'L4PROXY_LOG_FILE': ['logging', 'file', 'path'],
        }

        for env_var, config_path in env_mappings.items():
            env_value = os.environ.get(env_var)
            if env_value is None:
                continue

            current = result
            for key in config_path[:-1]:
                if not isinstance(current.get(key), dict):
                    current[key] = {}
                current = current[key]

            final_key = config_path[-1]
            try:
                if final_key == 'backends':
                    current[final_key] = [b.strip() for b in env_value.split(',') if b.strip()]
                elif final_key == 'connection_timeout':
                    current[final_key] = int(env_value)
                elif final_key in ('dial_timeout', 'drain_timeout'):
                    current[final_key] = float(env_value)
                else:
                    current[final_key] = env_value
            except ValueError:
                raise ConfigurationError(f"Invalid value for {env_var}: {env_value!r}")

            if env_var == 'L4PROXY_LOG_FILE':
                current['enabled'] = True

            logger.info(f"Applied environment override: {env_var}={env_value}")

        return result

    def _create_config_objects(self, config_dict: Dict[str, Any]) -> Config:
        """Create configuration objects from dictionary"""
        known = set(Config.__dataclass_fields__)
        unknown = sorted(set(config_dict) - known)
        if unknown:
            logger.warning(f"Ignoring unknown configuration keys: {', '.join(unknown)}")

        try:
            config_kwargs = {}
            for key in known:
                if key not in config_dict:
                    continue
                value = config_dict[key]
                if key == 'logging':
                    value = self._create_nested_config(value or {}, LoggingConfig)
                elif key == 'backends':
                    if isinstance(value, str):
                        value = [value]
                    value = tuple(value or ())
                config_kwargs[key] = value

            return Config(**config_kwargs)

        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Error creating configuration objects: {e}")

    def _create_nested_config(self, config_dict: Dict[str, Any],
                            config_class: type) -> Any:
        """Create nested configuration objects recursively"""
        annotations = getattr(config_class, '__annotations__', {})
        kwargs = {}

        for field_name, field_type in annotations.items():
            if field_name in config_dict:
                value = config_dict[field_name]

                if hasattr(field_type, '__dataclass_fields__'):
                    kwargs[field_name] = self._create_nested_config(value or {}, field_type)
                else:
                    kwargs[field_name] = value

        return config_class(**kwargs)

    def get_config(self) -> Config:
        """Get current configuration (must be loaded first)"""
        if self.config is None:
            raise ConfigurationError("Configuration not loaded. Call load_config() first.")
        return self.config
