"""
Configuration Management System for ResQMob

Handles loading configuration from environment variables, config files,
and provides validation and runtime updates.
"""

import os
import json
import yaml
import logging
from typing import Any, Dict, List, Optional, Callable
from pathlib import Path
from dataclasses import dataclass


@dataclass
class ConfigSource:
    """Configuration source definition"""
    name: str
    priority: int
    loader: Callable
    path: Optional[str] = None


class ConfigurationError(Exception):
    """Configuration-related errors"""
    pass


class ConfigurationManager:
    """
    Manages system configuration with support for multiple sources,
    validation, and runtime updates.
    """

    def __init__(self, config_dir: str = "config"):
        self.config_dir = Path(config_dir)
        self.config: Dict[str, Any] = {}
        self.watchers: Dict[str, List[Callable]] = {}
        self.sources: List[ConfigSource] = []
        self.logger = logging.getLogger(__name__)

        # Default configuration values
        self.defaults = {
            "app": {
                "name": "ResQMob",
                "version": "1.0.0",
                "debug": False,
                "log_level": "INFO"
            },
            "database": {
                "backend": "memory",
                "path": "data/resqmob.db",
                "max_connections": 10
            },
            "sos": {
                "base_radius_meters": 1000,
                "escalation_interval_seconds": 180,
                "max_escalation_level": 5,
                "escalation_growth_factor": 0.5,
                "responder_speed_kmh": 30,
                "location_timeout_seconds": 10,
                "query_timeout_seconds": 5,
                "dispatch_concurrency": 20,
                "alert_expiry_hours": 24,
                "expiry_check_interval_seconds": 300,
                "max_location_age_hours": 24,
                "nearby_alerts_radius_meters": 10000
            },
            "notifications": {
                "push": {
                    "enabled": True,
                    "url": "https://exp.host/--/api/v2/push/send",
                    "timeout": 10
                },
                "sms": {
                    "enabled": False,
                    "url": "",
                    "api_key": "",
                    "timeout": 10
                }
            },
            "geocoding": {
                "enabled": False,
                "url": "https://nominatim.openstreetmap.org/reverse",
                "timeout": 5
            },
            "api": {
                "enabled": True,
                "host": "0.0.0.0",
                "port": 8080
            },
            "logging": {
                "level": "INFO",
                "file": "logs/resqmob.log",
                "max_size": "10MB",
                "backup_count": 5
            }
        }

        self._setup_sources()

    def _setup_sources(self):
        """Set up configuration sources in priority order"""
        # Environment variables (highest priority)
        self.sources.append(ConfigSource(
            name="environment",
            priority=4,
            loader=self._load_from_env
        ))

        local_config_path = str(self.config_dir / "config.yaml")
        self.sources.append(ConfigSource(
            name="local_config",
            priority=3,
            loader=lambda: self._load_from_file(local_config_path),
            path=local_config_path
        ))

        default_config_path = str(self.config_dir / "default.yaml")
        self.sources.append(ConfigSource(
            name="default_config",
            priority=2,
            loader=lambda: self._load_from_file(default_config_path),
            path=default_config_path
        ))

        # Built-in defaults (lowest priority)
        self.sources.append(ConfigSource(
            name="defaults",
            priority=1,
            loader=lambda: self.defaults
        ))

    def load_config(self) -> None:
        """Load configuration from all sources"""
        self.logger.info("Loading configuration from all sources")

        merged_config = {}

        # Lowest priority first so later sources override
        for source in sorted(self.sources, key=lambda x: x.priority):
            try:
                source_config = source.loader()
                if source_config:
                    merged_config = self._deep_merge(merged_config, source_config)
                    self.logger.debug(f"Loaded configuration from {source.name}")
            except (OSError, ValueError, yaml.YAMLError) as e:
                self.logger.warning(f"Failed to load config from {source.name}: {e}")

        self.config = merged_config
        self._validate_config()
        self.logger.info("Configuration loaded successfully")

    def _load_from_env(self) -> Dict[str, Any]:
        """Load configuration from environment variables"""
        config = {}

        env_mappings = {
            "RESQMOB_DEBUG": "app.debug",
            "RESQMOB_LOG_LEVEL": "logging.level",
            "RESQMOB_DB_BACKEND": "database.backend",
            "RESQMOB_DB_PATH": "database.path",
            "RESQMOB_API_PORT": "api.port",
            "RESQMOB_ESCALATION_INTERVAL": "sos.escalation_interval_seconds",
            "RESQMOB_MAX_ESCALATION_LEVEL": "sos.max_escalation_level",
            "RESQMOB_ALERT_EXPIRY_HOURS": "sos.alert_expiry_hours",
            "RESQMOB_SMS_URL": "notifications.sms.url",
            "RESQMOB_SMS_API_KEY": "notifications.sms.api_key",
            "RESQMOB_NOTIFICATIONS": "notifications"
        }

        for env_var, config_key in env_mappings.items():
            value = os.getenv(env_var)
            if value is not None:
                if value.lower() in ('true', 'false'):
                    value = value.lower() == 'true'
                elif value.isdigit():
                    value = int(value)
                elif config_key == "notifications":
                    # Whole notifications section as JSON
                    try:
                        value = json.loads(value)
                    except json.JSONDecodeError:
                        self.logger.warning(f"Invalid JSON in {env_var}: {value}")
                        continue

                self._set_nested_value(config, config_key, value)

        return config

    def _load_from_file(self, file_path: str) -> Dict[str, Any]:
        """Load configuration from YAML or JSON file"""
        path = Path(file_path)

        if not path.exists():
            return {}

        try:
            with open(path, 'r') as f:
                if path.suffix.lower() in ['.yaml', '.yml']:
                    return yaml.safe_load(f) or {}
                elif path.suffix.lower() == '.json':
                    return json.load(f)
                else:
                    self.logger.warning(f"Unsupported config file format: {path}")
                    return {}
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            self.logger.error(f"Error loading config file {path}: {e}")
            return {}

    def _deep_merge(self, base: Dict, override: Dict) -> Dict:
        """Deep merge two dictionaries"""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def _set_nested_value(self, config: Dict, key_path: str, value: Any) -> None:
        """Set a nested configuration value using dot notation"""
        keys = key_path.split('.')
        current = config

        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def _validate_config(self) -> None:
        """Validate configuration values"""
        errors = []

        required_sections = ['app', 'database', 'sos']
        for section in required_sections:
            if section not in self.config:
                errors.append(f"Missing required configuration section: {section}")

        backend = self.get('database.backend', 'memory')
        if backend not in ('memory', 'sqlite'):
            errors.append(f"Invalid database backend: {backend}")

        if backend == 'sqlite':
            db_path = self.get('database.path')
            if db_path:
                db_dir = Path(db_path).parent
                if not db_dir.exists():
                    try:
                        db_dir.mkdir(parents=True, exist_ok=True)
                    except OSError as e:
                        errors.append(f"Cannot create database directory {db_dir}: {e}")

        api_port = self.get('api.port')
        if api_port and (not isinstance(api_port, int) or api_port < 1 or api_port > 65535):
            errors.append(f"Invalid API port: {api_port}")

        max_level = self.get('sos.max_escalation_level', 5)
        if not isinstance(max_level, int) or max_level < 1:
            errors.append(f"Invalid max escalation level: {max_level}")

        for key in ('escalation_interval_seconds', 'location_timeout_seconds', 'query_timeout_seconds'):
            value = self.get(f'sos.{key}')
            if value is not None and (not isinstance(value, (int, float)) or value <= 0):
                errors.append(f"Invalid sos.{key}: {value}")

        log_level = self.get('logging.level', 'INFO')
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if str(log_level).upper() not in valid_levels:
            errors.append(f"Invalid log level: {log_level}")

        if errors:
            raise ConfigurationError(f"Configuration validation failed: {'; '.join(errors)}")

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation"""
        keys = key.split('.')
        current = self.config

        try:
            for k in keys:
                current = current[k]
            return current
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any) -> None:
        """Set configuration value using dot notation"""
        self._set_nested_value(self.config, key, value)

        if key in self.watchers:
            for callback in self.watchers[key]:
                try:
                    callback(key, value)
                except Exception as e:
                    self.logger.error(f"Error in config watcher for {key}: {e}")

    def watch(self, key: str, callback: Callable[[str, Any], None]) -> None:
        """Watch for configuration changes"""
        if key not in self.watchers:
            self.watchers[key] = []
        self.watchers[key].append(callback)

    def get_section(self, section: str) -> Dict[str, Any]:
        """Get entire configuration section"""
        return self.get(section, {})

    def get_database_backend(self) -> str:
        """Get the persistence backend name (memory or sqlite)"""
        return self.get('database.backend', 'memory')

    def is_api_enabled(self) -> bool:
        """Check if the HTTP API is enabled"""
        return self.get('api.enabled', True)

    def export_config(self, file_path: str) -> None:
        """Export current configuration to file"""
        path = Path(file_path)

        try:
            with open(path, 'w') as f:
                if path.suffix.lower() in ['.yaml', '.yml']:
                    yaml.dump(self.config, f, default_flow_style=False, indent=2)
                elif path.suffix.lower() == '.json':
                    json.dump(self.config, f, indent=2)
                else:
                    raise ValueError(f"Unsupported file format: {path.suffix}")

            self.logger.info(f"Configuration exported to {path}")
        except (OSError, ValueError) as e:
            self.logger.error(f"Failed to export configuration: {e}")
            raise ConfigurationError(f"Export failed: {e}")
