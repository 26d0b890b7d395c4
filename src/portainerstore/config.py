"""
Configuration management for portainerstore.

This module provides configuration file support with YAML format,
persisted user preferences, and default settings.

Features:
- YAML configuration file at ~/.config/portainerstore/config.yaml
- Default values with user overrides
- Portainer connection settings (API version, timeout, TLS verification)
- Cache and log location overrides
- Preferences (selected server, selected endpoint) that survive restarts

Architecture:
- ConfigManager: Main configuration interface
- Merges user config with defaults
- Provides typed access to settings
- Handles missing/invalid config gracefully
- Preferences: Read/write view over the preferences section
"""

import logging
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from . import get_config_dir

logger = logging.getLogger(__name__)


@dataclass
class PortainerConfig:
    """Portainer connection settings."""
    api_version: str = "1.41"  # Docker API version spoken through the Portainer proxy
    timeout: int = 30  # seconds
    verify_tls: bool = True


@dataclass
class CacheConfig:
    """Local cache settings."""
    directory: Optional[str] = None  # None for default


@dataclass
class LogConfig:
    """Logging configuration."""
    level: str = "INFO"
    file_path: Optional[str] = None  # None for default
    max_size_mb: int = 10
    backup_count: int = 5


@dataclass
class PreferencesConfig:
    """Values remembered between runs."""
    selected_server: Optional[str] = None
    selected_endpoint_id: Optional[int] = None


@dataclass
class AppConfig:
    """Main application configuration."""
    portainer: PortainerConfig = field(default_factory=PortainerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    logging: LogConfig = field(default_factory=LogConfig)
    preferences: PreferencesConfig = field(default_factory=PreferencesConfig)


class ConfigManager:
    """Configuration manager with YAML file support."""

    def __init__(self, config_dir: Optional[Union[str, Path]] = None):
        self.config_dir = Path(config_dir) if config_dir else get_config_dir()
        self.config_file = self.config_dir / "config.yaml"
        self._config: AppConfig = AppConfig()

        # Ensure config directory exists
        self.config_dir.mkdir(parents=True, exist_ok=True)

        # Load configuration
        self.load_config()

    def load_config(self) -> None:
        """Load configuration from YAML file."""
        try:
            if self.config_file.exists():
                with open(self.config_file, 'r') as f:
                    user_config = yaml.safe_load(f) or {}

                # Merge with defaults
                self._config = self._merge_configs(AppConfig(), user_config)
                logger.debug(f"Loaded configuration from {self.config_file}")
            else:
                # Create default config file
                self.save_config()
                logger.info(f"Created default configuration at {self.config_file}")
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load config: {e}, using defaults")
            self._config = AppConfig()

    def save_config(self) -> None:
        """Save current configuration to YAML file."""
        try:
            with open(self.config_file, 'w') as f:
                yaml.safe_dump(asdict(self._config), f, default_flow_style=False, indent=2)
            logger.debug(f"Saved configuration to {self.config_file}")
        except OSError as e:
            logger.error(f"Failed to save config: {e}")

    def get_config(self) -> AppConfig:
        """Get current configuration."""
        return self._config

    def _merge_configs(self, default: AppConfig, user: Dict[str, Any]) -> AppConfig:
        """Merge user config with defaults."""
        if not isinstance(user, dict):
            logger.warning("Ignoring configuration that is not a mapping")
            return default
        for section in fields(default):
            updates = user.get(section.name)
            if isinstance(updates, dict):
                self._merge_dataclass(getattr(default, section.name), updates)
        return default

    def _merge_dataclass(self, obj: Any, updates: Dict[str, Any]) -> None:
        """Merge updates into dataclass object."""
        for key, value in updates.items():
            if hasattr(obj, key) and not is_dataclass(getattr(obj, key)):
                setattr(obj, key, value)

    def get_log_level(self) -> str:
        """Get configured log level."""
        return self._config.logging.level.upper()

    def get_custom_log_path(self) -> Optional[str]:
        """Get custom log file path if configured."""
        return self._config.logging.file_path

    def get_cache_dir(self) -> Optional[str]:
        """Get custom cache directory if configured."""
        return self._config.cache.directory


class Preferences:
    """
    Preferences that drive startup: which server to reconnect to and which
    endpoint to reselect. Every assignment is written through to disk.
    """

    def __init__(self, config_manager: ConfigManager):
        self._config_manager = config_manager

    @property
    def _section(self) -> PreferencesConfig:
        return self._config_manager.get_config().preferences

    @property
    def selected_server(self) -> Optional[str]:
        return self._section.selected_server

    @selected_server.setter
    def selected_server(self, value: Optional[str]) -> None:
        self._section.selected_server = value
        self._config_manager.save_config()

    @property
    def selected_endpoint_id(self) -> Optional[int]:
        return self._section.selected_endpoint_id

    @selected_endpoint_id.setter
    def selected_endpoint_id(self, value: Optional[int]) -> None:
        self._section.selected_endpoint_id = value
        self._config_manager.save_config()
