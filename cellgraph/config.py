"""
Configuration management for Cellgraph.

This module handles loading and accessing configuration values from config.yaml.
Callers build a ConfigManager and pass it to the Project they open; there is
no process-wide instance.
"""

import copy
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

DEFAULT_CONFIG: Dict[str, Any] = {
    "database": {
        "filename": "project.duckdb",
    },
    "journal": {
        "retention": 50,
    },
    "cache": {
        "capacity": 100,
    },
    "editor": {
        "command": None,
        "poll_interval": 0.5,
    },
    "remote": {
        "timeout": 30.0,
    },
    "paths": {
        "log_file": "cellgraph.log",
    },
    "logging": {
        "level": "INFO",
        "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    },
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ConfigManager:
    """
    Manages configuration loading and access for Cellgraph.
    """

    def __init__(self, config_path: Optional[Union[str, Path]] = "config.yaml"):
        """
        Initialize the configuration manager.

        Args:
            config_path: Path to the configuration file (None for defaults only)
        """
        self.config_path = Path(config_path) if config_path else None
        self._config: Dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from YAML file, layered over the defaults."""
        if self.config_path is None:
            self._config = self._get_default_config()
            return

        try:
            if not self.config_path.exists():
                raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

            with open(self.config_path, 'r', encoding='utf-8') as f:
                loaded = yaml.safe_load(f) or {}

            if not isinstance(loaded, dict):
                raise ValueError(f"Configuration root must be a mapping: {self.config_path}")

            self._config = _merge(DEFAULT_CONFIG, loaded)
            logging.info(f"Configuration loaded from {self.config_path}")

        except (OSError, yaml.YAMLError, ValueError) as e:
            logging.warning(f"Failed to load configuration, using defaults: {e}")
            self._config = self._get_default_config()

    def _get_default_config(self) -> Dict[str, Any]:
        """Get default configuration values as fallback."""
        return copy.deepcopy(DEFAULT_CONFIG)

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get a configuration value using dot notation.

        Args:
            key_path: Dot-separated path to the configuration value (e.g., "journal.retention")
            default: Default value if key is not found

        Returns:
            The configuration value

        Examples:
            config.get("journal.retention")  # Returns 50
            config.get("editor.poll_interval")  # Returns 0.5
        """
        keys = key_path.split('.')
        value = self._config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def get_section(self, section: str) -> Dict[str, Any]:
        """
        Get an entire configuration section.

        Args:
            section: Name of the configuration section

        Returns:
            Dictionary containing the section configuration
        """
        return self._config.get(section, {})

    def reload(self) -> None:
        """Reload configuration from file."""
        self._load_config()

    # Convenience properties for commonly used values

    @property
    def database_filename(self) -> str:
        """Get database filename."""
        return self.get("database.filename", "project.duckdb")

    @property
    def journal_retention(self):
        """Get journal retention; validated when the store is built."""
        return self.get("journal.retention", 50)

    @property
    def cache_capacity(self) -> int:
        """Get number of content payloads kept in memory."""
        return self.get("cache.capacity", 100)

    @property
    def editor_command(self) -> Optional[str]:
        """Get external editor command (None means $VISUAL / $EDITOR)."""
        return self.get("editor.command")

    @property
    def editor_poll_interval(self) -> float:
        """Get editor process poll interval in seconds."""
        return self.get("editor.poll_interval", 0.5)

    @property
    def remote_timeout(self) -> float:
        """Get remote content download timeout."""
        return self.get("remote.timeout", 30.0)

    @property
    def log_filename(self) -> str:
        """Get log file name."""
        return self.get("paths.log_file", "cellgraph.log")
