"""
Configuration Loader

Utilities for loading YAML configuration files with validation.
"""

import yaml
from pathlib import Path
from typing import Any, Dict, Optional
import os


class ConfigLoader:
    """
    Load and validate YAML configuration files.
    """

    @staticmethod
    def load(config_path: str, required_keys: Optional[list] = None) -> Dict[str, Any]:
        """
        Load a YAML configuration file.

        Args:
            config_path: Path to YAML file
            required_keys: List of keys that must be present in config

        Returns:
            Configuration dictionary

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If required keys are missing or the root is not a mapping
            yaml.YAMLError: If YAML is invalid
        """
        path = Path(config_path)

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f)

        if config is None:
            config = {}

        if not isinstance(config, dict):
            raise ValueError(f"Configuration root must be a mapping: {config_path}")

        if required_keys:
            missing = [key for key in required_keys if key not in config]
            if missing:
                raise ValueError(f"Missing required configuration keys: {missing}")

        return config

    @staticmethod
    def load_with_env_override(
        config_path: Optional[str] = None,
        env_prefix: str = "CHANGEGATE_"
    ) -> Dict[str, Any]:
        """
        Load config and override with environment variables.

        Environment variables matching env_prefix override top-level config
        values. For example, CHANGEGATE_DATABASE_PATH overrides
        config['database_path']. Values are parsed as YAML scalars so
        "5" becomes 5 and "false" becomes False.

        Args:
            config_path: Path to YAML file (optional, env only when omitted)
            env_prefix: Prefix for environment variables

        Returns:
            Configuration dictionary with env overrides applied
        """
        config = ConfigLoader.load(config_path) if config_path else {}

        for key, value in os.environ.items():
            if key.startswith(env_prefix):
                config_key = key[len(env_prefix):].lower()
                config[config_key] = yaml.safe_load(value) if value else value

        return config
