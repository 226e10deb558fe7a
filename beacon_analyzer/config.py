# Standard library imports
import os
import copy
import logging
import yaml
from typing import Dict, Any

logger = logging.getLogger(__name__)

class Config:
    """Configuration manager for the beacon analyzer."""

    DEFAULT_CONFIG = {
        'threat_intel': {
            'enabled': True,
            'api_url': 'https://threatfox-api.abuse.ch/api/v1/',
            'api_key': None,
            'cache_ttl': 3600,
            'max_ips': 20,
            'timeout': 10.0,
            'source_reliability': {
                'ThreatFox': 0.9,
                'Custom Rules': 0.8
            }
        },
        'ml': {
            'enabled': True,
            'confidence_threshold': 0.65,
            'use_ensemble': True,
            'beacon_weight': 0.6,
            'anomaly_weight': 0.4
        },
        'features': {
            'use_utc': False
        },
        'scoring': {
            'framework_bonus': False
        },
        'history': {
            'path': None,
            'max_size': 100
        },
        'rules': {
            'path': None
        },
        'output': {
            'reports_dir': 'reports',
            'json_report': True,
            'txt_report': True
        }
    }

    def __init__(self, config_path: str = None, overrides: Dict = None):
        """Initialize configuration.

        Args:
            config_path: Optional path to config YAML file
            overrides: Optional nested dictionary applied after the file
        """
        self.config = copy.deepcopy(self.DEFAULT_CONFIG)
        if config_path and os.path.exists(config_path):
            self._load_config(config_path)
        elif config_path:
            logger.warning(f"Config file {config_path} not found, using defaults")
        if overrides:
            self._update_nested_dict(self.config, overrides)

    def _load_config(self, config_path: str) -> None:
        """Load configuration from YAML file.

        Args:
            config_path: Path to config YAML file
        """
        try:
            with open(config_path, 'r') as f:
                user_config = yaml.safe_load(f)
                if user_config:
                    self._update_nested_dict(self.config, user_config)
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Error loading config from {config_path}: {e}")
            logger.info("Using default configuration")

    def _update_nested_dict(self, d: Dict, u: Dict) -> None:
        """Recursively update nested dictionary.

        Args:
            d: Target dictionary
            u: Source dictionary
        """
        for k, v in u.items():
            if isinstance(v, dict) and isinstance(d.get(k), dict):
                self._update_nested_dict(d[k], v)
            else:
                d[k] = v

    def get(self, path: list, default: Any = None) -> Any:
        """Get configuration value using path list.

        Args:
            path: List of keys forming path to value
            default: Default value if path not found

        Returns:
            Configuration value or default
        """
        value = self.config
        try:
            for key in path:
                value = value[key]
        except (KeyError, TypeError):
            return default
        return default if value is None else value

    def set(self, path: list, value: Any) -> None:
        """Set a configuration value, creating intermediate sections."""
        target = self.config
        for key in path[:-1]:
            target = target.setdefault(key, {})
        target[path[-1]] = value

    def save(self, config_path: str) -> None:
        """Save current configuration to YAML file.

        Args:
            config_path: Path to save config YAML
        """
        try:
            with open(config_path, 'w') as f:
                yaml.safe_dump(self.config, f, default_flow_style=False)
        except OSError as e:
            logger.error(f"Error saving config to {config_path}: {e}")
