"""
Configuration loading and management for Roster Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

from roster_sync.avatar import DEFAULT_SETTINGS as AVATAR_DEFAULTS
from roster_sync.roles import DEFAULT_POSITIONS, DEFAULT_DEPARTMENTS

logger = logging.getLogger(__name__)

SOURCE_REQUIRED_FIELDS = {
    'slack': ['token'],
    'ldap_directory': ['server_url', 'bind_dn', 'bind_password'],
}

SINK_REQUIRED_FIELDS = {
    'sanity': ['base_url', 'dataset'],
}


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for secrets
    ENV_OVERRIDES = {
        'source.token': 'SLACK_BOT_TOKEN',
        'notifications.slack_token': 'SLACK_BOT_TOKEN',
        'source.bind_password': 'LDAP_BIND_PASSWORD',
        'sink.auth.token': 'SANITY_TOKEN',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config: Dict[str, Any] = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for secrets."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if not env_value:
                continue
            section = config_key.split('.')[0]
            # Only fill sections that are configured; a Slack token must not create an LDAP source
            if section not in self.config:
                continue
            if config_key == 'source.token' and self.config['source'].get('module') != 'slack':
                continue
            if config_key == 'source.bind_password' and self.config['source'].get('module') != 'ldap_directory':
                continue
            self._set_nested_value(self.config, config_key, env_value)
            if config_key == 'sink.auth.token':
                self.config['sink']['auth'].setdefault('method', 'token')
            logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        source = self.config.get('source')
        if not isinstance(source, dict) or not source.get('module'):
            errors.append("Missing required field source.module")
        else:
            for field in SOURCE_REQUIRED_FIELDS.get(source['module'], []):
                if not source.get(field):
                    errors.append(f"Missing required source field: {field}")

        sink = self.config.get('sink')
        if not isinstance(sink, dict) or not sink.get('module'):
            errors.append("Missing required field sink.module")
        else:
            for field in SINK_REQUIRED_FIELDS.get(sink['module'], []):
                if not sink.get(field):
                    errors.append(f"Missing required sink field: {field}")
            auth = sink.get('auth') or {}
            if auth and not auth.get('method'):
                errors.append("Missing auth method for sink")

        roles = self.config.get('roles') or {}
        for key in ('positions', 'departments'):
            if key in roles and not isinstance(roles[key], list):
                errors.append(f"roles.{key} must be a list")

        avatar = self.config.get('avatar') or {}
        threshold = avatar.get('threshold')
        if threshold is not None and not (isinstance(threshold, (int, float)) and 0 <= threshold <= 100):
            errors.append("avatar.threshold must be a number between 0 and 100")
        for key in ('sample_size', 'canvas_size', 'max_concurrent_fetches'):
            value = avatar.get(key)
            if value is not None and (not isinstance(value, int) or value < 1):
                errors.append(f"avatar.{key} must be a positive integer")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        roles_config = self.config.setdefault('roles', {})
        roles_config.setdefault('positions', list(DEFAULT_POSITIONS))
        roles_config.setdefault('departments', list(DEFAULT_DEPARTMENTS))

        avatar_defaults = dict(AVATAR_DEFAULTS)
        avatar_defaults['run_timeout_seconds'] = 300
        self._merge_defaults('avatar', avatar_defaults)

        self._merge_defaults('logging', {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'INFO',
        })

        self._merge_defaults('error_handling', {
            'max_retries': 3,
            'retry_wait_seconds': 5,
            'retry_backoff': 1.0,
        })

        self._merge_defaults('notifications', {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': False,
            'enable_slack': False,
            'slack_on_failure': True,
            'slack_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True,
        })

        self._merge_defaults('sync', {'dry_run': False})

        sink = self.config['sink']
        sink.setdefault('name', sink['module'])
        sink.setdefault('verify_ssl', True)
        if sink['module'] == 'sanity':
            sink.setdefault('document_type', 'teamMember')
            sink.setdefault('upload_images', True)

        source = self.config['source']
        source.setdefault('name', source['module'])
        error_config = self.config['error_handling']
        source.setdefault('max_retries', error_config['max_retries'])
        source.setdefault('retry_wait_seconds', error_config['retry_wait_seconds'])

    def _merge_defaults(self, section: str, defaults: Dict[str, Any]):
        section_config = self.config.get(section)
        if not isinstance(section_config, dict):
            section_config = self.config[section] = {}
        for key, value in defaults.items():
            section_config.setdefault(key, value)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
