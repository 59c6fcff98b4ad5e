"""
Configuration loading and management for org-federation.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import re
import copy
import yaml
import logging
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)

SUPPORTED_TARGET_TYPES = ('azure_ad', 'ldap', 'memory')

REQUIRED_TARGET_FIELDS = ['name', 'type', 'platform', 'slug', 'root_group_id']

REQUIRED_TYPE_FIELDS = {
    'azure_ad': ['tenant_id', 'client_id', 'client_secret'],
    'ldap': ['server_url', 'bind_dn', 'bind_password', 'base_dn'],
    'memory': [],
}

# Secrets that may be supplied as <TARGET_NAME>_<SUFFIX>
TARGET_SECRET_OVERRIDES = {
    'client_secret': 'CLIENT_SECRET',
    'bind_password': 'BIND_PASSWORD',
}

# slug and platform become dotted segments of external identities
_IDENTITY_SEGMENT = re.compile(r'^[^.@,\s]+$')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


def target_env_prefix(target_name: str) -> str:
    return re.sub(r'[^A-Za-z0-9]', '_', target_name).upper()


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

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
                self.config = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in configuration file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration file is empty or not a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for target secrets."""
        for i, target in enumerate(self.config.get('targets') or []):
            if not isinstance(target, dict):
                continue
            prefix = target_env_prefix(target.get('name', f'target_{i}'))
            for field, suffix in TARGET_SECRET_OVERRIDES.items():
                env_value = os.getenv(f"{prefix}_{suffix}")
                if env_value:
                    target[field] = env_value
                    logger.debug(f"Applied environment override for {target.get('name')} {field}")

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        targets = self.config.get('targets')
        if not targets or not isinstance(targets, list):
            errors.append("At least one target must be configured")
            targets = []

        seen_names = set()
        for i, target in enumerate(targets):
            prefix = f"targets[{i}]"
            if not isinstance(target, dict):
                errors.append(f"{prefix} must be a mapping")
                continue

            for field in REQUIRED_TARGET_FIELDS:
                if not target.get(field):
                    errors.append(f"Missing required field {prefix}.{field}")

            name = target.get('name')
            if name:
                if name in seen_names:
                    errors.append(f"Duplicate target name '{name}'")
                seen_names.add(name)

            target_type = target.get('type')
            if target_type and target_type not in SUPPORTED_TARGET_TYPES:
                errors.append(f"Unsupported type '{target_type}' for {prefix} "
                              f"(expected one of: {', '.join(SUPPORTED_TARGET_TYPES)})")

            for field in REQUIRED_TYPE_FIELDS.get(target_type, []):
                if not target.get(field):
                    errors.append(f"Missing required {target_type} field {prefix}.{field}")

            for field in ('slug', 'platform'):
                value = target.get(field)
                if value and not _IDENTITY_SEGMENT.match(str(value)):
                    errors.append(f"{prefix}.{field} may not contain '.', '@', ',' or whitespace: {value!r}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'WARNING'
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 1,
            'retry_backoff': 2.0
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        type_defaults = {
            'azure_ad': {'verify_ssl': True, 'timeout': 30},
            'ldap': {'id_attribute': 'objectGUID', 'other_emails_attribute': 'otherMailbox',
                     'verify_ssl': True},
            'memory': {},
        }
        for target in self.config['targets']:
            for key, value in type_defaults[target['type']].items():
                target.setdefault(key, value)
            target.setdefault('error_handling', copy.deepcopy(error_config))


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


def get_target_config(config: Dict[str, Any], name: Optional[str] = None) -> Dict[str, Any]:
    """
    Pick one target's configuration.

    Args:
        config: Loaded configuration
        name: Target name; the first target when None

    Raises:
        ConfigurationError: If no target has that name
    """
    targets: List[Dict[str, Any]] = config.get('targets', [])
    if not targets:
        raise ConfigurationError("No targets configured")
    if name is None:
        return targets[0]
    for target in targets:
        if target.get('name') == name:
            return target
    raise ConfigurationError(f"No target named '{name}' (configured: {', '.join(t.get('name', '?') for t in targets)})")
