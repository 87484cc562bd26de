"""
Configuration loading and management for the LDAP identity bridge.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import copy
import yaml
import logging
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)

SCHEMA_GENERIC = 'generic'
SCHEMA_OPENLDAP = 'openldap'

SCHEMA_ALIASES = {
    'generic': SCHEMA_GENERIC,
    'activedirectory': SCHEMA_GENERIC,
    'active_directory': SCHEMA_GENERIC,
    'openldap': SCHEMA_OPENLDAP,
}

DEFAULT_USER_OBJECT_CLASSES = ('top', 'person', 'organizationalPerson', 'inetOrgPerson')

PASSWORD_HASH_SCHEMES = ('sha', 'ssha', 'sha256', 'ssha256', 'sha512', 'ssha512')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


def normalize_schema(schema: Optional[str]) -> Optional[str]:
    """Map a configured schema name to SCHEMA_GENERIC or SCHEMA_OPENLDAP."""
    if schema is None:
        return None
    return SCHEMA_ALIASES.get(str(schema).strip().lower())


class ConfigLoader:
    """Handles loading and validation of bridge configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'second_ldap.bind_password': 'SECOND_LDAP_BIND_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

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
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        config = self.load_dict(self.config)
        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return config

    def load_dict(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate an already parsed configuration and apply defaults.

        Args:
            config: Configuration dictionary (not modified)

        Returns:
            Validated configuration dictionary with defaults applied
        """
        if not isinstance(config, dict):
            raise ConfigurationError("Configuration must be a mapping")

        self.config = copy.deepcopy(config)
        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if not env_value:
                continue
            section = config_key.split('.')[0]
            # second_ldap is optional; only override it when it is configured
            if section == 'second_ldap' and not self.config.get('second_ldap'):
                continue
            self._set_nested_value(self.config, config_key, env_value)
            logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if key not in current or current[key] is None:
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        ldap_config = self.config.get('ldap')
        if not isinstance(ldap_config, dict):
            errors.append("ldap configuration must be specified")
        else:
            errors.extend(self._validate_directory('ldap', ldap_config))

        second_config = self.config.get('second_ldap')
        if second_config is not None:
            if not isinstance(second_config, dict):
                errors.append("second_ldap must be a mapping")
            else:
                errors.extend(self._validate_directory('second_ldap', second_config))

        default_roles = self.config.get('default_roles', False)
        if default_roles not in (False, None):
            if not isinstance(default_roles, list):
                errors.append("default_roles must be a list of role names")
            else:
                for role in default_roles:
                    if not isinstance(role, str):
                        errors.append(f"Role name must be a string: {role!r}")

        units = self.config.get('other_organizational_units', [])
        if units not in (False, None):
            if not isinstance(units, list) or not all(isinstance(u, str) and u for u in units):
                errors.append("other_organizational_units must be a list of OU names")

        if self.config.get('allow_password_recovery', True) is False and \
                not self.config.get('password_recovery_redirect'):
            errors.append("password_recovery_redirect must be specified if allow_password_recovery is false")

        scheme = str(self.config.get('password_hash_scheme', 'sha')).lower()
        if scheme not in PASSWORD_HASH_SCHEMES:
            errors.append(f"Unknown password_hash_scheme: {scheme}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _validate_directory(self, section: str, directory: Dict[str, Any]) -> List[str]:
        """Validate one directory section (ldap or second_ldap)."""
        errors = []
        if not directory.get('server_url'):
            errors.append(f"Missing required field {section}.server_url")

        schema = directory.get('schema')
        if not schema:
            errors.append(f"{section}.schema must be specified")
        elif normalize_schema(schema) is None:
            errors.append(f"Unknown {section}.schema: {schema}")
        elif normalize_schema(schema) == SCHEMA_OPENLDAP and not directory.get('account_suffix'):
            errors.append(f"{section}: the openldap schema requires an account_suffix")
        return errors

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        ldap_defaults = {
            'bind_dn': '',
            'bind_password': '',
            'base_dn': '',
            'account_prefix': '',
            'account_suffix': '',
            'user_filter': '(objectClass=person)',
            'user_object_classes': list(DEFAULT_USER_OBJECT_CLASSES),
        }
        ldap_config = self.config['ldap']
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        # The second directory defaults to the first one
        if not self.config.get('second_ldap'):
            self.config['second_ldap'] = copy.deepcopy(ldap_config)
        else:
            for key, value in ldap_defaults.items():
                self.config['second_ldap'].setdefault(key, value)

        bridge_defaults = {
            'create_local_users': True,
            'default_roles': False,
            'sync_users_to_ldap': False,
            'default_user_id': -1,
            'session_key_for_username': 'ldap_username',
            'user_identification_attribute': None,
            'other_organizational_units': [],
            'allow_password_recovery': True,
            'password_recovery_redirect': None,
            'password_hash_scheme': 'sha',
            'remember_login_lifespan': 1209600,
        }
        for key, value in bridge_defaults.items():
            self.config.setdefault(key, value)
        if self.config['other_organizational_units'] in (False, None):
            self.config['other_organizational_units'] = []
        if self.config['default_roles'] is None:
            self.config['default_roles'] = False
        self.config['password_hash_scheme'] = str(self.config['password_hash_scheme']).lower()

        # Logging defaults
        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'WARNING',
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        # Notification defaults
        notification_defaults = {
            'enable_email': False,
            'email_on_failure': True,
            'smtp_port': 587,
            'smtp_tls': True
        }
        notification_config = self.config.setdefault('notifications', {})
        for key, value in notification_defaults.items():
            notification_config.setdefault(key, value)


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
