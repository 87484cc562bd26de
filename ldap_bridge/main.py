"""
Entry point of the LDAP identity bridge.

LdapBridge wires configuration, logging, directory connections and the
synchronization engine together and registers the engine on the hosting
application's event source.
"""

import sys
import logging
from datetime import datetime
from typing import Dict, Any, Optional

from ldap_bridge.config import ConfigLoader, ConfigurationError
from ldap_bridge.errors import DirectoryError
from ldap_bridge.events import EventSource
from ldap_bridge.interfaces import LocalUserStore, RoleAssigner, LoginSession
from ldap_bridge.logging_setup import setup_logging
from ldap_bridge.notifications import Notifier
from ldap_bridge.providers import DirectoryProviders
from ldap_bridge.sync import SyncEngine

logger = logging.getLogger(__name__)


class LdapBridge:
    """
    Public façade of the bridge.

    Configuration problems surface at construction as ConfigurationError;
    directories are only contacted on first use.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None, config_path: Optional[str] = None,
                 store: Optional[LocalUserStore] = None, roles: Optional[RoleAssigner] = None,
                 session: Optional[LoginSession] = None, event_source: Optional[EventSource] = None,
                 notifier: Optional[Notifier] = None, providers: Optional[DirectoryProviders] = None,
                 configure_logging: bool = True):
        """
        Args:
            config: Configuration dictionary; loaded from config_path when omitted
            config_path: Path to the YAML configuration file
            store: Local user store of the hosting application
            roles: Role store, required when default_roles is configured
            session: Login session of the hosting application
            event_source: When given, the engine registers its handlers on it
            notifier: Receives password reset notifications
            providers: Prebuilt directory connections
            configure_logging: Set up file and console logging from config
        """
        loader = ConfigLoader(config_path)
        self.config = loader.load_dict(config) if config is not None else loader.load()

        if configure_logging:
            setup_logging(self.config.get('logging', {}))

        self.providers = providers or DirectoryProviders.from_config(self.config)
        self.notifier = notifier or Notifier()
        self.engine = None
        if store is not None:
            self.engine = SyncEngine(self.config, self.providers, store, roles=roles,
                                     session=session, notifier=self.notifier)
            if event_source is not None:
                self.engine.register(event_source)
        elif event_source is not None:
            raise ConfigurationError("Registering on an event source requires a local user store")

        logger.info("LDAP identity bridge initialized")

    def _require_engine(self) -> SyncEngine:
        if self.engine is None:
            raise ConfigurationError("No local user store configured")
        return self.engine

    def authenticate(self, username: str, password: str) -> bool:
        return self._require_engine().authenticate(username, password)

    def is_directory_user(self, username: str) -> bool:
        return self._require_engine().is_directory_user(username)

    def update_directory_attribute(self, username: str, attribute: str, value: Any) -> bool:
        return self._require_engine().update_directory_attribute(username, attribute, value)

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the bridge.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {
                'configuration': {
                    'status': 'pass',
                    'message': 'Configuration loaded successfully'
                }
            }
        }

        directories = (
            ('ldap', self.providers.primary_config),
            ('second_ldap', self.providers.secondary_config),
        )
        for name, directory_config in directories:
            client = self.providers.client_factory(directory_config)
            try:
                client.connect()
                health_status['checks'][name] = {
                    'status': 'pass',
                    'message': f'Connection to {directory_config.server_url} successful'
                }
            except DirectoryError as e:
                health_status['checks'][name] = {
                    'status': 'fail',
                    'message': f'Connection failed: {e}'
                }
                health_status['status'] = 'unhealthy'
            finally:
                client.disconnect()

        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            required_fields = ['smtp_server', 'email_from', 'email_to']
            missing_fields = [f for f in required_fields if not notifications_config.get(f)]
            if missing_fields:
                health_status['checks']['notifications'] = {
                    'status': 'fail',
                    'message': f'Missing notification config: {missing_fields}'
                }
                health_status['status'] = 'unhealthy'
            else:
                health_status['checks']['notifications'] = {
                    'status': 'pass',
                    'message': 'Email notification configuration valid'
                }
        else:
            health_status['checks']['notifications'] = {
                'status': 'skip',
                'message': 'Email notifications disabled'
            }

        return health_status

    def close(self):
        """Close every directory connection."""
        self.providers.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def main():
    """Command line entry point: configuration and directory health check."""
    import argparse
    import json

    parser = argparse.ArgumentParser(description='LDAP Identity Bridge')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--health-check', action='store_true',
                        help='Check configuration and directory connectivity')

    args = parser.parse_args()

    try:
        bridge = LdapBridge(config_path=args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}")
        sys.exit(2)

    with bridge:
        if args.health_check:
            health_status = bridge.health_check()
            print(json.dumps(health_status, indent=2))
            sys.exit(0 if health_status['status'] == 'healthy' else 1)

        print("Configuration valid")
        sys.exit(0)


if __name__ == "__main__":
    main()
