"""
Directory connections used by the bridge.

The primary directory authenticates logins (with one extra connection per
alternate organizational unit); the secondary directory receives the
synchronized local users. Connections are opened on first use.
"""

import logging
import threading
from typing import Dict, Any, Callable, List, Optional, Sequence

from ldap_bridge.auth import derive_unit_connections
from ldap_bridge.errors import DirectoryError
from ldap_bridge.interfaces import DirectoryConnection
from ldap_bridge.ldap_client import LDAPClient
from ldap_bridge.models import DirectoryConnectionConfig

logger = logging.getLogger(__name__)


class DirectoryProviders:
    """Lazily connected primary, alternate OU and secondary directory connections."""

    def __init__(self, primary_config: DirectoryConnectionConfig,
                 secondary_config: Optional[DirectoryConnectionConfig] = None,
                 organizational_units: Sequence[str] = (),
                 client_factory: Callable[[DirectoryConnectionConfig], DirectoryConnection] = LDAPClient):
        self.primary_config = primary_config
        self.secondary_config = secondary_config or primary_config
        self.organizational_units = list(organizational_units or [])
        self.client_factory = client_factory
        self._primary = None
        self._alternates = None
        self._secondary = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Dict[str, Any], **kwargs) -> 'DirectoryProviders':
        """Build providers from a validated configuration dictionary."""
        return cls(
            DirectoryConnectionConfig.from_dict(config['ldap'], name='primary'),
            DirectoryConnectionConfig.from_dict(config['second_ldap'], name='secondary'),
            config.get('other_organizational_units') or [],
            **kwargs
        )

    @classmethod
    def from_connections(cls, primary: DirectoryConnection, secondary: Optional[DirectoryConnection] = None,
                         alternates: Sequence[DirectoryConnection] = ()) -> 'DirectoryProviders':
        """Wrap connections that are already built (and connected)."""
        providers = cls(primary.config, secondary.config if secondary else None)
        providers._primary = primary
        providers._alternates = list(alternates)
        providers._secondary = secondary or primary
        return providers

    @property
    def primary(self) -> DirectoryConnection:
        if self._primary is None:
            self._init_primary()
        return self._primary

    @property
    def alternates(self) -> List[DirectoryConnection]:
        if self._alternates is None:
            self._init_primary()
        return self._alternates

    @property
    def secondary(self) -> DirectoryConnection:
        if self._secondary is None:
            with self._lock:
                if self._secondary is None:
                    secondary = self.client_factory(self.secondary_config)
                    try:
                        secondary.connect()
                    except DirectoryError as e:
                        logger.error(f"Error connecting to the second LDAP server: {e}")
                        raise
                    self._secondary = secondary
        return self._secondary

    def _init_primary(self):
        with self._lock:
            if self._primary is not None and self._alternates is not None:
                return
            primary = self._primary or self.client_factory(self.primary_config)
            try:
                primary.connect()
                alternates = derive_unit_connections(primary, self.organizational_units)
            except DirectoryError as e:
                logger.error(f"Error connecting to LDAP server: {e}")
                primary.disconnect()
                raise
            self._primary = primary
            self._alternates = alternates

    def all_connections(self) -> List[DirectoryConnection]:
        connections = [c for c in [self._primary] + list(self._alternates or []) if c is not None]
        if self._secondary is not None and self._secondary is not self._primary:
            connections.append(self._secondary)
        return connections

    def close(self):
        for connection in self.all_connections():
            connection.disconnect()
        self._primary = None
        self._alternates = None
        self._secondary = None
