"""
LDAP client for authenticating against and writing to LDAP directories.

This module implements the DirectoryConnection interface on top of ldap3:
user searches, user binds and the create/save/rename/delete operations used
by the synchronization engine.
"""

import re
import ssl
import logging
import threading
from typing import Dict, List, Any, Optional

from ldap3 import Server, Connection, SUBTREE, ALL, ALL_ATTRIBUTES, MODIFY_REPLACE, Tls
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError, LDAPBindError
from ldap3.core.results import RESULT_SUCCESS, RESULT_NO_SUCH_OBJECT, RESULT_ENTRY_ALREADY_EXISTS
from ldap3.utils.conv import escape_filter_chars

from ldap_bridge.errors import DirectoryError, DirectoryUnavailable, DirectoryWriteError, EntryAlreadyExists
from ldap_bridge.interfaces import DirectoryConnection
from ldap_bridge.models import DirectoryConnectionConfig, DirectoryEntry
from ldap_bridge.logging_setup import audit_logger

logger = logging.getLogger(__name__)

_RDN_SEPARATOR = re.compile(r'(?<!\\),')


class LDAPClient(DirectoryConnection):
    """
    ldap3 connection to one directory endpoint.

    The service connection (bound with bind_dn) is opened lazily and used for
    searches and writes. User binds always run on a throw-away connection so
    a failed or successful user bind never changes the service identity.
    """

    def __init__(self, config: DirectoryConnectionConfig):
        """
        Initialize LDAP client with configuration.

        Args:
            config: Immutable directory connection configuration
        """
        self.config = config
        self.server = None
        self.connection = None
        self._connected = False
        # ldap3 sync connections are not safe to share between threads
        self._lock = threading.RLock()

    def __repr__(self):
        return f"LDAPClient({self.config.name!r}, {self.config.server_url!r})"

    def connect(self) -> bool:
        """
        Establish the service connection.

        Returns:
            True if connection successful

        Raises:
            DirectoryUnavailable: If the server cannot be reached or the service bind fails
        """
        with self._lock:
            self._ensure_server()
            try:
                connection = self._new_connection(self.config.bind_dn or None,
                                                  self.config.bind_password or None)
                if not connection.bind():
                    raise LDAPBindError(f"Bind failed: {connection.result}")
            except (LDAPSocketOpenError, LDAPBindError) as e:
                logger.error(f"Failed to connect to {self.config.server_url}: {e}")
                raise DirectoryUnavailable(f"Failed to connect to {self.config.server_url}: {e}")
            except LDAPException as e:
                logger.error(f"LDAP error while connecting to {self.config.server_url}: {e}")
                raise DirectoryUnavailable(f"Failed to connect to {self.config.server_url}: {e}")

            self.connection = connection
            self._connected = True
            logger.info(f"Connected and bound to LDAP server {self.config.server_url} ({self.config.name})")
            return True

    def _ensure_server(self):
        if self.server is not None:
            return
        try:
            self.server = Server(
                self.config.server_url,
                use_ssl=self.config.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.config.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.config.server_url} "
                         f"(SSL: {self.config.use_ssl}, StartTLS: {self.config.start_tls})")
        except LDAPException as e:
            raise DirectoryUnavailable(f"Failed to create LDAP server: {e}")

    def _new_connection(self, user: Optional[str], password: Optional[str]) -> Connection:
        """Open a connection (not yet bound) honouring the StartTLS setting."""
        connection = Connection(
            self.server,
            user=user,
            password=password,
            auto_bind=False,
            receive_timeout=self.config.receive_timeout
        )
        connection.open()
        if self.config.start_tls and not self.config.use_ssl:
            if not connection.start_tls():
                raise LDAPException(f"Failed to start TLS: {connection.result}")
            logger.debug("StartTLS negotiation successful")
        return connection

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.config.use_ssl or self.config.start_tls):
            return None

        tls_config = {}

        if not self.config.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning(f"SSL certificate verification disabled for {self.config.server_url}")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.config.ca_cert_file:
            tls_config['ca_certs_file'] = self.config.ca_cert_file

        # Client certificate for mutual TLS
        if self.config.cert_file and self.config.key_file:
            tls_config['local_certificate_file'] = self.config.cert_file
            tls_config['local_private_key_file'] = self.config.key_file

        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise DirectoryUnavailable(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close LDAP connection."""
        with self._lock:
            if self.connection and self._connected:
                try:
                    self.connection.unbind()
                    logger.debug(f"LDAP connection to {self.config.server_url} closed")
                except LDAPException as e:
                    logger.warning(f"Error closing LDAP connection: {e}")
                finally:
                    self._connected = False
                    self.connection = None

    def _service_connection(self) -> Connection:
        if not self._connected:
            self.connect()
        return self.connection

    def _drop_connection(self):
        """Forget a service connection that failed so the next request reconnects."""
        logger.warning(f"Dropping LDAP connection to {self.config.server_url} after a failed request")
        self.disconnect()

    def search(self, attribute: str, value: str) -> List[DirectoryEntry]:
        """
        Search user entries where `attribute` equals `value`.

        Args:
            attribute: Attribute name to match
            value: Value to match (escaped before use)

        Returns:
            List of matching entries, empty when nothing matched

        Raises:
            DirectoryUnavailable: If the directory cannot be queried
        """
        search_filter = f"(&{self.config.user_filter}({attribute}={escape_filter_chars(value)}))"
        logger.debug(f"Searching {self.config.base_dn or '<root>'} with filter {search_filter}")

        with self._lock:
            connection = self._service_connection()
            try:
                connection.search(
                    search_base=self.config.base_dn,
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    attributes=[ALL_ATTRIBUTES]
                )
            except LDAPException as e:
                self._drop_connection()
                raise DirectoryUnavailable(f"LDAP search failed: {e}")

            code = connection.result.get('result', RESULT_SUCCESS) if connection.result else RESULT_SUCCESS
            if code not in (RESULT_SUCCESS, RESULT_NO_SUCH_OBJECT):
                raise DirectoryError(f"LDAP search failed: {connection.result}")

            return [
                DirectoryEntry(str(entry.entry_dn), entry.entry_attributes_as_dict, matched_by=attribute)
                for entry in connection.entries
            ]

    def bind(self, login: str, password: str) -> bool:
        """
        Try to authenticate a user.

        The bind name is account_prefix + login + account_suffix.

        Returns:
            True if the directory accepted the credentials

        Raises:
            DirectoryUnavailable: If the server cannot be reached
        """
        if not login or not password:
            # An empty password would be an unauthenticated bind
            return False

        user = f"{self.config.account_prefix}{login}{self.config.account_suffix}"
        self._ensure_server()
        connection = None
        try:
            connection = self._new_connection(user, password)
            success = bool(connection.bind())
        except LDAPBindError:
            success = False
        except LDAPException as e:
            raise DirectoryUnavailable(f"Bind attempt against {self.config.server_url} failed: {e}")
        finally:
            if connection is not None:
                try:
                    connection.unbind()
                except LDAPException:
                    logger.debug("Ignoring error while closing user bind connection")

        logger.debug(f"Bind as {user}: {'accepted' if success else 'rejected'}")
        return success

    def create_entry(self, dn: str, attributes: Dict[str, Any]) -> DirectoryEntry:
        """
        Add a user entry.

        Raises:
            EntryAlreadyExists: If the DN is already taken
            DirectoryWriteError: If the directory rejects the entry
        """
        object_classes = list(self.config.user_object_classes)
        with self._lock:
            connection = self._service_connection()
            try:
                success = connection.add(dn, object_classes, attributes)
            except LDAPException as e:
                self._drop_connection()
                raise DirectoryUnavailable(f"Failed to create {dn}: {e}")

            if not success:
                audit_logger.log_directory_operation('create', dn, False)
                if connection.result.get('result') == RESULT_ENTRY_ALREADY_EXISTS:
                    raise EntryAlreadyExists(f"Entry already exists: {dn}")
                raise DirectoryWriteError(f"Impossible to create {dn}: {connection.result.get('description')}")

        audit_logger.log_directory_operation('create', dn, True)
        entry = DirectoryEntry(dn, attributes)
        entry.attributes['objectClass'] = object_classes
        return entry

    def save_entry(self, entry: DirectoryEntry) -> bool:
        """
        Write the attributes changed on an entry.

        Entries without pending changes are not sent to the directory.

        Raises:
            DirectoryWriteError: If the directory rejects the modification
        """
        if not entry.is_dirty:
            logger.debug(f"No changes to save for {entry.dn}")
            return True

        changes = {name: [(MODIFY_REPLACE, values)] for name, values in entry.changes.items()}
        with self._lock:
            connection = self._service_connection()
            try:
                success = connection.modify(entry.dn, changes)
            except LDAPException as e:
                self._drop_connection()
                raise DirectoryUnavailable(f"Failed to modify {entry.dn}: {e}")

            if not success:
                audit_logger.log_directory_operation('modify', entry.dn, False)
                raise DirectoryWriteError(f"Impossible to modify {entry.dn}: {connection.result.get('description')}")

        audit_logger.log_directory_operation('modify', entry.dn, True)
        entry.mark_saved()
        return True

    def rename_entry(self, entry: DirectoryEntry, new_rdn: str) -> bool:
        """
        Change the RDN of an entry, keeping it under the same parent.

        Raises:
            DirectoryWriteError: If the directory rejects the rename
        """
        old_dn = entry.dn
        with self._lock:
            connection = self._service_connection()
            try:
                success = connection.modify_dn(old_dn, new_rdn)
            except LDAPException as e:
                self._drop_connection()
                raise DirectoryUnavailable(f"Failed to rename {old_dn}: {e}")

            if not success:
                audit_logger.log_directory_operation('rename', old_dn, False)
                raise DirectoryWriteError(f"Impossible to rename {old_dn}: {connection.result.get('description')}")

        parts = _RDN_SEPARATOR.split(old_dn, maxsplit=1)
        entry.dn = f"{new_rdn},{parts[1]}" if len(parts) > 1 else new_rdn
        rdn_attribute, _, rdn_value = new_rdn.partition('=')
        entry.attributes[rdn_attribute] = [rdn_value]
        audit_logger.log_directory_operation('rename', f"{old_dn} -> {entry.dn}", True)
        return True

    def delete_entry(self, entry: DirectoryEntry) -> bool:
        """
        Remove an entry.

        Raises:
            DirectoryWriteError: If the directory rejects the deletion
        """
        with self._lock:
            connection = self._service_connection()
            try:
                success = connection.delete(entry.dn)
            except LDAPException as e:
                self._drop_connection()
                raise DirectoryUnavailable(f"Failed to delete {entry.dn}: {e}")

            if not success:
                audit_logger.log_directory_operation('delete', entry.dn, False)
                raise DirectoryWriteError(f"Impossible to delete {entry.dn}: {connection.result.get('description')}")

        audit_logger.log_directory_operation('delete', entry.dn, True)
        return True

    def clone(self, **overrides) -> 'LDAPClient':
        """Return a new, unconnected client over this configuration with overrides applied."""
        return LDAPClient(self.config.with_overrides(**overrides))

    def get_connection_stats(self) -> Dict[str, Any]:
        """
        Get connection statistics and status.

        Returns:
            Dictionary with connection information
        """
        stats = {
            'name': self.config.name,
            'connected': self._connected,
            'server_url': self.config.server_url,
            'use_ssl': self.config.use_ssl,
            'start_tls': self.config.start_tls,
            'verify_ssl': self.config.verify_ssl,
            'bind_dn': self.config.bind_dn,
            'base_dn': self.config.base_dn,
            'account_suffix': self.config.account_suffix,
            'schema': self.config.schema,
        }

        if self.connection:
            stats.update({
                'server_host': getattr(self.connection.server, 'host', None),
                'server_port': getattr(self.connection.server, 'port', None),
                'bound': getattr(self.connection, 'bound', False),
                'tls_started': getattr(self.connection, 'tls_started', False)
            })

        return stats

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
