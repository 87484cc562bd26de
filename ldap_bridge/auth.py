"""
Directory authentication with alternate-attribute and organizational unit fallbacks.

A login is first bound as given. When that fails and the directory has an
account suffix, the user is looked up under uid, cn and sAMAccountName and
bound again with the attribute that names the entry in its DN. When the
primary tree rejects the user, each configured organizational unit gets the
same treatment in order.
"""

import re
import logging
from typing import Optional, Sequence, List

from ldap_bridge.errors import DirectoryError
from ldap_bridge.finder import DirectoryUserFinder
from ldap_bridge.interfaces import DirectoryConnection
from ldap_bridge.logging_setup import audit_logger

logger = logging.getLogger(__name__)


def extract_account_prefix(dn: str, account_suffix: str) -> Optional[str]:
    """
    Return the attribute naming `dn` right before `account_suffix`.

    extract_account_prefix('uid=jdoe,ou=people,dc=example,dc=com', ',ou=people,dc=example,dc=com')
    returns 'uid'. None when the DN does not end with the suffix.
    """
    if not dn or not account_suffix:
        return None
    pattern = re.compile(
        r'(?:^|,)\s*(?P<prefix>[^=,+\s]+)\s*=(?:[^,\\]|\\.)*' + re.escape(account_suffix) + r'$',
        re.IGNORECASE
    )
    match = pattern.search(dn)
    return match.group('prefix') if match else None


class AuthenticationResolver:
    """Decides whether a username/password pair authenticates on one directory."""

    def __init__(self, finder: Optional[DirectoryUserFinder] = None):
        self.finder = finder or DirectoryUserFinder()

    def authenticate(self, connection: DirectoryConnection, username: str, password: str) -> bool:
        """
        Authenticate against one directory connection.

        Never raises: every directory problem resolves to False.
        """
        directory = connection.config.name
        logger.info(f"Trying authentication for {username} on {directory}")

        try:
            if connection.bind(username, password):
                logger.info(f"User {username} authenticated on {directory}")
                audit_logger.log_authentication_attempt(directory, username, True)
                return True
        except DirectoryError as e:
            logger.error(f"Directory {directory} unavailable during authentication: {e}")
            audit_logger.log_authentication_attempt(directory, username, False)
            return False

        success = self._authenticate_with_alternate_attribute(connection, username, password)
        audit_logger.log_authentication_attempt(directory, username, success)
        return success

    def _authenticate_with_alternate_attribute(self, connection: DirectoryConnection,
                                               username: str, password: str) -> bool:
        account_suffix = connection.config.account_suffix
        if not account_suffix:
            return False

        logger.info("Default authentication didn't work, it will be tried again with another attribute")

        try:
            result = self.finder.find_by_login(connection, username)
        except DirectoryError as e:
            logger.error(f"Lookup of {username} failed: {e}")
            return False

        if result.is_ambiguous:
            logger.error(f"Several directory entries match {username} ({result.attribute}), refusing to authenticate")
            return False
        if not result.is_found:
            logger.warning(f"Couldn't find the user {username} using another attribute")
            return False

        entry = result.entry
        prefix = extract_account_prefix(entry.dn, account_suffix)
        if not prefix:
            logger.warning(f"Cannot extract the account prefix from {entry.dn}")
            return False

        alternate_login = entry.first(prefix)
        if not alternate_login:
            logger.warning(f"Entry {entry.dn} has no value for {prefix}")
            return False

        logger.info(f"Found user with attribute {result.attribute}, binding with {prefix}")
        return self._bind_with_prefix(connection, f"{prefix}=", alternate_login, password)

    def _bind_with_prefix(self, connection: DirectoryConnection, account_prefix: str,
                          login: str, password: str) -> bool:
        # The caller's connection keeps its configuration; the retry binds on a clone
        alternate = None
        try:
            alternate = connection.clone(account_prefix=account_prefix)
            return bool(alternate.bind(login, password))
        except Exception as e:
            logger.error(f"Alternate attribute bind failed: {e}")
            return False
        finally:
            if alternate is not None:
                try:
                    alternate.disconnect()
                except Exception as e:
                    logger.debug(f"Error closing alternate connection: {e}")


class OrganizationalUnitFallback:
    """Retries authentication on alternate organizational unit connections."""

    def __init__(self, resolver: Optional[AuthenticationResolver] = None):
        self.resolver = resolver or AuthenticationResolver()

    def authenticate_with_fallback(self, primary: DirectoryConnection,
                                   alternate_units: Sequence[DirectoryConnection],
                                   username: str, password: str) -> bool:
        if self.resolver.authenticate(primary, username, password):
            return True

        for unit in alternate_units or ():
            if self.resolver.authenticate(unit, username, password):
                logger.info(f"User {username} authenticated in organizational unit {unit.config.name}")
                return True

        logger.warning(f"Authentication failed for {username}")
        return False


def derive_unit_connections(primary: DirectoryConnection, units: Sequence[str],
                            connect: bool = True) -> List[DirectoryConnection]:
    """
    Build one connection per alternate organizational unit.

    Called once when the directories are initialized, not per login.
    """
    connections = []
    for unit in units or ():
        derived = primary.config.for_organizational_unit(unit)
        connection = primary.clone(
            account_suffix=derived.account_suffix,
            base_dn=derived.base_dn,
            name=derived.name
        )
        if connect:
            try:
                connection.connect()
            except DirectoryError:
                for opened in connections:
                    opened.disconnect()
                raise
        logger.debug(f"Prepared connection for organizational unit {unit}")
        connections.append(connection)
    return connections
