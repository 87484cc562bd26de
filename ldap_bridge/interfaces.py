"""
Interfaces of the collaborators the bridge is wired to.

The hosting application provides the local user store, the role store and
the login session; LDAPClient in ldap_bridge.ldap_client implements
DirectoryConnection.
"""

from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional

from ldap_bridge.models import DirectoryConnectionConfig, DirectoryEntry, LocalUser


class DirectoryConnection(ABC):
    """
    One connection to a directory endpoint.

    Write methods raise DirectoryWriteError when the directory rejects the
    operation; create_entry raises EntryAlreadyExists when the DN is taken.
    """

    config: DirectoryConnectionConfig

    @abstractmethod
    def connect(self) -> bool:
        """Open the service connection."""
        pass

    @abstractmethod
    def disconnect(self):
        pass

    @abstractmethod
    def search(self, attribute: str, value: str) -> List[DirectoryEntry]:
        """Return every user entry whose `attribute` equals `value`."""
        pass

    @abstractmethod
    def bind(self, login: str, password: str) -> bool:
        """Try to authenticate `login` with `password`."""
        pass

    @abstractmethod
    def create_entry(self, dn: str, attributes: Dict[str, Any]) -> DirectoryEntry:
        pass

    @abstractmethod
    def save_entry(self, entry: DirectoryEntry) -> bool:
        pass

    @abstractmethod
    def rename_entry(self, entry: DirectoryEntry, new_rdn: str) -> bool:
        pass

    @abstractmethod
    def delete_entry(self, entry: DirectoryEntry) -> bool:
        pass

    @abstractmethod
    def clone(self, **overrides) -> 'DirectoryConnection':
        """Return a new, unconnected connection over a derived configuration."""
        pass


class LocalUserStore(ABC):
    """Persistence of local users, owned by the hosting application."""

    @abstractmethod
    def find_user_by_username(self, username: str) -> Optional[LocalUser]:
        pass

    @abstractmethod
    def find_user_by_id(self, user_id: int) -> Optional[LocalUser]:
        pass

    @abstractmethod
    def create_user(self, fields: Dict[str, Any]) -> Optional[LocalUser]:
        """Create and persist a user; None when the store refuses it."""
        pass

    @abstractmethod
    def save_user(self, user: LocalUser) -> bool:
        pass


class RoleAssigner(ABC):

    @abstractmethod
    def assign_role(self, role_name: str, user_id: int) -> bool:
        """
        Assign a role to a user.

        Raises:
            RoleNotFound: If the role does not exist
        """
        pass


class LoginSession(ABC):
    """Login state of the current request."""

    @abstractmethod
    def login(self, user: LocalUser, duration: int) -> bool:
        pass

    @abstractmethod
    def set(self, key: str, value: Any):
        pass
