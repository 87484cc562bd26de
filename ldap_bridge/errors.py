"""
Exception taxonomy for the LDAP identity bridge.

Directory problems derive from DirectoryError so event flows can catch them
in one place; role and local store failures stay outside that tree.
"""

from ldap_bridge.config import ConfigurationError


class DirectoryError(Exception):
    """Base exception for directory errors."""
    pass


class DirectoryUserNotFound(DirectoryError):
    """Raised when no directory entry matches a lookup."""
    pass


class AmbiguousUserError(DirectoryError):
    """Raised when more than one directory entry matches a unique lookup."""

    def __init__(self, attribute: str, value: str, count: int):
        self.attribute = attribute
        self.value = value
        self.count = count
        super().__init__(f"{count} directory entries match {attribute}={value}")


class DirectoryUnavailable(DirectoryError):
    """Raised when the directory cannot be reached or the service bind fails."""
    pass


class EntryAlreadyExists(DirectoryError):
    """Raised when creating an entry whose DN is already taken."""
    pass


class DirectoryWriteError(DirectoryError):
    """Raised when a create, save, rename or delete is rejected."""
    pass


class MissingAttributeError(DirectoryError, KeyError):
    """Raised when a required attribute is absent from a directory entry."""

    def __init__(self, dn: str, attribute: str):
        self.dn = dn
        self.attribute = attribute
        super().__init__(f"Entry {dn} has no attribute {attribute}")

    def __str__(self):
        return self.args[0]


class RoleNotFound(Exception):
    """Raised when a configured default role is unknown to the role store."""

    def __init__(self, role_name: str):
        self.role_name = role_name
        super().__init__(f"Role not found: {role_name}")


class LocalStoreError(Exception):
    """Raised when the local user store refuses a create or save."""
    pass


__all__ = [
    'ConfigurationError',
    'DirectoryError',
    'DirectoryUserNotFound',
    'AmbiguousUserError',
    'DirectoryUnavailable',
    'EntryAlreadyExists',
    'DirectoryWriteError',
    'MissingAttributeError',
    'RoleNotFound',
    'LocalStoreError',
]
