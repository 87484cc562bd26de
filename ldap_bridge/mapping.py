"""
Mapping between local user fields and directory attributes.
"""

import logging
from types import MappingProxyType
from typing import Dict, Any, Mapping, Optional

from ldap3 import (
    HASHED_SHA,
    HASHED_SALTED_SHA,
    HASHED_SHA256,
    HASHED_SALTED_SHA256,
    HASHED_SHA512,
    HASHED_SALTED_SHA512,
)
from ldap3.utils.hashed import hashed

from ldap_bridge.config import ConfigurationError
from ldap_bridge.models import LocalUser

logger = logging.getLogger(__name__)

# directory attribute -> local field; several attributes may share a field
DEFAULT_ATTRIBUTE_MAP = MappingProxyType({
    'sn': 'username',
    'uid': 'username',
    'mail': 'email',
})

PASSWORD_ATTRIBUTE = 'userPassword'

HASH_ALGORITHMS = MappingProxyType({
    'sha': HASHED_SHA,
    'ssha': HASHED_SALTED_SHA,
    'sha256': HASHED_SHA256,
    'ssha256': HASHED_SALTED_SHA256,
    'sha512': HASHED_SHA512,
    'ssha512': HASHED_SALTED_SHA512,
})


def hash_password(password: str, scheme: str = 'sha') -> str:
    """
    Hash a plaintext password the way the directory stores userPassword.

    The default '{SHA}' scheme is unsalted SHA-1 kept for existing
    deployments; the salted and SHA-2 schemes can be selected through
    password_hash_scheme.

    Args:
        password: Plaintext password
        scheme: One of the HASH_ALGORITHMS keys

    Returns:
        '{TAG}' followed by the base64 encoded digest
    """
    try:
        algorithm = HASH_ALGORITHMS[scheme.lower()]
    except KeyError:
        raise ConfigurationError(f"Unknown password hash scheme: {scheme}")
    return hashed(algorithm, password)


class AttributeMapper:
    """Computes the directory attributes to write for a local user."""

    def __init__(self, attribute_map: Optional[Mapping[str, str]] = None, password_scheme: str = 'sha',
                 password_attribute: str = PASSWORD_ATTRIBUTE):
        self.attribute_map = MappingProxyType(dict(attribute_map if attribute_map is not None
                                                   else DEFAULT_ATTRIBUTE_MAP))
        self.password_scheme = password_scheme
        self.password_attribute = password_attribute
        # Fail at construction rather than on the first password write
        hash_password('', password_scheme)

    def attributes_to_write(self, user: LocalUser, changed_fields_only: bool = False) -> Dict[str, Any]:
        """
        Build the attribute values to send to the directory.

        Args:
            user: Local user
            changed_fields_only: Only include fields the user changed since load
                (a field cleared locally maps to an empty value)

        Returns:
            Mapping of directory attribute to value, with the hashed password
            added when a plaintext password is present
        """
        attributes = {}
        for ldap_attribute, user_field in self.attribute_map.items():
            if changed_fields_only and not user.is_changed(user_field):
                continue
            value = getattr(user, user_field, None)
            if value is None or value == '':
                if changed_fields_only:
                    # An empty replace removes the attribute
                    attributes[ldap_attribute] = []
                continue
            attributes[ldap_attribute] = value

        if user.password:
            attributes[self.password_attribute] = self.password_value(user.password)

        return attributes

    def password_value(self, password: str) -> str:
        return hash_password(password, self.password_scheme)
