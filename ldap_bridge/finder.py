"""
Single-entry user lookups against a directory.
"""

import logging
from typing import Optional, Sequence

from ldap_bridge.interfaces import DirectoryConnection
from ldap_bridge.models import FindResult

logger = logging.getLogger(__name__)

# Attributes a login name is tried against, in order
LOGIN_ATTRIBUTES = ('uid', 'cn', 'samaccountname')


class DirectoryUserFinder:
    """
    Finds exactly one directory entry for a username.

    Zero matches and several matches are reported as distinct results; an
    ambiguous match is never narrowed down to one of the candidates.
    """

    def __init__(self, identification_attribute: Optional[str] = None,
                 login_attributes: Sequence[str] = LOGIN_ATTRIBUTES):
        """
        Args:
            identification_attribute: When set, used instead of the requested
                attribute for every lookup
            login_attributes: Priority order for find_by_login
        """
        self.identification_attribute = identification_attribute
        self.login_attributes = tuple(login_attributes)

    def find(self, connection: DirectoryConnection, value: str, attribute: str) -> FindResult:
        attribute = self.identification_attribute or attribute
        entries = connection.search(attribute, value)

        if not entries:
            logger.debug(f"Directory user {value} ({attribute}) not found")
            return FindResult.not_found(attribute, value)
        if len(entries) > 1:
            logger.error(f"{len(entries)} directory entries match {attribute}={value}")
            return FindResult.ambiguous(attribute, value, len(entries))

        entry = entries[0]
        entry.matched_by = attribute
        return FindResult.found(attribute, value, entry)

    def find_by_login(self, connection: DirectoryConnection, value: str) -> FindResult:
        """
        Try each login attribute in order and return the first match.

        An ambiguous result stops the search immediately.
        """
        result = None
        attributes = (self.identification_attribute,) if self.identification_attribute else self.login_attributes
        for attribute in attributes:
            result = self.find(connection, value, attribute)
            if not result.is_not_found:
                if result.is_found:
                    logger.debug(f"Found directory user {value} with attribute {attribute}")
                return result
        return result if result is not None else FindResult.not_found('', value)
