"""
LDAP Identity Bridge - Authenticate local users against LDAP directories and
keep a secondary directory in sync with the local user store.

This package provides directory authentication with organizational unit and
alternate attribute fallbacks, provisioning of local users on first login,
and an event-driven engine that writes local user changes to a directory.
"""

__version__ = "1.0.0"
__author__ = "LDAP Identity Bridge Team"
