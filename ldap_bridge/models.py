"""
Records shared by the authentication and synchronization code.

DirectoryConnectionConfig describes one directory endpoint, DirectoryEntry is
the typed view of a search result, LocalUser is the local account as seen by
the bridge, and FindResult/SyncOutcome are the tagged results handed back to
callers.
"""

import re
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Any, List, Optional, Iterable, Union

from ldap3.utils.ciDict import CaseInsensitiveDict

from ldap_bridge.config import (
    SCHEMA_GENERIC,
    SCHEMA_OPENLDAP,
    DEFAULT_USER_OBJECT_CLASSES,
    normalize_schema,
)
from ldap_bridge.errors import DirectoryUserNotFound, AmbiguousUserError, MissingAttributeError

# Leading ",ou=..." segments of an account suffix; the remainder is kept.
_SUFFIX_OU_PATTERN = re.compile(r'(?:,ou=[\w-]+)*(?P<rest>,.*)?', re.IGNORECASE)


@dataclass(frozen=True)
class DirectoryConnectionConfig:
    """Connection parameters for one directory endpoint."""

    server_url: str
    bind_dn: str = ''
    bind_password: str = ''
    base_dn: str = ''
    account_prefix: str = ''
    account_suffix: str = ''
    schema: str = SCHEMA_GENERIC
    use_ssl: bool = False
    start_tls: bool = False
    verify_ssl: bool = True
    ca_cert_file: Optional[str] = None
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    connection_timeout: int = 10
    receive_timeout: int = 10
    user_filter: str = '(objectClass=person)'
    user_object_classes: tuple = DEFAULT_USER_OBJECT_CLASSES
    name: str = 'default'

    @classmethod
    def from_dict(cls, config: Dict[str, Any], name: str = 'default') -> 'DirectoryConnectionConfig':
        """
        Build a connection config from a directory section of the YAML config.

        Args:
            config: Directory configuration dictionary
            name: Label used in logs and health reports

        Returns:
            Immutable connection configuration
        """
        server_url = config['server_url']
        return cls(
            server_url=server_url,
            bind_dn=config.get('bind_dn') or '',
            bind_password=config.get('bind_password') or '',
            base_dn=config.get('base_dn') or '',
            account_prefix=config.get('account_prefix') or '',
            account_suffix=config.get('account_suffix') or '',
            schema=normalize_schema(config.get('schema')) or SCHEMA_GENERIC,
            use_ssl=config.get('use_ssl', server_url.lower().startswith('ldaps://')),
            start_tls=config.get('start_tls', False),
            verify_ssl=config.get('verify_ssl', True),
            ca_cert_file=config.get('ca_cert_file'),
            cert_file=config.get('cert_file'),
            key_file=config.get('key_file'),
            connection_timeout=config.get('connection_timeout', 10),
            receive_timeout=config.get('receive_timeout', 10),
            user_filter=config.get('user_filter', '(objectClass=person)'),
            user_object_classes=tuple(config.get('user_object_classes', DEFAULT_USER_OBJECT_CLASSES)),
            name=name,
        )

    @property
    def is_openldap(self) -> bool:
        return self.schema == SCHEMA_OPENLDAP

    def with_overrides(self, **overrides) -> 'DirectoryConnectionConfig':
        return replace(self, **overrides)

    def for_organizational_unit(self, unit: str) -> 'DirectoryConnectionConfig':
        """
        Derive the configuration used to authenticate inside another OU.

        OpenLDAP binds are addressed through the account suffix, so the OU is
        spliced into the suffix ahead of its non-OU remainder. Other schemas
        search below the base DN, so the OU is prepended there.
        """
        if self.is_openldap:
            match = _SUFFIX_OU_PATTERN.match(self.account_suffix)
            rest = match.group('rest') or ''
            return replace(self, account_suffix=f",ou={unit}{rest}", name=unit)

        base_dn = f"ou={unit},{self.base_dn}" if self.base_dn else f"ou={unit}"
        return replace(self, base_dn=base_dn, name=unit)


class DirectoryEntry:
    """
    A directory entry: distinguished name plus attribute values.

    Attribute names are case-insensitive, every value is a list of strings.
    Attributes written through set_attribute are tracked until mark_saved so
    a save only sends what changed.
    """

    def __init__(self, dn: str, attributes: Optional[Dict[str, Iterable[Any]]] = None,
                 matched_by: Optional[str] = None):
        self.dn = dn
        self.matched_by = matched_by
        self.attributes = CaseInsensitiveDict()
        self._changes = CaseInsensitiveDict()
        for name, values in (attributes or {}).items():
            self.attributes[name] = _as_values(values)

    def __repr__(self):
        return f"DirectoryEntry(dn={self.dn!r})"

    def has(self, attribute: str) -> bool:
        return attribute in self.attributes and bool(self.attributes[attribute])

    def get(self, attribute: str) -> List[str]:
        """Return all values of an attribute, empty when absent."""
        if attribute in self.attributes:
            return list(self.attributes[attribute])
        return []

    def first(self, attribute: str, default: Optional[str] = None) -> Optional[str]:
        values = self.get(attribute)
        return values[0] if values else default

    def require(self, attribute: str) -> str:
        """
        Return the first value of an attribute that must be present.

        Raises:
            MissingAttributeError: If the attribute is absent or empty
        """
        values = self.get(attribute)
        if not values:
            raise MissingAttributeError(self.dn, attribute)
        return values[0]

    def set_attribute(self, attribute: str, value: Union[str, Iterable[str]]):
        values = _as_values(value)
        self.attributes[attribute] = values
        self._changes[attribute] = values

    @property
    def changes(self) -> Dict[str, List[str]]:
        return {name: list(values) for name, values in self._changes.items()}

    @property
    def is_dirty(self) -> bool:
        return bool(self._changes)

    def mark_saved(self):
        self._changes = CaseInsensitiveDict()


def _as_values(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (str, bytes)):
        value = [value]
    return [v.decode('utf-8', errors='replace') if isinstance(v, bytes) else str(v) for v in value]


@dataclass
class LocalUser:
    """
    Local account as seen by the bridge.

    The local store owns the record; the bridge only reads fields, writes a
    few of them and asks the store to persist. `password` holds the plaintext
    only during creation and reset flows. Changes are measured against the
    snapshot taken at load time (or the last mark_clean).
    """

    TRACKED_FIELDS = ('username', 'email', 'name', 'password_hash', 'confirmed_at')

    id: Optional[int] = None
    username: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    password_hash: Optional[str] = None
    confirmed_at: Optional[float] = None
    name: Optional[str] = None
    _snapshot: Dict[str, Any] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self):
        self.mark_clean()

    def is_changed(self, field_name: str) -> bool:
        return getattr(self, field_name, None) != self._snapshot.get(field_name)

    def old_value(self, field_name: str) -> Any:
        return self._snapshot.get(field_name)

    def changed_fields(self) -> List[str]:
        return [name for name in self.TRACKED_FIELDS if self.is_changed(name)]

    def mark_clean(self):
        self._snapshot = {name: getattr(self, name) for name in self.TRACKED_FIELDS}

    def confirm(self):
        self.confirmed_at = time.time()


class FindStatus(Enum):
    FOUND = 'found'
    NOT_FOUND = 'not_found'
    AMBIGUOUS = 'ambiguous'


@dataclass(frozen=True)
class FindResult:
    """Outcome of a single-entry directory lookup."""

    status: FindStatus
    attribute: str
    value: str
    entry: Optional[DirectoryEntry] = None
    count: int = 0

    @classmethod
    def found(cls, attribute: str, value: str, entry: DirectoryEntry) -> 'FindResult':
        return cls(FindStatus.FOUND, attribute, value, entry, 1)

    @classmethod
    def not_found(cls, attribute: str, value: str) -> 'FindResult':
        return cls(FindStatus.NOT_FOUND, attribute, value)

    @classmethod
    def ambiguous(cls, attribute: str, value: str, count: int) -> 'FindResult':
        return cls(FindStatus.AMBIGUOUS, attribute, value, None, count)

    @property
    def is_found(self) -> bool:
        return self.status is FindStatus.FOUND

    @property
    def is_not_found(self) -> bool:
        return self.status is FindStatus.NOT_FOUND

    @property
    def is_ambiguous(self) -> bool:
        return self.status is FindStatus.AMBIGUOUS

    def unwrap(self) -> DirectoryEntry:
        """
        Return the entry or raise the matching error.

        Raises:
            DirectoryUserNotFound: If nothing matched
            AmbiguousUserError: If several entries matched
        """
        if self.is_ambiguous:
            raise AmbiguousUserError(self.attribute, self.value, self.count)
        if self.is_not_found:
            raise DirectoryUserNotFound(f"Directory user {self.value} ({self.attribute}) not found")
        return self.entry


class SyncOutcomeKind(Enum):
    CREATED = 'created'
    UPDATED = 'updated'
    RENAMED = 'renamed'
    DELETED = 'deleted'
    SKIPPED = 'skipped'
    FAILED = 'failed'


@dataclass(frozen=True)
class SyncOutcome:
    """Tagged result of one synchronization attempt."""

    kind: SyncOutcomeKind
    dn: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[BaseException] = None

    @classmethod
    def created(cls, dn: str) -> 'SyncOutcome':
        return cls(SyncOutcomeKind.CREATED, dn=dn)

    @classmethod
    def updated(cls, dn: str) -> 'SyncOutcome':
        return cls(SyncOutcomeKind.UPDATED, dn=dn)

    @classmethod
    def renamed(cls, dn: str) -> 'SyncOutcome':
        return cls(SyncOutcomeKind.RENAMED, dn=dn)

    @classmethod
    def deleted(cls, dn: str) -> 'SyncOutcome':
        return cls(SyncOutcomeKind.DELETED, dn=dn)

    @classmethod
    def skipped(cls, reason: str) -> 'SyncOutcome':
        return cls(SyncOutcomeKind.SKIPPED, reason=reason)

    @classmethod
    def failed(cls, error: BaseException) -> 'SyncOutcome':
        return cls(SyncOutcomeKind.FAILED, reason=str(error), error=error)

    @property
    def ok(self) -> bool:
        return self.kind is not SyncOutcomeKind.FAILED
