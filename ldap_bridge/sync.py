"""
Synchronization engine between local users and the directories.

The engine owns one handler per lifecycle event. Logins are authenticated
against the primary directory and provision local users; when two-way sync
is enabled, local creations, updates, password resets and deletions are
written to the secondary directory. Handlers keep no state between calls:
every decision is taken from a fresh directory lookup.
"""

import time
import logging
import functools
from typing import Dict, Any, Callable, Optional, Tuple

from ldap3.utils.dn import escape_rdn

from ldap_bridge.auth import AuthenticationResolver, OrganizationalUnitFallback
from ldap_bridge.config import ConfigurationError
from ldap_bridge.errors import (
    DirectoryError,
    AmbiguousUserError,
    EntryAlreadyExists,
    LocalStoreError,
    RoleNotFound,
)
from ldap_bridge.events import (
    LdapEvent,
    EventSource,
    LoginForm,
    RecoveryForm,
    UserEvent,
    ResetPasswordEvent,
)
from ldap_bridge.finder import DirectoryUserFinder
from ldap_bridge.interfaces import LocalUserStore, RoleAssigner, LoginSession
from ldap_bridge.mapping import AttributeMapper
from ldap_bridge.models import DirectoryEntry, FindResult, LocalUser, SyncOutcome
from ldap_bridge.notifications import Notifier, INITIAL_PASSWORD_RESET, PASSWORD_RESET, send_failure_notification
from ldap_bridge.providers import DirectoryProviders

logger = logging.getLogger(__name__)

# Stored as the local password hash once the directory holds the password
PASSWORD_HASH_SENTINEL = 'x'

DEFAULT_USER_EMAIL = 'default@user.com'

NOT_FOUND = 'not found'
ALREADY_EXISTS = 'already exists'
ENTRY_EXISTS = 'directory entry exists'
MISSING_USER = 'missing user'


class SyncEngine:
    """
    Reacts to local user lifecycle events.

    Directory write failures propagate to the event source after being
    logged and reported; the only swallowed failure is an already existing
    entry when an administrator creates a user.
    """

    def __init__(self, config: Dict[str, Any], providers: DirectoryProviders, store: LocalUserStore,
                 roles: Optional[RoleAssigner] = None, session: Optional[LoginSession] = None,
                 notifier: Optional[Notifier] = None, mapper: Optional[AttributeMapper] = None,
                 finder: Optional[DirectoryUserFinder] = None):
        """
        Args:
            config: Validated configuration dictionary
            providers: Directory connections
            store: Local user store
            roles: Role store, required when default_roles is configured
            session: Login session of the hosting application
            notifier: Receives password reset notifications
            mapper: Attribute mapper, built from config when omitted
            finder: User finder, built from config when omitted
        """
        self.config = config
        self.providers = providers
        self.store = store
        self.roles = roles
        self.session = session
        self.notifier = notifier or Notifier()

        self.create_local_users = config.get('create_local_users', True)
        self.default_roles = config.get('default_roles') or []
        self.sync_users_to_ldap = config.get('sync_users_to_ldap', False)
        self.default_user_id = config.get('default_user_id', -1)
        self.session_key_for_username = config.get('session_key_for_username')
        self.allow_password_recovery = config.get('allow_password_recovery', True)
        self.password_recovery_redirect = config.get('password_recovery_redirect')
        self.remember_login_lifespan = config.get('remember_login_lifespan', 1209600)
        self.notifications_config = config.get('notifications', {})

        if self.default_roles and roles is None:
            raise ConfigurationError("default_roles requires a role assigner")

        self.mapper = mapper or AttributeMapper(password_scheme=config.get('password_hash_scheme', 'sha'))
        self.finder = finder or DirectoryUserFinder(config.get('user_identification_attribute'))
        self.fallback = OrganizationalUnitFallback(AuthenticationResolver(self.finder))

    # Registration

    def handlers(self) -> Dict[LdapEvent, Tuple[Callable[[Any], Any], bool]]:
        """
        Dispatch table: event -> (handler, prepend).

        Prepended handlers run before the host's own handling of the event.
        """
        table = {
            LdapEvent.BEFORE_LOGIN: (self.handle_before_login, False),
            LdapEvent.BEFORE_RECOVERY_REQUEST: (self.handle_recovery_request, False),
        }
        if not self.sync_users_to_ldap:
            return table

        table.update({
            LdapEvent.AFTER_LOGIN: (self.handle_after_login, True),
            LdapEvent.USER_CREATED: (self.handle_user_created, True),
            LdapEvent.USER_CONFIRMED: (self.handle_user_confirmed, True),
            LdapEvent.USER_UPDATED: (self.handle_user_updated, False),
            LdapEvent.ACCOUNT_SETTINGS_UPDATED: (self.handle_account_settings_updated, True),
            LdapEvent.PASSWORD_RESET_COMPLETED: (self.handle_password_reset, True),
            LdapEvent.USER_DELETED: (self.handle_user_deleted, True),
        })
        return table

    def register(self, source: EventSource):
        for event, (handler, prepend) in self.handlers().items():
            source.on(event, self._reporting(event, handler), prepend=prepend)
        logger.info(f"Registered handlers (sync to LDAP: {self.sync_users_to_ldap})")

    def _reporting(self, event: LdapEvent, handler: Callable[[Any], Any]) -> Callable[[Any], Any]:
        @functools.wraps(handler)
        def run(payload):
            try:
                return handler(payload)
            except (DirectoryError, RoleNotFound, LocalStoreError) as e:
                logger.error(f"Handling {event.value} failed: {e}")
                send_failure_notification(
                    f"{event.value} failed",
                    str(e),
                    self.notifications_config,
                    {'error_type': type(e).__name__}
                )
                raise
        return run

    # Public API

    def authenticate(self, username: str, password: str) -> bool:
        """Authenticate against the primary directory and its alternate OUs."""
        try:
            primary = self.providers.primary
            alternates = self.providers.alternates
        except DirectoryError as e:
            logger.error(f"Primary directory unavailable: {e}")
            return False
        return self.fallback.authenticate_with_fallback(primary, alternates, username, password)

    def is_directory_user(self, username: str) -> bool:
        return bool(self.providers.primary.search('cn', username))

    def update_directory_attribute(self, username: str, attribute: str, value: Any) -> bool:
        """
        Overwrite one attribute of a primary directory user.

        Returns:
            False when the user has no directory entry
        """
        result = self.finder.find(self.providers.primary, username, 'cn')
        if result.is_not_found:
            return False
        entry = result.unwrap()
        entry.set_attribute(attribute, value)
        return self.providers.primary.save_entry(entry)

    # Login

    def handle_before_login(self, form: LoginForm) -> Optional[LocalUser]:
        """
        Authenticate a login form against the directory and log the user in.

        Returns:
            The logged in local user, or None to leave the login to the host
        """
        username = form.login
        password = form.password

        if not username or not password:
            logger.info("Either username or password was not specified")
            return None

        if not form.validate():
            return None

        if not self.authenticate(username, password):
            logger.warning("Authentication failed")
            return None

        entry = self.finder.find_by_login(self.providers.primary, username).unwrap()
        directory_username = entry.first('uid') or username

        user = self.store.find_user_by_username(directory_username)
        if user is None:
            logger.info("User not found in the application database")
            if self.create_local_users:
                user = self._provision_local_user(directory_username, entry)
            else:
                user = self._default_user(directory_username)
            if user is None:
                return None

        if self.session is not None:
            duration = self.remember_login_lifespan if form.remember_me else 0
            self.session.login(user, duration)
            if self.session_key_for_username:
                self.session.set(self.session_key_for_username, user.username)
        logger.info(f"User '{user.username}' logged in through LDAP")
        return user

    def _provision_local_user(self, username: str, entry: DirectoryEntry) -> Optional[LocalUser]:
        logger.info(f"The user {username} will be created")
        fields = {
            'username': username,
            'email': entry.first('mail'),
            'name': entry.first('cn'),
            'confirmed_at': time.time(),
            'password_hash': PASSWORD_HASH_SENTINEL,
        }
        user = self._create_local_user(fields)
        if user is None:
            logger.error(f"Error saving the new user {username} in the database")
            return None

        self._assign_default_roles(user)
        return user

    def _default_user(self, username: str) -> Optional[LocalUser]:
        logger.info("The user will be logged using the default user")
        user = self.store.find_user_by_id(self.default_user_id)
        if user is None:
            user = self._create_local_user({
                'id': self.default_user_id,
                'email': DEFAULT_USER_EMAIL,
                'confirmed_at': time.time(),
            })
            if user is None:
                logger.error("Error creating the default user")
                return None
            self._assign_default_roles(user)

        user.username = username
        return user

    def _create_local_user(self, fields: Dict[str, Any]) -> Optional[LocalUser]:
        try:
            return self.store.create_user(fields)
        except LocalStoreError as e:
            logger.error(f"Local store refused user {fields.get('username')}: {e}")
            return None

    def _assign_default_roles(self, user: LocalUser):
        for role_name in self.default_roles:
            self.roles.assign_role(role_name, user.id)
            logger.info(f"Assigned role {role_name} to user {user.id}")

    def handle_recovery_request(self, form: RecoveryForm) -> Optional[Any]:
        """
        Check a password recovery request against the primary directory.

        Returns:
            The redirect target when directory users may not recover their
            password here, otherwise None
        """
        result = self.finder.find(self.providers.primary, form.email, 'mail')
        if result.is_not_found:
            logger.info(f"User {form.email} not found")
            return None
        result.unwrap()

        if not self.allow_password_recovery:
            logger.info(f"Password recovery for directory user {form.email} redirected")
            return self.password_recovery_redirect
        return None

    # Synchronization

    def handle_after_login(self, form: LoginForm) -> SyncOutcome:
        """Create the secondary entry of a user logging in, the only moment the plaintext password is known."""
        user = form.user
        username = user.username if user is not None else form.login

        result = self._find_secondary(username)
        if result.is_found:
            logger.info(f"Directory entry for {username}: {result.entry.dn}")
            return SyncOutcome.skipped(ENTRY_EXISTS)

        if user is None:
            logger.warning(f"No local user attached to the login of {username}")
            return SyncOutcome.skipped(MISSING_USER)

        user.password = form.password
        return self.create_directory_entry(user)

    def handle_user_created(self, event: UserEvent) -> SyncOutcome:
        try:
            return self.create_directory_entry(event.user)
        except EntryAlreadyExists as e:
            logger.warning(f"Directory entry for {event.user.username} already exists: {e}")
            return SyncOutcome.skipped(ALREADY_EXISTS)

    def handle_user_confirmed(self, event: UserEvent) -> SyncOutcome:
        return self.create_directory_entry(event.user)

    def handle_user_updated(self, event: UserEvent) -> SyncOutcome:
        return self.update_directory_entry(event.user)

    def handle_account_settings_updated(self, event: UserEvent) -> SyncOutcome:
        return self.update_directory_entry(event.user)

    def handle_password_reset(self, event: ResetPasswordEvent) -> SyncOutcome:
        user = event.user
        if user is None:
            logger.error("Password reset without a user, token does not exist")
            return SyncOutcome.skipped(MISSING_USER)

        result = self._find_secondary(user.username)
        if result.is_not_found:
            logger.error(f"Directory user {user.username} (cn) not found")
            if not user.password:
                return SyncOutcome.skipped(NOT_FOUND)
            outcome = self.create_directory_entry(user)
            if outcome.ok:
                self.notifier.emit(INITIAL_PASSWORD_RESET, user=user, outcome=outcome)
            return outcome

        entry = result.entry
        if user.password:
            entry.set_attribute(self.mapper.password_attribute, self.mapper.password_value(user.password))
        self.providers.secondary.save_entry(entry)
        self.notifier.emit(PASSWORD_RESET, user=user, dn=entry.dn)
        return SyncOutcome.updated(entry.dn)

    def handle_user_deleted(self, event: UserEvent) -> SyncOutcome:
        username = event.user.username
        result = self._find_secondary(username)
        if result.is_not_found:
            logger.info(f"No directory entry for {username}, nothing to delete")
            return SyncOutcome.skipped(NOT_FOUND)

        self.providers.secondary.delete_entry(result.entry)
        logger.info(f"Deleted directory entry {result.entry.dn}")
        return SyncOutcome.deleted(result.entry.dn)

    def create_directory_entry(self, user: LocalUser) -> SyncOutcome:
        """
        Create the secondary directory entry of a local user.

        Raises:
            EntryAlreadyExists: If the DN is taken
            DirectoryWriteError: If the directory rejects the entry
        """
        secondary = self.providers.secondary
        dn = self._entry_dn(user.username)

        attributes = {'cn': user.username}
        attributes.update(self.mapper.attributes_to_write(user, changed_fields_only=False))
        secondary.create_entry(dn, attributes)
        logger.info(f"Created directory entry {dn}")

        user.password_hash = PASSWORD_HASH_SENTINEL
        try:
            saved = self.store.save_user(user)
        except LocalStoreError as e:
            logger.error(f"Could not persist user {user.username} after creating {dn}: {e}")
            return SyncOutcome.failed(e)
        if not saved:
            logger.error(f"Could not persist user {user.username} after creating {dn}")
            return SyncOutcome.failed(LocalStoreError(f"Saving user {user.username} failed"))
        return SyncOutcome.created(dn)

    def update_directory_entry(self, user: LocalUser) -> SyncOutcome:
        """
        Write a local user's changes to the secondary directory.

        The entry is looked up by the previous username since a rename has not
        reached the directory yet. Attributes are saved first; the RDN is
        renamed only once the save succeeded.
        """
        old_username = user.old_value('username') or user.username
        result = self._find_secondary(old_username)
        if result.is_not_found:
            if user.password:
                return self.create_directory_entry(user)
            logger.info(f"No directory entry for {old_username}, nothing to update")
            return SyncOutcome.skipped(NOT_FOUND)

        entry = result.entry
        for attribute, value in self.mapper.attributes_to_write(user, changed_fields_only=True).items():
            entry.set_attribute(attribute, value)

        secondary = self.providers.secondary
        secondary.save_entry(entry)

        if old_username != user.username:
            secondary.rename_entry(entry, f"cn={escape_rdn(user.username)}")
            logger.info(f"Renamed directory entry of {old_username} to {entry.dn}")
            return SyncOutcome.renamed(entry.dn)
        return SyncOutcome.updated(entry.dn)

    def _find_secondary(self, username: str) -> FindResult:
        result = self.finder.find(self.providers.secondary, username, 'cn')
        if result.is_ambiguous:
            raise AmbiguousUserError(result.attribute, result.value, result.count)
        return result

    def _entry_dn(self, username: str) -> str:
        config = self.providers.secondary.config
        rdn = f"cn={escape_rdn(username)}"
        if config.account_suffix.startswith(','):
            return f"{rdn}{config.account_suffix}"
        if config.base_dn:
            return f"{rdn},{config.base_dn}"
        raise ConfigurationError("Creating directory entries requires an account_suffix or base_dn")
