"""
Lifecycle events consumed by the synchronization engine.

The hosting application delivers these events through an EventSource.
EventDispatcher is a plain in-process EventSource for applications that do
not have their own event system.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ldap_bridge.models import LocalUser

logger = logging.getLogger(__name__)


class LdapEvent(str, Enum):
    BEFORE_LOGIN = 'before_login'
    AFTER_LOGIN = 'after_login'
    BEFORE_RECOVERY_REQUEST = 'before_recovery_request'
    USER_CREATED = 'user_created'
    USER_CONFIRMED = 'user_confirmed'
    USER_UPDATED = 'user_updated'
    ACCOUNT_SETTINGS_UPDATED = 'account_settings_updated'
    PASSWORD_RESET_COMPLETED = 'password_reset_completed'
    USER_DELETED = 'user_deleted'


@dataclass
class LoginForm:
    """Submitted login form. `user` is set by the host once the login succeeded."""

    login: str
    password: str
    remember_me: bool = False
    user: Optional[LocalUser] = None
    validator: Optional[Callable[[], bool]] = None

    def validate(self) -> bool:
        return self.validator() if self.validator else True


@dataclass
class RecoveryForm:
    email: str


@dataclass
class UserEvent:
    user: LocalUser


@dataclass
class ResetPasswordEvent:
    """Completed password reset; `user` is None when the reset token was invalid."""

    user: Optional[LocalUser] = None


class EventSource(ABC):
    """Something handlers can be registered on by event name."""

    @abstractmethod
    def on(self, event: LdapEvent, handler: Callable[[Any], Any], prepend: bool = False):
        """
        Register a handler.

        Args:
            event: Event name
            handler: Callable receiving the event payload
            prepend: Run before handlers already registered for the event
        """
        pass


class EventDispatcher(EventSource):
    """In-process EventSource: handlers run synchronously in registration order."""

    def __init__(self):
        self._handlers: Dict[LdapEvent, List[Callable[[Any], Any]]] = {}

    def on(self, event: LdapEvent, handler: Callable[[Any], Any], prepend: bool = False):
        handlers = self._handlers.setdefault(LdapEvent(event), [])
        if prepend:
            handlers.insert(0, handler)
        else:
            handlers.append(handler)

    def handlers(self, event: LdapEvent) -> List[Callable[[Any], Any]]:
        return list(self._handlers.get(LdapEvent(event), []))

    def trigger(self, event: LdapEvent, payload: Any) -> List[Any]:
        """
        Run every handler of `event` with `payload`.

        Exceptions raised by a handler propagate and stop the remaining handlers.

        Returns:
            Handler return values in call order
        """
        event = LdapEvent(event)
        logger.debug(f"Dispatching {event.value} to {len(self._handlers.get(event, []))} handlers")
        return [handler(payload) for handler in self.handlers(event)]
