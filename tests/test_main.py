#!/usr/bin/env python3
"""
Unit tests for the bridge façade, directory providers and event dispatch.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_bridge.config import ConfigLoader, ConfigurationError
from ldap_bridge.errors import DirectoryUnavailable
from ldap_bridge.events import EventDispatcher, LdapEvent, LoginForm
from ldap_bridge.main import LdapBridge
from ldap_bridge.providers import DirectoryProviders

from fake_directory import FakeConnection, FakeDirectory, InMemoryUserStore, RecordingSession, PEOPLE_SUFFIX


def bridge_config(**overrides):
    config = {
        'ldap': {
            'server_url': 'ldap://ldap.example.com',
            'schema': 'openldap',
            'account_prefix': 'uid=',
            'account_suffix': PEOPLE_SUFFIX,
            'base_dn': 'dc=example,dc=com',
        },
        'second_ldap': {
            'server_url': 'ldap://sync.example.com',
            'schema': 'openldap',
            'account_prefix': 'cn=',
            'account_suffix': PEOPLE_SUFFIX,
            'base_dn': 'dc=example,dc=com',
        },
        'other_organizational_units': ['staff'],
    }
    config.update(overrides)
    return config


class UnitFailingConnection(FakeConnection):
    """Fake connection whose clone for one organizational unit cannot connect."""

    def __init__(self, directory, config, opened, failing_unit):
        super().__init__(directory, config)
        self.opened = opened
        self.failing_unit = failing_unit
        opened.append(self)

    def connect(self):
        if self.config.account_suffix.startswith(f",ou={self.failing_unit},"):
            raise DirectoryUnavailable(f"ou={self.failing_unit} unreachable")
        return super().connect()

    def clone(self, **overrides):
        return UnitFailingConnection(self.directory, self.config.with_overrides(**overrides),
                                     self.opened, self.failing_unit)


class TestDirectoryProviders(unittest.TestCase):

    def setUp(self):
        self.directory = FakeDirectory()
        self.created = []

        def factory(config):
            connection = FakeConnection(self.directory, config)
            self.created.append(connection)
            return connection

        self.providers = DirectoryProviders.from_config(ConfigLoader().load_dict(bridge_config()),
                                                        client_factory=factory)

    def test_connections_opened_on_first_use(self):
        self.assertEqual(self.created, [])

        primary = self.providers.primary

        self.assertTrue(primary.connected)
        self.assertEqual(primary.config.name, 'primary')
        self.assertEqual([c.config.account_suffix for c in self.providers.alternates],
                         [',ou=staff,dc=example,dc=com'])
        self.assertIs(self.providers.primary, primary)

    def test_secondary_connection(self):
        secondary = self.providers.secondary

        self.assertEqual(secondary.config.server_url, 'ldap://sync.example.com')
        self.assertEqual(secondary.config.name, 'secondary')
        self.assertTrue(secondary.connected)

    def test_unreachable_primary(self):
        self.directory.unavailable = True

        with self.assertRaises(DirectoryUnavailable):
            self.providers.primary

    def test_failed_unit_closes_opened_connections(self):
        opened = []
        config = ConfigLoader().load_dict(bridge_config(other_organizational_units=['staff', 'contractors']))
        providers = DirectoryProviders.from_config(
            config,
            client_factory=lambda c: UnitFailingConnection(self.directory, c, opened, 'contractors')
        )

        with self.assertRaises(DirectoryUnavailable):
            providers.primary

        self.assertEqual(len(opened), 3)
        self.assertTrue(all(not c.connected for c in opened))
        self.assertEqual(providers.all_connections(), [])

    def test_close(self):
        primary = self.providers.primary
        secondary = self.providers.secondary

        self.providers.close()

        self.assertFalse(primary.connected)
        self.assertFalse(secondary.connected)
        self.assertTrue(all(not c.connected for c in self.created))


class TestEventDispatcher(unittest.TestCase):

    def test_prepend_and_append(self):
        dispatcher = EventDispatcher()
        dispatcher.on(LdapEvent.USER_CREATED, lambda payload: 'second')
        dispatcher.on(LdapEvent.USER_CREATED, lambda payload: 'first', prepend=True)
        dispatcher.on('user_created', lambda payload: 'third')

        self.assertEqual(dispatcher.trigger(LdapEvent.USER_CREATED, None), ['first', 'second', 'third'])

    def test_event_without_handlers(self):
        self.assertEqual(EventDispatcher().trigger(LdapEvent.USER_DELETED, None), [])

    def test_unknown_event_name(self):
        with self.assertRaises(ValueError):
            EventDispatcher().on('user_renamed', lambda payload: None)

    def test_form_validation(self):
        self.assertTrue(LoginForm('jdoe', 'pw').validate())
        self.assertFalse(LoginForm('jdoe', 'pw', validator=lambda: False).validate())


class TestLdapBridge(unittest.TestCase):

    def setUp(self):
        self.primary_directory = FakeDirectory()
        self.secondary_directory = FakeDirectory()
        self.primary_directory.add(f"uid=jdoe{PEOPLE_SUFFIX}", password='pw',
                                   uid='jdoe', cn='jdoe', mail='jdoe@example.com')
        self.providers = DirectoryProviders.from_connections(
            self.primary_directory.connection('primary'),
            self.secondary_directory.connection('secondary', account_prefix='cn=')
        )

    def make_bridge(self, **kwargs):
        params = dict(config=bridge_config(), providers=self.providers, configure_logging=False)
        params.update(kwargs)
        return LdapBridge(**params)

    def test_invalid_configuration_fails_at_startup(self):
        with self.assertRaises(ConfigurationError):
            LdapBridge(config={'ldap': {'schema': 'openldap'}}, configure_logging=False)

    def test_public_operations(self):
        bridge = self.make_bridge(store=InMemoryUserStore())

        self.assertTrue(bridge.authenticate('jdoe', 'pw'))
        self.assertFalse(bridge.authenticate('jdoe', 'wrong'))
        self.assertTrue(bridge.is_directory_user('jdoe'))
        self.assertTrue(bridge.update_directory_attribute('jdoe', 'mail', 'john@example.com'))

    def test_operations_need_a_store(self):
        bridge = self.make_bridge()

        with self.assertRaises(ConfigurationError):
            bridge.authenticate('jdoe', 'pw')

    def test_registers_on_event_source(self):
        dispatcher = EventDispatcher()
        store = InMemoryUserStore()
        session = RecordingSession()

        self.make_bridge(store=store, session=session, event_source=dispatcher)
        results = dispatcher.trigger(LdapEvent.BEFORE_LOGIN, LoginForm('jdoe', 'pw'))

        self.assertEqual(results[0].username, 'jdoe')
        self.assertEqual(session.values, {'ldap_username': 'jdoe'})
        self.assertEqual(dispatcher.handlers(LdapEvent.USER_CREATED), [])

    def test_event_source_without_store(self):
        with self.assertRaises(ConfigurationError):
            self.make_bridge(event_source=EventDispatcher())

    @patch('ldap_bridge.main.setup_logging')
    def test_logging_configured_from_config(self, mock_setup):
        self.make_bridge(configure_logging=True)

        mock_setup.assert_called_once()
        self.assertEqual(mock_setup.call_args[0][0]['retention_days'], 7)

    def fake_providers(self):
        factory = Mock(side_effect=lambda config: FakeConnection(self.primary_directory, config))
        return DirectoryProviders(self.providers.primary_config, self.providers.secondary_config,
                                  client_factory=factory)

    def test_health_check(self):
        bridge = self.make_bridge(providers=self.fake_providers())

        health = bridge.health_check()

        self.assertEqual(health['status'], 'healthy')
        self.assertEqual(health['checks']['ldap']['status'], 'pass')
        self.assertEqual(health['checks']['second_ldap']['status'], 'pass')
        self.assertEqual(health['checks']['notifications']['status'], 'skip')

        self.primary_directory.unavailable = True
        health = bridge.health_check()

        self.assertEqual(health['status'], 'unhealthy')
        self.assertEqual(health['checks']['ldap']['status'], 'fail')

    def test_health_check_incomplete_notifications(self):
        bridge = self.make_bridge(config=bridge_config(notifications={'enable_email': True}),
                                  providers=self.fake_providers())

        health = bridge.health_check()

        self.assertEqual(health['checks']['notifications']['status'], 'fail')
        self.assertEqual(health['status'], 'unhealthy')

    def test_context_manager_closes_connections(self):
        with self.make_bridge(store=InMemoryUserStore()) as bridge:
            primary = bridge.providers.primary
            primary.connect()

        self.assertFalse(primary.connected)


if __name__ == '__main__':
    unittest.main()
