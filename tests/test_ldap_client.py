#!/usr/bin/env python3
"""
Unit tests for the ldap3 backed directory client.

ldap3's Server and Connection are patched; the tests check the requests the
client sends and how it reads the results.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap3 import MODIFY_REPLACE, SUBTREE
from ldap3.core.exceptions import LDAPSocketOpenError, LDAPSocketSendError

from ldap_bridge.errors import DirectoryError, DirectoryUnavailable, DirectoryWriteError, EntryAlreadyExists
from ldap_bridge.ldap_client import LDAPClient
from ldap_bridge.models import DirectoryEntry

from fake_directory import PEOPLE_SUFFIX, make_config


class LDAPClientTestCase(unittest.TestCase):

    def setUp(self):
        server_patcher = patch('ldap_bridge.ldap_client.Server')
        connection_patcher = patch('ldap_bridge.ldap_client.Connection')
        self.mock_server = server_patcher.start()
        self.mock_connection_class = connection_patcher.start()
        self.addCleanup(server_patcher.stop)
        self.addCleanup(connection_patcher.stop)

        self.mock_conn = Mock()
        self.mock_conn.bind.return_value = True
        self.mock_conn.result = {'result': 0, 'description': 'success'}
        self.mock_conn.entries = []
        self.mock_connection_class.return_value = self.mock_conn

        self.client = LDAPClient(make_config())


class TestConnect(LDAPClientTestCase):

    def test_connect_binds_service_account(self):
        self.assertTrue(self.client.connect())

        kwargs = self.mock_connection_class.call_args[1]
        self.assertEqual(kwargs['user'], 'cn=admin,dc=example,dc=com')
        self.assertEqual(kwargs['password'], 'adminpass')
        self.mock_conn.open.assert_called_once()
        self.mock_conn.bind.assert_called_once()

    def test_rejected_service_bind(self):
        self.mock_conn.bind.return_value = False

        with self.assertRaises(DirectoryUnavailable):
            self.client.connect()
        self.assertFalse(self.client.get_connection_stats()['connected'])

    def test_unreachable_server(self):
        self.mock_conn.open.side_effect = LDAPSocketOpenError('connection refused')

        with self.assertRaises(DirectoryUnavailable):
            self.client.connect()

    def test_start_tls(self):
        client = LDAPClient(make_config(start_tls=True))

        client.connect()

        self.mock_conn.start_tls.assert_called_once()
        self.assertIsNotNone(self.mock_server.call_args[1]['tls'])

    def test_disconnect(self):
        self.client.connect()
        self.client.disconnect()

        self.mock_conn.unbind.assert_called_once()
        self.assertFalse(self.client.get_connection_stats()['connected'])


class TestSearch(LDAPClientTestCase):

    def test_search_returns_entries(self):
        self.mock_conn.entries = [
            Mock(entry_dn=f"uid=jdoe{PEOPLE_SUFFIX}",
                 entry_attributes_as_dict={'uid': ['jdoe'], 'cn': ['John Doe']})
        ]

        entries = self.client.search('uid', 'jdoe')

        self.assertEqual(len(entries), 1)
        self.assertIsInstance(entries[0], DirectoryEntry)
        self.assertEqual(entries[0].dn, f"uid=jdoe{PEOPLE_SUFFIX}")
        self.assertEqual(entries[0].first('cn'), 'John Doe')
        self.assertEqual(entries[0].matched_by, 'uid')

        kwargs = self.mock_conn.search.call_args[1]
        self.assertEqual(kwargs['search_base'], 'dc=example,dc=com')
        self.assertEqual(kwargs['search_filter'], '(&(objectClass=person)(uid=jdoe))')
        self.assertEqual(kwargs['search_scope'], SUBTREE)

    def test_filter_value_is_escaped(self):
        self.client.search('cn', 'a*(b)')

        self.assertEqual(self.mock_conn.search.call_args[1]['search_filter'],
                         '(&(objectClass=person)(cn=a\\2a\\28b\\29))')

    def test_no_such_object_is_empty(self):
        self.mock_conn.result = {'result': 32, 'description': 'noSuchObject'}

        self.assertEqual(self.client.search('uid', 'jdoe'), [])

    def test_other_errors_raise(self):
        self.mock_conn.result = {'result': 50, 'description': 'insufficientAccessRights'}

        with self.assertRaises(DirectoryError):
            self.client.search('uid', 'jdoe')

    def test_reconnects_after_dropped_connection(self):
        dropped = Mock()
        dropped.bind.return_value = True
        dropped.search.side_effect = LDAPSocketSendError('socket closed by server')
        self.mock_connection_class.side_effect = [dropped, self.mock_conn]

        with self.assertRaises(DirectoryUnavailable):
            self.client.search('uid', 'jdoe')
        self.assertFalse(self.client.get_connection_stats()['connected'])

        self.assertEqual(self.client.search('uid', 'jdoe'), [])
        self.assertEqual(self.mock_connection_class.call_count, 2)
        self.mock_conn.search.assert_called_once()


class TestBind(LDAPClientTestCase):

    def test_bind_name_built_from_prefix_and_suffix(self):
        self.assertTrue(self.client.bind('jdoe', 'pw'))

        kwargs = self.mock_connection_class.call_args[1]
        self.assertEqual(kwargs['user'], f"uid=jdoe{PEOPLE_SUFFIX}")
        self.assertEqual(kwargs['password'], 'pw')
        self.mock_conn.unbind.assert_called_once()

    def test_rejected_credentials(self):
        self.mock_conn.bind.return_value = False

        self.assertFalse(self.client.bind('jdoe', 'wrong'))

    def test_empty_password_never_binds(self):
        self.assertFalse(self.client.bind('jdoe', ''))
        self.mock_connection_class.assert_not_called()

    def test_unreachable_server(self):
        self.mock_conn.open.side_effect = LDAPSocketOpenError('connection refused')

        with self.assertRaises(DirectoryUnavailable):
            self.client.bind('jdoe', 'pw')


class TestWrites(LDAPClientTestCase):

    def test_create_entry(self):
        dn = f"cn=alice{PEOPLE_SUFFIX}"
        attributes = {'cn': 'alice', 'mail': 'alice@example.com'}

        entry = self.client.create_entry(dn, attributes)

        self.mock_conn.add.assert_called_once_with(
            dn, ['top', 'person', 'organizationalPerson', 'inetOrgPerson'], attributes)
        self.assertEqual(entry.dn, dn)
        self.assertEqual(entry.first('mail'), 'alice@example.com')

    def test_create_existing_entry(self):
        self.mock_conn.add.return_value = False
        self.mock_conn.result = {'result': 68, 'description': 'entryAlreadyExists'}

        with self.assertRaises(EntryAlreadyExists):
            self.client.create_entry(f"cn=alice{PEOPLE_SUFFIX}", {'cn': 'alice'})

    def test_create_rejected(self):
        self.mock_conn.add.return_value = False
        self.mock_conn.result = {'result': 65, 'description': 'objectClassViolation'}

        with self.assertRaises(DirectoryWriteError) as ctx:
            self.client.create_entry(f"cn=alice{PEOPLE_SUFFIX}", {'cn': 'alice'})
        self.assertNotIsInstance(ctx.exception, EntryAlreadyExists)
        self.assertIn('objectClassViolation', str(ctx.exception))

    def test_save_sends_changed_attributes_only(self):
        entry = DirectoryEntry(f"cn=bob{PEOPLE_SUFFIX}", {'cn': ['bob'], 'mail': ['bob@example.com']})
        entry.set_attribute('mail', 'robert@example.com')

        self.assertTrue(self.client.save_entry(entry))

        self.mock_conn.modify.assert_called_once_with(
            f"cn=bob{PEOPLE_SUFFIX}", {'mail': [(MODIFY_REPLACE, ['robert@example.com'])]})
        self.assertFalse(entry.is_dirty)

    def test_save_without_changes_sends_nothing(self):
        entry = DirectoryEntry(f"cn=bob{PEOPLE_SUFFIX}", {'cn': ['bob']})

        self.assertTrue(self.client.save_entry(entry))
        self.mock_conn.modify.assert_not_called()

    def test_save_rejected_keeps_changes(self):
        self.mock_conn.modify.return_value = False
        entry = DirectoryEntry(f"cn=bob{PEOPLE_SUFFIX}", {'cn': ['bob']})
        entry.set_attribute('mail', 'robert@example.com')

        with self.assertRaises(DirectoryWriteError):
            self.client.save_entry(entry)
        self.assertTrue(entry.is_dirty)

    def test_rename_entry(self):
        entry = DirectoryEntry(f"cn=bob{PEOPLE_SUFFIX}", {'cn': ['bob']})

        self.assertTrue(self.client.rename_entry(entry, 'cn=bobby'))

        self.mock_conn.modify_dn.assert_called_once_with(f"cn=bob{PEOPLE_SUFFIX}", 'cn=bobby')
        self.assertEqual(entry.dn, f"cn=bobby{PEOPLE_SUFFIX}")
        self.assertEqual(entry.get('cn'), ['bobby'])

    def test_rename_with_escaped_comma(self):
        entry = DirectoryEntry(f"cn=Doe\\, John{PEOPLE_SUFFIX}")

        self.client.rename_entry(entry, 'cn=jdoe')

        self.assertEqual(entry.dn, f"cn=jdoe{PEOPLE_SUFFIX}")

    def test_delete_rejected(self):
        self.mock_conn.delete.return_value = False

        with self.assertRaises(DirectoryWriteError):
            self.client.delete_entry(DirectoryEntry(f"cn=dave{PEOPLE_SUFFIX}"))

    def test_failed_write_drops_connection(self):
        self.mock_conn.delete.side_effect = LDAPSocketSendError('socket closed by server')
        self.client.connect()

        with self.assertRaises(DirectoryUnavailable):
            self.client.delete_entry(DirectoryEntry(f"cn=dave{PEOPLE_SUFFIX}"))
        self.assertFalse(self.client.get_connection_stats()['connected'])



class TestClone(LDAPClientTestCase):

    def test_clone_has_overrides_and_leaves_original(self):
        clone = self.client.clone(account_prefix='cn=')

        self.assertIsInstance(clone, LDAPClient)
        self.assertIsNot(clone, self.client)
        self.assertEqual(clone.config.account_prefix, 'cn=')
        self.assertEqual(self.client.config.account_prefix, 'uid=')
        self.assertFalse(clone.get_connection_stats()['connected'])

    def test_context_manager_disconnects(self):
        with LDAPClient(make_config()) as client:
            client.connect()
        self.mock_conn.unbind.assert_called_once()


if __name__ == '__main__':
    unittest.main()
