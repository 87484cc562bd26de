#!/usr/bin/env python3
"""
Unit tests for directory user lookups.
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_bridge.finder import DirectoryUserFinder

from fake_directory import FakeDirectory, PEOPLE_SUFFIX


class TestDirectoryUserFinder(unittest.TestCase):

    def setUp(self):
        self.directory = FakeDirectory()
        self.connection = self.directory.connection()
        self.finder = DirectoryUserFinder()
        self.directory.add(f"uid=jdoe{PEOPLE_SUFFIX}", uid='jdoe', cn='John Doe', mail='jdoe@example.com')

    def test_single_match_is_found(self):
        result = self.finder.find(self.connection, 'jdoe', 'uid')

        self.assertTrue(result.is_found)
        self.assertEqual(result.entry.dn, f"uid=jdoe{PEOPLE_SUFFIX}")
        self.assertEqual(result.entry.matched_by, 'uid')

    def test_no_match(self):
        result = self.finder.find(self.connection, 'nobody', 'uid')

        self.assertTrue(result.is_not_found)
        self.assertIsNone(result.entry)

    def test_two_matches_are_ambiguous(self):
        self.directory.add(f"uid=jdoe2{PEOPLE_SUFFIX}", uid='jdoe2', cn='John Doe')

        result = self.finder.find(self.connection, 'John Doe', 'cn')

        self.assertTrue(result.is_ambiguous)
        self.assertEqual(result.count, 2)
        self.assertIsNone(result.entry)

    def test_login_attributes_tried_in_order(self):
        result = self.finder.find_by_login(self.connection, 'John Doe')

        self.assertTrue(result.is_found)
        self.assertEqual(result.attribute, 'cn')

    def test_samaccountname_is_last(self):
        self.directory.add('cn=Ann,ou=people,dc=example,dc=com', cn='Ann', sAMAccountName='ann')

        result = self.finder.find_by_login(self.connection, 'ann')

        self.assertTrue(result.is_found)
        self.assertEqual(result.attribute, 'samaccountname')

    def test_ambiguous_stops_the_search(self):
        self.directory.add(f"uid=a1{PEOPLE_SUFFIX}", uid='smith')
        self.directory.add(f"uid=a2{PEOPLE_SUFFIX}", uid='smith')
        self.directory.add(f"cn=smith{PEOPLE_SUFFIX}", cn='smith')

        result = self.finder.find_by_login(self.connection, 'smith')

        self.assertTrue(result.is_ambiguous)
        self.assertEqual(result.attribute, 'uid')

    def test_no_login_attribute_matches(self):
        self.assertTrue(self.finder.find_by_login(self.connection, 'nobody').is_not_found)

    def test_identification_attribute_overrides_lookups(self):
        finder = DirectoryUserFinder(identification_attribute='mail')

        self.assertTrue(finder.find(self.connection, 'jdoe@example.com', 'cn').is_found)
        result = finder.find_by_login(self.connection, 'jdoe')
        self.assertTrue(result.is_not_found)
        self.assertEqual(result.attribute, 'mail')


if __name__ == '__main__':
    unittest.main()
