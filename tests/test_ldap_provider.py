#!/usr/bin/env python3
"""
Unit tests for the LDAP directory provider.

The ldap3 connection is replaced by a mock whose search results are served
from a small in-test directory keyed by DN.
"""

import os
import sys
import uuid
import unittest
from unittest.mock import Mock, patch

from ldap3 import BASE, MODIFY_ADD, MODIFY_REPLACE
from ldap3.core.exceptions import LDAPSocketOpenError

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from org_federation.providers.ldap import LDAPDirectory, AD_SECURITY_GLOBAL_GROUP
from org_federation.providers.base import (
    DirectoryAPIError, DirectoryAuthenticationError, DirectoryNotFoundError, DirectoryTransientError,
    GroupRecord, MemberKind
)


def make_entry(dn, **attributes):
    entry = Mock()
    entry.entry_dn = dn
    entry.entry_attributes_as_dict = {k: v if isinstance(v, list) else [v] for k, v in attributes.items()}
    return entry


def make_connection(entries):
    """Mock ldap3 connection answering BASE searches by DN and SUBTREE searches by id."""
    connection = Mock()
    connection.directory = {entry.entry_dn: entry for entry in entries}
    connection.entries = []
    connection.result = {'result': 0, 'description': 'success'}

    def search(search_base, search_filter, search_scope, attributes):
        if search_scope == BASE:
            entry = connection.directory.get(search_base)
            connection.entries = [entry] if entry else []
            connection.result = {'result': 0 if entry else 32,
                                 'description': 'success' if entry else 'noSuchObject'}
            return bool(entry)
        connection.entries = [e for e in connection.directory.values()
                              if any(f"={v})" in search_filter
                                     for v in e.entry_attributes_as_dict.get('entryUUID', []))]
        connection.result = {'result': 0, 'description': 'success'}
        return True

    connection.search.side_effect = search
    connection.modify.return_value = True
    connection.add.return_value = True
    return connection


class LDAPTestCase(unittest.TestCase):

    def setUp(self):
        self.config = {
            'name': 'corp-ldap',
            'server_url': 'ldap://ldap.example.com:389',
            'bind_dn': 'cn=svc,dc=example,dc=com',
            'bind_password': 'secret',
            'base_dn': 'dc=example,dc=com',
            'group_base_dn': 'ou=groups,dc=example,dc=com',
            'id_attribute': 'entryUUID',
            'other_emails_attribute': 'mailAlternateAddress',
            'user_filter': '(objectClass=inetOrgPerson)',
            'group_filter': '(objectClass=groupOfNames)',
            'group_object_classes': ['top', 'groupOfNames'],
            'error_handling': {'max_retries': 2, 'retry_wait_seconds': 0}
        }
        self.entries = [
            make_entry('cn=Engineering,ou=groups,dc=example,dc=com',
                       entryUUID='g-eng', cn='Engineering', objectClass=['top', 'groupOfNames'],
                       description='ei.department.1@acme.hr',
                       member=['cn=Platform,ou=groups,dc=example,dc=com',
                               'uid=alice,ou=people,dc=example,dc=com',
                               'cn=build01,ou=hosts,dc=example,dc=com',
                               'uid=gone,ou=people,dc=example,dc=com']),
            make_entry('cn=Platform,ou=groups,dc=example,dc=com',
                       entryUUID='g-plat', cn='Platform', objectClass=['top', 'groupOfNames']),
            make_entry('uid=alice,ou=people,dc=example,dc=com',
                       entryUUID='u-alice', cn='Alice', displayName='Alice Smith', mail='alice@example.com',
                       mailAlternateAddress=['alice@old.example.com', 'ei.user.7@acme.hr'],
                       objectClass=['top', 'person', 'inetOrgPerson']),
            make_entry('cn=build01,ou=hosts,dc=example,dc=com',
                       entryUUID='c-build01', cn='build01', objectClass=['top', 'person', 'user', 'computer']),
        ]
        self.client = LDAPDirectory(self.config)
        self.connection = make_connection(self.entries)
        self.client.connection = self.connection


class TestLDAPReads(LDAPTestCase):
    """Test cases for lookups and membership listing."""

    def test_defaults(self):
        client = LDAPDirectory({
            'server_url': 'ldaps://dc01.example.com',
            'bind_dn': 'cn=svc', 'bind_password': 'x', 'base_dn': 'dc=example,dc=com'
        })
        self.assertTrue(client.use_ssl)
        self.assertEqual(client.id_attribute, 'objectGUID')
        self.assertEqual(client.other_emails_attribute, 'otherMailbox')
        self.assertEqual(client.group_base_dn, 'dc=example,dc=com')

    def test_get_group(self):
        group = self.client.get_group('g-eng')
        self.assertEqual(group.id, 'g-eng')
        self.assertEqual(group.display_name, 'Engineering')
        self.assertEqual(group.description, 'ei.department.1@acme.hr')

    def test_get_user(self):
        user = self.client.get_user('u-alice')
        self.assertEqual(user.display_name, 'Alice Smith')
        self.assertEqual(user.mail, 'alice@example.com')
        self.assertEqual(user.other_emails, ['alice@old.example.com', 'ei.user.7@acme.hr'])

    def test_get_missing_group(self):
        with self.assertRaises(DirectoryNotFoundError):
            self.client.get_group('nope')

    def test_list_group_members_classifies_object_classes(self):
        members = self.client.list_group_members('g-eng')
        self.assertEqual([(m.id, m.kind) for m in members], [
            ('g-plat', MemberKind.GROUP),
            ('u-alice', MemberKind.USER),
            ('c-build01', MemberKind.OTHER),
        ])

    def test_search_failure(self):
        self.connection.search.side_effect = None
        self.connection.result = {'result': 50, 'description': 'insufficientAccessRights', 'message': 'denied'}
        with self.assertRaises(DirectoryAPIError) as ctx:
            self.client.find_users_with_other_email('ei.user.7@acme.hr')
        self.assertEqual(ctx.exception.code, 'insufficientAccessRights')

    def test_requires_connection(self):
        self.client.connection = None
        with self.assertRaises(DirectoryAPIError):
            self.client.get_group('g-eng')

    def test_find_filters(self):
        self.connection.search.side_effect = None
        self.connection.entries = [self.entries[2]]

        users = self.client.find_users_with_other_email('ei.user.7@acme.hr')
        self.assertEqual([u.id for u in users], ['u-alice'])
        self.assertEqual(self.connection.search.call_args[1]['search_filter'],
                         '(&(objectClass=inetOrgPerson)(mailAlternateAddress=ei.user.7@acme.hr))')

        self.connection.entries = [self.entries[0]]
        self.client.find_groups_with_description('ei.department.1@acme.hr')
        self.assertEqual(self.connection.search.call_args[1]['search_filter'],
                         '(&(objectClass=groupOfNames)(description=*ei.department.1@acme.hr*))')

    def test_filter_values_escaped(self):
        self.connection.search.side_effect = None
        self.connection.entries = []
        self.client.find_users_with_other_email('a*(b)')
        self.assertIn(r'(mailAlternateAddress=a\2a\28b\29)', self.connection.search.call_args[1]['search_filter'])


class TestLDAPObjectGUID(unittest.TestCase):
    """Test cases for Active Directory objectGUID addressing."""

    def setUp(self):
        self.client = LDAPDirectory({
            'server_url': 'ldap://dc01', 'bind_dn': 'cn=svc', 'bind_password': 'x', 'base_dn': 'dc=corp'
        })
        self.guid = uuid.UUID('6f1c2d9e-0000-4b1a-9a6e-1234567890ab')

    def test_bytes_guid_becomes_uuid_string(self):
        self.assertEqual(self.client._object_id({'objectGUID': [self.guid.bytes_le]}), str(self.guid))
        self.assertEqual(self.client._object_id({'objectGUID': ['{%s}' % self.guid]}), str(self.guid))

    def test_guid_filter_is_escaped_bytes(self):
        search_filter = self.client._id_filter(str(self.guid))
        self.assertTrue(search_filter.startswith('(objectGUID=\\9e\\2d\\1c\\6f'))

    def test_malformed_guid_is_not_found(self):
        with self.assertRaises(DirectoryNotFoundError):
            self.client._id_filter('not-a-guid')

    def test_ad_group_type(self):
        entry = make_entry('cn=x', objectGUID=self.guid.bytes_le, cn='x', groupType=AD_SECURITY_GLOBAL_GROUP)
        self.assertTrue(self.client._to_group(entry).security_enabled)
        entry = make_entry('cn=y', objectGUID=self.guid.bytes_le, cn='y', groupType=2)
        self.assertFalse(self.client._to_group(entry).security_enabled)


class TestLDAPWrites(LDAPTestCase):
    """Test cases for creating, linking and patching."""

    def test_create_group(self):
        created_dn = 'cn=Research\\, EMEA,ou=groups,dc=example,dc=com'

        def add(dn, object_classes, attributes):
            self.connection.directory[dn] = make_entry(dn, entryUUID='g-new', cn=attributes['cn'])
            return True
        self.connection.add.side_effect = add

        created = self.client.create_group(GroupRecord(id=None, display_name='Research, EMEA'))

        self.assertEqual(created.id, 'g-new')
        dn, object_classes, attributes = self.connection.add.call_args[0]
        self.assertEqual(dn, created_dn)
        self.assertEqual(object_classes, ['top', 'groupOfNames'])
        self.assertNotIn('groupType', attributes)

    def test_create_ad_group_sets_group_type(self):
        self.client.group_object_classes = ['top', 'group']
        self.connection.add.side_effect = lambda dn, oc, attrs: self.connection.directory.setdefault(
            dn, make_entry(dn, entryUUID='g-new', cn=attrs['cn'])) is not None

        self.client.create_group(GroupRecord(id=None, display_name='Research', security_enabled=True))

        self.assertEqual(self.connection.add.call_args[0][2]['groupType'], AD_SECURITY_GLOBAL_GROUP)

    def test_create_group_refused(self):
        self.connection.add.return_value = False
        self.connection.result = {'result': 68, 'description': 'entryAlreadyExists', 'message': ''}
        with self.assertRaises(DirectoryAPIError) as ctx:
            self.client.create_group(GroupRecord(id=None, display_name='Engineering'))
        self.assertEqual(ctx.exception.code, 'entryAlreadyExists')

    def test_link_member(self):
        self.client.link_member('g-eng', 'u-alice')
        self.connection.modify.assert_called_once_with(
            'cn=Engineering,ou=groups,dc=example,dc=com',
            {'member': [(MODIFY_ADD, ['uid=alice,ou=people,dc=example,dc=com'])]}
        )

    def test_link_unknown_child(self):
        with self.assertRaises(DirectoryNotFoundError):
            self.client.link_member('g-eng', 'missing')
        self.connection.modify.assert_not_called()

    def test_patch_group_description(self):
        self.client.patch_group('g-plat', {'description': 'ei.department.2@acme.hr'})
        self.connection.modify.assert_called_once_with(
            'cn=Platform,ou=groups,dc=example,dc=com',
            {'description': [(MODIFY_REPLACE, ['ei.department.2@acme.hr'])]}
        )

    def test_patch_group_empty_description_clears(self):
        self.client.patch_group('g-plat', {'description': ''})
        self.assertEqual(self.connection.modify.call_args[0][1], {'description': [(MODIFY_REPLACE, [])]})

    def test_patch_user_other_emails(self):
        self.client.patch_user('u-alice', {'other_emails': ['alice@old.example.com']})
        self.connection.modify.assert_called_once_with(
            'uid=alice,ou=people,dc=example,dc=com',
            {'mailAlternateAddress': [(MODIFY_REPLACE, ['alice@old.example.com'])]}
        )

    def test_patch_rejected(self):
        def modify(dn, changes):
            self.connection.result = {'result': 50, 'description': 'insufficientAccessRights', 'message': 'denied'}
            return False
        self.connection.modify.side_effect = modify

        with self.assertRaises(DirectoryAPIError) as ctx:
            self.client.patch_user('u-alice', {'other_emails': []})
        self.assertEqual(ctx.exception.code, 'insufficientAccessRights')

    def test_patch_unknown_field(self):
        with self.assertRaises(DirectoryAPIError):
            self.client.patch_group('g-plat', {'mail_enabled': True})


class TestLDAPConnection(LDAPTestCase):
    """Test cases for connecting and binding."""

    def setUp(self):
        super().setUp()
        self.client.connection = None

    @patch('org_federation.providers.ldap.Server')
    @patch('org_federation.providers.ldap.Connection')
    def test_authenticate_binds(self, mock_connection_class, mock_server_class):
        connection = Mock()
        connection.open.return_value = True
        connection.bind.return_value = True
        mock_connection_class.return_value = connection

        self.client.authenticate()

        self.assertIs(self.client.connection, connection)
        self.assertEqual(mock_connection_class.call_args[1]['user'], 'cn=svc,dc=example,dc=com')

        self.client.close()
        connection.unbind.assert_called_once()
        self.assertIsNone(self.client.connection)

    @patch('org_federation.providers.ldap.Server')
    @patch('org_federation.providers.ldap.Connection')
    def test_bind_refused(self, mock_connection_class, mock_server_class):
        connection = Mock()
        connection.open.return_value = True
        connection.bind.return_value = False
        connection.result = {'description': 'invalidCredentials'}
        mock_connection_class.return_value = connection

        with self.assertRaises(DirectoryAuthenticationError):
            self.client.authenticate()
        self.assertEqual(mock_connection_class.call_count, 1)

    @patch('org_federation.providers.ldap.Server')
    @patch('org_federation.providers.ldap.Connection')
    def test_unreachable_server_retried(self, mock_connection_class, mock_server_class):
        connection = Mock()
        connection.open.side_effect = LDAPSocketOpenError('connection refused')
        mock_connection_class.return_value = connection

        with self.assertRaises(DirectoryTransientError):
            self.client.authenticate()
        self.assertEqual(mock_connection_class.call_count, 3)
        self.assertIsNone(self.client.connection)


if __name__ == '__main__':
    unittest.main()
