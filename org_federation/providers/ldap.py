"""
LDAP directory provider.

Implements the DirectoryProvider contract on top of ldap3 for Active Directory
and other LDAPv3 servers. Objects are addressed by a stable id attribute
(objectGUID by default, entryUUID for OpenLDAP) rather than by DN, since DNs
change on rename and contain characters that cannot appear in an external
identity.
"""

import ssl
import uuid
import logging
from typing import Dict, List, Any, Optional
from ldap3 import Server, Connection, Tls, SUBTREE, BASE, ALL, MODIFY_ADD, MODIFY_REPLACE
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError, LDAPBindError
from ldap3.utils.conv import escape_filter_chars, escape_bytes
from ldap3.utils.dn import escape_rdn

from org_federation.retry import RetryPolicy
from .base import (
    DirectoryProvider, DirectoryAPIError, DirectoryAuthenticationError, DirectoryNotFoundError,
    DirectoryTransientError, GroupRecord, UserRecord, MemberRecord, MemberKind
)

logger = logging.getLogger(__name__)

GROUP_OBJECT_CLASSES = {'group', 'groupofnames', 'groupofuniquenames'}
USER_OBJECT_CLASSES = {'user', 'person', 'inetorgperson', 'organizationalperson'}
# AD computers carry the user object classes too
IGNORED_OBJECT_CLASSES = {'computer'}

# ADS_GROUP_TYPE_GLOBAL_GROUP | ADS_GROUP_TYPE_SECURITY_ENABLED
AD_SECURITY_GLOBAL_GROUP = -2147483646
AD_SECURITY_ENABLED_FLAG = 0x80000000


def _first(values: List[Any]) -> Optional[Any]:
    return values[0] if values else None


class LDAPDirectory(DirectoryProvider):
    """
    ldap3-backed directory client.

    Configuration keys: server_url, bind_dn, bind_password, base_dn, and
    optionally group_base_dn, id_attribute, other_emails_attribute,
    user_filter, group_filter, group_object_classes and the TLS settings.
    """

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.base_dn = config['base_dn']
        self.group_base_dn = config.get('group_base_dn') or self.base_dn

        self.id_attribute = config.get('id_attribute', 'objectGUID')
        self.other_emails_attribute = config.get('other_emails_attribute', 'otherMailbox')
        self.user_filter = config.get('user_filter', '(objectClass=person)')
        self.group_filter = config.get('group_filter', '(objectClass=group)')
        self.group_object_classes = config.get('group_object_classes', ['top', 'group'])

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)

        self.retry_policy = RetryPolicy.from_config(config.get('error_handling'), wait_seconds=5, backoff=1.0)

        self.server = None
        self.connection = None

    # Connection

    def _create_tls_config(self) -> Optional[Tls]:
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}
        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning(f"SSL certificate verification disabled for {self.name}")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file

        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise DirectoryAPIError(f"Failed to create TLS configuration: {e}")

    def _open(self) -> None:
        connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )
        try:
            if not connection.open():
                raise DirectoryTransientError(f"Failed to open connection: {connection.result}")

            if self.start_tls and not self.use_ssl:
                if not connection.start_tls():
                    raise DirectoryAPIError(f"Failed to start TLS: {connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not connection.bind():
                raise DirectoryAuthenticationError(f"Bind failed: {connection.result}")
        except LDAPSocketOpenError as e:
            raise DirectoryTransientError(f"Cannot reach {self.server_url}: {e}")
        except LDAPBindError as e:
            raise DirectoryAuthenticationError(f"Bind failed: {e}")
        except LDAPException as e:
            raise DirectoryAPIError(f"LDAP connection failed: {e}")

        self.connection = connection

    def authenticate(self) -> None:
        """
        Connect and bind, retrying unreachable servers.

        Raises:
            DirectoryAuthenticationError: If the bind is refused
            DirectoryAPIError: If the server cannot be reached
        """
        if self.connection is not None:
            return

        self.server = Server(
            self.server_url,
            use_ssl=self.use_ssl,
            tls=self._create_tls_config(),
            get_info=ALL,
            connect_timeout=self.connection_timeout
        )

        self.retry_policy.run(
            self._open,
            operation=f"LDAP connection to {self.server_url}",
            exceptions=(DirectoryTransientError,)
        )

        logger.info(f"Connected and bound to LDAP server {self.server_url}")

    def close(self):
        if self.connection:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self.connection = None

    def _require_connection(self) -> Connection:
        if self.connection is None:
            raise DirectoryAPIError("Not connected to LDAP server")
        return self.connection

    # Entry helpers

    def _id_filter(self, object_id: str) -> str:
        if self.id_attribute.lower() == 'objectguid':
            try:
                guid = uuid.UUID(object_id)
            except ValueError:
                raise DirectoryNotFoundError(f"Malformed objectGUID: {object_id}")
            return f"(objectGUID={escape_bytes(guid.bytes_le)})"
        return f"({self.id_attribute}={escape_filter_chars(object_id)})"

    def _object_id(self, attributes: Dict[str, List[Any]]) -> Optional[str]:
        value = _first(attributes.get(self.id_attribute, []))
        if value is None:
            return None
        if isinstance(value, bytes):
            return str(uuid.UUID(bytes_le=value))
        return str(value).strip('{}')

    def _search(self, search_base: str, search_filter: str, attributes: List[str],
                scope=SUBTREE) -> List[Any]:
        connection = self._require_connection()
        try:
            connection.search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=scope,
                attributes=attributes
            )
        except LDAPException as e:
            raise DirectoryAPIError(f"LDAP search failed: {e}")

        result = connection.result or {}
        # noSuchObject on a BASE search just means the entry is gone
        if result.get('result', 0) not in (0, 32):
            raise DirectoryAPIError(
                f"LDAP search failed: {result.get('message') or result.get('description')}",
                code=result.get('description')
            )
        return list(connection.entries)

    def _find_entry(self, object_id: str, attributes: List[str]):
        entries = self._search(self.base_dn, self._id_filter(object_id), attributes)
        if not entries:
            raise DirectoryNotFoundError(f"No object with {self.id_attribute}={object_id}")
        return entries[0]

    def _resolve_dn(self, object_id: str) -> str:
        return str(self._find_entry(object_id, [self.id_attribute]).entry_dn)

    @property
    def _group_attributes(self) -> List[str]:
        return [self.id_attribute, 'cn', 'displayName', 'description', 'groupType', 'mail']

    @property
    def _user_attributes(self) -> List[str]:
        return [self.id_attribute, 'cn', 'displayName', 'mail', self.other_emails_attribute]

    def _to_group(self, entry) -> GroupRecord:
        attributes = entry.entry_attributes_as_dict
        group_type = _first(attributes.get('groupType', []))
        security_enabled = True
        if group_type is not None:
            security_enabled = bool(int(group_type) & AD_SECURITY_ENABLED_FLAG)

        return GroupRecord(
            id=self._object_id(attributes),
            display_name=_first(attributes.get('displayName', [])) or _first(attributes.get('cn', [])) or '',
            description=_first(attributes.get('description', [])),
            mail_enabled=bool(attributes.get('mail')),
            mail_nickname=None,
            security_enabled=security_enabled,
        )

    def _to_user(self, entry) -> UserRecord:
        attributes = entry.entry_attributes_as_dict
        return UserRecord(
            id=self._object_id(attributes),
            display_name=_first(attributes.get('displayName', [])) or _first(attributes.get('cn', [])) or '',
            mail=_first(attributes.get('mail', [])),
            other_emails=[str(v) for v in attributes.get(self.other_emails_attribute, [])],
        )

    @staticmethod
    def _member_kind(object_classes: List[str]) -> MemberKind:
        classes = {c.lower() for c in object_classes}
        if classes & IGNORED_OBJECT_CLASSES:
            return MemberKind.OTHER
        if classes & GROUP_OBJECT_CLASSES:
            return MemberKind.GROUP
        if classes & USER_OBJECT_CLASSES:
            return MemberKind.USER
        return MemberKind.OTHER

    def _modify(self, dn: str, changes: Dict[str, Any]) -> None:
        connection = self._require_connection()
        try:
            success = connection.modify(dn, changes)
        except LDAPException as e:
            raise DirectoryAPIError(f"LDAP modify of {dn} failed: {e}")
        if not success:
            result = connection.result or {}
            raise DirectoryAPIError(
                f"LDAP modify of {dn} failed: {result.get('message') or result.get('description')}",
                code=result.get('description')
            )

    # DirectoryProvider

    def get_group(self, group_id: str) -> GroupRecord:
        return self._to_group(self._find_entry(group_id, self._group_attributes))

    def get_user(self, user_id: str) -> UserRecord:
        return self._to_user(self._find_entry(user_id, self._user_attributes))

    def list_group_members(self, group_id: str) -> List[MemberRecord]:
        group_entry = self._find_entry(group_id, ['member'])
        member_dns = group_entry.entry_attributes_as_dict.get('member', [])
        logger.debug(f"Found {len(member_dns)} members in group {group_id}")

        members = []
        for member_dn in member_dns:
            entries = self._search(member_dn, '(objectClass=*)', ['objectClass', self.id_attribute], scope=BASE)
            if not entries:
                logger.warning(f"Member {member_dn} of group {group_id} no longer exists")
                continue
            attributes = entries[0].entry_attributes_as_dict
            member_id = self._object_id(attributes)
            if member_id is None:
                logger.warning(f"Member {member_dn} has no {self.id_attribute}, skipping")
                continue
            members.append(MemberRecord(id=member_id, kind=self._member_kind(attributes.get('objectClass', []))))
        return members

    def create_group(self, group: GroupRecord) -> GroupRecord:
        connection = self._require_connection()
        dn = f"cn={escape_rdn(group.display_name)},{self.group_base_dn}"

        attributes = {'cn': group.display_name, 'displayName': group.display_name}
        if group.description:
            attributes['description'] = group.description
        if 'group' in [c.lower() for c in self.group_object_classes]:
            attributes['groupType'] = AD_SECURITY_GLOBAL_GROUP if group.security_enabled else 2

        try:
            success = connection.add(dn, self.group_object_classes, attributes)
        except LDAPException as e:
            raise DirectoryAPIError(f"LDAP add of {dn} failed: {e}")
        if not success:
            result = connection.result or {}
            raise DirectoryAPIError(
                f"LDAP add of {dn} failed: {result.get('message') or result.get('description')}",
                code=result.get('description')
            )

        entries = self._search(dn, '(objectClass=*)', self._group_attributes, scope=BASE)
        if not entries:
            raise DirectoryAPIError(f"Created group {dn} could not be read back")
        logger.info(f"Created group {dn} in {self.name}")
        return self._to_group(entries[0])

    def link_member(self, parent_group_id: str, child_id: str) -> None:
        parent_dn = self._resolve_dn(parent_group_id)
        child_dn = self._resolve_dn(child_id)
        self._modify(parent_dn, {'member': [(MODIFY_ADD, [child_dn])]})
        logger.info(f"Linked {child_dn} as member of {parent_dn}")

    def patch_group(self, group_id: str, fields: Dict[str, Any]) -> None:
        changes = {}
        for name, value in fields.items():
            if name == 'description':
                changes['description'] = [(MODIFY_REPLACE, [value] if value else [])]
            elif name == 'display_name':
                changes['displayName'] = [(MODIFY_REPLACE, [value])]
            else:
                raise DirectoryAPIError(f"Field '{name}' cannot be updated through {self.name}")
        self._modify(self._resolve_dn(group_id), changes)

    def patch_user(self, user_id: str, fields: Dict[str, Any]) -> None:
        changes = {}
        for name, value in fields.items():
            if name == 'other_emails':
                changes[self.other_emails_attribute] = [(MODIFY_REPLACE, list(value))]
            elif name == 'display_name':
                changes['displayName'] = [(MODIFY_REPLACE, [value])]
            elif name == 'mail':
                changes['mail'] = [(MODIFY_REPLACE, [value] if value else [])]
            else:
                raise DirectoryAPIError(f"Field '{name}' cannot be updated through {self.name}")
        self._modify(self._resolve_dn(user_id), changes)

    def find_users_with_other_email(self, value: str) -> List[UserRecord]:
        search_filter = f"(&{self.user_filter}({self.other_emails_attribute}={escape_filter_chars(value)}))"
        return [self._to_user(entry) for entry in self._search(self.base_dn, search_filter, self._user_attributes)]

    def find_groups_with_description(self, value: str) -> List[GroupRecord]:
        search_filter = f"(&{self.group_filter}(description=*{escape_filter_chars(value)}*))"
        return [self._to_group(entry) for entry in self._search(self.base_dn, search_filter, self._group_attributes)]
