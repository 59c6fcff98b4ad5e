"""
Azure AD (Microsoft Graph) directory provider.

Implements the DirectoryProvider contract against the Graph v1.0 REST API using
OAuth2 client credentials. Group descriptions and user otherMails are the
attributes the federation layer annotates.
"""

import logging
from typing import Dict, List, Any, Iterator
from urllib.parse import urlencode, quote

from .base import (
    HTTPDirectoryBase, DirectoryAPIError, GroupRecord, UserRecord, MemberRecord, MemberKind
)

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = 'https://graph.microsoft.com/v1.0'
GRAPH_SCOPE = 'https://graph.microsoft.com/.default'
AUTHORITY_HOST = 'login.microsoftonline.com'

GROUP_FIELDS = ['id', 'displayName', 'description', 'mailEnabled', 'mailNickname', 'securityEnabled']
USER_FIELDS = ['id', 'displayName', 'mail', 'otherMails']

ODATA_MEMBER_KINDS = {
    '#microsoft.graph.group': MemberKind.GROUP,
    '#microsoft.graph.user': MemberKind.USER,
}

# GroupRecord/UserRecord attribute -> Graph property
GROUP_PATCH_FIELDS = {'display_name': 'displayName', 'description': 'description'}
USER_PATCH_FIELDS = {'display_name': 'displayName', 'mail': 'mail', 'other_emails': 'otherMails'}


def _odata_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class AzureADDirectory(HTTPDirectoryBase):
    """
    Microsoft Graph client for groups, users and memberships.

    Configuration keys: tenant_id, client_id, client_secret, and optionally
    base_url, authority_host, verify_ssl, truststore_file, timeout.
    """

    def __init__(self, config: Dict[str, Any]):
        config = dict(config)
        config.setdefault('base_url', GRAPH_BASE_URL)
        super().__init__(config)

        self.tenant_id = config['tenant_id']
        self.authority_host = config.get('authority_host', AUTHORITY_HOST)

        logger.info(f"Initialized Azure AD directory client for {self.name}")

    @property
    def token_url(self) -> str:
        return f"https://{self.authority_host}/{self.tenant_id}/oauth2/v2.0/token"

    @property
    def token_scope(self) -> str:
        return self.config.get('scope', GRAPH_SCOPE)

    # Record conversion

    @staticmethod
    def _to_group(data: Dict[str, Any]) -> GroupRecord:
        return GroupRecord(
            id=data.get('id'),
            display_name=data.get('displayName') or '',
            description=data.get('description'),
            mail_enabled=bool(data.get('mailEnabled', False)),
            mail_nickname=data.get('mailNickname'),
            security_enabled=bool(data.get('securityEnabled', False)),
        )

    @staticmethod
    def _to_user(data: Dict[str, Any]) -> UserRecord:
        return UserRecord(
            id=data.get('id'),
            display_name=data.get('displayName') or '',
            mail=data.get('mail'),
            other_emails=list(data.get('otherMails') or []),
        )

    @staticmethod
    def _to_member(data: Dict[str, Any]) -> MemberRecord:
        kind = ODATA_MEMBER_KINDS.get(data.get('@odata.type'), MemberKind.OTHER)
        return MemberRecord(id=data.get('id'), kind=kind)

    def _query(self, path: str, params: Dict[str, str]) -> str:
        return f"{path}?{urlencode(params, quote_via=quote, safe='$,')}"

    def _get_paged(self, path: str) -> Iterator[Dict[str, Any]]:
        """Yield every item of a collection, following @odata.nextLink."""
        next_link = path
        while next_link:
            response = self.request('GET', next_link)
            for item in response.get('value', []):
                yield item
            next_link = response.get('@odata.nextLink')

    # DirectoryProvider

    def get_group(self, group_id: str) -> GroupRecord:
        path = self._query(f"/groups/{quote(group_id)}", {'$select': ','.join(GROUP_FIELDS)})
        return self._to_group(self.request('GET', path))

    def get_user(self, user_id: str) -> UserRecord:
        path = self._query(f"/users/{quote(user_id)}", {'$select': ','.join(USER_FIELDS)})
        return self._to_user(self.request('GET', path))

    def list_group_members(self, group_id: str) -> List[MemberRecord]:
        logger.debug(f"Listing members of group {group_id} in {self.name}")
        path = self._query(f"/groups/{quote(group_id)}/members", {'$select': 'id'})
        return [self._to_member(item) for item in self._get_paged(path)]

    def create_group(self, group: GroupRecord) -> GroupRecord:
        body = {
            'displayName': group.display_name,
            'mailEnabled': group.mail_enabled,
            'mailNickname': group.mail_nickname,
            'securityEnabled': group.security_enabled,
        }
        if group.description:
            body['description'] = group.description

        created = self._to_group(self.request('POST', '/groups', body=body))
        if not created.id:
            raise DirectoryAPIError(f"Group creation response missing id from {self.name}")
        logger.info(f"Created group '{group.display_name}' with id {created.id} in {self.name}")
        return created

    def link_member(self, parent_group_id: str, child_id: str) -> None:
        body = {'@odata.id': f"{self.base_url}/directoryObjects/{child_id}"}
        self.request('POST', f"/groups/{quote(parent_group_id)}/members/$ref", body=body)
        logger.info(f"Linked {child_id} as member of group {parent_group_id} in {self.name}")

    def _patch_body(self, fields: Dict[str, Any], mapping: Dict[str, str]) -> Dict[str, Any]:
        body = {}
        for name, value in fields.items():
            if name not in mapping:
                raise DirectoryAPIError(f"Field '{name}' cannot be updated through {self.name}")
            body[mapping[name]] = value
        return body

    def patch_group(self, group_id: str, fields: Dict[str, Any]) -> None:
        body = self._patch_body(fields, GROUP_PATCH_FIELDS)
        # Graph rejects an empty description; null clears it
        if 'description' in body and not body['description']:
            body['description'] = None
        self.request('PATCH', f"/groups/{quote(group_id)}", body=body)

    def patch_user(self, user_id: str, fields: Dict[str, Any]) -> None:
        body = self._patch_body(fields, USER_PATCH_FIELDS)
        self.request('PATCH', f"/users/{quote(user_id)}", body=body)

    def find_users_with_other_email(self, value: str) -> List[UserRecord]:
        path = self._query('/users', {
            '$filter': f"otherMails/any(id:id eq {_odata_quote(value)})",
            '$select': ','.join(USER_FIELDS),
        })
        return [self._to_user(item) for item in self._get_paged(path)]

    def find_groups_with_description(self, value: str) -> List[GroupRecord]:
        # Graph cannot filter on description, so scan and filter here
        path = self._query('/groups', {'$select': ','.join(GROUP_FIELDS)})
        matches = []
        for item in self._get_paged(path):
            if value in (item.get('description') or ''):
                matches.append(self._to_group(item))
        logger.debug(f"Description scan for '{value}' matched {len(matches)} groups in {self.name}")
        return matches
