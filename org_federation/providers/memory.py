"""
In-memory directory provider.

Keeps groups, users and memberships in dictionaries. It can be seeded from a
YAML fixture, which makes it useful for dry runs of the CLI and as the
directory behind the federation tests.

Fixture format:

    groups:
      - id: root
        display_name: Contoso
        description: ""
        members: [eng, alice]
    users:
      - id: alice
        display_name: Alice
        mail: alice@contoso.com
        other_emails: []
"""

import copy
import uuid
import logging
from dataclasses import asdict, fields as dataclass_fields
from typing import Dict, List, Any, Optional

import yaml

from .base import (
    DirectoryProvider, DirectoryAPIError, DirectoryNotFoundError,
    GroupRecord, UserRecord, MemberRecord, MemberKind
)

logger = logging.getLogger(__name__)


class MemoryDirectory(DirectoryProvider):
    """Dictionary-backed directory implementing the full provider contract."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config or {'name': 'memory'})
        self.groups: Dict[str, GroupRecord] = {}
        self.users: Dict[str, UserRecord] = {}
        self.members: Dict[str, List[str]] = {}

        fixture = self.config.get('fixture')
        if fixture:
            self.load_fixture(fixture)

    def load_fixture(self, path: str) -> None:
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise DirectoryAPIError(f"Directory fixture not found: {path}")
        except yaml.YAMLError as e:
            raise DirectoryAPIError(f"Invalid YAML in directory fixture {path}: {e}")

        if not isinstance(data, dict):
            raise DirectoryAPIError(f"Directory fixture {path} must be a mapping")

        for entry in data.get('groups') or []:
            entry = self._fixture_entry(entry, GroupRecord, path, extra=('members',))
            member_ids = entry.pop('members', None) or []
            self.add_group(GroupRecord(**entry), members=[str(m) for m in member_ids])
        for entry in data.get('users') or []:
            self.add_user(UserRecord(**self._fixture_entry(entry, UserRecord, path)))

        logger.info(f"Loaded {len(self.groups)} groups and {len(self.users)} users from {path}")

    @staticmethod
    def _fixture_entry(entry: Any, record_class, path: str, extra=()) -> Dict[str, Any]:
        kind = record_class.__name__
        if not isinstance(entry, dict):
            raise DirectoryAPIError(f"{kind} entries in {path} must be mappings, got {entry!r}")
        allowed = {f.name for f in dataclass_fields(record_class)} | set(extra)
        unknown = sorted(set(entry) - allowed)
        if unknown:
            raise DirectoryAPIError(f"Unknown {kind} fields in {path}: {', '.join(unknown)}")
        if not entry.get('id'):
            raise DirectoryAPIError(f"{kind} entry without id in {path}")
        entry = dict(entry)
        entry['id'] = str(entry['id'])
        return entry

    def add_group(self, group: GroupRecord, members: Optional[List[str]] = None) -> GroupRecord:
        if not group.id:
            group.id = str(uuid.uuid4())
        self.groups[group.id] = copy.deepcopy(group)
        self.members.setdefault(group.id, []).extend(members or [])
        return group

    def add_user(self, user: UserRecord) -> UserRecord:
        if user.other_emails is None:
            user.other_emails = []
        self.users[user.id] = copy.deepcopy(user)
        return user

    def _member_kind(self, object_id: str) -> MemberKind:
        if object_id in self.groups:
            return MemberKind.GROUP
        if object_id in self.users:
            return MemberKind.USER
        return MemberKind.OTHER

    def _group(self, group_id: str) -> GroupRecord:
        if group_id not in self.groups:
            raise DirectoryNotFoundError(f"Group {group_id} not found", status_code=404)
        return self.groups[group_id]

    def _user(self, user_id: str) -> UserRecord:
        if user_id not in self.users:
            raise DirectoryNotFoundError(f"User {user_id} not found", status_code=404)
        return self.users[user_id]

    # Records are copied on the way out so callers never alias stored state.

    def get_group(self, group_id: str) -> GroupRecord:
        return copy.deepcopy(self._group(group_id))

    def get_user(self, user_id: str) -> UserRecord:
        return copy.deepcopy(self._user(user_id))

    def list_group_members(self, group_id: str) -> List[MemberRecord]:
        self._group(group_id)
        return [MemberRecord(id=m, kind=self._member_kind(m)) for m in self.members.get(group_id, [])]

    def create_group(self, group: GroupRecord) -> GroupRecord:
        created = copy.deepcopy(group)
        created.id = str(uuid.uuid4())
        self.add_group(created)
        return copy.deepcopy(created)

    def link_member(self, parent_group_id: str, child_id: str) -> None:
        self._group(parent_group_id)
        if self._member_kind(child_id) is MemberKind.OTHER:
            raise DirectoryNotFoundError(f"Directory object {child_id} not found", status_code=404)
        members = self.members.setdefault(parent_group_id, [])
        if child_id in members:
            raise DirectoryAPIError(
                f"{child_id} is already a member of {parent_group_id}",
                status_code=400, code='Request_BadRequest'
            )
        members.append(child_id)

    def _patch(self, record, fields: Dict[str, Any]) -> None:
        known = asdict(record)
        for name, value in fields.items():
            if name == 'id' or name not in known:
                raise DirectoryAPIError(f"Field '{name}' cannot be updated", status_code=400)
            setattr(record, name, copy.deepcopy(value))

    def patch_group(self, group_id: str, fields: Dict[str, Any]) -> None:
        self._patch(self._group(group_id), fields)

    def patch_user(self, user_id: str, fields: Dict[str, Any]) -> None:
        self._patch(self._user(user_id), fields)

    def find_users_with_other_email(self, value: str) -> List[UserRecord]:
        return [copy.deepcopy(u) for u in self.users.values() if value in (u.other_emails or [])]

    def find_groups_with_description(self, value: str) -> List[GroupRecord]:
        return [copy.deepcopy(g) for g in self.groups.values() if value in (g.description or '')]
