"""
Targets, departments and users backed by a DirectoryProvider.

Each supported provider gets its own Target class, chosen from the target's
configured ``type`` when it is authenticated. Departments and users are thin
views holding a reference to their target and the provider record they were
read from.
"""

import logging
from typing import Dict, Any, List, Optional, Type, Union, Iterable

from org_federation.config import ConfigurationError
from org_federation.identity import (
    DELIMITER, ExternalIdentity, IdentityKind, from_delimited, from_string_list, parse_string, to_delimited
)
from org_federation.logging_setup import security_logger
from org_federation.providers.base import (
    DirectoryProvider, DirectoryAPIError, DirectoryNotFoundError, GroupRecord, UserRecord, MemberKind
)
from org_federation.providers.azure_ad import AzureADDirectory
from org_federation.providers.ldap import LDAPDirectory
from org_federation.providers.memory import MemoryDirectory
from org_federation.target import (
    Target, UnionDepartment, UnionUser, DepartmentCreateOptions, StoragePolicy, apply_storage_policy,
    AuthError, NotFoundError, AmbiguousLookupError, CreateError, LinkError, PatchError
)

logger = logging.getLogger(__name__)

PLACEHOLDER_MAIL_NICKNAME = 'placeholder'

IdentityLike = Union[ExternalIdentity, str]


def _to_identity(value: IdentityLike) -> ExternalIdentity:
    if isinstance(value, ExternalIdentity):
        return value
    return parse_string(value)


def _to_identities(values: Iterable[IdentityLike]) -> List[ExternalIdentity]:
    return [_to_identity(value) for value in values]


class DirectoryDepartment(UnionDepartment):
    """
    A directory group viewed as a department.

    External identities live in the group description as a comma-joined list.
    The description is owned by the federation layer, so writes replace it
    (StoragePolicy.OVERWRITE).
    """

    identity_policy = StoragePolicy.OVERWRITE

    def __init__(self, target: 'DirectoryTarget', raw: GroupRecord):
        self.target = target
        self.raw = raw

    @property
    def provider(self) -> DirectoryProvider:
        return self.target.provider

    def name(self) -> str:
        return self.raw.display_name

    def department_id(self) -> str:
        return self.raw.id

    def external_identity(self) -> ExternalIdentity:
        return self.target.mint_identity(IdentityKind.DEPARTMENT, self.raw.id)

    def _member_ids(self, kind: MemberKind) -> List[str]:
        return [m.id for m in self.provider.list_group_members(self.raw.id) if m.kind is kind]

    def sub_departments(self) -> List[UnionDepartment]:
        """
        Direct child groups, each fully fetched.

        The membership listing only carries ids and type tags, so every child
        costs one extra get_group call.
        """
        return [self.target.wrap_group(self.provider.get_group(group_id))
                for group_id in self._member_ids(MemberKind.GROUP)]

    def users(self) -> List[UnionUser]:
        return [self.target.wrap_user(self.provider.get_user(user_id))
                for user_id in self._member_ids(MemberKind.USER)]

    def create_sub_department(self, options: DepartmentCreateOptions) -> UnionDepartment:
        """
        Create a security group and link it as a member of this department.

        Raises:
            CreateError: If the group could not be created
            LinkError: If the group was created but not linked; the error
                carries the new department
        """
        if not options.name:
            raise CreateError("Department name is required")

        template = GroupRecord(
            id=None,
            display_name=options.name,
            mail_enabled=False,
            mail_nickname=PLACEHOLDER_MAIL_NICKNAME,
            security_enabled=True,
        )

        try:
            created = self.provider.create_group(template)
        except DirectoryAPIError as e:
            logger.error(f"Create group '{options.name}' failed in {self.target.name}: {e}")
            raise CreateError(f"Create group '{options.name}' failed: {e}") from e

        department = self.target.wrap_group(created)

        try:
            self.provider.link_member(self.raw.id, created.id)
        except DirectoryAPIError as e:
            logger.error(f"Link group membership failed for {created.id} under {self.raw.id}: "
                         f"code={e.code} message={e.message}")
            security_logger.log_department_created(self.target.name, self.raw.id, created.id, linked=False)
            raise LinkError(
                f"Link group membership failed: {e}", department,
                code=e.code, provider_message=e.message
            ) from e

        security_logger.log_department_created(self.target.name, self.raw.id, created.id, linked=True)
        logger.info(f"Created department '{options.name}' ({created.id}) under {self.raw.id}")
        return department

    def get_external_identities(self) -> List[ExternalIdentity]:
        return from_delimited(self.raw.description)

    def set_external_identities(self, ext_ids: List[IdentityLike]) -> None:
        identities = _to_identities(ext_ids)
        existing = (self.raw.description or '').split(DELIMITER)
        description = to_delimited(apply_storage_policy(existing, identities, self.identity_policy))

        try:
            self.provider.patch_group(self.raw.id, {'description': description})
        except DirectoryAPIError as e:
            security_logger.log_identity_update('department', self.raw.id, self.target.name, len(identities), False)
            raise PatchError(f"Updating external identities of group {self.raw.id} failed: {e}") from e

        self.raw.description = description
        security_logger.log_identity_update('department', self.raw.id, self.target.name, len(identities), True)

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.raw.id} {self.raw.display_name!r}>"


class DirectoryUser(UnionUser):
    """
    A directory user.

    External identities live in the other-emails list next to real secondary
    addresses, so writes keep every entry that is not an identity
    (StoragePolicy.MERGE).
    """

    identity_policy = StoragePolicy.MERGE

    def __init__(self, target: 'DirectoryTarget', raw: UserRecord):
        self.target = target
        self.raw = raw

    def external_identity(self) -> ExternalIdentity:
        return self.target.mint_identity(IdentityKind.USER, self.raw.id)

    def user_id(self) -> str:
        return self.raw.id

    def user_name(self) -> str:
        return self.raw.display_name

    def user_email(self) -> Optional[str]:
        return self.raw.mail

    def get_external_identities(self) -> List[ExternalIdentity]:
        return from_string_list(self.raw.other_emails)

    def set_external_identities(self, ext_ids: List[IdentityLike]) -> None:
        identities = _to_identities(ext_ids)
        other_emails = apply_storage_policy(self.raw.other_emails, identities, self.identity_policy)

        try:
            self.target.provider.patch_user(self.raw.id, {'other_emails': other_emails})
        except DirectoryAPIError as e:
            security_logger.log_identity_update('user', self.raw.id, self.target.name, len(identities), False)
            raise PatchError(f"Updating external identities of user {self.raw.id} failed: {e}") from e

        self.raw.other_emails = other_emails
        security_logger.log_identity_update('user', self.raw.id, self.target.name, len(identities), True)

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.raw.id} {self.raw.display_name!r}>"


class DirectoryTarget(Target):
    """
    Target backed by a DirectoryProvider.

    Subclasses pick the provider; department_class and user_class pick the
    views handed out for its groups and users.
    """

    provider_class: Type[DirectoryProvider] = None
    department_class: Type[DirectoryDepartment] = DirectoryDepartment
    user_class: Type[DirectoryUser] = DirectoryUser

    def __init__(self, config: Dict[str, Any], provider: DirectoryProvider):
        self.config = config
        self.slug = config['slug']
        self.platform = config['platform']
        self.root_group_id = config['root_group_id']
        self.name = config.get('name') or f"{self.slug}.{self.platform}"
        self.provider = provider

    @classmethod
    def create_provider(cls, config: Dict[str, Any]) -> DirectoryProvider:
        try:
            return cls.provider_class(config)
        except KeyError as e:
            raise ConfigurationError(f"Missing required field {e} for target {config.get('name', 'unknown')}")

    @classmethod
    def authenticate(cls, config: Dict[str, Any]) -> 'DirectoryTarget':
        provider = cls.create_provider(config)
        target_name = config.get('name', 'unknown')
        principal = config.get('client_id') or config.get('bind_dn') or '-'

        try:
            target = cls(config, provider)
        except KeyError as e:
            provider.close()
            raise ConfigurationError(f"Missing required field {e} for target {target_name}")

        try:
            provider.authenticate()
        except DirectoryAPIError as e:
            security_logger.log_authentication_attempt(target_name, principal, False)
            provider.close()
            raise AuthError(f"Authentication failed for target {target_name}: {e}") from e

        security_logger.log_authentication_attempt(target_name, principal, True)
        return target

    def get_target_slug(self) -> str:
        return self.slug

    def get_platform(self) -> str:
        return self.platform

    def wrap_group(self, record: GroupRecord) -> DirectoryDepartment:
        return self.department_class(self, record)

    def wrap_user(self, record: UserRecord) -> DirectoryUser:
        return self.user_class(self, record)

    def root_department(self) -> DirectoryDepartment:
        try:
            record = self.provider.get_group(self.root_group_id)
        except DirectoryNotFoundError as e:
            raise NotFoundError(f"Root group {self.root_group_id} not found in {self.name}") from e
        return self.wrap_group(record)

    def lookup_user_by_external_identity(self, ext_id: IdentityLike) -> DirectoryUser:
        """
        Find the single user carrying ext_id.

        Raises:
            NotFoundError: If no user carries it
            AmbiguousLookupError: If more than one user carries it
        """
        ext_id = _to_identity(ext_id)
        candidates = self.provider.find_users_with_other_email(str(ext_id))
        matches = [r for r in candidates if ext_id in from_string_list(r.other_emails)]
        return self.wrap_user(self._single(matches, 'user', ext_id))

    def lookup_department_by_external_identity(self, ext_id: IdentityLike) -> DirectoryDepartment:
        """
        Find the single department carrying ext_id.

        Providers may match descriptions by substring, so every candidate is
        confirmed by decoding its description.

        Raises:
            NotFoundError: If no department carries it
            AmbiguousLookupError: If more than one department carries it
        """
        ext_id = _to_identity(ext_id)
        candidates = self.provider.find_groups_with_description(str(ext_id))
        matches = [r for r in candidates if ext_id in from_delimited(r.description)]
        return self.wrap_group(self._single(matches, 'department', ext_id))

    def _single(self, matches: List[Any], kind: str, ext_id: ExternalIdentity):
        if not matches:
            raise NotFoundError(f"No {kind} in {self.name} carries external identity {ext_id}")
        if len(matches) > 1:
            raise AmbiguousLookupError(
                f"Cannot identify {kind}: {len(matches)} entries in {self.name} carry {ext_id}",
                matches=len(matches)
            )
        return matches[0]

    def close(self) -> None:
        self.provider.close()

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.name}>"


class AzureADTarget(DirectoryTarget):
    provider_class = AzureADDirectory


class LDAPTarget(DirectoryTarget):
    provider_class = LDAPDirectory


class MemoryTarget(DirectoryTarget):
    provider_class = MemoryDirectory


TARGET_TYPES: Dict[str, Type[DirectoryTarget]] = {
    'azure_ad': AzureADTarget,
    'ldap': LDAPTarget,
    'memory': MemoryTarget,
}


def authenticate(config: Dict[str, Any]) -> DirectoryTarget:
    """
    Create and authenticate the target described by config.

    Raises:
        ConfigurationError: If the target type is unknown
        AuthError: If authentication fails
    """
    target_type = config.get('type')
    target_class = TARGET_TYPES.get(target_type)
    if target_class is None:
        raise ConfigurationError(
            f"Unknown target type '{target_type}' (expected one of: {', '.join(sorted(TARGET_TYPES))})"
        )
    logger.debug(f"Authenticating target {config.get('name')} as {target_class.__name__}")
    return target_class.authenticate(config)
