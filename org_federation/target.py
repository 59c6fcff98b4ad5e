"""
Provider-agnostic interfaces for federated directories.

A Target is an authenticated handle on one directory instance scoped to one
organization. UnionDepartment and UnionUser are views over that directory's
groups and users. Concrete implementations live in org_federation.directory.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from org_federation.identity import (
    ExternalIdentity, IdentityKind, encode, is_external_identity
)


class FederationError(Exception):
    """Base exception for federation errors."""
    pass


class AuthError(FederationError):
    """Raised when a target cannot establish an authenticated session."""
    pass


class NotFoundError(FederationError):
    """Raised when a lookup matches nothing."""
    pass


class AmbiguousLookupError(FederationError):
    """Raised when an external identity resolves to more than one entity."""

    def __init__(self, message: str, matches: int):
        super().__init__(message)
        self.matches = matches


class CreateError(FederationError):
    """Raised when a sub-department could not be created."""
    pass


class LinkError(FederationError):
    """
    Raised when a created sub-department could not be linked to its parent.

    The group exists but is orphaned; ``department`` is the handle for it so
    the caller can retry the link or clean up.
    """

    def __init__(self, message: str, department: 'UnionDepartment',
                 code: Optional[str] = None, provider_message: Optional[str] = None):
        super().__init__(message)
        self.department = department
        self.code = code
        self.message = provider_message


class PatchError(FederationError):
    """Raised when external identities could not be written back."""
    pass


class StoragePolicy(Enum):
    """
    How set_external_identities treats the existing contents of the field.

    OVERWRITE: the field holds identities only and is replaced wholesale.
    MERGE: the field is shared with other data; non-identity entries are kept.
    """
    OVERWRITE = 'overwrite'
    MERGE = 'merge'


def apply_storage_policy(existing: Iterable[str], identities: Iterable[ExternalIdentity],
                         policy: StoragePolicy) -> List[str]:
    """Compute the new field entries for a write of identities."""
    new_entries = [str(identity) for identity in identities]
    if policy is StoragePolicy.OVERWRITE:
        return new_entries
    kept = [entry for entry in existing or [] if not is_external_identity(entry.strip())]
    return kept + new_entries


@dataclass
class DepartmentCreateOptions:
    name: str


class Target(ABC):
    """An authenticated directory instance for one organization."""

    @classmethod
    @abstractmethod
    def authenticate(cls, config: Dict[str, Any]) -> 'Target':
        """
        Build an authenticated target from its configuration.

        Raises:
            AuthError: If the credential exchange fails
        """
        pass

    @abstractmethod
    def get_target_slug(self) -> str:
        pass

    @abstractmethod
    def get_platform(self) -> str:
        pass

    @abstractmethod
    def root_department(self) -> 'UnionDepartment':
        """
        Resolve the configured root group.

        Raises:
            NotFoundError: If the root group does not exist
        """
        pass

    @abstractmethod
    def lookup_user_by_external_identity(self, ext_id: ExternalIdentity) -> 'UnionUser':
        pass

    @abstractmethod
    def lookup_department_by_external_identity(self, ext_id: ExternalIdentity) -> 'UnionDepartment':
        pass

    def mint_identity(self, kind: IdentityKind, local_id: str) -> ExternalIdentity:
        """The external identity of one of this target's own entities."""
        return encode(kind, local_id, self.get_target_slug(), self.get_platform())

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class UnionDepartment(ABC):
    """A department (directory group) of some target."""

    identity_policy = StoragePolicy.OVERWRITE

    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def department_id(self) -> str:
        """Provider-native group id (not an external identity)."""
        pass

    @abstractmethod
    def external_identity(self) -> ExternalIdentity:
        pass

    @abstractmethod
    def sub_departments(self) -> List['UnionDepartment']:
        pass

    @abstractmethod
    def users(self) -> List['UnionUser']:
        pass

    @abstractmethod
    def create_sub_department(self, options: DepartmentCreateOptions) -> 'UnionDepartment':
        pass

    @abstractmethod
    def get_external_identities(self) -> List[ExternalIdentity]:
        pass

    @abstractmethod
    def set_external_identities(self, ext_ids: List[ExternalIdentity]) -> None:
        pass


class UnionUser(ABC):
    """A user of some target."""

    identity_policy = StoragePolicy.MERGE

    @abstractmethod
    def external_identity(self) -> ExternalIdentity:
        """This user's own identity within its target, derived rather than stored."""
        pass

    @abstractmethod
    def user_id(self) -> str:
        pass

    @abstractmethod
    def user_name(self) -> str:
        pass

    @abstractmethod
    def user_email(self) -> Optional[str]:
        pass

    @abstractmethod
    def get_external_identities(self) -> List[ExternalIdentity]:
        pass

    @abstractmethod
    def set_external_identities(self, ext_ids: List[ExternalIdentity]) -> None:
        pass


__all__ = [
    'FederationError', 'AuthError', 'NotFoundError', 'AmbiguousLookupError', 'CreateError',
    'LinkError', 'PatchError', 'StoragePolicy', 'apply_storage_policy', 'DepartmentCreateOptions',
    'Target', 'UnionDepartment', 'UnionUser',
]
