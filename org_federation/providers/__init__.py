"""Directory provider integrations."""

from .base import (
    DirectoryProvider, DirectoryAPIError, DirectoryAuthenticationError, DirectoryNotFoundError,
    DirectoryTransientError, GroupRecord, UserRecord, MemberRecord, MemberKind
)

__all__ = [
    'DirectoryProvider', 'DirectoryAPIError', 'DirectoryAuthenticationError', 'DirectoryNotFoundError',
    'DirectoryTransientError', 'GroupRecord', 'UserRecord', 'MemberRecord', 'MemberKind',
]
