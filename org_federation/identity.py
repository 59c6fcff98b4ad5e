"""
External identity encoding and parsing.

An external identity is a canonical string correlating an entity with its
representation in one directory:

    ei.<kind>.<local-id>@<org-slug>.<platform>

The same storage fields that hold identities (a user's other emails, a group's
description) may also hold ordinary data, so parsing doubles as the filter that
tells the two apart.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Union

PREFIX = 'ei'
DELIMITER = ','

_LOCAL_ID = r'[^@,\s]+'
_SEGMENT = r'[^.@,\s]+'

_IDENTITY_RE = re.compile(
    rf'{PREFIX}\.(?P<kind>[a-z]+)\.(?P<local_id>{_LOCAL_ID})'
    rf'@(?P<slug>{_SEGMENT})\.(?P<platform>{_SEGMENT})'
)


class FormatError(ValueError):
    """Raised when a string is not a well-formed external identity."""
    pass


class IdentityKind(str, Enum):
    USER = 'user'
    DEPARTMENT = 'department'


@dataclass(frozen=True)
class ExternalIdentity:
    """
    A decoded external identity.

    Instances compare by value and render to their canonical string with
    ``str()``, which is what gets persisted.
    """

    kind: IdentityKind
    local_id: str
    slug: str
    platform: str

    def encode(self) -> str:
        return f"{PREFIX}.{self.kind.value}.{self.local_id}@{self.slug}.{self.platform}"

    def __str__(self) -> str:
        return self.encode()

    @classmethod
    def parse(cls, value: str) -> 'ExternalIdentity':
        return parse_string(value)


def encode(kind: Union[IdentityKind, str], local_id: str, slug: str, platform: str) -> ExternalIdentity:
    """
    Build an external identity from its parts.

    Args:
        kind: 'user' or 'department'
        local_id: Provider-native id of the entity
        slug: Organization slug of the owning target
        platform: Platform name of the owning target

    Returns:
        The identity; ``str()`` of it is the canonical form

    Raises:
        FormatError: If a part would make the canonical form unparseable
    """
    try:
        kind = IdentityKind(kind)
    except ValueError:
        raise FormatError(f"Unknown identity kind: {kind!r}")

    if not local_id or not re.fullmatch(_LOCAL_ID, local_id):
        raise FormatError(f"Invalid local id for external identity: {local_id!r}")
    for label, value in (('slug', slug), ('platform', platform)):
        if not value or not re.fullmatch(_SEGMENT, value):
            raise FormatError(f"Invalid {label} for external identity: {value!r}")

    return ExternalIdentity(kind, local_id, slug, platform)


def parse_string(value: str) -> ExternalIdentity:
    """
    Decode the canonical string form.

    Raises:
        FormatError: If value does not match the grammar
    """
    if not isinstance(value, str):
        raise FormatError(f"External identity must be a string, got {type(value).__name__}")

    match = _IDENTITY_RE.fullmatch(value)
    if not match:
        raise FormatError(f"Not an external identity: {value!r}")

    try:
        kind = IdentityKind(match.group('kind'))
    except ValueError:
        raise FormatError(f"Unknown identity kind in {value!r}")

    return ExternalIdentity(kind, match.group('local_id'), match.group('slug'), match.group('platform'))


def is_external_identity(value: str) -> bool:
    try:
        parse_string(value)
    except FormatError:
        return False
    return True


def from_string_list(values: Optional[Iterable[str]]) -> List[ExternalIdentity]:
    """Keep the entries that parse as identities, in their original order."""
    identities = []
    for value in values or []:
        if not isinstance(value, str):
            continue
        try:
            identities.append(parse_string(value.strip()))
        except FormatError:
            continue
    return identities


def from_delimited(text: Optional[str]) -> List[ExternalIdentity]:
    """Decode a comma-joined list such as a group description."""
    if not text:
        return []
    return from_string_list(text.split(DELIMITER))


def to_delimited(entries: Iterable[Union[ExternalIdentity, str]]) -> str:
    """Join identities (or their canonical strings) into the comma-joined storage form."""
    return DELIMITER.join(str(entry) for entry in entries)
