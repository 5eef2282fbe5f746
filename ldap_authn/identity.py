"""
Resolved identity returned to the authorization layer.
"""

from typing import Any, Dict, Iterable, Tuple

import attrs


@attrs.define(frozen=True, slots=True)
class ResolvedIdentity:
    """The outcome of a successful authentication attempt."""

    distinguished_name: str
    username: str
    groups: Tuple[str, ...] = attrs.field(default=(), converter=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'distinguished_name': self.distinguished_name,
            'username': self.username,
            'groups': list(self.groups),
        }


def assemble_identity(distinguished_name: str, username: str, groups: Iterable[str]) -> ResolvedIdentity:
    return ResolvedIdentity(distinguished_name=distinguished_name, username=username, groups=groups)
