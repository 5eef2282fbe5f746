"""
Search filter composition for user and group lookups.

Every value that reaches a filter from outside (the username typed by the
caller, or a DN returned by the directory) is escaped before substitution so
that it is always compared literally.
"""

from typing import Tuple

import attrs
from ldap3 import SUBTREE
from ldap3.utils.conv import escape_filter_chars

USER_SEARCH_SIZE_LIMIT = 2
GROUP_SEARCH_SIZE_LIMIT = 0


@attrs.define(frozen=True, slots=True)
class SearchRequest:
    """A single subtree search against the directory."""

    base_dn: str
    filter: str
    attributes: Tuple[str, ...] = attrs.field(default=(), converter=tuple)
    size_limit: int = 0
    time_limit: int = 0
    scope: str = SUBTREE


def escape_filter_value(value: str) -> str:
    """
    Escape a value for use on the right-hand side of a filter item.

    Backslash, ``*``, ``(``, ``)`` and NUL are escaped as in RFC 4515; every
    non-ASCII character is additionally written as its escaped UTF-8 bytes.
    Lone surrogates are encoded as they are, so the result never matches a
    real value but escaping never fails.
    """
    escaped = escape_filter_chars(value)
    return ''.join(
        char if ord(char) < 0x80 else ''.join(f"\\{byte:02x}" for byte in char.encode('utf-8', 'surrogatepass'))
        for char in escaped
    )


def is_well_formed_filter(text: str) -> bool:
    """Check that text is exactly one parenthesized filter with balanced parentheses."""
    if not text or text[0] != '(' or text[-1] != ')':
        return False
    depth = 0
    for position, char in enumerate(text):
        if char == '(':
            depth += 1
        elif char == ')':
            depth -= 1
            if depth < 0:
                return False
            # A closed top-level filter must be the end of the string
            if depth == 0 and position != len(text) - 1:
                return False
    return depth == 0 and '()' not in text


def compile_user_filter(config, username: str) -> str:
    return f"(&{config.user_search_filter}({config.user_attribute}={escape_filter_value(username)}))"


def compile_group_filter(config, user_dn: str) -> str:
    return f"(&{config.group_search_filter}({config.group_member_attribute}={escape_filter_value(user_dn)}))"


def user_search_request(config, username: str) -> SearchRequest:
    """
    Build the search that locates a user entry by name.

    At most two entries are requested: one is a match, two means the name is
    ambiguous and the attempt must be rejected.
    """
    return SearchRequest(
        base_dn=config.user_search_base,
        filter=compile_user_filter(config, username),
        attributes=(config.user_attribute,),
        size_limit=USER_SEARCH_SIZE_LIMIT,
        time_limit=config.search_time_limit,
    )


def group_search_request(config, user_dn: str) -> SearchRequest:
    """Build the search for every group that lists user_dn as a member."""
    return SearchRequest(
        base_dn=config.group_search_base,
        filter=compile_group_filter(config, user_dn),
        attributes=(config.group_name_attribute,),
        size_limit=GROUP_SEARCH_SIZE_LIMIT,
        time_limit=config.search_time_limit,
    )
