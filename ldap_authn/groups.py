"""
Group membership lookup for an authenticated user.
"""

import logging
from typing import List

from ldap_authn.filters import group_search_request

logger = logging.getLogger(__name__)


class GroupResolver:
    """
    Resolves the names of the groups that reference a user entry.

    The channel must already be bound as the service account.
    """

    def __init__(self, config):
        self.config = config

    def resolve(self, channel, user_dn: str) -> List[str]:
        """
        Search for groups listing user_dn as a member.

        Args:
            channel: Open DirectoryChannel bound as the service account
            user_dn: Distinguished name of the authenticated user

        Returns:
            Group names in directory response order, duplicates kept
        """
        request = group_search_request(self.config, user_dn)
        entries = channel.search(request)

        groups = []
        for entry in entries:
            name = entry.first(self.config.group_name_attribute)
            if name is None:
                logger.debug(f"Group {entry.dn} has no {self.config.group_name_attribute} attribute, skipping")
                continue
            groups.append(name)

        logger.info(f"Resolved {len(groups)} groups for {user_dn}")
        return groups
