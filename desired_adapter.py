"""
Desired-state adapter for diffsync
"""

import logging
from typing import Iterable

from diffsync import Adapter

from models import DirectoryGroup, normalize_members


logger = logging.getLogger(__name__)


class DesiredGroupAdapter(Adapter):
    """
    DiffSync adapter for the desired state of a group.
    Acts as the source side when converging the directory.
    """

    group = DirectoryGroup
    top_level = ["group"]

    def load_group(self, group_name: str, comment: str, members: Iterable[str]):
        self.add(DirectoryGroup(
            group_name=group_name,
            description=comment,
            members=normalize_members(members),
        ))
        logger.debug(f"Loaded desired state for ldap-group {group_name}")
