"""
LDAP adapter for diffsync
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from diffsync import Adapter

from models import DirectoryGroup, normalize_members


logger = logging.getLogger(__name__)


def _decode(value) -> str:
    if isinstance(value, bytes):
        return value.decode('utf-8')
    return value


@dataclass
class DirectoryGroupEntry:
    """A group entry as observed in the directory."""

    dn: str
    description: str = ""
    members: List[str] = field(default_factory=list)
    object_classes: List[str] = field(default_factory=list)

    @classmethod
    def from_search_result(cls, dn: str, attrs: Dict[str, list], member_attribute: str = "uniqueMember"):
        """Build an entry from a python-ldap (dn, attrs) search result."""
        # python-ldap keys attributes as the server returns them
        by_name = {key.lower(): values for key, values in attrs.items()}

        descriptions = by_name.get('description', [])
        return cls(
            dn=dn,
            description=_decode(descriptions[0]) if descriptions else "",
            members=[_decode(m) for m in by_name.get(member_attribute.lower(), [])],
            object_classes=[_decode(c) for c in by_name.get('objectclass', [])],
        )


class LDAPAdapter(Adapter):
    """
    DiffSync adapter for LDAP.
    Holds the observed state of a single group and collects the directory
    operations required to make it match a desired adapter.
    """

    group = DirectoryGroup
    top_level = ["group"]

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.pending_operations: List[Tuple[str, str]] = []

    def load_entry(self, group_name: str, entry: Optional[DirectoryGroupEntry]):
        """Load the observed group, or nothing when the group does not exist."""
        if entry is None:
            logger.debug(f"No directory entry for ldap-group {group_name}")
            return

        self.add(DirectoryGroup(
            group_name=group_name,
            description=entry.description,
            members=normalize_members(entry.members),
        ))
        logger.debug(f"Loaded ldap-group {group_name} from {entry.dn} with {len(entry.members)} members")
