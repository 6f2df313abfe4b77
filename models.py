"""
DiffSync models for directory group synchronization
"""

from typing import Iterable, List, Optional

from diffsync import DiffSyncModel


def normalize_members(members: Iterable[str]) -> List[str]:
    """Lowercase, deduplicate and sort member DNs for comparison."""
    return sorted({member.lower() for member in members})


def unique_members(members: Iterable[str]) -> List[str]:
    """Drop members that differ only in case, keeping the first spelling."""
    seen = set()
    unique = []
    for member in members:
        if member.lower() not in seen:
            seen.add(member.lower())
            unique.append(member)
    return unique


class DirectoryGroup(DiffSyncModel):
    """
    DiffSync model representing a directory group.
    Members are stored normalized so that case and ordering never count as drift.
    """
    _modelname = "group"
    _identifiers = ("group_name",)
    _attributes = ("description", "members")

    group_name: str
    description: str = ""
    members: List[str] = []

    @classmethod
    def create(cls, adapter, ids, attrs):
        """Queue the creation of this group on the target adapter."""
        if hasattr(adapter, 'pending_operations'):
            adapter.pending_operations.append(('create', ids['group_name']))

        return super().create(adapter=adapter, ids=ids, attrs=attrs)

    def update(self, attrs) -> Optional["DirectoryGroup"]:
        """Queue a modification of this group on the target adapter."""
        if hasattr(self.adapter, 'pending_operations'):
            self.adapter.pending_operations.append(('modify', self.group_name))

        return super().update(attrs)

