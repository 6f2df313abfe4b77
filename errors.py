"""
Error taxonomy for directory group synchronization
"""

from typing import Optional


class DirectorySyncError(Exception):
    """Base class for every failure raised while converging a group."""

    needs_intervention = False

    def __init__(self, message: str, name: Optional[str] = None):
        super().__init__(message)
        self.name = name


class DirectoryUnavailable(DirectorySyncError):
    """Connection, bind, timeout or search failure."""


class AmbiguousResult(DirectorySyncError):
    """The group search filter matched more than one entry."""

    needs_intervention = True


class GroupNotFound(DirectorySyncError):
    """The group to delete does not exist in the directory."""


class DirectoryWriteFailed(DirectorySyncError):
    """The directory rejected an add, modify or delete request."""

    needs_intervention = True


class PersistConflict(DirectorySyncError):
    """The desired-state object changed since it was fetched."""
