"""
Desired-state stores with optimistic concurrency and change notification
"""

import copy
import json
import logging
import os
import threading
from typing import Callable, Dict, List, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from errors import PersistConflict
from resources import DesiredGroup, SchemeRegistry


logger = logging.getLogger(__name__)


class NotFound(Exception):
    """The requested desired-state object does not exist."""


class DesiredStateStore:
    """
    Common semantics of a desired-state store.

    Subclasses provide the storage primitives; this class enforces
    resource versions, finalizer-gated removal and watch notifications.
    Every object handed out is a copy.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._watchers: List[Callable[[str], None]] = []

    # Storage primitives

    def _load(self, name: str) -> Optional[DesiredGroup]:
        raise NotImplementedError

    def _save(self, group: DesiredGroup):
        raise NotImplementedError

    def _remove(self, name: str):
        raise NotImplementedError

    def _names(self) -> List[str]:
        raise NotImplementedError

    # Public interface

    def watch(self, callback: Callable[[str], None]):
        """Register a callable invoked with the group name on every change."""
        self._watchers.append(callback)

    def _notify(self, name: str):
        for callback in self._watchers:
            callback(name)

    def list(self) -> List[str]:
        with self._lock:
            return sorted(self._names())

    def get(self, name: str) -> DesiredGroup:
        with self._lock:
            group = self._load(name)
        if group is None:
            raise NotFound(f"Group {name} not found")
        return copy.deepcopy(group)

    def create(self, group: DesiredGroup) -> DesiredGroup:
        with self._lock:
            if self._load(group.name) is not None:
                raise PersistConflict(f"Group {group.name} already exists", group.name)

            stored = copy.deepcopy(group)
            stored.resource_version = 1
            self._save(stored)

        logger.debug(f"Created desired state for ldap-group {group.name}")
        self._notify(group.name)
        return copy.deepcopy(stored)

    def _commit(self, group: DesiredGroup, keep_stored_spec: bool) -> DesiredGroup:
        with self._lock:
            current = self._load(group.name)
            if current is None:
                raise NotFound(f"Group {group.name} not found")

            if current.resource_version != group.resource_version:
                raise PersistConflict(
                    f"Group {group.name} was modified (version {current.resource_version}, "
                    f"got {group.resource_version})",
                    group.name,
                )

            stored = copy.deepcopy(group)
            if keep_stored_spec:
                stored.comment = current.comment
                stored.members = list(current.members)
            stored.resource_version = current.resource_version + 1
            # Deletion cannot be withdrawn once requested
            stored.deletion_requested = current.deletion_requested or group.deletion_requested

            if stored.deletion_requested and not stored.finalizers:
                self._remove(group.name)
                logger.info(f"Removed desired state for ldap-group {group.name}")
            else:
                self._save(stored)

        self._notify(group.name)
        return copy.deepcopy(stored)

    def update(self, group: DesiredGroup) -> DesiredGroup:
        """
        Store a new revision of the whole group, spec included.

        Raises PersistConflict when the group changed since it was read. A
        group marked for deletion is removed once its last finalizer is gone.
        """
        return self._commit(group, keep_stored_spec=False)

    def update_status(self, group: DesiredGroup) -> DesiredGroup:
        """
        Store only the finalizers and status of the group.

        Comment, members and the deletion request are taken from the stored
        revision, so edits that did not bump the resource version survive.
        """
        return self._commit(group, keep_stored_spec=True)

    def mark_deleted(self, name: str):
        """Request deletion; removal waits until all finalizers are cleared."""
        with self._lock:
            current = self._load(name)
            if current is None:
                raise NotFound(f"Group {name} not found")

            if not current.finalizers:
                self._remove(name)
                logger.info(f"Removed desired state for ldap-group {name}")
            elif not current.deletion_requested:
                current.deletion_requested = True
                current.resource_version += 1
                self._save(current)
                logger.info(f"Marked ldap-group {name} for deletion")

        self._notify(name)


class MemoryStore(DesiredStateStore):
    """Desired-state store kept in process memory."""

    def __init__(self):
        super().__init__()
        self._groups: Dict[str, DesiredGroup] = {}

    def _load(self, name):
        return self._groups.get(name)

    def _save(self, group):
        self._groups[group.name] = copy.deepcopy(group)

    def _remove(self, name):
        self._groups.pop(name, None)

    def _names(self):
        return list(self._groups)


class GroupDocumentHandler(FileSystemEventHandler):
    """Turns filesystem events in the groups directory into store notifications."""

    def __init__(self, store: "FileStore"):
        self.store = store

    def _group_name(self, path) -> Optional[str]:
        if isinstance(path, bytes):
            path = path.decode()
        directory, filename = os.path.split(path)
        if os.path.abspath(directory) != os.path.abspath(self.store.directory):
            return None
        if not filename.endswith(".json") or filename.startswith('.'):
            return None
        return filename[:-len(".json")]

    def _changed(self, path):
        name = self._group_name(path)
        if name is not None:
            logger.debug(f"Detected change to ldap-group {name}")
            self.store._notify(name)

    def on_created(self, event):
        if not event.is_directory:
            self._changed(event.src_path)

    def on_modified(self, event):
        if not event.is_directory:
            self._changed(event.src_path)

    def on_moved(self, event):
        if not event.is_directory:
            self._changed(event.dest_path)


class FileStore(DesiredStateStore):
    """
    Desired-state store backed by one JSON document per group.

    Documents are decoded through the given scheme registry. Edits made by
    other processes are reported to watchers once start_watching() runs.
    """

    def __init__(self, directory: str, registry: SchemeRegistry):
        super().__init__()
        self.directory = directory
        self.registry = registry
        os.makedirs(directory, exist_ok=True)

    def _path(self, name: str) -> str:
        if not name or os.sep in name or name.startswith('.'):
            raise ValueError(f"Invalid group name '{name}'")
        return os.path.join(self.directory, f"{name}.json")

    def _load(self, name):
        path = self._path(name)
        if not os.path.exists(path):
            return None

        with open(path, 'r') as f:
            group = self.registry.decode(json.load(f))

        if group.name != name:
            raise ValueError(f"Document {path} describes group '{group.name}'")
        return group

    def _save(self, group):
        path = self._path(group.name)
        tmp_path = f"{path}.tmp"

        with open(tmp_path, 'w') as f:
            json.dump(self.registry.encode(group), f, indent=2)
        os.replace(tmp_path, path)

    def _remove(self, name):
        path = self._path(name)
        if os.path.exists(path):
            os.remove(path)

    def _names(self):
        return [
            filename[:-len(".json")]
            for filename in os.listdir(self.directory)
            if filename.endswith(".json") and not filename.startswith('.')
        ]

    def start_watching(self) -> BaseObserver:
        """Start watching the groups directory. The caller must stop the returned observer."""
        observer = Observer()
        observer.schedule(GroupDocumentHandler(self), self.directory, recursive=False)
        observer.start()
        logger.info(f"Watching {self.directory} for group documents")
        return observer
