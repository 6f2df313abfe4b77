"""
Desired-state resources and their status conditions
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"

CONDITION_STATUSES = (CONDITION_TRUE, CONDITION_FALSE, CONDITION_UNKNOWN)


@dataclass
class StatusCondition:
    type: str
    status: str
    last_transition_time: datetime

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "status": self.status,
            "lastTransitionTime": self.last_transition_time.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StatusCondition":
        return cls(
            type=data["type"],
            status=data["status"],
            last_transition_time=datetime.fromisoformat(data["lastTransitionTime"]),
        )


def find_status_condition(conditions: List[StatusCondition], condition_type: str) -> Optional[StatusCondition]:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def set_status_condition(
    conditions: List[StatusCondition],
    condition_type: str,
    status: str,
    now: Optional[datetime] = None,
) -> bool:
    """
    Replace the condition of the same type in place, or append it.

    The transition time only moves when the status value changes, and the
    position of existing conditions is preserved. Returns True when the
    list was modified.
    """
    if status not in CONDITION_STATUSES:
        raise ValueError(f"Invalid condition status '{status}'")

    now = now or datetime.now(timezone.utc)
    existing = find_status_condition(conditions, condition_type)

    if existing is None:
        conditions.append(StatusCondition(condition_type, status, now))
        return True

    if existing.status == status:
        return False

    existing.status = status
    existing.last_transition_time = now
    return True


@dataclass
class GroupStatus:
    distinguished_name: str = ""
    conditions: List[StatusCondition] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "distinguishedName": self.distinguished_name,
            "conditions": [c.to_dict() for c in self.conditions],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "GroupStatus":
        return cls(
            distinguished_name=data.get("distinguishedName", ""),
            conditions=[StatusCondition.from_dict(c) for c in data.get("conditions", [])],
        )


@dataclass
class DesiredGroup:
    """Declarative description of a directory group."""

    name: str
    comment: str = ""
    members: List[str] = field(default_factory=list)
    deletion_requested: bool = False
    finalizers: List[str] = field(default_factory=list)
    resource_version: int = 0
    status: GroupStatus = field(default_factory=GroupStatus)

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str):
        if finalizer not in self.finalizers:
            self.finalizers.append(finalizer)

    def remove_finalizer(self, finalizer: str):
        self.finalizers = [f for f in self.finalizers if f != finalizer]

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "comment": self.comment,
            "members": list(self.members),
            "deletionRequested": self.deletion_requested,
            "finalizers": list(self.finalizers),
            "resourceVersion": self.resource_version,
            "status": self.status.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DesiredGroup":
        if not data.get("name"):
            raise ValueError("Group document has no name")

        return cls(
            name=data["name"],
            comment=data.get("comment", ""),
            members=list(data.get("members", [])),
            deletion_requested=bool(data.get("deletionRequested", False)),
            finalizers=list(data.get("finalizers", [])),
            resource_version=int(data.get("resourceVersion", 0)),
            status=GroupStatus.from_dict(data.get("status", {})),
        )


class SchemeRegistry:
    """
    Maps document kinds to resource types.

    Built once at startup and handed to whatever needs to decode or encode
    desired-state documents.
    """

    def __init__(self):
        self._kinds: Dict[str, type] = {}

    def register(self, kind: str, resource_type: type):
        if kind in self._kinds and self._kinds[kind] is not resource_type:
            raise ValueError(f"Kind '{kind}' is already registered to {self._kinds[kind].__name__}")
        self._kinds[kind] = resource_type

    def kind_of(self, obj) -> str:
        for kind, resource_type in self._kinds.items():
            if type(obj) is resource_type:
                return kind
        raise ValueError(f"No kind registered for {type(obj).__name__}")

    def decode(self, document: dict):
        kind = document.get("kind")
        if kind not in self._kinds:
            raise ValueError(f"Unknown kind '{kind}'")
        return self._kinds[kind].from_dict(document)

    def encode(self, obj) -> dict:
        document = {"kind": self.kind_of(obj)}
        document.update(obj.to_dict())
        return document


def default_registry() -> SchemeRegistry:
    registry = SchemeRegistry()
    registry.register("DirectoryGroup", DesiredGroup)
    return registry
