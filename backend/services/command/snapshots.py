"""
Immutable snapshots published on the change feed.

A snapshot is the full current state of one record, never a delta: consumers
may see duplicates or miss intermediate versions and must derive their
state from the latest snapshot alone. The same classes are used by the
server (publishing) and by the board client (consuming).
"""

from dataclasses import dataclass, asdict, fields
from typing import Optional, Tuple


def iso(dt):
    """Safely convert datetime to ISO string"""
    return dt.isoformat() if dt else None


@dataclass(frozen=True)
class IncidentSnapshot:
    id: str
    tenant_id: str
    incident_number: str
    incident_name: Optional[str]
    status: str
    commander_user_id: Optional[str]
    commander_session_id: Optional[str]
    start_time: Optional[str] = None
    end_time: Optional[str] = None

    kind = "incident"

    @property
    def is_commanded(self) -> bool:
        return self.commander_user_id is not None

    @property
    def is_active(self) -> bool:
        return self.status == "Active"

    @classmethod
    def from_row(cls, incident) -> "IncidentSnapshot":
        return cls(
            id=incident.id,
            tenant_id=incident.tenant_id,
            incident_number=incident.incident_number,
            incident_name=incident.incident_name,
            status=incident.status,
            commander_user_id=incident.commander_user_id,
            commander_session_id=incident.commander_session_id,
            start_time=iso(incident.start_time),
            end_time=iso(incident.end_time),
        )

    def topics(self) -> Tuple[tuple, ...]:
        return (("incident", self.tenant_id, self.id),)


@dataclass(frozen=True)
class CommandRequestSnapshot:
    id: str
    tenant_id: str
    incident_id: str
    requester_user_id: str
    requester_name: Optional[str]
    requester_session_id: str
    current_commander_uid: str
    status: str
    request_time: Optional[str] = None
    resolved_time: Optional[str] = None

    kind = "command_request"

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

    @classmethod
    def from_row(cls, request) -> "CommandRequestSnapshot":
        return cls(
            id=request.id,
            tenant_id=request.tenant_id,
            incident_id=request.incident_id,
            requester_user_id=request.requester_user_id,
            requester_name=request.requester_name,
            requester_session_id=request.requester_session_id,
            current_commander_uid=request.current_commander_uid,
            status=request.status,
            request_time=iso(request.request_time),
            resolved_time=iso(request.resolved_time),
        )

    def topics(self) -> Tuple[tuple, ...]:
        # Both parties watch their own request stream
        return (
            ("requests", self.tenant_id, self.current_commander_uid),
            ("requests", self.tenant_id, self.requester_user_id),
        )


@dataclass(frozen=True)
class TacticalChange:
    """Something on the board other than command changed (groups, assignments...)."""
    tenant_id: str
    incident_id: str
    collection: str
    record_id: str
    deleted: bool = False

    kind = "tactical"

    def topics(self) -> Tuple[tuple, ...]:
        return (("incident", self.tenant_id, self.incident_id),)


SNAPSHOT_TYPES = {
    IncidentSnapshot.kind: IncidentSnapshot,
    CommandRequestSnapshot.kind: CommandRequestSnapshot,
    TacticalChange.kind: TacticalChange,
}


def to_message(snapshot) -> dict:
    return {"type": snapshot.kind, "data": asdict(snapshot)}


def from_message(message: dict):
    """
    Parse a feed message; returns None for control messages (connected, ping).

    Unknown fields are dropped; a missing field raises TypeError.
    """
    snapshot_type = SNAPSHOT_TYPES.get(message.get("type"))
    if snapshot_type is None:
        return None
    known = {f.name for f in fields(snapshot_type)}
    data = message.get("data") or {}
    return snapshot_type(**{name: value for name, value in data.items() if name in known})
