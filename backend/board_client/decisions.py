"""
Pure UI decisions for the command board.

No I/O here: given the latest IncidentSnapshot and who/where the viewer is,
return what the board should offer. Re-deriving from the latest snapshot
alone keeps the UI correct under duplicate or reordered deliveries.
"""

from dataclasses import dataclass
from typing import Optional

from config import RESTRICTED_LICENSE_TIER
from services.command.snapshots import IncidentSnapshot

# Primary actions
TAKE_COMMAND = "take_command"
REESTABLISH_COMMAND = "reestablish_command"
REQUEST_COMMAND = "request_command"
COMMANDED_ON_OTHER_DEVICE = "commanded_on_other_device"
COMMANDED_BY_OTHER_USER = "commanded_by_other_user"

# Reactions to an incident snapshot
FULL_RELOAD = "full_reload"
LIGHT_REFRESH = "light_refresh"
INCIDENT_CLOSED = "incident_closed"


@dataclass(frozen=True)
class Affordances:
    primary: str
    primary_enabled: bool
    label: str
    show_view_only: bool = False


def decide_affordances(
    incident: IncidentSnapshot,
    user_id: str,
    session_id: str,
    license_tier: str,
    commanding_session_alive: bool = True,
) -> Affordances:
    """
    Decision table:

        commanded | same user | same session | tier        -> primary (view-only offered?)
        no        |     -     |      -       |  -          -> Take Command
        yes       |    yes    |     yes      |  -          -> Re-establish Command
        yes       |    yes    |     no       |  -          -> Commanded on another device (unless it died)
        yes       |    no     |      -       |  restricted -> Commanded by another user
        yes       |    no     |      -       |  other      -> Request Command (view-only offered)
    """
    can_request_or_view = license_tier != RESTRICTED_LICENSE_TIER

    if not incident.is_commanded:
        return Affordances(TAKE_COMMAND, True, "Take Command")

    if incident.commander_user_id == user_id:
        if incident.commander_session_id == session_id or not commanding_session_alive:
            return Affordances(REESTABLISH_COMMAND, True, "Re-establish Command")
        # A user cannot request command from themselves
        return Affordances(
            COMMANDED_ON_OTHER_DEVICE, False, "Commanded on another device",
            show_view_only=can_request_or_view,
        )

    if can_request_or_view:
        return Affordances(REQUEST_COMMAND, True, "Request Command", show_view_only=True)
    return Affordances(COMMANDED_BY_OTHER_USER, False, "Commanded by another user")


def is_commanding_session(incident: Optional[IncidentSnapshot], user_id: str, session_id: str) -> bool:
    return (
        incident is not None
        and incident.is_active
        and incident.commander_user_id == user_id
        and incident.commander_session_id == session_id
    )


def classify_incident_change(
    previous: Optional[IncidentSnapshot],
    current: IncidentSnapshot,
    user_id: str,
    session_id: str,
) -> str:
    """Full reload only when this session's command standing flipped."""
    if not current.is_active:
        return INCIDENT_CLOSED
    was_commander = is_commanding_session(previous, user_id, session_id)
    is_commander = is_commanding_session(current, user_id, session_id)
    if was_commander != is_commander:
        return FULL_RELOAD
    return LIGHT_REFRESH
