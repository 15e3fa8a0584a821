"""
Command Board Pydantic Schemas

Request bodies for /api/command and the typed action variants accepted by
POST /api/command/actions. Each action variant is tagged by its `action`
literal; services/command/dispatch.py maps every tag to exactly one handler.
"""

from pydantic import BaseModel, Field
from typing import Optional, Union, Literal, Annotated


# =============================================================================
# REST BODIES
# =============================================================================

class SessionBody(BaseModel):
    """Body for operations performed from a device session"""
    session_id: str


class StartIncidentBody(BaseModel):
    session_id: str
    incident_number: Optional[str] = None   # Defaults to YYYYMMDD-HHMM local time
    incident_name: Optional[str] = None


class LoginBody(BaseModel):
    email: str
    password: str


class RefreshBody(BaseModel):
    refresh_token: str


class TacticalRecordBody(BaseModel):
    incident_id: Optional[str] = None
    data: dict = Field(default_factory=dict)


# =============================================================================
# ACTION VARIANTS
# =============================================================================

class CreateSessionAction(BaseModel):
    action: Literal["create_session"]


class SessionHeartbeatAction(BaseModel):
    action: Literal["session_heartbeat"]
    session_id: str


class EndSessionAction(BaseModel):
    action: Literal["end_session"]
    session_id: str


class CheckSessionStatusAction(BaseModel):
    action: Literal["check_session_status"]
    session_id: str


class TakeCommandAction(BaseModel):
    action: Literal["take_command"]
    incident_id: str
    session_id: str


class ReestablishCommandAction(BaseModel):
    action: Literal["reestablish_command"]
    incident_id: str
    session_id: str


class RequestCommandAction(BaseModel):
    action: Literal["request_command"]
    incident_id: str
    session_id: str


class ApproveCommandRequestAction(BaseModel):
    action: Literal["approve_command_request"]
    request_id: str


class DenyCommandRequestAction(BaseModel):
    action: Literal["deny_command_request"]
    request_id: str


class CancelCommandRequestAction(BaseModel):
    action: Literal["cancel_command_request"]
    request_id: str


class StartIncidentAction(BaseModel):
    action: Literal["start_incident"]
    session_id: str
    incident_number: Optional[str] = None
    incident_name: Optional[str] = None


class CloseIncidentAction(BaseModel):
    action: Literal["close_incident"]
    incident_id: str


CommandAction = Annotated[
    Union[
        CreateSessionAction,
        SessionHeartbeatAction,
        EndSessionAction,
        CheckSessionStatusAction,
        TakeCommandAction,
        ReestablishCommandAction,
        RequestCommandAction,
        ApproveCommandRequestAction,
        DenyCommandRequestAction,
        CancelCommandRequestAction,
        StartIncidentAction,
        CloseIncidentAction,
    ],
    Field(discriminator="action"),
]
