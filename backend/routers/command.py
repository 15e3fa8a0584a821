"""
Command Router - sessions, incident command and command handoff.

Every route resolves the caller from the bearer JWT, runs one service
operation against the request's database session and answers with the
operation's Result:

    {"success": true,  "data": ...}
    {"success": false, "code": "<error-kind>", "message": ...}

Snapshots from a successful Result are published to the change feed after
the service committed.
"""

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
import logging

from database import get_db
from jwt_auth import extract_token_from_request, validate_access_token
from schemas_command import SessionBody, StartIncidentBody
from services.command import arbiter, handoff, sessions
from services.command.dispatch import dispatch, parse_action
from services.command.identity import Caller, resolve_caller
from services.command.results import Result

logger = logging.getLogger(__name__)
router = APIRouter()


# =============================================================================
# HELPERS
# =============================================================================


async def get_current_caller(request: Request, db: Session = Depends(get_db)) -> Caller:
    """Resolve the caller from the bearer JWT, confirming user and tenant are active"""
    token = extract_token_from_request(request)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    claims = validate_access_token(token)
    if not claims:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    result = resolve_caller(db, claims.user_id, claims.tenant_id)
    if not result.ok:
        raise HTTPException(status_code=result.http_status, detail=result.message)
    return result.value


def result_response(request: Request, result: Result) -> JSONResponse:
    if result.changes:
        request.app.state.feed.publish_all(result.changes)
    return JSONResponse(status_code=result.http_status, content=result.to_response())


def _client_meta(request: Request) -> dict:
    return {
        "user_agent": request.headers.get("user-agent"),
        "ip_address": request.client.host if request.client else None,
    }


# =============================================================================
# SESSIONS
# =============================================================================


@router.post("/sessions")
async def create_session(
    request: Request,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    return result_response(request, sessions.create_session(db, caller, **_client_meta(request)))


@router.post("/sessions/{session_id}/heartbeat")
async def session_heartbeat(
    session_id: str,
    request: Request,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    return result_response(request, sessions.session_heartbeat(db, session_id, caller))


@router.delete("/sessions/{session_id}")
async def end_session(
    session_id: str,
    request: Request,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    return result_response(request, sessions.end_session(db, session_id, caller))


@router.get("/sessions/{session_id}/status")
async def check_session_status(
    session_id: str,
    request: Request,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    return result_response(request, sessions.check_session_status(db, session_id, caller))


# =============================================================================
# INCIDENTS AND COMMAND
# =============================================================================


@router.get("/incidents")
async def list_active_incidents(
    request: Request,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    return result_response(request, arbiter.get_active_incidents(db, caller))


@router.get("/incidents/closed")
async def list_closed_incidents(
    request: Request,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    return result_response(request, arbiter.get_closed_incidents(db, caller))


@router.post("/incidents")
async def start_incident(
    data: StartIncidentBody,
    request: Request,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    result = arbiter.start_incident(
        db, caller, data.session_id,
        incident_number=data.incident_number,
        incident_name=data.incident_name,
    )
    return result_response(request, result)


@router.get("/incidents/{incident_id}")
async def get_incident(
    incident_id: str,
    request: Request,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    return result_response(request, arbiter.get_incident_details(db, incident_id, caller))


@router.post("/incidents/{incident_id}/close")
async def close_incident(
    incident_id: str,
    request: Request,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    return result_response(request, arbiter.close_incident(db, incident_id, caller))


@router.post("/incidents/{incident_id}/command")
async def take_command(
    incident_id: str,
    data: SessionBody,
    request: Request,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    return result_response(request, arbiter.take_command(db, incident_id, data.session_id, caller))


@router.post("/incidents/{incident_id}/command/reestablish")
async def reestablish_command(
    incident_id: str,
    data: SessionBody,
    request: Request,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    return result_response(request, arbiter.reestablish_command(db, incident_id, data.session_id, caller))


# =============================================================================
# COMMAND HANDOFF
# =============================================================================


@router.post("/incidents/{incident_id}/command-requests")
async def request_command(
    incident_id: str,
    data: SessionBody,
    request: Request,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    return result_response(request, handoff.request_command(db, incident_id, data.session_id, caller))


@router.post("/command-requests/{request_id}/approve")
async def approve_command_request(
    request_id: str,
    request: Request,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    return result_response(request, handoff.approve_command_request(db, request_id, caller))


@router.post("/command-requests/{request_id}/deny")
async def deny_command_request(
    request_id: str,
    request: Request,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    return result_response(request, handoff.deny_command_request(db, request_id, caller))


@router.post("/command-requests/{request_id}/cancel")
async def cancel_command_request(
    request_id: str,
    request: Request,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    return result_response(request, handoff.cancel_command_request(db, request_id, caller))


# =============================================================================
# ADMIN
# =============================================================================


@router.post("/admin/users/{user_id}/revoke-sessions")
async def revoke_user_sessions(
    user_id: str,
    request: Request,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    return result_response(request, sessions.revoke_user_sessions(db, caller, user_id))


# =============================================================================
# TYPED ACTIONS
# =============================================================================


@router.post("/actions")
async def run_action(
    request: Request,
    payload: dict = Body(...),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    """Single entry point for clients that speak in typed actions ({"action": ..., ...})"""
    action, invalid = parse_action(payload)
    if invalid:
        return result_response(request, invalid)
    return result_response(request, dispatch(db, caller, action, **_client_meta(request)))
