"""
Typed action dispatch for POST /api/command/actions.

ACTION_HANDLERS maps every CommandAction variant to its operation. The
table is checked against the union at import time, so adding a variant
without a handler fails at startup instead of at the first request.
"""

import logging
from typing import Callable, Dict, Optional, Type, get_args

from pydantic import BaseModel, TypeAdapter
from sqlalchemy.orm import Session

from schemas_command import (
    CommandAction,
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
)
from services.command import arbiter, handoff, sessions
from services.command.identity import Caller
from services.command.results import Result, invalid_argument

logger = logging.getLogger(__name__)

Handler = Callable[..., Result]

ACTION_HANDLERS: Dict[Type[BaseModel], Handler] = {
    CreateSessionAction: lambda db, caller, a, **meta: sessions.create_session(
        db, caller, user_agent=meta.get("user_agent"), ip_address=meta.get("ip_address")
    ),
    SessionHeartbeatAction: lambda db, caller, a, **meta: sessions.session_heartbeat(db, a.session_id, caller),
    EndSessionAction: lambda db, caller, a, **meta: sessions.end_session(db, a.session_id, caller),
    CheckSessionStatusAction: lambda db, caller, a, **meta: sessions.check_session_status(db, a.session_id, caller),
    TakeCommandAction: lambda db, caller, a, **meta: arbiter.take_command(db, a.incident_id, a.session_id, caller),
    ReestablishCommandAction: lambda db, caller, a, **meta: arbiter.reestablish_command(
        db, a.incident_id, a.session_id, caller
    ),
    RequestCommandAction: lambda db, caller, a, **meta: handoff.request_command(db, a.incident_id, a.session_id, caller),
    ApproveCommandRequestAction: lambda db, caller, a, **meta: handoff.approve_command_request(db, a.request_id, caller),
    DenyCommandRequestAction: lambda db, caller, a, **meta: handoff.deny_command_request(db, a.request_id, caller),
    CancelCommandRequestAction: lambda db, caller, a, **meta: handoff.cancel_command_request(db, a.request_id, caller),
    StartIncidentAction: lambda db, caller, a, **meta: arbiter.start_incident(
        db, caller, a.session_id, incident_number=a.incident_number, incident_name=a.incident_name
    ),
    CloseIncidentAction: lambda db, caller, a, **meta: arbiter.close_incident(db, a.incident_id, caller),
}


def action_variants() -> tuple:
    union, _discriminator = get_args(CommandAction)
    return get_args(union)


def _check_exhaustive():
    missing = [variant.__name__ for variant in action_variants() if variant not in ACTION_HANDLERS]
    if missing:
        raise RuntimeError(f"No handler registered for action(s): {', '.join(missing)}")


_check_exhaustive()

_action_adapter = TypeAdapter(CommandAction)


def parse_action(payload: dict):
    """Validate a raw action body. Returns (action, None) or (None, invalid-argument Result)."""
    try:
        return _action_adapter.validate_python(payload), None
    except ValueError as e:
        logger.warning(f"Rejected malformed action: {e}")
        return None, invalid_argument(f"Invalid action: {e}")


def dispatch(
    db: Session,
    caller: Caller,
    action: BaseModel,
    user_agent: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> Result:
    handler = ACTION_HANDLERS[type(action)]
    return handler(db, caller, action, user_agent=user_agent, ip_address=ip_address)
