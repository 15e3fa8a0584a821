"""
Handoff Workflow - request / approve / deny transfer of command.

    none -> pending -> approved | denied | cancelled | expired

A transfer moves commander_user_id and commander_session_id in one write, so
the incident is never observed uncommanded in the middle of a handoff.
Pending requests expire after COMMAND_REQUEST_TTL, or immediately when the
commander they were addressed to loses command.
"""

import logging
from dataclasses import asdict
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from config import COMMAND_REQUEST_TTL
from models import CommandRequest, DeviceSession, new_id
from services.command.identity import Caller
from services.command.results import (
    Result,
    ErrorKind,
    not_found,
    permission_denied,
    failed_precondition,
    require_fields,
)
from services.command.snapshots import IncidentSnapshot, CommandRequestSnapshot
from services.command.store import (
    run_transaction,
    lock_tenant,
    lock_incident,
    tenant_quota,
    count_commanded_incidents,
    commanded_incident_of,
    load_owned_session,
    load_tenant_incident,
    log_incident_action,
    as_utc,
    utcnow,
)

logger = logging.getLogger(__name__)


def _resolve(request: CommandRequest, status: str, now: datetime, resolved_by: Optional[str]):
    request.status = status
    request.resolved_time = now
    request.resolved_by = resolved_by


def _is_expired(request: CommandRequest, now: datetime) -> bool:
    return as_utc(request.request_time) < now - COMMAND_REQUEST_TTL


def _lock_request(db: Session, request_id: str, caller: Caller) -> Result:
    request = db.query(CommandRequest).filter(
        CommandRequest.id == request_id
    ).with_for_update().first()
    if request is None or request.tenant_id != caller.tenant_id:
        return not_found("Command request not found.")
    return Result.success(request)


def _expire_if_stale(db: Session, request_id: str, caller: Caller, now: datetime) -> Optional[Result]:
    """
    Expire a pending request past its TTL that is addressed to the caller.

    Runs as its own transaction so the expiry is committed even though the
    approve/deny that found it is refused.
    """
    def work(db: Session) -> Result:
        request = db.query(CommandRequest).filter(
            CommandRequest.id == request_id
        ).with_for_update().first()
        if (
            request is None
            or request.tenant_id != caller.tenant_id
            or request.current_commander_uid != caller.user_id
            or request.status != "pending"
            or not _is_expired(request, now)
        ):
            return Result.success(None)
        _resolve(request, "expired", now, None)
        return Result.success(request.id, [CommandRequestSnapshot.from_row(request)])

    result = run_transaction(db, work, "expire_command_request")
    if not result.ok:
        return result
    if result.value is None:
        return None
    logger.info(f"Command request {request_id} expired before it was resolved")
    return Result.failure(ErrorKind.FAILED_PRECONDITION, "This request has expired.", result.changes)


# =============================================================================
# REQUEST
# =============================================================================

def request_command(
    db: Session,
    incident_id: str,
    session_id: str,
    caller: Caller,
    now: Optional[datetime] = None,
) -> Result:
    invalid = require_fields(incident_id=incident_id, session_id=session_id)
    if invalid:
        return invalid
    now = now or utcnow()

    def work(db: Session) -> Result:
        lock_tenant(db, caller.tenant_id)
        owned = load_owned_session(db, session_id, caller)
        if not owned.ok:
            return owned
        loaded = load_tenant_incident(db, incident_id, caller, lock=True)
        if not loaded.ok:
            return loaded
        incident = loaded.value
        if incident.status != "Active":
            return failed_precondition("This incident is no longer active.")
        if incident.commander_user_id is None:
            return failed_precondition("This incident has no commander. Take command directly instead.")
        if incident.commander_user_id == caller.user_id:
            return failed_precondition("You are already the commander of this incident.")

        changes = []
        pending = db.query(CommandRequest).filter(
            CommandRequest.incident_id == incident.id,
            CommandRequest.status == "pending",
        ).first()
        if pending is not None:
            if not _is_expired(pending, now):
                return Result.failure(
                    ErrorKind.ALREADY_EXISTS,
                    "A command request is already pending for this incident.",
                )
            _resolve(pending, "expired", now, None)
            changes.append(CommandRequestSnapshot.from_row(pending))
            # The one-pending index must see the old row leave 'pending' first
            db.flush()

        request = CommandRequest(
            id=new_id(),
            tenant_id=caller.tenant_id,
            incident_id=incident.id,
            requester_user_id=caller.user_id,
            requester_name=caller.display_name,
            requester_session_id=session_id,
            current_commander_uid=incident.commander_user_id,
            status="pending",
            request_time=now,
        )
        db.add(request)
        log_incident_action(
            db, incident.tenant_id, incident.id, "COMMAND_REQUESTED",
            f"{caller.display_name or 'A user'} requested command.",
            user_id=caller.user_id,
            metadata={"request_id": request.id, "session_id": session_id},
            now=now,
        )
        snapshot = CommandRequestSnapshot.from_row(request)
        changes.append(snapshot)
        return Result.success(asdict(snapshot), changes)

    result = run_transaction(db, work, "request_command")
    if result.ok:
        logger.info(f"User {caller.user_id} requested command of incident {incident_id} (request {result.value['id']})")
    return result


# =============================================================================
# RESOLVE
# =============================================================================

def approve_command_request(
    db: Session,
    request_id: str,
    caller: Caller,
    now: Optional[datetime] = None,
) -> Result:
    """
    Transfer command to the requester's recorded session.

    A transfer leaves the commanded-incident count unchanged, but the count is
    still checked: if the organization's license limit was lowered below the
    number of commanded incidents, the transfer is refused rather than
    carrying the overage over to a new commander.
    """
    invalid = require_fields(request_id=request_id)
    if invalid:
        return invalid
    now = now or utcnow()
    expired = _expire_if_stale(db, request_id, caller, now)
    if expired is not None:
        return expired

    def work(db: Session) -> Result:
        tenant = lock_tenant(db, caller.tenant_id)
        max_licenses, error = tenant_quota(tenant, "max_command_licenses")
        if error:
            return error

        locked = _lock_request(db, request_id, caller)
        if not locked.ok:
            return locked
        request = locked.value
        if request.current_commander_uid != caller.user_id:
            return permission_denied("Only the current commander can approve this request.")
        if request.status != "pending":
            return failed_precondition(f"This request is already {request.status}.")

        incident = lock_incident(db, request.incident_id)
        if incident is None or incident.status != "Active":
            return failed_precondition("This incident is no longer active.")
        if incident.commander_user_id != caller.user_id:
            return failed_precondition("You are no longer the commander of this incident.")

        requester_session = db.query(DeviceSession).filter(
            DeviceSession.id == request.requester_session_id,
            DeviceSession.user_id == request.requester_user_id,
        ).first()
        if requester_session is None:
            return failed_precondition(
                "The requesting device is no longer connected. Deny the request and ask them to request again."
            )

        other = commanded_incident_of(db, caller.tenant_id, request.requester_user_id)
        if other is not None and other.id != incident.id:
            return failed_precondition(
                f"The requester is already in command of incident {other.incident_number}."
            )

        in_use = count_commanded_incidents(db, caller.tenant_id)
        if in_use > max_licenses:
            logger.warning(
                f"Transfer refused on incident {incident.id}: {in_use} commanded incidents "
                f"exceed the current license limit of {max_licenses}"
            )
            return permission_denied(
                f"Your organization has {in_use} commanded incidents but only {max_licenses} "
                "command license(s). Release a license before transferring command."
            )

        incident.commander_user_id = request.requester_user_id
        incident.commander_session_id = request.requester_session_id
        _resolve(request, "approved", now, caller.user_id)
        log_incident_action(
            db, incident.tenant_id, incident.id, "COMMAND_TRANSFERRED",
            f"Command transferred to {request.requester_name or 'the requesting user'}.",
            user_id=caller.user_id,
            metadata={
                "request_id": request.id,
                "from_user_id": caller.user_id,
                "to_user_id": request.requester_user_id,
                "to_session_id": request.requester_session_id,
            },
            now=now,
        )
        changes = [IncidentSnapshot.from_row(incident), CommandRequestSnapshot.from_row(request)]
        return Result.success({"request_id": request.id, "status": "approved"}, changes)

    result = run_transaction(db, work, "approve_command_request")
    if result.ok:
        logger.info(f"Command request {request_id} approved by user {caller.user_id}")
    return result


def deny_command_request(
    db: Session,
    request_id: str,
    caller: Caller,
    now: Optional[datetime] = None,
) -> Result:
    invalid = require_fields(request_id=request_id)
    if invalid:
        return invalid
    now = now or utcnow()
    expired = _expire_if_stale(db, request_id, caller, now)
    if expired is not None:
        return expired

    def work(db: Session) -> Result:
        locked = _lock_request(db, request_id, caller)
        if not locked.ok:
            return locked
        request = locked.value
        if request.current_commander_uid != caller.user_id:
            return permission_denied("Only the current commander can deny this request.")
        if request.status != "pending":
            return failed_precondition(f"This request is already {request.status}.")

        _resolve(request, "denied", now, caller.user_id)
        log_incident_action(
            db, request.tenant_id, request.incident_id, "COMMAND_REQUEST_DENIED",
            f"Command request from {request.requester_name or 'a user'} denied.",
            user_id=caller.user_id,
            metadata={"request_id": request.id},
            now=now,
        )
        return Result.success(
            {"request_id": request.id, "status": "denied"},
            [CommandRequestSnapshot.from_row(request)],
        )

    result = run_transaction(db, work, "deny_command_request")
    if result.ok:
        logger.info(f"Command request {request_id} denied by user {caller.user_id}")
    return result


def cancel_command_request(
    db: Session,
    request_id: str,
    caller: Caller,
    now: Optional[datetime] = None,
) -> Result:
    """Requester withdraws their own pending request."""
    invalid = require_fields(request_id=request_id)
    if invalid:
        return invalid
    now = now or utcnow()

    def work(db: Session) -> Result:
        locked = _lock_request(db, request_id, caller)
        if not locked.ok:
            return locked
        request = locked.value
        if request.requester_user_id != caller.user_id:
            return permission_denied("Only the requester can cancel this request.")
        if request.status != "pending":
            return failed_precondition(f"This request is already {request.status}.")

        _resolve(request, "cancelled", now, caller.user_id)
        return Result.success(
            {"request_id": request.id, "status": "cancelled"},
            [CommandRequestSnapshot.from_row(request)],
        )

    return run_transaction(db, work, "cancel_command_request")


# =============================================================================
# EXPIRY
# =============================================================================

def expire_stale_requests(db: Session, now: datetime) -> List[CommandRequestSnapshot]:
    """Expire pending requests older than the TTL. Caller commits."""
    stale = db.query(CommandRequest).filter(
        CommandRequest.status == "pending",
        CommandRequest.request_time < now - COMMAND_REQUEST_TTL,
    ).with_for_update().all()
    snapshots = []
    for request in stale:
        _resolve(request, "expired", now, None)
        snapshots.append(CommandRequestSnapshot.from_row(request))
    return snapshots
