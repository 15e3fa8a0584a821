"""
Command Arbiter - exclusive commander status per incident.

The incident row is the lock. Each operation locks the tenant row (license
and single-incident counts span incidents) and then the incident row, checks
the gates and writes the commander fields in the same transaction.

Gates for acquiring command:
    license gate         commanded Active incidents < max_command_licenses,
                         unless the caller already commands the target incident
    single-incident gate the caller commands no *other* Active incident
"""

import logging
from dataclasses import asdict
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from models import Incident, new_id
from services.command.identity import Caller
from services.command.results import Result, permission_denied, failed_precondition, require_fields
from services.command.snapshots import IncidentSnapshot
from services.command.store import (
    run_transaction,
    lock_tenant,
    tenant_quota,
    count_commanded_incidents,
    commanded_incident_of,
    load_owned_session,
    load_tenant_incident,
    log_incident_action,
    expire_pending_requests,
    utcnow,
)

logger = logging.getLogger(__name__)


# =============================================================================
# GATES
# =============================================================================

def check_command_gates(
    db: Session,
    caller: Caller,
    incident: Optional[Incident],
    max_licenses: int,
) -> Optional[Result]:
    """
    Return a failure Result if the caller may not acquire command of `incident`
    (None = an incident about to be created), otherwise None.
    """
    retaking_own = incident is not None and incident.commander_user_id == caller.user_id
    if not retaking_own:
        in_use = count_commanded_incidents(db, caller.tenant_id)
        if in_use >= max_licenses:
            logger.warning(
                f"License gate: tenant {caller.tenant_id} has {in_use}/{max_licenses} "
                f"command licenses in use, user {caller.user_id} denied"
            )
            return permission_denied(
                f"All {max_licenses} command license(s) for your organization are in use."
            )

    other = commanded_incident_of(db, caller.tenant_id, caller.user_id)
    if other is not None and (incident is None or other.id != incident.id):
        return failed_precondition(
            f"You are already in command of incident {other.incident_number}. "
            "Close it or transfer command before taking another."
        )
    return None


def _grant(incident: Incident, caller: Caller, session_id: str):
    incident.commander_user_id = caller.user_id
    incident.commander_session_id = session_id


def _grant_response(incident: Incident) -> dict:
    return {
        "incident_id": incident.id,
        "commander_user_id": incident.commander_user_id,
        "commander_session_id": incident.commander_session_id,
    }


# =============================================================================
# TAKE / REESTABLISH
# =============================================================================

def take_command(
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
        tenant = lock_tenant(db, caller.tenant_id)
        max_licenses, error = tenant_quota(tenant, "max_command_licenses")
        if error:
            return error

        owned = load_owned_session(db, session_id, caller)
        if not owned.ok:
            return owned
        loaded = load_tenant_incident(db, incident_id, caller, lock=True)
        if not loaded.ok:
            return loaded
        incident = loaded.value
        if incident.status != "Active":
            return failed_precondition("This incident is no longer active.")

        denied = check_command_gates(db, caller, incident, max_licenses)
        if denied:
            return denied

        previous_user_id = incident.commander_user_id
        _grant(incident, caller, session_id)

        changes = [IncidentSnapshot.from_row(incident)]
        if previous_user_id is None:
            event, details = "COMMAND_TAKEN", "Command taken."
        elif previous_user_id == caller.user_id:
            event, details = "COMMAND_RETAKEN", "Commander re-took command."
        else:
            event, details = "COMMAND_TAKEN_OVER", "Command taken over from another user."
            # Requests addressed to the previous commander can no longer be answered
            changes.extend(expire_pending_requests(db, incident.id, now, resolved_by=caller.user_id))

        log_incident_action(
            db, incident.tenant_id, incident.id, event, details,
            user_id=caller.user_id,
            metadata={"session_id": session_id, "previous_commander_uid": previous_user_id},
            now=now,
        )
        return Result.success(_grant_response(incident), changes)

    result = run_transaction(db, work, "take_command")
    if result.ok:
        logger.info(f"Command of incident {incident_id} granted to user {caller.user_id} (session {session_id})")
    return result


def reestablish_command(
    db: Session,
    incident_id: str,
    session_id: str,
    caller: Caller,
    now: Optional[datetime] = None,
) -> Result:
    """
    Move the caller's existing command onto a new session after the old one died.

    Only user identity is checked against the incident; the old session is
    presumed gone. No license is consumed since the commander does not change.
    """
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
        if incident.commander_user_id != caller.user_id:
            return permission_denied("Only the recorded commander can re-establish command.")

        previous_session_id = incident.commander_session_id
        if previous_session_id == session_id:
            return Result.success(_grant_response(incident))

        incident.commander_session_id = session_id
        log_incident_action(
            db, incident.tenant_id, incident.id, "COMMAND_REESTABLISHED",
            "Commander re-established command from a new session.",
            user_id=caller.user_id,
            metadata={"from_session_id": previous_session_id, "to_session_id": session_id},
            now=now,
        )
        return Result.success(_grant_response(incident), [IncidentSnapshot.from_row(incident)])

    result = run_transaction(db, work, "reestablish_command")
    if result.ok:
        logger.info(f"Command of incident {incident_id} re-established by user {caller.user_id} on session {session_id}")
    return result


# =============================================================================
# INCIDENT LIFECYCLE
# =============================================================================

def _default_incident_number(now: datetime, tz_name: Optional[str]) -> str:
    try:
        local = now.astimezone(ZoneInfo(tz_name or "UTC"))
    except ZoneInfoNotFoundError:
        local = now
    return local.strftime("%Y%m%d-%H%M")


def start_incident(
    db: Session,
    caller: Caller,
    session_id: str,
    incident_number: Optional[str] = None,
    incident_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Result:
    """Create an incident already commanded by its creator."""
    invalid = require_fields(session_id=session_id)
    if invalid:
        return invalid
    now = now or utcnow()

    def work(db: Session) -> Result:
        tenant = lock_tenant(db, caller.tenant_id)
        max_licenses, error = tenant_quota(tenant, "max_command_licenses")
        if error:
            return error

        owned = load_owned_session(db, session_id, caller)
        if not owned.ok:
            return owned

        denied = check_command_gates(db, caller, None, max_licenses)
        if denied:
            return denied

        number = (incident_number or "").strip() or _default_incident_number(now, tenant.timezone)
        incident = Incident(
            id=new_id(),
            tenant_id=caller.tenant_id,
            incident_number=number,
            incident_name=incident_name.strip() if incident_name else None,
            status="Active",
            start_time=now,
            commander_user_id=caller.user_id,
            commander_session_id=session_id,
        )
        db.add(incident)
        log_incident_action(
            db, incident.tenant_id, incident.id, "INCIDENT_STARTED",
            f"Incident {number} started.",
            user_id=caller.user_id,
            metadata={"session_id": session_id},
            now=now,
        )
        snapshot = IncidentSnapshot.from_row(incident)
        return Result.success(asdict(snapshot), [snapshot])

    result = run_transaction(db, work, "start_incident")
    if result.ok:
        logger.info(f"Incident {result.value['incident_number']} started by user {caller.user_id}")
    return result


def close_incident(
    db: Session,
    incident_id: str,
    caller: Caller,
    now: Optional[datetime] = None,
) -> Result:
    """Close an incident and release its command license in one transaction."""
    invalid = require_fields(incident_id=incident_id)
    if invalid:
        return invalid
    now = now or utcnow()

    def work(db: Session) -> Result:
        lock_tenant(db, caller.tenant_id)
        loaded = load_tenant_incident(db, incident_id, caller, lock=True)
        if not loaded.ok:
            return loaded
        incident = loaded.value
        if incident.commander_user_id != caller.user_id:
            return permission_denied("Only the incident commander can close this incident.")

        incident.status = "Closed"
        incident.end_time = now
        incident.commander_user_id = None
        incident.commander_session_id = None

        changes = [IncidentSnapshot.from_row(incident)]
        changes.extend(expire_pending_requests(db, incident.id, now, resolved_by=caller.user_id))
        log_incident_action(
            db, incident.tenant_id, incident.id, "INCIDENT_CLOSED",
            f"Incident {incident.incident_number} closed.",
            user_id=caller.user_id,
            now=now,
        )
        return Result.success({"incident_id": incident.id, "message": "Incident closed successfully."}, changes)

    result = run_transaction(db, work, "close_incident")
    if result.ok:
        logger.info(f"Incident {incident_id} closed by user {caller.user_id}")
    return result


# =============================================================================
# READS
# =============================================================================

def get_active_incidents(db: Session, caller: Caller) -> Result:
    incidents = db.query(Incident).filter(
        Incident.tenant_id == caller.tenant_id,
        Incident.status == "Active",
    ).order_by(Incident.start_time.desc()).all()
    return Result.success([asdict(IncidentSnapshot.from_row(i)) for i in incidents])


def get_closed_incidents(db: Session, caller: Caller) -> Result:
    """Closed incidents of the tenant, most recently closed first."""
    incidents = db.query(Incident).filter(
        Incident.tenant_id == caller.tenant_id,
        Incident.status == "Closed",
    ).order_by(Incident.end_time.desc()).all()
    return Result.success([asdict(IncidentSnapshot.from_row(i)) for i in incidents])


def get_incident_details(db: Session, incident_id: str, caller: Caller) -> Result:
    invalid = require_fields(incident_id=incident_id)
    if invalid:
        return invalid
    loaded = load_tenant_incident(db, incident_id, caller)
    if not loaded.ok:
        return loaded
    return Result.success(asdict(IncidentSnapshot.from_row(loaded.value)))
