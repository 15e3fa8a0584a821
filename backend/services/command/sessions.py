"""
Session Manager - per-device session admission under a tenant quota.

Admission order when the tenant is at capacity:
    1. open slot              (below quota, nothing to do)
    2. privileged re-entry    (a commander's previous commanding session is replaced)
    3. general eviction       (oldest idle session that holds no command)
    4. permission-denied

Heartbeats are single-row writes outside any transaction; nothing else
depends on last_active_time atomically.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import EVICTION_IDLE_THRESHOLD
from models import DeviceSession, Incident, User, new_id
from services.command.identity import Caller
from services.command.results import Result, not_found, permission_denied, require_fields
from services.command.snapshots import IncidentSnapshot
from services.command.store import (
    run_transaction,
    lock_tenant,
    tenant_quota,
    count_sessions,
    commanded_incident_of,
    load_owned_session,
    log_incident_action,
    utcnow,
)

logger = logging.getLogger(__name__)


# =============================================================================
# ADMISSION
# =============================================================================

def _privileged_reentry(db: Session, caller: Caller):
    """(incident, old_session) if the caller commands an incident from a live session."""
    incident = commanded_incident_of(db, caller.tenant_id, caller.user_id)
    if incident is None or not incident.commander_session_id:
        return None
    old_session = db.query(DeviceSession).filter(
        DeviceSession.id == incident.commander_session_id,
        DeviceSession.user_id == caller.user_id,
    ).first()
    if old_session is None:
        return None
    return incident, old_session


def _eviction_candidates(db: Session, tenant_id: str, now: datetime, limit: int) -> List[DeviceSession]:
    """Oldest idle sessions that are not any incident's commanding session."""
    commanding = select(Incident.commander_session_id).where(
        Incident.commander_session_id.isnot(None),
    )
    return db.query(DeviceSession).filter(
        DeviceSession.tenant_id == tenant_id,
        DeviceSession.last_active_time < now - EVICTION_IDLE_THRESHOLD,
        DeviceSession.id.notin_(commanding),
    ).order_by(DeviceSession.last_active_time.asc()).limit(limit).all()


def create_session(
    db: Session,
    caller: Caller,
    user_agent: Optional[str] = None,
    ip_address: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Result:
    now = now or utcnow()

    def work(db: Session) -> Result:
        tenant = lock_tenant(db, caller.tenant_id)
        max_sessions, error = tenant_quota(tenant, "max_total_sessions")
        if error:
            return error

        admission = "open_slot"
        repoint = None
        # Normally 1; more if the quota was lowered below the live session count
        needed = count_sessions(db, tenant.id) - max_sessions + 1

        if needed > 0:
            freed = 0
            reentry = _privileged_reentry(db, caller)
            if reentry is not None:
                repoint, old_session = reentry
                db.delete(old_session)
                freed += 1
                admission = "privileged_reentry"
                logger.info(
                    f"Privileged re-entry: user {caller.user_id} replaces commanding session "
                    f"{old_session.id} on incident {repoint.id}"
                )

            if freed < needed:
                victims = _eviction_candidates(db, tenant.id, now, needed - freed)
                if len(victims) < needed - freed:
                    logger.warning(
                        f"Session admission denied for user {caller.user_id}: "
                        f"tenant {tenant.slug} at capacity ({max_sessions})"
                    )
                    return permission_denied(
                        "No session slots are available for your organization. "
                        "Ask another user to log out and try again."
                    )
                for victim in victims:
                    logger.info(f"Evicting idle session {victim.id} (user {victim.user_id}) for user {caller.user_id}")
                    db.delete(victim)
                if admission == "open_slot":
                    admission = "evicted_idle"

        session = DeviceSession(
            id=new_id(),
            user_id=caller.user_id,
            tenant_id=caller.tenant_id,
            login_time=now,
            last_active_time=now,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        db.add(session)

        changes = []
        if repoint is not None:
            # The commander keeps command on the device they just logged in from
            previous_session_id = repoint.commander_session_id
            repoint.commander_session_id = session.id
            log_incident_action(
                db, repoint.tenant_id, repoint.id, "COMMAND_SESSION_MOVED",
                "Commander logged in on a new device at capacity; command moved to the new session.",
                user_id=caller.user_id,
                metadata={"from_session_id": previous_session_id, "to_session_id": session.id},
                now=now,
            )
            changes.append(IncidentSnapshot.from_row(repoint))

        return Result.success({"session_id": session.id, "admission": admission}, changes)

    result = run_transaction(db, work, "create_session")
    if result.ok:
        logger.info(f"Session {result.value['session_id']} created for user {caller.user_id} ({result.value['admission']})")
    return result


# =============================================================================
# LIVENESS
# =============================================================================

def session_heartbeat(db: Session, session_id: str, caller: Caller, now: Optional[datetime] = None) -> Result:
    invalid = require_fields(session_id=session_id)
    if invalid:
        return invalid

    updated = db.query(DeviceSession).filter(
        DeviceSession.id == session_id,
        DeviceSession.user_id == caller.user_id,
    ).update({DeviceSession.last_active_time: now or utcnow()}, synchronize_session=False)
    db.commit()

    if not updated:
        return not_found("Session not found. Please log in again.")
    return Result.success({"session_id": session_id})


def end_session(db: Session, session_id: str, caller: Caller) -> Result:
    invalid = require_fields(session_id=session_id)
    if invalid:
        return invalid

    deleted = db.query(DeviceSession).filter(
        DeviceSession.id == session_id,
        DeviceSession.user_id == caller.user_id,
    ).delete(synchronize_session=False)
    db.commit()

    if deleted:
        logger.info(f"Session {session_id} ended by user {caller.user_id}")
    return Result.success({"session_id": session_id})


# =============================================================================
# STATUS
# =============================================================================

def check_session_status(db: Session, session_id: str, caller: Caller) -> Result:
    """
    Tell a device whether it may use the board.

    ok                     - caller commands nothing, or commands from this session
    locked_out             - restricted tier, commanding from another live device
    view_only_recommended  - higher tier, commanding from another live device
    not-found              - the session is gone or belongs to someone else
    """
    invalid = require_fields(session_id=session_id)
    if invalid:
        return invalid

    owned = load_owned_session(db, session_id, caller)
    if not owned.ok:
        return owned

    incident = commanded_incident_of(db, caller.tenant_id, caller.user_id)
    if incident is None or incident.commander_session_id == session_id:
        return Result.success({"status": "ok"})

    commanding_session = None
    if incident.commander_session_id:
        commanding_session = db.query(DeviceSession).filter(
            DeviceSession.id == incident.commander_session_id
        ).first()
    if commanding_session is None:
        return Result.success({
            "status": "ok",
            "incident_id": incident.id,
            "message": f"You can re-establish command of incident {incident.incident_number} from this device.",
        })

    if caller.is_restricted_tier:
        return Result.success({
            "status": "locked_out",
            "incident_id": incident.id,
            "message": (
                f"You are in command of incident {incident.incident_number} on another device. "
                "Your license allows the board on one device while in command."
            ),
        })
    return Result.success({
        "status": "view_only_recommended",
        "incident_id": incident.id,
        "message": (
            f"You are in command of incident {incident.incident_number} on another device. "
            "This device can follow the incident in view-only mode."
        ),
    })


# =============================================================================
# ADMIN
# =============================================================================

def revoke_user_sessions(db: Session, caller: Caller, target_user_id: str) -> Result:
    """Force-logout a user from every device (tenant admins only)."""
    invalid = require_fields(target_user_id=target_user_id)
    if invalid:
        return invalid
    if not caller.is_admin:
        return permission_denied("Only organization administrators can revoke sessions.")

    def work(db: Session) -> Result:
        target = db.query(User).filter(User.id == target_user_id).first()
        if target is None or target.tenant_id != caller.tenant_id:
            return not_found("User not found.")
        revoked = db.query(DeviceSession).filter(
            DeviceSession.user_id == target_user_id,
        ).delete(synchronize_session=False)
        return Result.success({
            "revoked": revoked,
            "message": f"Signed {target.display_name or target.email} out of {revoked} device(s).",
        })

    result = run_transaction(db, work, "revoke_user_sessions")
    if result.ok:
        logger.info(f"Admin {caller.user_id} revoked {result.value['revoked']} sessions of user {target_user_id}")
    return result
