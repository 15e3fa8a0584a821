"""
Record store primitives for the command subsystem.

Every operation that checks a cross-record invariant (session quota, license
quota, one incident per commander, pending-request uniqueness) runs inside
run_transaction(): rows are locked tenant first, then incident, so two
writers on the same tenant serialize instead of both passing a count check.
Write conflicts are retried here and never at the application layer.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from config import TRANSACTION_MAX_ATTEMPTS
from models import Tenant, Incident, DeviceSession, CommandRequest, IncidentLog
from services.command.results import Result, ErrorKind, not_found, permission_denied
from services.command.snapshots import CommandRequestSnapshot

logger = logging.getLogger(__name__)

# serialization_failure, deadlock_detected, lock_not_available
_RETRYABLE_PGCODES = {"40001", "40P01", "55P03"}
_UNIQUE_VIOLATION = "23505"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _is_write_conflict(exc: Exception) -> bool:
    if isinstance(exc, IntegrityError):
        # Only a unique index catching a concurrent insert is contention; the
        # retry re-reads and reports the proper business outcome. Other
        # integrity violations propagate.
        pgcode = getattr(exc.orig, "pgcode", None)
        if pgcode is not None:
            return pgcode == _UNIQUE_VIOLATION
        return "UNIQUE constraint failed" in str(exc.orig)
    if isinstance(exc, OperationalError):
        pgcode = getattr(exc.orig, "pgcode", None)
        if pgcode in _RETRYABLE_PGCODES:
            return True
        return "database is locked" in str(exc.orig)
    return False


def run_transaction(
    db: Session,
    work: Callable[[Session], Result],
    operation: str,
    max_attempts: int = TRANSACTION_MAX_ATTEMPTS,
) -> Result:
    """
    Run `work` as one atomic transaction.

    A successful Result is committed, a failed one rolled back, so a rejection
    discovered halfway through never leaves partial writes behind.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            result = work(db)
            if result.ok:
                db.commit()
            else:
                db.rollback()
            return result
        except (IntegrityError, OperationalError) as e:
            db.rollback()
            if not _is_write_conflict(e):
                raise
            if attempt >= max_attempts:
                logger.error(f"{operation}: write conflict persisted after {attempt} attempts: {e}")
                return Result.failure(
                    ErrorKind.ABORTED,
                    "The operation conflicted with concurrent changes. Please try again.",
                )
            logger.warning(f"{operation}: write conflict on attempt {attempt}, retrying")
        except Exception:
            db.rollback()
            raise
    # max_attempts < 1
    return Result.failure(ErrorKind.ABORTED, "The operation was not attempted.")


# =============================================================================
# LOCKING READS
# =============================================================================

def lock_tenant(db: Session, tenant_id: str) -> Optional[Tenant]:
    return db.query(Tenant).filter(Tenant.id == tenant_id).with_for_update().first()


def lock_incident(db: Session, incident_id: str) -> Optional[Incident]:
    return db.query(Incident).filter(Incident.id == incident_id).with_for_update().first()


def tenant_quota(tenant: Optional[Tenant], field: str):
    """Return (quota, None) or (None, failure Result) for a missing tenant/quota."""
    if tenant is None:
        return None, Result.failure(ErrorKind.INTERNAL, "Configuration error: tenant record missing.")
    quota = getattr(tenant, field)
    if quota is None:
        return None, Result.failure(
            ErrorKind.INTERNAL, f"Configuration error: {field} is not set for this tenant."
        )
    return quota, None


# =============================================================================
# COUNTS AND LOOKUPS
# =============================================================================

def count_sessions(db: Session, tenant_id: str) -> int:
    return db.query(DeviceSession).filter(DeviceSession.tenant_id == tenant_id).count()


def count_commanded_incidents(db: Session, tenant_id: str) -> int:
    return db.query(Incident).filter(
        Incident.tenant_id == tenant_id,
        Incident.status == "Active",
        Incident.commander_user_id.isnot(None),
    ).count()


def commanded_incident_of(db: Session, tenant_id: str, user_id: str) -> Optional[Incident]:
    """The Active incident this user commands, if any (at most one)."""
    return db.query(Incident).filter(
        Incident.tenant_id == tenant_id,
        Incident.status == "Active",
        Incident.commander_user_id == user_id,
    ).first()


def load_owned_session(db: Session, session_id: str, caller) -> Result:
    """Validate that a session exists and belongs to the caller."""
    session = db.query(DeviceSession).filter(DeviceSession.id == session_id).first()
    if session is None or session.user_id != caller.user_id:
        return not_found("Session not found. Please log in again.")
    if session.tenant_id != caller.tenant_id:
        return permission_denied("Session belongs to another organization.")
    return Result.success(session)


def load_tenant_incident(db: Session, incident_id: str, caller, lock: bool = False) -> Result:
    if lock:
        incident = lock_incident(db, incident_id)
    else:
        incident = db.query(Incident).filter(Incident.id == incident_id).first()
    if incident is None:
        return not_found("Incident not found.")
    if incident.tenant_id != caller.tenant_id:
        return permission_denied("Access denied to this incident.")
    return Result.success(incident)


# =============================================================================
# WRITE HELPERS
# =============================================================================

def log_incident_action(
    db: Session,
    tenant_id: str,
    incident_id: str,
    event_type: str,
    details: str,
    user_id: Optional[str] = None,
    metadata: Optional[dict] = None,
    now: Optional[datetime] = None,
):
    db.add(IncidentLog(
        tenant_id=tenant_id,
        incident_id=incident_id,
        event_type=event_type,
        details=details,
        metadata_json=metadata or {},
        user_id=user_id,
        timestamp=now or utcnow(),
    ))


def expire_pending_requests(
    db: Session,
    incident_id: str,
    now: datetime,
    resolved_by: Optional[str] = None,
) -> List[CommandRequestSnapshot]:
    """Expire every pending request on an incident whose commander just changed."""
    pending = db.query(CommandRequest).filter(
        CommandRequest.incident_id == incident_id,
        CommandRequest.status == "pending",
    ).all()
    snapshots = []
    for request in pending:
        request.status = "expired"
        request.resolved_time = now
        request.resolved_by = resolved_by
        snapshots.append(CommandRequestSnapshot.from_row(request))
    return snapshots
