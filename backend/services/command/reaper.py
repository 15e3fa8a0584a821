"""
Liveness Reaper - scheduled recovery of command locks held by dead devices.

Hourly:  commanding sessions idle past STALE_COMMAND_THRESHOLD lose command
         and are deleted. Stale sessions holding no command are left alone.
Daily:   sessions idle past SESSION_RETENTION are deleted (storage hygiene),
         OLD_SESSION_DELETE_CAP per run. Never touches incident state.

Both sweeps are idempotent: every write re-checks its condition under the
row lock, so overlapping or repeated runs converge on the same state.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import (
    STALE_COMMAND_THRESHOLD,
    STALE_COMMAND_SWEEP_INTERVAL,
    SESSION_RETENTION,
    OLD_SESSION_DELETE_CAP,
    DAILY_SWEEP_HOUR,
    DAILY_SWEEP_TIMEZONE,
)
from database import SessionLocal
from models import DeviceSession, Incident
from services.command.handoff import expire_stale_requests
from services.command.results import Result
from services.command.snapshots import IncidentSnapshot
from services.command.store import (
    run_transaction,
    lock_tenant,
    lock_incident,
    log_incident_action,
    expire_pending_requests,
    as_utc,
    utcnow,
)

logger = logging.getLogger(__name__)


# =============================================================================
# HOURLY: STALE COMMAND LOCKS
# =============================================================================

def _release_stale_command(db: Session, incident_id: str, tenant_id: str, cutoff: datetime, now: datetime) -> Result:
    """Release one incident's command if its commanding session is still stale."""

    def work(db: Session) -> Result:
        lock_tenant(db, tenant_id)
        incident = lock_incident(db, incident_id)
        if incident is None or incident.status != "Active" or not incident.commander_session_id:
            return Result.success(None)
        session = db.query(DeviceSession).filter(
            DeviceSession.id == incident.commander_session_id,
            DeviceSession.last_active_time < cutoff,
        ).first()
        if session is None:
            # Heartbeat arrived or command moved since the scan
            return Result.success(None)

        previous_user_id = incident.commander_user_id
        incident.commander_user_id = None
        incident.commander_session_id = None
        db.delete(session)

        changes = [IncidentSnapshot.from_row(incident)]
        changes.extend(expire_pending_requests(db, incident.id, now))
        log_incident_action(
            db, incident.tenant_id, incident.id, "COMMAND_RELEASED_STALE",
            "Command released: the commanding device stopped responding.",
            user_id=previous_user_id,
            metadata={"session_id": session.id},
            now=now,
        )
        return Result.success(incident.id, changes)

    return run_transaction(db, work, "release_stale_command")


def _reclaim_orphaned_command(db: Session, incident_id: str, tenant_id: str, cutoff: datetime, now: datetime) -> Result:
    """Clear a command pointer whose session no longer exists (logout, admin revoke)."""

    def work(db: Session) -> Result:
        lock_tenant(db, tenant_id)
        incident = lock_incident(db, incident_id)
        if incident is None or incident.status != "Active" or not incident.commander_session_id:
            return Result.success(None)
        exists = db.query(DeviceSession.id).filter(
            DeviceSession.id == incident.commander_session_id
        ).first()
        if exists is not None or incident.updated_at is None or as_utc(incident.updated_at) >= cutoff:
            return Result.success(None)

        previous_user_id = incident.commander_user_id
        previous_session_id = incident.commander_session_id
        incident.commander_user_id = None
        incident.commander_session_id = None

        changes = [IncidentSnapshot.from_row(incident)]
        changes.extend(expire_pending_requests(db, incident.id, now))
        log_incident_action(
            db, incident.tenant_id, incident.id, "COMMAND_RELEASED_ORPHANED",
            "Command released: the commanding session no longer exists.",
            user_id=previous_user_id,
            metadata={"session_id": previous_session_id},
            now=now,
        )
        return Result.success(incident.id, changes)

    return run_transaction(db, work, "reclaim_orphaned_command")


def sweep_stale_commands(db: Session, now: Optional[datetime] = None) -> Result:
    now = now or utcnow()
    cutoff = now - STALE_COMMAND_THRESHOLD
    changes = []

    stale_sessions = select(DeviceSession.id).where(DeviceSession.last_active_time < cutoff)
    stale = db.query(Incident.id, Incident.tenant_id).filter(
        Incident.status == "Active",
        Incident.commander_session_id.in_(stale_sessions),
    ).all()
    released = 0
    for incident_id, tenant_id in stale:
        result = _release_stale_command(db, incident_id, tenant_id, cutoff, now)
        if result.ok and result.value:
            released += 1
            changes.extend(result.changes)
            logger.info(f"Released stale command on incident {incident_id}")

    live_sessions = select(DeviceSession.id)
    orphaned = db.query(Incident.id, Incident.tenant_id).filter(
        Incident.status == "Active",
        Incident.commander_session_id.isnot(None),
        Incident.commander_session_id.notin_(live_sessions),
        Incident.updated_at < cutoff,
    ).all()
    reclaimed = 0
    for incident_id, tenant_id in orphaned:
        result = _reclaim_orphaned_command(db, incident_id, tenant_id, cutoff, now)
        if result.ok and result.value:
            reclaimed += 1
            changes.extend(result.changes)
            logger.info(f"Reclaimed orphaned command on incident {incident_id}")

    expired = run_transaction(
        db, lambda db: Result.success(expire_stale_requests(db, now)), "expire_stale_requests"
    )
    expired_requests = list(expired.value) if expired.ok else []
    changes.extend(expired_requests)

    report = {
        "released": released,
        "orphans_reclaimed": reclaimed,
        "requests_expired": len(expired_requests),
    }
    if released or reclaimed or expired_requests:
        logger.info(f"Stale command sweep: {report}")
    return Result.success(report, changes)


# =============================================================================
# DAILY: OLD SESSIONS
# =============================================================================

def sweep_old_sessions(db: Session, now: Optional[datetime] = None, cap: int = OLD_SESSION_DELETE_CAP) -> Result:
    now = now or utcnow()
    cutoff = now - SESSION_RETENTION

    def work(db: Session) -> Result:
        ids = [row[0] for row in db.query(DeviceSession.id).filter(
            DeviceSession.last_active_time < cutoff,
        ).order_by(DeviceSession.last_active_time.asc()).limit(cap).all()]
        if not ids:
            return Result.success({"deleted": 0})
        deleted = db.query(DeviceSession).filter(
            DeviceSession.id.in_(ids),
        ).delete(synchronize_session=False)
        return Result.success({"deleted": deleted})

    result = run_transaction(db, work, "sweep_old_sessions")
    if result.ok and result.value["deleted"]:
        logger.info(f"Old session sweep deleted {result.value['deleted']} session(s)")
    return result


def seconds_until_daily_sweep(now: datetime, hour: int = DAILY_SWEEP_HOUR, tz_name: str = DAILY_SWEEP_TIMEZONE) -> float:
    local = now.astimezone(ZoneInfo(tz_name))
    target = local.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= local:
        target += timedelta(days=1)
    # Same-zone subtraction ignores DST shifts; compare in UTC
    return (target.astimezone(timezone.utc) - now.astimezone(timezone.utc)).total_seconds()


# =============================================================================
# BACKGROUND LOOPS (started from the application lifespan)
# =============================================================================

def _publish(feed, result: Result):
    if feed is None:
        return
    for snapshot in result.changes:
        feed.publish(snapshot)


def run_stale_command_sweep(feed=None) -> Result:
    db = SessionLocal()
    try:
        result = sweep_stale_commands(db)
    finally:
        db.close()
    _publish(feed, result)
    return result


def run_old_session_sweep() -> Result:
    db = SessionLocal()
    try:
        return sweep_old_sessions(db)
    finally:
        db.close()


async def start_stale_command_reaper(feed):
    """Hourly stale-command sweep. Runs forever in the background."""
    while True:
        await asyncio.sleep(STALE_COMMAND_SWEEP_INTERVAL)
        try:
            run_stale_command_sweep(feed)
        except Exception as e:
            logger.error(f"Stale command reaper error: {e}")


async def start_old_session_reaper():
    """Daily old-session sweep at DAILY_SWEEP_HOUR local time. Runs forever."""
    while True:
        delay = seconds_until_daily_sweep(utcnow())
        logger.info(f"Next old session sweep in {delay / 3600:.1f}h")
        await asyncio.sleep(delay)
        try:
            run_old_session_sweep()
        except Exception as e:
            logger.error(f"Old session reaper error: {e}")
