"""
Tactical Records Router

CRUD for the board's non-command data (groups, assignments, units,
templates). Records are opaque JSON to this service; what matters to the
command subsystem is that every write on an incident's records publishes a
TacticalChange so watching clients do a light refresh.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from typing import Optional
import logging

from database import get_db
from models import TacticalRecord, new_id
from schemas_command import TacticalRecordBody
from routers.command import get_current_caller, result_response
from services.command.identity import Caller
from services.command.results import Result, invalid_argument, not_found
from services.command.snapshots import TacticalChange, iso
from services.command.store import load_tenant_incident, utcnow

logger = logging.getLogger(__name__)
router = APIRouter()

COLLECTIONS = {"groups", "assignments", "units", "templates"}


def _record_dict(record: TacticalRecord) -> dict:
    return {
        "id": record.id,
        "collection": record.collection,
        "incident_id": record.incident_id,
        "data": record.data or {},
        "updated_at": iso(record.updated_at),
    }


def _changes_for(record: TacticalRecord, deleted: bool = False) -> list:
    if not record.incident_id:
        return []
    return [TacticalChange(
        tenant_id=record.tenant_id,
        incident_id=record.incident_id,
        collection=record.collection,
        record_id=record.id,
        deleted=deleted,
    )]


def _load(db: Session, collection: str, record_id: str, caller: Caller) -> Optional[TacticalRecord]:
    return db.query(TacticalRecord).filter(
        TacticalRecord.id == record_id,
        TacticalRecord.collection == collection,
        TacticalRecord.tenant_id == caller.tenant_id,
    ).first()


@router.get("/{collection}")
async def list_records(
    collection: str,
    request: Request,
    incident_id: Optional[str] = None,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    if collection not in COLLECTIONS:
        return result_response(request, invalid_argument(f"Unknown collection: {collection}"))

    query = db.query(TacticalRecord).filter(
        TacticalRecord.tenant_id == caller.tenant_id,
        TacticalRecord.collection == collection,
    )
    if incident_id:
        query = query.filter(TacticalRecord.incident_id == incident_id)
    records = query.order_by(TacticalRecord.updated_at.desc()).all()
    return result_response(request, Result.success([_record_dict(r) for r in records]))


@router.post("/{collection}")
async def create_record(
    collection: str,
    data: TacticalRecordBody,
    request: Request,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    if collection not in COLLECTIONS:
        return result_response(request, invalid_argument(f"Unknown collection: {collection}"))

    if data.incident_id:
        loaded = load_tenant_incident(db, data.incident_id, caller)
        if not loaded.ok:
            return result_response(request, loaded)

    record = TacticalRecord(
        id=new_id(),
        tenant_id=caller.tenant_id,
        collection=collection,
        incident_id=data.incident_id,
        data=data.data,
        updated_at=utcnow(),
    )
    db.add(record)
    db.commit()
    logger.info(f"Created {collection} record {record.id} for incident {record.incident_id}")
    return result_response(request, Result.success(_record_dict(record), _changes_for(record)))


@router.put("/{collection}/{record_id}")
async def update_record(
    collection: str,
    record_id: str,
    data: TacticalRecordBody,
    request: Request,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    record = _load(db, collection, record_id, caller)
    if not record:
        return result_response(request, not_found("Record not found."))

    if data.incident_id:
        loaded = load_tenant_incident(db, data.incident_id, caller)
        if not loaded.ok:
            return result_response(request, loaded)

    record.data = data.data
    if data.incident_id is not None:
        record.incident_id = data.incident_id
    record.updated_at = utcnow()
    db.commit()
    return result_response(request, Result.success(_record_dict(record), _changes_for(record)))


@router.delete("/{collection}/{record_id}")
async def delete_record(
    collection: str,
    record_id: str,
    request: Request,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    record = _load(db, collection, record_id, caller)
    if not record:
        return result_response(request, not_found("Record not found."))

    changes = _changes_for(record, deleted=True)
    db.delete(record)
    db.commit()
    return result_response(request, Result.success({"id": record_id, "deleted": True}, changes))
