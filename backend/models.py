"""
SQLAlchemy models for Command Board

Tenants, users and credentials live beside the command state so that one
transaction can count sessions, count command licenses and move the
commander pointer atomically.

String primary keys are opaque ids (uuid4 hex) handed to browsers.
"""

import uuid

from sqlalchemy import Column, String, Text, Integer, ForeignKey, DateTime, Index, JSON, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from database import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def new_id() -> str:
    return uuid.uuid4().hex


# =============================================================================
# TENANTS AND IDENTITY
# =============================================================================

class Tenant(Base):
    """
    Customer organization (fire department / response agency).

    Quotas are nullable on purpose: a tenant provisioned without them is a
    configuration fault and every quota-gated operation reports `internal`.
    """
    __tablename__ = "tenants"

    id = Column(String(32), primary_key=True, default=new_id)
    slug = Column(String(50), unique=True, nullable=False)
    name = Column(String(200), nullable=False)
    status = Column(String(20), nullable=False, default="active")  # active, suspended
    timezone = Column(String(50), default="America/New_York")

    # Quotas
    max_total_sessions = Column(Integer)       # Concurrent device sessions
    max_command_licenses = Column(Integer)     # Concurrently commanded incidents

    created_at = Column(DateTime(timezone=True), server_default=func.now())


class User(Base):
    """Individual responder login"""
    __tablename__ = "users"

    id = Column(String(32), primary_key=True, default=new_id)
    tenant_id = Column(String(32), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False)
    display_name = Column(String(100))
    password_hash = Column(String(255))
    role = Column(String(20), nullable=False, default="member")            # admin, member
    license_tier = Column(String(20), nullable=False, default="basic")     # basic, pro
    status = Column(String(20), nullable=False, default="active")          # active, suspended

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_login_at = Column(DateTime(timezone=True))


class RefreshToken(Base):
    """
    Long-lived opaque credential exchanged for short-lived JWT access tokens.
    Revoked on logout; expired rows are deleted when presented.
    """
    __tablename__ = "refresh_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    tenant_id = Column(String(32), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    token = Column(String(128), unique=True, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    revoked_at = Column(DateTime(timezone=True))
    last_used_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# =============================================================================
# SESSIONS AND COMMAND STATE
# =============================================================================

class DeviceSession(Base):
    """
    One authenticated device/browser instance.

    Created on login, refreshed by heartbeat, deleted on logout, eviction or
    reaping. Counted against Tenant.max_total_sessions.
    """
    __tablename__ = "device_sessions"

    id = Column(String(32), primary_key=True, default=new_id)
    user_id = Column(String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    tenant_id = Column(String(32), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    login_time = Column(DateTime(timezone=True), nullable=False)
    last_active_time = Column(DateTime(timezone=True), nullable=False)

    ip_address = Column(String(45))
    user_agent = Column(Text)

    __table_args__ = (
        Index("ix_device_sessions_tenant_last_active", "tenant_id", "last_active_time"),
    )


class Incident(Base):
    """
    Live incident. The row itself is the command lock: commander_user_id and
    commander_session_id are both NULL (uncommanded) or both set.
    """
    __tablename__ = "incidents"

    id = Column(String(32), primary_key=True, default=new_id)
    tenant_id = Column(String(32), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    incident_number = Column(String(50), nullable=False)
    incident_name = Column(String(200))
    status = Column(String(20), nullable=False, default="Active")  # Active, Closed
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True))

    # Command lock
    commander_user_id = Column(String(32), ForeignKey("users.id", ondelete="SET NULL"))
    commander_session_id = Column(String(32))  # No FK: may briefly outlive its session

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_incidents_tenant_status", "tenant_id", "status"),
        Index("ix_incidents_commander_user", "commander_user_id"),
    )


class CommandRequest(Base):
    """
    Request by a non-commander to take over an incident.

    pending -> approved | denied | cancelled | expired
    Only one pending row per incident (partial unique index).
    """
    __tablename__ = "command_requests"

    id = Column(String(32), primary_key=True, default=new_id)
    tenant_id = Column(String(32), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    incident_id = Column(String(32), ForeignKey("incidents.id", ondelete="CASCADE"), nullable=False)
    requester_user_id = Column(String(32), nullable=False)
    requester_name = Column(String(100))
    requester_session_id = Column(String(32), nullable=False)
    current_commander_uid = Column(String(32), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="pending")
    request_time = Column(DateTime(timezone=True), nullable=False)
    resolved_time = Column(DateTime(timezone=True))
    resolved_by = Column(String(32))

    __table_args__ = (
        Index(
            "uq_command_requests_one_pending",
            "incident_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )


class IncidentLog(Base):
    """
    Timestamped audit trail of command transitions on an incident.
    Written in the same transaction as the transition it describes.
    """
    __tablename__ = "incident_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(32), nullable=False)
    incident_id = Column(String(32), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)  # COMMAND_TAKEN, COMMAND_TRANSFERRED, ...
    details = Column(Text)
    metadata_json = Column("metadata", JSONType)
    user_id = Column(String(32))
    timestamp = Column(DateTime(timezone=True), nullable=False)


# =============================================================================
# TACTICAL RECORDS (groups, assignments, rosters...)
# =============================================================================

class TacticalRecord(Base):
    """
    Generic tenant-scoped record for the board's non-command data.
    The command subsystem only cares that writes produce change notifications.
    """
    __tablename__ = "tactical_records"

    id = Column(String(32), primary_key=True, default=new_id)
    tenant_id = Column(String(32), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    collection = Column(String(50), nullable=False)   # groups, assignments, units, templates
    incident_id = Column(String(32), index=True)
    data = Column(JSONType, default=dict)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_tactical_records_tenant_collection", "tenant_id", "collection"),
    )
