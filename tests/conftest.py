"""Shared fixtures: in-memory SQLite database and record factories."""
import os

# Must be set before anything imports config / database
os.environ["COMMANDBOARD_DATABASE_URL"] = "sqlite://"
os.environ["COMMANDBOARD_REAPER_ENABLED"] = "0"
os.environ.setdefault("COMMANDBOARD_JWT_SECRET", "test-secret-not-for-production")

from datetime import timedelta

import pytest

from database import Base, SessionLocal, engine
from models import CommandRequest, DeviceSession, Incident, Tenant, User, new_id
from services.command.identity import Caller
from services.command.store import utcnow


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


class Factory:
    """Creates rows directly, bypassing the services under test."""

    def __init__(self, db):
        self.db = db
        self._seq = 0

    def tenant(self, max_sessions=5, max_licenses=2, timezone="UTC", status="active"):
        self._seq += 1
        tenant = Tenant(
            id=new_id(),
            slug=f"dept{self._seq}",
            name=f"Department {self._seq}",
            status=status,
            timezone=timezone,
            max_total_sessions=max_sessions,
            max_command_licenses=max_licenses,
        )
        self.db.add(tenant)
        self.db.commit()
        return tenant

    def user(self, tenant, tier="basic", role="member", name=None, password_hash=None):
        self._seq += 1
        user = User(
            id=new_id(),
            tenant_id=tenant.id,
            email=f"user{self._seq}@example.org",
            display_name=name or f"User {self._seq}",
            password_hash=password_hash,
            role=role,
            license_tier=tier,
            status="active",
        )
        self.db.add(user)
        self.db.commit()
        return user

    def session(self, user, idle=timedelta(0), age=None):
        now = utcnow()
        session = DeviceSession(
            id=new_id(),
            user_id=user.id,
            tenant_id=user.tenant_id,
            login_time=now - (age or idle),
            last_active_time=now - idle,
        )
        self.db.add(session)
        self.db.commit()
        return session

    def incident(self, tenant, commander=None, session=None, status="Active", number=None):
        self._seq += 1
        incident = Incident(
            id=new_id(),
            tenant_id=tenant.id,
            incident_number=number or f"INC-{self._seq}",
            status=status,
            start_time=utcnow(),
            commander_user_id=commander.id if commander else None,
            commander_session_id=session.id if session else None,
        )
        self.db.add(incident)
        self.db.commit()
        return incident

    def request(self, incident, requester, requester_session, commander, age=timedelta(0), status="pending"):
        request = CommandRequest(
            id=new_id(),
            tenant_id=incident.tenant_id,
            incident_id=incident.id,
            requester_user_id=requester.id,
            requester_name=requester.display_name,
            requester_session_id=requester_session.id,
            current_commander_uid=commander.id,
            status=status,
            request_time=utcnow() - age,
        )
        self.db.add(request)
        self.db.commit()
        return request

    def refresh(self, row):
        self.db.expire_all()
        return self.db.get(type(row), row.id)


@pytest.fixture
def factory(db):
    return Factory(db)


def caller_for(user) -> Caller:
    return Caller(
        user_id=user.id,
        tenant_id=user.tenant_id,
        license_tier=user.license_tier,
        role=user.role,
        display_name=user.display_name,
    )


@pytest.fixture
def as_caller():
    return caller_for
