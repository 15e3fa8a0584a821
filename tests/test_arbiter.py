"""Take / re-establish command, and the incident lifecycle around it."""
from datetime import timedelta

from models import CommandRequest, Incident, IncidentLog
from services.command.arbiter import (
    close_incident,
    get_active_incidents,
    get_closed_incidents,
    get_incident_details,
    reestablish_command,
    start_incident,
    take_command,
)
from services.command.results import ErrorKind
from services.command.store import count_commanded_incidents, utcnow


def _events(db, incident_id):
    return [log.event_type for log in db.query(IncidentLog).filter_by(incident_id=incident_id).order_by(IncidentLog.id)]


class TestTakeCommand:
    def test_uncommanded_incident(self, db, factory, as_caller):
        tenant = factory.tenant()
        user = factory.user(tenant)
        session = factory.session(user)
        incident = factory.incident(tenant)

        result = take_command(db, incident.id, session.id, as_caller(user))

        assert result.ok
        incident = factory.refresh(incident)
        assert incident.commander_user_id == user.id
        assert incident.commander_session_id == session.id
        assert _events(db, incident.id) == ["COMMAND_TAKEN"]
        assert result.changes[0].commander_session_id == session.id

    def test_license_gate(self, db, factory, as_caller):
        """One license in use on another incident blocks a second commander."""
        tenant = factory.tenant(max_licenses=1)
        user1 = factory.user(tenant)
        user2 = factory.user(tenant)
        session1 = factory.session(user1)
        session2 = factory.session(user2)
        factory.incident(tenant, commander=user1, session=session1)
        other = factory.incident(tenant)

        result = take_command(db, other.id, session2.id, as_caller(user2))

        assert result.error == ErrorKind.PERMISSION_DENIED
        assert factory.refresh(other).commander_user_id is None

    def test_license_gate_counts_only_active_incidents(self, db, factory, as_caller):
        tenant = factory.tenant(max_licenses=1)
        user1 = factory.user(tenant)
        user2 = factory.user(tenant)
        factory.incident(tenant, commander=user1, session=factory.session(user1), status="Closed")
        session2 = factory.session(user2)
        target = factory.incident(tenant)

        assert take_command(db, target.id, session2.id, as_caller(user2)).ok

    def test_retaking_own_incident_is_exempt_from_license_gate(self, db, factory, as_caller):
        tenant = factory.tenant(max_licenses=1)
        user = factory.user(tenant)
        old = factory.session(user)
        new = factory.session(user)
        incident = factory.incident(tenant, commander=user, session=old)

        result = take_command(db, incident.id, new.id, as_caller(user))

        assert result.ok
        assert factory.refresh(incident).commander_session_id == new.id
        assert _events(db, incident.id) == ["COMMAND_RETAKEN"]

    def test_single_incident_gate(self, db, factory, as_caller):
        tenant = factory.tenant(max_licenses=5)
        user = factory.user(tenant)
        session = factory.session(user)
        factory.incident(tenant, commander=user, session=session, number="A-1")
        second = factory.incident(tenant)

        result = take_command(db, second.id, session.id, as_caller(user))

        assert result.error == ErrorKind.FAILED_PRECONDITION
        assert "A-1" in result.message

    def test_takeover_expires_pending_requests(self, db, factory, as_caller):
        tenant = factory.tenant(max_licenses=2)
        commander = factory.user(tenant)
        requester = factory.user(tenant)
        boss = factory.user(tenant)
        commander_session = factory.session(commander)
        requester_session = factory.session(requester)
        boss_session = factory.session(boss)
        incident = factory.incident(tenant, commander=commander, session=commander_session)
        request = factory.request(incident, requester, requester_session, commander)

        result = take_command(db, incident.id, boss_session.id, as_caller(boss))

        assert result.ok
        assert factory.refresh(request).status == "expired"
        assert factory.refresh(incident).commander_user_id == boss.id
        assert _events(db, incident.id) == ["COMMAND_TAKEN_OVER"]
        assert {c.kind for c in result.changes} == {"incident", "command_request"}

    def test_closed_incident(self, db, factory, as_caller):
        tenant = factory.tenant()
        user = factory.user(tenant)
        session = factory.session(user)
        incident = factory.incident(tenant, status="Closed")

        assert take_command(db, incident.id, session.id, as_caller(user)).error == ErrorKind.FAILED_PRECONDITION

    def test_unknown_session(self, db, factory, as_caller):
        tenant = factory.tenant()
        user = factory.user(tenant)
        incident = factory.incident(tenant)

        assert take_command(db, incident.id, "nope", as_caller(user)).error == ErrorKind.NOT_FOUND

    def test_other_tenants_incident(self, db, factory, as_caller):
        tenant = factory.tenant()
        user = factory.user(tenant)
        session = factory.session(user)
        foreign = factory.incident(factory.tenant())

        assert take_command(db, foreign.id, session.id, as_caller(user)).error == ErrorKind.PERMISSION_DENIED

    def test_missing_license_quota_is_internal_error(self, db, factory, as_caller):
        tenant = factory.tenant(max_licenses=None)
        user = factory.user(tenant)
        session = factory.session(user)
        incident = factory.incident(tenant)

        assert take_command(db, incident.id, session.id, as_caller(user)).error == ErrorKind.INTERNAL

    def test_missing_arguments(self, db, factory, as_caller):
        tenant = factory.tenant()
        user = factory.user(tenant)

        assert take_command(db, "", "s", as_caller(user)).error == ErrorKind.INVALID_ARGUMENT
        assert take_command(db, "i", None, as_caller(user)).error == ErrorKind.INVALID_ARGUMENT

    def test_license_count_never_exceeds_quota(self, db, factory, as_caller):
        tenant = factory.tenant(max_licenses=2)
        users = [factory.user(tenant) for _ in range(4)]
        incidents = [factory.incident(tenant) for _ in range(4)]
        for user, incident in zip(users, incidents):
            take_command(db, incident.id, factory.session(user).id, as_caller(user))
            assert count_commanded_incidents(db, tenant.id) <= 2
        assert count_commanded_incidents(db, tenant.id) == 2


class TestReestablishCommand:
    def test_moves_command_to_new_session(self, db, factory, as_caller):
        tenant = factory.tenant(max_licenses=1)
        user = factory.user(tenant)
        new = factory.session(user)
        incident = factory.incident(tenant, commander=user)
        incident.commander_session_id = "dead-session"
        db.commit()

        result = reestablish_command(db, incident.id, new.id, as_caller(user))

        assert result.ok
        assert factory.refresh(incident).commander_session_id == new.id
        assert _events(db, incident.id) == ["COMMAND_REESTABLISHED"]

    def test_same_session_is_a_no_op(self, db, factory, as_caller):
        tenant = factory.tenant()
        user = factory.user(tenant)
        session = factory.session(user)
        incident = factory.incident(tenant, commander=user, session=session)

        result = reestablish_command(db, incident.id, session.id, as_caller(user))

        assert result.ok
        assert result.changes == ()
        assert _events(db, incident.id) == []

    def test_only_recorded_commander(self, db, factory, as_caller):
        tenant = factory.tenant()
        commander = factory.user(tenant)
        other = factory.user(tenant)
        incident = factory.incident(tenant, commander=commander, session=factory.session(commander))

        result = reestablish_command(db, incident.id, factory.session(other).id, as_caller(other))

        assert result.error == ErrorKind.PERMISSION_DENIED


class TestIncidentLifecycle:
    def test_start_incident_commands_it(self, db, factory, as_caller):
        tenant = factory.tenant()
        user = factory.user(tenant)
        session = factory.session(user)

        result = start_incident(db, as_caller(user), session.id, incident_number=" 24-0117 ", incident_name="Barn fire")

        assert result.ok
        incident = db.get(Incident, result.value["id"])
        assert incident.incident_number == "24-0117"
        assert incident.incident_name == "Barn fire"
        assert incident.commander_user_id == user.id
        assert incident.commander_session_id == session.id
        assert _events(db, incident.id) == ["INCIDENT_STARTED"]

    def test_start_incident_generates_number(self, db, factory, as_caller):
        tenant = factory.tenant(timezone="America/Chicago")
        user = factory.user(tenant)
        session = factory.session(user)

        result = start_incident(db, as_caller(user), session.id)

        assert result.ok
        assert len(result.value["incident_number"]) == len("20240101-1200")

    def test_start_incident_respects_gates(self, db, factory, as_caller):
        tenant = factory.tenant(max_licenses=2)
        user1 = factory.user(tenant)
        user2 = factory.user(tenant)
        user3 = factory.user(tenant)
        session1 = factory.session(user1)
        assert start_incident(db, as_caller(user1), session1.id).ok

        assert start_incident(db, as_caller(user1), session1.id).error == ErrorKind.FAILED_PRECONDITION
        assert start_incident(db, as_caller(user2), factory.session(user2).id).ok
        assert start_incident(db, as_caller(user3), factory.session(user3).id).error == ErrorKind.PERMISSION_DENIED

    def test_close_releases_license_and_expires_requests(self, db, factory, as_caller):
        tenant = factory.tenant(max_licenses=1)
        commander = factory.user(tenant)
        requester = factory.user(tenant)
        session = factory.session(commander)
        requester_session = factory.session(requester)
        incident = factory.incident(tenant, commander=commander, session=session)
        request = factory.request(incident, requester, requester_session, commander)

        result = close_incident(db, incident.id, as_caller(commander))

        assert result.ok
        incident = factory.refresh(incident)
        assert incident.status == "Closed"
        assert incident.commander_user_id is None
        assert incident.commander_session_id is None
        assert incident.end_time is not None
        assert factory.refresh(request).status == "expired"
        assert count_commanded_incidents(db, tenant.id) == 0
        assert start_incident(db, as_caller(requester), requester_session.id).ok

    def test_only_commander_can_close(self, db, factory, as_caller):
        tenant = factory.tenant()
        commander = factory.user(tenant)
        other = factory.user(tenant)
        incident = factory.incident(tenant, commander=commander, session=factory.session(commander))

        assert close_incident(db, incident.id, as_caller(other)).error == ErrorKind.PERMISSION_DENIED
        assert factory.refresh(incident).status == "Active"

    def test_reads_are_tenant_scoped(self, db, factory, as_caller):
        tenant = factory.tenant()
        user = factory.user(tenant)
        mine = factory.incident(tenant)
        factory.incident(tenant, status="Closed")
        foreign = factory.incident(factory.tenant())

        active = get_active_incidents(db, as_caller(user)).value
        assert [i["id"] for i in active] == [mine.id]
        assert get_incident_details(db, mine.id, as_caller(user)).value["id"] == mine.id
        assert get_incident_details(db, foreign.id, as_caller(user)).error == ErrorKind.PERMISSION_DENIED
        assert db.query(CommandRequest).count() == 0

    def test_closed_incidents_most_recent_first(self, db, factory, as_caller):
        tenant = factory.tenant()
        user = factory.user(tenant)
        factory.incident(tenant)
        older = factory.incident(tenant, status="Closed")
        newer = factory.incident(tenant, status="Closed")
        factory.incident(factory.tenant(), status="Closed")
        older.end_time = utcnow() - timedelta(days=2)
        newer.end_time = utcnow() - timedelta(hours=1)
        db.commit()

        closed = get_closed_incidents(db, as_caller(user)).value

        assert [i["id"] for i in closed] == [newer.id, older.id]
        assert all(i["status"] == "Closed" for i in closed)


def test_commander_pointers_are_set_together(db, factory, as_caller):
    tenant = factory.tenant()
    user = factory.user(tenant)
    session = factory.session(user)
    incident = factory.incident(tenant)
    take_command(db, incident.id, session.id, as_caller(user))
    close_incident(db, incident.id, as_caller(user))

    for row in db.query(Incident).all():
        assert (row.commander_user_id is None) == (row.commander_session_id is None)


def test_stale_timestamps_do_not_affect_take_command(db, factory, as_caller):
    tenant = factory.tenant()
    user = factory.user(tenant)
    session = factory.session(user, idle=timedelta(hours=5))
    incident = factory.incident(tenant)

    assert take_command(db, incident.id, session.id, as_caller(user)).ok
