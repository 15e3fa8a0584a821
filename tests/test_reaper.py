"""Hourly stale-command sweep and daily old-session sweep."""
from datetime import datetime, timedelta, timezone

from models import CommandRequest, DeviceSession, IncidentLog
from services.command.change_feed import ChangeFeed
from services.command.reaper import (
    run_stale_command_sweep,
    seconds_until_daily_sweep,
    sweep_old_sessions,
    sweep_stale_commands,
)
from services.command.results import ErrorKind
from services.command.sessions import create_session
from services.command.store import count_sessions, utcnow


class TestStaleCommandSweep:
    def test_releases_command_of_unresponsive_device(self, db, factory):
        """Commanding session silent for 3h loses command and is deleted."""
        tenant = factory.tenant()
        user = factory.user(tenant)
        session_id = factory.session(user, idle=timedelta(hours=3)).id
        incident = factory.incident(tenant, commander=user)
        incident.commander_session_id = session_id
        db.commit()

        result = sweep_stale_commands(db)

        assert result.value["released"] == 1
        incident = factory.refresh(incident)
        assert incident.commander_user_id is None
        assert incident.commander_session_id is None
        assert db.get(DeviceSession, session_id) is None
        events = [log.event_type for log in db.query(IncidentLog).filter_by(incident_id=incident.id)]
        assert events == ["COMMAND_RELEASED_STALE"]
        assert result.changes[0].commander_user_id is None

    def test_release_frees_the_slot_for_another_user(self, db, factory, as_caller):
        tenant = factory.tenant(max_sessions=1)
        stuck = factory.user(tenant)
        factory.incident(tenant, commander=stuck, session=factory.session(stuck, idle=timedelta(hours=3)))
        newcomer = factory.user(tenant)

        before = create_session(db, as_caller(newcomer))
        sweep_stale_commands(db)
        after = create_session(db, as_caller(newcomer))

        assert before.error == ErrorKind.PERMISSION_DENIED
        assert after.ok
        assert after.value["admission"] == "open_slot"
        assert count_sessions(db, tenant.id) == 1

    def test_sweep_is_idempotent(self, db, factory):
        tenant = factory.tenant()
        user = factory.user(tenant)
        session = factory.session(user, idle=timedelta(hours=3))
        factory.incident(tenant, commander=user, session=session)

        first = sweep_stale_commands(db)
        second = sweep_stale_commands(db)

        assert first.value["released"] == 1
        assert second.value == {"released": 0, "orphans_reclaimed": 0, "requests_expired": 0}
        assert second.changes == ()
        assert db.query(IncidentLog).count() == 1

    def test_recently_active_commander_keeps_command(self, db, factory):
        tenant = factory.tenant()
        user = factory.user(tenant)
        session = factory.session(user, idle=timedelta(minutes=90))
        incident = factory.incident(tenant, commander=user, session=session)

        assert sweep_stale_commands(db).value["released"] == 0
        assert factory.refresh(incident).commander_user_id == user.id

    def test_stale_sessions_without_command_are_left_alone(self, db, factory):
        tenant = factory.tenant()
        user = factory.user(tenant)
        session_id = factory.session(user, idle=timedelta(hours=10)).id

        sweep_stale_commands(db)

        assert db.get(DeviceSession, session_id) is not None

    def test_release_expires_pending_requests(self, db, factory):
        tenant = factory.tenant()
        commander = factory.user(tenant)
        requester = factory.user(tenant)
        session = factory.session(commander, idle=timedelta(hours=3))
        incident = factory.incident(tenant, commander=commander, session=session)
        request = factory.request(incident, requester, factory.session(requester), commander)

        result = sweep_stale_commands(db)

        assert factory.refresh(request).status == "expired"
        assert {c.kind for c in result.changes} == {"incident", "command_request"}

    def test_reclaims_orphaned_pointer(self, db, factory):
        """A pointer to a session that no longer exists is cleared once the incident went quiet."""
        tenant = factory.tenant()
        user = factory.user(tenant)
        incident = factory.incident(tenant, commander=user)
        incident.commander_session_id = "logged-out"
        db.commit()

        assert sweep_stale_commands(db).value["orphans_reclaimed"] == 0

        result = sweep_stale_commands(db, now=utcnow() + timedelta(hours=3))

        assert result.value["orphans_reclaimed"] == 1
        incident = factory.refresh(incident)
        assert incident.commander_user_id is None
        assert incident.commander_session_id is None

    def test_expires_requests_past_ttl(self, db, factory):
        tenant = factory.tenant()
        commander = factory.user(tenant)
        requester = factory.user(tenant)
        incident = factory.incident(tenant, commander=commander, session=factory.session(commander))
        factory.request(incident, requester, factory.session(requester), commander, age=timedelta(minutes=15))

        result = sweep_stale_commands(db)

        assert result.value["requests_expired"] == 1
        assert db.query(CommandRequest).filter_by(status="pending").count() == 0

    def test_run_publishes_changes(self, db, factory):
        tenant = factory.tenant()
        user = factory.user(tenant)
        session = factory.session(user, idle=timedelta(hours=3))
        factory.incident(tenant, commander=user, session=session)
        published = []

        class RecordingFeed(ChangeFeed):
            def publish(self, snapshot):
                published.append(snapshot)

        result = run_stale_command_sweep(RecordingFeed())

        assert result.value["released"] == 1
        assert [s.kind for s in published] == ["incident"]


class TestOldSessionSweep:
    def test_deletes_sessions_past_retention(self, db, factory):
        tenant = factory.tenant()
        user = factory.user(tenant)
        old_id = factory.session(user, idle=timedelta(days=61)).id
        recent_id = factory.session(user, idle=timedelta(days=59)).id

        result = sweep_old_sessions(db)

        assert result.value == {"deleted": 1}
        db.expire_all()
        assert db.get(DeviceSession, old_id) is None
        assert db.get(DeviceSession, recent_id) is not None

    def test_cap_limits_each_run_oldest_first(self, db, factory):
        tenant = factory.tenant(max_sessions=10)
        user = factory.user(tenant)
        ids = [factory.session(user, idle=timedelta(days=70 + i)).id for i in range(5)]

        assert sweep_old_sessions(db, cap=2).value == {"deleted": 2}
        db.expire_all()
        remaining = {row.id for row in db.query(DeviceSession).all()}
        assert remaining == set(ids[:3])

        assert sweep_old_sessions(db, cap=2).value == {"deleted": 2}
        assert sweep_old_sessions(db, cap=2).value == {"deleted": 1}
        assert sweep_old_sessions(db, cap=2).value == {"deleted": 0}

    def test_never_touches_incidents(self, db, factory):
        tenant = factory.tenant()
        user = factory.user(tenant)
        session = factory.session(user, idle=timedelta(days=90))
        incident = factory.incident(tenant, commander=user, session=session)

        sweep_old_sessions(db)

        assert factory.refresh(incident).commander_user_id == user.id


class TestDailySchedule:
    def test_later_the_same_day(self):
        now = datetime(2024, 6, 1, 5, 0, tzinfo=timezone.utc)  # 01:00 in New York (EDT)
        assert seconds_until_daily_sweep(now, hour=3, tz_name="America/New_York") == 2 * 3600

    def test_rolls_over_to_next_day(self):
        now = datetime(2024, 6, 1, 8, 0, tzinfo=timezone.utc)  # 04:00 EDT
        assert seconds_until_daily_sweep(now, hour=3, tz_name="America/New_York") == 23 * 3600

    def test_across_dst_change(self):
        # 2024-03-10 02:00 EST clocks jump to 03:00 EDT
        now = datetime(2024, 3, 9, 9, 0, tzinfo=timezone.utc)  # 04:00 EST on the 9th
        # Next 03:00 EDT is 07:00 UTC on the 10th
        assert seconds_until_daily_sweep(now, hour=3, tz_name="America/New_York") == 22 * 3600
