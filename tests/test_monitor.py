"""Client session monitor: lockout, heartbeats, visibility, snapshot reactions."""
import asyncio
import json

import pytest

from board_client.api import ApiResult
from board_client.monitor import BoardView, SessionMonitor
from board_client.subscriptions import SubscriptionManager
from services.command.snapshots import CommandRequestSnapshot, IncidentSnapshot, TacticalChange, to_message


def incident(commander=None, session=None, status="Active"):
    return IncidentSnapshot(
        id="inc1",
        tenant_id="t1",
        incident_number="24-001",
        incident_name=None,
        status=status,
        commander_user_id=commander,
        commander_session_id=session,
    )


def request(status="pending", requester="me", commander="chief", request_id="req1"):
    return CommandRequestSnapshot(
        id=request_id,
        tenant_id="t1",
        incident_id="inc1",
        requester_user_id=requester,
        requester_name="Me",
        requester_session_id="s1",
        current_commander_uid=commander,
        status=status,
    )


class FakeClient:
    def __init__(self, status=None, heartbeat=None):
        self.status_result = status or ApiResult(True, data={"status": "ok"})
        self.heartbeat_result = heartbeat or ApiResult(True, data={"session_id": "s1"})
        self.heartbeats = 0
        self.refreshes = 0
        self.cancelled = []

    async def check_session_status(self, session_id):
        return self.status_result

    async def heartbeat(self, session_id):
        self.heartbeats += 1
        return self.heartbeat_result

    async def refresh_credentials(self):
        self.refreshes += 1
        return ApiResult(True, data={"access_token": f"token-{self.refreshes}"})

    async def request_command(self, incident_id, session_id):
        return ApiResult(True, data={"id": "req1", "status": "pending"})

    async def cancel_command_request(self, request_id):
        self.cancelled.append(request_id)
        return ApiResult(True, data={"request_id": request_id, "status": "cancelled"})

    def websocket_url(self, incident_id=None):
        return f"ws://board.test/ws/command?token=token-{self.refreshes}&incident_id={incident_id}"


class RecordingView(BoardView):
    def __init__(self):
        self.events = []

    def names(self):
        return [name for name, _ in self.events]

    def show_lockout(self, message):
        self.events.append(("show_lockout", message))

    def offer_view_only(self, message):
        self.events.append(("offer_view_only", message))

    def session_lost(self, message):
        self.events.append(("session_lost", message))

    def full_reload(self, incident):
        self.events.append(("full_reload", incident))

    def light_refresh(self, change):
        self.events.append(("light_refresh", change))

    def incident_closed(self, incident):
        self.events.append(("incident_closed", incident))

    def incoming_request(self, request):
        self.events.append(("incoming_request", request))

    def incoming_request_cleared(self, request):
        self.events.append(("incoming_request_cleared", request))

    def request_resolved(self, request):
        self.events.append(("request_resolved", request))


class FakeSocket:
    def __init__(self, messages=()):
        self._messages = [json.dumps(m) for m in messages]
        self._closed = asyncio.Event()

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._messages:
            return self._messages.pop(0)
        await self._closed.wait()
        raise StopAsyncIteration

    async def send(self, data):
        pass

    async def close(self):
        self._closed.set()


class ScriptedConnector:
    """Hands out sockets scripted per incident_id; records every URL."""

    def __init__(self, scripts=None):
        self.scripts = scripts or {}
        self.urls = []

    async def __call__(self, url):
        self.urls.append(url)
        incident_id = url.rsplit("incident_id=", 1)[-1]
        return FakeSocket(self.scripts.pop(incident_id, ()))


@pytest.fixture
def connector():
    return ScriptedConnector()


def make_monitor(client, connector, **kwargs):
    view = RecordingView()
    monitor = SessionMonitor(
        client, view, session_id="s1", user_id="me",
        subscriptions=SubscriptionManager(connect=connector),
        **kwargs,
    )
    return monitor, view


class TestStart:
    @pytest.mark.asyncio
    async def test_locked_out_halts_the_board(self, connector):
        client = FakeClient(status=ApiResult(True, data={"status": "locked_out", "message": "In command elsewhere"}))
        monitor, view = make_monitor(client, connector)

        await monitor.start()

        assert monitor.halted
        assert view.events == [("show_lockout", "In command elsewhere")]
        assert connector.urls == []
        await monitor.stop()

    @pytest.mark.asyncio
    async def test_view_only_is_offered_not_enforced(self, connector):
        client = FakeClient(status=ApiResult(True, data={"status": "view_only_recommended", "message": "m"}))
        monitor, view = make_monitor(client, connector)

        await monitor.start()
        await asyncio.sleep(0.01)

        assert not monitor.halted
        assert view.names() == ["offer_view_only"]
        assert len(connector.urls) == 1
        await monitor.stop()

    @pytest.mark.asyncio
    async def test_unknown_session(self, connector):
        client = FakeClient(status=ApiResult(False, code="not-found", message="Session not found"))
        monitor, view = make_monitor(client, connector)

        await monitor.start()

        assert monitor.halted
        assert view.names() == ["session_lost"]
        await monitor.stop()


class TestHeartbeats:
    @pytest.mark.asyncio
    async def test_beats_while_visible_and_pauses_while_hidden(self, connector):
        client = FakeClient()
        monitor, _ = make_monitor(client, connector, heartbeat_interval=0.01)
        await monitor.start()

        await asyncio.sleep(0.1)
        assert client.heartbeats > 0

        await monitor.set_visible(False)
        paused_at = client.heartbeats
        await asyncio.sleep(0.1)
        assert client.heartbeats == paused_at

        await monitor.set_visible(True)
        await asyncio.sleep(0.1)
        assert client.heartbeats > paused_at
        await monitor.stop()

    @pytest.mark.asyncio
    async def test_resume_refreshes_credentials_and_reconnects(self, connector):
        client = FakeClient()
        monitor, _ = make_monitor(client, connector, heartbeat_interval=60)
        await monitor.start()
        await asyncio.sleep(0.01)

        await monitor.set_visible(False)
        await monitor.set_visible(True)
        await asyncio.sleep(0.01)

        assert client.refreshes == 1
        assert connector.urls[-1].startswith("ws://board.test/ws/command?token=token-1")
        await monitor.stop()

    @pytest.mark.asyncio
    async def test_refreshes_credentials_every_n_beats(self, connector):
        client = FakeClient()
        monitor, _ = make_monitor(client, connector, refresh_every=2)

        for _ in range(5):
            await monitor.beat()

        assert client.heartbeats == 5
        assert client.refreshes == 2

    @pytest.mark.asyncio
    async def test_lost_session_halts(self, connector):
        client = FakeClient(heartbeat=ApiResult(False, code="not-found", message="Session not found"))
        monitor, view = make_monitor(client, connector)

        await monitor.beat()

        assert monitor.halted
        assert view.events == [("session_lost", "Session not found")]
        await monitor.set_visible(True)
        assert client.refreshes == 0

    @pytest.mark.asyncio
    async def test_transient_failure_keeps_going(self, connector):
        client = FakeClient(heartbeat=ApiResult(False, code="unavailable", message="offline"))
        monitor, view = make_monitor(client, connector)

        await monitor.beat()

        assert not monitor.halted
        assert view.events == []


class TestSnapshots:
    def test_standing_flip_triggers_full_reload(self, connector):
        monitor, view = make_monitor(FakeClient(), connector)
        monitor.current_incident = incident()

        monitor.handle_snapshot(incident("me", "s1"))
        monitor.handle_snapshot(incident("chief", "s9"))

        assert view.names() == ["full_reload", "full_reload"]
        assert monitor.current_incident.commander_user_id == "chief"

    def test_other_changes_are_light(self, connector):
        monitor, view = make_monitor(FakeClient(), connector)
        monitor.current_incident = incident("chief", "s9")

        monitor.handle_snapshot(incident("deputy", "s8"))
        monitor.handle_snapshot(TacticalChange("t1", "inc1", "groups", "g1"))
        monitor.handle_snapshot(TacticalChange("t1", "other", "groups", "g2"))

        assert view.names() == ["light_refresh", "light_refresh"]

    def test_closed_incident(self, connector):
        monitor, view = make_monitor(FakeClient(), connector)
        monitor.current_incident = incident("me", "s1")

        monitor.handle_snapshot(incident(status="Closed"))

        assert view.names() == ["incident_closed"]

    def test_snapshots_for_other_incidents_are_ignored(self, connector):
        monitor, view = make_monitor(FakeClient(), connector)
        monitor.current_incident = incident()

        monitor.handle_snapshot(IncidentSnapshot("inc2", "t1", "24-002", None, "Active", "me", "s1"))

        assert view.events == []

    @pytest.mark.asyncio
    async def test_watch_incident_consumes_the_feed(self):
        connector = ScriptedConnector({"inc1": [
            {"type": "connected", "tenant_id": "t1", "incident_id": "inc1"},
            to_message(incident("me", "s1")),
        ]})
        monitor, view = make_monitor(FakeClient(), connector)

        await monitor.watch_incident(incident())
        for _ in range(50):
            if view.events:
                break
            await asyncio.sleep(0.01)

        assert view.names() == ["full_reload"]
        await monitor.leave_incident()
        assert "incident" not in monitor.subscriptions
        await monitor.stop()


class TestRequests:
    @pytest.mark.asyncio
    async def test_denial_reverts_pending_state(self, connector):
        monitor, view = make_monitor(FakeClient(), connector)
        monitor.current_incident = incident("chief", "s9")

        await monitor.request_command()
        assert monitor.pending_request_id == "req1"

        monitor.handle_snapshot(request("pending"))
        monitor.handle_snapshot(request("denied"))

        assert monitor.pending_request_id is None
        assert view.names() == ["request_resolved"]

    @pytest.mark.asyncio
    async def test_approval_waits_for_incident_snapshot(self, connector):
        monitor, view = make_monitor(FakeClient(), connector)
        monitor.current_incident = incident("chief", "s9")
        await monitor.request_command()

        monitor.handle_snapshot(request("approved"))
        monitor.handle_snapshot(incident("me", "s1"))

        assert monitor.pending_request_id is None
        assert view.names() == ["full_reload"]

    @pytest.mark.asyncio
    async def test_cancel(self, connector):
        client = FakeClient()
        monitor, _ = make_monitor(client, connector)
        monitor.current_incident = incident("chief", "s9")
        await monitor.request_command()

        await monitor.cancel_request()

        assert client.cancelled == ["req1"]
        assert monitor.pending_request_id is None

    @pytest.mark.asyncio
    async def test_request_needs_an_incident(self, connector):
        monitor, _ = make_monitor(FakeClient(), connector)

        result = await monitor.request_command()

        assert result.code == "failed-precondition"

    def test_incoming_request_for_commander(self, connector):
        monitor, view = make_monitor(FakeClient(), connector)

        monitor.handle_snapshot(request("pending", requester="rookie", commander="me", request_id="req9"))
        monitor.handle_snapshot(request("expired", requester="rookie", commander="me", request_id="req9"))

        assert view.names() == ["incoming_request", "incoming_request_cleared"]
