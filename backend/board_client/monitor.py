"""
Client session monitor.

Keeps one device session alive and reacts to server-side command changes:

- start(): checkSessionStatus; locked_out halts the board, view-only is
  offered but not enforced
- heartbeat loop every HEARTBEAT_INTERVAL seconds while visible; paused
  while hidden; credential refreshed every REFRESH_EVERY beats and
  immediately when the page becomes visible again
- watch_incident(): snapshots of the current incident; a flip of this
  session's command standing triggers view.full_reload, anything else
  view.light_refresh
- request tracking: the user's own pending request is cleared and the UI
  reverted on denial, cancellation or expiry
"""

import asyncio
import logging
from typing import Optional

from board_client.api import ApiResult, CommandBoardClient
from board_client.decisions import (
    FULL_RELOAD,
    INCIDENT_CLOSED,
    classify_incident_change,
)
from board_client.subscriptions import SubscriptionManager
from services.command.snapshots import CommandRequestSnapshot, IncidentSnapshot, TacticalChange

logger = logging.getLogger(__name__)

INCIDENT_SUBSCRIPTION = "incident"
REQUESTS_SUBSCRIPTION = "requests"


class BoardView:
    """Rendering callbacks. The default implementation ignores everything."""

    def show_lockout(self, message: str):
        pass

    def offer_view_only(self, message: str):
        pass

    def session_lost(self, message: str):
        pass

    def full_reload(self, incident: IncidentSnapshot):
        pass

    def light_refresh(self, change):
        pass

    def incident_closed(self, incident: IncidentSnapshot):
        pass

    def incoming_request(self, request: CommandRequestSnapshot):
        pass

    def incoming_request_cleared(self, request: CommandRequestSnapshot):
        pass

    def request_resolved(self, request: CommandRequestSnapshot):
        pass


class SessionMonitor:
    HEARTBEAT_INTERVAL = 60.0
    REFRESH_EVERY = 10

    def __init__(
        self,
        client: CommandBoardClient,
        view: BoardView,
        session_id: str,
        user_id: str,
        subscriptions: Optional[SubscriptionManager] = None,
        heartbeat_interval: Optional[float] = None,
        refresh_every: Optional[int] = None,
    ):
        self.client = client
        self.view = view
        self.session_id = session_id
        self.user_id = user_id
        self.subscriptions = subscriptions or SubscriptionManager()
        self.heartbeat_interval = heartbeat_interval or self.HEARTBEAT_INTERVAL
        self.refresh_every = refresh_every or self.REFRESH_EVERY

        self.status: Optional[str] = None
        self.halted = False
        self.current_incident: Optional[IncidentSnapshot] = None
        self.pending_request_id: Optional[str] = None
        self.beats = 0

        self._visible = asyncio.Event()
        self._visible.set()
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._consumers = {}

    @property
    def visible(self) -> bool:
        return self._visible.is_set()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> ApiResult:
        result = await self.client.check_session_status(self.session_id)
        if not result.success:
            if result.code == "not-found":
                self._halt()
                self.view.session_lost(result.message)
            return result

        self.status = result.data["status"]
        if self.status == "locked_out":
            self._halt()
            self.view.show_lockout(result.data.get("message"))
            return result
        if self.status == "view_only_recommended":
            self.view.offer_view_only(result.data.get("message"))

        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        await self._open(REQUESTS_SUBSCRIPTION, None)
        return result

    async def stop(self):
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None
        await self.subscriptions.close_all()
        for task in self._consumers.values():
            task.cancel()
        self._consumers.clear()

    def _halt(self):
        self.halted = True
        self._visible.clear()

    # =========================================================================
    # Visibility and heartbeats
    # =========================================================================

    async def set_visible(self, visible: bool):
        if self.halted:
            return
        if not visible:
            self._visible.clear()
            return
        if self._visible.is_set():
            return

        refreshed = await self.client.refresh_credentials()
        if refreshed.success:
            # Open sockets carry the old token in their URL
            await self.subscriptions.restart_all()
        else:
            logger.warning(f"Credential refresh on resume failed: {refreshed.message}")
        self._visible.set()

    async def _heartbeat_loop(self):
        while not self.halted:
            await self._visible.wait()
            await asyncio.sleep(self.heartbeat_interval)
            if not self._visible.is_set() or self.halted:
                continue
            await self.beat()

    async def beat(self) -> ApiResult:
        result = await self.client.heartbeat(self.session_id)
        if not result.success:
            if result.code == "not-found":
                logger.warning(f"Session {self.session_id} no longer exists")
                self._halt()
                self.view.session_lost(result.message)
            return result

        self.beats += 1
        if self.beats % self.refresh_every == 0:
            refreshed = await self.client.refresh_credentials()
            if not refreshed.success:
                logger.warning(f"Credential refresh failed: {refreshed.message}")
        return result

    # =========================================================================
    # Incident watching
    # =========================================================================

    async def watch_incident(self, incident: IncidentSnapshot):
        self.current_incident = incident
        await self._open(INCIDENT_SUBSCRIPTION, incident.id)

    async def leave_incident(self):
        self.current_incident = None
        await self._close(INCIDENT_SUBSCRIPTION)

    async def _open(self, key: str, incident_id: Optional[str]):
        await self._close(key)
        subscription = await self.subscriptions.open(key, lambda: self.client.websocket_url(incident_id))
        self._consumers[key] = asyncio.create_task(self._consume(subscription))

    async def _close(self, key: str):
        task = self._consumers.pop(key, None)
        await self.subscriptions.close(key)
        if task is not None:
            task.cancel()

    async def _consume(self, subscription):
        async for snapshot in subscription:
            try:
                self.handle_snapshot(snapshot)
            except Exception as e:
                logger.error(f"Snapshot handler error on {subscription.key}: {e}")

    def handle_snapshot(self, snapshot):
        if isinstance(snapshot, IncidentSnapshot):
            self._handle_incident(snapshot)
        elif isinstance(snapshot, CommandRequestSnapshot):
            self._handle_request(snapshot)
        elif isinstance(snapshot, TacticalChange):
            if self.current_incident is not None and snapshot.incident_id == self.current_incident.id:
                self.view.light_refresh(snapshot)

    def _handle_incident(self, snapshot: IncidentSnapshot):
        if self.current_incident is None or snapshot.id != self.current_incident.id:
            return
        reaction = classify_incident_change(self.current_incident, snapshot, self.user_id, self.session_id)
        self.current_incident = snapshot
        if reaction == INCIDENT_CLOSED:
            self.view.incident_closed(snapshot)
        elif reaction == FULL_RELOAD:
            logger.info(f"Command standing of session {self.session_id} changed; reloading incident view")
            self.view.full_reload(snapshot)
        else:
            self.view.light_refresh(snapshot)

    def _handle_request(self, snapshot: CommandRequestSnapshot):
        if snapshot.id == self.pending_request_id:
            if snapshot.is_pending:
                return
            self.pending_request_id = None
            if snapshot.status != "approved":
                # Approval arrives as an incident snapshot that flips our standing
                self.view.request_resolved(snapshot)
            return
        if snapshot.current_commander_uid == self.user_id:
            if snapshot.is_pending:
                self.view.incoming_request(snapshot)
            else:
                self.view.incoming_request_cleared(snapshot)

    # =========================================================================
    # Actions that change what the monitor tracks
    # =========================================================================

    async def request_command(self) -> ApiResult:
        if self.current_incident is None:
            return ApiResult(False, code="failed-precondition", message="No incident selected.")
        result = await self.client.request_command(self.current_incident.id, self.session_id)
        if result.success:
            self.pending_request_id = result.data["id"]
        return result

    async def cancel_request(self) -> ApiResult:
        if self.pending_request_id is None:
            return ApiResult(True)
        result = await self.client.cancel_command_request(self.pending_request_id)
        if result.success:
            self.pending_request_id = None
        return result
