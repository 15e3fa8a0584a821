"""
WebSocket endpoint for live command state.

/ws/command?token=<jwt>&incident_id=<id>
    - connected:        handshake confirmation
    - incident:         IncidentSnapshot of the watched incident
    - command_request:  CommandRequestSnapshot addressed to or sent by the user
    - tactical:         TacticalChange on the watched incident
    - ping / pong:      keepalive

On connect the server sends the current incident snapshot and the user's
pending requests, then live snapshots from the change feed. Snapshots are
full state, so a client that reconnects simply starts over from the initial
snapshot.

Each tenant's topics are isolated - a connection only subscribes to topics
carrying its own tenant id.
"""

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect
from sqlalchemy import or_
import json
import logging
import asyncio

from jwt_auth import extract_token_from_websocket_params, validate_access_token
from database import SessionLocal
from models import CommandRequest
from services.command.identity import resolve_caller
from services.command.snapshots import IncidentSnapshot, CommandRequestSnapshot, to_message
from services.command.store import load_tenant_incident

logger = logging.getLogger(__name__)
router = APIRouter()

# Server-side ping interval (seconds) - keeps connections alive through proxies
SERVER_PING_INTERVAL = 30


# =============================================================================
# Initial state
# =============================================================================

def _load_initial_state(claims, incident_id: str):
    """
    Resolve the caller and the snapshots a new connection starts from.

    Returns (caller, snapshots, None) or (None, None, (close_code, reason)).
    """
    db = SessionLocal()
    try:
        resolved = resolve_caller(db, claims.user_id, claims.tenant_id)
        if not resolved.ok:
            return None, None, (4003, resolved.message)
        caller = resolved.value

        snapshots = []
        if incident_id:
            loaded = load_tenant_incident(db, incident_id, caller)
            if not loaded.ok:
                return None, None, (4004, loaded.message)
            snapshots.append(IncidentSnapshot.from_row(loaded.value))

        pending = db.query(CommandRequest).filter(
            CommandRequest.tenant_id == caller.tenant_id,
            CommandRequest.status == "pending",
            or_(
                CommandRequest.current_commander_uid == caller.user_id,
                CommandRequest.requester_user_id == caller.user_id,
            ),
        ).all()
        snapshots.extend(CommandRequestSnapshot.from_row(r) for r in pending)
        return caller, snapshots, None
    finally:
        db.close()


# =============================================================================
# Shared ping/pong handlers
# =============================================================================

async def _server_ping_loop(websocket: WebSocket, stop_event: asyncio.Event):
    """Send periodic pings from server to keep connection alive through proxies"""
    try:
        while not stop_event.is_set():
            await asyncio.sleep(SERVER_PING_INTERVAL)
            if stop_event.is_set():
                break
            try:
                await websocket.send_json({"type": "ping"})
            except (WebSocketDisconnect, RuntimeError):
                break
    except asyncio.CancelledError:
        pass


async def _receive_loop(websocket: WebSocket, stop_event: asyncio.Event):
    """Handle incoming messages from client (only keepalives are expected)"""
    try:
        while not stop_event.is_set():
            try:
                data = await websocket.receive_text()
                message = json.loads(data)
                if message.get("type") == "ping":
                    await websocket.send_json({"type": "pong"})
            except json.JSONDecodeError as e:
                logger.warning(f"Invalid JSON received: {e}")
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"Receive loop error: {e}")
    finally:
        stop_event.set()


async def _forward_loop(websocket: WebSocket, subscription, stop_event: asyncio.Event):
    """Relay change-feed snapshots to the client"""
    try:
        async for snapshot in subscription:
            if stop_event.is_set():
                break
            await websocket.send_json(to_message(snapshot))
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"Forward loop error: {e}")
    finally:
        stop_event.set()


# =============================================================================
# WebSocket endpoints
# =============================================================================

@router.websocket("/ws/command")
async def websocket_command(websocket: WebSocket):
    """
    WebSocket endpoint for live command state.

    JWT validated at handshake before accept(). Server sends periodic pings
    to keep connection alive through proxies.
    """
    token = extract_token_from_websocket_params(websocket)
    incident_id = websocket.query_params.get("incident_id")

    claims = validate_access_token(token) if token else None
    if not claims:
        await websocket.close(code=4001, reason="Invalid or expired token")
        return

    topics = [("requests", claims.tenant_id, claims.user_id)]
    if incident_id:
        topics.append(("incident", claims.tenant_id, incident_id))
    # Subscribe before reading the initial state so nothing committed in
    # between is lost
    subscription = websocket.app.state.feed.subscribe(*topics)

    caller, initial, refusal = _load_initial_state(claims, incident_id)
    if refusal:
        subscription.close()
        code, reason = refusal
        await websocket.close(code=code, reason=reason)
        return

    await websocket.accept()
    logger.info(f"WebSocket /ws/command connected: user {caller.user_id} incident {incident_id}")

    stop_event = asyncio.Event()
    tasks = []
    try:
        await websocket.send_json({
            "type": "connected",
            "tenant_id": caller.tenant_id,
            "incident_id": incident_id,
        })
        for snapshot in initial:
            await websocket.send_json(to_message(snapshot))

        tasks = [
            asyncio.create_task(_server_ping_loop(websocket, stop_event)),
            asyncio.create_task(_receive_loop(websocket, stop_event)),
            asyncio.create_task(_forward_loop(websocket, subscription, stop_event)),
        ]

        # Wait for any task to complete (indicates disconnect)
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)

        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        stop_event.set()
        for task in tasks:
            task.cancel()
        subscription.close()
        logger.info(f"WebSocket /ws/command disconnected: user {caller.user_id}")


@router.get("/ws/status")
async def websocket_status(request: Request):
    """Get change-feed subscription count (for monitoring)"""
    return {"subscriptions": request.app.state.feed.subscriber_count()}
