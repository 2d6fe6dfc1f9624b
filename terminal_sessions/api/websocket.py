"""Viewer WebSocket protocol.

Each `/ws/terminal` connection is one viewer. Client frames are JSON objects
with a `type`; an optional `requestId` is echoed on the reply. Every frame
the server sends (replies, lifecycle events, terminal output) goes through
the viewer's single queue so per-session ordering is preserved on the wire.
"""

import asyncio
import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..errors import SessionError
from ..events import SessionEvent
from ..multiplexer import Viewer
from ..services import TerminalSessions

logger = logging.getLogger(__name__)

router = APIRouter()

Handler = Callable[[TerminalSessions, Viewer, Dict[str, Any]], Awaitable[Any]]
_HANDLERS: Dict[str, Handler] = {}


def handles(kind: str):
    def register(fn: Handler) -> Handler:
        _HANDLERS[kind] = fn
        return fn
    return register


def _reply(viewer: Viewer, message: Dict[str, Any], **data: Any) -> None:
    frame = {"type": message.get("type"), "ok": True, **data}
    if message.get("requestId") is not None:
        frame["requestId"] = message["requestId"]
    viewer.reply(frame)


def _error(viewer: Viewer, message: Dict[str, Any], payload: Dict[str, Any]) -> None:
    frame = {"type": "error", "request": message.get("type"), **payload}
    if message.get("requestId") is not None:
        frame["requestId"] = message["requestId"]
    viewer.reply(frame)


def _session_id(message: Dict[str, Any]) -> str:
    session_id = message.get("sessionId")
    if not session_id or not isinstance(session_id, str):
        raise ValueError("sessionId is required")
    return session_id


@handles("session:list")
async def _list(svc: TerminalSessions, viewer: Viewer, message: Dict[str, Any]) -> None:
    records = await svc.orchestrator.list_sessions()
    _reply(viewer, message, sessions=[r.to_payload() for r in records])


@handles("session:create")
async def _create(svc: TerminalSessions, viewer: Viewer, message: Dict[str, Any]) -> None:
    record = await svc.orchestrator.create_session(
        name=message.get("name"),
        command=message.get("command"),
        working_directory=message.get("workingDirectory"),
        run_as=message.get("runAsIdentity") or message.get("runAsUser"),
    )
    _reply(viewer, message, session=record.to_payload())


@handles("session:attach")
async def _attach(svc: TerminalSessions, viewer: Viewer, message: Dict[str, Any]) -> None:
    # The multiplexer queues `session:attached` (with the replay) itself.
    await svc.multiplexer.attach(_session_id(message), viewer.viewer_id)


@handles("session:detach")
async def _detach(svc: TerminalSessions, viewer: Viewer, message: Dict[str, Any]) -> None:
    session_id = _session_id(message)
    if not svc.multiplexer.detach(session_id, viewer.viewer_id):
        _reply(viewer, message, sessionId=session_id, attached=False)


@handles("session:stop")
async def _stop(svc: TerminalSessions, viewer: Viewer, message: Dict[str, Any]) -> None:
    session_id = _session_id(message)
    stopped = await svc.orchestrator.stop_session(session_id)
    _reply(viewer, message, sessionId=session_id, stopped=stopped)


@handles("session:delete")
async def _delete(svc: TerminalSessions, viewer: Viewer, message: Dict[str, Any]) -> None:
    session_id = _session_id(message)
    await svc.orchestrator.delete_session(session_id)
    _reply(viewer, message, sessionId=session_id)


@handles("terminal:input")
async def _input(svc: TerminalSessions, viewer: Viewer, message: Dict[str, Any]) -> None:
    data = message.get("data")
    if not isinstance(data, str):
        raise ValueError("data must be a string")
    svc.orchestrator.write(_session_id(message), data)


@handles("terminal:resize")
async def _resize(svc: TerminalSessions, viewer: Viewer, message: Dict[str, Any]) -> None:
    try:
        cols = int(message["cols"])
        rows = int(message["rows"])
    except (KeyError, TypeError, ValueError):
        raise ValueError("cols and rows must be integers")
    svc.orchestrator.resize(_session_id(message), cols, rows)


@handles("users:list")
async def _users(svc: TerminalSessions, viewer: Viewer, message: Dict[str, Any]) -> None:
    _reply(viewer, message, users=svc.identities.list_identities())


async def dispatch(svc: TerminalSessions, viewer: Viewer, message: Dict[str, Any]) -> None:
    handler = _HANDLERS.get(message.get("type"))
    if handler is None:
        _error(viewer, message, {"code": "unknown_request", "sessionId": None, "message": f"Unknown message type: {message.get('type')!r}"})
        return
    try:
        await handler(svc, viewer, message)
    except SessionError as exc:
        logger.info("Viewer %s %s rejected: %s", viewer.viewer_id, message.get("type"), exc)
        _error(viewer, message, exc.to_payload())
    except ValueError as exc:
        _error(viewer, message, {"code": "invalid_request", "sessionId": message.get("sessionId"), "message": str(exc)})


async def _pump(websocket: WebSocket, viewer: Viewer) -> None:
    while True:
        item = await viewer.queue.get()
        frame = item.to_dict() if isinstance(item, SessionEvent) else item
        await websocket.send_json(frame)


async def _relay(bus_queue: asyncio.Queue, viewer: Viewer) -> None:
    while True:
        event = await bus_queue.get()
        viewer.reply(event.to_dict())


@router.websocket("/ws/terminal")
async def terminal_ws(websocket: WebSocket):
    """One remote viewer: requests in, lifecycle events and output out."""
    svc: TerminalSessions = websocket.app.state.sessions
    await websocket.accept()
    viewer_id = uuid.uuid4().hex
    viewer = svc.multiplexer.connect(viewer_id)
    bus_queue = svc.bus.subscribe()
    viewer.reply({"type": "message", "text": "Connected", "viewerId": viewer_id})

    tasks = [
        asyncio.create_task(_pump(websocket, viewer)),
        asyncio.create_task(_relay(bus_queue, viewer)),
    ]
    logger.info("Viewer %s connected", viewer_id)
    try:
        while True:
            text = await websocket.receive_text()
            try:
                message = json.loads(text)
            except ValueError:
                _error(viewer, {}, {"code": "invalid_request", "sessionId": None, "message": "frame is not valid JSON"})
                continue
            if not isinstance(message, dict):
                _error(viewer, {}, {"code": "invalid_request", "sessionId": None, "message": "frame must be a JSON object"})
                continue
            await dispatch(svc, viewer, message)
    except WebSocketDisconnect:
        pass
    finally:
        svc.bus.unsubscribe(bus_queue)
        svc.multiplexer.disconnect(viewer_id)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


@router.websocket("/ws/events")
async def session_events_ws(websocket: WebSocket):
    """Stream all session lifecycle events."""
    bus = websocket.app.state.sessions.bus
    q = bus.subscribe()

    try:
        await websocket.accept()
        while True:
            event = await q.get()
            await websocket.send_json(event.to_dict())
    except WebSocketDisconnect:
        pass
    finally:
        bus.unsubscribe(q)
