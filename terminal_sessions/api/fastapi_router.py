from fastapi import APIRouter, Body, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
import os
import platform
import time

import psutil

from ..errors import (
    AlreadySupervised,
    CapacityExceeded,
    NoSuchSession,
    SessionError,
    SessionNotActive,
    ShuttingDown,
    SpawnError,
)
from ..services import TerminalSessions

router = APIRouter()

ERROR_STATUS = {
    NoSuchSession: 404,
    CapacityExceeded: 429,
    SessionNotActive: 409,
    AlreadySupervised: 409,
    SpawnError: 400,
    ShuttingDown: 503,
}


def status_for(exc: SessionError) -> int:
    for cls, code in ERROR_STATUS.items():
        if isinstance(exc, cls):
            return code
    return 500


async def session_error_handler(request: Request, exc: SessionError) -> JSONResponse:
    return JSONResponse(status_code=status_for(exc), content={"ok": False, "error": exc.to_payload()})


def get_services(request: Request) -> TerminalSessions:
    return request.app.state.sessions


def _field(payload: dict, *names: str):
    for name in names:
        value = payload.get(name)
        if value not in (None, ""):
            return value
    return None


@router.get("/api/sessions")
async def list_sessions(svc: TerminalSessions = Depends(get_services)):
    records = await svc.orchestrator.list_sessions()
    return {"ok": True, "data": [r.to_payload() for r in records]}


@router.get("/api/sessions/{session_id}")
async def get_session(session_id: str, svc: TerminalSessions = Depends(get_services)):
    return {"ok": True, "data": await svc.orchestrator.describe(session_id)}


@router.post("/api/sessions")
async def create_session(payload: dict = Body(...), svc: TerminalSessions = Depends(get_services)):
    try:
        record = await svc.orchestrator.create_session(
            name=_field(payload, "name"),
            command=_field(payload, "command"),
            working_directory=_field(payload, "workingDirectory", "working_directory"),
            run_as=_field(payload, "runAsIdentity", "runAsUser", "run_as"),
        )
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    return {"ok": True, "data": record.to_payload()}


@router.post("/api/sessions/{session_id}/stop")
async def stop_session(session_id: str, svc: TerminalSessions = Depends(get_services)):
    stopped = await svc.orchestrator.stop_session(session_id)
    return {"ok": True, "data": {"sessionId": session_id, "stopped": stopped}}


@router.delete("/api/sessions/{session_id}")
async def delete_session(session_id: str, svc: TerminalSessions = Depends(get_services)):
    await svc.orchestrator.delete_session(session_id)
    return {"ok": True}


@router.get("/api/sessions/{session_id}/replay")
async def replay(session_id: str, svc: TerminalSessions = Depends(get_services)):
    record = await svc.orchestrator.get_session(session_id)
    if not record:
        raise NoSuchSession(session_id, "session not found")
    return {"ok": True, "data": {"sessionId": session_id, "buffer": svc.supervisor.get_replay(session_id)}}


@router.post("/api/sessions/{session_id}/input")
async def write_input(session_id: str, payload: dict = Body(...), svc: TerminalSessions = Depends(get_services)):
    data = payload.get("data")
    if not isinstance(data, str):
        raise HTTPException(400, "data must be a string")
    svc.orchestrator.write(session_id, data)
    return {"ok": True}


@router.post("/api/sessions/{session_id}/resize")
async def resize(session_id: str, payload: dict = Body(...), svc: TerminalSessions = Depends(get_services)):
    try:
        cols = int(payload["cols"])
        rows = int(payload["rows"])
    except (KeyError, TypeError, ValueError):
        raise HTTPException(400, "cols and rows must be integers")
    svc.orchestrator.resize(session_id, cols, rows)
    return {"ok": True}


@router.get("/api/users")
async def list_users(svc: TerminalSessions = Depends(get_services)):
    return {"ok": True, "data": svc.identities.list_identities()}


@router.get("/api/health")
async def health(request: Request, svc: TerminalSessions = Depends(get_services)):
    started_at = getattr(request.app.state, "started_at", time.time())
    records = await svc.orchestrator.list_sessions()
    counts = {}
    for record in records:
        counts[record.status.value] = counts.get(record.status.value, 0) + 1
    memory = psutil.Process(os.getpid()).memory_info()
    return {
        "status": "ok",
        "timestamp": time.time(),
        "uptime": max(0.0, time.time() - started_at),
        "memory": {"rss": memory.rss},
        "sessions": {"total": len(records), **counts},
        "supervised": len(svc.supervisor.supervised_ids()),
        "subscribers": svc.bus.subscriber_count,
    }


@router.get("/api/status")
async def status():
    from .. import __version__

    return {
        "name": "terminal-sessions",
        "version": __version__,
        "python": platform.python_version(),
        "status": "running",
    }
