import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from ..config import SessionsConfig
from ..errors import SessionError
from ..services import TerminalSessions
from .fastapi_router import router as rest_router, session_error_handler
from .websocket import router as ws_router

logger = logging.getLogger(__name__)


def create_app(
    config: Optional[SessionsConfig] = None,
    services: Optional[TerminalSessions] = None,
    *,
    ephemeral: bool = False,
) -> FastAPI:
    """Build the HTTP/WebSocket surface around one TerminalSessions container."""
    svc = services or TerminalSessions(config, ephemeral=ephemeral)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await svc.start()
        app.state.started_at = time.time()
        try:
            yield
        finally:
            await svc.shutdown()

    app = FastAPI(title="Terminal Sessions", lifespan=lifespan)
    app.state.sessions = svc
    app.state.started_at = time.time()
    app.add_exception_handler(SessionError, session_error_handler)
    app.include_router(rest_router)
    app.include_router(ws_router)
    return app


def run(config: SessionsConfig, *, ephemeral: bool = False) -> None:
    app = create_app(config, ephemeral=ephemeral)
    logger.info("Serving terminal sessions on http://%s:%d", config.host, config.port)
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())
