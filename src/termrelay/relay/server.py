"""FastAPI server exposing the terminal relay.

Endpoints::

    GET /health                  -> {"status": "ok", "sessions": N}
    GET /sessions                <- Authorization: Bearer <jwt>
    WS  /ws/ssh/{connection_id}  ?token=<jwt>&user_id=<id>&client_id=<tab>

The WebSocket is accepted before authorization so that a rejection can
be reported as an ``error`` frame rather than a bare HTTP status.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import uvicorn
from fastapi import FastAPI, Header, HTTPException, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from termrelay.auth.tokens import JwtTokenValidator, TokenValidator
from termrelay.config.settings import Settings, load_settings
from termrelay.domain.errors import AuthRejected, Rejected
from termrelay.domain.models import SessionInfo, TerminalGeometry
from termrelay.relay.channel import WebSocketChannel
from termrelay.relay.registry import SessionRegistry, refuse
from termrelay.remote import create_connector
from termrelay.remote.base import RemoteConnector
from termrelay.store.base import ConnectionStore
from termrelay.store.yaml_store import YamlConnectionStore
from termrelay.utils.logging import setup_logging

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str = "ok"
    sessions: int = 0


class SessionsResponse(BaseModel):
    sessions: list[SessionInfo]


def create_app(
    settings: Settings | None = None,
    registry: SessionRegistry | None = None,
    validator: TokenValidator | None = None,
    store: ConnectionStore | None = None,
    connector: RemoteConnector | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Any collaborator left as None is built from ``settings``.
    """
    settings = settings or Settings()
    if validator is None:
        validator = JwtTokenValidator.from_config(settings.auth)
    if registry is None:
        registry = SessionRegistry(
            validator=validator,
            store=store if store is not None else YamlConnectionStore(settings.store.path),
            connector=connector if connector is not None else create_connector(settings.remote),
            connect_timeout=settings.remote.connect_timeout,
            default_geometry=TerminalGeometry(
                cols=settings.remote.default_cols, rows=settings.remote.default_rows,
            ),
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Relay started (backend=%s)", settings.remote.backend)
        yield
        await app.state.registry.shutdown()
        logger.info("Relay stopped")

    app = FastAPI(
        title="termrelay",
        description="WebSocket relay between terminal clients and remote shells",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    app.state.registry = registry
    app.state.validator = validator

    @app.get("/health")
    async def health_check() -> HealthResponse:
        return HealthResponse(status="ok", sessions=len(app.state.registry))

    @app.get("/sessions")
    async def list_sessions(authorization: str | None = Header(default=None)) -> SessionsResponse:
        token = None
        if authorization and authorization.startswith("Bearer "):
            token = authorization[len("Bearer "):].strip()
        try:
            identity = app.state.validator.validate_token(token)
        except AuthRejected as e:
            raise HTTPException(status_code=401, detail=str(e)) from e
        return SessionsResponse(sessions=app.state.registry.sessions_for(identity.user_id))

    @app.websocket("/ws/ssh/{connection_id}")
    async def terminal_socket(
        websocket: WebSocket,
        connection_id: str,
        token: str | None = None,
        user_id: str | None = None,
        client_id: str | None = None,
    ) -> None:
        await websocket.accept()
        channel = WebSocketChannel(websocket)

        try:
            conn_id = int(connection_id)
        except ValueError:
            logger.info("Rejected socket with malformed connection id %r", connection_id)
            await refuse(channel, "Invalid connection ID")
            return
        try:
            uid = int(user_id) if user_id else None
        except ValueError:
            logger.info("Rejected socket with malformed user id %r", user_id)
            await refuse(channel, "Invalid user ID")
            return

        try:
            session = await app.state.registry.accept(
                conn_id, token, channel, user_id=uid, client_id=client_id,
            )
        except Rejected:
            return
        await session.run()

    return app


def main() -> None:
    """Entry point for running the relay standalone."""
    settings = load_settings()
    setup_logging(settings.logging)
    app = create_app(settings)
    uvicorn.run(app, host=settings.server.host, port=settings.server.port)


if __name__ == "__main__":
    main()
