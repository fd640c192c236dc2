"""FastAPI app exposing a health probe and the supervisor event stream."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..runtime.coordinator import SwarmCoordinator
from ..runtime.events import hub


def create_app(coordinator: Optional[SwarmCoordinator] = None, enable_cors: bool = True) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        coordinator (Optional[SwarmCoordinator]): Coordinator whose state is
            reported by ``/healthz``. It is started with the app and stopped
            on shutdown.
        enable_cors (bool): Whether to install permissive CORS middleware for
            browser clients.

    Returns:
        FastAPI: Configured application with ``/healthz`` and ``/ws``.
    """
    @asynccontextmanager
    async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
        hub.attach_loop(asyncio.get_running_loop())
        if coordinator is not None:
            coordinator.start()
        try:
            yield
        finally:
            if coordinator is not None:
                coordinator.stop()

    app = FastAPI(
        title="Agent Supervisor",
        description="Supervision of interactive coding-agent sessions",
        version=__version__,
        lifespan=_lifespan,
    )

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.coordinator = coordinator

    @app.get("/healthz")
    async def healthz() -> dict[str, object]:
        """Expose liveness status plus a coarse view of supervised tasks."""
        payload: dict[str, object] = {"status": "ok", "version": __version__, "ws_clients": hub.client_count}
        if coordinator is not None:
            snapshot = coordinator.snapshot()
            payload["tasks"] = len(snapshot["tasks"])
            payload["supervision_level"] = snapshot["supervision_level"]
            payload["pending_confirmations"] = snapshot["pending_count"]
        return payload

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        """Bridge websocket clients to the shared event hub handler."""
        await hub.handle_connection(websocket)

    return app
