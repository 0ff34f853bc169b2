"""FastAPI application for the plan orchestrator control surface."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from .. import __version__
from ..events.ws import WebSocketHub
from ..plan_manager import PlanManager, open_manager
from .router import create_router


def create_app(
    state_dir: Optional[Path] = None,
    enable_cors: bool = True,
    *,
    manager: Optional[PlanManager] = None,
    recover_on_startup: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        state_dir: Orchestrator state root; resolved from the environment when omitted.
        enable_cors: Whether to enable CORS.
        manager: Prebuilt manager, mainly for tests.
        recover_on_startup: Resume polling for active plans when the app starts.

    Returns:
        Configured FastAPI app.
    """
    plan_manager = manager or open_manager(state_dir)
    hub = WebSocketHub()
    plan_manager.ctx.bus.subscribe(hub.publish_sync)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        hub.attach_loop(asyncio.get_running_loop())
        if recover_on_startup:
            resumed = plan_manager.recover()
            if resumed:
                logger.info("Recovered {} active plan(s)", len(resumed))
        yield
        plan_manager.shutdown()

    app = FastAPI(
        title="Plan Orchestrator",
        description="Control surface for multi-agent coding plans",
        version=__version__,
        lifespan=lifespan,
    )

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.manager = plan_manager
    app.state.hub = hub
    app.include_router(create_router(lambda: app.state.manager))

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "Plan Orchestrator",
            "version": __version__,
            "status": "running",
        }

    @app.websocket("/ws")
    async def websocket_events(websocket: WebSocket) -> None:
        await hub.handle_connection(websocket)

    return app
