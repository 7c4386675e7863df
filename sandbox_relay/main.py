"""
FastAPI Application
===================

Entry point for the in-container session relay. Started once per container
wake; serves sequential agent queries over a WebSocket until the idle
watchdog stops the process.
"""

import logging
from contextlib import asynccontextmanager
from typing import Callable

import uvicorn
from fastapi import FastAPI

from .config import RelayConfig
from .routers.relay import router as relay_router
from .services.auto_context import gather_auto_context
from .services.session_relay import SessionRelay
from .websocket import relay_websocket

logger = logging.getLogger(__name__)


def create_app(
    config: RelayConfig | None = None,
    exit_callback: Callable[[], None] | None = None,
    gather_context: bool = True,
) -> FastAPI:
    """
    Build the relay application.

    Args:
        config: Relay settings (defaults to the environment)
        exit_callback: Called by the idle watchdog to stop the process
        gather_context: Run the auto-context script on startup
    """
    config = config or RelayConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if gather_context:
            await gather_auto_context(config.context_script, config.default_cwd, config.auto_context_file)
        await app.state.relay.start()
        logger.info(f"[relay] Listening on port {config.port}")
        try:
            yield
        finally:
            await app.state.relay.shutdown()

    app = FastAPI(title="Sandbox Relay", lifespan=lifespan)
    app.state.relay = SessionRelay(config, exit_callback=exit_callback)
    app.include_router(relay_router)
    app.add_api_websocket_route("/", relay_websocket)
    app.add_api_websocket_route("/ws", relay_websocket)
    return app


def main() -> None:
    """Run the relay server."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    config = RelayConfig.from_env()
    app = create_app(config)
    uvicorn.run(app, host=config.host, port=config.port, log_level="info")


if __name__ == "__main__":
    main()
