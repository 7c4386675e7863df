"""
WebSocket Handlers
==================

Browser-facing WebSocket endpoint. Each connection is admitted by the
session relay, then its incoming frames (pause, resume, pong) are dispatched
until the client goes away.
"""

import json
import logging

from fastapi import WebSocket, WebSocketDisconnect

from .services.session_relay import SessionRelay

logger = logging.getLogger(__name__)


async def relay_websocket(websocket: WebSocket):
    """
    WebSocket endpoint for the agent relay.

    Streams:
    - Raw agent output lines
    - Relay frames (connected, system-info, replay-complete, ping, process-exit, ...)
    """
    relay: SessionRelay = websocket.app.state.relay

    await websocket.accept()
    await relay.connect(websocket)

    try:
        while True:
            try:
                data = await websocket.receive_text()
                message = json.loads(data)
                if not isinstance(message, dict):
                    logger.warning(f"Ignoring non-object WebSocket message: {data[:100]}")
                    continue
                await relay.handle_message(websocket, message)

            except WebSocketDisconnect:
                break
            except json.JSONDecodeError:
                logger.warning(f"Invalid JSON from WebSocket: {data[:100] if data else 'empty'}")
            except Exception as e:
                logger.warning(f"WebSocket error: {e}")
                break

    finally:
        await relay.disconnect(websocket)
