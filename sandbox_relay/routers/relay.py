"""
Relay Router
============

HTTP endpoints next to the WebSocket relay: health/status and replay-buffer
inspection and acknowledgement for the orchestrator.
"""

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Query, Request

from ..schemas import RelayStatus, ReplayAckResponse, ReplayBufferResponse
from ..services.replay_buffer import buffer_path, delete_buffer, read_buffer_lines, validate_msg_id
from ..services.session_relay import SessionRelay

logger = logging.getLogger(__name__)

router = APIRouter(tags=["relay"])


def _get_relay(request: Request) -> SessionRelay:
    return request.app.state.relay


def validate_msg_id_param(msg_id: str) -> str:
    """Validate a message id path parameter to prevent path traversal."""
    if not validate_msg_id(msg_id):
        raise HTTPException(status_code=400, detail="Invalid message id")
    return msg_id


@router.get("/health", response_model=RelayStatus)
async def get_health(request: Request):
    """Get the current relay state."""
    return _get_relay(request).get_status()


@router.get("/replay/{msg_id}", response_model=ReplayBufferResponse)
async def get_replay(request: Request, msg_id: str, offset: int = Query(default=0, ge=0)):
    """Return buffered output lines of a query, starting at ``offset``."""
    msg_id = validate_msg_id_param(msg_id)
    relay = _get_relay(request)
    path = buffer_path(relay.config.buffer_dir, msg_id)

    all_lines = await read_buffer_lines(path)
    if not all_lines and not await asyncio.to_thread(path.exists):
        raise HTTPException(status_code=404, detail=f"No replay buffer for message '{msg_id}'")

    return ReplayBufferResponse(
        msg_id=msg_id,
        offset=offset,
        lines=all_lines[offset:],
        total=len(all_lines),
        active=relay.active_msg_id == msg_id,
    )


@router.delete("/replay/{msg_id}", response_model=ReplayAckResponse)
async def acknowledge_replay(request: Request, msg_id: str):
    """
    Acknowledge receipt of a retained replay buffer and delete it.

    The buffer of the query that is still running cannot be acknowledged.
    """
    msg_id = validate_msg_id_param(msg_id)
    relay = _get_relay(request)

    if relay.active_msg_id == msg_id:
        raise HTTPException(status_code=409, detail="Replay buffer belongs to the running query")

    deleted = await delete_buffer(buffer_path(relay.config.buffer_dir, msg_id))
    if deleted:
        logger.info(f"[replay] Buffer {msg_id[:8]} acknowledged and deleted")
    return ReplayAckResponse(msg_id=msg_id, deleted=deleted)
