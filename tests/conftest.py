"""
Pytest Configuration and Fixtures
=================================

Shared fixtures for the sandbox relay test suite: isolated relay
configuration, a recording WebSocket double, and helpers for driving the
scripted fake agent.
"""

import asyncio
import json
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from sandbox_relay.config import RelayConfig

FAKE_AGENT = Path(__file__).parent / "fake_agent.py"


# =============================================================================
# WebSocket Doubles
# =============================================================================

class RecordingWebSocket:
    """WebSocket stand-in that records every frame the relay sends."""

    def __init__(self, name: str = "ws", send_delay: float = 0.0):
        self.name = name
        self.send_delay = send_delay
        self.sent: list[tuple[str, object]] = []
        self.closed = False

    async def send_json(self, data: dict) -> None:
        await self._pause()
        if self.closed:
            raise RuntimeError("WebSocket is closed")
        self.sent.append(("json", data))

    async def send_text(self, text: str) -> None:
        await self._pause()
        if self.closed:
            raise RuntimeError("WebSocket is closed")
        self.sent.append(("text", text))

    async def _pause(self) -> None:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)

    async def close(self, code: int = 1000) -> None:
        self.closed = True

    def types(self) -> list[str]:
        """Frame types in send order; raw passthrough lines appear as 'raw'."""
        return [data["type"] if kind == "json" else "raw" for kind, data in self.sent]

    def frames(self, frame_type: str) -> list[dict]:
        return [data for kind, data in self.sent if kind == "json" and data["type"] == frame_type]

    def raw_lines(self) -> list[str]:
        return [data for kind, data in self.sent if kind == "text"]

    def __repr__(self) -> str:
        return f"RecordingWebSocket({self.name})"


async def wait_until(predicate, timeout: float = 10.0, interval: float = 0.01) -> None:
    """Poll ``predicate`` until it is truthy or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            pytest.fail(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


def write_context(
    path: Path,
    steps: list[dict] | None = None,
    prompt: str | None = None,
    env: dict | None = None,
    session_id: str = "session-1234567890",
    cwd: str | None = None,
) -> None:
    """Write a query context the way the orchestrator does."""
    context = {
        "prompt": prompt if prompt is not None else json.dumps(steps or []),
        "sessionId": session_id,
        "cwd": cwd,
        "env": env or {},
        "mode": "agent",
    }
    path.write_text(json.dumps(context))


# =============================================================================
# Relay Fixtures
# =============================================================================

@pytest.fixture
def buffer_dir(tmp_path: Path) -> Path:
    path = tmp_path / "buffers"
    path.mkdir()
    return path


@pytest.fixture
def relay_config(tmp_path: Path, buffer_dir: Path) -> RelayConfig:
    """Relay settings with short timers and the scripted fake agent."""
    return RelayConfig(
        context_file=tmp_path / "pending-query.json",
        buffer_dir=buffer_dir,
        agent_command=[sys.executable, str(FAKE_AGENT)],
        default_cwd=str(tmp_path),
        poll_interval=0.01,
        poll_timeout=0.3,
        keepalive_interval=30.0,
        grace_period=5.0,
        idle_timeout=30.0,
        buffer_ttl=3600.0,
        context_script=tmp_path / "missing-gather-context.sh",
        auto_context_file=tmp_path / "auto-context.md",
        sdk_version="1.2.3",
        cli_version="4.5.6",
        build_date="2026-01-01",
    )


@pytest.fixture
def exit_callback() -> MagicMock:
    """Stands in for stopping the container process."""
    return MagicMock()


@pytest.fixture
def mock_websocket():
    """Create a mock WebSocket for testing."""
    ws = AsyncMock()
    ws.accept = AsyncMock()
    ws.send_json = AsyncMock()
    ws.send_text = AsyncMock()
    ws.close = AsyncMock()
    return ws
