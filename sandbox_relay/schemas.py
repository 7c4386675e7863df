"""
Pydantic Schemas
================

Protocol frames exchanged with the browser client, the one-shot query
context written by the orchestrator, and HTTP response models.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

ExitReason = Literal[
    "child-exit",
    "spawn-error",
    "context-read-error",
    "no-prompt",
    "context-timeout",
]


# ============================================================================
# Query Context
# ============================================================================

class QueryContext(BaseModel):
    """One-shot handoff payload written by the orchestrator."""
    model_config = ConfigDict(populate_by_name=True)

    prompt: str = ""
    session_id: str = Field(default="", alias="sessionId")
    cwd: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    mode: str | None = None

    @field_validator("env", mode="before")
    @classmethod
    def none_env_is_empty(cls, v):
        return {} if v is None else v

    @field_validator("session_id", mode="before")
    @classmethod
    def none_session_is_empty(cls, v):
        return "" if v is None else v


# ============================================================================
# Relay -> Client Frames
# ============================================================================

class Frame(BaseModel):
    """Base for JSON frames sent to the client."""
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class ConnectedFrame(Frame):
    type: Literal["connected"] = "connected"


class SystemInfoFrame(Frame):
    """Build identity of the relay, for client-side troubleshooting."""
    type: Literal["system-info"] = "system-info"
    sdk_version: str = Field(alias="sdkVersion")
    cli_version: str = Field(alias="cliVersion")
    build_date: str = Field(alias="buildDate")
    runtime_version: str = Field(alias="runtimeVersion")


class StderrFrame(Frame):
    """Low-priority agent debug output."""
    type: Literal["stderr"] = "stderr"
    text: str


class ErrorFrame(Frame):
    type: Literal["error"] = "error"
    error: str


class ReplayCompleteFrame(Frame):
    type: Literal["replay-complete"] = "replay-complete"
    replayed_chunks: int = Field(alias="replayedChunks")


class PausedFrame(Frame):
    type: Literal["paused"] = "paused"


class PauseFailedFrame(Frame):
    type: Literal["pause-failed"] = "pause-failed"
    error: str


class ResumedFrame(Frame):
    type: Literal["resumed"] = "resumed"


class ResumeFailedFrame(Frame):
    type: Literal["resume-failed"] = "resume-failed"
    error: str


class PingFrame(Frame):
    type: Literal["ping"] = "ping"


class ProcessExitFrame(Frame):
    """Terminal frame: exactly one per query attempt."""
    type: Literal["process-exit"] = "process-exit"
    exit_code: int = Field(alias="exitCode")
    reason: ExitReason


# ============================================================================
# Client -> Relay Frames
# ============================================================================

class ClientMessage(BaseModel):
    """In-band request from the client (pause, resume, pong)."""
    model_config = ConfigDict(extra="ignore")

    type: str


# ============================================================================
# HTTP Schemas
# ============================================================================

class RelayStatus(BaseModel):
    """Snapshot of relay state for the health endpoint."""
    agent_running: bool
    agent_paused: bool
    agent_pid: int | None = None
    client_attached: bool
    connected_clients: int
    in_grace_period: bool
    msg_id: str | None = None
    last_pong_at: datetime | None = None


class ReplayBufferResponse(BaseModel):
    """Buffered output lines for one message correlation id."""
    msg_id: str
    offset: int
    lines: list[str]
    total: int
    active: bool


class ReplayAckResponse(BaseModel):
    msg_id: str
    deleted: bool
