"""
Relay Configuration
===================

Settings for the in-container session relay, read from environment variables.
"""

import os
import shlex
from pathlib import Path

from pydantic import BaseModel, Field

# Port the orchestrator proxies browser connections to
DEFAULT_PORT = 8765

# One-shot context file written by the orchestrator before each connection
DEFAULT_CONTEXT_FILE = "/tmp/vf-pending-query.json"

# Replay buffers live here as vf-stream-<msg_id>.jsonl
DEFAULT_BUFFER_DIR = "/tmp"

DEFAULT_AGENT_COMMAND = "node /opt/claude-agent/claude-agent.js"
DEFAULT_CWD = "/workspace"

# Context poll: absorbs the race between container wake and orchestrator write
DEFAULT_POLL_INTERVAL = 0.05
DEFAULT_POLL_TIMEOUT = 6.0

# Must stay below the shortest upstream idle-disconnect threshold
DEFAULT_KEEPALIVE_INTERVAL = 20.0

DEFAULT_GRACE_PERIOD = 120.0
DEFAULT_IDLE_TIMEOUT = 15 * 60.0
DEFAULT_BUFFER_TTL = 24 * 60 * 60.0

DEFAULT_CONTEXT_SCRIPT = "/opt/claude-agent/gather-context.sh"
DEFAULT_AUTO_CONTEXT_FILE = "/tmp/vf-auto-context.md"

# Environment overlay key naming the replay buffer of a query
MSG_ID_ENV_KEY = "VF_MSG_ID"


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


class RelayConfig(BaseModel):
    """Runtime settings for one relay instance."""
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    context_file: Path = Path(DEFAULT_CONTEXT_FILE)
    buffer_dir: Path = Path(DEFAULT_BUFFER_DIR)
    agent_command: list[str] = Field(default_factory=lambda: shlex.split(DEFAULT_AGENT_COMMAND))
    default_cwd: str = DEFAULT_CWD
    poll_interval: float = Field(default=DEFAULT_POLL_INTERVAL, gt=0)
    poll_timeout: float = Field(default=DEFAULT_POLL_TIMEOUT, gt=0)
    keepalive_interval: float = Field(default=DEFAULT_KEEPALIVE_INTERVAL, gt=0)
    grace_period: float = Field(default=DEFAULT_GRACE_PERIOD, gt=0)
    idle_timeout: float = Field(default=DEFAULT_IDLE_TIMEOUT, gt=0)
    buffer_ttl: float = Field(default=DEFAULT_BUFFER_TTL, gt=0)
    forward_debug: bool = True
    context_script: Path = Path(DEFAULT_CONTEXT_SCRIPT)
    auto_context_file: Path = Path(DEFAULT_AUTO_CONTEXT_FILE)
    sdk_version: str = "unknown"
    cli_version: str = "unknown"
    build_date: str = "unknown"

    @classmethod
    def from_env(cls) -> "RelayConfig":
        """Build a config from RELAY_* / VF_* environment variables."""
        return cls(
            host=os.getenv("RELAY_HOST", "0.0.0.0"),
            port=int(_env_float("RELAY_PORT", DEFAULT_PORT)),
            context_file=Path(os.getenv("RELAY_CONTEXT_FILE", DEFAULT_CONTEXT_FILE)),
            buffer_dir=Path(os.getenv("RELAY_BUFFER_DIR", DEFAULT_BUFFER_DIR)),
            agent_command=shlex.split(os.getenv("RELAY_AGENT_COMMAND", DEFAULT_AGENT_COMMAND)),
            default_cwd=os.getenv("RELAY_DEFAULT_CWD", DEFAULT_CWD),
            poll_interval=_env_float("RELAY_POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
            poll_timeout=_env_float("RELAY_POLL_TIMEOUT", DEFAULT_POLL_TIMEOUT),
            keepalive_interval=_env_float("RELAY_KEEPALIVE_INTERVAL", DEFAULT_KEEPALIVE_INTERVAL),
            grace_period=_env_float("RELAY_GRACE_PERIOD", DEFAULT_GRACE_PERIOD),
            idle_timeout=_env_float("RELAY_IDLE_TIMEOUT", DEFAULT_IDLE_TIMEOUT),
            buffer_ttl=_env_float("RELAY_BUFFER_TTL", DEFAULT_BUFFER_TTL),
            forward_debug=_env_bool("RELAY_FORWARD_DEBUG", True),
            context_script=Path(os.getenv("RELAY_CONTEXT_SCRIPT", DEFAULT_CONTEXT_SCRIPT)),
            auto_context_file=Path(os.getenv("RELAY_AUTO_CONTEXT_FILE", DEFAULT_AUTO_CONTEXT_FILE)),
            sdk_version=os.getenv("VF_SDK_VERSION", "unknown"),
            cli_version=os.getenv("VF_CLI_VERSION", "unknown"),
            build_date=os.getenv("VF_BUILD_DATE", "unknown"),
        )
