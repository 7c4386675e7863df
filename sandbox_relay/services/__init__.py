"""
Relay Services
==============

Agent subprocess management, replay buffering, timers and the relay core.
"""

from .agent_process import AgentProcess, classify_stderr
from .context_store import ContextStore
from .replay_buffer import ReplayBuffer, sweep_stale_buffers
from .session_relay import SessionRelay
from .timers import GraceTimer, IdleWatchdog

__all__ = [
    "AgentProcess",
    "classify_stderr",
    "ContextStore",
    "ReplayBuffer",
    "sweep_stale_buffers",
    "SessionRelay",
    "GraceTimer",
    "IdleWatchdog",
]
