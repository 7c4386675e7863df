"""
Agent Process
=============

Owns one coding-agent subprocess: spawns it, streams its stdout as
newline-delimited lines, classifies its stderr, and exposes pause/resume/
terminate through process signals.
"""

import asyncio
import codecs
import json
import logging
import os
import re
import signal
from typing import Awaitable, Callable

from ..exceptions import AgentSpawnError
from ..schemas import ErrorFrame, Frame, StderrFrame

logger = logging.getLogger(__name__)

# Max size of a single read from the subprocess pipes
BUF_SIZE = 65536

# Prefix the agent uses for its own debug logging on stderr
DEBUG_MARKER = "[claude-agent]"

# Known-benign runtime warnings, never surfaced to the client
BENIGN_STDERR_PATTERNS = (
    "ExperimentalWarning",
    "DeprecationWarning",
    "--trace-warnings",
    "--trace-deprecation",
    "punycode",
)

DEBUG_LOG_CHARS = 200
DEBUG_FRAME_CHARS = 300

_STACK_SUFFIX_RE = re.compile(r"\s+at\s+.+$")
_STACK_FRAME_RE = re.compile(r"^at\s+\S")

# Patterns for sensitive data that should be redacted from server logs
SENSITIVE_PATTERNS = [
    r'sk-ant[a-zA-Z0-9_-]*',  # Anthropic API keys (sk-ant-...)
    r'sk-[a-zA-Z0-9]{20,}',  # Generic sk- keys with 20+ chars
    r'CLAUDE_CODE_OAUTH_TOKEN=[^\s]+',
    r'api[_-]?key[=:][^\s]+',
    r'token[=:][^\s]+',
    r'password[=:][^\s]+',
    r'secret[=:][^\s]+',
]


def sanitize_output(line: str) -> str:
    """Remove sensitive information from a line before it reaches the log."""
    for pattern in SENSITIVE_PATTERNS:
        line = re.sub(pattern, '[REDACTED]', line, flags=re.IGNORECASE)
    return line


def build_agent_env(overlay: dict[str, str]) -> dict[str, str]:
    """Inherit the relay environment and apply the orchestrator's overlay on top."""
    env = dict(os.environ)
    env.update(overlay)
    return env


def normalize_exit_code(returncode: int) -> int:
    """Map a signal death (negative returncode) to the shell convention 128+N."""
    if returncode < 0:
        return 128 - returncode
    return returncode


def classify_stderr(text: str, forward_debug: bool = True) -> list[Frame]:
    """
    Turn one chunk of agent stderr into client frames.

    - Debug-marker lines are logged and optionally forwarded as ``stderr``.
    - JSON lines with ``type == "error"`` become ``error`` frames.
    - Benign warnings are dropped.
    - Of the remaining lines only the first is forwarded, as an ``error``
      frame with any stack-trace suffix stripped.
    """
    frames: list[Frame] = []
    unexpected_seen = False

    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue

        if line.startswith(DEBUG_MARKER):
            logger.info(f"[agent] {sanitize_output(line[:DEBUG_LOG_CHARS])}")
            if forward_debug:
                frames.append(StderrFrame(text=line[:DEBUG_FRAME_CHARS]))
            continue

        if any(pattern in line for pattern in BENIGN_STDERR_PATTERNS):
            continue

        if line.startswith("{"):
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict) and parsed.get("type") == "error":
                frames.append(ErrorFrame(error=str(parsed.get("error") or "Agent error")))
                continue

        if unexpected_seen or _STACK_FRAME_RE.match(line):
            logger.debug(f"[agent] stderr: {sanitize_output(line[:DEBUG_LOG_CHARS])}")
            continue

        unexpected_seen = True
        message = _STACK_SUFFIX_RE.sub("", line).strip()
        logger.warning(f"[agent] stderr: {sanitize_output(message[:DEBUG_LOG_CHARS])}")
        frames.append(ErrorFrame(error=message or "Agent error"))

    return frames


class AgentProcess:
    """
    A single agent subprocess.

    Lifecycle:
    - created: constructed, not yet spawned
    - running: spawned, output is being pumped (may be paused)
    - exited: returncode is set, exit callback has been invoked
    """

    def __init__(
        self,
        argv: list[str],
        cwd: str,
        env: dict[str, str],
        on_line: Callable[[str], Awaitable[None]],
        on_frame: Callable[[Frame], Awaitable[None]],
        on_exit: Callable[[int], Awaitable[None]],
        forward_debug: bool = True,
    ):
        self.argv = argv
        self.cwd = cwd
        self.env = env
        self._on_line = on_line
        self._on_frame = on_frame
        self._on_exit = on_exit
        self._forward_debug = forward_debug

        self._process: asyncio.subprocess.Process | None = None
        self._supervisor: asyncio.Task | None = None
        self.returncode: int | None = None
        self.paused: bool = False

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self.returncode is None

    async def start(self) -> None:
        """
        Spawn the subprocess and start pumping its output.

        Raises:
            AgentSpawnError: If the executable or working directory is unusable.
        """
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.argv,
                cwd=self.cwd,
                env=self.env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            raise AgentSpawnError(f"Spawn failed: {e}") from e

        logger.info(f"[agent] Started pid={self._process.pid}")
        self._supervisor = asyncio.create_task(self._supervise())

    async def wait(self) -> int | None:
        """Wait until the exit callback has run."""
        if self._supervisor is not None:
            await asyncio.shield(self._supervisor)
        return self.returncode

    def _check_alive(self) -> asyncio.subprocess.Process:
        if self._process is None or self.returncode is not None or self._process.returncode is not None:
            raise ProcessLookupError("agent process has already exited")
        return self._process

    def pause(self) -> None:
        """Suspend the process (SIGSTOP). Raises OSError if it cannot be signalled."""
        self._check_alive().send_signal(signal.SIGSTOP)
        self.paused = True

    def resume(self) -> None:
        """Continue a suspended process (SIGCONT). Raises OSError if it cannot be signalled."""
        self._check_alive().send_signal(signal.SIGCONT)
        self.paused = False

    def terminate(self) -> None:
        """Send SIGTERM, waking the process first if it is suspended."""
        process = self._check_alive()
        process.send_signal(signal.SIGTERM)
        if self.paused:
            process.send_signal(signal.SIGCONT)
            self.paused = False

    def kill(self) -> None:
        """Send SIGKILL. Used only when shutdown outlasts SIGTERM."""
        self._check_alive().kill()

    async def _safe_callback(self, callback: Callable, *args) -> None:
        """Safely execute a callback, catching and logging any errors."""
        try:
            await callback(*args)
        except Exception as e:
            logger.exception(f"[agent] Callback error: {e}")

    async def _pump_stdout(self, stream: asyncio.StreamReader) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            chunk = await stream.read(BUF_SIZE)
            if not chunk:
                break
            pending += decoder.decode(chunk)
            *lines, pending = pending.split("\n")
            for line in lines:
                line = line.rstrip("\r")
                if not line.strip():
                    continue
                await self._safe_callback(self._on_line, line)

        # Flush unterminated trailing output as one final line
        pending += decoder.decode(b"", final=True)
        tail = pending.rstrip("\r")
        if tail.strip():
            await self._safe_callback(self._on_line, tail)

    async def _forward_stderr(self, text: str) -> None:
        for frame in classify_stderr(text, self._forward_debug):
            await self._safe_callback(self._on_frame, frame)

    async def _pump_stderr(self, stream: asyncio.StreamReader) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            chunk = await stream.read(BUF_SIZE)
            if not chunk:
                break
            pending += decoder.decode(chunk)
            # Classify complete lines only; a partial line waits for the next read
            text, newline, pending = pending.rpartition("\n")
            if newline:
                await self._forward_stderr(text)

        pending += decoder.decode(b"", final=True)
        if pending.strip():
            await self._forward_stderr(pending)

    async def _supervise(self) -> None:
        process = self._process
        assert process is not None and process.stdout is not None and process.stderr is not None

        await asyncio.gather(
            self._pump_stdout(process.stdout),
            self._pump_stderr(process.stderr),
        )
        code = normalize_exit_code(await process.wait())
        self.returncode = code
        self.paused = False
        logger.info(f"[agent] pid={process.pid} exited with code {code}")
        await self._safe_callback(self._on_exit, code)
