"""
Session Relay
=============

Coordinates the single agent subprocess of a container with the browser
client currently attached to it.

Connection lifecycle:
- fresh query: no agent is running, so the relay polls for the query context
  the orchestrator writes, then spawns the agent
- reconnect: an agent is already running, so buffered output is replayed to
  the new client, which then takes over the live stream
- disconnect: the agent keeps running inside a grace window; if nobody
  reconnects in time it is terminated

All state lives on the relay instance and is only mutated from the event
loop. Output forwarding and reconnect replay share one lock so a
reconnecting client always receives the replay before the live tail.
"""

import asyncio
import logging
import os
import platform
import signal
from datetime import datetime
from functools import partial
from typing import Callable

from fastapi import WebSocket
from pydantic import ValidationError

from ..config import MSG_ID_ENV_KEY, RelayConfig
from ..exceptions import AgentSpawnError, ContextReadError
from ..schemas import (
    ClientMessage,
    ConnectedFrame,
    ErrorFrame,
    ExitReason,
    Frame,
    PausedFrame,
    PauseFailedFrame,
    PingFrame,
    ProcessExitFrame,
    RelayStatus,
    ReplayCompleteFrame,
    ResumedFrame,
    ResumeFailedFrame,
    SystemInfoFrame,
)
from .agent_process import AgentProcess, build_agent_env
from .context_store import ContextStore
from .replay_buffer import ReplayBuffer, sweep_stale_buffers, validate_msg_id
from .timers import GraceTimer, IdleWatchdog

logger = logging.getLogger(__name__)

CONTEXT_TIMEOUT_MESSAGE = "Sandbox still warming up, please retry"

# Seconds to wait for the agent to exit on SIGTERM during shutdown
SHUTDOWN_TIMEOUT = 5


def _terminate_self() -> None:
    """Stop the container process by letting the server shut down on SIGTERM."""
    os.kill(os.getpid(), signal.SIGTERM)


class QueryRun:
    """State of the query that currently owns the agent subprocess."""

    def __init__(self, session_id: str, msg_id: str | None, buffer: ReplayBuffer | None):
        self.session_id = session_id
        self.msg_id = msg_id
        self.buffer = buffer
        self.process: AgentProcess | None = None
        # Set once the client dropped mid-run; keeps the replay buffer on exit
        self.disconnected: bool = False


class SessionRelay:
    """Relay between one agent subprocess and the attached browser client."""

    def __init__(self, config: RelayConfig, exit_callback: Callable[[], None] | None = None):
        self.config = config
        self.context_store = ContextStore(config.context_file)

        self._run: QueryRun | None = None
        self._link: WebSocket | None = None
        self._clients: set[WebSocket] = set()
        self._keepalive_tasks: dict[WebSocket, asyncio.Task] = {}
        self._poll_task: asyncio.Task | None = None
        self._start_task: asyncio.Task | None = None
        # Agent terminated on grace expiry that may not have exited yet
        self._terminating: AgentProcess | None = None
        self._output_lock = asyncio.Lock()
        self.last_pong_at: datetime | None = None

        self.grace_timer = GraceTimer(config.grace_period, self._on_grace_expired)
        self.idle_watchdog = IdleWatchdog(
            config.idle_timeout,
            is_idle=self.is_idle,
            on_idle=exit_callback or _terminate_self,
            on_tick=self.sweep_buffers,
        )

    # =========================================================================
    # State
    # =========================================================================

    @property
    def agent_running(self) -> bool:
        return self._run is not None

    @property
    def agent_paused(self) -> bool:
        return self._run is not None and self._run.process is not None and self._run.process.paused

    @property
    def client_link(self) -> WebSocket | None:
        return self._link

    @property
    def active_msg_id(self) -> str | None:
        return self._run.msg_id if self._run is not None else None

    def is_idle(self) -> bool:
        """True when no client is connected and no agent exists."""
        return not self._clients and self._run is None

    def get_status(self) -> RelayStatus:
        run = self._run
        return RelayStatus(
            agent_running=run is not None,
            agent_paused=self.agent_paused,
            agent_pid=run.process.pid if run is not None and run.process is not None else None,
            client_attached=self._link is not None,
            connected_clients=len(self._clients),
            in_grace_period=self.grace_timer.armed,
            msg_id=self.active_msg_id,
            last_pong_at=self.last_pong_at,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Arm the idle watchdog and evict stale replay buffers."""
        await self.sweep_buffers()
        self.idle_watchdog.arm()
        logger.info(f"[relay] Ready (grace={self.config.grace_period:.0f}s, idle={self.config.idle_timeout:.0f}s)")

    async def shutdown(self) -> None:
        """Cancel timers and background tasks and stop any running agent."""
        logger.info("[relay] Shutting down")
        self.idle_watchdog.cancel()
        self.grace_timer.cancel()
        for task in [self._poll_task, self._start_task, *self._keepalive_tasks.values()]:
            if task is not None and not task.done():
                task.cancel()
        self._keepalive_tasks.clear()

        run = self._run
        if run is not None and run.process is not None and run.process.is_running:
            await self._reap(run.process, terminate=True)
        if self._terminating is not None and self._terminating.is_running:
            await self._reap(self._terminating, terminate=False)
        self._terminating = None

    async def _reap(self, process: AgentProcess, terminate: bool) -> None:
        """Wait for an agent to exit, killing it if SIGTERM is ignored."""
        try:
            if terminate:
                process.terminate()
            await asyncio.wait_for(process.wait(), timeout=SHUTDOWN_TIMEOUT)
        except ProcessLookupError:
            pass
        except asyncio.TimeoutError:
            logger.warning(f"[relay] Agent ignored SIGTERM for {SHUTDOWN_TIMEOUT}s, killing")
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def sweep_buffers(self) -> list[str]:
        """Evict replay buffers older than the configured TTL."""
        keep = None
        if self._run is not None and self._run.buffer is not None:
            keep = self._run.buffer.path
        return await sweep_stale_buffers(self.config.buffer_dir, self.config.buffer_ttl, keep=keep)

    # =========================================================================
    # Sending
    # =========================================================================

    async def _send(self, websocket: WebSocket, frame: Frame) -> bool:
        try:
            await websocket.send_json(frame.to_wire())
            return True
        except Exception as e:
            logger.debug(f"[relay] Send failed ({frame.type}): {e}")
            return False

    async def _send_raw(self, websocket: WebSocket, line: str) -> bool:
        try:
            await websocket.send_text(line)
            return True
        except Exception as e:
            logger.debug(f"[relay] Send failed (raw line): {e}")
            return False

    def _system_info(self) -> SystemInfoFrame:
        return SystemInfoFrame(
            sdk_version=self.config.sdk_version,
            cli_version=self.config.cli_version,
            build_date=self.config.build_date,
            runtime_version=f"Python {platform.python_version()}",
        )

    async def _fail(self, websocket: WebSocket | None, message: str, reason: ExitReason) -> None:
        """Emit an error followed by the terminal exit frame."""
        logger.warning(f"[relay] Query failed ({reason}): {message}")
        if websocket is None:
            return
        await self._send(websocket, ErrorFrame(error=message))
        await self._send(websocket, ProcessExitFrame(exit_code=1, reason=reason))

    async def _keepalive(self, websocket: WebSocket) -> None:
        while True:
            await asyncio.sleep(self.config.keepalive_interval)
            if not await self._send(websocket, PingFrame()):
                return

    # =========================================================================
    # Connections
    # =========================================================================

    async def connect(self, websocket: WebSocket) -> None:
        """Admit a newly accepted client connection."""
        self.idle_watchdog.cancel()
        self._clients.add(websocket)
        if self._run is not None:
            # Cancelled before the first await so a pending deadline cannot win
            self.grace_timer.cancel()
        self._keepalive_tasks[websocket] = asyncio.create_task(self._keepalive(websocket))
        logger.info(f"[relay] Client connected ({len(self._clients)} open)")

        await self._send(websocket, ConnectedFrame())
        await self._send(websocket, self._system_info())

        # A query between context read and spawn decides the branch once it settles
        if self._start_task is not None and not self._start_task.done():
            await asyncio.wait({self._start_task})

        run = self._run
        if run is not None:
            self.grace_timer.cancel()
            if await self._reattach(websocket, run):
                return

        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        self._link = websocket
        self._poll_task = asyncio.create_task(self._await_context(websocket))

    async def disconnect(self, websocket: WebSocket) -> None:
        """Handle a closed client connection. Never fails and never stops the agent directly."""
        self._clients.discard(websocket)
        task = self._keepalive_tasks.pop(websocket, None)
        if task is not None:
            task.cancel()

        if self._link is websocket:
            self._link = None
            run = self._run
            if run is not None:
                run.disconnected = True
                self.grace_timer.arm()
                logger.info(f"[relay] Client disconnected mid-run, grace period {self.config.grace_period:.0f}s")
            elif self._poll_task is not None and not self._poll_task.done():
                self._poll_task.cancel()
                logger.info("[relay] Client disconnected before query started")
        else:
            logger.info("[relay] Inactive client disconnected")
            if self._link is None and self._run is not None and not self.grace_timer.armed:
                # Left during admission after cancelling the grace timer
                self._run.disconnected = True
                self.grace_timer.arm()

        if not self._clients:
            self.idle_watchdog.arm()

    async def _reattach(self, websocket: WebSocket, run: QueryRun) -> bool:
        """
        Replay buffered output to a reconnecting client and make it the live link.

        Returns:
            False if the run finished before the replay could start.
        """
        async with self._output_lock:
            if self._run is not run:
                return False
            self.grace_timer.cancel()

            if await self.context_store.discard():
                logger.info("[relay] Discarded stale query context on reconnect")

            lines = await run.buffer.read_lines() if run.buffer is not None else []
            for line in lines:
                await self._send_raw(websocket, line)
            await self._send(websocket, ReplayCompleteFrame(replayed_chunks=len(lines)))

            self._link = websocket

        logger.info(f"[relay] Client reattached, replayed {len(lines)} line(s)")
        return True

    # =========================================================================
    # Query Execution
    # =========================================================================

    async def _await_context(self, websocket: WebSocket) -> None:
        found = await self.context_store.wait_for_context(
            self.config.poll_interval, self.config.poll_timeout
        )
        if self._link is not websocket:
            return

        if not found:
            logger.warning(f"[relay] Context file not found after {self.config.poll_timeout:.1f}s")
            await self._fail(websocket, CONTEXT_TIMEOUT_MESSAGE, "context-timeout")
            if self._link is websocket:
                self._link = None
            try:
                await websocket.close()
            except Exception as e:
                logger.debug(f"[relay] Close failed: {e}")
            return

        # Past this point the query must not be cancelled by a new connection
        self._start_task = asyncio.create_task(self._start_query(websocket))
        self._poll_task = None

    async def _start_query(self, websocket: WebSocket) -> None:
        try:
            context = await self.context_store.consume()
        except ContextReadError as e:
            await self._fail(websocket, str(e), "context-read-error")
            return

        if not context.prompt:
            await self._fail(websocket, "No prompt in context file", "no-prompt")
            return

        msg_id = context.env.get(MSG_ID_ENV_KEY, "") or None
        buffer = None
        if msg_id is not None:
            if validate_msg_id(msg_id):
                buffer = ReplayBuffer(self.config.buffer_dir, msg_id)
            else:
                logger.warning("[relay] Invalid message id in context, replay disabled")
                msg_id = None

        cwd = context.cwd or self.config.default_cwd
        run = QueryRun(context.session_id, msg_id, buffer)
        run.process = AgentProcess(
            [*self.config.agent_command, context.prompt, context.session_id, cwd],
            cwd=cwd,
            env=build_agent_env(context.env),
            on_line=partial(self._on_agent_line, run),
            on_frame=partial(self._on_agent_frame, run),
            on_exit=partial(self._on_agent_exit, run),
            forward_debug=self.config.forward_debug,
        )

        logger.info(
            f"[relay] Spawning agent, sessionId={context.session_id[:8]}"
            + (f" msgId={msg_id[:8]}" if msg_id else "")
        )
        previous = self._terminating
        if previous is not None and previous.is_running:
            logger.info(f"[relay] Waiting for terminated agent pid={previous.pid} to exit")
            await self._reap(previous, terminate=False)
        self._terminating = None

        try:
            await run.process.start()
        except AgentSpawnError as e:
            if buffer is not None:
                await buffer.delete()
            await self._fail(websocket, str(e), "spawn-error")
            return

        self._run = run
        if self._link is not websocket:
            # The requesting client left while the agent was starting
            run.disconnected = True
            if self._link is None:
                self.grace_timer.arm()

    async def _on_agent_line(self, run: QueryRun, line: str) -> None:
        async with self._output_lock:
            if self._run is not run:
                return
            if self._link is not None:
                await self._send_raw(self._link, line)
            if run.buffer is not None:
                await run.buffer.append(line)

    async def _on_agent_frame(self, run: QueryRun, frame: Frame) -> None:
        async with self._output_lock:
            if self._run is not run or self._link is None:
                return
            await self._send(self._link, frame)

    async def _on_agent_exit(self, run: QueryRun, exit_code: int) -> None:
        async with self._output_lock:
            if self._run is not run:
                if self._terminating is run.process:
                    self._terminating = None
                logger.info(f"[relay] Terminated agent exited with code {exit_code}")
                return
            self._run = None
            self.grace_timer.cancel()
            if self._link is not None:
                await self._send(self._link, ProcessExitFrame(exit_code=exit_code, reason="child-exit"))
            if run.buffer is not None and not run.disconnected:
                await run.buffer.delete()
        logger.info(f"[relay] Agent exited with code {exit_code}")

    async def _on_grace_expired(self) -> None:
        run = self._run
        if run is None or self._link is not None:
            return
        self._run = None
        self._terminating = run.process
        logger.warning(f"[relay] No reconnect within {self.config.grace_period:.0f}s, terminating agent")
        try:
            run.process.terminate()
        except ProcessLookupError:
            logger.info("[relay] Agent had already exited")

    # =========================================================================
    # Client Requests
    # =========================================================================

    async def handle_message(self, websocket: WebSocket, data: dict) -> None:
        """Dispatch an in-band request from a client."""
        try:
            message = ClientMessage.model_validate(data)
        except ValidationError:
            logger.warning(f"[relay] Malformed client message: {str(data)[:100]}")
            return

        if message.type == "pong":
            self.last_pong_at = datetime.now()
            return

        if websocket is not self._link:
            logger.info(f"[relay] Ignoring {message.type!r} from inactive client")
            return

        if message.type == "pause":
            await self.pause(websocket)
        elif message.type == "resume":
            await self.resume(websocket)
        else:
            logger.debug(f"[relay] Unknown client message type {message.type!r}")

    async def pause(self, websocket: WebSocket) -> None:
        """Suspend the running agent. No-op when nothing runs or it is already paused."""
        run = self._run
        if run is None or run.process is None or not run.process.is_running or run.process.paused:
            return
        try:
            run.process.pause()
        except OSError as e:
            logger.warning(f"[relay] Pause failed: {e}")
            await self._send(websocket, PauseFailedFrame(error=str(e)))
            return
        logger.info(f"[relay] Agent paused (pid={run.process.pid})")
        await self._send(websocket, PausedFrame())

    async def resume(self, websocket: WebSocket) -> None:
        """Continue a paused agent. No-op unless an agent exists and is paused."""
        run = self._run
        if run is None or run.process is None or not run.process.paused:
            return
        try:
            run.process.resume()
        except OSError as e:
            logger.warning(f"[relay] Resume failed: {e}")
            await self._send(websocket, ResumeFailedFrame(error=str(e)))
            return
        logger.info(f"[relay] Agent resumed (pid={run.process.pid})")
        await self._send(websocket, ResumedFrame())
