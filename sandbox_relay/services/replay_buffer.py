"""
Replay Buffer
=============

Append-only JSONL log of every output line forwarded for one query, used to
catch up a client that reconnects while the agent is still running.
"""

import asyncio
import logging
import re
import time
from pathlib import Path

logger = logging.getLogger(__name__)

BUFFER_PREFIX = "vf-stream-"
BUFFER_SUFFIX = ".jsonl"


def validate_msg_id(msg_id: str) -> bool:
    """Validate a message correlation id to prevent path traversal."""
    return bool(re.match(r'^[a-zA-Z0-9_-]{1,128}$', msg_id))


def buffer_path(buffer_dir: Path, msg_id: str) -> Path:
    return Path(buffer_dir) / f"{BUFFER_PREFIX}{msg_id}{BUFFER_SUFFIX}"


class ReplayBuffer:
    """Replay log for a single message correlation id."""

    def __init__(self, buffer_dir: Path, msg_id: str):
        if not validate_msg_id(msg_id):
            raise ValueError(f"Invalid message id: {msg_id!r}")
        self.msg_id = msg_id
        self.path = buffer_path(buffer_dir, msg_id)

    def _append(self, line: str) -> None:
        with open(self.path, "a", encoding="utf-8", newline="") as f:
            f.write(line + "\n")

    async def append(self, line: str) -> None:
        try:
            await asyncio.to_thread(self._append, line)
        except OSError as e:
            # Losing replay capability must not interrupt live forwarding
            logger.warning(f"[replay] Failed to append to {self.path.name}: {e}")

    async def read_lines(self, offset: int = 0) -> list[str]:
        return await read_buffer_lines(self.path, offset)

    async def exists(self) -> bool:
        return await asyncio.to_thread(self.path.exists)

    async def delete(self) -> bool:
        return await delete_buffer(self.path)


async def read_buffer_lines(path: Path, offset: int = 0) -> list[str]:
    """Return buffered lines in file order, starting at ``offset``."""
    def _read() -> list[str]:
        try:
            with open(path, encoding="utf-8", newline="") as f:
                content = f.read()
        except FileNotFoundError:
            return []
        # Records end in "\n" only; a line may itself contain U+2028 or "\r"
        lines = content.split("\n")
        if lines[-1] == "":
            lines.pop()
        return lines[offset:]

    return await asyncio.to_thread(_read)


async def delete_buffer(path: Path) -> bool:
    def _unlink() -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    try:
        return await asyncio.to_thread(_unlink)
    except OSError as e:
        logger.warning(f"[replay] Failed to delete {path.name}: {e}")
        return False


async def sweep_stale_buffers(buffer_dir: Path, ttl: float, keep: Path | None = None) -> list[str]:
    """
    Delete replay buffers not modified for longer than ``ttl`` seconds.

    Args:
        buffer_dir: Directory holding the buffer files
        ttl: Maximum age in seconds
        keep: Buffer of the running query, never evicted

    Returns:
        Names of the deleted files
    """
    def _sweep() -> list[str]:
        removed = []
        cutoff = time.time() - ttl
        for path in Path(buffer_dir).glob(f"{BUFFER_PREFIX}*{BUFFER_SUFFIX}"):
            if keep is not None and path == keep:
                continue
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed.append(path.name)
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"[replay] Failed to evict {path.name}: {e}")
        return removed

    removed = await asyncio.to_thread(_sweep)
    if removed:
        logger.info(f"[replay] Evicted {len(removed)} stale buffer(s)")
    return removed
