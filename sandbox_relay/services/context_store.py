"""
Context Store
=============

Read-once access to the query context file the orchestrator writes before
proxying a client connection into the container.
"""

import asyncio
import json
import logging
from pathlib import Path

from pydantic import ValidationError

from ..exceptions import ContextReadError
from ..schemas import QueryContext

logger = logging.getLogger(__name__)


class ContextStore:
    """Filesystem handoff location for a single pending query context."""

    def __init__(self, path: Path):
        self.path = Path(path)

    async def exists(self) -> bool:
        return await asyncio.to_thread(self.path.exists)

    async def wait_for_context(self, interval: float, timeout: float) -> bool:
        """
        Poll until the context file appears.

        Returns:
            True if the file appeared within the budget, False on timeout.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            if await self.exists():
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(interval)

    async def consume(self) -> QueryContext:
        """
        Read the context and delete the file.

        The file is removed even when parsing fails: it may carry secrets.

        Raises:
            ContextReadError: If the file cannot be read or is not a valid context.
        """
        try:
            raw = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
        except OSError as e:
            raise ContextReadError(f"Failed to read context: {e}") from e
        finally:
            await self.discard()

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ContextReadError(f"Failed to read context: {e}") from e
        if not isinstance(data, dict):
            raise ContextReadError("Failed to read context: expected a JSON object")

        try:
            return QueryContext.model_validate(data)
        except ValidationError as e:
            raise ContextReadError(f"Failed to read context: {e.errors()[0]['msg']}") from e

    async def discard(self) -> bool:
        """Delete the context file if present. Returns True if a file was removed."""
        def _unlink() -> bool:
            try:
                self.path.unlink()
                return True
            except FileNotFoundError:
                return False

        try:
            return await asyncio.to_thread(_unlink)
        except OSError as e:
            logger.warning(f"[context] Failed to delete context file {self.path}: {e}")
            return False
