"""
Auto-Context
============

Runs the project-state gathering script once at relay startup and caches its
output where the agent picks it up for its system prompt.
"""

import asyncio
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

# Per-run timeout for the gathering script in seconds
CONTEXT_SCRIPT_TIMEOUT = 10


async def gather_auto_context(script: Path, cwd: str, output_file: Path) -> str | None:
    """
    Run the context script and write its trimmed output to ``output_file``.

    Best-effort: every failure is logged and ``None`` returned.
    """
    if not await asyncio.to_thread(Path(script).exists):
        logger.info(f"[auto-context] Script {script} not found, skipping")
        return None

    try:
        process = await asyncio.create_subprocess_exec(
            "bash", str(script),
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        logger.info(f"[auto-context] Gathering skipped: {e}")
        return None

    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=CONTEXT_SCRIPT_TIMEOUT)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.info(f"[auto-context] Gathering skipped: timed out after {CONTEXT_SCRIPT_TIMEOUT}s")
        return None

    if process.returncode != 0:
        logger.info(f"[auto-context] Gathering skipped: script exited with {process.returncode}")
        return None

    output = stdout.decode("utf-8", errors="replace").strip()
    if not output:
        return None

    try:
        await asyncio.to_thread(Path(output_file).write_text, output, encoding="utf-8")
    except OSError as e:
        logger.warning(f"[auto-context] Failed to write {output_file}: {e}")
        return None

    logger.info(f"[auto-context] Gathered ({len(output)} chars)")
    return output
