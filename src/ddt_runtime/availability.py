"""Dependency presence check run before a tool is offered to the user."""

from __future__ import annotations

import logging
import shutil
from collections.abc import Iterable

import anyio

__all__ = ["check_commands_available", "missing_commands"]

logger = logging.getLogger(__name__)


async def missing_commands(names: Iterable[str]) -> list[str]:
    """Return the program names that cannot be resolved on PATH.

    The PATH scan runs in a worker thread so the event loop stays free.
    """
    names = list(names)

    def _scan() -> list[str]:
        return [name for name in names if shutil.which(name) is None]

    missing = await anyio.to_thread.run_sync(_scan)
    if missing:
        logger.info(f"Missing commands: {', '.join(missing)}")
    return missing


async def check_commands_available(names: Iterable[str]) -> bool:
    """True if every program in ``names`` is installed."""
    return not await missing_commands(names)
