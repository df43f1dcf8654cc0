"""Saving a run's final output to a text file."""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

import anyio

__all__ = ["OverwriteGate", "save_output"]

logger = logging.getLogger(__name__)

# Asked with the existing path; returns True to replace the file
OverwriteGate = Callable[[Path], bool]


async def save_output(
    path: str | Path,
    text: str,
    confirm_overwrite: OverwriteGate | bool = False,
) -> Path:
    """Write ``text`` to ``path``.

    Args:
        path: Destination file; missing parent directories are created
        text: Final aggregated output
        confirm_overwrite: Gate consulted when the file already exists, or a
            fixed answer

    Returns:
        The path written

    Raises:
        FileExistsError: The file exists and the gate refused to replace it
    """
    target = anyio.Path(path)

    if await target.exists():
        if callable(confirm_overwrite):
            allowed = confirm_overwrite(Path(path))
        else:
            allowed = bool(confirm_overwrite)
        if not allowed:
            raise FileExistsError(f"Refusing to overwrite existing file: {path}")

    await target.parent.mkdir(parents=True, exist_ok=True)
    await target.write_text(text, encoding="utf-8")

    logger.info(f"Saved {len(text)} characters of output to {path}")
    return Path(path)
