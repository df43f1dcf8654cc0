"""Process core exceptions.

ddt-runtime runtime module v0.1.0

A failing tool is not an error here: nonzero exits are reported through the
termination callback as a Failed classification. Only transport failures
(spawn, cancel) are raised.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .types import Command

__all__ = [
    "ProcessError",
    "SpawnError",
    "CancelError",
]


class ProcessError(Exception):
    """Base class for process core errors."""
    pass


class SpawnError(ProcessError):
    """The process never became live.

    Raised when the executable is missing, the OS refuses to create the
    process, or the elevation wrapper declined to run it. No termination
    notification follows.

    Attributes:
        command: The command that failed to start
        reason: Short description of the failure
    """

    def __init__(self, command: Command, reason: str) -> None:
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to start '{command}': {reason}")


class CancelError(ProcessError):
    """A termination request could not be issued.

    Attributes:
        pid: The pid the request targeted ("" when the handle was not live)
        reason: Short description of the failure
    """

    def __init__(self, pid: str, reason: str) -> None:
        self.pid = pid
        self.reason = reason
        target = f"pid={pid}" if pid else "handle without a live process"
        super().__init__(f"Cannot cancel {target}: {reason}")
