"""Value types shared by the process core.

ddt-runtime runtime module v0.1.0

This module provides:
- Command: immutable description of what to launch
- ProcessHandle: identity of one spawned OS process
- TerminationOutcome / Classification: normalized exit status
"""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

__all__ = [
    "SIGTERM",
    "Classification",
    "Command",
    "ProcessHandle",
    "TerminationOutcome",
]

# Signal used for cancellation; a run ending with it counts as user-cancelled
SIGTERM = int(signal.SIGTERM)


@dataclass(frozen=True)
class Command:
    """What to run.

    Attributes:
        program: Executable name or path, resolved on the host
        arguments: Ordered argument list (may be empty)
        elevated: Run through the privilege-elevation wrapper
    """

    program: str
    arguments: tuple[str, ...] = ()
    elevated: bool = False

    def __post_init__(self) -> None:
        # Accept any sequence but store a tuple so the command stays immutable
        object.__setattr__(self, "arguments", tuple(self.arguments))

    @property
    def argv(self) -> list[str]:
        """Program followed by its arguments, without any wrapper."""
        return [self.program, *self.arguments]

    def __str__(self) -> str:
        prefix = "[elevated] " if self.elevated else ""
        return prefix + " ".join(self.argv)


class Classification(Enum):
    """Three-way outcome of a finished process."""

    SUCCESS = "success"
    USER_CANCELLED = "user_cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class TerminationOutcome:
    """Normalized exit status.

    Attributes:
        exit_code: Exit code, None if the process died from a signal or the
            status is unknown
        signal: Terminating signal number, None if it exited normally
        classification: Success / UserCancelled / Failed
    """

    exit_code: int | None
    signal: int | None
    classification: Classification

    @property
    def succeeded(self) -> bool:
        return self.classification is Classification.SUCCESS

    @property
    def cancelled(self) -> bool:
        return self.classification is Classification.USER_CANCELLED

    @property
    def message(self) -> str:
        """Human-readable line appended to the output when the run ends."""
        if self.classification is Classification.SUCCESS:
            return "Process completed successfully."
        if self.classification is Classification.USER_CANCELLED:
            return "Process was manually terminated."
        code = "unknown" if self.exit_code is None else self.exit_code
        sig = "unknown" if self.signal is None else self.signal
        return f"Process terminated with exit code: {code} and signal code: {sig}"


@dataclass(eq=False)
class ProcessHandle:
    """Live identity of one spawned process.

    The pid is an opaque string; an empty pid means no live process. It is
    cleared exactly once, when the termination notification fires, and a
    handle is never rebound to another OS process.

    Attributes:
        pid: OS process id as a string, "" once terminated
        command: The command the process was spawned from
        started_at: Spawn time
        outcome: Set when the process terminated
        cancel_requested: A termination request was already sent
    """

    pid: str
    command: Command
    started_at: datetime = field(default_factory=datetime.now)
    outcome: TerminationOutcome | None = None
    cancel_requested: bool = False
    _finished: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def elevated(self) -> bool:
        return self.command.elevated

    @property
    def is_live(self) -> bool:
        return bool(self.pid)

    @property
    def terminated(self) -> bool:
        return self.outcome is not None

    async def wait(self) -> TerminationOutcome:
        """Wait until the termination notification has fired."""
        await self._finished.wait()
        assert self.outcome is not None
        return self.outcome

    def __repr__(self) -> str:
        elapsed = (datetime.now() - self.started_at).total_seconds()
        status = "live" if self.pid else "terminated"
        return (
            f"ProcessHandle(pid={self.pid or '-'}, "
            f"command={self.command}, "
            f"status={status}, "
            f"elapsed={elapsed:.1f}s)"
        )
