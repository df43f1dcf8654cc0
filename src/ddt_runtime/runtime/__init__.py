"""Runtime module for process execution and lifecycle.

This module launches external commands (optionally elevated), streams their
output, tracks their pid for cancellation and turns their exit status into a
classified termination notification.
"""

from __future__ import annotations

from .aggregator import OutputAggregator
from .cancellation import CancellationController
from .elevation import Elevation
from .errors import CancelError, ProcessError, SpawnError
from .process_runner import ProcessRunner, SpawnResult, run_command
from .signaler import TerminationSignaler, classify
from .types import (
    SIGTERM,
    Classification,
    Command,
    ProcessHandle,
    TerminationOutcome,
)

__all__ = [
    "SIGTERM",
    "CancelError",
    "CancellationController",
    "Classification",
    "Command",
    "Elevation",
    "OutputAggregator",
    "ProcessError",
    "ProcessHandle",
    "ProcessRunner",
    "SpawnError",
    "SpawnResult",
    "TerminationOutcome",
    "TerminationSignaler",
    "classify",
    "run_command",
]
