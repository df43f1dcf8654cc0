"""Privilege-elevation wrapper (polkit pkexec by default).

ddt-runtime runtime module v0.1.0

Key design points:
- The wrapped shell prints a readiness marker with its own pid, then execs
  the program. The marker only appears once authentication succeeded, so the
  runner can tell "auth declined" apart from "program failed".
- exec keeps the pid, so the marker pid is the pid of the elevated program.
- Termination of an elevated process goes through the same wrapper, since an
  unprivileged kill() on it fails with EPERM.
"""

from __future__ import annotations

import signal as _signal
from dataclasses import dataclass

from .types import SIGTERM, Command

__all__ = [
    "Elevation",
    "DEFAULT_ELEVATION_PROGRAM",
    "READY_MARKER",
    "EXIT_AUTH_DISMISSED",
    "EXIT_AUTH_FAILED",
]

DEFAULT_ELEVATION_PROGRAM = "pkexec"
READY_MARKER = "__DDT_ELEVATED_READY__"

# pkexec exit codes
EXIT_AUTH_DISMISSED = 126
EXIT_AUTH_FAILED = 127

_BOOTSTRAP = 'printf "%s %s\\n" "{marker}" "$$"; exec "$@"'


@dataclass(frozen=True)
class Elevation:
    """How to run and signal commands under elevated privileges.

    Attributes:
        program: Wrapper executable (e.g. pkexec)
        marker: Readiness marker printed after authentication
    """

    program: str = DEFAULT_ELEVATION_PROGRAM
    marker: str = READY_MARKER

    def wrap(self, command: Command, resolved_program: str | None = None) -> list[str]:
        """Build the argv that runs ``command`` through the wrapper.

        Args:
            command: The command to elevate
            resolved_program: Absolute path of the program; pkexec resets
                PATH, so callers should pass the resolved path

        Returns:
            argv for asyncio.create_subprocess_exec
        """
        bootstrap = _BOOTSTRAP.format(marker=self.marker)
        program = resolved_program or command.program
        return [self.program, "sh", "-c", bootstrap, "sh", program, *command.arguments]

    def kill_argv(self, pid: str, sig: int = SIGTERM) -> list[str]:
        """Build the argv that delivers ``sig`` to ``pid`` with elevated rights."""
        name = _signal.Signals(sig).name.removeprefix("SIG")
        return [self.program, "kill", "-s", name, "--", pid]

    def parse_ready(self, line: str) -> str | None:
        """Return the elevated pid if ``line`` is the readiness marker."""
        parts = line.strip().split()
        if len(parts) == 2 and parts[0] == self.marker and parts[1].isdigit():
            return parts[1]
        return None

    def describe_failure(self, returncode: int | None, stderr: str = "") -> str:
        """Explain why the wrapper gave up before running the program."""
        if returncode == EXIT_AUTH_DISMISSED:
            reason = "authentication dismissed"
        elif returncode == EXIT_AUTH_FAILED:
            reason = "not authorized or authentication failed"
        else:
            reason = f"{self.program} exited with code {returncode}"
        detail = stderr.strip()
        return f"{reason}: {detail}" if detail else reason
