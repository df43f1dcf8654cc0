"""Cancellation of running processes.

ddt-runtime runtime module v0.1.0

Cancellation always uses SIGTERM, so a successful request ends in a
USER_CANCELLED outcome delivered through the spawn-time callback. Elevated
handles are signalled through the elevation wrapper; a plain kill() on a
process owned by another user would fail.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from dataclasses import dataclass, field

import anyio

from .elevation import Elevation
from .errors import CancelError
from .types import SIGTERM, ProcessHandle, TerminationOutcome

__all__ = ["CancellationController"]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"


@dataclass
class CancellationController:
    """Requests termination of live processes.

    Attributes:
        elevation: Wrapper used for handles spawned with elevated=True; must
            match the one the ProcessRunner used
    """

    elevation: Elevation = field(default_factory=Elevation)

    async def cancel(self, handle: ProcessHandle) -> None:
        """Send SIGTERM to the process behind ``handle``.

        Fire-and-forget: the outcome arrives through the on_terminate
        callback registered at spawn time.

        Raises:
            CancelError: The handle has no live process, a cancellation is
                already in flight, or the signal could not be delivered
        """
        if not handle.pid:
            raise CancelError("", "no live process (already terminated)")
        if handle.cancel_requested:
            raise CancelError(handle.pid, "cancellation already requested")

        handle.cancel_requested = True
        try:
            if handle.elevated:
                await self._cancel_elevated(handle)
            else:
                self._cancel_plain(handle)
        except CancelError:
            handle.cancel_requested = False
            raise

        logger.info(f"Cancellation requested for {handle!r}")

    async def terminate(
        self,
        handle: ProcessHandle,
        timeout: float | None = None,
    ) -> TerminationOutcome:
        """Cancel ``handle`` and wait for its termination notification.

        Raises:
            CancelError: See cancel()
            TimeoutError: The process did not exit within ``timeout``
        """
        await self.cancel(handle)
        with anyio.fail_after(timeout):
            return await handle.wait()

    def _cancel_plain(self, handle: ProcessHandle) -> None:
        pid = int(handle.pid)
        try:
            if IS_WINDOWS:
                os.kill(pid, SIGTERM)
                return
            # ProcessRunner starts every process in a new session, so the pid
            # is its process group id. The group outlives a reaped leader
            # while a background child still holds the output pipes.
            if pid == os.getpgrp():
                raise CancelError(handle.pid, "refusing to signal our own process group")
            os.killpg(pid, SIGTERM)
            logger.debug(f"Sent SIGTERM to process group pgid={pid}")
        except ProcessLookupError as e:
            raise CancelError(handle.pid, "process already exited") from e
        except PermissionError as e:
            raise CancelError(handle.pid, f"permission denied: {e}") from e

    async def _cancel_elevated(self, handle: ProcessHandle) -> None:
        argv = self.elevation.kill_argv(handle.pid, SIGTERM)
        try:
            helper = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CancelError(handle.pid, f"cannot run {self.elevation.program}: {e}") from e

        _, stderr = await helper.communicate()
        if helper.returncode != 0:
            reason = self.elevation.describe_failure(
                helper.returncode, stderr.decode("utf-8", errors="replace")
            )
            raise CancelError(handle.pid, reason)

        logger.debug(f"Sent SIGTERM via {self.elevation.program} to pid={handle.pid}")
