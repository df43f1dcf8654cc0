"""Process runner: spawn, stream and watch one external command.

ddt-runtime runtime module v0.1.0

This module provides:
- Non-blocking spawn of plain or elevated commands
- Line-oriented streaming of stdout/stderr into an OutputAggregator
- A watcher task per process that reports the exit exactly once
- Cancel-safe cleanup using asyncio.shield

Key design points:
- POSIX: start_new_session=True so SIGTERM can target the whole group
- Windows: CREATE_NEW_PROCESS_GROUP; elevation is not supported there
- Callbacks run on the event loop, in the watcher task, never before
  spawn() has returned
- No output is delivered after the termination callback
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import os
import shutil
import signal
import subprocess
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, NamedTuple

from .aggregator import OutputAggregator
from .elevation import Elevation
from .errors import SpawnError
from .signaler import TerminateCallback, TerminationSignaler
from .types import Command, ProcessHandle, TerminationOutcome

__all__ = [
    "ProcessRunner",
    "SpawnResult",
    "DataCallback",
    "run_command",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Default timeouts
DEFAULT_DRAIN_TIMEOUT = 1.0  # seconds to keep reading pipes after exit
DEFAULT_TERM_TIMEOUT = 2.0  # seconds to wait after SIGTERM on shutdown
DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait after SIGKILL on shutdown

READ_CHUNK_SIZE = 4096
EXIT_POLL_INTERVAL = 0.05  # seconds between returncode checks while pipes stay open

DataCallback = Callable[[str], None]


class SpawnResult(NamedTuple):
    """Return value of ProcessRunner.spawn()."""

    handle: ProcessHandle
    initial_output: str


@dataclass
class ProcessRunner:
    """Spawns commands and bridges their output and exit to callbacks.

    Each call to spawn() creates one OS process and one watcher task. The
    runner holds no state shared between runs apart from the set of watcher
    tasks, so one runner can serve several independent panels.

    Example:
        runner = ProcessRunner()
        handle, _ = await runner.spawn(
            Command("nmap", ("-T3", "10.0.0.1")),
            on_data=print,
            on_terminate=lambda outcome: print(outcome.message),
        )
        await handle.wait()

    Attributes:
        elevation: Wrapper used for commands with elevated=True
        cwd: Working directory for spawned processes (None = inherit)
        env: Environment for spawned processes (None = inherit)
        drain_timeout: Seconds to keep reading pipes once the process exited
    """

    elevation: Elevation = field(default_factory=Elevation)
    cwd: Path | None = None
    env: Mapping[str, str] | None = None
    drain_timeout: float = DEFAULT_DRAIN_TIMEOUT
    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    _watchers: dict[ProcessHandle, asyncio.Task[None]] = field(
        default_factory=dict, init=False, repr=False
    )

    @property
    def live_handles(self) -> list[ProcessHandle]:
        return [handle for handle in self._watchers if handle.is_live]

    async def spawn(
        self,
        command: Command,
        on_data: DataCallback,
        on_terminate: TerminateCallback,
        *,
        aggregator: OutputAggregator | None = None,
    ) -> SpawnResult:
        """Start ``command`` and return as soon as the OS accepted it.

        For elevated commands "accepted" includes the authentication step:
        this method returns once the wrapper reported the program is about
        to run.

        Args:
            command: What to run
            on_data: Called with each output line, in arrival order
            on_terminate: Called exactly once with the outcome
            aggregator: Buffer receiving the output (a new one if omitted)

        Returns:
            (handle, initial_output) where initial_output is the buffer
            content at the time of return

        Raises:
            SpawnError: Executable missing, OS refused, or elevation declined
        """
        if aggregator is None:
            aggregator = OutputAggregator()

        argv = self._build_argv(command)
        kwargs = self._build_subprocess_kwargs()

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs,
            )
        except FileNotFoundError as e:
            missing = self.elevation.program if command.elevated else command.program
            raise SpawnError(command, f"executable not found: {missing}") from e
        except PermissionError as e:
            raise SpawnError(command, f"permission denied: {e}") from e
        except OSError as e:
            raise SpawnError(command, f"OS refused to create the process: {e}") from e

        pid = str(process.pid)
        if command.elevated:
            pid = await self._await_elevation(process, command)

        handle = ProcessHandle(pid=pid, command=command)
        signaler = TerminationSignaler(handle, on_terminate, aggregator)

        logger.debug(
            f"Started subprocess pid={pid} argv={argv[0]} "
            f"elevated={command.elevated} cwd={self.cwd}"
        )

        task = asyncio.create_task(
            self._watch(process, signaler, aggregator, on_data),
            name=f"ddt-watch-{pid}",
        )
        self._watchers[handle] = task
        task.add_done_callback(lambda _: self._watchers.pop(handle, None))

        return SpawnResult(handle, aggregator.text)

    async def aclose(self) -> None:
        """Stop every process still running and wait for its notification.

        Used when the host shuts down; each watcher terminates its process
        and still delivers the termination callback.
        """
        # Let freshly created watchers enter their try block first, otherwise
        # cancel() would skip the cleanup that fires the notification
        await asyncio.sleep(0)
        tasks = list(self._watchers.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def _build_argv(self, command: Command) -> list[str]:
        """Resolve the argv to execute, wrapping elevated commands."""
        if not command.elevated:
            return command.argv

        if IS_WINDOWS:
            raise SpawnError(command, "elevated execution is not supported on Windows")

        # The wrapper resets PATH, so resolve the program here
        resolved = shutil.which(command.program)
        if resolved is None:
            raise SpawnError(command, f"executable not found: {command.program}")
        return self.elevation.wrap(command, resolved)

    def _build_subprocess_kwargs(self) -> dict[str, Any]:
        """Build platform-specific subprocess kwargs."""
        kwargs: dict[str, Any] = {}

        if self.cwd is not None:
            kwargs["cwd"] = self.cwd

        if self.env is not None:
            kwargs["env"] = dict(self.env)

        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        return kwargs

    async def _await_elevation(
        self,
        process: asyncio.subprocess.Process,
        command: Command,
    ) -> str:
        """Wait for the readiness marker of an elevated process.

        The wrapper's stderr is drained meanwhile so a chatty prompt cannot
        block on a full pipe.

        Returns:
            pid of the elevated program

        Raises:
            SpawnError: The wrapper exited before running the program, or
                wrote something that is not a line
        """
        wrapper_stderr = bytearray()
        stderr_task = asyncio.create_task(_collect(process.stderr, wrapper_stderr))
        try:
            pid = await self._read_ready_marker(process)
        except asyncio.CancelledError:
            # Caller gave up while the authentication prompt was open
            await _abort_wrapper(process, stderr_task)
            raise
        except ValueError as e:
            # readline() reports a line over the StreamReader limit as ValueError
            await _abort_wrapper(process, stderr_task)
            raise SpawnError(
                command, f"unexpected output from {self.elevation.program}: {e}"
            ) from e

        if pid is not None:
            await _cancel_tasks([stderr_task])
            if wrapper_stderr:
                text = wrapper_stderr.decode("utf-8", errors="replace").rstrip()
                logger.debug(f"Elevation wrapper stderr before ready: {text}")
            return pid

        await stderr_task
        returncode = await process.wait()
        reason = self.elevation.describe_failure(
            returncode, wrapper_stderr.decode("utf-8", errors="replace")
        )
        logger.info(f"Elevation refused for '{command}': {reason}")
        raise SpawnError(command, reason)

    async def _read_ready_marker(self, process: asyncio.subprocess.Process) -> str | None:
        """Read wrapper stdout up to the readiness marker; None on EOF."""
        assert process.stdout is not None
        while True:
            raw = await process.stdout.readline()
            if not raw:
                return None
            line = raw.decode("utf-8", errors="replace")
            pid = self.elevation.parse_ready(line)
            if pid is not None:
                logger.debug(f"Elevation granted pid={pid} wrapper_pid={process.pid}")
                return pid
            logger.debug(f"Elevation wrapper output before ready: {line.rstrip()}")

    async def _watch(
        self,
        process: asyncio.subprocess.Process,
        signaler: TerminationSignaler,
        aggregator: OutputAggregator,
        on_data: DataCallback,
    ) -> None:
        """Pump output until exit, then fire the termination notification."""

        def deliver(chunk: str) -> None:
            if signaler.fired:
                logger.debug(f"Dropping output after termination: {chunk[:80]!r}")
                return
            aggregator.append(chunk)
            try:
                on_data(chunk)
            except Exception as e:
                logger.warning(f"Error in data callback: {e}")

        pumps = [
            asyncio.create_task(_pump_lines(stream, deliver))
            for stream in (process.stdout, process.stderr)
            if stream is not None
        ]

        try:
            returncode = await _wait_for_exit(process)
            # Grandchildren may keep the pipes open; don't wait on them forever
            if pumps:
                _, pending = await asyncio.wait(pumps, timeout=self.drain_timeout)
                await _cancel_tasks(pending)
            signaler.fire_returncode(returncode)
            logger.debug(
                f"Subprocess completed pid={process.pid} returncode={returncode}"
            )
        finally:
            if not signaler.fired:
                try:
                    await asyncio.shield(self._cleanup(process, pumps, signaler))
                except asyncio.CancelledError:
                    await self._cleanup(process, pumps, signaler)

    async def _cleanup(
        self,
        process: asyncio.subprocess.Process,
        pumps: list[asyncio.Task[None]],
        signaler: TerminationSignaler,
    ) -> None:
        """Terminate a process whose watcher was interrupted, then notify."""
        await _cancel_tasks(pumps)
        if process.returncode is None:
            await self._terminate_process(process)
        signaler.fire_returncode(process.returncode)

    async def _terminate_process(self, process: asyncio.subprocess.Process) -> None:
        """Terminate gracefully (SIGTERM -> timeout -> SIGKILL)."""
        pid = process.pid
        logger.debug(f"Terminating subprocess pid={pid}")
        try:
            _signal_group(process, signal.SIGTERM)
            try:
                await asyncio.wait_for(_wait_for_exit(process), timeout=self.term_timeout)
                return
            except asyncio.TimeoutError:
                pass

            logger.debug(f"Force killing subprocess pid={pid}")
            _signal_group(process, getattr(signal, "SIGKILL", signal.SIGTERM))
            try:
                await asyncio.wait_for(_wait_for_exit(process), timeout=self.kill_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Subprocess did not exit after kill pid={pid}")
        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={pid}")
        except Exception as e:
            logger.warning(f"Error terminating subprocess pid={pid}: {e}")


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    """Send ``sig`` to the process group, falling back to the process."""
    if IS_WINDOWS:
        process.terminate()
        return
    try:
        # started with start_new_session, so the pid is the group id
        os.killpg(process.pid, sig)
    except PermissionError:
        # Elevated processes: best effort only
        process.send_signal(sig)


async def _wait_for_exit(process: asyncio.subprocess.Process) -> int | None:
    """Return the returncode as soon as the process itself has exited.

    Process.wait() only returns once every pipe is closed, which a
    background grandchild can postpone indefinitely. returncode is set when
    the child is reaped, so poll it alongside wait().
    """
    waiter = asyncio.ensure_future(process.wait())
    try:
        while process.returncode is None and not waiter.done():
            await asyncio.wait({waiter}, timeout=EXIT_POLL_INTERVAL)
    finally:
        await _cancel_tasks([waiter])
    return process.returncode


async def _collect(stream: asyncio.StreamReader | None, buffer: bytearray) -> None:
    """Read ``stream`` to EOF into ``buffer``."""
    if stream is None:
        return
    while True:
        data = await stream.read(READ_CHUNK_SIZE)
        if not data:
            break
        buffer += data


async def _abort_wrapper(
    process: asyncio.subprocess.Process,
    stderr_task: asyncio.Task[None],
) -> None:
    """Stop an elevation wrapper that never reported readiness."""
    await _cancel_tasks([stderr_task])
    with contextlib.suppress(ProcessLookupError, PermissionError):
        _signal_group(process, signal.SIGTERM)


async def _cancel_tasks(tasks) -> None:
    for task in tasks:
        if not task.done():
            task.cancel()
    for task in tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task


async def _pump_lines(stream: asyncio.StreamReader, deliver: DataCallback) -> None:
    """Read ``stream`` to EOF and deliver it line by line.

    Reads fixed-size blocks instead of readline() so very long lines never hit
    the StreamReader limit. A trailing partial line is delivered at EOF.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending = ""
    while True:
        data = await stream.read(READ_CHUNK_SIZE)
        if not data:
            break
        pending += decoder.decode(data)
        *lines, pending = pending.split("\n")
        for line in lines:
            deliver(line.removesuffix("\r"))

    pending += decoder.decode(b"", final=True)
    if pending:
        deliver(pending.removesuffix("\r"))


# Convenience function for panels that do not stream
async def run_command(
    command: Command,
    *,
    runner: ProcessRunner | None = None,
    on_data: DataCallback | None = None,
) -> tuple[TerminationOutcome, str]:
    """Run ``command`` to completion.

    Args:
        command: What to run
        runner: Runner to use (a default one if omitted)
        on_data: Optional per-line callback

    Returns:
        (outcome, text) where text is the aggregated output including the
        final outcome line

    Raises:
        SpawnError: The process could not be started
    """
    runner = runner or ProcessRunner()
    aggregator = OutputAggregator()

    handle, _ = await runner.spawn(
        command,
        on_data=on_data or (lambda _chunk: None),
        on_terminate=lambda _outcome: None,
        aggregator=aggregator,
    )
    outcome = await handle.wait()
    return outcome, aggregator.text
