"""Per-tool run state.

ToolSession is what a tool panel holds: the output of the current run, the
live handle, and the loading/save flags. It wires one ProcessRunner and one
CancellationController to a single pair of data/termination handlers, so
panels never carry their own copy of that state machine.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from pathlib import Path

from .availability import missing_commands
from .config import get_config
from .persistence import OverwriteGate, save_output
from .registry import HandleRegistry
from .runtime.aggregator import OutputAggregator
from .runtime.cancellation import CancellationController
from .runtime.errors import CancelError, SpawnError
from .runtime.process_runner import ProcessRunner
from .runtime.types import Command, ProcessHandle, TerminationOutcome

__all__ = ["ToolSession"]

logger = logging.getLogger(__name__)


class ToolSession:
    """Run state for one tool panel.

    Save rules: saving is allowed once a run has terminated, and stops being
    allowed after the output is saved or cleared, or a new run starts.

    Example:
        session = ToolSession("dirb", dependencies=["dirb"])
        if not await session.check_dependencies():
            await session.start(Command("dirb", ("http://10.0.0.5",)))
            outcome = await session.wait()
            await session.save("dirb.txt")

    Attributes:
        tool: Tool name, used for logging and the registry
        dependencies: Programs that must be installed before start()
        loading: A run is live
        allow_save: Output of a finished run can be saved
        has_saved: Output of the last run has been saved
    """

    def __init__(
        self,
        tool: str,
        dependencies: Iterable[str] = (),
        *,
        runner: ProcessRunner | None = None,
        controller: CancellationController | None = None,
        registry: HandleRegistry | None = None,
        on_data: Callable[[str], None] | None = None,
        on_finished: Callable[[TerminationOutcome], None] | None = None,
    ) -> None:
        config = get_config()
        self.tool = tool
        self.dependencies = list(dependencies)
        self.runner = runner or ProcessRunner(
            elevation=config.elevation,
            drain_timeout=config.drain_timeout,
        )
        self.controller = controller or (
            registry.controller if registry else CancellationController(self.runner.elevation)
        )
        self.registry = registry
        self._on_data = on_data
        self._on_finished = on_finished

        self.handle: ProcessHandle | None = None
        self.loading = False
        self.allow_save = False
        self.has_saved = False
        self._aggregator = OutputAggregator()

    @property
    def output(self) -> str:
        return self._aggregator.text

    @property
    def pid(self) -> str:
        return self.handle.pid if self.handle else ""

    async def check_dependencies(self) -> list[str]:
        """Return the missing dependencies (empty when the tool can run)."""
        return await missing_commands(self.dependencies)

    async def start(self, command: Command) -> ProcessHandle:
        """Spawn ``command`` as this panel's run.

        Raises:
            SpawnError: The process could not be started, or a run is
                already live for this panel
        """
        if self.loading:
            raise SpawnError(command, f"a {self.tool} run is already in progress")

        self._aggregator = OutputAggregator()
        self.allow_save = False
        self.has_saved = False
        self.loading = True

        try:
            handle, _ = await self.runner.spawn(
                command,
                on_data=self._handle_data,
                on_terminate=self._handle_termination,
            )
        except SpawnError as e:
            self.loading = False
            self._aggregator.append(str(e))
            logger.warning(f"{self.tool}: {e}")
            raise

        self.handle = handle
        if self.registry is not None:
            self.registry.register(handle, tool=self.tool)
        logger.info(f"{self.tool}: started {handle!r}")
        return handle

    async def cancel(self) -> None:
        """Request termination of the live run.

        Raises:
            CancelError: No live run
        """
        if self.handle is None:
            raise CancelError("", "no run started")
        await self.controller.cancel(self.handle)

    async def wait(self) -> TerminationOutcome:
        """Wait for the current run to terminate."""
        if self.handle is None:
            raise RuntimeError(f"No {self.tool} run started")
        return await self.handle.wait()

    def clear_output(self) -> None:
        """Drop the displayed output; a live run keeps appending after it."""
        self._aggregator = OutputAggregator()
        self.allow_save = False
        self.has_saved = False

    async def save(
        self,
        path: str | Path,
        confirm_overwrite: OverwriteGate | bool = False,
    ) -> Path:
        """Persist the output of the finished run.

        Raises:
            RuntimeError: Nothing to save (run live, output cleared or saved)
            FileExistsError: The overwrite gate refused
        """
        if not self.allow_save:
            raise RuntimeError(f"No finished {self.tool} output to save")

        written = await save_output(path, self.output, confirm_overwrite)
        self.has_saved = True
        self.allow_save = False
        return written

    def _handle_data(self, chunk: str) -> None:
        self._aggregator.append(chunk)
        if self._on_data:
            self._on_data(chunk)

    def _handle_termination(self, outcome: TerminationOutcome) -> None:
        if self.registry is not None and self.handle is not None:
            self.registry.unregister(self.handle)

        self._aggregator.append(outcome.message)
        self.loading = False
        self.allow_save = True
        self.has_saved = False
        logger.info(f"{self.tool}: {outcome.message}")

        if self._on_finished:
            self._on_finished(outcome)
