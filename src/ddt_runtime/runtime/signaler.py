"""Exit status classification and exactly-once termination delivery.

ddt-runtime runtime module v0.1.0

Decision table, in priority order:
- exit_code == 0                          -> SUCCESS
- signal == SIGTERM and exit_code != 0    -> USER_CANCELLED
- anything else (including unknown status) -> FAILED

A SIGTERM from outside this package is also reported as USER_CANCELLED;
the classification only looks at the exit status.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from .aggregator import OutputAggregator
from .types import SIGTERM, Classification, ProcessHandle, TerminationOutcome

__all__ = [
    "TerminationSignaler",
    "TerminateCallback",
    "classify",
    "split_returncode",
]

logger = logging.getLogger(__name__)

TerminateCallback = Callable[[TerminationOutcome], None]


def classify(exit_code: int | None, signal: int | None) -> TerminationOutcome:
    """Map a raw exit status onto a TerminationOutcome."""
    if exit_code == 0:
        classification = Classification.SUCCESS
    elif signal == SIGTERM:
        classification = Classification.USER_CANCELLED
    else:
        classification = Classification.FAILED
    return TerminationOutcome(
        exit_code=exit_code,
        signal=signal,
        classification=classification,
    )


def split_returncode(returncode: int | None) -> tuple[int | None, int | None]:
    """Split an asyncio/subprocess returncode into (exit_code, signal).

    POSIX reports death by signal N as returncode -N.
    """
    if returncode is None:
        return None, None
    if returncode < 0:
        return None, -returncode
    return returncode, None


class TerminationSignaler:
    """Delivers the termination notification of one handle exactly once.

    On the first exit event the signaler clears the handle's pid, records
    the outcome on the handle, appends the outcome line to the run's
    aggregator and invokes the caller's callback. Later exit events for the
    same handle are logged and dropped.

    Attributes:
        handle: The handle this signaler owns the termination of
    """

    def __init__(
        self,
        handle: ProcessHandle,
        on_terminate: TerminateCallback,
        aggregator: OutputAggregator | None = None,
    ) -> None:
        self.handle = handle
        self._on_terminate = on_terminate
        self._aggregator = aggregator
        self._fired = False

    @property
    def fired(self) -> bool:
        return self._fired

    def fire_returncode(self, returncode: int | None) -> TerminationOutcome | None:
        """Fire from a raw returncode as reported by asyncio."""
        exit_code, signal = split_returncode(returncode)
        return self.fire(exit_code, signal)

    def fire(
        self,
        exit_code: int | None,
        signal: int | None,
    ) -> TerminationOutcome | None:
        """Handle the OS exit event.

        Returns:
            The outcome, or None if this handle already terminated
        """
        if self._fired or self.handle.terminated:
            logger.error(
                f"Ignoring duplicate exit event for {self.handle!r} "
                f"(exit_code={exit_code}, signal={signal})"
            )
            return None
        self._fired = True

        outcome = classify(exit_code, signal)
        pid = self.handle.pid
        self.handle.pid = ""
        self.handle.outcome = outcome

        logger.debug(
            f"Process terminated pid={pid} exit_code={exit_code} "
            f"signal={signal} classification={outcome.classification.value}"
        )

        if self._aggregator is not None:
            self._aggregator.append(outcome.message)

        try:
            self._on_terminate(outcome)
        except Exception as e:
            logger.warning(f"Error in termination callback for pid={pid}: {e}")
        finally:
            self.handle._finished.set()

        return outcome
