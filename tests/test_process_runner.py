"""ProcessRunner unit tests.

Test coverage:
- Spawn and streaming (stdout, stderr, ordering, partial and long lines)
- Exactly-once termination and pid clearing
- Background children holding the output pipes after exit
- Asynchronous callback delivery
- Spawn errors (missing executable, elevation refused)
- Elevated spawn through a fake wrapper
- Shutdown cleanup (aclose)
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import sys
from pathlib import Path

import pytest

from ddt_runtime.runtime.aggregator import OutputAggregator
from ddt_runtime.runtime.cancellation import CancellationController
from ddt_runtime.runtime.errors import SpawnError
from ddt_runtime.runtime.process_runner import (
    IS_WINDOWS,
    ProcessRunner,
    run_command,
)
from ddt_runtime.runtime.types import Classification, Command, TerminationOutcome

from fixtures.fake_process import FakeProcess, install

pytestmark = pytest.mark.skipif(IS_WINDOWS, reason="POSIX shell commands")


class Recorder:
    """Collects callbacks of one run."""

    def __init__(self) -> None:
        self.chunks: list[str] = []
        self.outcomes: list[TerminationOutcome] = []
        self.events: list[str] = []

    def on_data(self, chunk: str) -> None:
        self.chunks.append(chunk)
        self.events.append("data")

    def on_terminate(self, outcome: TerminationOutcome) -> None:
        self.outcomes.append(outcome)
        self.events.append("terminate")


async def spawn_and_wait(runner: ProcessRunner, command: Command, rec: Recorder, **kwargs):
    handle, initial = await runner.spawn(command, rec.on_data, rec.on_terminate, **kwargs)
    outcome = await asyncio.wait_for(handle.wait(), timeout=5)
    return handle, initial, outcome


# =============================================================================
# Basic Execution Tests
# =============================================================================


class TestBasicExecution:
    """Test spawning and streaming real processes."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_echo_hello(self, runner: ProcessRunner):
        """echo hello -> output then a Success line, pid cleared, no further events."""
        rec = Recorder()
        agg = OutputAggregator()
        handle, initial, outcome = await spawn_and_wait(
            runner, Command("echo", ("hello",)), rec, aggregator=agg
        )

        assert initial == ""
        assert rec.chunks == ["hello"]
        assert outcome.classification is Classification.SUCCESS
        assert agg.text == "hello\nProcess completed successfully."
        assert handle.pid == ""

        await asyncio.sleep(0.1)
        assert rec.outcomes == [outcome]
        assert rec.events[-1] == "terminate"

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_pid_is_set_while_running(self, runner: ProcessRunner):
        rec = Recorder()
        handle, _ = await runner.spawn(
            Command("sh", ("-c", "sleep 0.2")), rec.on_data, rec.on_terminate
        )
        assert handle.pid.isdigit()
        assert handle.is_live
        assert handle in runner.live_handles
        await asyncio.wait_for(handle.wait(), timeout=5)
        assert handle.pid == ""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_callbacks_never_run_before_spawn_returns(self, runner: ProcessRunner):
        returned = False
        seen: list[bool] = []

        handle, _ = await runner.spawn(
            Command("echo", ("x",)),
            on_data=lambda _chunk: seen.append(returned),
            on_terminate=lambda _outcome: seen.append(returned),
        )
        returned = True
        await asyncio.wait_for(handle.wait(), timeout=5)

        assert seen == [True, True]

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_lines_arrive_in_order(self, runner: ProcessRunner):
        rec = Recorder()
        await spawn_and_wait(runner, Command("sh", ("-c", "printf 'a\\nb\\nc\\n'")), rec)
        assert rec.chunks == ["a", "b", "c"]

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_stderr_is_streamed(self, runner: ProcessRunner):
        rec = Recorder()
        await spawn_and_wait(runner, Command("sh", ("-c", "echo out; echo err >&2")), rec)
        assert sorted(rec.chunks) == ["err", "out"]

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_trailing_partial_line(self, runner: ProcessRunner):
        rec = Recorder()
        await spawn_and_wait(runner, Command("printf", ("no newline",)), rec)
        assert rec.chunks == ["no newline"]

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_crlf_is_stripped(self, runner: ProcessRunner):
        rec = Recorder()
        await spawn_and_wait(runner, Command("printf", ("dos\\r\\n",)), rec)
        assert rec.chunks == ["dos"]

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_long_line(self, runner: ProcessRunner):
        """Lines longer than the StreamReader limit are delivered whole."""
        rec = Recorder()
        script = "head -c 100000 /dev/zero | tr '\\0' x; echo"
        await spawn_and_wait(runner, Command("sh", ("-c", script)), rec)
        assert rec.chunks == ["x" * 100000]

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_large_output(self, runner: ProcessRunner):
        rec = Recorder()
        script = "i=1; while [ $i -le 1000 ]; do echo line$i; i=$((i+1)); done"
        await spawn_and_wait(runner, Command("sh", ("-c", script)), rec)
        assert rec.chunks == [f"line{i}" for i in range(1, 1001)]

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_no_output(self, runner: ProcessRunner):
        rec = Recorder()
        _, _, outcome = await spawn_and_wait(runner, Command("true"), rec)
        assert rec.chunks == []
        assert rec.outcomes == [outcome]
        assert outcome.succeeded

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_nonzero_exit_is_failed_not_raised(self, runner: ProcessRunner):
        rec = Recorder()
        _, _, outcome = await spawn_and_wait(runner, Command("sh", ("-c", "exit 3")), rec)
        assert outcome.classification is Classification.FAILED
        assert outcome.exit_code == 3
        assert outcome.signal is None

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_working_directory(self, tmp_path: Path):
        runner = ProcessRunner(cwd=tmp_path)
        rec = Recorder()
        await spawn_and_wait(runner, Command("pwd"), rec)
        assert rec.chunks and tmp_path.name in rec.chunks[0]

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_custom_environment(self):
        env = {**os.environ, "DDT_TEST_VAR": "test_value_123"}
        runner = ProcessRunner(env=env)
        rec = Recorder()
        await spawn_and_wait(runner, Command("sh", ("-c", "echo $DDT_TEST_VAR")), rec)
        assert rec.chunks == ["test_value_123"]

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_new_session(self, runner: ProcessRunner):
        """The child runs in its own session so its group can be signalled."""
        rec = Recorder()
        await spawn_and_wait(
            runner,
            Command(sys.executable, ("-c", "import os; print(os.getsid(0))")),
            rec,
        )
        assert rec.chunks[0] != str(os.getsid(0))

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_independent_runs(self, runner: ProcessRunner):
        first, second = Recorder(), Recorder()
        h1, _ = await runner.spawn(Command("echo", ("one",)), first.on_data, first.on_terminate)
        h2, _ = await runner.spawn(Command("echo", ("two",)), second.on_data, second.on_terminate)
        await asyncio.wait_for(asyncio.gather(h1.wait(), h2.wait()), timeout=5)

        assert first.chunks == ["one"]
        assert second.chunks == ["two"]
        assert len(first.outcomes) == len(second.outcomes) == 1


# =============================================================================
# Fake Process Tests
# =============================================================================


class TestWithFakeProcess:
    """Deterministic ordering and exactly-once checks."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_exactly_one_termination(self, monkeypatch, runner: ProcessRunner):
        proc = FakeProcess(pid=555)
        install(monkeypatch, proc)
        rec = Recorder()

        handle, _ = await runner.spawn(Command("tool"), rec.on_data, rec.on_terminate)
        assert handle.pid == "555"

        proc.emit(b"only line\n")
        proc.exit(0)
        await asyncio.wait_for(handle.wait(), timeout=5)
        await asyncio.sleep(0.05)

        assert rec.chunks == ["only line"]
        assert len(rec.outcomes) == 1
        assert rec.events == ["data", "terminate"]
        assert handle.pid == ""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_order_survives_delivery_jitter(self, monkeypatch, runner: ProcessRunner):
        proc = FakeProcess()
        install(monkeypatch, proc)
        rec = Recorder()
        agg = OutputAggregator()

        handle, _ = await runner.spawn(
            Command("tool"), rec.on_data, rec.on_terminate, aggregator=agg
        )
        proc.emit(b"a\n")
        await asyncio.sleep(0.01)
        proc.emit(b"b\nc")
        await asyncio.sleep(0)
        proc.emit(b"\n")
        await asyncio.sleep(0.02)
        proc.exit(0)
        await asyncio.wait_for(handle.wait(), timeout=5)

        assert rec.chunks == ["a", "b", "c"]
        assert agg.text == "a\nb\nc\nProcess completed successfully."

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_split_utf8_sequence(self, monkeypatch, runner: ProcessRunner):
        proc = FakeProcess()
        install(monkeypatch, proc)
        rec = Recorder()

        handle, _ = await runner.spawn(Command("tool"), rec.on_data, rec.on_terminate)
        data = "héllo\n".encode()
        proc.emit(data[:2])
        await asyncio.sleep(0.01)
        proc.emit(data[2:])
        proc.exit(0)
        await asyncio.wait_for(handle.wait(), timeout=5)

        assert rec.chunks == ["héllo"]

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_killed_by_signal(self, monkeypatch, runner: ProcessRunner):
        proc = FakeProcess()
        install(monkeypatch, proc)
        rec = Recorder()

        handle, _ = await runner.spawn(Command("tool"), rec.on_data, rec.on_terminate)
        proc.exit(-15)
        outcome = await asyncio.wait_for(handle.wait(), timeout=5)

        assert outcome.classification is Classification.USER_CANCELLED
        assert outcome.exit_code is None
        assert outcome.signal == 15

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_pipes_held_open_after_exit(self, monkeypatch):
        """A grandchild holding the pipe must not delay termination forever."""
        runner = ProcessRunner(drain_timeout=0.1)
        proc = FakeProcess()
        install(monkeypatch, proc)
        rec = Recorder()

        handle, _ = await runner.spawn(Command("tool"), rec.on_data, rec.on_terminate)
        proc.emit(b"before exit\n")
        await asyncio.sleep(0.01)
        proc.exit(0, close_pipes=False)

        outcome = await asyncio.wait_for(handle.wait(), timeout=5)
        proc.emit(b"late line\n")
        await asyncio.sleep(0.05)

        assert outcome.succeeded
        assert rec.chunks == ["before exit"]
        assert rec.events[-1] == "terminate"

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_data_callback_error_is_contained(self, monkeypatch, runner: ProcessRunner):
        proc = FakeProcess()
        install(monkeypatch, proc)
        outcomes: list[TerminationOutcome] = []

        def broken(_chunk: str) -> None:
            raise ValueError("render failed")

        handle, _ = await runner.spawn(Command("tool"), broken, outcomes.append)
        proc.emit(b"x\n")
        proc.exit(0)
        await asyncio.wait_for(handle.wait(), timeout=5)

        assert len(outcomes) == 1


# =============================================================================
# Background Child Tests
# =============================================================================


class TestBackgroundChild:
    """A background child keeps the output pipes open after the command exits."""

    COMMAND = Command("sh", ("-c", "sleep 5 & echo hi"))

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_notice_within_drain_timeout(self, runner: ProcessRunner):
        rec = Recorder()
        loop = asyncio.get_running_loop()
        handle, _ = await runner.spawn(self.COMMAND, rec.on_data, rec.on_terminate)
        pgid = int(handle.pid)
        started = loop.time()
        try:
            outcome = await asyncio.wait_for(handle.wait(), timeout=4)
            elapsed = loop.time() - started
        finally:
            with contextlib.suppress(ProcessLookupError):
                os.killpg(pgid, signal.SIGTERM)

        assert elapsed < runner.drain_timeout + 1.5
        assert outcome.succeeded
        assert rec.chunks == ["hi"]
        assert handle.pid == ""

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_cancel_after_leader_exited(self):
        """The handle stays cancellable while the drain window is open."""
        runner = ProcessRunner(drain_timeout=3.0, term_timeout=0.5, kill_timeout=0.3)
        rec = Recorder()
        seen = asyncio.Event()

        def on_data(chunk: str) -> None:
            rec.on_data(chunk)
            seen.set()

        handle, _ = await runner.spawn(self.COMMAND, on_data, rec.on_terminate)
        pgid = int(handle.pid)
        try:
            await asyncio.wait_for(seen.wait(), timeout=5)
            # sh has exited; sleep still holds the pipes
            await asyncio.sleep(0.3)
            assert handle.is_live

            await CancellationController().cancel(handle)
            outcome = await asyncio.wait_for(handle.wait(), timeout=2)
        finally:
            with contextlib.suppress(ProcessLookupError):
                os.killpg(pgid, signal.SIGTERM)

        assert outcome.succeeded
        assert len(rec.outcomes) == 1
        assert handle.pid == ""


# =============================================================================
# Spawn Error Tests
# =============================================================================


class TestSpawnErrors:
    """Test transport-level failures."""

    @pytest.mark.asyncio
    async def test_nonexistent_command(self, runner: ProcessRunner):
        rec = Recorder()
        with pytest.raises(SpawnError) as exc_info:
            await runner.spawn(Command("nonexistent_command_xyz_123"), rec.on_data, rec.on_terminate)

        assert "executable not found" in str(exc_info.value)
        assert exc_info.value.command.program == "nonexistent_command_xyz_123"
        await asyncio.sleep(0.05)
        assert rec.outcomes == []
        assert runner.live_handles == []

    @pytest.mark.asyncio
    async def test_not_executable(self, tmp_path: Path, runner: ProcessRunner):
        script = tmp_path / "plain.txt"
        script.write_text("echo hi\n")
        with pytest.raises(SpawnError):
            await runner.spawn(Command(str(script)), lambda _: None, lambda _: None)


# =============================================================================
# Elevation Tests
# =============================================================================


class TestElevatedSpawn:
    """Test elevated spawn through a fake wrapper."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_elevated_run(self, fake_wrapper):
        runner = ProcessRunner(elevation=fake_wrapper.elevation)
        rec = Recorder()
        handle, _ = await runner.spawn(
            Command("echo", ("elevated hello",), elevated=True),
            rec.on_data,
            rec.on_terminate,
        )
        assert handle.elevated
        assert handle.pid.isdigit()

        outcome = await asyncio.wait_for(handle.wait(), timeout=5)

        # the readiness marker is not part of the output
        assert rec.chunks == ["elevated hello"]
        assert outcome.succeeded
        assert len(fake_wrapper.calls) == 1
        assert fake_wrapper.calls[0].startswith("sh -c")

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_elevation_declined(self, denying_wrapper):
        runner = ProcessRunner(elevation=denying_wrapper.elevation)
        rec = Recorder()

        with pytest.raises(SpawnError) as exc_info:
            await runner.spawn(
                Command("echo", ("never",), elevated=True), rec.on_data, rec.on_terminate
            )

        assert "not authorized" in exc_info.value.reason
        assert "Not authorized" in exc_info.value.reason
        await asyncio.sleep(0.05)
        assert rec.chunks == []
        assert rec.outcomes == []

    @pytest.mark.asyncio
    async def test_elevated_missing_program(self, fake_wrapper):
        runner = ProcessRunner(elevation=fake_wrapper.elevation)
        with pytest.raises(SpawnError):
            await runner.spawn(
                Command("nonexistent_command_xyz_123", elevated=True),
                lambda _: None,
                lambda _: None,
            )
        assert fake_wrapper.calls == []

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_overlong_wrapper_output(self, noisy_wrapper, monkeypatch):
        """A line over the reader limit fails the spawn and stops the wrapper."""
        spawned = []
        real_exec = asyncio.create_subprocess_exec

        async def recording_exec(*argv, **kwargs):
            process = await real_exec(*argv, **kwargs)
            spawned.append(process)
            return process

        monkeypatch.setattr(asyncio, "create_subprocess_exec", recording_exec)
        runner = ProcessRunner(elevation=noisy_wrapper.elevation)
        rec = Recorder()

        with pytest.raises(SpawnError) as exc_info:
            await runner.spawn(Command("echo", elevated=True), rec.on_data, rec.on_terminate)

        assert "unexpected output" in exc_info.value.reason
        assert len(spawned) == 1
        returncode = await asyncio.wait_for(spawned[0].wait(), timeout=5)
        assert returncode == -signal.SIGTERM
        assert rec.outcomes == []
        assert runner.live_handles == []

    @pytest.mark.asyncio
    async def test_missing_wrapper(self):
        from ddt_runtime.runtime.elevation import Elevation

        runner = ProcessRunner(elevation=Elevation(program="/nonexistent/pkexec"))
        with pytest.raises(SpawnError) as exc_info:
            await runner.spawn(Command("echo", elevated=True), lambda _: None, lambda _: None)
        assert "/nonexistent/pkexec" in str(exc_info.value)


# =============================================================================
# Convenience and Shutdown Tests
# =============================================================================


class TestRunCommand:
    """Test the run-to-completion helper."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_run_command(self, runner: ProcessRunner):
        outcome, text = await run_command(Command("sh", ("-c", "echo one; echo two")), runner=runner)
        assert outcome.succeeded
        assert text == "one\ntwo\nProcess completed successfully."

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_run_command_failure(self, runner: ProcessRunner):
        outcome, text = await run_command(Command("sh", ("-c", "exit 1")), runner=runner)
        assert outcome.classification is Classification.FAILED
        assert text.endswith("exit code: 1 and signal code: unknown")

    @pytest.mark.asyncio
    async def test_run_command_spawn_error(self):
        with pytest.raises(SpawnError):
            await run_command(Command("nonexistent_command_xyz_123"))


class TestAclose:
    """Test shutdown cleanup."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_aclose_terminates_and_notifies(self, runner: ProcessRunner):
        rec = Recorder()
        handle, _ = await runner.spawn(Command("sleep", ("30",)), rec.on_data, rec.on_terminate)

        await runner.aclose()

        assert handle.pid == ""
        assert len(rec.outcomes) == 1
        assert rec.outcomes[0].signal == 15
        assert runner.live_handles == []

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_aclose_without_runs(self, runner: ProcessRunner):
        await runner.aclose()
