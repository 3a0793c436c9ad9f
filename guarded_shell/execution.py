"""Local command execution under size and time limits.

This module provides:
- SubprocessSpawner: launches a shell with piped output and kills it on demand
- ExecutionEngine: runs a validated command through a shell profile
- format_result: renders an ExecutionResult as tool output text

One execution moves through
Idle -> Spawning -> Running -> {Completed | TimedOut | SpawnFailed | StreamFault}
-> Finalized. Natural completion and the timeout timer race to finalize a
run; `ProcessRun.finalize()` lets only the first one through.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import subprocess
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Sequence

from .capture import (
    STDERR_TRUNCATION_MARKER,
    BoundedCapture,
    SpillingCapture,
    format_size_limit,
)
from .config import SecurityPolicy, ShellProfile
from .errors import CommandTimeoutError, SpawnError, StreamError
from .policy import PolicyValidator
from .retention import sweep_output_files
from .types import ABNORMAL_EXIT_CODE, ExecutionResult

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024

# Seconds to wait for streams to close after a timeout kill
KILL_GRACE_SECONDS = 5.0


class ExecutionState(str, Enum):
    IDLE = "idle"
    SPAWNING = "spawning"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    SPAWN_FAILED = "spawn_failed"
    STREAM_FAULT = "stream_fault"
    FINALIZED = "finalized"


class ProcessRun:
    """State of one execution; `finalized` is the single authority on its outcome."""

    def __init__(self, command: str):
        self.command = command
        self.state = ExecutionState.IDLE
        self.outcome: Optional[ExecutionState] = None
        self.returncode: Optional[int] = None

    @property
    def finalized(self) -> bool:
        return self.outcome is not None

    def advance(self, state: ExecutionState) -> None:
        if not self.finalized:
            self.state = state

    def finalize(self, outcome: ExecutionState) -> bool:
        """Commit `outcome` unless another one already won. Returns True if committed."""
        if self.finalized:
            return False
        self.outcome = outcome
        self.state = ExecutionState.FINALIZED
        return True


class SubprocessSpawner:
    """Launches shell processes with asyncio.

    On POSIX the child leads a new session so that terminating it also kills
    everything the shell started. On Windows the tree is killed with
    `taskkill /T`, falling back to killing only the shell if that fails.
    """

    def __init__(self) -> None:
        self._new_session = os.name == "posix"
        self._windows = os.name == "nt"

    async def spawn(self, executable: str, args: Sequence[str], cwd: Path) -> Any:
        return await asyncio.create_subprocess_exec(
            executable,
            *args,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=self._new_session,
        )

    def terminate(self, process: Any) -> None:
        try:
            if self._new_session:
                os.killpg(process.pid, signal.SIGKILL)
            elif self._windows and self._kill_tree(process.pid):
                return
            else:
                process.kill()
        except ProcessLookupError:
            pass

    @staticmethod
    def _kill_tree(pid: int) -> bool:
        try:
            completed = subprocess.run(
                ["taskkill", "/PID", str(pid), "/T", "/F"],
                capture_output=True,
                text=True,
                timeout=KILL_GRACE_SECONDS,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"taskkill failed for pid {pid}: {e}")
            return False
        if completed.returncode != 0:
            logger.warning(f"taskkill failed for pid {pid}: {completed.stderr.strip()}")
            return False
        return True


async def _pump(stream: asyncio.StreamReader, sink: BoundedCapture) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        data = await stream.read(READ_CHUNK_SIZE)
        if not data:
            break
        await _write(sink, decoder.decode(data))
    await _write(sink, decoder.decode(b"", final=True))


async def _write(sink: BoundedCapture, text: str) -> None:
    # Spool file I/O runs off the event loop.
    if sink.writes_to_file(text):
        await asyncio.to_thread(sink.write, text)
    else:
        sink.write(text)


class ExecutionEngine:
    """Runs validated commands as local processes."""

    def __init__(
        self,
        validator: PolicyValidator,
        spawner: Optional[SubprocessSpawner] = None,
    ):
        self._validator = validator
        self._policy: SecurityPolicy = validator.policy
        self._spawner = spawner or SubprocessSpawner()

    async def execute(
        self,
        profile: ShellProfile,
        command: str,
        working_dir: Optional[str] = None,
    ) -> ExecutionResult:
        """Run an already-validated command through `profile`.

        Args:
            profile: Shell profile to launch
            command: Command text passed as the shell's final argument
            working_dir: Directory to run in (defaults to the current directory)

        Returns:
            ExecutionResult with captured output and exit code

        Raises:
            PolicyError: If the working directory is outside the allowed paths
            SpawnError: If the shell cannot be started
            StreamError: If reading the output streams fails
            CommandTimeoutError: If the command outlives the configured timeout
        """
        cwd = self._validator.resolve_working_dir(working_dir)
        run = ProcessRun(command)
        run.advance(ExecutionState.SPAWNING)
        logger.info(f"Executing via {profile.command}: {command!r} in {cwd}")
        try:
            process = await self._spawner.spawn(profile.command, [*profile.args, command], cwd)
        except (OSError, ValueError) as e:
            run.finalize(ExecutionState.SPAWN_FAILED)
            raise SpawnError(
                f"Failed to start shell process: {e}. "
                "Consult the server admin for configuration changes (shells)."
            ) from e

        if process.stdout is None or process.stderr is None:
            run.finalize(ExecutionState.STREAM_FAULT)
            self._spawner.terminate(process)
            raise StreamError("Failed to initialize shell process streams")

        run.advance(ExecutionState.RUNNING)
        stdout = self._stdout_capture()
        stderr = BoundedCapture(self._policy.max_output_size, STDERR_TRUNCATION_MARKER)
        try:
            await self._supervise(run, process, stdout, stderr)
        finally:
            await asyncio.to_thread(stdout.close)

        if run.outcome is ExecutionState.TIMED_OUT:
            raise CommandTimeoutError(
                f"Command execution timed out after {self._policy.command_timeout:g} seconds. "
                "Consult the server admin for configuration changes (command_timeout)."
            )

        output_file = getattr(stdout, "output_file", None)
        if output_file is not None:
            await asyncio.to_thread(
                sweep_output_files,
                self._policy.effective_output_directory,
                self._policy.output_file_retention_hours,
            )
        returncode = run.returncode
        return ExecutionResult(
            stdout=stdout.getvalue(),
            stderr=stderr.getvalue(),
            exit_code=returncode if returncode is not None and returncode >= 0 else ABNORMAL_EXIT_CODE,
            truncated=stdout.truncated or stderr.truncated,
            output_file=str(output_file) if output_file is not None else None,
            working_directory=str(cwd),
        )

    def _stdout_capture(self) -> BoundedCapture:
        if self._policy.enable_output_files:
            return SpillingCapture(
                self._policy.max_output_size,
                self._policy.effective_output_directory,
            )
        return BoundedCapture(self._policy.max_output_size)

    async def _supervise(
        self,
        run: ProcessRun,
        process: Any,
        stdout: BoundedCapture,
        stderr: BoundedCapture,
    ) -> None:
        loop = asyncio.get_running_loop()
        drain = loop.create_task(self._drain(run, process, stdout, stderr))
        expired = loop.create_future()

        def expire() -> None:
            if run.finalize(ExecutionState.TIMED_OUT):
                logger.warning(f"Command timed out, killing pid {process.pid}: {run.command!r}")
                self._spawner.terminate(process)
                expired.set_result(None)

        timer = loop.call_later(self._policy.command_timeout, expire)
        try:
            await asyncio.wait({drain, expired}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            if run.finalize(ExecutionState.STREAM_FAULT):
                self._spawner.terminate(process)
            drain.cancel()
            raise
        finally:
            timer.cancel()

        if run.outcome is ExecutionState.TIMED_OUT:
            done, _ = await asyncio.wait({drain}, timeout=KILL_GRACE_SECONDS)
            if not done:
                drain.cancel()
            elif not drain.cancelled():
                drain.exception()
            return
        drain.result()

    async def _drain(
        self,
        run: ProcessRun,
        process: Any,
        stdout: BoundedCapture,
        stderr: BoundedCapture,
    ) -> None:
        try:
            await asyncio.gather(_pump(process.stdout, stdout), _pump(process.stderr, stderr))
            returncode = await process.wait()
        except OSError as e:
            if run.finalize(ExecutionState.STREAM_FAULT):
                self._spawner.terminate(process)
            raise StreamError(f"Shell process error: {e}") from e
        if run.finalize(ExecutionState.COMPLETED):
            run.returncode = returncode


def _truncation_note(result: ExecutionResult, policy: SecurityPolicy) -> str:
    limit = format_size_limit(policy.max_output_size)
    if result.output_file:
        return f"\n\nOutput exceeded {limit} limit and was saved to:\n{result.output_file}"
    note = f"\n\nOutput exceeded {limit} limit and was truncated."
    if not policy.enable_output_files:
        note += (
            "\nTo save large outputs to files, enable 'enable_output_files' in your config"
            f"\nOutputs will be saved to: {policy.effective_output_directory}"
        )
    return note


def format_result(result: ExecutionResult, policy: SecurityPolicy) -> str:
    """Render a result as the text returned to the caller."""
    if result.succeeded:
        message = result.stdout or "Command completed successfully (no output)"
    else:
        message = f"Command failed with exit code {result.exit_code}\n"
        if result.stderr:
            message += f"Error output:\n{result.stderr}\n"
        if result.stdout:
            message += f"Standard output:\n{result.stdout}"
        if not result.stderr and not result.stdout:
            message += "No error message or output was provided"
    if result.truncated:
        message += _truncation_note(result, policy)
    return message


__all__ = [
    "ExecutionEngine",
    "ExecutionState",
    "ProcessRun",
    "SubprocessSpawner",
    "format_result",
]
