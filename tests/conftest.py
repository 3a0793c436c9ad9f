"""Shared test fixtures for the guarded-shell test suite.

Local execution tests use the running Python interpreter as the "shell"
(`python -c COMMAND`), so they work anywhere the suite runs. Remote tests use
FakeTransport instead of a real SSH server.
"""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, List, Sequence

import pytest

from guarded_shell.config import (
    SSHConnectionConfig,
    SSHSettings,
    SecurityPolicy,
    ServerConfig,
    ShellProfile,
)
from guarded_shell.execution import SubprocessSpawner
from guarded_shell.ssh import RemoteOutput


@pytest.fixture
def anyio_backend():
    return "asyncio"


class RecordingSpawner(SubprocessSpawner):
    """SubprocessSpawner that remembers every spawn attempt."""

    def __init__(self) -> None:
        super().__init__()
        self.calls: List[Sequence[str]] = []
        self.processes: List[Any] = []

    async def spawn(self, executable: str, args: Sequence[str], cwd: Path) -> Any:
        self.calls.append([executable, *args])
        process = await super().spawn(executable, args, cwd)
        self.processes.append(process)
        return process


class FakeTransport:
    """In-memory RemoteTransport."""

    def __init__(self, config: SSHConnectionConfig, factory: "FakeTransportFactory"):
        self.config = config
        self.factory = factory
        self.alive = False
        self.closed = False
        self.commands: List[str] = []

    @property
    def is_alive(self) -> bool:
        return self.alive

    async def connect(self) -> None:
        self.factory.connects += 1
        await asyncio.sleep(self.factory.connect_delay)
        if self.factory.fail_connect:
            raise OSError("connection refused")
        self.alive = True

    async def run(self, command: str, timeout: float, max_output: int) -> RemoteOutput:
        if self.factory.fail_run:
            self.alive = False
            raise OSError("socket closed")
        self.commands.append(command)
        return RemoteOutput(stdout=f"ran {command}\n", stderr="", exit_code=0)

    async def close(self) -> None:
        if self.factory.close_delay:
            await asyncio.sleep(self.factory.close_delay)
        if self.factory.fail_close:
            raise OSError("close failed")
        self.alive = False
        self.closed = True


class FakeTransportFactory:
    def __init__(
        self,
        fail_connect: bool = False,
        fail_run: bool = False,
        fail_close: bool = False,
        close_delay: float = 0,
        connect_delay: float = 0.01,
    ):
        self.fail_connect = fail_connect
        self.fail_run = fail_run
        self.fail_close = fail_close
        self.close_delay = close_delay
        self.connect_delay = connect_delay
        self.connects = 0
        self.transports: List[FakeTransport] = []

    def __call__(self, config: SSHConnectionConfig) -> FakeTransport:
        transport = FakeTransport(config, self)
        self.transports.append(transport)
        return transport


@pytest.fixture
def python_shell() -> ShellProfile:
    """A posix-syntax profile that runs commands as `python -c COMMAND`."""
    return ShellProfile(command=sys.executable, args=("-c",), syntax="posix")


@pytest.fixture
def policy(tmp_path) -> SecurityPolicy:
    return SecurityPolicy(
        allowed_paths=(str(tmp_path),),
        output_directory=tmp_path / "output",
        command_timeout=10,
    )


@pytest.fixture
def ssh_connection() -> SSHConnectionConfig:
    return SSHConnectionConfig(host="build.example.com", username="deploy", password="secret")


@pytest.fixture
def server_config(policy, python_shell, ssh_connection) -> ServerConfig:
    return ServerConfig(
        security=policy,
        shells={
            "python": python_shell,
            "cmd": ShellProfile(command="cmd.exe", args=("/c",), syntax="cmd"),
            "fish": ShellProfile(enabled=False, command="fish", args=("-c",)),
        },
        ssh=SSHSettings(
            enabled=True,
            validation_shell="python",
            connections={"build": ssh_connection},
        ),
    )


@pytest.fixture
def spawner() -> RecordingSpawner:
    return RecordingSpawner()


@pytest.fixture
def transport_factory() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest.fixture
def make_transport_factory():
    return FakeTransportFactory
