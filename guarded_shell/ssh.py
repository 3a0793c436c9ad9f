"""Pooled remote sessions.

SessionPool keeps at most one live session per connection id. Concurrent
first use of an id collapses into a single connection attempt: later callers
await the in-flight attempt instead of opening a second session.

The default transport drives a paramiko SSHClient from worker threads so the
event loop is never blocked by network I/O.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Set

import paramiko

from .capture import STDERR_TRUNCATION_MARKER, BoundedCapture
from .config import SSHConnectionConfig
from .errors import SessionError
from .types import ExecutionResult

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 32 * 1024
POLL_INTERVAL = 0.05


@dataclass
class RemoteOutput:
    stdout: str
    stderr: str
    exit_code: int
    truncated: bool = False


class RemoteTransport(Protocol):
    """A connection that can run commands on a remote host."""

    @property
    def is_alive(self) -> bool: ...

    async def connect(self) -> None: ...

    async def run(self, command: str, timeout: float, max_output: int) -> RemoteOutput: ...

    async def close(self) -> None: ...


TransportFactory = Callable[[SSHConnectionConfig], RemoteTransport]


class ParamikoTransport:
    """RemoteTransport backed by paramiko."""

    def __init__(self, config: SSHConnectionConfig):
        self._config = config
        self._client: Optional[paramiko.SSHClient] = None

    @property
    def is_alive(self) -> bool:
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    async def connect(self) -> None:
        self._client = await asyncio.to_thread(self._connect)

    def _connect(self) -> paramiko.SSHClient:
        config = self._config
        client = paramiko.SSHClient()
        client.load_system_host_keys()
        if config.strict_host_key_checking:
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.WarningPolicy())
        client.connect(
            hostname=config.host,
            port=config.port,
            username=config.username,
            password=config.password.get_secret_value() if config.password else None,
            key_filename=str(config.private_key_path.expanduser()) if config.private_key_path else None,
            passphrase=config.passphrase.get_secret_value() if config.passphrase else None,
            timeout=config.connect_timeout,
            banner_timeout=config.connect_timeout,
            auth_timeout=config.connect_timeout,
        )
        transport = client.get_transport()
        if transport is not None and config.keepalive_interval:
            transport.set_keepalive(config.keepalive_interval)
        return client

    async def run(self, command: str, timeout: float, max_output: int) -> RemoteOutput:
        return await asyncio.to_thread(self._run, command, timeout, max_output)

    def _run(self, command: str, timeout: float, max_output: int) -> RemoteOutput:
        if self._client is None:
            raise SessionError("Session is not connected")
        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            raise SessionError("Session is no longer active")

        stdout = BoundedCapture(max_output)
        stderr = BoundedCapture(max_output, STDERR_TRUNCATION_MARKER)
        out_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        err_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        deadline = time.monotonic() + timeout

        channel = transport.open_session(timeout=self._config.connect_timeout)
        try:
            channel.exec_command(command)
            channel.shutdown_write()
            while True:
                idle = True
                if channel.recv_ready():
                    stdout.write(out_decoder.decode(channel.recv(READ_CHUNK_SIZE)))
                    idle = False
                if channel.recv_stderr_ready():
                    stderr.write(err_decoder.decode(channel.recv_stderr(READ_CHUNK_SIZE)))
                    idle = False
                if (
                    idle
                    and channel.exit_status_ready()
                    and not channel.recv_ready()
                    and not channel.recv_stderr_ready()
                ):
                    break
                if time.monotonic() > deadline:
                    raise SessionError(f"Command timed out after {timeout:g} seconds")
                if idle:
                    time.sleep(POLL_INTERVAL)
            exit_code = channel.recv_exit_status()
        finally:
            channel.close()

        stdout.write(out_decoder.decode(b"", final=True))
        stderr.write(err_decoder.decode(b"", final=True))
        return RemoteOutput(
            stdout=stdout.getvalue(),
            stderr=stderr.getvalue(),
            exit_code=exit_code,
            truncated=stdout.truncated or stderr.truncated,
        )

    async def close(self) -> None:
        if self._client is not None:
            client, self._client = self._client, None
            await asyncio.to_thread(client.close)


@dataclass
class SessionHandle:
    connection_id: str
    transport: RemoteTransport
    config: SSHConnectionConfig
    created_at: float = field(default_factory=time.time)

    @property
    def is_alive(self) -> bool:
        return self.transport.is_alive


class SessionPool:
    """Registry of live remote sessions, one per connection id."""

    def __init__(
        self,
        transport_factory: TransportFactory = ParamikoTransport,
        close_timeout: float = 5.0,
    ):
        self._transport_factory = transport_factory
        self._close_timeout = close_timeout
        self._handles: Dict[str, SessionHandle] = {}
        self._pending: Dict[str, "asyncio.Future[SessionHandle]"] = {}
        # Ids closed while their connection attempt was still running.
        self._discarded: Set[str] = set()

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._handles

    @property
    def connection_ids(self) -> List[str]:
        return list(self._handles)

    async def get_or_create(
        self,
        connection_id: str,
        config: SSHConnectionConfig,
    ) -> SessionHandle:
        """Return the live session for `connection_id`, connecting on first use.

        Raises:
            SessionError: If the connection attempt fails
        """
        handle = self._handles.get(connection_id)
        if handle is not None and handle.is_alive:
            return handle

        # No await between the lookup and registering the attempt.
        pending = self._pending.get(connection_id)
        if pending is None:
            stale = self._handles.pop(connection_id, None)
            pending = asyncio.ensure_future(self._open(connection_id, config, stale))
            self._pending[connection_id] = pending
        return await asyncio.shield(pending)

    async def _open(
        self,
        connection_id: str,
        config: SSHConnectionConfig,
        stale: Optional[SessionHandle] = None,
    ) -> SessionHandle:
        try:
            if stale is not None:
                logger.info(f"Session {connection_id} is no longer active, reconnecting")
                await self._close_quietly(stale)
            logger.info(f"Connecting session {connection_id} to {config.username}@{config.host}:{config.port}")
            transport = self._transport_factory(config)
            try:
                await transport.connect()
            except (paramiko.SSHException, OSError) as e:
                raise SessionError(f"Failed to connect to {connection_id}: {e}") from e
            handle = SessionHandle(connection_id, transport, config)
            if connection_id in self._discarded:
                await self._close_quietly(handle)
                raise SessionError(f"Session {connection_id} was closed while connecting")
            self._handles[connection_id] = handle
            return handle
        finally:
            self._pending.pop(connection_id, None)
            self._discarded.discard(connection_id)

    async def execute(
        self,
        handle: SessionHandle,
        command: str,
        timeout: float,
        max_output: int,
    ) -> ExecutionResult:
        """Run an already-validated command on the session.

        Raises:
            SessionError: If the remote execution fails
        """
        logger.info(f"Executing on {handle.connection_id}: {command!r}")
        try:
            output = await handle.transport.run(command, timeout, max_output)
        except (paramiko.SSHException, OSError) as e:
            if not handle.is_alive:
                self._handles.pop(handle.connection_id, None)
            raise SessionError(str(e) or type(e).__name__) from e
        return ExecutionResult(
            stdout=output.stdout,
            stderr=output.stderr,
            exit_code=output.exit_code,
            truncated=output.truncated,
        )

    async def close(self, connection_id: str) -> bool:
        """Close and forget the session for `connection_id`.

        A connection attempt still in flight is closed as soon as it
        completes. Unknown ids are a no-op. Returns True if a session (or
        attempt) was closed.
        """
        pending = self._pending.get(connection_id)
        if pending is not None:
            self._discarded.add(connection_id)
            await self._settle([pending])
        handle = self._handles.pop(connection_id, None)
        if handle is None:
            return pending is not None
        try:
            await self._close_handle(handle)
        except (asyncio.TimeoutError, paramiko.SSHException, OSError) as e:
            raise SessionError(f"Failed to close session {connection_id}: {e!r}") from e
        logger.info(f"Closed session {connection_id}")
        return True

    async def _close_handle(self, handle: SessionHandle) -> None:
        await asyncio.wait_for(handle.transport.close(), self._close_timeout)

    async def _close_quietly(self, handle: SessionHandle) -> None:
        try:
            await self._close_handle(handle)
        except Exception as e:
            logger.warning(f"Error closing session {handle.connection_id}: {e!r}")

    async def _settle(
        self,
        attempts: Iterable["asyncio.Future[SessionHandle]"],
        cancel: bool = False,
    ) -> None:
        """Wait up to close_timeout for connection attempts to finish.

        Attempts still running afterwards are cancelled when `cancel` is set.
        """
        attempts = list(attempts)
        if not attempts:
            return
        _, running = await asyncio.wait(attempts, timeout=self._close_timeout)
        if cancel:
            for attempt in running:
                logger.warning("Cancelling a connection attempt still running at close")
                attempt.cancel()

    async def close_all(self) -> None:
        """Close every session, including ones still connecting.

        A failing close does not stop the others.
        """
        self._discarded.update(self._pending)
        await self._settle(self._pending.values(), cancel=True)
        for connection_id in list(self._handles):
            handle = self._handles.pop(connection_id)
            await self._close_quietly(handle)
        logger.debug("All sessions closed")


__all__ = [
    "ParamikoTransport",
    "RemoteOutput",
    "RemoteTransport",
    "SessionHandle",
    "SessionPool",
    "TransportFactory",
]
