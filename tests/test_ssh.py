"""Tests for the remote session pool."""
from __future__ import annotations

import asyncio

import pytest

from guarded_shell.capture import STDERR_TRUNCATION_MARKER, STDOUT_TRUNCATION_MARKER
from guarded_shell.errors import SessionError
from guarded_shell.ssh import ParamikoTransport, SessionPool


class TestGetOrCreate:
    @pytest.mark.anyio
    async def test_concurrent_first_use_connects_once(self, transport_factory, ssh_connection):
        pool = SessionPool(transport_factory)
        first, second = await asyncio.gather(
            pool.get_or_create("build", ssh_connection),
            pool.get_or_create("build", ssh_connection),
        )
        assert first is second
        assert transport_factory.connects == 1
        assert len(transport_factory.transports) == 1

    @pytest.mark.anyio
    async def test_live_handle_reused(self, transport_factory, ssh_connection):
        pool = SessionPool(transport_factory)
        first = await pool.get_or_create("build", ssh_connection)
        second = await pool.get_or_create("build", ssh_connection)
        assert first is second
        assert transport_factory.connects == 1

    @pytest.mark.anyio
    async def test_dead_handle_replaced(self, transport_factory, ssh_connection):
        pool = SessionPool(transport_factory)
        first = await pool.get_or_create("build", ssh_connection)
        first.transport.alive = False
        second = await pool.get_or_create("build", ssh_connection)
        assert second is not first
        assert first.transport.closed
        assert transport_factory.connects == 2

    @pytest.mark.anyio
    async def test_connect_failure(self, make_transport_factory, ssh_connection):
        factory = make_transport_factory(fail_connect=True)
        pool = SessionPool(factory)
        with pytest.raises(SessionError, match="Failed to connect to build"):
            await pool.get_or_create("build", ssh_connection)
        assert "build" not in pool

        factory.fail_connect = False
        handle = await pool.get_or_create("build", ssh_connection)
        assert handle.is_alive
        assert factory.connects == 2

    @pytest.mark.anyio
    async def test_concurrent_failure_reaches_every_caller(self, make_transport_factory, ssh_connection):
        factory = make_transport_factory(fail_connect=True)
        pool = SessionPool(factory)
        results = await asyncio.gather(
            pool.get_or_create("build", ssh_connection),
            pool.get_or_create("build", ssh_connection),
            return_exceptions=True,
        )
        assert all(isinstance(result, SessionError) for result in results)
        assert factory.connects == 1


class TestExecute:
    @pytest.mark.anyio
    async def test_normalized_result(self, transport_factory, ssh_connection):
        pool = SessionPool(transport_factory)
        handle = await pool.get_or_create("build", ssh_connection)
        result = await pool.execute(handle, "uptime", timeout=5, max_output=1000)
        assert result.stdout == "ran uptime\n"
        assert result.exit_code == 0
        assert result.succeeded

    @pytest.mark.anyio
    async def test_transport_failure_drops_dead_handle(self, make_transport_factory, ssh_connection):
        factory = make_transport_factory()
        pool = SessionPool(factory)
        handle = await pool.get_or_create("build", ssh_connection)
        factory.fail_run = True
        with pytest.raises(SessionError, match="socket closed"):
            await pool.execute(handle, "uptime", timeout=5, max_output=1000)
        assert "build" not in pool


class TestClose:
    @pytest.mark.anyio
    async def test_close_unknown_is_noop(self, transport_factory):
        pool = SessionPool(transport_factory)
        assert await pool.close("nope") is False

    @pytest.mark.anyio
    async def test_close_known(self, transport_factory, ssh_connection):
        pool = SessionPool(transport_factory)
        handle = await pool.get_or_create("build", ssh_connection)
        assert await pool.close("build") is True
        assert handle.transport.closed
        assert pool.connection_ids == []
        assert await pool.close("build") is False

    @pytest.mark.anyio
    async def test_close_failure_raises(self, make_transport_factory, ssh_connection):
        factory = make_transport_factory(fail_close=True)
        pool = SessionPool(factory)
        await pool.get_or_create("build", ssh_connection)
        with pytest.raises(SessionError, match="Failed to close session build"):
            await pool.close("build")
        assert "build" not in pool

    @pytest.mark.anyio
    async def test_close_all_swallows_errors(self, make_transport_factory, ssh_connection):
        factory = make_transport_factory()
        pool = SessionPool(factory)
        await pool.get_or_create("a", ssh_connection)
        await pool.get_or_create("b", ssh_connection)
        factory.fail_close = True
        await pool.close_all()
        assert pool.connection_ids == []

    @pytest.mark.anyio
    async def test_close_all_bounded_by_timeout(self, make_transport_factory, ssh_connection):
        factory = make_transport_factory()
        pool = SessionPool(factory, close_timeout=0.05)
        await pool.get_or_create("a", ssh_connection)
        await pool.get_or_create("b", ssh_connection)
        factory.close_delay = 30
        await asyncio.wait_for(pool.close_all(), timeout=5)
        assert pool.connection_ids == []

    @pytest.mark.anyio
    async def test_close_while_connecting_closes_new_session(self, transport_factory, ssh_connection):
        pool = SessionPool(transport_factory)
        connecting = asyncio.ensure_future(pool.get_or_create("build", ssh_connection))
        await asyncio.sleep(0)

        assert await pool.close("build") is True
        with pytest.raises(SessionError, match="closed while connecting"):
            await connecting
        assert transport_factory.transports[0].closed
        assert "build" not in pool

    @pytest.mark.anyio
    async def test_close_all_while_connecting(self, transport_factory, ssh_connection):
        pool = SessionPool(transport_factory)
        await pool.get_or_create("a", ssh_connection)
        connecting = asyncio.ensure_future(pool.get_or_create("b", ssh_connection))
        await asyncio.sleep(0)

        await pool.close_all()
        with pytest.raises(SessionError, match="closed while connecting"):
            await connecting
        assert all(transport.closed for transport in transport_factory.transports)
        assert pool.connection_ids == []

    @pytest.mark.anyio
    async def test_close_all_cancels_hung_connect(self, make_transport_factory, ssh_connection):
        factory = make_transport_factory(connect_delay=30)
        pool = SessionPool(factory, close_timeout=0.05)
        connecting = asyncio.ensure_future(pool.get_or_create("build", ssh_connection))
        await asyncio.sleep(0)

        await asyncio.wait_for(pool.close_all(), timeout=5)
        with pytest.raises(asyncio.CancelledError):
            await connecting
        assert pool.connection_ids == []

    @pytest.mark.anyio
    async def test_reconnect_after_close_while_connecting(self, transport_factory, ssh_connection):
        pool = SessionPool(transport_factory)
        connecting = asyncio.ensure_future(pool.get_or_create("build", ssh_connection))
        await asyncio.sleep(0)
        await pool.close("build")
        with pytest.raises(SessionError):
            await connecting

        handle = await pool.get_or_create("build", ssh_connection)
        assert handle.is_alive
        assert transport_factory.connects == 2


class FakeChannel:
    """Stand-in for a paramiko session channel."""

    def __init__(self, stdout=(), stderr=(), exit_status=0, finished=True):
        self.stdout = list(stdout)
        self.stderr = list(stderr)
        self.exit_status = exit_status
        self.finished = finished
        self.command = None
        self.closed = False

    def exec_command(self, command):
        self.command = command

    def shutdown_write(self):
        pass

    def recv_ready(self):
        return bool(self.stdout)

    def recv(self, size):
        return self.stdout.pop(0)

    def recv_stderr_ready(self):
        return bool(self.stderr)

    def recv_stderr(self, size):
        return self.stderr.pop(0)

    def exit_status_ready(self):
        return self.finished

    def recv_exit_status(self):
        return self.exit_status

    def close(self):
        self.closed = True


class FakeSSHTransport:
    def __init__(self, channel, active=True):
        self.channel = channel
        self.active = active

    def is_active(self):
        return self.active

    def open_session(self, timeout=None):
        return self.channel


class FakeClient:
    def __init__(self, transport):
        self.transport = transport
        self.closed = False

    def get_transport(self):
        return self.transport

    def close(self):
        self.closed = True


def _connected_transport(ssh_connection, channel, active=True):
    transport = ParamikoTransport(ssh_connection)
    transport._client = FakeClient(FakeSSHTransport(channel, active))
    return transport


class TestParamikoTransport:
    @pytest.mark.anyio
    async def test_drains_output_after_exit(self, ssh_connection):
        accented = "é".encode("utf-8")
        channel = FakeChannel(
            stdout=[b"line one\n", b"caf" + accented[:1], accented[1:] + b"\n"],
            stderr=[b"warn\n"],
            exit_status=3,
        )
        transport = _connected_transport(ssh_connection, channel)
        output = await transport.run("uptime", timeout=5, max_output=1000)
        assert output.stdout == "line one\ncafé\n"
        assert output.stderr == "warn\n"
        assert output.exit_code == 3
        assert not output.truncated
        assert channel.command == "uptime"
        assert channel.closed

    @pytest.mark.anyio
    async def test_output_cap(self, ssh_connection):
        channel = FakeChannel(stdout=[b"x" * 8, b"y" * 8], stderr=[b"e" * 20])
        transport = _connected_transport(ssh_connection, channel)
        output = await transport.run("cat big", timeout=5, max_output=10)
        assert output.stdout == "x" * 8 + STDOUT_TRUNCATION_MARKER
        assert output.stderr == STDERR_TRUNCATION_MARKER
        assert output.truncated

    @pytest.mark.anyio
    async def test_deadline(self, ssh_connection):
        channel = FakeChannel(finished=False)
        transport = _connected_transport(ssh_connection, channel)
        with pytest.raises(SessionError, match="Command timed out after 0.2 seconds"):
            await transport.run("sleep 60", timeout=0.2, max_output=1000)
        assert channel.closed

    @pytest.mark.anyio
    async def test_inactive_transport(self, ssh_connection):
        transport = _connected_transport(ssh_connection, FakeChannel(), active=False)
        assert not transport.is_alive
        with pytest.raises(SessionError, match="no longer active"):
            await transport.run("uptime", timeout=5, max_output=1000)

    @pytest.mark.anyio
    async def test_not_connected(self, ssh_connection):
        with pytest.raises(SessionError, match="not connected"):
            await ParamikoTransport(ssh_connection).run("uptime", timeout=5, max_output=1000)

    @pytest.mark.anyio
    async def test_close_releases_client(self, ssh_connection):
        transport = _connected_transport(ssh_connection, FakeChannel())
        client = transport._client
        await transport.close()
        assert client.closed
        assert not transport.is_alive
