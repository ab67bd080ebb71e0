# tests/control_plane/test_remote_executor.py
"""
Unit Tests for the Remote Command Executor
Result semantics, timeouts and transport error mapping
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import asyncssh
import httpx
import pytest

from core.remote import (
    AgentExecutor,
    CommandResult,
    HostConnection,
    RemoteExecutor,
    SSHExecutor,
    executor_for,
)
from database.models import Gateway


@pytest.fixture
def connection():
    return HostConnection(address="10.0.0.1", port=22, username="root", password="secret")


def ssh_session(stdout="", stderr="", exit_status=0):
    """Async context manager standing in for asyncssh.connect()"""
    conn = MagicMock()
    conn.run = AsyncMock(return_value=SimpleNamespace(stdout=stdout, stderr=stderr, exit_status=exit_status))
    session = MagicMock()
    session.__aenter__ = AsyncMock(return_value=conn)
    session.__aexit__ = AsyncMock(return_value=False)
    return session, conn


class TestCommandResult:
    """Tests for CommandResult success rules"""

    def test_zero_exit_with_output_is_ok(self):
        assert CommandResult(stdout="ok\n", exit_status=0).ok

    def test_empty_output_is_failure(self):
        """A silent command is indistinguishable from a broken session"""
        result = CommandResult(stdout="  \n", exit_status=0)

        assert not result.ok
        assert result.describe() == "command produced no output"

    def test_nonzero_exit_is_failure(self):
        result = CommandResult(stdout="", stderr="wg: not found", exit_status=127)

        assert not result.ok
        assert result.describe() == "exit status 127: wg: not found"

    def test_transport_error_is_failure(self):
        result = CommandResult(error="connection failed: refused")

        assert not result.ok
        assert result.describe() == "connection failed: refused"

    def test_output_is_stripped(self):
        assert CommandResult(stdout="  value \n", exit_status=0).output == "value"


class TestHostConnection:
    def test_secrets_not_in_repr(self, connection):
        assert "secret" not in repr(connection)
        assert str(connection) == "root@10.0.0.1:22"

    def test_from_gateway(self):
        gateway = Gateway(address="198.51.100.7", ssh_port=2222, username="admin", password="pw")

        connection = HostConnection.from_gateway(gateway)

        assert connection.address == "198.51.100.7"
        assert connection.port == 2222
        assert connection.username == "admin"
        assert connection.password == "pw"


class TestTimeout:
    @pytest.mark.asyncio
    async def test_slow_command_times_out(self, connection):
        class SlowExecutor(RemoteExecutor):
            async def _run(self, connection, command):
                await asyncio.sleep(1)
                return CommandResult(stdout="late", exit_status=0)

        result = await SlowExecutor(timeout=0.01).execute(connection, "sleep 10")

        assert not result.ok
        assert "timed out" in result.error


class TestSSHExecutor:
    """Tests for SSHExecutor with asyncssh mocked out"""

    @pytest.mark.asyncio
    async def test_runs_command(self, connection):
        session, conn = ssh_session(stdout="present\n")

        with patch("core.remote.asyncssh.connect", return_value=session) as connect:
            result = await SSHExecutor(timeout=5).execute(connection, "command -v docker")

        assert result.ok
        assert result.output == "present"
        conn.run.assert_awaited_once_with("command -v docker", check=False)
        kwargs = connect.call_args.kwargs
        assert kwargs["host"] == "10.0.0.1"
        assert kwargs["port"] == 22
        assert kwargs["password"] == "secret"
        assert kwargs["known_hosts"] is None
        assert "client_keys" not in kwargs

    @pytest.mark.asyncio
    async def test_nonzero_exit_returned_as_value(self, connection):
        session, _ = ssh_session(stdout="", stderr="boom", exit_status=1)

        with patch("core.remote.asyncssh.connect", return_value=session):
            result = await SSHExecutor(timeout=5).execute(connection, "false")

        assert not result.ok
        assert result.exit_status == 1

    @pytest.mark.asyncio
    async def test_authentication_failure(self, connection):
        with patch("core.remote.asyncssh.connect", side_effect=asyncssh.PermissionDenied("bad password")):
            result = await SSHExecutor(timeout=5).execute(connection, "uptime")

        assert not result.ok
        assert result.error.startswith("authentication failed")

    @pytest.mark.asyncio
    async def test_connection_refused(self, connection):
        with patch("core.remote.asyncssh.connect", side_effect=OSError("Connection refused")):
            result = await SSHExecutor(timeout=5).execute(connection, "uptime")

        assert not result.ok
        assert result.error.startswith("connection failed")

    @pytest.mark.asyncio
    async def test_bytes_output_decoded(self, connection):
        session, _ = ssh_session(stdout=b"ok\n")

        with patch("core.remote.asyncssh.connect", return_value=session):
            result = await SSHExecutor(timeout=5).execute(connection, "echo ok")

        assert result.output == "ok"


class TestAgentExecutor:
    """Tests for AgentExecutor against an httpx mock transport"""

    def _patched_client(self, handler):
        real_client = httpx.AsyncClient

        def factory(**kwargs):
            return real_client(transport=httpx.MockTransport(handler), **kwargs)

        return patch("core.remote.httpx.AsyncClient", side_effect=factory)

    @pytest.mark.asyncio
    async def test_posts_command(self, connection):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"stdout": "ok\n", "stderr": "", "returncode": 0})

        with self._patched_client(handler):
            result = await AgentExecutor(timeout=5).execute(connection, "echo ok")

        assert result.ok
        assert seen["url"] == "http://10.0.0.1:22/execute"
        assert seen["auth"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_rejected_token(self, connection):
        with self._patched_client(lambda request: httpx.Response(401)):
            result = await AgentExecutor(timeout=5).execute(connection, "echo ok")

        assert not result.ok
        assert "rejected" in result.error

    @pytest.mark.asyncio
    async def test_unreachable_agent(self, connection):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with self._patched_client(handler):
            result = await AgentExecutor(timeout=5).execute(connection, "echo ok")

        assert not result.ok
        assert "cannot connect" in result.error


class TestExecutorFor:
    def test_selects_by_transport(self):
        assert isinstance(executor_for(Gateway(transport="ssh")), SSHExecutor)
        assert isinstance(executor_for(Gateway(transport="agent")), AgentExecutor)

    def test_unknown_transport(self):
        with pytest.raises(ValueError):
            executor_for(Gateway(transport="telnet"))
