# control-plane/core/remote.py
"""
Remote Command Executor

One capability, execute(connection, command) -> CommandResult, with
interchangeable transports:
- SSHExecutor: a fresh SSH session per command (asyncssh)
- AgentExecutor: HTTP call to a command agent running on the host (httpx)

Failures are returned, never raised. A result is usable only when the
session opened, the command exited 0 AND printed something: callers treat
"no output" exactly like "could not connect".

The executor does not parse or quote anything. Callers must shlex.quote()
every value they embed into a command string.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Optional

import asyncssh
import httpx

from config import settings
from database.models import Gateway, Transport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HostConnection:
    """Connection parameters for one host, detached from the ORM row"""
    address: str
    port: int
    username: str
    password: Optional[str] = field(default=None, repr=False)
    private_key: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_gateway(cls, gateway: Gateway) -> "HostConnection":
        return cls(
            address=gateway.address,
            port=gateway.ssh_port,
            username=gateway.username,
            password=gateway.password,
            private_key=gateway.private_key,
        )

    def __str__(self) -> str:
        return f"{self.username}@{self.address}:{self.port}"


@dataclass
class CommandResult:
    """Outcome of a single remote command"""
    stdout: str = ""
    stderr: str = ""
    exit_status: Optional[int] = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return not self.error and self.exit_status == 0 and bool(self.stdout.strip())

    @property
    def output(self) -> str:
        return self.stdout.strip()

    def describe(self) -> str:
        """Short diagnostic suitable for storing next to a failed step"""
        if self.error:
            return self.error
        if self.exit_status not in (0, None):
            detail = self.stderr.strip() or self.stdout.strip()
            return f"exit status {self.exit_status}: {detail}".rstrip(": ")
        if not self.stdout.strip():
            return "command produced no output"
        return self.stdout.strip()


class RemoteExecutor(ABC):
    """Transport-independent command execution with a hard timeout"""

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout if timeout is not None else settings.REMOTE_COMMAND_TIMEOUT

    async def execute(self, connection: HostConnection, command: str) -> CommandResult:
        try:
            result = await asyncio.wait_for(self._run(connection, command), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Command timed out after {self.timeout}s on {connection}")
            return CommandResult(error=f"timed out after {self.timeout}s")

        if not result.ok:
            logger.debug(f"Command failed on {connection}: {result.describe()}")
        return result

    @abstractmethod
    async def _run(self, connection: HostConnection, command: str) -> CommandResult:
        """Run one command; must convert transport errors into CommandResult"""


class SSHExecutor(RemoteExecutor):
    """
    Opens an SSH session, runs one command, closes the session.
    No connection state is kept between calls.
    """

    def __init__(self, timeout: Optional[float] = None, connect_timeout: Optional[float] = None):
        super().__init__(timeout)
        self.connect_timeout = connect_timeout if connect_timeout is not None else settings.SSH_CONNECT_TIMEOUT

    def _connect_kwargs(self, connection: HostConnection) -> dict:
        kwargs = {
            "host": connection.address,
            "port": connection.port,
            "username": connection.username,
            "known_hosts": None,
            "connect_timeout": self.connect_timeout,
        }
        if connection.private_key:
            kwargs["client_keys"] = [asyncssh.import_private_key(connection.private_key)]
        if connection.password:
            kwargs["password"] = connection.password
        return kwargs

    async def _run(self, connection: HostConnection, command: str) -> CommandResult:
        try:
            async with asyncssh.connect(**self._connect_kwargs(connection)) as conn:
                completed = await conn.run(command, check=False)
        except asyncssh.PermissionDenied as e:
            return CommandResult(error=f"authentication failed: {e.reason}")
        except asyncssh.KeyImportError as e:
            return CommandResult(error=f"invalid private key: {e}")
        except asyncssh.Error as e:
            return CommandResult(error=f"ssh error: {e.reason}")
        except OSError as e:
            return CommandResult(error=f"connection failed: {e}")

        return CommandResult(
            stdout=_as_text(completed.stdout),
            stderr=_as_text(completed.stderr),
            exit_status=completed.exit_status,
        )


class AgentExecutor(RemoteExecutor):
    """
    Runs commands through an HTTP command agent on the host.

    The agent listens on connection.port and authenticates with a bearer
    token (stored as the host password). It answers POST /execute with
    {"stdout": ..., "stderr": ..., "returncode": ...}.
    """

    def __init__(self, timeout: Optional[float] = None, scheme: str = "http"):
        super().__init__(timeout)
        self.scheme = scheme

    def _base_url(self, connection: HostConnection) -> str:
        return f"{self.scheme}://{connection.address}:{connection.port}"

    def _headers(self, connection: HostConnection) -> dict[str, str]:
        headers: dict[str, str] = {}
        if connection.password:
            headers["Authorization"] = f"Bearer {connection.password}"
        return headers

    async def _run(self, connection: HostConnection, command: str) -> CommandResult:
        payload = {"cmd": command, "user": connection.username, "timeout": self.timeout}

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self._base_url(connection)}/execute",
                    json=payload,
                    headers=self._headers(connection),
                )
            if resp.status_code in (401, 403):
                return CommandResult(error=f"agent rejected credentials (HTTP {resp.status_code})")
            if not resp.is_success:
                return CommandResult(error=f"agent returned HTTP {resp.status_code}")
            data = resp.json()
        except httpx.ConnectError:
            return CommandResult(error=f"cannot connect to agent at {self._base_url(connection)}")
        except httpx.TimeoutException:
            return CommandResult(error="agent request timed out")
        except (httpx.HTTPError, ValueError) as e:
            return CommandResult(error=f"agent error: {e}")

        return CommandResult(
            stdout=data.get("stdout", ""),
            stderr=data.get("stderr", ""),
            exit_status=data.get("returncode"),
        )


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return value


_TRANSPORTS: dict[str, Callable[[], RemoteExecutor]] = {
    Transport.SSH.value: SSHExecutor,
    Transport.AGENT.value: AgentExecutor,
}


def executor_for(gateway: Gateway) -> RemoteExecutor:
    """Pick the executor matching the host's registered transport"""
    factory = _TRANSPORTS.get(gateway.transport)
    if factory is None:
        raise ValueError(f"Unknown transport: {gateway.transport}")
    return factory()


ExecutorFactory = Callable[[Gateway], RemoteExecutor]
