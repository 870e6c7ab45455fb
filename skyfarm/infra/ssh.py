"""AsyncSSH-based transport for node bootstrap.

Service class pattern - dependencies bound at construction,
not passed on every call.
"""

from __future__ import annotations

import asyncio
import contextlib
import socket
from collections.abc import Callable
from typing import TypeAlias
from dataclasses import dataclass, field

import asyncssh
from loguru import logger

LineSink: TypeAlias = Callable[[str], None]


@dataclass
class SSHTransport:
    """Async SSH transport using asyncssh.

    Opening the TCP connection and authenticating are separate steps, so a
    caller can tell "not reachable yet" (retry later) apart from "key
    rejected" (give up).

    Example:
        >>> transport = SSHTransport(host="10.0.0.1", port=22)
        >>> await transport.open()                  # TimeoutError / OSError
        >>> await transport.authenticate("root", pem)  # asyncssh.PermissionDenied
        >>> code, stdout, stderr = await transport.run("java -fullversion")
        >>> await transport.close()
    """

    host: str
    port: int = 22
    connect_timeout: float = 10.0

    _sock: socket.socket | None = field(default=None, repr=False)
    _conn: asyncssh.SSHClientConnection | None = field(default=None, repr=False)

    async def open(self) -> None:
        """Open the TCP connection.

        Raises:
            TimeoutError: The host did not answer within ``connect_timeout``.
            OSError: Connection refused or unreachable.
        """
        if self._sock is not None or self._conn is not None:
            return
        self._sock = await asyncio.to_thread(
            socket.create_connection, (self.host, self.port), self.connect_timeout
        )

    async def authenticate(self, username: str, private_key: str) -> None:
        """Run the SSH handshake over the open socket with a private key.

        Raises:
            asyncssh.PermissionDenied: The key was rejected.
        """
        if self._conn is not None:
            return
        if self._sock is None:
            raise RuntimeError("Not connected. Call open() first.")

        key = asyncssh.import_private_key(private_key)
        sock, self._sock = self._sock, None
        try:
            self._conn = await asyncssh.connect(
                self.host,
                self.port,
                sock=sock,
                username=username,
                client_keys=[key],
                known_hosts=None,
                login_timeout=self.connect_timeout * 3,
            )
        except BaseException:
            sock.close()
            raise

    async def close(self) -> None:
        """Close the SSH connection (or bare socket)."""
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        if self._conn is not None:
            self._conn.close()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._conn.wait_closed(), timeout=5.0)
            self._conn = None

    async def __aenter__(self) -> SSHTransport:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    @property
    def is_connected(self) -> bool:
        """Whether the SSH session is established."""
        return self._conn is not None

    def _require_connection(self) -> asyncssh.SSHClientConnection:
        """Get connection or raise."""
        if self._conn is None:
            raise RuntimeError("Not authenticated. Call authenticate() first.")
        return self._conn

    # -------------------------------------------------------------------------
    # Command Execution
    # -------------------------------------------------------------------------

    async def run(
        self,
        command: str,
        *,
        timeout: float | None = None,
    ) -> tuple[int, str, str]:
        """Execute command and return (exit_code, stdout, stderr)."""
        conn = self._require_connection()
        result = await conn.run(command, timeout=timeout, check=False, errors="replace")

        code = result.exit_status if result.exit_status is not None else -1
        stdout = result.stdout or ""
        stderr = result.stderr or ""
        return code, str(stdout), str(stderr)

    async def run_pty(self, command: str, on_line: LineSink) -> int:
        """Execute command under a dumb pseudo-terminal, streaming output.

        The pty merges stderr into stdout and lets ``sudo`` work on hosts
        that require a tty. Undecodable output bytes are replaced, never fatal.
        Returns the exit status (-1 if none was sent).
        """
        conn = self._require_connection()
        async with conn.create_process(command, term_type="dumb", errors="replace") as proc:
            proc.stdin.write_eof()
            async for line in proc.stdout:
                on_line(line.rstrip("\r\n"))
            result = await proc.wait(check=False)
        return result.exit_status if result.exit_status is not None else -1

    async def create_process(self, command: str) -> asyncssh.SSHClientProcess[bytes]:
        """Start a long-running process with binary stdin/stdout."""
        conn = self._require_connection()
        return await conn.create_process(command, encoding=None)

    # -------------------------------------------------------------------------
    # File Transfer
    # -------------------------------------------------------------------------

    async def write_bytes(self, remote: str, content: bytes, mode: int = 0o644) -> None:
        """Write binary content to a remote file using SFTP, then chmod it."""
        conn = self._require_connection()
        logger.bind(component="ssh").debug(
            "Copying {n} bytes to {host}:{path}", n=len(content), host=self.host, path=remote
        )
        async with conn.start_sftp_client() as sftp:
            async with sftp.open(remote, "wb") as f:
                await f.write(content)
            await sftp.chmod(remote, mode)

    async def file_exists(self, remote: str) -> bool:
        """Check if a remote path exists. ``~`` is expanded by the remote shell."""
        code, _, _ = await self.run(f"test -e {remote}")
        return code == 0
