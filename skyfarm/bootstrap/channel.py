"""Communication channel to a launched build agent."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from loguru import logger

if TYPE_CHECKING:
    from skyfarm.infra.ssh import SSHTransport


class AgentChannel:
    """The agent process's stdin/stdout, bound to the SSH transport it runs on.

    When the process ends, for whatever reason, the transport is closed too.
    """

    def __init__(self, process: Any, transport: SSHTransport, node: str) -> None:
        self._process = process
        self._transport = transport
        self._closed = False
        self._log = logger.bind(component="channel", node=node)
        self._watch = asyncio.create_task(self._watch_process(), name=f"channel-{node}")

    @property
    def reader(self) -> Any:
        """Agent stdout: bytes coming from the node."""
        return self._process.stdout

    @property
    def writer(self) -> Any:
        """Agent stdin: bytes going to the node."""
        return self._process.stdin

    @property
    def closed(self) -> bool:
        return self._closed

    async def _watch_process(self) -> None:
        try:
            await self._process.wait_closed()
        finally:
            self._closed = True
            self._log.info("Agent channel closed")
            await self._transport.close()

    async def wait_closed(self) -> None:
        await asyncio.shield(self._watch)

    async def close(self) -> None:
        if not self._watch.done():
            self._process.close()
        await self.wait_closed()
