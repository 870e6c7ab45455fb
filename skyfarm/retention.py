"""Idle node termination."""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable, Iterable

from loguru import logger

from skyfarm.directory import ManagedNode

DEFAULT_CHECK_INTERVAL = 60.0


def idle_expired(node: ManagedNode, now: float) -> bool:
    """Idle for longer than its template allows, connected or not."""
    if node.idle_termination_minutes <= 0 or node.idle_since is None:
        return False
    return now - node.idle_since >= node.idle_termination_minutes * 60


def agent_lost(node: ManagedNode) -> bool:
    """The node was attached once, but its agent channel has since closed."""
    return node.channel is not None and node.channel.closed


class IdleReaper:
    """Periodically removes nodes that have been idle for too long or lost their agent."""

    def __init__(
        self,
        nodes: Callable[[], Iterable[ManagedNode]],
        remove: Callable[[str], Awaitable[object]],
        *,
        interval: float = DEFAULT_CHECK_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._nodes = nodes
        self._remove = remove
        self._interval = interval
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._log = logger.bind(component="retention")

    async def check_once(self) -> list[str]:
        now = self._clock()
        removed: list[str] = []
        for node in self._nodes():
            if agent_lost(node):
                self._log.info("Node {name} lost its agent connection, terminating", name=node.name)
            elif idle_expired(node, now):
                self._log.info(
                    "Node {name} idle for more than {m} minutes, terminating",
                    name=node.name, m=node.idle_termination_minutes,
                )
            else:
                continue
            await self._remove(node.name)
            removed.append(node.name)
        return removed

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.check_once()
            except Exception as e:
                self._log.warning("Idle check failed: {error}", error=e)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="skyfarm-idle-reaper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
