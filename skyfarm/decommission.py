"""Background, retrying teardown of cloud servers.

Servers often cannot be deleted right away (a pending provider event such as
the initial deployment blocks deletion), so removal of a node only enqueues
the server here. A single worker task keeps retrying every pending deletion
until the provider confirms it or reports the server gone. There is no retry
limit: a leaked server costs money, a retry costs one API call.

Example:
    async with DecommissionQueue(gateway_for) as queue:
        queue.enqueue(api_token, server_id)
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, TypeAlias

from loguru import logger

from skyfarm.errors import ServerNotFound

DEFAULT_RETRY_INTERVAL = 10.0


class ServerDeleter(Protocol):
    async def delete_server(self, server_id: str) -> None: ...


DeleterFactory: TypeAlias = Callable[[str], ServerDeleter]


@dataclass(frozen=True, slots=True, eq=False)
class PendingDeletion:
    """One queued deletion. Compared by identity so duplicates stay distinct."""

    credential: str
    server_id: str


class DecommissionQueue:
    """Process-scoped deletion service with an explicit start/stop lifecycle.

    The pending list is only touched from the event loop, between awaits, so
    no further locking is needed; ``_wake`` plays the role of the condition
    variable the worker sleeps on.
    """

    def __init__(
        self,
        deleter_for: DeleterFactory,
        *,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
    ) -> None:
        self._deleter_for = deleter_for
        self._retry_interval = retry_interval
        self._pending: list[PendingDeletion] = []
        self._wake = asyncio.Event()
        self._empty = asyncio.Event()
        self._empty.set()
        self._worker: asyncio.Task[None] | None = None
        self._log = logger.bind(component="decommission")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="skyfarm-decommission")
        self._log.debug("Decommission worker started")

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None
        if self._pending:
            self._log.warning(
                "Decommission worker stopped with {n} deletions still pending: {ids}",
                n=len(self._pending), ids=[p.server_id for p in self._pending],
            )

    async def __aenter__(self) -> DecommissionQueue:
        self.start()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.stop()

    # -------------------------------------------------------------------------
    # Queue
    # -------------------------------------------------------------------------

    @property
    def pending(self) -> tuple[PendingDeletion, ...]:
        return tuple(self._pending)

    def enqueue(self, credential: str, server_id: str) -> None:
        """Queue ``server_id`` for deletion and wake the worker."""
        self._log.info("Adding server to destroy {id}", id=server_id)
        self._pending.append(PendingDeletion(credential, server_id))
        # Stable sort keeps entries sharing a credential adjacent.
        self._pending.sort(key=lambda p: p.credential)
        self._empty.clear()
        self._wake.set()

    async def join(self, timeout: float | None = None) -> None:
        """Wait until every queued deletion has been resolved."""
        await asyncio.wait_for(self._empty.wait(), timeout)

    # -------------------------------------------------------------------------
    # Worker
    # -------------------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            if await self._drain_once():
                self._log.info(
                    "Retrying to destroy servers in about {s:.0f} seconds",
                    s=self._retry_interval,
                )
                await self._sleep(self._retry_interval)
            else:
                while not self._pending:
                    self._log.debug("Waiting on more servers to destroy")
                    await self._sleep(None)

    async def _drain_once(self) -> bool:
        """Attempt every pending deletion once. Returns True if any failed."""
        failed = False
        credential: str | None = None
        deleter: ServerDeleter | None = None

        for entry in list(self._pending):
            try:
                if deleter is None or entry.credential != credential:
                    deleter = self._deleter_for(entry.credential)
                    credential = entry.credential
                self._log.info("Trying to destroy server {id}", id=entry.server_id)
                await deleter.delete_server(entry.server_id)
                self._log.info("Server {id} is destroyed", id=entry.server_id)
            except ServerNotFound:
                self._log.info(
                    "Server {id} doesn't exist, removing it from the list", id=entry.server_id
                )
            except Exception as e:
                failed = True
                self._log.warning(
                    "Failed to destroy server {id}: {error}", id=entry.server_id, error=e
                )
                continue
            self._resolve(entry)

        return failed

    def _resolve(self, entry: PendingDeletion) -> None:
        self._pending.remove(entry)
        if not self._pending:
            self._empty.set()

    async def _sleep(self, timeout: float | None) -> None:
        """Sleep up to ``timeout`` seconds (forever if None) or until enqueue."""
        try:
            await asyncio.wait_for(self._wake.wait(), timeout)
        except TimeoutError:
            pass
        finally:
            self._wake.clear()
