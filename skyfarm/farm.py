"""Process-scoped wiring of pools, coordinators and background services.

Example:
    async with BuildFarm.from_config(agent_jar=Path("slave.jar")) as farm:
        if await farm.can_provision("linux"):
            planned = await farm.provision("linux", 4)
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeAlias

from loguru import logger

from skyfarm.bootstrap import BootstrapEngine
from skyfarm.config import PoolConfig, load_pools
from skyfarm.coordinator import Bootstrapper, CapacityCoordinator, PlannedNode
from skyfarm.decommission import DEFAULT_RETRY_INTERVAL, DecommissionQueue
from skyfarm.directory import InMemoryNodeDirectory, ManagedNode
from skyfarm.provider.gateway import API_BASE, ProviderGateway
from skyfarm.retention import DEFAULT_CHECK_INTERVAL, IdleReaper

GatewayFactory: TypeAlias = Callable[[str, str], ProviderGateway]
BootstrapperFactory: TypeAlias = Callable[[PoolConfig, ProviderGateway, InMemoryNodeDirectory], Bootstrapper]


class BuildFarm:
    """One control plane: a node directory, a coordinator per pool, one
    decommission queue and one idle reaper.

    Gateways are shared per (credential, API URL), so pools on the same
    account reuse an HTTP session and the decommission queue reuses it too.
    """

    def __init__(
        self,
        pools: tuple[PoolConfig, ...],
        *,
        agent_payload: bytes = b"",
        directory: InMemoryNodeDirectory | None = None,
        gateway_factory: GatewayFactory | None = None,
        bootstrapper_factory: BootstrapperFactory | None = None,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
        reap_interval: float = DEFAULT_CHECK_INTERVAL,
    ) -> None:
        self._pools = {p.name: p for p in pools}
        self._directory = directory if directory is not None else InMemoryNodeDirectory()
        self._gateway_factory = gateway_factory or (
            lambda token, url: ProviderGateway(token, base_url=url)
        )
        self._gateways: dict[tuple[str, str], ProviderGateway] = {}
        self._log = logger.bind(component="farm")

        self._queue = DecommissionQueue(self._deleter_for, retry_interval=retry_interval)
        self._directory.on_removed(self.decommission)
        self._reaper = IdleReaper(self._directory.nodes, self.remove_node, interval=reap_interval)

        make_bootstrapper = bootstrapper_factory or (
            lambda pool, gateway, directory: BootstrapEngine(pool, gateway, directory, agent_payload)
        )
        self._coordinators: dict[str, CapacityCoordinator] = {}
        for pool in pools:
            gateway = self.gateway(pool)
            self._coordinators[pool.name] = CapacityCoordinator(
                pool, gateway, self._directory, make_bootstrapper(pool, gateway, self._directory)
            )

    @classmethod
    def from_config(
        cls,
        *,
        agent_jar: Path,
        project_dir: Path | None = None,
        global_path: Path | None = None,
        **kwargs: Any,
    ) -> BuildFarm:
        pools = load_pools(project_dir=project_dir, global_path=global_path)
        return cls(pools, agent_payload=agent_jar.read_bytes(), **kwargs)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        self._queue.start()
        self._reaper.start()
        self._log.info("Build farm started with pools: {pools}", pools=", ".join(self._pools))

    async def stop(self) -> None:
        await self._reaper.stop()
        await self._queue.stop()
        for gateway in self._gateways.values():
            await gateway.close()
        self._gateways.clear()

    async def __aenter__(self) -> BuildFarm:
        await self.start()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.stop()

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def directory(self) -> InMemoryNodeDirectory:
        return self._directory

    @property
    def decommission_queue(self) -> DecommissionQueue:
        return self._queue

    def coordinator(self, pool: str) -> CapacityCoordinator:
        try:
            return self._coordinators[pool]
        except KeyError:
            raise KeyError(
                f"Pool '{pool}' not found. Available: {', '.join(self._coordinators) or 'none'}"
            ) from None

    def gateway(self, pool: PoolConfig) -> ProviderGateway:
        key = (pool.api_token, pool.api_url or API_BASE)
        if key not in self._gateways:
            self._gateways[key] = self._gateway_factory(*key)
        return self._gateways[key]

    def _deleter_for(self, credential: str) -> ProviderGateway:
        for (token, _url), gateway in self._gateways.items():
            if token == credential:
                return gateway
        return self._gateways.setdefault(
            (credential, API_BASE), self._gateway_factory(credential, API_BASE)
        )

    # -------------------------------------------------------------------------
    # Scheduler contract
    # -------------------------------------------------------------------------

    async def can_provision(self, label: str | None) -> bool:
        for c in self._coordinators.values():
            if await c.can_provision(label):
                return True
        return False

    async def provision(self, label: str | None, demand: int) -> list[PlannedNode]:
        """Ask each pool in declaration order until one plans nodes."""
        for c in self._coordinators.values():
            if not await c.can_provision(label):
                continue
            planned = await c.provision(label, demand)
            if planned:
                return planned
        return []

    # -------------------------------------------------------------------------
    # Removal
    # -------------------------------------------------------------------------

    def decommission(self, node: ManagedNode) -> None:
        """Hand a removed node's server to the decommission queue."""
        pool = self._pools.get(node.pool)
        if pool is None:
            self._log.warning(
                "Node {name} belongs to unknown pool {pool}, cannot delete server {id}",
                name=node.name, pool=node.pool, id=node.server_id,
            )
            return
        self._log.info("Node {name} removed, deleting server {id}", name=node.name, id=node.server_id)
        self._queue.enqueue(pool.api_token, node.server_id)

    async def remove_node(self, name: str) -> ManagedNode | None:
        node = self._directory.remove(name)
        if node is not None and node.channel is not None:
            await node.channel.close()
        return node
