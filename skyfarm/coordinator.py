"""Capacity-bounded provisioning for one pool.

Nodes can be requested very fast and in parallel. Without serialization two
requests can both see "one more node fits" and both create one, leaving the
pool permanently over its cap. Every decision that leads to ``create_server``
is therefore taken under the pool's lock, and taken twice: once when the
node is planned and again right before it is created, because other actors
(the provider console, another control plane) can change the remote state
in between.

The lock is not held across ``create_server`` or the bootstrap. A name that
has been planned but whose server is not yet visible both locally and
remotely is held in ``_reserved`` and counted as if it already existed, so
releasing the lock early cannot let a sibling overshoot.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from loguru import logger

from skyfarm import naming
from skyfarm.directory import ManagedNode
from skyfarm.provider.types import RemoteServer, ServerSpec, ServerStatus

if TYPE_CHECKING:
    from skyfarm.config import PoolConfig, TemplateConfig
    from skyfarm.directory import NodeDirectory
    from skyfarm.provider.gateway import ProviderGateway


class Bootstrapper(Protocol):
    async def bootstrap(self, node: ManagedNode) -> object: ...


@dataclass(frozen=True, slots=True)
class PlannedNode:
    """A node promised to the scheduler.

    ``future`` resolves to the attached node, to None when the final capacity
    check said no, or raises if creation or bootstrap failed.
    """

    display_name: str
    executors: int
    future: asyncio.Task[ManagedNode | None]


# =============================================================================
# Capacity arithmetic
# =============================================================================


def cap_of(value: int) -> float:
    """0 means unbounded."""
    return math.inf if value == 0 else float(value)


def effective_pool_cap(pool: PoolConfig) -> float:
    """min(pool cap, sum of template caps); any unbounded template makes the sum unbounded."""
    template_total = 0.0
    for t in pool.templates:
        if t.instance_cap == 0:
            template_total = math.inf
            break
        template_total += t.instance_cap
    return min(cap_of(pool.instance_cap), template_total)


def count_local(names: Iterable[str], pool: str, template: str | None = None) -> int:
    if template is None:
        return sum(1 for n in names if naming.belongs_to_pool(n, pool))
    return sum(1 for n in names if naming.belongs_to_template(n, pool, template))


def count_remote(servers: Iterable[RemoteServer], pool: str, template: str | None = None) -> int:
    """Servers attributed to the pool (or template), ignoring those being removed."""
    live = (s.name for s in servers if s.status is not ServerStatus.REMOVING)
    return count_local(live, pool, template)


# =============================================================================
# Coordinator
# =============================================================================


class CapacityCoordinator:
    """Decides whether, and from which template, a pool may create nodes.

    Args:
        pool: The pool this coordinator serves.
        gateway: Provider access bound to the pool's credential.
        directory: Nodes the control plane currently knows.
        bootstrapper: Attaches newly created nodes.
        lock: Serializes decisions for this pool; pass one in to share it.
    """

    def __init__(
        self,
        pool: PoolConfig,
        gateway: ProviderGateway,
        directory: NodeDirectory,
        bootstrapper: Bootstrapper,
        *,
        lock: asyncio.Lock | None = None,
    ) -> None:
        self._pool = pool
        self._gateway = gateway
        self._directory = directory
        self._bootstrapper = bootstrapper
        self._lock = lock or asyncio.Lock()
        self._reserved: dict[str, str] = {}
        self._log = logger.bind(component="coordinator", pool=pool.name)

    @property
    def pool(self) -> PoolConfig:
        return self._pool

    @property
    def reserved(self) -> tuple[str, ...]:
        return tuple(self._reserved)

    # -------------------------------------------------------------------------
    # Counting (call with the lock held)
    # -------------------------------------------------------------------------

    def _local_names(self, exclude: str | None = None) -> list[str]:
        names = self._directory.names()
        known = set(names)
        names.extend(n for n in self._reserved if n not in known and n != exclude)
        return names

    def _remote_view(
        self, servers: list[RemoteServer], exclude: str | None = None
    ) -> list[RemoteServer]:
        visible = {s.name for s in servers}
        pending = [
            RemoteServer(id="", name=n, status=ServerStatus.CONFIGURING)
            for n in self._reserved
            if n not in visible and n != exclude
        ]
        return [*servers, *pending]

    def _pool_cap_reached(self, local: list[str], remote: list[RemoteServer]) -> bool:
        cap = effective_pool_cap(self._pool)
        if math.isinf(cap):
            return False
        name = self._pool.name
        return count_local(local, name) >= cap or count_remote(remote, name) >= cap

    def _template_cap_reached(
        self, template: TemplateConfig, local: list[str], remote: list[RemoteServer] | None
    ) -> bool:
        cap = cap_of(template.instance_cap)
        if math.isinf(cap):
            return False
        pool = self._pool.name
        if count_local(local, pool, template.name) >= cap:
            return True
        return remote is not None and count_remote(remote, pool, template.name) >= cap

    def _matching(self, label: str | None) -> list[TemplateConfig]:
        return [t for t in self._pool.templates if t.matches(label)]

    def _template_below_cap(
        self, label: str | None, local: list[str], remote: list[RemoteServer] | None
    ) -> TemplateConfig | None:
        for t in self._matching(label):
            if not self._template_cap_reached(t, local, remote):
                return t
        return None

    # -------------------------------------------------------------------------
    # Scheduler contract
    # -------------------------------------------------------------------------

    async def can_provision(self, label: str | None) -> bool:
        """Whether a template for ``label`` has local headroom. Never raises."""
        async with self._lock:
            try:
                local = self._local_names()
                if self._template_below_cap(label, local, None) is None:
                    self._log.info(
                        "No template could provision for label {label}: unsupported label "
                        "or instance cap reached",
                        label=label,
                    )
                    return False
                if self._pool_cap_reached(local, []):
                    self._log.info(
                        "Instance cap of {cap} reached, not provisioning for label {label}",
                        cap=self._pool.instance_cap, label=label,
                    )
                    return False
                return True
            except Exception as e:
                self._log.warning("Capacity check failed: {error}", error=e)
                return False

    async def provision(self, label: str | None, demand: int) -> list[PlannedNode]:
        """Plan nodes covering up to ``demand`` executors for ``label``.

        Returns fewer nodes than needed, possibly none, when caps are
        reached, no template matches, or anything goes wrong. Never raises.
        """
        planned: list[PlannedNode] = []
        async with self._lock:
            try:
                while demand > 0:
                    servers = await self._gateway.list_servers()
                    local = self._local_names()
                    remote = self._remote_view(servers)

                    if self._pool_cap_reached(local, remote):
                        self._log.info("Instance cap reached, not provisioning")
                        break

                    template = self._template_below_cap(label, local, remote)
                    if template is None:
                        self._log.info("No template below its instance cap for label {label}", label=label)
                        break

                    name = naming.generate(self._pool.name, template.name)
                    self._reserved[name] = template.name
                    task = asyncio.create_task(self._create(name, template), name=f"provision-{name}")
                    planned.append(PlannedNode(name, template.executors, task))
                    demand -= template.executors
            except Exception as e:
                self._log.warning("Provisioning failed, planning nothing this round: {error}", error=e)
                for p in planned:
                    p.future.cancel()
                    self._reserved.pop(p.display_name, None)
                return []

        self._log.info("Provisioning {n} nodes", n=len(planned))
        return planned

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def _create(self, name: str, template: TemplateConfig) -> ManagedNode | None:
        try:
            async with self._lock:
                servers = await self._gateway.list_servers()
                local = self._local_names(exclude=name)
                remote = self._remote_view(servers, exclude=name)
                if self._pool_cap_reached(local, remote) or self._template_cap_reached(
                    template, local, remote
                ):
                    self._log.info("Instance cap reached, not provisioning {name}", name=name)
                    return None

            self._log.info(
                "Starting to provision server {name} using image {appliance}, size {hardware}",
                name=name, appliance=template.appliance_id, hardware=template.hardware_id,
            )
            server = await self._gateway.create_server(
                ServerSpec(
                    name=name,
                    ssh_public_key=self._pool.ssh_public_key,
                    hardware_id=template.hardware_id,
                    appliance_id=template.appliance_id,
                )
            )
            node = ManagedNode.create(name, server.id, self._pool, template)
            self._directory.add(node)
        except Exception as e:
            self._log.warning("Failed to provision {name}: {error}", name=name, error=e)
            raise
        finally:
            self._reserved.pop(name, None)

        await self._bootstrapper.bootstrap(node)
        return node
