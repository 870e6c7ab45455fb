"""Nodes known to the control plane.

The real control plane owns its node registry; skyfarm only needs to list
names, add a node and remove one. ``InMemoryNodeDirectory`` is the registry
used when skyfarm itself is the control plane, and in tests.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, TypeAlias

from loguru import logger

if TYPE_CHECKING:
    from skyfarm.bootstrap.channel import AgentChannel
    from skyfarm.config import PoolConfig, TemplateConfig


@dataclass(slots=True)
class ManagedNode:
    """A worker node the control plane knows about.

    ``idle_since`` is a ``time.monotonic()`` timestamp, or None while the
    node is busy or still bootstrapping.
    """

    name: str
    pool: str
    template: str
    server_id: str
    private_key: str = field(repr=False)
    username: str = "root"
    ssh_port: int = 22
    executors: int = 1
    labels: frozenset[str] = frozenset()
    workspace_path: str = "/jenkins"
    init_script: str = ""
    agent_options: str = ""
    idle_termination_minutes: int = 10
    created_at_millis: int = field(default_factory=lambda: int(time.time() * 1000))
    idle_since: float | None = None
    channel: AgentChannel | None = field(default=None, repr=False)

    @classmethod
    def create(
        cls, name: str, server_id: str, pool: PoolConfig, template: TemplateConfig
    ) -> ManagedNode:
        return cls(
            name=name,
            pool=pool.name,
            template=template.name,
            server_id=server_id,
            private_key=pool.private_key,
            username=template.username,
            ssh_port=template.ssh_port,
            executors=template.executors,
            labels=template.labels,
            workspace_path=template.workspace_path,
            init_script=template.init_script,
            agent_options=template.agent_options,
            idle_termination_minutes=template.idle_termination_minutes,
        )

    @property
    def remote_admin(self) -> str:
        return self.username or "root"

    @property
    def attached(self) -> bool:
        return self.channel is not None and not self.channel.closed

    def mark_busy(self) -> None:
        self.idle_since = None

    def mark_idle(self) -> None:
        if self.idle_since is None:
            self.idle_since = time.monotonic()


class NodeDirectory(Protocol):
    """What skyfarm needs from the control plane's node registry."""

    def names(self) -> list[str]: ...

    def get(self, name: str) -> ManagedNode | None: ...

    def add(self, node: ManagedNode) -> None: ...

    def remove(self, name: str) -> ManagedNode | None: ...


RemovalHook: TypeAlias = Callable[[ManagedNode], None]


class InMemoryNodeDirectory:
    """Dict-backed registry with removal hooks.

    Removal hooks run synchronously inside ``remove()``; skyfarm uses one to
    hand the server to the decommission queue.
    """

    def __init__(self) -> None:
        self._nodes: dict[str, ManagedNode] = {}
        self._hooks: list[RemovalHook] = []
        self._log = logger.bind(component="directory")

    def on_removed(self, hook: RemovalHook) -> None:
        self._hooks.append(hook)

    def names(self) -> list[str]:
        return list(self._nodes)

    def nodes(self) -> list[ManagedNode]:
        return list(self._nodes.values())

    def get(self, name: str) -> ManagedNode | None:
        return self._nodes.get(name)

    def add(self, node: ManagedNode) -> None:
        if node.name in self._nodes:
            raise ValueError(f"Node {node.name} already registered")
        self._nodes[node.name] = node
        self._log.info("Added node {name} (server {id})", name=node.name, id=node.server_id)

    def remove(self, name: str) -> ManagedNode | None:
        node = self._nodes.pop(name, None)
        if node is None:
            return None
        self._log.info("Removed node {name}, deleting server {id}", name=name, id=node.server_id)
        for hook in self._hooks:
            hook(node)
        return node

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[ManagedNode]:
        return iter(list(self._nodes.values()))

    def __contains__(self, name: object) -> bool:
        return name in self._nodes
