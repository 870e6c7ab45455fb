"""skyfarm: cloud-backed build agents for a build farm.

Provisions servers within pool and template instance caps, bootstraps them
into attached agents over SSH, and deletes them in the background when
they are removed.
"""

from loguru import logger

from skyfarm.bootstrap import AgentChannel, BootstrapEngine, BootstrapState
from skyfarm.config import PoolConfig, TemplateConfig, load_pools
from skyfarm.coordinator import CapacityCoordinator, PlannedNode
from skyfarm.decommission import DecommissionQueue, PendingDeletion
from skyfarm.directory import InMemoryNodeDirectory, ManagedNode, NodeDirectory
from skyfarm.errors import (
    BootstrapAuthFailure,
    BootstrapError,
    BootstrapTimeout,
    ConfigurationError,
    InitScriptFailed,
    ProviderAuthError,
    ProviderError,
    RuntimeInstallFailed,
    ServerNotFound,
    SkyfarmError,
    UnexpectedRemoteState,
)
from skyfarm.farm import BuildFarm
from skyfarm.observability import LogConfig, setup_logging, teardown_logging
from skyfarm.provider import Option, ProviderGateway, RemoteServer, ServerSpec, ServerStatus

logger.disable("skyfarm")

__version__ = "0.1.0"

__all__ = [
    "AgentChannel",
    "BootstrapAuthFailure",
    "BootstrapEngine",
    "BootstrapError",
    "BootstrapState",
    "BootstrapTimeout",
    "BuildFarm",
    "CapacityCoordinator",
    "ConfigurationError",
    "DecommissionQueue",
    "InMemoryNodeDirectory",
    "InitScriptFailed",
    "LogConfig",
    "ManagedNode",
    "NodeDirectory",
    "Option",
    "PendingDeletion",
    "PlannedNode",
    "PoolConfig",
    "ProviderAuthError",
    "ProviderError",
    "ProviderGateway",
    "RemoteServer",
    "RuntimeInstallFailed",
    "ServerNotFound",
    "ServerSpec",
    "ServerStatus",
    "SkyfarmError",
    "TemplateConfig",
    "UnexpectedRemoteState",
    "load_pools",
    "setup_logging",
    "teardown_logging",
]
