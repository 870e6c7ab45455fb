"""Turning a freshly created server into an attached build agent."""

from .channel import AgentChannel
from .engine import BootstrapEngine, BootstrapState
from .installers import INSTALLERS, RUNTIME_VERSIONS, RuntimeInstaller

__all__ = [
    "INSTALLERS",
    "RUNTIME_VERSIONS",
    "AgentChannel",
    "BootstrapEngine",
    "BootstrapState",
    "RuntimeInstaller",
]
