"""Cloud provider access: wire types and the gateway facade."""

from .gateway import ProviderGateway
from .types import Option, RemoteServer, ServerSpec, ServerStatus

__all__ = [
    "Option",
    "ProviderGateway",
    "RemoteServer",
    "ServerSpec",
    "ServerStatus",
]
