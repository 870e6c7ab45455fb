"""Provider-side types.

Response TypedDicts mirror the 1&1 Cloud Server API; the dataclasses are
what the rest of skyfarm works with.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import NotRequired, TypedDict

# =============================================================================
# API Response Types
# =============================================================================


class ServerStatusResponse(TypedDict):
    state: str
    percent: NotRequired[int | None]


class ServerIpResponse(TypedDict):
    id: NotRequired[str]
    ip: str | None
    type: NotRequired[str]


class ServerResponse(TypedDict):
    id: str
    name: str
    status: NotRequired[ServerStatusResponse]
    ips: NotRequired[list[ServerIpResponse] | None]


class OptionResponse(TypedDict):
    id: str
    name: str


class CreateServerRequest(TypedDict):
    name: str
    rsa_key: str
    hardware: dict[str, str]
    appliance_id: str


# =============================================================================
# Domain Types
# =============================================================================


class ServerStatus(StrEnum):
    CONFIGURING = "CONFIGURING"
    DEPLOYING = "DEPLOYING"
    POWERING_ON = "POWERING_ON"
    REBOOTING = "REBOOTING"
    POWERED_ON = "POWERED_ON"
    POWERING_OFF = "POWERING_OFF"
    POWERED_OFF = "POWERED_OFF"
    REMOVING = "REMOVING"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: str | None) -> ServerStatus:
        try:
            return cls((value or "").upper())
        except ValueError:
            return cls.UNKNOWN

    @property
    def starting(self) -> bool:
        return self in _STARTING


_STARTING = frozenset({
    ServerStatus.CONFIGURING,
    ServerStatus.DEPLOYING,
    ServerStatus.POWERING_ON,
    ServerStatus.REBOOTING,
})


@dataclass(frozen=True, slots=True)
class RemoteServer:
    """The provider's view of a server at the moment it was fetched."""

    id: str
    name: str
    status: ServerStatus
    ips: tuple[str, ...] = ()

    @property
    def address(self) -> str | None:
        """First usable IP address, if the server has one yet."""
        for ip in self.ips:
            if ip and ip != "0.0.0.0":
                return ip
        return None

    @classmethod
    def from_response(cls, data: ServerResponse) -> RemoteServer:
        status = data.get("status") or {"state": ""}
        return cls(
            id=data["id"],
            name=data.get("name") or "",
            status=ServerStatus.parse(status.get("state")),
            ips=tuple(ip.get("ip") or "" for ip in data.get("ips") or ()),
        )


@dataclass(frozen=True, slots=True)
class ServerSpec:
    name: str
    ssh_public_key: str
    hardware_id: str
    appliance_id: str

    def to_request(self) -> CreateServerRequest:
        return {
            "name": self.name,
            "rsa_key": self.ssh_public_key,
            "hardware": {"fixed_instance_size_id": self.hardware_id},
            "appliance_id": self.appliance_id,
        }


@dataclass(frozen=True, slots=True)
class Option:
    """A selectable hardware flavour or appliance image."""

    id: str
    name: str
