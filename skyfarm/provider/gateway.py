"""Async facade over the cloud provider's server API.

Everything above this module talks in ``RemoteServer``/``ServerSpec`` and
``ProviderError``; only this module knows paths, payloads and status codes.

Example:
    async with ProviderGateway(api_token) as gateway:
        servers = await gateway.list_servers()
"""

from __future__ import annotations

from typing import Any, Final, cast

from loguru import logger
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from skyfarm.errors import ProviderAuthError, ProviderError, ServerNotFound
from skyfarm.infra.http import BearerAuth, HttpClient, HttpError

from .types import (
    Option,
    OptionResponse,
    RemoteServer,
    ServerResponse,
    ServerSpec,
)

API_BASE: Final = "https://cloudpanel-api.1and1.com/v1"
PAGE_SIZE: Final = 100


def _is_transient(e: BaseException) -> bool:
    return isinstance(e, ProviderError) and e.transient


class ProviderGateway:
    """Provider operations bound to a single API credential.

    Reads (list/get) are retried on transient failures (429, 5xx, no
    response); writes are attempted exactly once.
    """

    def __init__(
        self,
        api_token: str,
        *,
        base_url: str = API_BASE,
        timeout: float = 30,
        read_attempts: int = 3,
        retry_base_delay: float = 1.0,
    ) -> None:
        self._api_token = api_token
        self._read_attempts = read_attempts
        self._retry_base_delay = retry_base_delay
        self._log = logger.bind(component="gateway")
        self._http = HttpClient(
            base_url,
            BearerAuth(api_token),
            timeout=timeout,
            default_headers={"Content-Type": "application/json", "X-TOKEN": api_token},
        )

    @property
    def credential(self) -> str:
        return self._api_token

    async def __aenter__(self) -> ProviderGateway:
        return self

    async def __aexit__(self, *_args: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._http.close()

    # =========================================================================
    # Transport
    # =========================================================================

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        try:
            return await self._http.request(method, path, json=json, params=params)
        except HttpError as e:
            self._log.warning(
                "API error {method} {path}: {status}",
                method=method, path=path, status=e.status,
            )
            match e.status:
                case 404:
                    raise ServerNotFound(e.status, e.body, operation) from e
                case 401 | 403:
                    raise ProviderAuthError(e.status, e.body, operation) from e
                case _:
                    raise ProviderError(e.status, e.body, operation) from e

    async def _read(
        self, path: str, operation: str, params: dict[str, Any] | None = None
    ) -> Any:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._read_attempts),
            wait=wait_exponential(multiplier=self._retry_base_delay, max=10),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        ):
            with attempt:
                return await self._request("GET", path, operation, params=params)
        raise AssertionError("unreachable")

    # =========================================================================
    # Servers
    # =========================================================================

    async def list_servers(self) -> list[RemoteServer]:
        """List every server visible to this credential, across all pages."""
        self._log.debug("Listing all servers")
        servers: list[RemoteServer] = []
        page = 1

        while True:
            result = await self._read(
                "/servers", "list_servers", params={"page": page, "per_page": PAGE_SIZE}
            )
            batch = cast(list[ServerResponse], result or [])
            servers.extend(RemoteServer.from_response(s) for s in batch)
            if len(batch) < PAGE_SIZE:
                break
            page += 1

        return servers

    async def get_server(self, server_id: str) -> RemoteServer:
        self._log.debug("Fetching server {id}", id=server_id)
        result = await self._read(f"/servers/{server_id}", "get_server")
        if not result:
            raise ProviderError(0, "empty response", "get_server")
        return RemoteServer.from_response(cast(ServerResponse, result))

    async def create_server(self, spec: ServerSpec) -> RemoteServer:
        self._log.info(
            "Creating server {name} (hardware={hardware}, appliance={appliance})",
            name=spec.name, hardware=spec.hardware_id, appliance=spec.appliance_id,
        )
        result = await self._request(
            "POST", "/servers", "create_server", json=dict(spec.to_request())
        )
        if not result:
            raise ProviderError(0, "empty response", "create_server")
        return RemoteServer.from_response(cast(ServerResponse, result))

    async def delete_server(self, server_id: str) -> None:
        """Delete a server, releasing its IPs.

        Raises:
            ServerNotFound: The server does not exist, which callers that
                only care about the server being gone can treat as success.
        """
        self._log.info("Deleting server {id}", id=server_id)
        await self._request(
            "DELETE", f"/servers/{server_id}", "delete_server", params={"keep_ips": "false"}
        )

    # =========================================================================
    # Options (configuration helpers)
    # =========================================================================

    async def list_hardware_options(self) -> list[Option]:
        result = await self._read("/servers/fixed_instance_sizes", "list_hardware_options")
        return [_option(o) for o in cast(list[OptionResponse], result or [])]

    async def list_appliance_options(self) -> list[Option]:
        result = await self._read("/server_appliances", "list_appliance_options")
        return [_option(o) for o in cast(list[OptionResponse], result or [])]

    async def check_credentials(self) -> None:
        """Make a cheap authenticated call; raises ProviderAuthError if rejected."""
        await self._read("/datacenters", "check_credentials")


def _option(data: OptionResponse) -> Option:
    return Option(id=data["id"], name=data.get("name") or data["id"])
