from __future__ import annotations

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from skyfarm.errors import ProviderAuthError, ProviderError, ServerNotFound
from skyfarm.provider import ProviderGateway, ServerSpec, ServerStatus
from skyfarm.provider.gateway import PAGE_SIZE

pytestmark = [pytest.mark.unit]

TOKEN = "secret"


def _server(i: int, state: str = "POWERED_ON", ip: str | None = "10.0.0.1") -> dict:
    return {
        "id": f"ID{i}",
        "name": f"server-{i}",
        "status": {"state": state, "percent": None},
        "ips": [{"id": f"IP{i}", "ip": ip, "type": "IPV4"}],
    }


class Api:
    """Just enough of the provider API to exercise the gateway."""

    def __init__(self, total: int = 3) -> None:
        self.servers = [_server(i) for i in range(total)]
        self.calls: list[tuple[str, str, dict[str, str]]] = []
        self.created: list[dict] = []
        self.flaky_failures = 2

    def app(self) -> web.Application:
        app = web.Application(middlewares=[self._auth])
        app.router.add_get("/servers/fixed_instance_sizes", self.sizes)
        app.router.add_get("/servers", self.list_servers)
        app.router.add_post("/servers", self.create)
        app.router.add_get("/servers/{id}", self.get_server)
        app.router.add_delete("/servers/{id}", self.delete)
        app.router.add_get("/server_appliances", self.appliances)
        app.router.add_get("/datacenters", self.datacenters)
        return app

    @web.middleware
    async def _auth(self, request: web.Request, handler):
        self.calls.append((request.method, request.path, dict(request.query)))
        if request.headers.get("X-TOKEN") != TOKEN:
            return web.json_response({"message": "invalid token"}, status=401)
        if request.headers.get("Authorization") != f"Bearer {TOKEN}":
            return web.json_response({"message": "invalid token"}, status=401)
        return await handler(request)

    async def list_servers(self, request: web.Request) -> web.Response:
        page = int(request.query["page"])
        per_page = int(request.query["per_page"])
        start = (page - 1) * per_page
        return web.json_response(self.servers[start : start + per_page])

    async def get_server(self, request: web.Request) -> web.Response:
        server_id = request.match_info["id"]
        if server_id == "flaky":
            if self.flaky_failures > 0:
                self.flaky_failures -= 1
                return web.Response(status=503, text="try again")
            return web.json_response(_server(99, "DEPLOYING", None))
        if server_id == "forbidden":
            return web.json_response({"message": "nope"}, status=403)
        for s in self.servers:
            if s["id"] == server_id:
                return web.json_response(s)
        return web.json_response({"message": "not found"}, status=404)

    async def create(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.created.append(body)
        return web.json_response(
            {"id": "NEW", "name": body["name"], "status": {"state": "CONFIGURING"}, "ips": []},
            status=202,
        )

    async def delete(self, request: web.Request) -> web.Response:
        server_id = request.match_info["id"]
        if server_id == "busy":
            return web.json_response({"message": "pending event"}, status=400)
        for s in self.servers:
            if s["id"] == server_id:
                self.servers.remove(s)
                return web.json_response(s, status=202)
        return web.json_response({"message": "not found"}, status=404)

    async def sizes(self, _: web.Request) -> web.Response:
        return web.json_response([{"id": "S1", "name": "S"}, {"id": "M1", "name": "M"}])

    async def appliances(self, _: web.Request) -> web.Response:
        return web.json_response([{"id": "IMG1", "name": "ubuntu"}])

    async def datacenters(self, _: web.Request) -> web.Response:
        return web.json_response([{"id": "DE"}])


@pytest.fixture
def api() -> Api:
    return Api()


@pytest.fixture
async def base_url(api: Api):
    srv = TestServer(api.app())
    await srv.start_server()
    yield f"http://{srv.host}:{srv.port}"
    await srv.close()


@pytest.fixture
async def gateway(base_url: str):
    async with ProviderGateway(TOKEN, base_url=base_url, retry_base_delay=0) as gw:
        yield gw


@pytest.mark.asyncio
async def test_list_servers(gateway: ProviderGateway):
    servers = await gateway.list_servers()
    assert [s.id for s in servers] == ["ID0", "ID1", "ID2"]
    assert servers[0].status is ServerStatus.POWERED_ON
    assert servers[0].address == "10.0.0.1"


@pytest.mark.asyncio
async def test_list_servers_pages(api: Api, gateway: ProviderGateway):
    api.servers = [_server(i) for i in range(PAGE_SIZE + 5)]
    servers = await gateway.list_servers()
    assert len(servers) == PAGE_SIZE + 5
    pages = [q["page"] for m, p, q in api.calls if p == "/servers" and m == "GET"]
    assert pages == ["1", "2"]


@pytest.mark.asyncio
async def test_get_server_unknown_status_and_missing_ip(api: Api, gateway: ProviderGateway):
    api.servers.append(_server(7, "SOMETHING_NEW", "0.0.0.0"))
    server = await gateway.get_server("ID7")
    assert server.status is ServerStatus.UNKNOWN
    assert server.address is None


@pytest.mark.asyncio
async def test_get_server_not_found(gateway: ProviderGateway):
    with pytest.raises(ServerNotFound) as exc:
        await gateway.get_server("nope")
    assert exc.value.status == 404
    assert exc.value.operation == "get_server"


@pytest.mark.asyncio
async def test_reads_retry_transient_errors(api: Api, gateway: ProviderGateway):
    server = await gateway.get_server("flaky")
    assert server.status is ServerStatus.DEPLOYING
    assert len([c for c in api.calls if c[1] == "/servers/flaky"]) == 3


@pytest.mark.asyncio
async def test_reads_give_up_after_attempts(api: Api, gateway: ProviderGateway):
    api.flaky_failures = 10
    with pytest.raises(ProviderError) as exc:
        await gateway.get_server("flaky")
    assert exc.value.status == 503
    assert exc.value.transient


@pytest.mark.asyncio
async def test_auth_errors_are_not_retried(api: Api, gateway: ProviderGateway):
    with pytest.raises(ProviderAuthError) as exc:
        await gateway.get_server("forbidden")
    assert not exc.value.transient
    assert len([c for c in api.calls if c[1] == "/servers/forbidden"]) == 1


@pytest.mark.asyncio
async def test_bad_credential(base_url: str):
    async with ProviderGateway("wrong", base_url=base_url) as gw:
        with pytest.raises(ProviderAuthError):
            await gw.check_credentials()


@pytest.mark.asyncio
async def test_check_credentials(gateway: ProviderGateway):
    await gateway.check_credentials()


@pytest.mark.asyncio
async def test_create_server(api: Api, gateway: ProviderGateway):
    spec = ServerSpec(name="jenkins-p-t-x", ssh_public_key="ssh-rsa AAA", hardware_id="S1", appliance_id="IMG1")
    server = await gateway.create_server(spec)
    assert server.id == "NEW"
    assert server.status is ServerStatus.CONFIGURING
    assert api.created == [
        {
            "name": "jenkins-p-t-x",
            "rsa_key": "ssh-rsa AAA",
            "hardware": {"fixed_instance_size_id": "S1"},
            "appliance_id": "IMG1",
        }
    ]


@pytest.mark.asyncio
async def test_delete_server_releases_ips(api: Api, gateway: ProviderGateway):
    await gateway.delete_server("ID1")
    assert [s["id"] for s in api.servers] == ["ID0", "ID2"]
    assert ("DELETE", "/servers/ID1", {"keep_ips": "false"}) in api.calls


@pytest.mark.asyncio
async def test_delete_missing_server(gateway: ProviderGateway):
    with pytest.raises(ServerNotFound):
        await gateway.delete_server("gone")


@pytest.mark.asyncio
async def test_delete_is_not_retried(api: Api, gateway: ProviderGateway):
    with pytest.raises(ProviderError) as exc:
        await gateway.delete_server("busy")
    assert exc.value.status == 400
    assert not isinstance(exc.value, ServerNotFound)
    assert len([c for c in api.calls if c[1] == "/servers/busy"]) == 1


@pytest.mark.asyncio
async def test_options(gateway: ProviderGateway):
    hardware = await gateway.list_hardware_options()
    appliances = await gateway.list_appliance_options()
    assert [o.id for o in hardware] == ["S1", "M1"]
    assert appliances[0].name == "ubuntu"


@pytest.mark.asyncio
async def test_unreachable_provider_is_transient(unused_tcp_port: int):
    async with ProviderGateway(
        TOKEN, base_url=f"http://127.0.0.1:{unused_tcp_port}", timeout=2, read_attempts=1
    ) as gw:
        with pytest.raises(ProviderError) as exc:
            await gw.list_servers()
    assert exc.value.status == 0
    assert exc.value.transient
