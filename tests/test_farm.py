from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from skyfarm import naming
from skyfarm.farm import BuildFarm
from skyfarm.provider.gateway import API_BASE

pytestmark = [pytest.mark.unit]


@pytest.fixture
def farm_for(gateways, bootstrapper):
    def _make(*pools, **kwargs) -> BuildFarm:
        return BuildFarm(
            pools,
            gateway_factory=gateways,
            bootstrapper_factory=lambda pool, gateway, directory: bootstrapper,
            retry_interval=0.01,
            **kwargs,
        )

    return _make


async def _attach(planned) -> list:
    return list(await asyncio.gather(*(p.future for p in planned)))


@pytest.mark.asyncio
async def test_pools_are_tried_in_declaration_order(make_pool, farm_for):
    first = make_pool(name="first", instance_cap=1)
    second = make_pool(name="second", api_token="other-token")

    async with farm_for(first, second) as farm:
        a = await _attach(await farm.provision("linux", 1))
        b = await _attach(await farm.provision("linux", 1))

    assert naming.parse(a[0].name).pool == "first"
    assert naming.parse(b[0].name).pool == "second"


@pytest.mark.asyncio
async def test_nothing_can_serve(make_pool, farm_for):
    async with farm_for(make_pool()) as farm:
        assert not await farm.can_provision("windows")
        assert await farm.provision("windows", 1) == []


@pytest.mark.asyncio
async def test_gateways_are_shared_per_credential(make_pool, farm_for, gateways):
    farm = farm_for(make_pool(name="a"), make_pool(name="b"), make_pool(name="c", api_token="t2"))
    assert farm.gateway(make_pool(name="a")) is farm.gateway(make_pool(name="b"))
    assert set(gateways.made) == {("token", API_BASE), ("t2", API_BASE)}


@pytest.mark.asyncio
async def test_removed_node_server_is_deleted(make_pool, farm_for, gateways):
    async with farm_for(make_pool()) as farm:
        (node,) = await _attach(await farm.provision("linux", 1))
        gateway = gateways.made[("token", API_BASE)]
        assert node.server_id in gateway.servers

        removed = await farm.remove_node(node.name)
        await farm.decommission_queue.join(timeout=2)

    assert removed is node
    assert node.name not in farm.directory
    assert gateway.deleted == [node.server_id]


@pytest.mark.asyncio
async def test_remove_unknown_node(make_pool, farm_for):
    async with farm_for(make_pool()) as farm:
        assert await farm.remove_node("jenkins-build-small-nope") is None
        assert farm.decommission_queue.pending == ()


@pytest.mark.asyncio
async def test_coordinator_lookup(make_pool, farm_for):
    farm = farm_for(make_pool())
    assert farm.coordinator("build").pool.name == "build"
    with pytest.raises(KeyError, match="build"):
        farm.coordinator("missing")


@pytest.mark.asyncio
async def test_from_config(tmp_path: Path, private_key: str, gateways, bootstrapper):
    jar = tmp_path / "slave.jar"
    jar.write_bytes(b"jar")
    (tmp_path / "skyfarm.toml").write_text(
        "[pools.build]\n"
        'api_token = "tok"\n'
        'ssh_public_key = "ssh-rsa AAAA"\n'
        f'private_key = """\n{private_key}"""\n'
        "\n"
        "[[pools.build.templates]]\n"
        'name = "small"\n'
        'hardware_id = "HW"\n'
        'appliance_id = "IMG"\n'
    )

    farm = BuildFarm.from_config(
        agent_jar=jar,
        project_dir=tmp_path,
        global_path=tmp_path / "missing.toml",
        gateway_factory=gateways,
        bootstrapper_factory=lambda pool, gateway, directory: bootstrapper,
    )
    assert await farm.can_provision(None)
    await farm.stop()


class DeadChannel:
    closed = True

    async def close(self) -> None:
        pass


@pytest.mark.asyncio
async def test_node_whose_agent_died_is_reaped_and_deleted(make_pool, farm_for, gateways):
    async with farm_for(make_pool(instance_cap=1), reap_interval=0.01) as farm:
        (node,) = await _attach(await farm.provision("linux", 1))
        node.mark_busy()
        node.channel = DeadChannel()

        for _ in range(200):
            if node.name not in farm.directory:
                break
            await asyncio.sleep(0.01)
        await farm.decommission_queue.join(timeout=2)

    assert node.name not in farm.directory
    assert gateways.made[("token", API_BASE)].deleted == [node.server_id]
    assert await farm.can_provision("linux")
