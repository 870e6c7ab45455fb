from __future__ import annotations

import asyncio

import pytest

from skyfarm.decommission import DecommissionQueue
from skyfarm.errors import ProviderError, ServerNotFound

pytestmark = [pytest.mark.unit]


class ScriptedDeleter:
    """Deleter whose outcome per server is scripted as a list of exceptions (None = success)."""

    def __init__(self, credential: str, outcomes: dict[str, list[Exception | None]]) -> None:
        self.credential = credential
        self.outcomes = outcomes
        self.attempts: list[str] = []

    async def delete_server(self, server_id: str) -> None:
        self.attempts.append(server_id)
        script = self.outcomes.get(server_id, [])
        outcome = script.pop(0) if script else None
        if outcome is not None:
            raise outcome


class DeleterFactory:
    def __init__(self, outcomes: dict[str, list[Exception | None]] | None = None) -> None:
        self.outcomes = outcomes or {}
        self.requested: list[str] = []
        self.deleters: dict[str, ScriptedDeleter] = {}

    def __call__(self, credential: str) -> ScriptedDeleter:
        self.requested.append(credential)
        return self.deleters.setdefault(credential, ScriptedDeleter(credential, self.outcomes))

    def attempts(self) -> list[str]:
        return [a for d in self.deleters.values() for a in d.attempts]


@pytest.mark.asyncio
async def test_enqueued_servers_are_deleted():
    factory = DeleterFactory()
    async with DecommissionQueue(factory, retry_interval=0.01) as queue:
        queue.enqueue("tok", "s1")
        queue.enqueue("tok", "s2")
        await queue.join(timeout=2)

    assert sorted(factory.attempts()) == ["s1", "s2"]
    assert queue.pending == ()


@pytest.mark.asyncio
async def test_enqueue_wakes_idle_worker():
    factory = DeleterFactory()
    async with DecommissionQueue(factory, retry_interval=60) as queue:
        await asyncio.sleep(0.01)
        queue.enqueue("tok", "late")
        await queue.join(timeout=2)

    assert factory.attempts() == ["late"]


@pytest.mark.asyncio
async def test_failed_deletions_are_retried_until_they_succeed():
    busy = ProviderError(400, "server has a pending event", "delete_server")
    factory = DeleterFactory({"s1": [busy, ProviderError(503, "down"), None]})

    async with DecommissionQueue(factory, retry_interval=0.01) as queue:
        queue.enqueue("tok", "s1")
        await queue.join(timeout=2)

    assert factory.attempts() == ["s1", "s1", "s1"]


@pytest.mark.asyncio
async def test_not_found_counts_as_deleted():
    factory = DeleterFactory({"gone": [ServerNotFound(404, "not found")]})
    async with DecommissionQueue(factory, retry_interval=0.01) as queue:
        queue.enqueue("tok", "gone")
        await queue.join(timeout=2)

    assert factory.attempts() == ["gone"]


@pytest.mark.asyncio
async def test_duplicates_are_kept_and_each_resolves():
    factory = DeleterFactory({"s1": [None, ServerNotFound(404, "not found")]})
    queue = DecommissionQueue(factory, retry_interval=0.01)
    queue.enqueue("tok", "s1")
    queue.enqueue("tok", "s1")
    assert len(queue.pending) == 2

    async with queue:
        await queue.join(timeout=2)

    assert factory.attempts() == ["s1", "s1"]


@pytest.mark.asyncio
async def test_entries_are_grouped_by_credential():
    factory = DeleterFactory()
    queue = DecommissionQueue(factory, retry_interval=0.01)
    queue.enqueue("b", "b1")
    queue.enqueue("a", "a1")
    queue.enqueue("b", "b2")
    assert [(p.credential, p.server_id) for p in queue.pending] == [
        ("a", "a1"),
        ("b", "b1"),
        ("b", "b2"),
    ]

    async with queue:
        await queue.join(timeout=2)

    assert factory.requested == ["a", "b"]
    assert factory.deleters["b"].attempts == ["b1", "b2"]


@pytest.mark.asyncio
async def test_one_failure_does_not_block_others():
    factory = DeleterFactory({"stuck": [ProviderError(500, "boom")] * 3})
    async with DecommissionQueue(factory, retry_interval=0.01) as queue:
        queue.enqueue("tok", "stuck")
        queue.enqueue("tok", "fine")
        await queue.join(timeout=2)

    attempts = factory.attempts()
    assert attempts.count("stuck") == 4
    assert attempts.count("fine") == 1


@pytest.mark.asyncio
async def test_stop_keeps_unresolved_entries():
    factory = DeleterFactory({"stuck": [ProviderError(500, "boom")] * 100})
    queue = DecommissionQueue(factory, retry_interval=60)
    queue.start()
    assert queue.running
    queue.enqueue("tok", "stuck")
    await asyncio.sleep(0.01)
    await queue.stop()

    assert not queue.running
    assert [p.server_id for p in queue.pending] == ["stuck"]


@pytest.mark.asyncio
async def test_join_times_out_while_pending():
    queue = DecommissionQueue(DeleterFactory())
    queue.enqueue("tok", "never-started")
    with pytest.raises(TimeoutError):
        await queue.join(timeout=0.01)


@pytest.mark.asyncio
async def test_failing_deleter_factory_is_retried():
    inner = DeleterFactory()
    calls: list[str] = []

    def flaky_factory(credential: str) -> ScriptedDeleter:
        calls.append(credential)
        if len(calls) == 1:
            raise RuntimeError("credential store unavailable")
        return inner(credential)

    async with DecommissionQueue(flaky_factory, retry_interval=0.01) as queue:
        queue.enqueue("tok", "s1")
        await queue.join(timeout=2)
        assert queue.running

    assert calls == ["tok", "tok"]
    assert inner.attempts() == ["s1"]
