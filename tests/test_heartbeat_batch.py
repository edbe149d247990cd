import asyncio
import random

import pytest

from agentmarket.common.config import HeartbeatConfig
from agentmarket.heartbeat.batch import run_batch
from agentmarket.heartbeat.orchestrator import HeartbeatResult
from agentmarket.marketplace.models import Agent
from agentmarket.persistence.memory_store import InMemoryStateStore


class _Orchestrator:
    def __init__(self, *, fail_for=(), skip_for=()):
        self.fail_for = set(fail_for)
        self.skip_for = set(skip_for)
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def run_heartbeat(self, agent_id, immediate=False, force_privileged=False):
        self.calls.append(agent_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if agent_id in self.fail_for:
                raise RuntimeError("store exploded")
            if agent_id in self.skip_for:
                return HeartbeatResult(action="skip", success=True, latency_ms=1, skipped=True, reason="idle")
            return HeartbeatResult(action="do_nothing", success=True, latency_ms=3)
        finally:
            self.in_flight -= 1


class _Sleeps:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _store():
    store = InMemoryStateStore()
    store.add_agent(Agent(id="house1", name="H1", is_hosted=True))
    store.add_agent(Agent(id="u1", name="U1", is_hosted=True))
    store.add_agent(Agent(id="u2", name="U2", is_hosted=True))
    store.add_agent(Agent(id="paused", name="P", is_hosted=True, is_paused=True))
    store.add_agent(Agent(id="external", name="E", is_hosted=False))
    store.add_agent(Agent(id="retired", name="R", is_hosted=True, is_active=False))
    return store


CFG = HeartbeatConfig(privileged_agent_ids=frozenset({"house1"}))


def test_batch_runs_active_hosted_agents_and_summarizes():
    orch = _Orchestrator(fail_for={"u2"}, skip_for={"u1"})
    sleeps = _Sleeps()

    async def _run():
        return await run_batch(
            orchestrator=orch, store=_store(), config=CFG, sleep=sleeps, rng=random.Random(7)
        )

    summary = asyncio.run(_run())
    assert sorted(orch.calls) == ["house1", "u1", "u2"]
    assert summary["processed"] == 3
    assert summary["succeeded"] == 1
    assert summary["skipped"] == 1
    assert summary["failed"] == 1
    assert [o["agent_id"] for o in summary["outcomes"]] == ["house1", "u1", "u2"]
    failed = summary["outcomes"][2]
    assert failed["success"] is False
    assert "store exploded" in failed["error"]
    assert len(sleeps.delays) == 3
    assert all(0.0 <= d <= 0.5 for d in sleeps.delays)


@pytest.mark.parametrize(
    "agent_type, expected",
    [("house", ["house1"]), ("user", ["u1", "u2"]), ("all", ["house1", "u1", "u2"])],
)
def test_batch_agent_type_filter(agent_type, expected):
    orch = _Orchestrator()

    async def _run():
        return await run_batch(orchestrator=orch, store=_store(), config=CFG, agent_type=agent_type, jitter_ms=0)

    asyncio.run(_run())
    assert sorted(orch.calls) == expected


def test_batch_respects_concurrency_limit_and_limit():
    store = InMemoryStateStore()
    for i in range(8):
        store.add_agent(Agent(id=f"a{i}", name=f"A{i}", is_hosted=True))
    orch = _Orchestrator()

    async def _run():
        return await run_batch(orchestrator=orch, store=store, config=CFG, concurrency=2, limit=6, jitter_ms=0)

    summary = asyncio.run(_run())
    assert summary["processed"] == 6
    assert orch.max_in_flight <= 2


def test_batch_rejects_unknown_agent_type():
    async def _run():
        await run_batch(orchestrator=_Orchestrator(), store=_store(), config=CFG, agent_type="robots")

    with pytest.raises(ValueError):
        asyncio.run(_run())
