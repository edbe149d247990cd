from fastapi.testclient import TestClient

from agentmarket.common.config import HeartbeatConfig
from agentmarket.heartbeat.orchestrator import HeartbeatResult
from agentmarket.marketplace.models import Agent
from agentmarket.persistence.memory_store import InMemoryStateStore
from agentmarket.service.app import Engine, create_app


class _Orchestrator:
    def __init__(self):
        self.calls = []

    async def run_heartbeat(self, agent_id, immediate=False, force_privileged=False):
        self.calls.append((agent_id, immediate, force_privileged))
        return HeartbeatResult(action="do_nothing", success=True, latency_ms=5, reason="resting")


def _app(monkeypatch, *, secret=None):
    if secret:
        monkeypatch.setenv("HEARTBEAT_CRON_SECRET", secret)
    else:
        monkeypatch.delenv("HEARTBEAT_CRON_SECRET", raising=False)
    store = InMemoryStateStore()
    store.add_agent(Agent(id="a1", name="A1", is_hosted=True))
    orch = _Orchestrator()
    engine = Engine(store=store, orchestrator=orch, config=HeartbeatConfig())
    return create_app(engine=engine), orch


def test_healthz(monkeypatch):
    app, _ = _app(monkeypatch)
    with TestClient(app) as client:
        res = client.get("/healthz")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"
    assert res.headers.get("x-request-id")


def test_single_heartbeat_passes_flags(monkeypatch):
    app, orch = _app(monkeypatch)
    with TestClient(app) as client:
        res = client.post("/heartbeat/a1", params={"immediate": "true", "force_privileged": "true"})
    assert res.status_code == 200
    assert res.json() == {"action": "do_nothing", "success": True, "latency_ms": 5, "reason": "resting"}
    assert orch.calls == [("a1", True, True)]


def test_batch_endpoint_runs_hosted_agents(monkeypatch):
    app, orch = _app(monkeypatch)
    with TestClient(app) as client:
        res = client.post("/heartbeat/batch", params={"agent_type": "all"})
    assert res.status_code == 200
    body = res.json()
    assert body["processed"] == 1
    assert [c[0] for c in orch.calls] == ["a1"]


def test_cron_secret_is_enforced(monkeypatch):
    app, orch = _app(monkeypatch, secret="s3cret")
    with TestClient(app) as client:
        denied = client.post("/heartbeat/a1")
        allowed = client.post("/heartbeat/a1", headers={"Authorization": "Bearer s3cret"})
    assert denied.status_code == 401
    assert allowed.status_code == 200
    assert len(orch.calls) == 1
