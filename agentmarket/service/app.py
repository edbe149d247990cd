from __future__ import annotations

import hmac
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Header, HTTPException, Query

from agentmarket.clients.balance import Web3BalanceProvider
from agentmarket.clients.custody import HttpCustodyClient
from agentmarket.clients.reasoning import GeminiReasoningService
from agentmarket.clients.settlement import HttpSettlementClient
from agentmarket.common.config import HeartbeatConfig, ServiceEndpoints, _env, _env_bool
from agentmarket.common.logging import init_structured_logging, install_fastapi_request_id_middleware, log_event
from agentmarket.heartbeat.batch import run_batch
from agentmarket.heartbeat.context import ContextAggregator
from agentmarket.heartbeat.decision import DecisionEngine
from agentmarket.heartbeat.executor import ActionExecutor, EscrowContracts
from agentmarket.heartbeat.orchestrator import HeartbeatOrchestrator
from agentmarket.persistence.firestore_retry import SHUTDOWN_EVENT
from agentmarket.persistence.memory_store import InMemoryStateStore
from agentmarket.persistence.store import StateStore

logger = logging.getLogger(__name__)

SERVICE_NAME = "agentmarket-heartbeat"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class Engine:
    store: StateStore
    orchestrator: HeartbeatOrchestrator
    config: HeartbeatConfig
    http_client: Optional[httpx.AsyncClient] = None


def build_engine(
    *,
    config: HeartbeatConfig | None = None,
    endpoints: ServiceEndpoints | None = None,
    store: StateStore | None = None,
) -> Engine:
    """
    Wire the production collaborators.

    HEARTBEAT_DRY_RUN=1 swaps Firestore for the in-memory store; every other
    collaborator is still the real client.
    """
    cfg = config or HeartbeatConfig.from_env()
    ep = endpoints or ServiceEndpoints.from_env()

    if store is None:
        if _env_bool("HEARTBEAT_DRY_RUN", False):
            store = InMemoryStateStore()
        else:
            from agentmarket.persistence.firestore_store import FirestoreStateStore  # noqa: WPS433

            store = FirestoreStateStore(timeout_s=cfg.store_timeout_s)

    client = httpx.AsyncClient(headers={"user-agent": f"{SERVICE_NAME}/0.1"}, follow_redirects=False)
    aggregator = ContextAggregator(
        store=store,
        balances=Web3BalanceProvider(rpc_url=ep.rpc_url, usdc_address=ep.usdc_address),
        config=cfg,
    )
    decisions = DecisionEngine(
        reasoning=GeminiReasoningService(
            model=ep.vertex_model,
            project=ep.vertex_project,
            location=ep.vertex_location,
            api_version=ep.vertex_http_api_version,
        ),
        timeout_s=cfg.reasoning_timeout_s,
    )
    executor = ActionExecutor(
        store=store,
        settlement=HttpSettlementClient(
            base_url=ep.marketplace_base_url,
            api_key=ep.marketplace_api_key,
            timeout_s=cfg.settlement_timeout_s,
            client=client,
        ),
        custody=HttpCustodyClient(
            base_url=ep.custody_base_url,
            api_key=ep.custody_api_key,
            timeout_s=cfg.signing_timeout_s,
            client=client,
        ),
        contracts=EscrowContracts(v1_address=ep.escrow_address, v2_address=ep.escrow_v2_address),
        config=cfg,
    )
    orchestrator = HeartbeatOrchestrator(
        store=store,
        aggregator=aggregator,
        decisions=decisions,
        executor=executor,
        config=cfg,
    )
    return Engine(store=store, orchestrator=orchestrator, config=cfg, http_client=client)


def _check_secret(authorization: Optional[str]) -> None:
    secret = _env("HEARTBEAT_CRON_SECRET")
    if not secret:
        return
    expected = f"Bearer {secret}"
    if not authorization or not hmac.compare_digest(authorization.strip(), expected):
        raise HTTPException(status_code=401, detail="unauthorized")


def create_app(*, engine: Engine | None = None) -> FastAPI:
    """
    App factory. Tests pass a pre-built Engine; production builds one at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_structured_logging(service=SERVICE_NAME)
        eng = engine or build_engine()
        app.state.engine = eng
        log_event(logger, "service.started", privileged_agents=len(eng.config.privileged_agent_ids))
        try:
            yield
        finally:
            SHUTDOWN_EVENT.set()
            if eng.http_client is not None:
                await eng.http_client.aclose()

    app = FastAPI(title="Agent Marketplace Heartbeat", version="0.1.0", lifespan=lifespan)
    install_fastapi_request_id_middleware(app)

    @app.get("/healthz")
    async def healthz() -> dict[str, Any]:
        return {"status": "ok", "service": SERVICE_NAME, "ts": _utcnow().isoformat()}

    @app.post("/heartbeat/batch")
    async def heartbeat_batch(
        agent_type: Literal["all", "house", "user"] = Query(default="all"),
        limit: Optional[int] = Query(default=None, ge=1, le=500),
        authorization: Optional[str] = Header(default=None),
    ) -> dict[str, Any]:
        _check_secret(authorization)
        eng: Engine = app.state.engine
        return await run_batch(
            orchestrator=eng.orchestrator,
            store=eng.store,
            config=eng.config,
            agent_type=agent_type,
            limit=limit,
        )

    @app.post("/heartbeat/{agent_id}")
    async def heartbeat_one(
        agent_id: str,
        immediate: bool = Query(default=False),
        force_privileged: bool = Query(default=False),
        authorization: Optional[str] = Header(default=None),
    ) -> dict[str, Any]:
        _check_secret(authorization)
        eng: Engine = app.state.engine
        res = await eng.orchestrator.run_heartbeat(agent_id, immediate=immediate, force_privileged=force_privileged)
        return res.to_dict()

    return app


def main() -> None:
    port = int(os.getenv("PORT", "8080"))
    uvicorn.run(create_app(), host="0.0.0.0", port=port, log_config=None)


if __name__ == "__main__":
    main()
