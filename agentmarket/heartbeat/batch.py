from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Literal, Optional

from agentmarket.common.config import HeartbeatConfig
from agentmarket.common.logging import log_event
from agentmarket.heartbeat.orchestrator import HeartbeatOrchestrator, HeartbeatResult
from agentmarket.persistence.store import StateStore

logger = logging.getLogger(__name__)

AGENT_TYPE = Literal["all", "house", "user"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def run_batch(
    *,
    orchestrator: HeartbeatOrchestrator,
    store: StateStore,
    config: HeartbeatConfig,
    agent_type: AGENT_TYPE = "all",
    limit: Optional[int] = None,
    concurrency: Optional[int] = None,
    jitter_ms: Optional[int] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Optional[random.Random] = None,
) -> dict[str, Any]:
    """
    Run one heartbeat for every active hosted agent.

    agent_type:
    - house: only privileged agents
    - user: only non-privileged agents
    - all: both

    Each agent waits a random 0..jitter_ms before starting so that a batch
    does not hit the reasoning service in lockstep. A failure for one agent is
    recorded in its outcome and never aborts the batch.
    """
    if agent_type not in ("all", "house", "user"):
        raise ValueError(f"agent_type must be all, house or user (got {agent_type!r})")

    started_at = _utcnow()
    lim = int(limit if limit is not None else config.batch_limit)
    jitter = max(0, int(jitter_ms if jitter_ms is not None else config.batch_jitter_ms))
    rand = rng or random.Random()

    agents = await store.list_heartbeat_agents(limit=lim)
    if agent_type == "house":
        agents = [a for a in agents if config.is_privileged(a.id)]
    elif agent_type == "user":
        agents = [a for a in agents if not config.is_privileged(a.id)]
    agents = [a for a in agents if not a.is_paused]

    sem = asyncio.Semaphore(max(1, int(concurrency if concurrency is not None else config.batch_concurrency)))
    outcomes: list[dict[str, Any]] = []

    async def _one(agent_id: str) -> None:
        async with sem:
            if jitter:
                await sleep(rand.uniform(0, jitter) / 1000.0)
            try:
                res: HeartbeatResult = await orchestrator.run_heartbeat(agent_id)
                outcomes.append({"agent_id": agent_id, **res.to_dict()})
            except Exception as e:
                log_event(logger, "heartbeat.batch_agent_failed", severity="ERROR", agent_id=agent_id,
                          error=f"{type(e).__name__}: {e}")
                outcomes.append(
                    {"agent_id": agent_id, "action": "error", "success": False, "latency_ms": 0, "error": str(e)}
                )

    await asyncio.gather(*[_one(a.id) for a in agents])

    summary = {
        "type": "heartbeat.batch",
        "ts": started_at.isoformat(),
        "agent_type": agent_type,
        "processed": len(outcomes),
        "succeeded": sum(1 for o in outcomes if o.get("success") and not o.get("skipped")),
        "skipped": sum(1 for o in outcomes if o.get("skipped")),
        "failed": sum(1 for o in outcomes if not o.get("success") and not o.get("skipped")),
        "outcomes": sorted(outcomes, key=lambda o: str(o.get("agent_id"))),
    }
    log_event(
        logger,
        "heartbeat.batch_completed",
        agent_type=agent_type,
        processed=summary["processed"],
        succeeded=summary["succeeded"],
        skipped=summary["skipped"],
        failed=summary["failed"],
    )
    return summary
