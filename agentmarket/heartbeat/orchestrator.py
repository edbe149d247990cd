from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from agentmarket.common.config import HeartbeatConfig
from agentmarket.common.errors import AgentNotFound
from agentmarket.common.logging import bind_heartbeat_id, log_event
from agentmarket.heartbeat.actions import action_to_dict
from agentmarket.heartbeat.context import AgentContext, ContextAggregator
from agentmarket.heartbeat.decision import Decision, DecisionEngine
from agentmarket.heartbeat.executor import ActionExecutor, ExecutionResult
from agentmarket.heartbeat.policy import should_skip
from agentmarket.marketplace.models import ExecutionLogEntry
from agentmarket.persistence.store import StateStore

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class HeartbeatResult:
    action: str
    success: bool
    latency_ms: int
    skipped: bool = False
    reason: Optional[str] = None
    error: Optional[str] = None
    heartbeat_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"action": self.action, "success": self.success, "latency_ms": self.latency_ms}
        if self.skipped:
            out["skipped"] = True
        if self.reason is not None:
            out["reason"] = self.reason
        if self.error is not None:
            out["error"] = self.error
        if self.heartbeat_id is not None:
            out["heartbeat_id"] = self.heartbeat_id
        return out


@dataclass(slots=True)
class _CycleOutcome:
    result: HeartbeatResult
    entry: ExecutionLogEntry
    extra: dict[str, Any] = field(default_factory=dict)


class HeartbeatOrchestrator:
    """
    Runs one observe -> decide -> act -> log cycle per call.

    Observation and decision are bounded by `cycle_timeout_s`. Execution is
    not: once an action starts it runs to completion under its own per-call
    timeouts, so a release is never cancelled between signing and settlement.
    The execution log entry is written after the cycle so that exactly one
    entry exists per cycle. Nothing raised inside a cycle escapes
    `run_heartbeat`.
    """

    def __init__(
        self,
        *,
        store: StateStore,
        aggregator: ContextAggregator,
        decisions: DecisionEngine,
        executor: ActionExecutor,
        config: HeartbeatConfig,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._aggregator = aggregator
        self._decisions = decisions
        self._executor = executor
        self._cfg = config
        self._clock = clock
        # Only agents with a cycle in flight have an entry.
        self._in_flight: set[str] = set()

    async def run_heartbeat(
        self,
        agent_id: str,
        immediate: bool = False,
        force_privileged: bool = False,
    ) -> HeartbeatResult:
        agent_id = str(agent_id)
        if agent_id in self._in_flight:
            log_event(logger, "heartbeat.already_in_flight", severity="WARNING", agent_id=agent_id)
            return HeartbeatResult(
                action="skip", success=False, latency_ms=0, skipped=True, reason="heartbeat already in flight"
            )

        self._in_flight.add(agent_id)
        try:
            with bind_heartbeat_id(agent_id=agent_id) as hid:
                outcome = await self._cycle(agent_id, immediate=immediate, force_privileged=force_privileged, hid=hid)
                await self._write_log(outcome.entry)
                log_event(
                    logger,
                    "heartbeat.completed",
                    severity="INFO" if outcome.result.success else "WARNING",
                    agent_id=agent_id,
                    **outcome.result.to_dict(),
                    **outcome.extra,
                )
                return outcome.result
        finally:
            self._in_flight.discard(agent_id)

    def _elapsed_ms(self, start: float) -> int:
        return int(max(0.0, (time.perf_counter() - start) * 1000.0))

    def _error_outcome(self, agent_id: str, error: str, *, hid: str, start: float) -> _CycleOutcome:
        entry = ExecutionLogEntry(
            agent_id=agent_id,
            action_chosen={"type": "error"},
            execution_success=False,
            error_message=error,
            heartbeat_id=hid,
            created_at=self._clock(),
        )
        result = HeartbeatResult(
            action="error", success=False, latency_ms=self._elapsed_ms(start), error=error, heartbeat_id=hid
        )
        return _CycleOutcome(result=result, entry=entry)

    async def _cycle(self, agent_id: str, *, immediate: bool, force_privileged: bool, hid: str) -> _CycleOutcome:
        start = time.perf_counter()
        try:
            prepared = await asyncio.wait_for(
                self._observe_and_decide(
                    agent_id, immediate=immediate, force_privileged=force_privileged, hid=hid, start=start
                ),
                timeout=self._cfg.cycle_timeout_s,
            )
        except asyncio.TimeoutError:
            msg = f"heartbeat cycle timed out after {self._cfg.cycle_timeout_s:.0f}s"
            return self._error_outcome(agent_id, msg, hid=hid, start=start)
        if isinstance(prepared, _CycleOutcome):
            return prepared
        context, summary, decision = prepared
        return await self._act(context, summary, decision, hid=hid, start=start)

    async def _observe_and_decide(
        self, agent_id: str, *, immediate: bool, force_privileged: bool, hid: str, start: float
    ) -> _CycleOutcome | tuple[AgentContext, dict[str, Any], Decision]:
        try:
            context = await asyncio.wait_for(
                self._aggregator.gather(agent_id, force_privileged=force_privileged),
                timeout=self._cfg.store_timeout_s,
            )
        except AgentNotFound as e:
            return self._error_outcome(agent_id, str(e), hid=hid, start=start)
        except asyncio.TimeoutError:
            return self._error_outcome(agent_id, "context gathering timed out", hid=hid, start=start)
        except Exception as e:
            log_event(logger, "heartbeat.context_failed", severity="ERROR", agent_id=agent_id,
                      error=f"{type(e).__name__}: {e}")
            return self._error_outcome(agent_id, f"Context error: {type(e).__name__}: {e}", hid=hid, start=start)

        await self._touch(agent_id)

        summary = context.summary(immediate=immediate)

        if not context.agent.is_active or context.agent.is_paused:
            reason = "Agent is paused" if context.agent.is_paused else "Agent is inactive"
            return self._skip_outcome(context, summary, reason, hid=hid, start=start)

        if not immediate:
            policy = should_skip(context, context.is_privileged, max_own_listings=self._cfg.max_own_listings)
            if policy.skip:
                return self._skip_outcome(context, summary, policy.reason, hid=hid, start=start)

        decision = await self._decisions.decide_with_metrics(context)
        return context, summary, decision

    async def _act(
        self, context: AgentContext, summary: dict[str, Any], decision: Decision, *, hid: str, start: float
    ) -> _CycleOutcome:
        agent_id = context.agent.id
        try:
            executed = await self._executor.execute(context, decision.action)
        except Exception as e:
            # SigningFailure and unexpected store errors end the cycle as a failed action.
            log_event(logger, "heartbeat.execution_failed", severity="ERROR", agent_id=agent_id,
                      action_type=decision.action.type, error_class=type(e).__name__, error=str(e))
            executed = ExecutionResult(success=False, error=f"{type(e).__name__}: {e}")

        chosen = action_to_dict(decision.action)
        if executed.result:
            chosen["result"] = executed.result
        if executed.data:
            chosen["data"] = dict(executed.data)
        if decision.degraded:
            summary["decision_degraded"] = True

        entry = ExecutionLogEntry(
            agent_id=agent_id,
            action_chosen=chosen,
            execution_success=executed.success,
            context_summary=summary,
            error_message=executed.error,
            decision_latency_ms=decision.latency_ms,
            heartbeat_id=hid,
            created_at=self._clock(),
        )
        result = HeartbeatResult(
            action=decision.action.type,
            success=executed.success,
            latency_ms=self._elapsed_ms(start),
            reason=executed.result,
            error=executed.error,
            heartbeat_id=hid,
        )
        return _CycleOutcome(result=result, entry=entry, extra={"decision_latency_ms": decision.latency_ms})

    def _skip_outcome(
        self, context: AgentContext, summary: dict[str, Any], reason: str, *, hid: str, start: float
    ) -> _CycleOutcome:
        entry = ExecutionLogEntry(
            agent_id=context.agent.id,
            action_chosen={"type": "skip", "reason": reason},
            execution_success=True,
            context_summary=summary,
            heartbeat_id=hid,
            created_at=self._clock(),
        )
        result = HeartbeatResult(
            action="skip",
            success=True,
            latency_ms=self._elapsed_ms(start),
            skipped=True,
            reason=reason,
            heartbeat_id=hid,
        )
        return _CycleOutcome(result=result, entry=entry)

    async def _touch(self, agent_id: str) -> None:
        try:
            await asyncio.wait_for(
                self._store.touch_heartbeat(agent_id, at=self._clock()),
                timeout=self._cfg.store_timeout_s,
            )
        except Exception as e:
            log_event(logger, "heartbeat.touch_failed", severity="WARNING", agent_id=agent_id,
                      error=f"{type(e).__name__}: {e}")

    async def _write_log(self, entry: ExecutionLogEntry) -> None:
        try:
            await asyncio.wait_for(self._store.append_log(entry), timeout=self._cfg.store_timeout_s)
        except Exception as e:
            log_event(logger, "heartbeat.log_write_failed", severity="ERROR", agent_id=entry.agent_id,
                      action_type=entry.action_type, error=f"{type(e).__name__}: {e}")
