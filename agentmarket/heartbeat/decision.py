from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError

from agentmarket.clients.reasoning import ReasoningService
from agentmarket.common.errors import MalformedDecision
from agentmarket.common.logging import log_event
from agentmarket.heartbeat.actions import AgentAction, DoNothing, parse_action
from agentmarket.heartbeat.context import AgentContext
from agentmarket.heartbeat.prompt import render_prompt

logger = logging.getLogger(__name__)

_DECODER = json.JSONDecoder()


def _strip_fences(text: str) -> str:
    cleaned = text.strip()
    if "```" in cleaned:
        cleaned = "\n".join(line for line in cleaned.splitlines() if not line.strip().startswith("```")).strip()
    return cleaned


def extract_action(text: Optional[str]) -> AgentAction:
    """
    Parse the first JSON object in free text into an AgentAction.

    Raises MalformedDecision when no object is found, it does not decode, or
    it does not match one of the known action shapes.
    """
    if not text or not text.strip():
        raise MalformedDecision("empty reply from reasoning service", raw_text=text)
    cleaned = _strip_fences(text)

    start = cleaned.find("{")
    if start < 0:
        raise MalformedDecision("no JSON object in reply", raw_text=text)
    try:
        obj, _end = _DECODER.raw_decode(cleaned[start:])
    except json.JSONDecodeError:
        # Fall back to the outermost braces (commentary between nested objects).
        end = cleaned.rfind("}")
        try:
            obj = json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError as e:
            raise MalformedDecision(f"could not decode JSON: {e.msg}", raw_text=text) from e

    if not isinstance(obj, dict):
        raise MalformedDecision("JSON reply is not an object", raw_text=text)
    try:
        return parse_action(obj)
    except ValidationError as e:
        kind = obj.get("type")
        first = e.errors()[0] if e.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()))
        raise MalformedDecision(
            f"invalid action (type={kind!r}): {where} {first.get('msg', '')}".strip(),
            raw_text=text,
        ) from e


@dataclass(frozen=True, slots=True)
class Decision:
    action: AgentAction
    latency_ms: int
    degraded: bool = False
    raw_text: Optional[str] = None


class DecisionEngine:
    def __init__(self, *, reasoning: ReasoningService, timeout_s: float = 45.0) -> None:
        self._reasoning = reasoning
        self._timeout_s = float(timeout_s)

    async def decide(self, context: AgentContext) -> AgentAction:
        return (await self.decide_with_metrics(context)).action

    async def decide_with_metrics(self, context: AgentContext) -> Decision:
        """Never raises: every failure becomes do_nothing with a diagnostic reason."""
        prompt = render_prompt(context)
        start = time.perf_counter()
        text: Optional[str] = None
        try:
            text = await asyncio.wait_for(self._reasoning.complete(prompt), timeout=self._timeout_s)
            action = extract_action(text)
            degraded = False
        except MalformedDecision as e:
            action, degraded = DoNothing(reason=f"Could not parse reasoning reply: {e}"), True
            log_event(logger, "heartbeat.malformed_decision", severity="WARNING", agent_id=context.agent.id,
                      error=str(e), raw_text=(text or "")[:500])
        except asyncio.TimeoutError:
            action, degraded = DoNothing(reason=f"Reasoning service timed out after {self._timeout_s:.0f}s"), True
            log_event(logger, "heartbeat.reasoning_timeout", severity="WARNING", agent_id=context.agent.id)
        except Exception as e:
            action, degraded = DoNothing(reason=f"Reasoning service error: {type(e).__name__}: {e}"), True
            log_event(logger, "heartbeat.reasoning_error", severity="ERROR", agent_id=context.agent.id,
                      error=f"{type(e).__name__}: {e}")
        latency_ms = int(max(0.0, (time.perf_counter() - start) * 1000.0))
        return Decision(action=action, latency_ms=latency_ms, degraded=degraded, raw_text=text)
