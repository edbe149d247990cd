from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Protocol, runtime_checkable

from google import genai
from google.genai import types

logger = logging.getLogger(__name__)


@runtime_checkable
class ReasoningService(Protocol):
    async def complete(self, prompt: str) -> str:
        """Free text that should contain exactly one JSON action object."""
        ...


def _get_vertex_genai_client(*, project: Optional[str], location: str, api_version: str) -> genai.Client:
    kwargs: dict[str, Any] = {
        "vertexai": True,
        "location": location,
        "http_options": types.HttpOptions(api_version=api_version),
    }
    if project:
        kwargs["project"] = project
    return genai.Client(**kwargs)


class GeminiReasoningService:
    """
    Vertex AI Gemini via google-genai.

    The SDK call is blocking, so it runs in a worker thread; the caller bounds
    it with a timeout. JSON mode is requested but not relied on: the decision
    engine still extracts the first object from whatever text comes back.
    """

    def __init__(
        self,
        *,
        model: str = "gemini-2.5-flash",
        project: Optional[str] = None,
        location: str = "global",
        api_version: str = "v1",
        max_output_tokens: int = 500,
        client: Any | None = None,
    ) -> None:
        self._model = model
        self._max_output_tokens = int(max_output_tokens)
        self._client = client or _get_vertex_genai_client(project=project, location=location, api_version=api_version)

    def _generate(self, prompt: str) -> str:
        resp = self._client.models.generate_content(
            model=self._model,
            contents=prompt,
            config={"response_mime_type": "application/json", "max_output_tokens": self._max_output_tokens},
        )
        return getattr(resp, "text", None) or ""

    async def complete(self, prompt: str) -> str:
        text = await asyncio.to_thread(self._generate, prompt)
        logger.debug("reasoning.complete model=%s chars=%d", self._model, len(text))
        return text
