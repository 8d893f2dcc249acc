"""Generative AI adapter for the pipeline.

Two capabilities are exposed:
- complete_prompt: short-lived text generation (pro / flash tiers, optional
  Google Search grounding) through the google-genai SDK
- long-running deep research: reference stores for attaching documents,
  then start / poll of a background research interaction

Research is split into discrete calls so that the sequencer can persist the
interaction id and poll it across invocations. Interactions are reached over
REST with httpx because creation must be a streamed request; the id arrives
in the first stream events and the stream is then abandoned.
"""

import asyncio
import json
import logging
import os
import tempfile
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import google.genai as genai
import httpx
from google.genai import types

from asip.contracts.schemas import ModelTier, PipelineConfig, ResearchPoll, ResearchStatus
from asip.errors import (
    ConfigurationError,
    ContentGenerationError,
    DeepResearchError,
    ResearchFailedError,
)

logger = logging.getLogger(__name__)

_FAILED_STATES = {"failed", "cancelled", "expired"}


class ResearchRateLimiter:
    """Enforces a minimum spacing between research starts across the process."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._last_start = 0.0

    async def wait(self, min_interval: float) -> None:
        async with self._lock:
            if self._last_start:
                elapsed = time.monotonic() - self._last_start
                if elapsed < min_interval:
                    await asyncio.sleep(min_interval - elapsed)
            self._last_start = time.monotonic()


research_rate_limiter = ResearchRateLimiter()


class GenerativeClient:
    """Async client for completions, reference stores and research interactions."""

    def __init__(
        self,
        config: PipelineConfig,
        genai_client: Any | None = None,
        http_client: httpx.AsyncClient | None = None,
        rate_limiter: ResearchRateLimiter | None = None,
    ):
        self.config = config
        self._client = genai_client
        self._http_client = http_client
        self.rate_limiter = rate_limiter or research_rate_limiter

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------

    def _require_client(self) -> Any:
        if self._client is None:
            if not self.config.has_credentials:
                raise ConfigurationError("GEMINI_API_KEY is not configured")
            self._client = genai.Client(api_key=self.config.gemini_api_key)
        return self._client

    def _headers(self) -> dict[str, str]:
        if not self.config.has_credentials:
            raise ConfigurationError("GEMINI_API_KEY is not configured")
        return {"x-goog-api-key": self.config.gemini_api_key}

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=httpx.Timeout(60.0, read=120.0)) as client:
            yield client

    # -------------------------------------------------------------------------
    # Completions
    # -------------------------------------------------------------------------

    async def complete_prompt(
        self, prompt: str, tier: ModelTier = ModelTier.PRO, use_search: bool = False
    ) -> str:
        """Generate text with the given model tier.

        Args:
            prompt: Prompt text
            tier: pro for synthesis/scoring steps, flash for light steps
            use_search: Attach the Google Search grounding tool

        Returns:
            The generated text.
        """
        client = self._require_client()
        model = self.config.pro_model if tier == ModelTier.PRO else self.config.flash_model
        generation_config = types.GenerateContentConfig(
            max_output_tokens=self.config.max_output_tokens,
            temperature=1.0 if tier == ModelTier.PRO else 0.7,
            top_p=0.95,
            top_k=64,
            tools=[types.Tool(google_search=types.GoogleSearch())] if use_search else None,
        )

        try:
            response = await asyncio.to_thread(
                client.models.generate_content,
                model=model,
                contents=prompt,
                config=generation_config,
            )
        except Exception as e:
            raise ContentGenerationError(
                f"Generation with {model} failed: {e}", details={"model": model}
            ) from e

        text = response.text
        if not text:
            raise ContentGenerationError(
                f"{model} returned an empty response", details={"model": model}
            )
        return text

    # -------------------------------------------------------------------------
    # Reference stores
    # -------------------------------------------------------------------------

    async def create_reference_store(self, label: str) -> str:
        client = self._require_client()
        store = await asyncio.to_thread(
            client.file_search_stores.create, config={"display_name": label}
        )
        logger.info("Created reference store %s (%s)", store.name, label)
        return store.name

    async def attach_document(self, store_id: str, content: str, label: str) -> None:
        """Upload text into a reference store and wait until it is indexed."""
        client = self._require_client()
        with tempfile.NamedTemporaryFile(
            mode="w", suffix=".txt", delete=False, encoding="utf-8"
        ) as handle:
            handle.write(content)
            path = handle.name

        try:
            operation = await asyncio.to_thread(
                client.file_search_stores.upload_to_file_search_store,
                file=path,
                file_search_store_name=store_id,
                config={"display_name": label, "mime_type": "text/plain"},
            )
            polls = 0
            while not operation.done:
                if polls >= self.config.store_max_polls:
                    raise ResearchFailedError(
                        f"Document {label} was not indexed in time",
                        details={"store_id": store_id},
                    )
                await asyncio.sleep(self.config.store_poll_interval)
                operation = await asyncio.to_thread(client.operations.get, operation)
                polls += 1
        finally:
            os.unlink(path)

        if getattr(operation, "error", None):
            raise ResearchFailedError(
                f"Indexing {label} failed: {operation.error}", details={"store_id": store_id}
            )
        logger.info("Attached %s to reference store %s", label, store_id)

    async def delete_reference_store(self, store_id: str) -> None:
        """Best-effort cleanup; a leaked store is acceptable, a failed run is not."""
        try:
            client = self._require_client()
            await asyncio.to_thread(
                client.file_search_stores.delete, name=store_id, config={"force": True}
            )
            logger.info("Deleted reference store %s", store_id)
        except Exception as e:
            logger.warning("Failed to delete reference store %s: %s", store_id, e)

    # -------------------------------------------------------------------------
    # Research interactions
    # -------------------------------------------------------------------------

    async def start_research(self, prompt: str, store_ids: list[str]) -> str:
        """Start a background research interaction and return its id."""
        headers = self._headers()
        await self.rate_limiter.wait(self.config.research_min_interval)

        body: dict[str, Any] = {
            "input": prompt,
            "agent": self.config.research_agent,
            "background": True,
            "stream": True,
            "agent_config": {"type": "deep-research", "thinking_summaries": "auto"},
        }
        if store_ids:
            body["tools"] = [{"type": "file_search", "file_search_store_names": store_ids}]

        url = f"{self.config.api_base_url}/interactions"
        async with self._http() as http:
            async with http.stream(
                "POST", url, params={"alt": "sse"}, json=body, headers=headers
            ) as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    raise DeepResearchError(
                        f"Failed to start deep research ({response.status_code}): {detail[:500]}",
                        details={"status_code": response.status_code},
                    )
                async for line in response.aiter_lines():
                    event = _parse_sse_line(line)
                    if event is None:
                        continue
                    interaction_id = _interaction_id(event)
                    if interaction_id:
                        logger.info("Started research interaction %s", interaction_id)
                        return interaction_id

        raise DeepResearchError("Research stream ended without an interaction id")

    async def poll_research(self, interaction_id: str) -> ResearchPoll:
        url = f"{self.config.api_base_url}/interactions/{interaction_id}"
        async with self._http() as http:
            try:
                response = await http.get(url, headers=self._headers())
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise DeepResearchError(
                    f"Failed to poll research {interaction_id}: {e}",
                    details={"interaction_id": interaction_id},
                ) from e
            data = response.json()
        return _poll_from_interaction(data)


# =============================================================================
# Wire helpers
# =============================================================================


def _parse_sse_line(line: str) -> dict[str, Any] | None:
    line = line.strip()
    if not line.startswith("data:"):
        return None
    payload = line[len("data:"):].strip()
    if not payload or payload == "[DONE]":
        return None
    try:
        event = json.loads(payload)
    except json.JSONDecodeError:
        return None
    return event if isinstance(event, dict) else None


def _interaction_id(event: dict[str, Any]) -> str | None:
    interaction = event.get("interaction")
    if isinstance(interaction, dict) and interaction.get("id"):
        return str(interaction["id"])
    if event.get("interaction_id"):
        return str(event["interaction_id"])
    if event.get("event_type") == "interaction.start" and event.get("id"):
        return str(event["id"])
    return None


def _poll_from_interaction(data: dict[str, Any]) -> ResearchPoll:
    status = str(data.get("status", "")).lower()
    if status == "completed":
        text = None
        for output in data.get("outputs") or []:
            if isinstance(output, dict) and output.get("text"):
                text = output["text"]
        return ResearchPoll(status=ResearchStatus.COMPLETED, result=text or "")
    if status in _FAILED_STATES:
        error = data.get("error")
        if isinstance(error, dict):
            error = error.get("message")
        return ResearchPoll(status=ResearchStatus.FAILED, error=error or status)
    return ResearchPoll(status=ResearchStatus.IN_PROGRESS)
