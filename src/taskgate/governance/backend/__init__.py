"""Generation agent strategies."""

from __future__ import annotations

from taskgate.config import GenerationSettings
from taskgate.governance.backend.base import GenerationAgent, GenerationError, GenerationRequest
from taskgate.governance.backend.http_agent import OpenAICompatibleAgent
from taskgate.governance.backend.stub_agent import BrokenStubGenerationAgent, StubGenerationAgent

__all__ = [
    "BrokenStubGenerationAgent",
    "GenerationAgent",
    "GenerationError",
    "GenerationRequest",
    "OpenAICompatibleAgent",
    "StubGenerationAgent",
    "build_generation_agent",
]


def build_generation_agent(settings: GenerationSettings) -> GenerationAgent:
    """Select the generation strategy once, at process start."""

    if settings.mode == "stub":
        return StubGenerationAgent()
    if settings.mode == "bad_stub":
        return BrokenStubGenerationAgent()
    if settings.mode == "live":
        if not settings.api_key:
            raise ValueError("TASKGATE_LLM_API_KEY is required for live generation.")
        return OpenAICompatibleAgent(
            base_url=settings.base_url,
            api_key=settings.api_key,
            model=settings.model,
            timeout_seconds=settings.timeout_seconds,
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
        )
    raise ValueError(f"Unknown generation mode: {settings.mode!r}")
