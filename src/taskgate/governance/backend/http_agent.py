"""OpenAI-compatible chat-completions generation agent."""

from __future__ import annotations

import logging

import httpx

from taskgate.governance.backend.base import GenerationError, GenerationRequest

logger = logging.getLogger(__name__)


class OpenAICompatibleAgent:
    """Single synchronous chat-completions call with a hard timeout and no retries."""

    name = "live"

    def __init__(  # noqa: PLR0913
        self,
        *,
        base_url: str,
        api_key: str,
        model: str,
        timeout_seconds: float,
        max_tokens: int | None = None,
        temperature: float = 0.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=min(10.0, timeout_seconds)),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def generate(self, request: GenerationRequest) -> str:
        payload: dict[str, object] = {
            "model": self.model,
            "temperature": self.temperature,
            "messages": [
                {"role": "system", "content": request.system_prompt},
                {"role": "user", "content": request.user_prompt},
            ],
        }
        max_tokens = request.max_tokens or self.max_tokens
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens

        try:
            response = self._client.post("/chat/completions", json=payload)
        except httpx.TimeoutException as error:
            logger.warning("Generation call timed out for agent=%s", request.agent)
            raise GenerationError(f"Generation call timed out: {error}", timed_out=True) from error
        except httpx.HTTPError as error:
            logger.warning("Generation call failed for agent=%s: %s", request.agent, error)
            raise GenerationError(f"Generation call failed: {error}") from error

        if not response.is_success:
            raise GenerationError(
                f"Generation endpoint returned HTTP {response.status_code}: "
                f"{response.text[:300]}",
            )
        try:
            body = response.json()
            content = body["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as error:
            raise GenerationError(f"Unexpected generation response shape: {error}") from error
        if not isinstance(content, str):
            raise GenerationError("Generation response content is not text.")
        return content
