"""Generation agent interface for contract-bound document generation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(slots=True)
class GenerationRequest:
    """Inputs for one synchronous generation call."""

    system_prompt: str
    user_prompt: str
    agent: str
    intent: str
    repair_mode: bool = False
    max_tokens: int | None = None


class GenerationError(RuntimeError):
    """Generation agent fault; never retried and never reported as a contract rejection."""

    def __init__(self, message: str, *, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out


class GenerationAgent(Protocol):
    """Protocol implemented by generation strategies."""

    name: str

    def generate(self, request: GenerationRequest) -> str:
        """Return raw text that should parse as one JSON document."""

    def close(self) -> None:
        """Release transport resources held by the strategy."""
