"""Deterministic stand-in generation agents for local runs and tests."""

from __future__ import annotations

import json

from taskgate.governance.backend.base import GenerationRequest

STUB_VERSION = "v1.0"


class StubGenerationAgent:
    """Returns a contract-conforming document with one follow-up action."""

    name = "stub"

    def close(self) -> None:
        return None

    def generate(self, request: GenerationRequest) -> str:
        agent = request.agent
        intent = request.intent or "PLAN_WORK"
        return json.dumps(
            {
                "agent": agent,
                "version": STUB_VERSION,
                "intent": intent,
                "summary": f"[STUB] {agent} handled {intent}. No live model call made.",
                "outputs": [
                    {
                        "type": "plan",
                        "title": "Stub Plan",
                        "content": (
                            f'Stub output from agent "{agent}" for intent "{intent}". '
                            "Replace with a live model response when the adapter is configured."
                        ),
                    },
                ],
                "ledger_writes": [
                    {
                        "table": "artifacts",
                        "type": "plan",
                        "note": "stub, recorded only when the dispatch commits",
                    },
                ],
                "next_actions": [
                    {
                        "title": f"Stub task from {agent} for {intent}",
                        "details": "Created by the stub agent for a pipeline check.",
                        "owner_agent": agent,
                    },
                ],
                "_stub": True,
            },
        )


class BrokenStubGenerationAgent:
    """Returns a document that always fails the contract.

    Summary is too long, ``ledger_writes`` is missing and the first output has no title.
    """

    name = "bad_stub"

    def close(self) -> None:
        return None

    def generate(self, request: GenerationRequest) -> str:
        return json.dumps(
            {
                "agent": request.agent,
                "version": STUB_VERSION,
                "intent": request.intent or "PLAN_WORK",
                "summary": "X" * 350,
                "outputs": [
                    {
                        "type": "plan",
                        "content": "Bad stub output, missing title field.",
                    },
                ],
                "_bad_stub": True,
            },
        )
