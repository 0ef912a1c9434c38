"""Shared test fixtures."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from taskgate.governance.backend.base import GenerationError, GenerationRequest
from taskgate.governance.models import ActionStatus, ActionWrite, TaskView, TaskWrite
from taskgate.governance.repository import LedgerRepository

_TASKGATE_ENV = (
    "TASKGATE_DB_PATH",
    "TASKGATE_GENERATION_MODE",
    "TASKGATE_LLM_API_KEY",
    "TASKGATE_LLM_BASE_URL",
    "TASKGATE_LLM_MODEL",
    "TASKGATE_LLM_TIMEOUT_SECONDS",
    "TASKGATE_FOUNDER_MODE",
    "TASKGATE_CONTRACTS_DIR",
    "TASKGATE_POLICY_PATH",
    "TASKGATE_DEFAULT_OWNER",
)


@pytest.fixture(autouse=True)
def _clean_taskgate_env(monkeypatch) -> None:
    for name in _TASKGATE_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[LedgerRepository]:
    repo = LedgerRepository(tmp_path / "ledger.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def make_request() -> Callable[..., dict[str, Any]]:
    """Build a valid request document; keyword overrides replace top-level fields."""

    def _make(
        user_goal: str,
        *,
        session_id: str = "sess_test",
        risk_flags: dict[str, Any] | None = None,
        **overrides: Any,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "request_id": f"req_{abs(hash(user_goal)) % 100_000}",
            "session_id": session_id,
            "ts": "2026-10-19T09:00:00Z",
            "initiator": "user",
            "user_goal": user_goal,
            "constraints": {
                "no_public_exposure": True,
                "structured_outputs_only": True,
                "on_demand_only": True,
            },
            "risk_flags": risk_flags or {},
            "context": {"audience": "internal_ops"},
        }
        payload.update(overrides)
        return payload

    return _make


@pytest.fixture()
def seed_task(repository: LedgerRepository) -> Callable[..., TaskView]:
    """Insert one todo task through the dispatch write path."""

    def _seed(
        title: str,
        *,
        details: str | None = None,
        session_id: str = "sess_queue",
        source: str = "agent",
        meta: dict[str, Any] | None = None,
    ) -> TaskView:
        receipt = repository.record_dispatch(
            session_id=session_id,
            action=ActionWrite(actor="cos", action_type="dispatch", status=ActionStatus.OK),
            task=TaskWrite(
                owner_agent="cos",
                title=title,
                details=details,
                meta={"source": source, **(meta or {})},
            ),
        )
        assert receipt.task_id is not None
        task = repository.get_task(task_id=receipt.task_id)
        assert task is not None
        return task

    return _seed


@pytest.fixture()
def contract_document() -> Callable[..., dict[str, Any]]:
    """Build a document that passes the default agent contract."""

    def _build(agent: str = "cos", intent: str = "PLAN_WORK", **overrides: Any) -> dict[str, Any]:
        return _valid_document(agent, intent, overrides)

    return _build


def _valid_document(agent: str, intent: str, overrides: dict[str, Any]) -> dict[str, Any]:
    document: dict[str, Any] = {
        "agent": agent,
        "version": "v1.0",
        "intent": intent,
        "summary": "Quarterly plan drafted.",
        "outputs": [{"type": "plan", "title": "Q1 plan", "content": "Milestones and owners."}],
        "ledger_writes": [{"table": "artifacts", "type": "plan"}],
        "next_actions": [
            {
                "title": "Review Q1 plan",
                "details": "Walk through milestones.",
                "owner_agent": agent,
            },
        ],
    }
    document.update(overrides)
    return document


class ScriptedAgent:
    """Replays canned responses in order and records every request it saw."""

    name = "scripted"

    def __init__(self, responses: list[str | Exception]) -> None:
        self.responses = list(responses)
        self.requests: list[GenerationRequest] = []
        self.closed = False

    def generate(self, request: GenerationRequest) -> str:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def scripted_agent() -> Callable[..., ScriptedAgent]:
    def _build(*responses: str | dict | Exception) -> ScriptedAgent:
        return ScriptedAgent(
            [item if isinstance(item, str | Exception) else json.dumps(item) for item in responses],
        )

    return _build


@pytest.fixture()
def timeout_error() -> GenerationError:
    return GenerationError("Generation call timed out: read timeout", timed_out=True)
