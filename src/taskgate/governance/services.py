"""Use-case services: run one request end to end and produce the result document."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from taskgate.governance.backend import GenerationAgent
from taskgate.governance.contracts import ContractStore
from taskgate.governance.dispatcher import Dispatcher
from taskgate.governance.intake import RequestValidationError, parse_request
from taskgate.governance.models import (
    DispatchOptions,
    DispatchOutcome,
    DispatchState,
    RouteDecision,
    RouteRequest,
)
from taskgate.governance.repair import ContractRepairLoop
from taskgate.governance.repository import LedgerRepository
from taskgate.governance.routing import GovernanceDeniedError, Router

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_APPROVAL_REQUIRED = 2


@dataclass(slots=True)
class RunRequestCommand:
    """High-level command to route and dispatch one request document."""

    payload: Any
    override: bool = False
    founder_mode: bool = False
    run_id: str | None = None


@dataclass(slots=True)
class RunResult:
    """Result document plus the process exit code it maps to."""

    document: dict[str, Any]
    exit_code: int
    outcome: DispatchOutcome | None = None


def new_run_id() -> str:
    return f"run_{uuid4().hex}"


class GovernanceService:
    """Coordinates intake, routing, and dispatch for one request."""

    def __init__(
        self,
        *,
        repository: LedgerRepository,
        agent: GenerationAgent,
        contracts: ContractStore | None = None,
        router: Router | None = None,
    ) -> None:
        self.repository = repository
        self.router = router or Router(repository=repository)
        self.dispatcher = Dispatcher(
            repository=repository,
            contracts=contracts or ContractStore(),
            repair_loop=ContractRepairLoop(agent=agent),
        )

    def run(self, command: RunRequestCommand) -> RunResult:
        run_id = command.run_id or new_run_id()
        try:
            request = parse_request(command.payload)
        except RequestValidationError as error:
            logger.info("Request rejected at intake: %s", error)
            return RunResult(
                document={
                    "status": "error",
                    "run_id": run_id,
                    "error": error.code,
                    "errors": [item.to_dict() for item in error.errors],
                },
                exit_code=EXIT_FAILED,
            )

        try:
            route = self.router.route(request, run_id=run_id)
        except GovernanceDeniedError as error:
            return RunResult(
                document={
                    "status": "denied",
                    "run_id": run_id,
                    "session_id": request.session_id,
                    "error": error.code,
                    "reason": str(error),
                    "route": _route_document(error.route),
                },
                exit_code=EXIT_FAILED,
            )

        outcome = self.dispatch(request=request, route=route, command=command, run_id=run_id)
        return build_run_result(request=request, route=route, outcome=outcome, run_id=run_id)

    def dispatch(
        self,
        *,
        request: RouteRequest,
        route: RouteDecision,
        command: RunRequestCommand,
        run_id: str,
    ) -> DispatchOutcome:
        return self.dispatcher.dispatch(
            request=request,
            route=route,
            options=DispatchOptions(
                override=command.override,
                founder_mode=command.founder_mode,
                run_id=run_id,
            ),
        )


def build_run_result(
    *,
    request: RouteRequest,
    route: RouteDecision,
    outcome: DispatchOutcome,
    run_id: str,
) -> RunResult:
    """Render the dispatch result document and choose the exit code."""

    document: dict[str, Any] = {
        "status": "ok",
        "run_id": run_id,
        "session_id": request.session_id,
        "request_id": request.request_id,
        "route": _route_document(route),
        "dispatch": {
            "state": outcome.state.value,
            "agent": outcome.agent,
            "next_step": outcome.next_step,
            "reason": outcome.reason,
            "artifact_id": outcome.artifact_id,
            "task_id": outcome.task_id,
            "repair_attempted": bool(outcome.meta.get("repair_attempted")),
            "repair_succeeded": bool(outcome.meta.get("repair_succeeded")),
            "draft_only": bool(outcome.meta.get("founder_mode_draft_only")),
            "governance_bypassed": outcome.meta.get("governance_bypassed"),
        },
    }
    if outcome.meta.get("validation_errors"):
        document["dispatch"]["validation_errors"] = outcome.meta["validation_errors"]
    if outcome.meta.get("repair_errors"):
        document["dispatch"]["repair_errors"] = outcome.meta["repair_errors"]

    exit_code = EXIT_OK
    if outcome.state == DispatchState.GATED and outcome.override_denied:
        document["status"] = "approval_required"
        document["error"] = "APPROVAL_REQUIRED"
        exit_code = EXIT_APPROVAL_REQUIRED
    elif outcome.state == DispatchState.ERROR:
        document["status"] = "error"
        document["error"] = "DISPATCH_FAULT"
        document["dispatch"]["timed_out"] = bool(outcome.meta.get("timed_out"))
        exit_code = EXIT_FAILED
    return RunResult(document=document, exit_code=exit_code, outcome=outcome)


def _route_document(route: RouteDecision) -> dict[str, Any]:
    return {
        "intent": route.intent.value,
        "primary_agent": route.primary_agent,
        "secondary_agents": route.secondary_agents,
        "gate_decision": route.gate_decision.value,
        "gate_flags": route.gate_flags,
        "requires_governance_review": route.governance_required,
        "block_reason": route.block_reason,
        "notes": route.notes,
    }
