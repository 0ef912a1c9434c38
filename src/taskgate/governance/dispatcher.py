"""Dispatch state machine: gate outcome, overrides, draft-only policy, and generation."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from taskgate.governance.backend.base import GenerationError
from taskgate.governance.contracts import AgentContract, ContractNotFoundError, ContractStore
from taskgate.governance.models import (
    ActionStatus,
    ActionWrite,
    ArtifactWrite,
    DispatchOptions,
    DispatchOutcome,
    DispatchState,
    GateDecision,
    Intent,
    RouteDecision,
    RouteRequest,
    TaskWrite,
)
from taskgate.governance.override import has_approved_override
from taskgate.governance.prompts import DRAFT_ONLY_FORBIDDEN, build_generation_prompts
from taskgate.governance.repair import ContractRepairLoop, RepairLoopResult
from taskgate.governance.repository import LedgerRepository
from taskgate.governance.validator import compact_json

logger = logging.getLogger(__name__)

DISPATCH_ACTOR = "cos"
DRAFT_ONLY_INTENTS = frozenset({Intent.SALES_INTERNAL, Intent.MARKETING_INTERNAL})
HARD_BLOCK_FLAGS: tuple[str, ...] = (
    "deployment",
    "architecture_change",
    "security",
    "policy",
    "client_data",
    "data_export",
)
ACTION_STATUS_BY_STATE = {
    DispatchState.DISPATCHED: ActionStatus.OK,
    DispatchState.GATED: ActionStatus.GATED,
    DispatchState.BLOCKED: ActionStatus.BLOCKED,
    DispatchState.REJECTED: ActionStatus.FAILED,
    DispatchState.ERROR: ActionStatus.ERROR,
}


def qualifies_for_draft_only(*, intent: Intent, risk_flags: Mapping[str, Any]) -> bool:
    """Draft-only auto-allow: low-risk content intent where external_comms is the only flag."""

    if intent not in DRAFT_ONLY_INTENTS:
        return False
    if not risk_flags.get("external_comms"):
        return False
    if any(risk_flags.get(name) for name in HARD_BLOCK_FLAGS):
        return False
    return not any(value for name, value in risk_flags.items() if name != "external_comms")


class Dispatcher:
    """Turns a route decision into exactly one recorded dispatch outcome."""

    def __init__(
        self,
        *,
        repository: LedgerRepository,
        contracts: ContractStore,
        repair_loop: ContractRepairLoop,
    ) -> None:
        self.repository = repository
        self.contracts = contracts
        self.repair_loop = repair_loop

    def dispatch(
        self,
        *,
        request: RouteRequest,
        route: RouteDecision,
        options: DispatchOptions | None = None,
    ) -> DispatchOutcome:
        options = options or DispatchOptions()
        meta: dict[str, Any] = {
            "gate_decision": route.gate_decision.value,
            "gate_flags": list(route.gate_flags),
            "requires_governance_review": route.governance_required,
            "override_requested": options.override,
            "override_denied": False,
            "founder_mode_draft_only": False,
            "governance_bypassed": None,
            "repair_attempted": False,
            "repair_succeeded": False,
            "run_id": options.run_id,
        }

        if route.gate_decision == GateDecision.DENY:
            raise ValueError("Denied requests never reach the dispatcher.")

        if route.gate_decision == GateDecision.BLOCKED:
            return self._record(
                request=request,
                route=route,
                outcome=DispatchOutcome(
                    state=DispatchState.BLOCKED,
                    agent=None,
                    reason=(
                        "Blocked by governance gate: "
                        f"{route.block_reason or 'hard risk flag'}. Override is not possible."
                    ),
                    next_step="revise_request",
                    intent=route.intent,
                    session_id=request.session_id,
                    meta=meta,
                ),
            )

        draft_only = False
        if route.governance_required:
            if options.override and has_approved_override(
                self.repository,
                session_id=request.session_id,
                intent=route.intent.value,
            ):
                meta["override_applied"] = True
                logger.info(
                    "Override approval found for session=%s intent=%s",
                    request.session_id,
                    route.intent.value,
                )
            elif options.founder_mode and qualifies_for_draft_only(
                intent=route.intent,
                risk_flags=request.risk_flags,
            ):
                draft_only = True
                meta["founder_mode_draft_only"] = True
                meta["governance_bypassed"] = "draft_only"
                logger.info(
                    "Draft-only bypass for session=%s intent=%s",
                    request.session_id,
                    route.intent.value,
                )
            else:
                if options.override:
                    meta["override_denied"] = True
                    reason = (
                        "Override requested but no approved override record found for "
                        f"session={request.session_id} intent={route.intent.value}. "
                        "Request approval first."
                    )
                else:
                    reason = (
                        "Governance review required before dispatch"
                        + (f": {', '.join(route.gate_flags)}" if route.gate_flags else ".")
                    )
                return self._record(
                    request=request,
                    route=route,
                    outcome=DispatchOutcome(
                        state=DispatchState.GATED,
                        agent=None,
                        reason=reason,
                        next_step="request_approval",
                        intent=route.intent,
                        session_id=request.session_id,
                        meta=meta,
                    ),
                )

        return self._generate(request=request, route=route, meta=meta, draft_only=draft_only)

    def _generate(
        self,
        *,
        request: RouteRequest,
        route: RouteDecision,
        meta: dict[str, Any],
        draft_only: bool,
    ) -> DispatchOutcome:
        agent = route.primary_agent
        if agent is None:
            raise RuntimeError(f"Route for intent {route.intent.value} has no primary agent.")

        try:
            contract = self.contracts.load(agent)
            if draft_only:
                contract = contract.with_extra_forbidden(DRAFT_ONLY_FORBIDDEN)
            prompts = build_generation_prompts(
                contract=contract,
                request=request,
                route=route,
                draft_only=draft_only,
            )
            meta["contract"] = {"agent": contract.agent, "version": contract.version}
            result = self.repair_loop.run(
                contract=contract,
                prompts=prompts,
                intent=route.intent.value,
                draft_only=draft_only,
            )
        except (ContractNotFoundError, GenerationError) as error:
            meta["fault"] = str(error)
            if isinstance(error, GenerationError):
                meta["timed_out"] = error.timed_out
            logger.error("Dispatch fault for agent=%s: %s", agent, error)
            return self._record(
                request=request,
                route=route,
                outcome=DispatchOutcome(
                    state=DispatchState.ERROR,
                    agent=agent,
                    reason=f"Dispatch fault: {error}",
                    next_step="retry_later",
                    intent=route.intent,
                    session_id=request.session_id,
                    meta=meta,
                ),
            )

        meta["repair_attempted"] = result.repair_attempted
        meta["repair_succeeded"] = result.repair_succeeded
        if not result.ok:
            meta["validation_errors"] = [error.to_dict() for error in result.validation_errors]
            meta["repair_errors"] = [error.to_dict() for error in result.repair_errors]
            final_errors = result.repair_errors or result.validation_errors
            return self._record(
                request=request,
                route=route,
                outcome=DispatchOutcome(
                    state=DispatchState.REJECTED,
                    agent=agent,
                    reason="CONTRACT_VALIDATION_FAILED (repair exhausted): "
                    + "; ".join(error.message for error in final_errors),
                    next_step="revise_request",
                    intent=route.intent,
                    session_id=request.session_id,
                    meta=meta,
                ),
            )

        if result.repair_attempted:
            meta["validation_errors"] = [error.to_dict() for error in result.validation_errors]
        reason = f'Cleared for dispatch to agent "{agent}".'
        if draft_only:
            reason = (
                f"Draft-only auto-allow for {route.intent.value} "
                "(external_comms is the only risk flag)."
            )
        return self._record(
            request=request,
            route=route,
            outcome=DispatchOutcome(
                state=DispatchState.DISPATCHED,
                agent=agent,
                reason=reason,
                next_step="dispatch",
                intent=route.intent,
                session_id=request.session_id,
                meta=meta,
            ),
            contract=contract,
            result=result,
        )

    def _record(  # noqa: PLR0913
        self,
        *,
        request: RouteRequest,
        route: RouteDecision,
        outcome: DispatchOutcome,
        contract: AgentContract | None = None,
        result: RepairLoopResult | None = None,
    ) -> DispatchOutcome:
        run_id = outcome.meta.get("run_id")
        artifact = None
        task = None
        if result is not None and result.document is not None and contract is not None:
            artifact = _artifact_from_document(
                document=result.document,
                agent=outcome.agent or contract.agent,
                contract=contract,
                classification=request.classification,
                run_id=run_id,
            )
            task = _task_from_document(
                document=result.document,
                agent=outcome.agent or contract.agent,
                run_id=run_id,
            )

        action_meta: dict[str, Any] = {
            "agent": outcome.agent,
            "next_step": outcome.next_step,
            "run_id": run_id,
            "repair_attempted": outcome.meta.get("repair_attempted", False),
            "repair_succeeded": outcome.meta.get("repair_succeeded", False),
        }
        for key in ("override_denied", "governance_bypassed", "validation_errors", "repair_errors"):
            if outcome.meta.get(key):
                action_meta[key] = outcome.meta[key]

        receipt = self.repository.record_dispatch(
            session_id=request.session_id,
            initiator=request.initiator,
            action=ActionWrite(
                actor=DISPATCH_ACTOR,
                action_type="dispatch",
                status=ACTION_STATUS_BY_STATE[outcome.state],
                reason=(
                    f"intent={route.intent.value}; state={outcome.state.value}; "
                    f"gate={route.gate_decision.value}; {outcome.reason}"
                ),
                meta=action_meta,
            ),
            artifact=artifact,
            task=task,
        )
        outcome.meta["action_id"] = receipt.action_id
        if receipt.artifact_id is not None:
            outcome.meta["artifact_id"] = receipt.artifact_id
            outcome.meta["contract_validated"] = True
        if receipt.task_id is not None:
            outcome.meta["task_id"] = receipt.task_id
        logger.info(
            "Dispatch session=%s intent=%s state=%s",
            request.session_id,
            route.intent.value,
            outcome.state.value,
        )
        return outcome


def _artifact_from_document(
    *,
    document: dict[str, Any],
    agent: str,
    contract: AgentContract,
    classification: str,
    run_id: str | None,
) -> ArtifactWrite:
    outputs = document.get("outputs") or []
    first = outputs[0] if outputs and isinstance(outputs[0], dict) else {}
    return ArtifactWrite(
        artifact_type=str(first.get("type") or "plan"),
        title=str(first.get("title") or "Untitled"),
        content=compact_json(first),
        classification=classification or "internal",
        meta={"agent": agent, "contract_version": contract.version, "run_id": run_id},
    )


def _task_from_document(
    *,
    document: dict[str, Any],
    agent: str,
    run_id: str | None,
) -> TaskWrite | None:
    next_actions = document.get("next_actions") or []
    if not next_actions or not isinstance(next_actions[0], dict):
        return None
    first = next_actions[0]
    return TaskWrite(
        owner_agent=str(first.get("owner_agent") or agent),
        title=str(first.get("title") or "Untitled task"),
        details=first.get("details") or None,
        meta={
            "run_id": run_id,
            "agent": agent,
            "source": "stub" if document.get("_stub") else "agent",
        },
    )
