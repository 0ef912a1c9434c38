"""Governance triage: one execution iteration over the real task queue."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from taskgate.governance.classifier import classify_intent
from taskgate.governance.failure_classifier import classify_dispatch_failure
from taskgate.governance.intake import MAX_USER_GOAL_CHARS
from taskgate.governance.lifecycle import (
    MAX_REASON_CHARS,
    LifecycleGuardError,
    PolicyGateRequest,
    StopLossRequest,
    TaskLifecycle,
)
from taskgate.governance.models import DispatchState, FailureType, TaskView
from taskgate.governance.policy import AutonomyPolicy, PolicyCheck, PolicyLoadError, check_policy
from taskgate.governance.repository import LedgerRepository
from taskgate.governance.services import (
    EXIT_FAILED,
    EXIT_OK,
    GovernanceService,
    RunRequestCommand,
    new_run_id,
)
from taskgate.storage.common import to_iso, utc_now

logger = logging.getLogger(__name__)

TRIAGE_STEP = "triage_dispatch"
HUMAN_REVIEW_REQUIRED = "human_review_required"


@dataclass(slots=True)
class TriageCommand:
    session_id: str | None = None
    owner: str = "cos"
    dry_run: bool = False
    run_id: str | None = None


@dataclass(slots=True)
class TriageReport:
    """Consolidated iteration report; ``exit_code`` is non-zero only for faults."""

    document: dict[str, Any]
    exit_code: int = EXIT_OK


class GovernanceTriage:
    """Peek, policy-check, pop, dispatch, and stop-loss one queued task."""

    def __init__(
        self,
        *,
        repository: LedgerRepository,
        service: GovernanceService,
        policy: AutonomyPolicy | None,
        policy_error: PolicyLoadError | None = None,
    ) -> None:
        self.repository = repository
        self.service = service
        self.lifecycle = TaskLifecycle(repository)
        self.policy = policy
        self.policy_error = policy_error

    def run_once(self, command: TriageCommand) -> TriageReport:  # noqa: PLR0911
        run_id = command.run_id or new_run_id()
        base: dict[str, Any] = {
            "run_id": run_id,
            "owner": command.owner,
            "dry_run": command.dry_run,
        }
        candidate = self.repository.peek_next_task(
            session_id=command.session_id,
            exclude_synthetic=True,
        )
        if candidate is None:
            return TriageReport(
                document={
                    **base,
                    "ok": True,
                    "task": None,
                    "notes": ["No non-synthetic todo task found."],
                },
            )

        if _held_without_approval(candidate):
            return TriageReport(
                document={
                    **base,
                    "ok": False,
                    "step": "stop_loss_threshold_gate",
                    "error": "HUMAN_REVIEW_REQUIRED",
                    "task": _task_summary(candidate),
                    "hold": _hold_summary(candidate),
                    "next_action": HUMAN_REVIEW_REQUIRED,
                },
            )

        check = None
        if candidate.meta.get("stop_loss_retry_approved") is not True:
            check = self._policy_check(candidate)
            if check.gated:
                if command.dry_run:
                    return TriageReport(
                        document={
                            **base,
                            "ok": True,
                            "task": _task_summary(candidate),
                            "policy": check.to_dict(),
                            "would_execute": False,
                            "notes": ["Policy would gate this task; no state changed."],
                        },
                    )
                gate = self.lifecycle.apply_policy_gate(
                    candidate.task_id,
                    PolicyGateRequest(
                        reason=(check.reason or check.code or "policy gate")[:MAX_REASON_CHARS],
                        policy=check.code or "POLICY_GATE",
                        owner=command.owner,
                        phrase=check.matched_phrase,
                        intent=check.intent,
                    ),
                )
                return TriageReport(
                    document={
                        **base,
                        "ok": False,
                        "step": "policy_gate",
                        "task": _task_summary(gate.task),
                        "policy": check.to_dict(),
                        "policy_gate_applied": gate.changed,
                        "next_action": HUMAN_REVIEW_REQUIRED,
                    },
                )

        if command.dry_run:
            return TriageReport(
                document={
                    **base,
                    "ok": True,
                    "task": _task_summary(candidate),
                    "policy": check.to_dict() if check is not None else None,
                    "would_execute": True,
                    "notes": ["Dry run: no task popped, no request dispatched."],
                },
            )

        task = self.lifecycle.pop_next(
            session_id=candidate.session_id,
            exclude_synthetic=True,
            owner=command.owner,
            run_id=run_id,
        )
        if task is None:
            return TriageReport(
                document={
                    **base,
                    "ok": True,
                    "task": None,
                    "notes": ["Candidate task was claimed by another consumer."],
                },
            )

        result = self.service.run(
            RunRequestCommand(payload=build_task_request(task), run_id=run_id),
        )
        outcome = result.outcome
        if outcome is None:
            failure: FailureType | None = FailureType.BLOCKED
            failure_reason = f"Request refused before dispatch: {result.document.get('error')}"
        elif outcome.state == DispatchState.ERROR:
            return TriageReport(
                document={
                    **base,
                    "ok": False,
                    "step": TRIAGE_STEP,
                    "error": "DISPATCH_FAULT",
                    "task": _task_summary(task),
                    "run": result.document,
                },
                exit_code=EXIT_FAILED,
            )
        else:
            failure = classify_dispatch_failure(outcome)
            failure_reason = f"{outcome.state.value}: {outcome.reason}"

        if failure is not None:
            return TriageReport(
                document={
                    **base,
                    "ok": False,
                    "step": "stop_loss",
                    "task": _task_summary(task),
                    "failure": {"failure_type": failure.value, "reason": failure_reason},
                    "stop_loss": self._stop_loss(
                        task=task,
                        failure=failure,
                        reason=failure_reason,
                        owner=command.owner,
                        run_id=run_id,
                    ),
                    "run": result.document,
                    "next_action": HUMAN_REVIEW_REQUIRED,
                },
            )

        artifact = (
            self.repository.get_artifact(artifact_id=outcome.artifact_id)
            if outcome is not None and outcome.artifact_id
            else None
        )
        return TriageReport(
            document={
                **base,
                "ok": True,
                "task": _task_summary(task),
                "run": result.document,
                "artifact": (
                    {
                        "artifact_id": artifact.artifact_id,
                        "type": artifact.artifact_type,
                        "title": artifact.title,
                        "content_sha256": artifact.content_sha256,
                    }
                    if artifact is not None
                    else None
                ),
            },
        )

    def _policy_check(self, task: TaskView) -> PolicyCheck:
        text = " ".join(part for part in (task.title, task.details or "") if part)
        classification = classify_intent(text)
        return check_policy(
            self.policy,
            text=text,
            intent=None if classification.defaulted else classification.intent.value,
            load_error=self.policy_error,
        )

    def _stop_loss(  # noqa: PLR0913
        self,
        *,
        task: TaskView,
        failure: FailureType,
        reason: str,
        owner: str,
        run_id: str,
    ) -> dict[str, Any]:
        try:
            applied = self.lifecycle.trigger_stop_loss(
                task.task_id,
                StopLossRequest(
                    reason=reason[:MAX_REASON_CHARS],
                    step=TRIAGE_STEP,
                    owner=owner,
                    run_id=run_id,
                    failure_type=failure,
                ),
            )
        except LifecycleGuardError as error:
            logger.warning("Stop-loss refused for task %s: %s", task.task_id, error)
            return error.to_dict()
        return {"ok": True, "status": applied.task.status.value, "action_ids": applied.action_ids}


def build_task_request(task: TaskView) -> dict[str, Any]:
    """Internal system request that asks an agent to resolve one queued task."""

    goal = f'Resolve queued work item "{task.title}".'
    if task.details:
        goal += f" Details: {task.details}."
    goal += " Produce one structured internal artifact for this item."
    return {
        "request_id": f"req_triage_{task.task_id[-8:]}_{uuid4().hex[:8]}",
        "session_id": task.session_id,
        "ts": to_iso(utc_now()),
        "initiator": "system",
        "user_goal": goal[:MAX_USER_GOAL_CHARS],
        "constraints": {
            "no_public_exposure": True,
            "structured_outputs_only": True,
            "on_demand_only": True,
        },
        "risk_flags": {"external_comms": False},
        "context": {
            "audience": "internal_ops",
            "channel": "governance_triage",
            "task_id": task.task_id,
            "task_title": task.title,
        },
    }


def _held_without_approval(task: TaskView) -> bool:
    held = (
        task.meta.get("stop_loss_triggered") is True
        or task.meta.get("hil_required") is True
        or task.meta.get("policy_gate_triggered") is True
    )
    return held and task.meta.get("stop_loss_retry_approved") is not True


def _hold_summary(task: TaskView) -> dict[str, Any]:
    keys = (
        "stop_loss_triggered",
        "stop_loss_reason",
        "stop_loss_failure_type",
        "stop_loss_at",
        "policy_gate_triggered",
        "policy_gate_reason",
        "hil_required",
    )
    return {key: task.meta[key] for key in keys if key in task.meta}


def _task_summary(task: TaskView) -> dict[str, Any]:
    return {
        "task_id": task.task_id,
        "session_id": task.session_id,
        "status": task.status.value,
        "owner_agent": task.owner_agent,
        "title": task.title,
    }
