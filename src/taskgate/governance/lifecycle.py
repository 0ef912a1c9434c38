"""Task lifecycle transitions: queue pop, stop-loss, policy gate, human review, close."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from taskgate.governance.models import (
    ActionStatus,
    ActionWrite,
    FailureType,
    ReviewDecision,
    TaskStatus,
    TaskTransition,
    TaskView,
    TransitionResult,
)
from taskgate.governance.override import build_override_action, build_override_decision
from taskgate.governance.repository import LedgerRepository
from taskgate.storage.common import to_iso, utc_now

logger = logging.getLogger(__name__)

LIFECYCLE_ACTOR = "ops"
DEFAULT_OWNER = "cos"
MAX_REASON_CHARS = 240
MAX_OWNER_CHARS = 40
HUMAN_REVIEW_RETRY_INTENT = "HUMAN_REVIEW_RETRY"


class LifecycleGuardError(RuntimeError):
    """A lifecycle transition was refused; the task row is unchanged."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        task_id: str | None = None,
        hints: Sequence[str] = (),
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.task_id = task_id
        self.hints = list(hints)
        self.details = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"ok": False, "error": self.code, "message": str(self)}
        if self.task_id is not None:
            payload["task_id"] = self.task_id
        if self.hints:
            payload["hints"] = self.hints
        payload.update(self.details)
        return payload


@dataclass(slots=True)
class StopLossRequest:
    reason: str
    step: str
    owner: str | None = None
    run_id: str | None = None
    failure_type: FailureType | None = None


@dataclass(slots=True)
class PolicyGateRequest:
    reason: str
    policy: str
    owner: str | None = None
    phrase: str | None = None
    intent: str | None = None


@dataclass(slots=True)
class ReviewRequest:
    decision: ReviewDecision
    reason: str
    owner: str | None = None
    artifact_id: str | None = None
    session_id: str | None = None
    extra_meta: dict[str, Any] = field(default_factory=dict)


def validate_reason(reason: str | None) -> str:
    if reason is None or not reason.strip():
        raise LifecycleGuardError("VALIDATION_FAILED", "reason is required and must be non-empty")
    if len(reason) > MAX_REASON_CHARS:
        raise LifecycleGuardError(
            "VALIDATION_FAILED",
            f"reason must be <= {MAX_REASON_CHARS} chars (got {len(reason)})",
        )
    return reason.strip()


def validate_owner(owner: str | None) -> str:
    resolved = (owner or DEFAULT_OWNER).strip() or DEFAULT_OWNER
    if len(resolved) > MAX_OWNER_CHARS:
        raise LifecycleGuardError(
            "VALIDATION_FAILED",
            f"owner must be <= {MAX_OWNER_CHARS} chars (got {len(resolved)})",
        )
    return resolved


def _truncate(text: str, limit: int = 80) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _snapshot(task: TaskView) -> dict[str, Any]:
    return {"status": task.status.value, "owner_agent": task.owner_agent}


def plan_stop_loss(task: TaskView, request: StopLossRequest, *, now: datetime) -> TaskTransition:
    """Hold a task after an execution failure; a second trigger is refused."""

    reason = validate_reason(request.reason)
    owner = validate_owner(request.owner)
    if not request.step or not request.step.strip():
        raise LifecycleGuardError("VALIDATION_FAILED", "step is required and must be non-empty")
    step = request.step.strip()
    if task.meta.get("stop_loss_triggered") is True:
        raise LifecycleGuardError(
            "ALREADY_TRIGGERED",
            "stop_loss_triggered=true already on this task",
            task_id=task.task_id,
            details={
                "status": task.status.value,
                "stop_loss_at": task.meta.get("stop_loss_at"),
                "stop_loss_reason": task.meta.get("stop_loss_reason"),
            },
        )

    stamp = to_iso(now)
    failure_type = request.failure_type.value if request.failure_type else None
    meta = {
        **task.meta,
        "stop_loss_triggered": True,
        "stop_loss_reason": reason,
        "stop_loss_step": step,
        "stop_loss_at": stamp,
        "stop_loss_owner": owner,
        "stop_loss_run_id": request.run_id,
        "stop_loss_failure_type": failure_type,
    }
    reason_parts = [f"task_id={task.task_id}", f"step={step}"]
    if failure_type:
        reason_parts.append(f"failure_type={failure_type}")
    reason_parts.append(f'reason="{_truncate(reason)}"')
    return TaskTransition(
        status=TaskStatus.BLOCKED,
        owner_agent=owner,
        meta=meta,
        actions=[
            ActionWrite(
                actor=LIFECYCLE_ACTOR,
                action_type="stop_loss",
                status=ActionStatus.OK,
                reason="; ".join(reason_parts),
                meta={
                    "owner": owner,
                    "run_id": request.run_id,
                    "failure_type": failure_type,
                    "step": step,
                    "reason": reason,
                    "before": _snapshot(task),
                    "after": {"status": TaskStatus.BLOCKED.value, "owner_agent": owner},
                },
            ),
        ],
    )


def plan_policy_gate(
    task: TaskView,
    request: PolicyGateRequest,
    *,
    now: datetime,
) -> TaskTransition:
    """Pre-execution policy hold; repeating it is a no-op."""

    reason = validate_reason(request.reason)
    owner = validate_owner(request.owner)
    if not request.policy or not request.policy.strip():
        raise LifecycleGuardError("VALIDATION_FAILED", "policy is required (policy rule name)")
    policy = request.policy.strip()
    if task.meta.get("policy_gate_triggered") is True:
        return TaskTransition(
            status=task.status,
            owner_agent=task.owner_agent,
            meta=task.meta,
            changed=False,
        )

    meta = {
        **task.meta,
        "hil_required": True,
        "policy_gate_triggered": True,
        "policy_gate_reason": reason,
        "policy_gate_policy": policy,
        "policy_gate_at": to_iso(now),
        "policy_gate_owner": owner,
        "policy_gate_phrase": request.phrase,
        "policy_gate_intent": request.intent,
    }
    reason_parts = [f"task_id={task.task_id}", f"policy={policy}"]
    if request.phrase:
        reason_parts.append(f'phrase="{request.phrase}"')
    if request.intent:
        reason_parts.append(f"intent={request.intent}")
    reason_parts.append(f'reason="{_truncate(reason)}"')
    return TaskTransition(
        status=TaskStatus.BLOCKED,
        owner_agent=owner,
        meta=meta,
        actions=[
            ActionWrite(
                actor=LIFECYCLE_ACTOR,
                action_type="policy_gate",
                status=ActionStatus.GATED,
                reason="; ".join(reason_parts),
                meta={
                    "owner": owner,
                    "policy": policy,
                    "reason": reason,
                    "matched_phrase": request.phrase,
                    "matched_intent": request.intent,
                    "before": _snapshot(task),
                    "after": {"status": TaskStatus.BLOCKED.value, "hil_required": True},
                },
            ),
        ],
    )


def plan_review(task: TaskView, request: ReviewRequest, *, now: datetime) -> TaskTransition:
    """Resolve a stop-lossed task: retry re-queues, close finishes, reject keeps it blocked.

    Closing here skips ``doing`` on purpose: a remediation closure never executes.
    """

    reason = validate_reason(request.reason)
    owner = validate_owner(request.owner)
    decision = request.decision
    meta = task.meta

    if decision == ReviewDecision.RETRY and meta.get("stop_loss_retry_approved") is True:
        raise LifecycleGuardError(
            "ALREADY_APPROVED_FOR_RETRY",
            "stop_loss_retry_approved=true already on this task",
            task_id=task.task_id,
            details={
                "status": task.status.value,
                "stop_loss_retry_at": meta.get("stop_loss_retry_at"),
                "stop_loss_retry_by": meta.get("stop_loss_retry_by"),
            },
        )
    if decision == ReviewDecision.CLOSE and task.status == TaskStatus.DONE:
        raise LifecycleGuardError(
            "ALREADY_CLOSED",
            "task.status=done, already closed",
            task_id=task.task_id,
        )
    if decision == ReviewDecision.REJECT and meta.get("review_rejected") is True:
        raise LifecycleGuardError(
            "ALREADY_REJECTED",
            "review_rejected=true already on this task",
            task_id=task.task_id,
            details={
                "review_rejected_at": meta.get("review_rejected_at"),
                "review_rejected_by": meta.get("review_rejected_by"),
            },
        )
    if task.status != TaskStatus.BLOCKED or meta.get("stop_loss_triggered") is not True:
        raise LifecycleGuardError(
            "NOT_UNDER_REVIEW",
            "human review applies only to blocked tasks with stop_loss_triggered=true "
            f'(current status: "{task.status.value}")',
            task_id=task.task_id,
            hints=["Human review clears stop-loss holds only; apply stop-loss first."],
        )

    stamp = to_iso(now)
    session_id = request.session_id or task.session_id
    actions: list[ActionWrite] = []
    override = None
    if decision == ReviewDecision.RETRY:
        status = TaskStatus.TODO
        review_fields: dict[str, Any] = {
            "stop_loss_retry_approved": True,
            "stop_loss_retry_reason": reason,
            "stop_loss_retry_by": owner,
            "stop_loss_retry_at": stamp,
        }
        rationale = f"human_review retry approved by {owner}: {reason}"
        override = build_override_decision(
            intent=HUMAN_REVIEW_RETRY_INTENT,
            approved_by=owner,
            rationale=rationale,
        )
        actions.append(
            build_override_action(
                intent=HUMAN_REVIEW_RETRY_INTENT,
                approved_by=owner,
                run_id=None,
            ),
        )
    elif decision == ReviewDecision.CLOSE:
        status = TaskStatus.DONE
        review_fields = {
            "close_reason": reason,
            "closed_by": owner,
            "closed_at": stamp,
            "closed_artifact_id": request.artifact_id,
            "closed_session_id": session_id,
            "review_closed": True,
        }
    else:
        status = TaskStatus.BLOCKED
        review_fields = {
            "review_rejected": True,
            "review_rejected_reason": reason,
            "review_rejected_by": owner,
            "review_rejected_at": stamp,
        }

    actions.append(
        ActionWrite(
            actor=LIFECYCLE_ACTOR,
            action_type=f"human_review_{decision.value}",
            status=ActionStatus.OK,
            reason=(
                f"task_id={task.task_id}; decision={decision.value}; owner={owner}; "
                f'reason="{_truncate(reason)}"'
            ),
            meta={
                "decision": decision.value,
                "owner": owner,
                "artifact_id": request.artifact_id,
                "reason": reason,
                "before": _snapshot(task),
                "after": {"status": status.value, "owner_agent": owner},
                **request.extra_meta,
            },
        ),
    )
    return TaskTransition(
        status=status,
        owner_agent=owner,
        meta={**meta, **review_fields},
        actions=actions,
        decision=override,
    )


def plan_close(
    task: TaskView,
    *,
    reason: str,
    owner: str | None = None,
    artifact_id: str | None = None,
    now: datetime,
) -> TaskTransition:
    """Normal completion of an executing task."""

    reason = validate_reason(reason)
    resolved_owner = validate_owner(owner)
    if task.status != TaskStatus.DOING:
        if task.status == TaskStatus.TODO:
            hint = "Pop the task to doing first (tasks next)."
        elif task.status == TaskStatus.DONE:
            hint = "Task is already closed."
        else:
            hint = "Task is blocked; resolve it through human review."
        raise LifecycleGuardError(
            "STATUS_GUARD_FAILED",
            f'task must be status="doing" to close (current status: "{task.status.value}")',
            task_id=task.task_id,
            hints=[hint],
            details={"status": task.status.value},
        )

    stamp = to_iso(now)
    reason_parts = [f"task_id={task.task_id}", f"owner={resolved_owner}"]
    if artifact_id:
        reason_parts.append(f"artifact_id={artifact_id}")
    reason_parts.append(f'reason="{_truncate(reason)}"')
    return TaskTransition(
        status=TaskStatus.DONE,
        owner_agent=resolved_owner,
        meta={
            **task.meta,
            "close_reason": reason,
            "closed_by": resolved_owner,
            "closed_at": stamp,
            "closed_artifact_id": artifact_id,
            "closed_session_id": task.session_id,
        },
        actions=[
            ActionWrite(
                actor=LIFECYCLE_ACTOR,
                action_type="task_close",
                status=ActionStatus.OK,
                reason="; ".join(reason_parts),
                meta={
                    "owner": resolved_owner,
                    "artifact_id": artifact_id,
                    "close_reason": reason,
                    "before": _snapshot(task),
                    "after": {"status": TaskStatus.DONE.value, "owner_agent": resolved_owner},
                },
            ),
        ],
    )


class TaskLifecycle:
    """Applies lifecycle transitions through the ledger, one guarded commit each."""

    def __init__(self, repository: LedgerRepository) -> None:
        self.repository = repository

    def pop_next(
        self,
        *,
        session_id: str | None = None,
        exclude_synthetic: bool = False,
        owner: str | None = None,
        run_id: str | None = None,
    ) -> TaskView | None:
        return self.repository.pop_next_task(
            session_id=session_id,
            exclude_synthetic=exclude_synthetic,
            owner=owner,
            run_id=run_id,
        )

    def trigger_stop_loss(self, task_id: str, request: StopLossRequest) -> TransitionResult:
        result = self.repository.apply_task_transition(
            task_id=task_id,
            plan=lambda task: plan_stop_loss(task, request, now=utc_now()),
        )
        logger.info("Stop-loss applied to task %s (%s)", task_id, request.failure_type)
        return result

    def apply_policy_gate(self, task_id: str, request: PolicyGateRequest) -> TransitionResult:
        result = self.repository.apply_task_transition(
            task_id=task_id,
            plan=lambda task: plan_policy_gate(task, request, now=utc_now()),
        )
        if result.changed:
            logger.info("Policy gate %s applied to task %s", request.policy, task_id)
        return result

    def review(self, task_id: str, request: ReviewRequest) -> TransitionResult:
        result = self.repository.apply_task_transition(
            task_id=task_id,
            plan=lambda task: plan_review(task, request, now=utc_now()),
        )
        logger.info("Human review %s applied to task %s", request.decision.value, task_id)
        return result

    def close(
        self,
        task_id: str,
        *,
        reason: str,
        owner: str | None = None,
        artifact_id: str | None = None,
    ) -> TransitionResult:
        return self.repository.apply_task_transition(
            task_id=task_id,
            plan=lambda task: plan_close(
                task,
                reason=reason,
                owner=owner,
                artifact_id=artifact_id,
                now=utc_now(),
            ),
        )
