from __future__ import annotations

import allure
import pytest

from taskgate.governance.lifecycle import (
    HUMAN_REVIEW_RETRY_INTENT,
    MAX_REASON_CHARS,
    LifecycleGuardError,
    PolicyGateRequest,
    ReviewRequest,
    StopLossRequest,
    TaskLifecycle,
)
from taskgate.governance.models import DecisionType, FailureType, ReviewDecision, TaskStatus
from taskgate.governance.override import OVERRIDE_APPROVED, has_approved_override

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Queue, Stop-Loss, Review"),
]


@pytest.fixture()
def lifecycle(repository) -> TaskLifecycle:
    return TaskLifecycle(repository)


def _stop_loss(lifecycle: TaskLifecycle, task_id: str, reason: str = "dispatch rejected"):
    return lifecycle.trigger_stop_loss(
        task_id,
        StopLossRequest(
            reason=reason,
            step="triage_dispatch",
            owner="ops",
            run_id="run_sl",
            failure_type=FailureType.REJECTED,
        ),
    )


def _action_types(repository, session_id: str = "sess_queue") -> list[str]:
    return [action.action_type for action in repository.list_actions(session_id=session_id)]


def test_pop_claims_oldest_todo_task(repository, lifecycle, seed_task) -> None:
    first = seed_task("First task")
    seed_task("Second task")

    claimed = lifecycle.pop_next(owner="ops", run_id="run_pop")

    assert claimed is not None
    assert claimed.task_id == first.task_id
    assert claimed.status == TaskStatus.DOING
    assert claimed.owner_agent == "ops"
    assert claimed.meta["popped_owner"] == "ops"
    assert claimed.meta["run_id"] == "run_pop"
    task_next = repository.list_actions(session_id="sess_queue", action_type="task_next")
    assert task_next[0].meta["task_id"] == first.task_id
    assert len(repository.list_actions(session_id="sess_queue", action_type="task_update")) == 1


def test_pop_skips_synthetic_tasks_on_request(repository, lifecycle, seed_task) -> None:
    seed_task("Stub task", source="stub")
    real = seed_task("Real task")

    assert repository.peek_next_task(exclude_synthetic=True).task_id == real.task_id
    claimed = lifecycle.pop_next(exclude_synthetic=True)

    assert claimed is not None
    assert claimed.task_id == real.task_id
    assert lifecycle.pop_next(exclude_synthetic=True) is None
    assert lifecycle.pop_next() is not None
    assert lifecycle.pop_next() is None


def test_pop_respects_session_filter(lifecycle, seed_task) -> None:
    seed_task("Other session", session_id="sess_other")
    mine = seed_task("Mine", session_id="sess_mine")

    claimed = lifecycle.pop_next(session_id="sess_mine")

    assert claimed is not None
    assert claimed.task_id == mine.task_id


def test_close_requires_doing(repository, lifecycle, seed_task) -> None:
    task = seed_task("Write the brief")

    with pytest.raises(LifecycleGuardError) as excinfo:
        lifecycle.close(task.task_id, reason="done")
    assert excinfo.value.code == "STATUS_GUARD_FAILED"
    assert excinfo.value.hints == ["Pop the task to doing first (tasks next)."]
    assert repository.get_task(task_id=task.task_id).status == TaskStatus.TODO

    lifecycle.pop_next()
    closed = lifecycle.close(task.task_id, reason="Brief delivered", artifact_id="artifact_1")

    assert closed.previous_status == TaskStatus.DOING
    assert closed.task.status == TaskStatus.DONE
    assert closed.task.owner_agent == "cos"
    assert closed.task.meta["closed_artifact_id"] == "artifact_1"
    assert "task_close" in _action_types(repository)

    with pytest.raises(LifecycleGuardError) as excinfo:
        lifecycle.close(task.task_id, reason="again")
    assert excinfo.value.to_dict()["hints"] == ["Task is already closed."]


def test_reason_is_validated(lifecycle, seed_task) -> None:
    task = seed_task("Write the brief")
    lifecycle.pop_next()

    with pytest.raises(LifecycleGuardError, match="reason is required"):
        lifecycle.close(task.task_id, reason="   ")
    with pytest.raises(LifecycleGuardError, match=f"<= {MAX_REASON_CHARS}"):
        _stop_loss(lifecycle, task.task_id, reason="r" * (MAX_REASON_CHARS + 1))


def test_stop_loss_holds_task_once(repository, lifecycle, seed_task) -> None:
    task = seed_task("Plan sprint")
    lifecycle.pop_next()

    held = _stop_loss(lifecycle, task.task_id)

    assert held.task.status == TaskStatus.BLOCKED
    assert held.task.owner_agent == "ops"
    assert held.task.meta["stop_loss_triggered"] is True
    assert held.task.meta["stop_loss_failure_type"] == "REJECTED"
    assert held.task.meta["stop_loss_step"] == "triage_dispatch"
    stop_actions = repository.list_actions(session_id="sess_queue", action_type="stop_loss")
    assert [action.meta["task_id"] for action in stop_actions] == [task.task_id]

    with pytest.raises(LifecycleGuardError) as excinfo:
        _stop_loss(lifecycle, task.task_id, reason="second failure")
    payload = excinfo.value.to_dict()
    assert payload["error"] == "ALREADY_TRIGGERED"
    assert payload["stop_loss_reason"] == "dispatch rejected"
    assert len(repository.list_actions(session_id="sess_queue", action_type="stop_loss")) == 1
    after = repository.get_task(task_id=task.task_id)
    assert after.status == held.task.status
    assert after.owner_agent == held.task.owner_agent
    assert after.meta == held.task.meta


def test_policy_gate_is_idempotent(repository, lifecycle, seed_task) -> None:
    task = seed_task("Send email to all customers")
    request = PolicyGateRequest(
        reason="FORBIDDEN_PHRASE",
        policy="FORBIDDEN_PHRASE",
        phrase="send email",
    )

    first = lifecycle.apply_policy_gate(task.task_id, request)
    second = lifecycle.apply_policy_gate(task.task_id, request)

    assert first.changed is True
    assert first.task.status == TaskStatus.BLOCKED
    assert first.task.meta["hil_required"] is True
    assert first.task.meta["policy_gate_phrase"] == "send email"
    assert second.changed is False
    assert second.action_ids == []
    gates = repository.list_actions(session_id="sess_queue", action_type="policy_gate")
    assert [action.status for action in gates] == ["gated"]


def test_review_applies_only_to_held_tasks(lifecycle, seed_task) -> None:
    task = seed_task("Plan sprint")

    with pytest.raises(LifecycleGuardError) as excinfo:
        lifecycle.review(
            task.task_id,
            ReviewRequest(decision=ReviewDecision.CLOSE, reason="not needed"),
        )

    assert excinfo.value.code == "NOT_UNDER_REVIEW"


def test_review_retry_requeues_with_override(repository, lifecycle, seed_task) -> None:
    task = seed_task("Plan sprint")
    lifecycle.pop_next()
    held = _stop_loss(lifecycle, task.task_id)

    retried = lifecycle.review(
        task.task_id,
        ReviewRequest(decision=ReviewDecision.RETRY, reason="Contract fixed", owner="founder"),
    )

    assert retried.task.status == TaskStatus.TODO
    assert retried.task.meta["stop_loss_retry_approved"] is True
    assert retried.task.meta["stop_loss_retry_by"] == "founder"
    for key in (
        "stop_loss_triggered",
        "stop_loss_reason",
        "stop_loss_at",
        "stop_loss_failure_type",
        "stop_loss_step",
    ):
        assert retried.task.meta[key] == held.task.meta[key]
    assert retried.decision_id is not None
    decisions = repository.list_decisions(session_id="sess_queue")
    assert [decision.decision_type for decision in decisions] == [DecisionType.APPROVE]
    assert decisions[0].selected_option == OVERRIDE_APPROVED
    assert decisions[0].rationale == "human_review retry approved by founder: Contract fixed"
    assert has_approved_override(
        repository,
        session_id="sess_queue",
        intent=HUMAN_REVIEW_RETRY_INTENT,
    )
    assert {"approve_override", "human_review_retry"} <= set(_action_types(repository))

    with pytest.raises(LifecycleGuardError) as excinfo:
        lifecycle.review(
            task.task_id,
            ReviewRequest(decision=ReviewDecision.RETRY, reason="again"),
        )
    assert excinfo.value.code == "ALREADY_APPROVED_FOR_RETRY"


def test_review_close_finishes_stop_lossed_task_without_doing(
    repository,
    lifecycle,
    seed_task,
) -> None:
    task = seed_task("Plan sprint")
    lifecycle.pop_next()
    _stop_loss(lifecycle, task.task_id)
    actions_before = _action_types(repository)

    closed = lifecycle.review(
        task.task_id,
        ReviewRequest(decision=ReviewDecision.CLOSE, reason="Handled manually"),
    )

    assert closed.previous_status == TaskStatus.BLOCKED
    assert closed.task.status == TaskStatus.DONE
    assert closed.task.meta["stop_loss_triggered"] is True
    actions_after = _action_types(repository)
    assert len(actions_after) == len(actions_before) + 1
    assert actions_after.count("task_update") == actions_before.count("task_update")
    assert "human_review_close" in actions_after
    review_action = repository.list_actions(
        session_id="sess_queue",
        action_type="human_review_close",
    )[0]
    assert review_action.meta["before"]["status"] == "blocked"
    assert review_action.meta["after"]["status"] == "done"
    assert closed.task.meta["review_closed"] is True
    assert closed.task.meta["closed_session_id"] == "sess_queue"
    with pytest.raises(LifecycleGuardError) as excinfo:
        lifecycle.review(
            task.task_id,
            ReviewRequest(decision=ReviewDecision.CLOSE, reason="again"),
        )
    assert excinfo.value.code == "ALREADY_CLOSED"


def test_review_reject_keeps_task_blocked(lifecycle, seed_task) -> None:
    task = seed_task("Plan sprint")
    lifecycle.pop_next()
    _stop_loss(lifecycle, task.task_id)

    rejected = lifecycle.review(
        task.task_id,
        ReviewRequest(decision=ReviewDecision.REJECT, reason="Out of scope"),
    )

    assert rejected.task.status == TaskStatus.BLOCKED
    assert rejected.task.meta["review_rejected"] is True
    with pytest.raises(LifecycleGuardError) as excinfo:
        lifecycle.review(
            task.task_id,
            ReviewRequest(decision=ReviewDecision.REJECT, reason="again"),
        )
    assert excinfo.value.code == "ALREADY_REJECTED"


def test_transition_of_missing_task_raises(lifecycle) -> None:
    with pytest.raises(RuntimeError, match="Task not found: task_missing"):
        lifecycle.close("task_missing", reason="done")


@pytest.mark.parametrize("decision", list(ReviewDecision))
def test_policy_gate_alone_is_not_reviewable(repository, lifecycle, seed_task, decision) -> None:
    task = seed_task("Plan sprint")
    gated = lifecycle.apply_policy_gate(
        task.task_id,
        PolicyGateRequest(reason="needs a human", policy="UNKNOWN_INTENT"),
    )

    with pytest.raises(LifecycleGuardError) as excinfo:
        lifecycle.review(task.task_id, ReviewRequest(decision=decision, reason="Looks fine"))

    assert excinfo.value.code == "NOT_UNDER_REVIEW"
    unchanged = repository.get_task(task_id=task.task_id)
    assert unchanged.status == TaskStatus.BLOCKED
    assert unchanged.meta == gated.task.meta
    assert "stop_loss_retry_approved" not in unchanged.meta
    assert repository.list_decisions(session_id="sess_queue") == []
