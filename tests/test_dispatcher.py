from __future__ import annotations

import hashlib
import json
from pathlib import Path

import allure
import pytest

from taskgate.governance.backend import BrokenStubGenerationAgent, StubGenerationAgent
from taskgate.governance.contracts import ContractStore
from taskgate.governance.dispatcher import Dispatcher, qualifies_for_draft_only
from taskgate.governance.intake import parse_request
from taskgate.governance.models import (
    ActionStatus,
    ActionWrite,
    ArtifactWrite,
    DispatchState,
    Intent,
    TaskStatus,
    TaskWrite,
)
from taskgate.governance.override import approve_override
from taskgate.governance.repair import ContractRepairLoop
from taskgate.governance.routing import decide_route
from taskgate.governance.services import (
    EXIT_APPROVAL_REQUIRED,
    EXIT_FAILED,
    EXIT_OK,
    GovernanceService,
    RunRequestCommand,
)

pytestmark = [
    allure.epic("Dispatch"),
    allure.feature("Dispatch State Machine"),
]

SALES_GOAL = "Draft sales outreach sequence for new prospects"


def _service(repository, agent=None, contracts_dir: Path | None = None) -> GovernanceService:
    return GovernanceService(
        repository=repository,
        agent=agent or StubGenerationAgent(),
        contracts=ContractStore(contracts_dir),
    )


def test_clean_request_is_dispatched_with_artifact_and_task(repository, make_request) -> None:
    result = _service(repository).run(
        RunRequestCommand(payload=make_request("Plan Q1 roadmap"), run_id="run_plan"),
    )

    assert result.exit_code == EXIT_OK
    assert result.document["status"] == "ok"
    dispatch = result.document["dispatch"]
    assert dispatch["state"] == "DISPATCHED"
    assert dispatch["agent"] == "cos"
    assert dispatch["reason"] == 'Cleared for dispatch to agent "cos".'

    artifact = repository.get_artifact(artifact_id=dispatch["artifact_id"])
    assert artifact is not None
    assert artifact.title == "Stub Plan"
    assert artifact.content_sha256 == hashlib.sha256(artifact.content.encode("utf-8")).hexdigest()
    assert artifact.meta["run_id"] == "run_plan"

    task = repository.get_task(task_id=dispatch["task_id"])
    assert task is not None
    assert task.status == TaskStatus.TODO
    assert task.owner_agent == "cos"
    assert task.is_synthetic is True

    actions = repository.list_actions(session_id="sess_test")
    assert sorted(action.action_type for action in actions) == ["dispatch", "route"]
    dispatch_action = next(action for action in actions if action.action_type == "dispatch")
    assert dispatch_action.status == "ok"
    assert dispatch_action.meta["artifact_id"] == dispatch["artifact_id"]
    assert dispatch_action.reason.startswith("intent=PLAN_WORK; state=DISPATCHED; gate=approve")


def test_denied_request_writes_nothing(repository, make_request) -> None:
    result = _service(repository).run(
        RunRequestCommand(payload=make_request("Send email to external clients")),
    )

    assert result.exit_code == EXIT_FAILED
    assert result.document["status"] == "denied"
    assert result.document["error"] == "GOVERNANCE_GATE_DENIED"
    assert result.outcome is None
    assert repository.get_session(session_id="sess_test") is None


def test_invalid_request_is_rejected_before_routing(repository) -> None:
    result = _service(repository).run(RunRequestCommand(payload={"session_id": "sess_test"}))

    assert result.exit_code == EXIT_FAILED
    assert result.document["error"] == "VALIDATION_FAILED"
    assert {"field": "request_id", "message": "required non-empty string"} in result.document[
        "errors"
    ]
    assert repository.get_session(session_id="sess_test") is None


def test_flagged_request_is_gated_without_options(repository, make_request) -> None:
    result = _service(repository).run(
        RunRequestCommand(payload=make_request(SALES_GOAL, risk_flags={"external_comms": True})),
    )

    assert result.exit_code == EXIT_OK
    assert result.document["dispatch"]["state"] == "GATED"
    assert result.document["dispatch"]["next_step"] == "request_approval"
    assert result.document["dispatch"]["artifact_id"] is None
    assert repository.count_artifacts(session_id="sess_test") == 0
    actions = repository.list_actions(session_id="sess_test", action_type="dispatch")
    assert [action.status for action in actions] == ["gated"]


def test_override_without_approval_requires_approval(repository, make_request) -> None:
    result = _service(repository).run(
        RunRequestCommand(
            payload=make_request(SALES_GOAL, risk_flags={"external_comms": True}),
            override=True,
        ),
    )

    assert result.exit_code == EXIT_APPROVAL_REQUIRED
    assert result.document["status"] == "approval_required"
    assert result.document["error"] == "APPROVAL_REQUIRED"
    assert result.outcome is not None
    assert result.outcome.override_denied is True
    assert "no approved override record found" in result.outcome.reason


def test_approved_override_promotes_gated_request(repository, make_request) -> None:
    approve_override(
        repository,
        session_id="sess_test",
        intent="sales_internal",
        approved_by="founder",
        rationale="Reviewed the outreach draft scope.",
    )

    result = _service(repository).run(
        RunRequestCommand(
            payload=make_request(SALES_GOAL, risk_flags={"external_comms": True}),
            override=True,
        ),
    )

    assert result.exit_code == EXIT_OK
    assert result.document["dispatch"]["state"] == "DISPATCHED"
    assert result.outcome is not None
    assert result.outcome.meta["override_applied"] is True
    assert repository.count_artifacts(session_id="sess_test") == 1


def test_override_for_other_session_does_not_apply(repository, make_request) -> None:
    approve_override(
        repository,
        session_id="sess_other",
        intent="SALES_INTERNAL",
        approved_by="founder",
        rationale="Different session.",
    )

    result = _service(repository).run(
        RunRequestCommand(
            payload=make_request(SALES_GOAL, risk_flags={"external_comms": True}),
            override=True,
        ),
    )

    assert result.document["dispatch"]["state"] == "GATED"


def test_founder_mode_dispatches_draft_only(repository, make_request) -> None:
    result = _service(repository).run(
        RunRequestCommand(
            payload=make_request(SALES_GOAL, risk_flags={"external_comms": True}),
            founder_mode=True,
        ),
    )

    dispatch = result.document["dispatch"]
    assert result.exit_code == EXIT_OK
    assert dispatch["state"] == "DISPATCHED"
    assert dispatch["draft_only"] is True
    assert dispatch["governance_bypassed"] == "draft_only"
    assert dispatch["reason"].startswith("Draft-only auto-allow for SALES_INTERNAL")


def test_founder_mode_does_not_bypass_other_flags(repository, make_request) -> None:
    result = _service(repository).run(
        RunRequestCommand(
            payload=make_request(
                SALES_GOAL,
                risk_flags={"external_comms": True, "client_data": True},
            ),
            founder_mode=True,
        ),
    )

    assert result.document["dispatch"]["state"] == "GATED"


@pytest.mark.parametrize(
    ("override", "founder_mode"),
    [(False, False), (True, False), (False, True), (True, True)],
)
def test_hard_flags_block_under_any_options(
    repository,
    make_request,
    override: bool,
    founder_mode: bool,
) -> None:
    approve_override(
        repository,
        session_id="sess_test",
        intent="PLAN_WORK",
        approved_by="founder",
        rationale="Trying to push it through.",
    )

    result = _service(repository).run(
        RunRequestCommand(
            payload=make_request("Plan the cluster move", risk_flags={"deployment": True}),
            override=override,
            founder_mode=founder_mode,
        ),
    )

    dispatch = result.document["dispatch"]
    assert result.exit_code == EXIT_OK
    assert dispatch["state"] == "BLOCKED"
    assert dispatch["agent"] is None
    assert dispatch["next_step"] == "revise_request"
    assert dispatch["reason"].endswith("Override is not possible.")
    assert repository.count_artifacts(session_id="sess_test") == 0


def test_contract_failure_is_rejected_without_side_effects(repository, make_request) -> None:
    result = _service(repository, agent=BrokenStubGenerationAgent()).run(
        RunRequestCommand(payload=make_request("Plan Q1 roadmap")),
    )

    dispatch = result.document["dispatch"]
    assert result.exit_code == EXIT_OK
    assert dispatch["state"] == "REJECTED"
    assert dispatch["repair_attempted"] is True
    assert dispatch["repair_succeeded"] is False
    assert dispatch["reason"].startswith("CONTRACT_VALIDATION_FAILED (repair exhausted): ")
    assert dispatch["repair_errors"]
    assert repository.count_artifacts(session_id="sess_test") == 0
    assert repository.list_tasks(session_id="sess_test") == []
    actions = repository.list_actions(session_id="sess_test", action_type="dispatch")
    assert [action.status for action in actions] == ["failed"]


def test_repaired_output_is_dispatched(
    repository,
    make_request,
    scripted_agent,
    contract_document,
) -> None:
    agent = scripted_agent(contract_document(summary="S" * 400), contract_document())

    result = _service(repository, agent=agent).run(
        RunRequestCommand(payload=make_request("Plan Q1 roadmap")),
    )

    dispatch = result.document["dispatch"]
    assert dispatch["state"] == "DISPATCHED"
    assert dispatch["repair_attempted"] is True
    assert dispatch["repair_succeeded"] is True
    task = repository.get_task(task_id=dispatch["task_id"])
    assert task is not None
    assert task.title == "Review Q1 plan"
    assert task.is_synthetic is False


def test_generation_fault_is_an_error_outcome(
    repository,
    make_request,
    scripted_agent,
    timeout_error,
) -> None:
    result = _service(repository, agent=scripted_agent(timeout_error)).run(
        RunRequestCommand(payload=make_request("Plan Q1 roadmap")),
    )

    assert result.exit_code == EXIT_FAILED
    assert result.document["status"] == "error"
    assert result.document["error"] == "DISPATCH_FAULT"
    assert result.document["dispatch"]["state"] == "ERROR"
    assert result.document["dispatch"]["timed_out"] is True
    assert result.document["dispatch"]["next_step"] == "retry_later"
    assert repository.count_artifacts(session_id="sess_test") == 0
    actions = repository.list_actions(session_id="sess_test", action_type="dispatch")
    assert [action.status for action in actions] == ["error"]


def test_missing_contract_is_an_error_outcome(repository, make_request, tmp_path: Path) -> None:
    empty_dir = tmp_path / "contracts"
    empty_dir.mkdir()

    result = _service(repository, contracts_dir=empty_dir).run(
        RunRequestCommand(payload=make_request("Plan Q1 roadmap")),
    )

    assert result.document["dispatch"]["state"] == "ERROR"
    assert result.document["dispatch"]["timed_out"] is False


def test_dispatcher_refuses_denied_routes(repository, make_request) -> None:
    request = parse_request(make_request("Send email to external clients"))
    dispatcher = Dispatcher(
        repository=repository,
        contracts=ContractStore(),
        repair_loop=ContractRepairLoop(agent=StubGenerationAgent()),
    )

    with pytest.raises(ValueError, match="Denied requests"):
        dispatcher.dispatch(request=request, route=decide_route(request))


def test_dispatch_write_is_atomic(repository, monkeypatch) -> None:
    def _fail(**_: object) -> str:
        raise RuntimeError("disk full")

    monkeypatch.setattr(repository, "_add_action", _fail)

    with pytest.raises(RuntimeError, match="disk full"):
        repository.record_dispatch(
            session_id="sess_atomic",
            action=ActionWrite(actor="cos", action_type="dispatch", status=ActionStatus.OK),
            artifact=ArtifactWrite(
                artifact_type="plan",
                title="Plan",
                content=json.dumps({"title": "Plan"}),
                classification="internal",
            ),
            task=TaskWrite(owner_agent="cos", title="Follow up", details=None),
        )

    assert repository.get_session(session_id="sess_atomic") is None
    assert repository.count_artifacts(session_id="sess_atomic") == 0
    assert repository.list_tasks(session_id="sess_atomic") == []


@pytest.mark.parametrize(
    ("intent", "flags", "expected"),
    [
        (Intent.SALES_INTERNAL, {"external_comms": True}, True),
        (Intent.MARKETING_INTERNAL, {"external_comms": True, "other": False}, True),
        (Intent.SALES_INTERNAL, {}, False),
        (Intent.SALES_INTERNAL, {"external_comms": True, "security": True}, False),
        (Intent.SALES_INTERNAL, {"external_comms": True, "budget": 5}, False),
        (Intent.PLAN_WORK, {"external_comms": True}, False),
    ],
)
def test_draft_only_qualification(intent: Intent, flags: dict, expected: bool) -> None:
    assert qualifies_for_draft_only(intent=intent, risk_flags=flags) is expected
