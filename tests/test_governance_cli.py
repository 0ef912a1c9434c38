from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from taskgate.main import taskgate

pytestmark = [
    allure.epic("Governance CLI"),
    allure.feature("Run, Tasks, Policy, Ledger"),
]

SALES_GOAL = "Draft sales outreach sequence for new prospects"


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "cli.db"


@pytest.fixture()
def invoke(db_path: Path):
    runner = CliRunner()

    def _invoke(*args: str, with_db: bool = True) -> tuple[int, dict]:
        argv = list(args)
        if with_db:
            argv.extend(["--db-path", str(db_path)])
        result = runner.invoke(taskgate, argv, catch_exceptions=False)
        return result.exit_code, json.loads(result.stdout)

    return _invoke


@pytest.fixture()
def request_file(tmp_path: Path, make_request):
    def _write(user_goal: str, **kwargs) -> str:
        path = tmp_path / f"request_{abs(hash(user_goal))}.json"
        path.write_text(json.dumps(make_request(user_goal, **kwargs)), encoding="utf-8")
        return str(path)

    return _write


def test_run_dispatches_and_ledger_is_queryable(invoke, request_file) -> None:
    code, document = invoke("run", "--request", request_file("Plan Q1 roadmap"))

    assert code == 0
    assert document["dispatch"]["state"] == "DISPATCHED"
    artifact_id = document["dispatch"]["artifact_id"]

    code, actions = invoke("ledger", "actions", "--session", "sess_test")
    assert code == 0
    assert sorted(action["type"] for action in actions["actions"]) == ["dispatch", "route"]

    code, latest = invoke("ledger", "artifact", "--session", "sess_test")
    assert code == 0
    assert latest["artifact"]["artifact_id"] == artifact_id

    code, tasks = invoke("tasks", "list", "--session", "sess_test")
    assert code == 0
    assert tasks["count"] == 1
    assert tasks["tasks"][0]["synthetic"] is True


def test_run_exit_codes(invoke, request_file) -> None:
    code, denied = invoke("run", "--request", request_file("Send email to external clients"))
    assert code == 1
    assert denied["status"] == "denied"

    sales = request_file(SALES_GOAL, risk_flags={"external_comms": True})
    code, gated = invoke("run", "--request", sales)
    assert code == 0
    assert gated["dispatch"]["state"] == "GATED"

    code, approval = invoke("run", "--request", sales, "--override")
    assert code == 2
    assert approval["error"] == "APPROVAL_REQUIRED"

    code, approved = invoke(
        "approve-override",
        "--session",
        "sess_test",
        "--intent",
        "SALES_INTERNAL",
        "--approved-by",
        "founder",
        "--rationale",
        "Draft reviewed",
    )
    assert code == 0
    assert approved["decision"]["selected_option"] == "override_approved"

    code, dispatched = invoke("run", "--request", sales, "--override")
    assert code == 0
    assert dispatched["dispatch"]["state"] == "DISPATCHED"

    code, decisions = invoke("ledger", "decisions", "--session", "sess_test")
    assert code == 0
    assert sorted(item["decision_type"] for item in decisions["decisions"]) == [
        "approve",
        "defer",
        "defer",
        "defer",
    ]


def test_founder_mode_flag(invoke, request_file) -> None:
    sales = request_file(SALES_GOAL, risk_flags={"external_comms": True})

    code, document = invoke("run", "--request", sales, "--founder-mode")

    assert code == 0
    assert document["dispatch"]["draft_only"] is True


def test_run_reports_unreadable_request(invoke, tmp_path: Path) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")

    code, document = invoke("run", "--request", str(broken))

    assert code == 1
    assert document["error"] == "REQUEST_READ_ERROR"


def test_run_reports_invalid_request(invoke, tmp_path: Path) -> None:
    invalid = tmp_path / "invalid.json"
    invalid.write_text(json.dumps({"session_id": "sess_test"}), encoding="utf-8")

    code, document = invoke("run", "--request", str(invalid))

    assert code == 1
    assert document["error"] == "VALIDATION_FAILED"


def test_bad_generation_mode_is_a_config_error(invoke, request_file, monkeypatch) -> None:
    monkeypatch.setenv("TASKGATE_GENERATION_MODE", "echo")

    code, document = invoke("run", "--request", request_file("Plan Q1 roadmap"))

    assert code == 1
    assert document["error"] == "CONFIG_ERROR"


def test_bad_stub_mode_rejects(invoke, request_file, monkeypatch) -> None:
    monkeypatch.setenv("TASKGATE_GENERATION_MODE", "bad_stub")

    code, document = invoke("run", "--request", request_file("Plan Q1 roadmap"))

    assert code == 0
    assert document["dispatch"]["state"] == "REJECTED"


def test_task_lifecycle_commands(invoke, request_file) -> None:
    invoke("run", "--request", request_file("Plan Q1 roadmap"))

    code, peeked = invoke("tasks", "next", "--peek")
    assert code == 0
    task_id = peeked["task"]["task_id"]
    assert peeked["task"]["status"] == "todo"

    code, document = invoke("tasks", "close", task_id, "--reason", "Nothing to do")
    assert code == 1
    assert document["error"] == "STATUS_GUARD_FAILED"

    code, popped = invoke("tasks", "next", "--owner", "ops")
    assert code == 0
    assert popped["task"]["task_id"] == task_id
    assert popped["task"]["status"] == "doing"

    code, held = invoke(
        "tasks",
        "stop-loss",
        task_id,
        "--reason",
        "Contract drift",
        "--step",
        "manual_check",
        "--failure-type",
        "rejected",
    )
    assert code == 0
    assert held["task"]["status"] == "blocked"
    assert held["task"]["meta"]["stop_loss_failure_type"] == "REJECTED"

    code, reviewed = invoke(
        "tasks",
        "review",
        task_id,
        "--decision",
        "close",
        "--reason",
        "Handled by hand",
    )
    assert code == 0
    assert reviewed["previous_status"] == "blocked"
    assert reviewed["task"]["status"] == "done"

    code, shown = invoke("tasks", "show", task_id)
    assert code == 0
    assert shown["task"]["meta"]["review_closed"] is True


def test_policy_gate_command_is_idempotent(invoke, request_file) -> None:
    invoke("run", "--request", request_file("Plan Q1 roadmap"))
    _, peeked = invoke("tasks", "next", "--peek")
    task_id = peeked["task"]["task_id"]
    args = ("tasks", "policy-gate", task_id, "--reason", "Needs a human", "--policy", "MANUAL")

    code, first = invoke(*args)
    assert code == 0
    assert first["idempotent"] is False

    code, second = invoke(*args)
    assert code == 0
    assert second["idempotent"] is True
    assert second["action_ids"] == []


def test_unknown_task_is_not_found(invoke) -> None:
    code, document = invoke("tasks", "show", "task_missing")
    assert code == 1
    assert document == {"ok": False, "error": "NOT_FOUND", "task_id": "task_missing"}

    code, document = invoke("tasks", "close", "task_missing", "--reason", "x")
    assert code == 1
    assert document["error"] == "NOT_FOUND"


def test_triage_on_empty_ledger(invoke) -> None:
    code, document = invoke("triage", "--dry-run")

    assert code == 0
    assert document["ok"] is True
    assert document["task"] is None


def test_policy_commands(invoke, tmp_path: Path) -> None:
    code, shown = invoke("policy", "show", with_db=False)
    assert code == 0
    assert shown["policy"]["version"] == "v1.0"

    code, checked = invoke(
        "policy",
        "check",
        "--text",
        "Please send email to the list",
        "--intent",
        "PLAN_WORK",
        with_db=False,
    )
    assert code == 0
    assert checked["check"]["code"] == "FORBIDDEN_PHRASE"

    code, missing = invoke(
        "policy",
        "show",
        "--policy-path",
        str(tmp_path / "missing.json"),
        with_db=False,
    )
    assert code == 1
    assert missing["error"] == "POLICY_FILE_NOT_FOUND"


def test_artifact_query_needs_a_target(invoke) -> None:
    code, document = invoke("ledger", "artifact")

    assert code == 1
    assert document["error"] == "VALIDATION_FAILED"
