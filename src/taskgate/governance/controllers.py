"""Controllers for governance CLI commands."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from taskgate.config import Settings
from taskgate.governance.backend import build_generation_agent
from taskgate.governance.contracts import ContractStore
from taskgate.governance.lifecycle import (
    LifecycleGuardError,
    PolicyGateRequest,
    ReviewRequest,
    StopLossRequest,
    TaskLifecycle,
)
from taskgate.governance.models import (
    ActionView,
    ArtifactView,
    DecisionView,
    FailureType,
    ReviewDecision,
    TaskStatus,
    TaskView,
    TransitionResult,
)
from taskgate.governance.override import approve_override
from taskgate.governance.policy import PolicyLoadError, check_policy, load_policy
from taskgate.governance.repository import LedgerRepository
from taskgate.governance.services import (
    EXIT_FAILED,
    EXIT_OK,
    GovernanceService,
    RunRequestCommand,
)
from taskgate.governance.triage import GovernanceTriage, TriageCommand
from taskgate.storage.common import to_iso


@dataclass(slots=True)
class CliResult:
    """Lines to print and the exit code to finish with."""

    lines: list[str]
    exit_code: int = EXIT_OK


@dataclass(slots=True)
class RunCommand:
    """CLI input for routing and dispatching one request file."""

    db_path: Path | None
    request_path: Path
    override: bool = False
    founder_mode: bool = False
    run_id: str | None = None


@dataclass(slots=True)
class ApproveOverrideCommand:
    db_path: Path | None
    session_id: str
    intent: str
    approved_by: str
    rationale: str
    run_id: str | None = None


@dataclass(slots=True)
class TasksListCommand:
    db_path: Path | None
    session_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskShowCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TasksNextCommand:
    """CLI input for claiming (or peeking at) the oldest todo task."""

    db_path: Path | None
    session_id: str | None
    exclude_synthetic: bool
    owner: str | None
    peek: bool = False
    run_id: str | None = None


@dataclass(slots=True)
class StopLossCommand:
    db_path: Path | None
    task_id: str
    reason: str
    step: str
    owner: str | None
    run_id: str | None
    failure_type: str | None


@dataclass(slots=True)
class PolicyGateCommand:
    db_path: Path | None
    task_id: str
    reason: str
    policy: str
    owner: str | None
    phrase: str | None
    intent: str | None


@dataclass(slots=True)
class ReviewCommand:
    """CLI input for a human-review decision on a held task."""

    db_path: Path | None
    task_id: str
    decision: str
    reason: str
    owner: str | None
    artifact_id: str | None


@dataclass(slots=True)
class CloseCommand:
    db_path: Path | None
    task_id: str
    reason: str
    owner: str | None
    artifact_id: str | None


@dataclass(slots=True)
class TriageCliCommand:
    db_path: Path | None
    session_id: str | None
    owner: str | None
    dry_run: bool


@dataclass(slots=True)
class PolicyCheckCommand:
    text: str
    intent: str | None


@dataclass(slots=True)
class LedgerQueryCommand:
    """CLI input for ledger read queries."""

    db_path: Path | None
    session_id: str | None = None
    action_type: str | None = None
    artifact_id: str | None = None
    limit: int = 200


class GovernanceCliController:
    """Coordinates request runs, task lifecycle, policy, and ledger CLI operations."""

    def run(self, command: RunCommand) -> CliResult:
        settings = Settings.from_env(db_path=command.db_path)
        try:
            settings.validate_for_live_generation()
        except ValueError as error:
            return _json_result({"status": "error", "error": "CONFIG_ERROR", "detail": str(error)})
        try:
            payload = json.loads(command.request_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            return _json_result(
                {"status": "error", "error": "REQUEST_READ_ERROR", "detail": str(error)},
            )

        agent = build_generation_agent(settings.generation)
        try:
            with _repository(settings) as repository:
                service = GovernanceService(
                    repository=repository,
                    agent=agent,
                    contracts=ContractStore(settings.dispatch.contracts_dir),
                )
                result = service.run(
                    RunRequestCommand(
                        payload=payload,
                        override=command.override,
                        founder_mode=command.founder_mode or settings.dispatch.founder_mode,
                        run_id=command.run_id,
                    ),
                )
        finally:
            agent.close()
        return _json_result(result.document, exit_code=result.exit_code)

    def approve_override(self, command: ApproveOverrideCommand) -> CliResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            try:
                decision = approve_override(
                    repository,
                    session_id=command.session_id,
                    intent=command.intent,
                    approved_by=command.approved_by,
                    rationale=command.rationale,
                    run_id=command.run_id,
                )
            except ValueError as error:
                return _json_result(
                    {"ok": False, "error": "VALIDATION_FAILED", "detail": str(error)},
                )
        return _json_result(
            {"ok": True, "decision": _decision_document(decision)},
            exit_code=EXIT_OK,
        )

    def list_tasks(self, command: TasksListCommand) -> CliResult:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = TaskStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                session_id=command.session_id,
                status=status_filter,
                limit=command.limit,
            )
        return _json_result(
            {"ok": True, "count": len(tasks), "tasks": [_task_document(task) for task in tasks]},
            exit_code=EXIT_OK,
        )

    def show_task(self, command: TaskShowCommand) -> CliResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.get_task(task_id=command.task_id)
        if task is None:
            return _not_found(command.task_id)
        return _json_result({"ok": True, "task": _task_document(task)}, exit_code=EXIT_OK)

    def next_task(self, command: TasksNextCommand) -> CliResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            if command.peek:
                task = repository.peek_next_task(
                    session_id=command.session_id,
                    exclude_synthetic=command.exclude_synthetic,
                )
            else:
                task = TaskLifecycle(repository).pop_next(
                    session_id=command.session_id,
                    exclude_synthetic=command.exclude_synthetic,
                    owner=command.owner or settings.dispatch.default_owner,
                    run_id=command.run_id,
                )
        return _json_result(
            {
                "ok": True,
                "peek": command.peek,
                "task": _task_document(task) if task is not None else None,
            },
            exit_code=EXIT_OK,
        )

    def stop_loss(self, command: StopLossCommand) -> CliResult:
        settings = Settings.from_env(db_path=command.db_path)
        failure_type = FailureType(command.failure_type.upper()) if command.failure_type else None
        request = StopLossRequest(
            reason=command.reason,
            step=command.step,
            owner=command.owner or settings.dispatch.default_owner,
            run_id=command.run_id,
            failure_type=failure_type,
        )
        return self._transition(
            settings,
            command.task_id,
            lambda lifecycle: lifecycle.trigger_stop_loss(command.task_id, request),
        )

    def policy_gate(self, command: PolicyGateCommand) -> CliResult:
        settings = Settings.from_env(db_path=command.db_path)
        request = PolicyGateRequest(
            reason=command.reason,
            policy=command.policy,
            owner=command.owner or settings.dispatch.default_owner,
            phrase=command.phrase,
            intent=command.intent,
        )
        return self._transition(
            settings,
            command.task_id,
            lambda lifecycle: lifecycle.apply_policy_gate(command.task_id, request),
        )

    def review(self, command: ReviewCommand) -> CliResult:
        settings = Settings.from_env(db_path=command.db_path)
        request = ReviewRequest(
            decision=ReviewDecision(command.decision.lower()),
            reason=command.reason,
            owner=command.owner or settings.dispatch.default_owner,
            artifact_id=command.artifact_id,
        )
        return self._transition(
            settings,
            command.task_id,
            lambda lifecycle: lifecycle.review(command.task_id, request),
        )

    def close(self, command: CloseCommand) -> CliResult:
        settings = Settings.from_env(db_path=command.db_path)
        return self._transition(
            settings,
            command.task_id,
            lambda lifecycle: lifecycle.close(
                command.task_id,
                reason=command.reason,
                owner=command.owner or settings.dispatch.default_owner,
                artifact_id=command.artifact_id,
            ),
        )

    def triage(self, command: TriageCliCommand) -> CliResult:
        settings = Settings.from_env(db_path=command.db_path)
        try:
            settings.validate_for_live_generation()
        except ValueError as error:
            return _json_result({"ok": False, "error": "CONFIG_ERROR", "detail": str(error)})
        policy = None
        policy_error = None
        try:
            policy = load_policy(settings.policy.policy_path)
        except PolicyLoadError as error:
            policy_error = error

        agent = build_generation_agent(settings.generation)
        try:
            with _repository(settings) as repository:
                triage = GovernanceTriage(
                    repository=repository,
                    service=GovernanceService(
                        repository=repository,
                        agent=agent,
                        contracts=ContractStore(settings.dispatch.contracts_dir),
                    ),
                    policy=policy,
                    policy_error=policy_error,
                )
                report = triage.run_once(
                    TriageCommand(
                        session_id=command.session_id,
                        owner=command.owner or settings.dispatch.default_owner,
                        dry_run=command.dry_run,
                    ),
                )
        finally:
            agent.close()
        return _json_result(report.document, exit_code=report.exit_code)

    def show_policy(self, *, policy_path: Path | None) -> CliResult:
        settings = Settings.from_env()
        try:
            policy = load_policy(policy_path or settings.policy.policy_path)
        except PolicyLoadError as error:
            return _json_result(error.to_dict())
        return _json_result({"ok": True, "policy": policy.to_dict()}, exit_code=EXIT_OK)

    def check_policy(self, command: PolicyCheckCommand, *, policy_path: Path | None) -> CliResult:
        settings = Settings.from_env()
        policy = None
        policy_error = None
        try:
            policy = load_policy(policy_path or settings.policy.policy_path)
        except PolicyLoadError as error:
            policy_error = error
        verdict = check_policy(
            policy,
            text=command.text,
            intent=command.intent,
            load_error=policy_error,
        )
        return _json_result({"ok": True, "check": verdict.to_dict()}, exit_code=EXIT_OK)

    def list_actions(self, command: LedgerQueryCommand) -> CliResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            actions = repository.list_actions(
                session_id=command.session_id or "",
                action_type=command.action_type,
                limit=command.limit,
            )
        return _json_result(
            {
                "ok": True,
                "session_id": command.session_id,
                "count": len(actions),
                "actions": [_action_document(action) for action in actions],
            },
            exit_code=EXIT_OK,
        )

    def list_decisions(self, command: LedgerQueryCommand) -> CliResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            decisions = repository.list_decisions(
                session_id=command.session_id or "",
                limit=command.limit,
            )
        return _json_result(
            {
                "ok": True,
                "session_id": command.session_id,
                "count": len(decisions),
                "decisions": [_decision_document(decision) for decision in decisions],
            },
            exit_code=EXIT_OK,
        )

    def show_artifact(self, command: LedgerQueryCommand) -> CliResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            if command.artifact_id:
                artifact = repository.get_artifact(artifact_id=command.artifact_id)
            elif command.session_id:
                artifact = repository.latest_artifact(session_id=command.session_id)
            else:
                return _json_result(
                    {
                        "ok": False,
                        "error": "VALIDATION_FAILED",
                        "detail": "Provide an artifact id or --session.",
                    },
                )
        if artifact is None:
            return _json_result(
                {
                    "ok": False,
                    "error": "NOT_FOUND",
                    "artifact_id": command.artifact_id,
                    "session_id": command.session_id,
                },
            )
        return _json_result(
            {"ok": True, "artifact": _artifact_document(artifact)},
            exit_code=EXIT_OK,
        )

    def _transition(
        self,
        settings: Settings,
        task_id: str,
        apply: Callable[[TaskLifecycle], TransitionResult],
    ) -> CliResult:
        with _repository(settings) as repository:
            if repository.get_task(task_id=task_id) is None:
                return _not_found(task_id)
            try:
                result = apply(TaskLifecycle(repository))
            except LifecycleGuardError as error:
                payload = error.to_dict()
                payload.setdefault("task_id", task_id)
                return _json_result(payload)
            except RuntimeError as error:
                return _json_result(
                    {
                        "ok": False,
                        "error": "TASK_UPDATE_FAILED",
                        "task_id": task_id,
                        "detail": str(error),
                    },
                )
        return _json_result(
            {
                "ok": True,
                "idempotent": not result.changed,
                "previous_status": result.previous_status.value,
                "task": _task_document(result.task),
                "action_ids": result.action_ids,
                "decision_id": result.decision_id,
            },
            exit_code=EXIT_OK,
        )


@contextmanager
def _repository(settings: Settings) -> Iterator[LedgerRepository]:
    repository = LedgerRepository(
        db_path=settings.db_path,
        busy_timeout_ms=settings.busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


def _json_result(document: dict[str, Any], *, exit_code: int = EXIT_FAILED) -> CliResult:
    return CliResult(
        lines=json.dumps(document, indent=2, ensure_ascii=False, default=str).splitlines(),
        exit_code=exit_code,
    )


def _not_found(task_id: str) -> CliResult:
    return _json_result({"ok": False, "error": "NOT_FOUND", "task_id": task_id})


def _task_document(task: TaskView) -> dict[str, Any]:
    return {
        "task_id": task.task_id,
        "session_id": task.session_id,
        "created_at": to_iso(task.created_at),
        "updated_at": to_iso(task.updated_at),
        "owner_agent": task.owner_agent,
        "status": task.status.value,
        "title": task.title,
        "details": task.details,
        "synthetic": task.is_synthetic,
        "meta": task.meta,
    }


def _action_document(action: ActionView) -> dict[str, Any]:
    return {
        "action_id": action.action_id,
        "ts": to_iso(action.ts),
        "actor": action.actor,
        "type": action.action_type,
        "status": action.status,
        "reason": action.reason,
        "meta": action.meta,
    }


def _decision_document(decision: DecisionView) -> dict[str, Any]:
    return {
        "decision_id": decision.decision_id,
        "session_id": decision.session_id,
        "ts": to_iso(decision.ts),
        "decision_type": decision.decision_type.value,
        "subject": decision.subject,
        "selected_option": decision.selected_option,
        "rationale": decision.rationale,
        "approved_by": decision.approved_by,
        "options": decision.options,
    }


def _artifact_document(artifact: ArtifactView) -> dict[str, Any]:
    return {
        "artifact_id": artifact.artifact_id,
        "session_id": artifact.session_id,
        "ts": to_iso(artifact.ts),
        "type": artifact.artifact_type,
        "title": artifact.title,
        "content": artifact.content,
        "content_sha256": artifact.content_sha256,
        "classification": artifact.classification,
        "meta": artifact.meta,
    }
