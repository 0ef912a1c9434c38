"""CLI entrypoint for taskgate."""

from pathlib import Path

import rich_click as click

from taskgate import __version__
from taskgate.governance.controllers import (
    ApproveOverrideCommand,
    CliResult,
    CloseCommand,
    GovernanceCliController,
    LedgerQueryCommand,
    PolicyCheckCommand,
    PolicyGateCommand,
    ReviewCommand,
    RunCommand,
    StopLossCommand,
    TaskShowCommand,
    TasksListCommand,
    TasksNextCommand,
    TriageCliCommand,
)

click.rich_click.USE_MARKDOWN = True
GOVERNANCE_CONTROLLER = GovernanceCliController()

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite ledger path. Defaults to TASKGATE_DB_PATH.",
)
OWNER_OPTION = click.option(
    "--owner",
    default=None,
    help="Acting owner agent. Defaults to TASKGATE_DEFAULT_OWNER.",
)


@click.group()
@click.version_option(version=__version__, prog_name="taskgate")
def taskgate() -> None:
    """Governed routing and dispatch of work requests to specialist agents."""


@taskgate.command("run")
@DB_PATH_OPTION
@click.option(
    "--request",
    "request_path",
    type=click.Path(path_type=Path, dir_okay=False),
    required=True,
    help="Request JSON document.",
)
@click.option(
    "--override/--no-override",
    default=False,
    show_default=True,
    help="Promote a GATED result when an override approval exists for this session and intent.",
)
@click.option(
    "--founder-mode/--no-founder-mode",
    default=False,
    show_default=True,
    help="Allow draft-only dispatch of internal sales and marketing requests.",
)
@click.option("--run-id", default=None, help="Correlation id for ledger rows.")
def run(
    db_path: Path | None,
    request_path: Path,
    override: bool,
    founder_mode: bool,
    run_id: str | None,
) -> None:
    """Validate, route, gate, and dispatch one request.

    Exit codes: **0** resolved outcome, **2** override requested without approval,
    **1** malformed input, gate denial, or dispatch fault.
    """

    _finish(
        GOVERNANCE_CONTROLLER.run(
            RunCommand(
                db_path=db_path,
                request_path=request_path,
                override=override,
                founder_mode=founder_mode,
                run_id=run_id,
            ),
        ),
    )


@taskgate.command("approve-override")
@DB_PATH_OPTION
@click.option("--session", "session_id", required=True, help="Session to approve.")
@click.option("--intent", required=True, help="Intent to approve, for example SALES_INTERNAL.")
@click.option("--approved-by", required=True, help="Human approver.")
@click.option("--rationale", required=True, help="Why the gate may be overridden.")
@click.option("--run-id", default=None, help="Correlation id for ledger rows.")
def approve_override(  # noqa: PLR0913
    db_path: Path | None,
    session_id: str,
    intent: str,
    approved_by: str,
    rationale: str,
    run_id: str | None,
) -> None:
    """Record a human override approval for one (session, intent) pair."""

    _finish(
        GOVERNANCE_CONTROLLER.approve_override(
            ApproveOverrideCommand(
                db_path=db_path,
                session_id=session_id,
                intent=intent,
                approved_by=approved_by,
                rationale=rationale,
                run_id=run_id,
            ),
        ),
    )


@taskgate.group()
def tasks() -> None:
    """Task queue and lifecycle commands."""


@tasks.command("list")
@DB_PATH_OPTION
@click.option("--session", "session_id", default=None, help="Optional session filter.")
@click.option(
    "--status",
    type=click.Choice(["todo", "doing", "done", "blocked"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of tasks to print.",
)
def tasks_list(
    db_path: Path | None,
    session_id: str | None,
    status: str | None,
    limit: int,
) -> None:
    """List tasks oldest first."""

    _finish(
        GOVERNANCE_CONTROLLER.list_tasks(
            TasksListCommand(
                db_path=db_path,
                session_id=session_id,
                status=status.lower() if status is not None else None,
                limit=limit,
            ),
        ),
    )


@tasks.command("show")
@DB_PATH_OPTION
@click.argument("task_id")
def tasks_show(db_path: Path | None, task_id: str) -> None:
    """Show one task with its governance metadata."""

    _finish(GOVERNANCE_CONTROLLER.show_task(TaskShowCommand(db_path=db_path, task_id=task_id)))


@tasks.command("next")
@DB_PATH_OPTION
@click.option("--session", "session_id", default=None, help="Optional session filter.")
@click.option(
    "--no-stub/--include-stub",
    "exclude_synthetic",
    default=False,
    show_default=True,
    help="Skip tasks created by stub generation.",
)
@OWNER_OPTION
@click.option(
    "--peek/--pop",
    default=False,
    show_default=True,
    help="Only show the oldest todo task instead of claiming it.",
)
@click.option("--run-id", default=None, help="Correlation id for ledger rows.")
def tasks_next(  # noqa: PLR0913
    db_path: Path | None,
    session_id: str | None,
    exclude_synthetic: bool,
    owner: str | None,
    peek: bool,
    run_id: str | None,
) -> None:
    """Claim the oldest todo task and move it to doing."""

    _finish(
        GOVERNANCE_CONTROLLER.next_task(
            TasksNextCommand(
                db_path=db_path,
                session_id=session_id,
                exclude_synthetic=exclude_synthetic,
                owner=owner,
                peek=peek,
                run_id=run_id,
            ),
        ),
    )


@tasks.command("stop-loss")
@DB_PATH_OPTION
@click.argument("task_id")
@click.option("--reason", required=True, help="Short failure reason (max 240 chars).")
@click.option("--step", required=True, help="Workflow step where the failure occurred.")
@OWNER_OPTION
@click.option("--run-id", default=None, help="Run id at the point of failure.")
@click.option(
    "--failure-type",
    type=click.Choice(["GATED", "BLOCKED", "REJECTED", "REPAIR_FAILED"], case_sensitive=False),
    default=None,
    help="Failure class that triggered the hold.",
)
def tasks_stop_loss(  # noqa: PLR0913
    db_path: Path | None,
    task_id: str,
    reason: str,
    step: str,
    owner: str | None,
    run_id: str | None,
    failure_type: str | None,
) -> None:
    """Hold a task after an execution failure (blocked, human review required)."""

    _finish(
        GOVERNANCE_CONTROLLER.stop_loss(
            StopLossCommand(
                db_path=db_path,
                task_id=task_id,
                reason=reason,
                step=step,
                owner=owner,
                run_id=run_id,
                failure_type=failure_type,
            ),
        ),
    )


@tasks.command("policy-gate")
@DB_PATH_OPTION
@click.argument("task_id")
@click.option("--reason", required=True, help="Why the task is held (max 240 chars).")
@click.option("--policy", "policy_rule", required=True, help="Policy rule name.")
@OWNER_OPTION
@click.option("--phrase", default=None, help="Matched forbidden phrase.")
@click.option("--intent", default=None, help="Matched intent.")
def tasks_policy_gate(  # noqa: PLR0913
    db_path: Path | None,
    task_id: str,
    reason: str,
    policy_rule: str,
    owner: str | None,
    phrase: str | None,
    intent: str | None,
) -> None:
    """Hold a task before execution because autonomy policy requires a human."""

    _finish(
        GOVERNANCE_CONTROLLER.policy_gate(
            PolicyGateCommand(
                db_path=db_path,
                task_id=task_id,
                reason=reason,
                policy=policy_rule,
                owner=owner,
                phrase=phrase,
                intent=intent,
            ),
        ),
    )


@tasks.command("review")
@DB_PATH_OPTION
@click.argument("task_id")
@click.option(
    "--decision",
    type=click.Choice(["retry", "close", "reject"], case_sensitive=False),
    required=True,
    help="retry re-queues, close finishes, reject keeps the task blocked.",
)
@click.option("--reason", required=True, help="Review rationale (max 240 chars).")
@OWNER_OPTION
@click.option("--artifact", "artifact_id", default=None, help="Artifact linked to the decision.")
def tasks_review(  # noqa: PLR0913
    db_path: Path | None,
    task_id: str,
    decision: str,
    reason: str,
    owner: str | None,
    artifact_id: str | None,
) -> None:
    """Apply a human-review decision to a held task."""

    _finish(
        GOVERNANCE_CONTROLLER.review(
            ReviewCommand(
                db_path=db_path,
                task_id=task_id,
                decision=decision,
                reason=reason,
                owner=owner,
                artifact_id=artifact_id,
            ),
        ),
    )


@tasks.command("close")
@DB_PATH_OPTION
@click.argument("task_id")
@click.option("--reason", required=True, help="Closure reason (max 240 chars).")
@OWNER_OPTION
@click.option("--artifact", "artifact_id", default=None, help="Artifact produced by the task.")
def tasks_close(
    db_path: Path | None,
    task_id: str,
    reason: str,
    owner: str | None,
    artifact_id: str | None,
) -> None:
    """Close a task that is currently doing."""

    _finish(
        GOVERNANCE_CONTROLLER.close(
            CloseCommand(
                db_path=db_path,
                task_id=task_id,
                reason=reason,
                owner=owner,
                artifact_id=artifact_id,
            ),
        ),
    )


@taskgate.command("triage")
@DB_PATH_OPTION
@click.option("--session", "session_id", default=None, help="Optional session filter.")
@OWNER_OPTION
@click.option(
    "--dry-run/--no-dry-run",
    default=False,
    show_default=True,
    help="Show what would be executed without changing the ledger.",
)
def triage(
    db_path: Path | None,
    session_id: str | None,
    owner: str | None,
    dry_run: bool,
) -> None:
    """Run one governance triage iteration over the oldest real todo task."""

    _finish(
        GOVERNANCE_CONTROLLER.triage(
            TriageCliCommand(
                db_path=db_path,
                session_id=session_id,
                owner=owner,
                dry_run=dry_run,
            ),
        ),
    )


@taskgate.group()
def policy() -> None:
    """Autonomy policy commands."""


POLICY_PATH_OPTION = click.option(
    "--policy-path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Policy JSON document. Defaults to TASKGATE_POLICY_PATH or the bundled policy.",
)


@policy.command("show")
@POLICY_PATH_OPTION
def policy_show(policy_path: Path | None) -> None:
    """Load, validate, and print the autonomy policy."""

    _finish(GOVERNANCE_CONTROLLER.show_policy(policy_path=policy_path))


@policy.command("check")
@POLICY_PATH_OPTION
@click.option("--text", required=True, help="Candidate task text.")
@click.option("--intent", default=None, help="Candidate intent.")
def policy_check(policy_path: Path | None, text: str, intent: str | None) -> None:
    """Evaluate candidate task text and intent against the autonomy policy."""

    _finish(
        GOVERNANCE_CONTROLLER.check_policy(
            PolicyCheckCommand(text=text, intent=intent),
            policy_path=policy_path,
        ),
    )


@taskgate.group()
def ledger() -> None:
    """Read-only ledger queries."""


@ledger.command("actions")
@DB_PATH_OPTION
@click.option("--session", "session_id", required=True, help="Session to inspect.")
@click.option("--type", "action_type", default=None, help="Optional action type filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=5000),
    default=200,
    show_default=True,
    help="Max number of actions to print.",
)
def ledger_actions(
    db_path: Path | None,
    session_id: str,
    action_type: str | None,
    limit: int,
) -> None:
    """List audit actions of a session in write order."""

    _finish(
        GOVERNANCE_CONTROLLER.list_actions(
            LedgerQueryCommand(
                db_path=db_path,
                session_id=session_id,
                action_type=action_type,
                limit=limit,
            ),
        ),
    )


@ledger.command("decisions")
@DB_PATH_OPTION
@click.option("--session", "session_id", required=True, help="Session to inspect.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=5000),
    default=200,
    show_default=True,
    help="Max number of decisions to print.",
)
def ledger_decisions(db_path: Path | None, session_id: str, limit: int) -> None:
    """List governance decisions of a session."""

    _finish(
        GOVERNANCE_CONTROLLER.list_decisions(
            LedgerQueryCommand(db_path=db_path, session_id=session_id, limit=limit),
        ),
    )


@ledger.command("artifact")
@DB_PATH_OPTION
@click.argument("artifact_id", required=False)
@click.option(
    "--session",
    "session_id",
    default=None,
    help="Show the latest artifact of this session when no id is given.",
)
def ledger_artifact(
    db_path: Path | None,
    artifact_id: str | None,
    session_id: str | None,
) -> None:
    """Show one artifact by id, or the latest artifact of a session."""

    _finish(
        GOVERNANCE_CONTROLLER.show_artifact(
            LedgerQueryCommand(
                db_path=db_path,
                session_id=session_id,
                artifact_id=artifact_id,
            ),
        ),
    )


def _finish(result: CliResult) -> None:
    _emit_lines(result.lines)
    if result.exit_code:
        click.get_current_context().exit(result.exit_code)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskgate()
