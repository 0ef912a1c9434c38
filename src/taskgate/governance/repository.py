"""Ledger persistence facade for sessions, actions, decisions, artifacts, and tasks."""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from taskgate.governance.models import (
    ActionStatus,
    ActionView,
    ActionWrite,
    ArtifactView,
    ArtifactWrite,
    DecisionType,
    DecisionView,
    DecisionWrite,
    DispatchReceipt,
    GateDecision,
    RouteDecision,
    RouteReceipt,
    RouteRequest,
    SessionView,
    TaskStatus,
    TaskTransition,
    TaskView,
    TaskWrite,
    TransitionResult,
)
from taskgate.storage.alembic_runner import upgrade_head
from taskgate.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    to_iso,
    utc_now,
)
from taskgate.storage.sqlmodel_models import (
    LedgerAction,
    LedgerArtifact,
    LedgerDecision,
    LedgerSession,
    LedgerTask,
)

logger = logging.getLogger(__name__)

ROUTER_ACTOR = "cos"
OPS_ACTOR = "ops"


class LedgerRepository:
    """Audit ledger backed by SQLModel + SQLite; every public write is one commit."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def record_route(
        self,
        *,
        request: RouteRequest,
        route: RouteDecision,
        run_id: str | None = None,
    ) -> RouteReceipt:
        """Write the route action and, when review is required, a defer decision."""

        blocked = route.gate_decision == GateDecision.BLOCKED
        if blocked:
            reason = (
                f"intent={route.intent.value}; gate=blocked; {route.block_reason or 'blocked'}"
            )
        else:
            reason = (
                f"intent={route.intent.value}; gate={route.gate_decision.value}; "
                f"primary={route.primary_agent}"
            )
        with Session(self.engine) as session:
            self._ensure_session(
                session=session,
                session_id=request.session_id,
                initiator=request.initiator,
            )
            action_id = self._add_action(
                session=session,
                session_id=request.session_id,
                action=ActionWrite(
                    actor=ROUTER_ACTOR,
                    action_type="route",
                    status=ActionStatus.BLOCKED if blocked else ActionStatus.OK,
                    reason=reason,
                    meta={
                        "run_id": run_id,
                        "request_id": request.request_id,
                        "gate_flags": route.gate_flags,
                    },
                ),
            )
            decision_id = None
            if route.governance_required:
                rationale_source = route.block_reason or ", ".join(route.gate_flags) or (
                    "routing rule requires governance review"
                )
                decision_id = self._add_decision(
                    session=session,
                    session_id=request.session_id,
                    decision=DecisionWrite(
                        decision_type=DecisionType.DEFER,
                        subject=(
                            "Governance review required (blocked)"
                            if blocked
                            else "Governance review required"
                        ),
                        rationale=f"Auto-gate: {rationale_source}",
                        options={
                            "intent": route.intent.value,
                            "primary_agent": route.primary_agent,
                            "block_reason": route.block_reason,
                            "risk_flags": request.risk_flags,
                        },
                        meta={"run_id": run_id},
                    ),
                )
            session.commit()
        return RouteReceipt(action_id=action_id, decision_id=decision_id)

    def record_dispatch(
        self,
        *,
        session_id: str,
        action: ActionWrite,
        artifact: ArtifactWrite | None = None,
        task: TaskWrite | None = None,
        initiator: str = "system",
    ) -> DispatchReceipt:
        """Persist a dispatch outcome: artifact, task, and audit action commit together."""

        now = utc_now()
        with Session(self.engine) as session:
            self._ensure_session(session=session, session_id=session_id, initiator=initiator)
            artifact_id = None
            if artifact is not None:
                artifact_id = _new_id("artifact")
                session.add(
                    LedgerArtifact(
                        artifact_id=artifact_id,
                        session_id=session_id,
                        ts=_to_db_datetime(now),
                        artifact_type=artifact.artifact_type,
                        title=artifact.title,
                        content=artifact.content,
                        content_sha256=hashlib.sha256(artifact.content.encode("utf-8")).hexdigest(),
                        classification=artifact.classification,
                        meta_json=dump_json(artifact.meta),
                    ),
                )
            task_id = None
            if task is not None:
                task_id = _new_id("task")
                session.add(
                    LedgerTask(
                        task_id=task_id,
                        session_id=session_id,
                        created_at=_to_db_datetime(now),
                        updated_at=_to_db_datetime(now),
                        owner_agent=task.owner_agent,
                        status=TaskStatus.TODO.value,
                        title=task.title,
                        details=task.details,
                        meta_json=json.dumps(task.meta, ensure_ascii=False, sort_keys=True),
                    ),
                )
            action_meta = dict(action.meta)
            if artifact_id is not None:
                action_meta["artifact_id"] = artifact_id
            if task_id is not None:
                action_meta["task_id"] = task_id
            action_id = self._add_action(
                session=session,
                session_id=session_id,
                action=ActionWrite(
                    actor=action.actor,
                    action_type=action.action_type,
                    status=action.status,
                    reason=action.reason,
                    meta=action_meta,
                ),
            )
            session.commit()
        return DispatchReceipt(action_id=action_id, artifact_id=artifact_id, task_id=task_id)

    def record_decision(
        self,
        *,
        session_id: str,
        decision: DecisionWrite,
        action: ActionWrite,
        initiator: str = "user",
    ) -> DecisionView:
        """Write a governance decision and its audit action atomically."""

        with Session(self.engine) as session:
            self._ensure_session(session=session, session_id=session_id, initiator=initiator)
            decision_id = self._add_decision(
                session=session,
                session_id=session_id,
                decision=decision,
            )
            self._add_action(
                session=session,
                session_id=session_id,
                action=ActionWrite(
                    actor=action.actor,
                    action_type=action.action_type,
                    status=action.status,
                    reason=action.reason,
                    meta={**action.meta, "decision_id": decision_id},
                ),
            )
            session.commit()
            row = session.exec(
                select(LedgerDecision).where(LedgerDecision.decision_id == decision_id),
            ).one()
            return _to_decision_view(row)

    def find_decision(
        self,
        *,
        session_id: str,
        decision_type: DecisionType,
        selected_option: str,
        intent: str,
    ) -> DecisionView | None:
        """Return the newest decision matching session, type, option, and intent."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(LedgerDecision)
                .where(
                    LedgerDecision.session_id == session_id,
                    LedgerDecision.decision_type == decision_type.value,
                    LedgerDecision.selected_option == selected_option,
                )
                .order_by(col(LedgerDecision.ts).desc()),
            ).all()
            for row in rows:
                if load_json(row.options_json).get("intent") == intent:
                    return _to_decision_view(row)
        return None

    def get_session(self, *, session_id: str) -> SessionView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(LedgerSession).where(LedgerSession.session_id == session_id),
            ).one_or_none()
            if row is None:
                return None
            return SessionView(
                session_id=row.session_id,
                started_at=_to_utc_aware_datetime(row.started_at),
                initiator=row.initiator,
                status=row.status,
            )

    def get_task(self, *, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(LedgerTask).where(LedgerTask.task_id == task_id),
            ).one_or_none()
            return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        session_id: str | None = None,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List tasks oldest first."""

        with Session(self.engine) as session:
            query = select(LedgerTask)
            if session_id is not None:
                query = query.where(LedgerTask.session_id == session_id)
            if status is not None:
                query = query.where(LedgerTask.status == status.value)
            rows = session.exec(
                query.order_by(col(LedgerTask.created_at).asc(), col(LedgerTask.task_id).asc())
                .limit(limit),
            ).all()
            return [_to_task_view(row) for row in rows]

    def list_actions(
        self,
        *,
        session_id: str,
        action_type: str | None = None,
        limit: int = 200,
    ) -> list[ActionView]:
        """List audit actions of a session in write order."""

        with Session(self.engine) as session:
            query = select(LedgerAction).where(LedgerAction.session_id == session_id)
            if action_type is not None:
                query = query.where(LedgerAction.action_type == action_type)
            rows = session.exec(
                query.order_by(col(LedgerAction.ts).asc(), col(LedgerAction.action_id).asc())
                .limit(limit),
            ).all()
            return [_to_action_view(row) for row in rows]

    def list_decisions(self, *, session_id: str, limit: int = 200) -> list[DecisionView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(LedgerDecision)
                .where(LedgerDecision.session_id == session_id)
                .order_by(col(LedgerDecision.ts).asc(), col(LedgerDecision.decision_id).asc())
                .limit(limit),
            ).all()
            return [_to_decision_view(row) for row in rows]

    def get_artifact(self, *, artifact_id: str) -> ArtifactView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(LedgerArtifact).where(LedgerArtifact.artifact_id == artifact_id),
            ).one_or_none()
            return _to_artifact_view(row) if row is not None else None

    def latest_artifact(self, *, session_id: str) -> ArtifactView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(LedgerArtifact)
                .where(LedgerArtifact.session_id == session_id)
                .order_by(col(LedgerArtifact.ts).desc())
                .limit(1),
            ).one_or_none()
            return _to_artifact_view(row) if row is not None else None

    def count_artifacts(self, *, session_id: str) -> int:
        with Session(self.engine) as session:
            rows = session.exec(
                select(LedgerArtifact.artifact_id).where(LedgerArtifact.session_id == session_id),
            ).all()
            return len(rows)

    def peek_next_task(
        self,
        *,
        session_id: str | None = None,
        exclude_synthetic: bool = False,
    ) -> TaskView | None:
        """Return the oldest todo task without claiming it."""

        with Session(self.engine) as session:
            row = self._select_oldest_todo(
                session=session,
                session_id=session_id,
                exclude_synthetic=exclude_synthetic,
            )
            return _to_task_view(row) if row is not None else None

    def pop_next_task(
        self,
        *,
        session_id: str | None = None,
        exclude_synthetic: bool = False,
        owner: str | None = None,
        run_id: str | None = None,
    ) -> TaskView | None:
        """Atomically claim the oldest todo task and move it to doing."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                candidate = self._select_oldest_todo(
                    session=session,
                    session_id=session_id,
                    exclude_synthetic=exclude_synthetic,
                )
                if candidate is None:
                    return None

                meta = load_json(candidate.meta_json)
                previous_owner = candidate.owner_agent
                meta.update(
                    {
                        "popped_at": to_iso(now),
                        "popped_owner": owner or previous_owner,
                        "run_id": run_id,
                    },
                )
                result = session.exec(
                    sa_update(LedgerTask)
                    .where(
                        col(LedgerTask.task_id) == candidate.task_id,
                        col(LedgerTask.status) == TaskStatus.TODO.value,
                    )
                    .values(
                        status=TaskStatus.DOING.value,
                        owner_agent=owner or previous_owner,
                        meta_json=json.dumps(meta, ensure_ascii=False, sort_keys=True),
                        updated_at=_to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                transition_meta = {
                    "task_id": candidate.task_id,
                    "from": TaskStatus.TODO.value,
                    "to": TaskStatus.DOING.value,
                    "owner": owner or previous_owner,
                    "run_id": run_id,
                }
                self._add_action(
                    session=session,
                    session_id=candidate.session_id,
                    action=ActionWrite(
                        actor=OPS_ACTOR,
                        action_type="task_update",
                        status=ActionStatus.OK,
                        reason=f"task {candidate.task_id} todo->doing",
                        meta=transition_meta,
                    ),
                )
                self._add_action(
                    session=session,
                    session_id=candidate.session_id,
                    action=ActionWrite(
                        actor=OPS_ACTOR,
                        action_type="task_next",
                        status=ActionStatus.OK,
                        reason=f"popped oldest todo task {candidate.task_id}",
                        meta=transition_meta,
                    ),
                )
                session.commit()
                claimed = session.exec(
                    select(LedgerTask).where(LedgerTask.task_id == candidate.task_id),
                ).one()
                return _to_task_view(claimed)

    def apply_task_transition(
        self,
        *,
        task_id: str,
        plan: Callable[[TaskView], TaskTransition],
    ) -> TransitionResult:
        """Read one task, plan its transition, and write it with its evidence in one commit.

        ``plan`` may raise to reject the transition; nothing is written then.
        """

        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(LedgerTask).where(LedgerTask.task_id == task_id),
            ).one_or_none()
            if row is None:
                raise RuntimeError(f"Task not found: {task_id}")
            current = _to_task_view(row)
            transition = plan(current)
            if not transition.changed:
                return TransitionResult(
                    task=current,
                    previous_status=current.status,
                    changed=False,
                )

            result = session.exec(
                sa_update(LedgerTask)
                .where(
                    col(LedgerTask.task_id) == task_id,
                    col(LedgerTask.status) == row.status,
                    col(LedgerTask.meta_json) == row.meta_json,
                )
                .values(
                    status=transition.status.value,
                    owner_agent=transition.owner_agent,
                    meta_json=json.dumps(transition.meta, ensure_ascii=False, sort_keys=True),
                    updated_at=_to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Task state changed concurrently; "
                    f"please retry command (task_id={task_id}).",
                )

            decision_id = None
            if transition.decision is not None:
                decision_id = self._add_decision(
                    session=session,
                    session_id=current.session_id,
                    decision=transition.decision,
                )
            action_ids = [
                self._add_action(
                    session=session,
                    session_id=current.session_id,
                    action=ActionWrite(
                        actor=action.actor,
                        action_type=action.action_type,
                        status=action.status,
                        reason=action.reason,
                        meta={
                            **action.meta,
                            "task_id": task_id,
                            **({"decision_id": decision_id} if decision_id else {}),
                        },
                    ),
                )
                for action in transition.actions
            ]
            session.commit()
            updated = session.exec(
                select(LedgerTask).where(LedgerTask.task_id == task_id),
            ).one()
            return TransitionResult(
                task=_to_task_view(updated),
                previous_status=current.status,
                changed=True,
                action_ids=action_ids,
                decision_id=decision_id,
            )

    def _select_oldest_todo(
        self,
        *,
        session: Session,
        session_id: str | None,
        exclude_synthetic: bool,
    ) -> LedgerTask | None:
        query = select(LedgerTask).where(LedgerTask.status == TaskStatus.TODO.value)
        if session_id is not None:
            query = query.where(LedgerTask.session_id == session_id)
        rows = session.exec(
            query.order_by(col(LedgerTask.created_at).asc(), col(LedgerTask.task_id).asc()),
        )
        for row in rows:
            if exclude_synthetic and load_json(row.meta_json).get("source") == "stub":
                continue
            return row
        return None

    def _ensure_session(self, *, session: Session, session_id: str, initiator: str) -> None:
        existing = session.exec(
            select(LedgerSession).where(LedgerSession.session_id == session_id),
        ).one_or_none()
        if existing is not None:
            return
        session.add(
            LedgerSession(
                session_id=session_id,
                started_at=_to_db_datetime(utc_now()),
                initiator=initiator,
                status="open",
            ),
        )
        session.flush()
        logger.debug("Opened ledger session %s", session_id)

    def _add_action(self, *, session: Session, session_id: str, action: ActionWrite) -> str:
        action_id = _new_id("action")
        session.add(
            LedgerAction(
                action_id=action_id,
                session_id=session_id,
                ts=_to_db_datetime(utc_now()),
                actor=action.actor,
                action_type=action.action_type,
                status=action.status.value,
                reason=action.reason,
                meta_json=dump_json(action.meta),
            ),
        )
        return action_id

    def _add_decision(
        self,
        *,
        session: Session,
        session_id: str,
        decision: DecisionWrite,
    ) -> str:
        decision_id = _new_id("decision")
        session.add(
            LedgerDecision(
                decision_id=decision_id,
                session_id=session_id,
                ts=_to_db_datetime(utc_now()),
                decision_type=decision.decision_type.value,
                subject=decision.subject,
                options_json=dump_json(decision.options),
                selected_option=decision.selected_option,
                rationale=decision.rationale,
                approved_by=decision.approved_by,
                meta_json=dump_json(decision.meta),
            ),
        )
        return decision_id


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


def _to_db_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _to_task_view(row: LedgerTask) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        session_id=row.session_id,
        created_at=_to_utc_aware_datetime(row.created_at),
        updated_at=_to_utc_aware_datetime(row.updated_at),
        owner_agent=row.owner_agent,
        status=TaskStatus(row.status),
        title=row.title,
        details=row.details,
        meta=load_json(row.meta_json),
    )


def _to_action_view(row: LedgerAction) -> ActionView:
    return ActionView(
        action_id=row.action_id,
        session_id=row.session_id,
        ts=_to_utc_aware_datetime(row.ts),
        actor=row.actor,
        action_type=row.action_type,
        status=row.status,
        reason=row.reason,
        meta=load_json(row.meta_json),
    )


def _to_decision_view(row: LedgerDecision) -> DecisionView:
    return DecisionView(
        decision_id=row.decision_id,
        session_id=row.session_id,
        ts=_to_utc_aware_datetime(row.ts),
        decision_type=DecisionType(row.decision_type),
        subject=row.subject,
        selected_option=row.selected_option,
        rationale=row.rationale,
        approved_by=row.approved_by,
        options=load_json(row.options_json),
        meta=load_json(row.meta_json),
    )


def _to_artifact_view(row: LedgerArtifact) -> ArtifactView:
    return ArtifactView(
        artifact_id=row.artifact_id,
        session_id=row.session_id,
        ts=_to_utc_aware_datetime(row.ts),
        artifact_type=row.artifact_type,
        title=row.title,
        content=row.content,
        content_sha256=row.content_sha256,
        classification=row.classification,
        meta=load_json(row.meta_json),
    )
