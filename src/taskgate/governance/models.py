"""Domain models for routing, dispatch, and the task ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Intent(str, Enum):
    """Fixed set of request intents."""

    GOVERNANCE_REVIEW = "GOVERNANCE_REVIEW"
    PLAN_WORK = "PLAN_WORK"
    SALES_INTERNAL = "SALES_INTERNAL"
    MARKETING_INTERNAL = "MARKETING_INTERNAL"
    PRODUCT_OFFER = "PRODUCT_OFFER"
    OPS_INTERNAL = "OPS_INTERNAL"


class GateDecision(str, Enum):
    """Governance gate verdicts."""

    DENY = "deny"
    BLOCKED = "blocked"
    APPROVE_WITH_FLAG = "approve_with_flag"
    APPROVE = "approve"


class DispatchState(str, Enum):
    """Terminal dispatch states; exactly one per request."""

    BLOCKED = "BLOCKED"
    GATED = "GATED"
    DISPATCHED = "DISPATCHED"
    REJECTED = "REJECTED"
    ERROR = "ERROR"


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    TODO = "todo"
    DOING = "doing"
    DONE = "done"
    BLOCKED = "blocked"


class FailureType(str, Enum):
    """Execution failure classes that trigger a stop-loss hold."""

    GATED = "GATED"
    BLOCKED = "BLOCKED"
    REJECTED = "REJECTED"
    REPAIR_FAILED = "REPAIR_FAILED"


class ReviewDecision(str, Enum):
    """Human-review resolutions for a held task."""

    RETRY = "retry"
    CLOSE = "close"
    REJECT = "reject"


class DecisionType(str, Enum):
    DEFER = "defer"
    APPROVE = "approve"
    REJECT = "reject"


class ActionStatus(str, Enum):
    OK = "ok"
    BLOCKED = "blocked"
    GATED = "gated"
    FAILED = "failed"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class RequestConstraints:
    """Hard request constraints; all three must be literally true."""

    no_public_exposure: bool
    structured_outputs_only: bool
    on_demand_only: bool


@dataclass(slots=True, frozen=True)
class RouteRequest:
    """Accepted work request, immutable after intake."""

    request_id: str
    session_id: str
    ts: str
    initiator: str
    user_goal: str
    constraints: RequestConstraints
    context: dict[str, Any] = field(default_factory=dict)
    risk_flags: dict[str, Any] = field(default_factory=dict)
    classification: str = "internal"


@dataclass(slots=True)
class GateResult:
    """Governance gate evaluation."""

    decision: GateDecision
    governance_required: bool
    flags: list[str] = field(default_factory=list)
    block_reason: str | None = None


@dataclass(slots=True)
class RouteDecision:
    """Routing verdict derived for one request; not persisted as an entity."""

    intent: Intent
    primary_agent: str | None
    secondary_agents: list[str]
    governance_required: bool
    gate_decision: GateDecision
    gate_flags: list[str]
    block_reason: str | None = None
    defaulted: bool = False
    constraints_applied: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DispatchOptions:
    """Caller options for one dispatch."""

    override: bool = False
    founder_mode: bool = False
    run_id: str | None = None


@dataclass(slots=True)
class DispatchOutcome:
    """Final dispatch result for one request."""

    state: DispatchState
    agent: str | None
    reason: str
    next_step: str
    intent: Intent
    session_id: str
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def artifact_id(self) -> str | None:
        value = self.meta.get("artifact_id")
        return str(value) if value else None

    @property
    def task_id(self) -> str | None:
        value = self.meta.get("task_id")
        return str(value) if value else None

    @property
    def override_denied(self) -> bool:
        return bool(self.meta.get("override_denied"))


@dataclass(slots=True)
class ActionWrite:
    """Audit action payload written alongside a state change."""

    actor: str
    action_type: str
    status: ActionStatus
    reason: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class DecisionWrite:
    """Governance decision payload."""

    decision_type: DecisionType
    subject: str
    rationale: str
    options: dict[str, Any] = field(default_factory=dict)
    selected_option: str | None = None
    approved_by: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ArtifactWrite:
    """Artifact payload captured from a validated generation."""

    artifact_type: str
    title: str
    content: str
    classification: str
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskWrite:
    """Follow-up task payload captured from a validated generation."""

    owner_agent: str
    title: str
    details: str | None
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SessionView:
    session_id: str
    started_at: datetime
    initiator: str
    status: str


@dataclass(slots=True)
class ActionView:
    """Audit trail entry."""

    action_id: str
    session_id: str
    ts: datetime
    actor: str
    action_type: str
    status: str
    reason: str | None
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class DecisionView:
    """Governance decision entry."""

    decision_id: str
    session_id: str
    ts: datetime
    decision_type: DecisionType
    subject: str
    selected_option: str | None
    rationale: str
    approved_by: str | None
    options: dict[str, Any] = field(default_factory=dict)
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ArtifactView:
    artifact_id: str
    session_id: str
    ts: datetime
    artifact_type: str
    title: str
    content: str
    content_sha256: str
    classification: str
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskView:
    """Readable task view for lifecycle logic and CLI."""

    task_id: str
    session_id: str
    created_at: datetime
    updated_at: datetime
    owner_agent: str
    status: TaskStatus
    title: str
    details: str | None
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def is_synthetic(self) -> bool:
        return self.meta.get("source") == "stub"


@dataclass(slots=True)
class DispatchReceipt:
    """Identifiers of rows written for one dispatch outcome."""

    action_id: str
    artifact_id: str | None = None
    task_id: str | None = None


@dataclass(slots=True)
class RouteReceipt:
    """Identifiers of rows written for one routed request."""

    action_id: str
    decision_id: str | None = None


@dataclass(slots=True)
class TaskTransition:
    """Planned single-row task change plus the ledger rows that evidence it.

    ``changed=False`` marks an idempotent no-op: nothing is written.
    """

    status: TaskStatus
    owner_agent: str
    meta: dict[str, Any]
    actions: list[ActionWrite] = field(default_factory=list)
    decision: DecisionWrite | None = None
    changed: bool = True


@dataclass(slots=True)
class TransitionResult:
    """Applied transition with identifiers of the rows written."""

    task: TaskView
    previous_status: TaskStatus
    changed: bool
    action_ids: list[str] = field(default_factory=list)
    decision_id: str | None = None
