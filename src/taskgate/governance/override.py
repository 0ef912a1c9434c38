"""Human override approvals for governance-gated intents."""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from taskgate.governance.models import (
    ActionStatus,
    ActionWrite,
    DecisionType,
    DecisionView,
    DecisionWrite,
)
from taskgate.governance.repository import LedgerRepository

logger = logging.getLogger(__name__)

OVERRIDE_APPROVED = "override_approved"
OVERRIDE_SUBJECT = "Override governance gate"


def build_override_decision(
    *,
    intent: str,
    approved_by: str,
    rationale: str,
    run_id: str | None = None,
) -> DecisionWrite:
    return DecisionWrite(
        decision_type=DecisionType.APPROVE,
        subject=OVERRIDE_SUBJECT,
        rationale=rationale,
        options={"intent": intent},
        selected_option=OVERRIDE_APPROVED,
        approved_by=approved_by,
        meta={"run_id": run_id},
    )


def build_override_action(*, intent: str, approved_by: str, run_id: str | None) -> ActionWrite:
    return ActionWrite(
        actor="governance",
        action_type="approve_override",
        status=ActionStatus.OK,
        reason=f"intent={intent}",
        meta={"approved_by": approved_by, "run_id": run_id},
    )


def approve_override(  # noqa: PLR0913
    repository: LedgerRepository,
    *,
    session_id: str,
    intent: str,
    approved_by: str,
    rationale: str,
    run_id: str | None = None,
) -> DecisionView:
    """Record a human approval for (session, intent) together with its audit action."""

    missing = [
        name
        for name, value in (
            ("session_id", session_id),
            ("intent", intent),
            ("approved_by", approved_by),
            ("rationale", rationale),
        )
        if not value or not value.strip()
    ]
    if missing:
        raise ValueError(f"Override approval requires: {', '.join(missing)}")

    normalized_intent = intent.strip().upper()
    return repository.record_decision(
        session_id=session_id,
        decision=build_override_decision(
            intent=normalized_intent,
            approved_by=approved_by.strip(),
            rationale=rationale.strip(),
            run_id=run_id,
        ),
        action=build_override_action(
            intent=normalized_intent,
            approved_by=approved_by.strip(),
            run_id=run_id,
        ),
    )


def has_approved_override(repository: LedgerRepository, *, session_id: str, intent: str) -> bool:
    """Whether an override approval exists for exactly this (session, intent).

    Fails closed: a ledger error counts as no approval.
    """

    try:
        decision = repository.find_decision(
            session_id=session_id,
            decision_type=DecisionType.APPROVE,
            selected_option=OVERRIDE_APPROVED,
            intent=intent,
        )
    except SQLAlchemyError as error:
        logger.warning("Override lookup failed for session=%s: %s", session_id, error)
        return False
    return decision is not None
