"""Routing table lookup and route decisions for accepted requests."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass

from taskgate.governance.classifier import classify_intent
from taskgate.governance.gate import evaluate_gate
from taskgate.governance.models import (
    GateDecision,
    Intent,
    RouteDecision,
    RouteRequest,
)
from taskgate.governance.repository import LedgerRepository

logger = logging.getLogger(__name__)

GOVERNANCE_AGENT = "governance"
REQUEST_CONSTRAINTS = ("no_public_exposure", "structured_outputs_only", "on_demand_only")


@dataclass(slots=True, frozen=True)
class RoutingRule:
    """Per-intent routing row."""

    intent: Intent
    primary_agent: str
    secondary_agents: tuple[str, ...] = ()
    requires_governance_review: bool = False
    constraints: tuple[str, ...] = REQUEST_CONSTRAINTS


DEFAULT_ROUTING_TABLE: Mapping[Intent, RoutingRule] = {
    rule.intent: rule
    for rule in (
        RoutingRule(
            intent=Intent.GOVERNANCE_REVIEW,
            primary_agent="governance",
            requires_governance_review=True,
        ),
        RoutingRule(intent=Intent.PLAN_WORK, primary_agent="cos", secondary_agents=("ops",)),
        RoutingRule(
            intent=Intent.SALES_INTERNAL,
            primary_agent="sales",
            secondary_agents=("marketing_pr",),
        ),
        RoutingRule(
            intent=Intent.MARKETING_INTERNAL,
            primary_agent="marketing_pr",
            secondary_agents=("sales",),
        ),
        RoutingRule(
            intent=Intent.PRODUCT_OFFER,
            primary_agent="product_offer",
            secondary_agents=("cos",),
        ),
        RoutingRule(intent=Intent.OPS_INTERNAL, primary_agent="ops", secondary_agents=("cos",)),
    )
}


class GovernanceDeniedError(RuntimeError):
    """Request rejected at the boundary by a deny keyword; nothing was recorded."""

    code = "GOVERNANCE_GATE_DENIED"

    def __init__(self, route: RouteDecision) -> None:
        super().__init__(f"Governance gate denied request: {', '.join(route.gate_flags)}")
        self.route = route


def decide_route(
    request: RouteRequest,
    *,
    routing_table: Mapping[Intent, RoutingRule] = DEFAULT_ROUTING_TABLE,
) -> RouteDecision:
    """Classify, gate, and resolve agents for one request without side effects."""

    classification = classify_intent(request.user_goal)
    intent = classification.intent
    gate = evaluate_gate(intent=intent, goal=request.user_goal, risk_flags=request.risk_flags)
    notes = ["unclassified_default=true"] if classification.defaulted else []

    if gate.decision in {GateDecision.DENY, GateDecision.BLOCKED}:
        return RouteDecision(
            intent=intent,
            primary_agent=None,
            secondary_agents=[GOVERNANCE_AGENT] if gate.decision == GateDecision.BLOCKED else [],
            governance_required=gate.governance_required,
            gate_decision=gate.decision,
            gate_flags=gate.flags,
            block_reason=gate.block_reason,
            defaulted=classification.defaulted,
            notes=notes,
        )

    rule = routing_table.get(intent)
    if rule is None:
        raise RuntimeError(f"No routing rule for intent: {intent.value}")

    governance_required = gate.governance_required or rule.requires_governance_review
    secondary = [agent for agent in rule.secondary_agents if agent != GOVERNANCE_AGENT]
    if governance_required:
        secondary.insert(0, GOVERNANCE_AGENT)
    return RouteDecision(
        intent=intent,
        primary_agent=rule.primary_agent,
        secondary_agents=secondary,
        governance_required=governance_required,
        gate_decision=gate.decision,
        gate_flags=gate.flags,
        defaulted=classification.defaulted,
        constraints_applied=list(rule.constraints),
        notes=notes,
    )


class Router:
    """Routes requests and records the route verdict in the ledger."""

    def __init__(
        self,
        *,
        repository: LedgerRepository,
        routing_table: Mapping[Intent, RoutingRule] = DEFAULT_ROUTING_TABLE,
    ) -> None:
        self.repository = repository
        self.routing_table = routing_table

    def route(self, request: RouteRequest, *, run_id: str | None = None) -> RouteDecision:
        """Decide the route; denied requests raise before any ledger write."""

        decision = decide_route(request, routing_table=self.routing_table)
        if decision.gate_decision == GateDecision.DENY:
            logger.info("Request %s denied at gate: %s", request.request_id, decision.gate_flags)
            raise GovernanceDeniedError(decision)
        receipt = self.repository.record_route(request=request, route=decision, run_id=run_id)
        logger.info(
            "Routed request %s intent=%s gate=%s action=%s",
            request.request_id,
            decision.intent.value,
            decision.gate_decision.value,
            receipt.action_id,
        )
        return decision
