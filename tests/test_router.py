from __future__ import annotations

import allure
import pytest

from taskgate.governance.intake import parse_request
from taskgate.governance.models import DecisionType, GateDecision, Intent
from taskgate.governance.routing import (
    DEFAULT_ROUTING_TABLE,
    GovernanceDeniedError,
    Router,
    decide_route,
)

pytestmark = [
    allure.epic("Governance Routing"),
    allure.feature("Route Decisions"),
]


def test_clean_plan_routes_to_cos(make_request) -> None:
    route = decide_route(parse_request(make_request("Plan Q1 roadmap")))

    assert route.intent == Intent.PLAN_WORK
    assert route.primary_agent == "cos"
    assert route.secondary_agents == ["ops"]
    assert route.gate_decision == GateDecision.APPROVE
    assert route.governance_required is False
    assert route.constraints_applied == [
        "no_public_exposure",
        "structured_outputs_only",
        "on_demand_only",
    ]


def test_flagged_route_puts_governance_first(make_request) -> None:
    route = decide_route(
        parse_request(
            make_request("Draft sales outreach sequence", risk_flags={"external_comms": True}),
        ),
    )

    assert route.intent == Intent.SALES_INTERNAL
    assert route.primary_agent == "sales"
    assert route.secondary_agents == ["governance", "marketing_pr"]
    assert route.governance_required is True


def test_unclassified_goal_is_noted(make_request) -> None:
    route = decide_route(parse_request(make_request("Hello there")))

    assert route.intent == Intent.GOVERNANCE_REVIEW
    assert route.defaulted is True
    assert route.notes == ["unclassified_default=true"]
    assert route.secondary_agents == ["governance"]


def test_blocked_route_has_no_primary_agent(make_request) -> None:
    route = decide_route(
        parse_request(make_request("Plan the cluster move", risk_flags={"deployment": True})),
    )

    assert route.gate_decision == GateDecision.BLOCKED
    assert route.primary_agent is None
    assert route.secondary_agents == ["governance"]
    assert route.block_reason == "deployment flagged"


def test_missing_routing_rule_is_a_fault(make_request) -> None:
    table = {
        intent: rule for intent, rule in DEFAULT_ROUTING_TABLE.items() if intent != Intent.PLAN_WORK
    }

    with pytest.raises(RuntimeError, match="No routing rule"):
        decide_route(parse_request(make_request("Plan Q1 roadmap")), routing_table=table)


def test_router_records_route_and_defer_decision(repository, make_request) -> None:
    request = parse_request(
        make_request("Draft sales outreach sequence", risk_flags={"external_comms": True}),
    )

    Router(repository=repository).route(request, run_id="run_route")

    actions = repository.list_actions(session_id="sess_test")
    assert [action.action_type for action in actions] == ["route"]
    assert actions[0].status == "ok"
    assert actions[0].meta["run_id"] == "run_route"
    assert actions[0].reason == "intent=SALES_INTERNAL; gate=approve_with_flag; primary=sales"
    decisions = repository.list_decisions(session_id="sess_test")
    assert len(decisions) == 1
    assert decisions[0].decision_type == DecisionType.DEFER
    assert decisions[0].options["intent"] == "SALES_INTERNAL"
    assert decisions[0].rationale == "Auto-gate: risk_flag=external_comms"


def test_router_denies_without_writing(repository, make_request) -> None:
    request = parse_request(make_request("Send email to external clients"))

    with pytest.raises(GovernanceDeniedError) as excinfo:
        Router(repository=repository).route(request)

    assert excinfo.value.code == "GOVERNANCE_GATE_DENIED"
    assert excinfo.value.route.gate_decision == GateDecision.DENY
    assert repository.get_session(session_id="sess_test") is None


def test_clean_route_writes_no_decision(repository, make_request) -> None:
    Router(repository=repository).route(parse_request(make_request("Plan Q1 roadmap")))

    assert repository.list_decisions(session_id="sess_test") == []
    session = repository.get_session(session_id="sess_test")
    assert session is not None
    assert session.initiator == "user"
