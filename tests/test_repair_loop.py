from __future__ import annotations

import json

import allure
import pytest

from taskgate.governance.backend.base import GenerationError
from taskgate.governance.contracts import ContractStore
from taskgate.governance.intake import parse_request
from taskgate.governance.prompts import (
    DRAFT_ONLY_FORBIDDEN,
    build_generation_prompts,
    build_repair_prompts,
)
from taskgate.governance.repair import (
    REPAIR_MAX_TOKENS,
    ContractRepairLoop,
    decide_repair,
)
from taskgate.governance.routing import decide_route
from taskgate.governance.validator import ContractError

pytestmark = [
    allure.epic("Dispatch"),
    allure.feature("Generation & Repair"),
]


@pytest.fixture()
def cos_prompts(make_request):
    contract = ContractStore().load("cos")
    request = parse_request(make_request("Plan Q1 roadmap"))
    route = decide_route(request)
    return contract, build_generation_prompts(
        contract=contract,
        request=request,
        route=route,
        draft_only=False,
    )


def test_decide_repair_allows_exactly_one_pass() -> None:
    error = ContractError("SUMMARY_LENGTH", "summary", "too long")

    assert decide_repair(errors=[], repairs_done=0).should_repair is False
    assert decide_repair(errors=[error], repairs_done=0).should_repair is True
    assert decide_repair(errors=[error], repairs_done=1).should_repair is False


def test_valid_first_output_needs_no_repair(cos_prompts, scripted_agent, contract_document) -> None:
    contract, prompts = cos_prompts
    agent = scripted_agent(contract_document())

    result = ContractRepairLoop(agent=agent).run(
        contract=contract,
        prompts=prompts,
        intent="PLAN_WORK",
    )

    assert result.ok
    assert result.repair_attempted is False
    assert result.generation_calls == 1
    assert agent.requests[0].agent == "cos"
    assert agent.requests[0].repair_mode is False


def test_invalid_output_is_repaired_once(cos_prompts, scripted_agent, contract_document) -> None:
    contract, prompts = cos_prompts
    agent = scripted_agent(contract_document(summary="S" * 400), contract_document())

    result = ContractRepairLoop(agent=agent).run(
        contract=contract,
        prompts=prompts,
        intent="PLAN_WORK",
    )

    assert result.ok
    assert result.repair_attempted is True
    assert result.repair_succeeded is True
    assert [error.code for error in result.validation_errors] == ["SUMMARY_LENGTH"]
    repair_request = agent.requests[1]
    assert repair_request.repair_mode is True
    assert repair_request.max_tokens == REPAIR_MAX_TOKENS
    payload = json.loads(repair_request.user_prompt)
    assert payload["validation_errors"][0]["code"] == "SUMMARY_LENGTH"
    assert "S" * 400 in payload["previous_output"]


def test_failed_repair_returns_no_document(cos_prompts, scripted_agent) -> None:
    contract, prompts = cos_prompts
    agent = scripted_agent("not json at all", '{"agent": "cos"}')

    result = ContractRepairLoop(agent=agent).run(
        contract=contract,
        prompts=prompts,
        intent="PLAN_WORK",
    )

    assert result.document is None
    assert result.repair_attempted is True
    assert result.repair_succeeded is False
    assert [error.code for error in result.validation_errors] == ["JSON_PARSE_ERROR"]
    assert {error.code for error in result.repair_errors} == {"MISSING_REQUIRED_FIELD"}
    assert result.generation_calls == 2
    assert agent.responses == []


def test_generation_faults_propagate(cos_prompts, scripted_agent, timeout_error) -> None:
    contract, prompts = cos_prompts
    agent = scripted_agent(timeout_error)

    with pytest.raises(GenerationError) as excinfo:
        ContractRepairLoop(agent=agent).run(contract=contract, prompts=prompts, intent="PLAN_WORK")

    assert excinfo.value.timed_out is True


def test_draft_only_prompts_carry_directive(make_request) -> None:
    contract = ContractStore().load("sales").with_extra_forbidden(DRAFT_ONLY_FORBIDDEN)
    request = parse_request(
        make_request("Draft sales outreach sequence", risk_flags={"external_comms": True}),
    )

    prompts = build_generation_prompts(
        contract=contract,
        request=request,
        route=decide_route(request),
        draft_only=True,
    )
    repair = build_repair_prompts(
        contract=contract,
        previous_output=None,
        errors=[],
        draft_only=True,
    )

    assert "=== DRAFT-ONLY DIRECTIVE ===" in prompts.system
    assert "posting" in prompts.system
    assert json.loads(prompts.user)["mode"] == "draft_only"
    assert repair.system.startswith("=== DRAFT-ONLY DIRECTIVE ===")
    assert json.loads(repair.user)["previous_output"] == "(unparseable)"
