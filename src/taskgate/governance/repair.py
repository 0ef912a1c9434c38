"""Generate, validate, and repair-once loop for contract-bound documents."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from taskgate.governance.backend.base import GenerationAgent, GenerationRequest
from taskgate.governance.contracts import AgentContract
from taskgate.governance.prompts import PromptPair, build_repair_prompts
from taskgate.governance.validator import ContractError, validate_against_contract

logger = logging.getLogger(__name__)

MAX_REPAIR_ATTEMPTS = 1
REPAIR_MAX_TOKENS = 1_024


@dataclass(slots=True)
class RepairDecision:
    """Decision returned by repair policy."""

    should_repair: bool
    reason: str


def decide_repair(*, errors: list[ContractError], repairs_done: int) -> RepairDecision:
    """Allow exactly one repair pass for a failed parse or validation."""

    if not errors:
        return RepairDecision(should_repair=False, reason="Document is valid.")
    if repairs_done >= MAX_REPAIR_ATTEMPTS:
        return RepairDecision(should_repair=False, reason="Repair already attempted.")
    return RepairDecision(should_repair=True, reason="One repair attempt is allowed.")


@dataclass(slots=True)
class RepairLoopResult:
    """Outcome of the generation loop; ``document`` is set only when validation passed."""

    document: dict[str, Any] | None
    repair_attempted: bool
    repair_succeeded: bool
    validation_errors: list[ContractError] = field(default_factory=list)
    repair_errors: list[ContractError] = field(default_factory=list)
    generation_calls: int = 0

    @property
    def ok(self) -> bool:
        return self.document is not None


class ContractRepairLoop:
    """Runs one generation and at most one repair against a contract.

    The generation strategy is fixed at construction. Agent faults raised as
    ``GenerationError`` propagate unchanged.
    """

    def __init__(self, *, agent: GenerationAgent) -> None:
        self.agent = agent

    def run(
        self,
        *,
        contract: AgentContract,
        prompts: PromptPair,
        intent: str,
        draft_only: bool = False,
    ) -> RepairLoopResult:
        raw = self.agent.generate(
            GenerationRequest(
                system_prompt=prompts.system,
                user_prompt=prompts.user,
                agent=contract.agent,
                intent=intent,
            ),
        )
        document, first_errors = _parse_and_validate(contract, raw)
        decision = decide_repair(errors=first_errors, repairs_done=0)
        if not decision.should_repair:
            return RepairLoopResult(
                document=document,
                repair_attempted=False,
                repair_succeeded=False,
                generation_calls=1,
            )

        logger.info(
            "Contract validation failed for agent=%s with %d error(s); repairing once",
            contract.agent,
            len(first_errors),
        )
        repair_prompts = build_repair_prompts(
            contract=contract,
            previous_output=raw,
            errors=first_errors,
            draft_only=draft_only,
        )
        repaired_raw = self.agent.generate(
            GenerationRequest(
                system_prompt=repair_prompts.system,
                user_prompt=repair_prompts.user,
                agent=contract.agent,
                intent=intent,
                repair_mode=True,
                max_tokens=REPAIR_MAX_TOKENS,
            ),
        )
        repaired, repair_errors = _parse_and_validate(contract, repaired_raw)
        if repair_errors:
            logger.warning(
                "Repair failed for agent=%s with %d error(s)",
                contract.agent,
                len(repair_errors),
            )
            return RepairLoopResult(
                document=None,
                repair_attempted=True,
                repair_succeeded=False,
                validation_errors=first_errors,
                repair_errors=repair_errors,
                generation_calls=2,
            )
        return RepairLoopResult(
            document=repaired,
            repair_attempted=True,
            repair_succeeded=True,
            validation_errors=first_errors,
            generation_calls=2,
        )


def _parse_and_validate(
    contract: AgentContract,
    raw: str,
) -> tuple[dict[str, Any] | None, list[ContractError]]:
    try:
        document = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as error:
        return None, [ContractError("JSON_PARSE_ERROR", "root", str(error))]
    result = validate_against_contract(contract, document)
    if not result.ok:
        return None, result.errors
    return document, []
