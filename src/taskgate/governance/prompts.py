"""Prompt assembly for contract-bound generation and its repair pass."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from taskgate.governance.contracts import AgentContract
from taskgate.governance.models import RouteDecision, RouteRequest
from taskgate.governance.validator import ContractError

DRAFT_ONLY_FORBIDDEN: tuple[str, ...] = (
    "sending",
    "publish",
    "posting",
    "deploy",
    "webhook",
    "endpoint",
)
DRAFT_ONLY_DIRECTIVE: tuple[str, ...] = (
    "=== DRAFT-ONLY DIRECTIVE ===",
    "- Produce drafts only. Do NOT instruct sending, publishing, posting, deploying, or execution.",
    "- Do NOT use these words anywhere: send, sending, publish, publishing, post, posting,",
    "  deploy, deploying, webhook, endpoint, VPS, server.",
    "- Outputs must be internal drafts only (e.g. email draft text, sequence draft, or copy draft).",
    "- If the request implies outreach, you still produce the draft content only.",
    "=== END DRAFT-ONLY DIRECTIVE ===",
    "",
)


@dataclass(slots=True, frozen=True)
class PromptPair:
    system: str
    user: str


def example_output(contract: AgentContract, intent: str) -> dict[str, Any]:
    """Shape example embedded in the first-pass system prompt."""

    return {
        "agent": contract.agent,
        "version": contract.version,
        "intent": intent,
        "summary": "Brief description of what was done and why (max 300 chars).",
        "outputs": [
            {
                "type": "plan",
                "title": "Example Output Title",
                "content": "Detailed content of the output item.",
            },
        ],
        "ledger_writes": [{"table": "artifacts", "type": "plan"}],
        "next_actions": [
            {
                "title": "Example next action",
                "details": "What should happen next and why.",
                "owner_agent": contract.agent,
            },
        ],
    }


def build_generation_prompts(
    *,
    contract: AgentContract,
    request: RouteRequest,
    route: RouteDecision,
    draft_only: bool,
) -> PromptPair:
    """First-pass prompts: output rules, contract, and an example document."""

    directive = list(DRAFT_ONLY_DIRECTIVE) if draft_only else []
    system = "\n".join(
        [
            f"You are {contract.agent}.",
            "",
            *directive,
            "=== OUTPUT RULES (MANDATORY) ===",
            "1. Output MUST be a single raw JSON object. No markdown, no code fences, no commentary.",
            f"2. Required top-level keys: {', '.join(contract.required_fields)}.",
            "3. outputs: non-empty array; each item MUST have keys: type, title, content.",
            "4. ledger_writes: non-empty array; each item MUST have keys: table, type.",
            "5. next_actions (optional): array; each item MUST have keys: title, details, owner_agent.",
            "6. FORBIDDEN - do not include any of these tokens anywhere (case-insensitive): "
            f"{', '.join(contract.forbidden_outputs)}.",
            "7. summary must be 1-300 characters.",
            "",
            "=== CONTRACT ===",
            json.dumps(contract.to_dict(), ensure_ascii=False),
            "",
            "=== EXAMPLE VALID OUTPUT ===",
            json.dumps(example_output(contract, route.intent.value), ensure_ascii=False, indent=2),
        ],
    )
    user_payload: dict[str, Any] = {
        "user_goal": request.user_goal,
        "intent": route.intent.value,
        "route": {
            "primary_agent": route.primary_agent,
            "secondary_agents": route.secondary_agents,
            "gate_decision": route.gate_decision.value,
            "constraints_applied": route.constraints_applied,
        },
        "context": request.context,
        "constraints": {
            "no_public_exposure": request.constraints.no_public_exposure,
            "structured_outputs_only": request.constraints.structured_outputs_only,
            "on_demand_only": request.constraints.on_demand_only,
        },
    }
    if draft_only:
        user_payload["mode"] = "draft_only"
    return PromptPair(system=system, user=json.dumps(user_payload, ensure_ascii=False))


def build_repair_prompts(
    *,
    contract: AgentContract,
    previous_output: str | None,
    errors: list[ContractError],
    draft_only: bool,
) -> PromptPair:
    """Repair prompts carrying the previous output and every validation error."""

    directive: list[str] = []
    if draft_only:
        directive = [
            *DRAFT_ONLY_DIRECTIVE,
            "- Your previous output violated draft-only rules or contract. "
            "Remove forbidden words and conform exactly.",
            "",
        ]
    system = "\n".join(
        [
            *directive,
            "Return a single raw JSON object ONLY. No markdown, no code fences, no commentary.",
            "Your previous output failed contract validation. Fix ALL listed errors.",
            "IMPORTANT RULES:",
            f"  - Remove every forbidden token entirely: {', '.join(contract.forbidden_outputs)}.",
            '  - ledger_writes MUST be an array of objects, each with keys "table" and "type".',
            '    Not strings. Not null. Example: [{"table":"artifacts","type":"plan"}]',
            "  - outputs MUST be an array of objects, each with keys: type, title, content.",
            "  - summary must be 1-300 characters total.",
            f"  - Required top-level keys: {', '.join(contract.required_fields)}.",
            "Here is the full contract to conform to:",
            json.dumps(contract.to_dict(), ensure_ascii=False),
        ],
    )
    user = json.dumps(
        {
            "instruction": "You must return a corrected JSON object that passes all contract rules.",
            "previous_output": previous_output or "(unparseable)",
            "validation_errors": [error.to_dict() for error in errors],
        },
        ensure_ascii=False,
    )
    return PromptPair(system=system, user=user)
