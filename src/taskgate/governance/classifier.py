"""Deterministic intent classification via an ordered keyword table."""

from __future__ import annotations

from dataclasses import dataclass

from taskgate.governance.models import Intent

DEFAULT_INTENT = Intent.GOVERNANCE_REVIEW
DEFAULT_AGENT = "governance"


@dataclass(slots=True, frozen=True)
class IntentRule:
    """One classifier row; rows are evaluated in table order."""

    intent: Intent
    agent_hint: str
    keywords: tuple[str, ...]


INTENT_RULES: tuple[IntentRule, ...] = (
    IntentRule(
        intent=Intent.GOVERNANCE_REVIEW,
        agent_hint="governance",
        keywords=(
            "risk",
            "block",
            "approve",
            "deny",
            "compliance",
            "policy",
            "control",
            "audit",
            "gate",
            "review risk",
        ),
    ),
    IntentRule(
        intent=Intent.PLAN_WORK,
        agent_hint="cos",
        keywords=(
            "plan",
            "route",
            "task",
            "schedule",
            "brief",
            "assign",
            "orchestrate",
            "prioritise",
            "prioritize",
        ),
    ),
    IntentRule(
        intent=Intent.SALES_INTERNAL,
        agent_hint="sales",
        keywords=(
            "sale",
            "pipeline",
            "qualify",
            "prospect",
            "script",
            "deal",
            "revenue",
            "close",
            "outreach plan",
        ),
    ),
    IntentRule(
        intent=Intent.MARKETING_INTERNAL,
        agent_hint="marketing_pr",
        keywords=(
            "market",
            "position",
            "brand",
            "pr",
            "content plan",
            "messaging",
            "campaign",
            "audience",
            "publish plan",
        ),
    ),
    IntentRule(
        intent=Intent.PRODUCT_OFFER,
        agent_hint="product_offer",
        keywords=(
            "product",
            "offer",
            "scope",
            "price",
            "package",
            "roadmap",
            "feature",
            "requirement",
            "spec",
        ),
    ),
    IntentRule(
        intent=Intent.OPS_INTERNAL,
        agent_hint="ops",
        keywords=(
            "sop",
            "checklist",
            "process",
            "procedure",
            "ops",
            "execute",
            "run",
            "deploy plan",
            "workflow",
        ),
    ),
)


@dataclass(slots=True)
class IntentClassification:
    """Classifier verdict."""

    intent: Intent
    agent_hint: str
    defaulted: bool
    matched_keyword: str | None = None


def classify_intent(
    goal: str,
    *,
    rules: tuple[IntentRule, ...] = INTENT_RULES,
) -> IntentClassification:
    """Return the intent of the first rule whose keyword set hits the goal."""

    lowered = goal.lower()
    for rule in rules:
        for keyword in rule.keywords:
            if keyword in lowered:
                return IntentClassification(
                    intent=rule.intent,
                    agent_hint=rule.agent_hint,
                    defaulted=False,
                    matched_keyword=keyword,
                )
    return IntentClassification(intent=DEFAULT_INTENT, agent_hint=DEFAULT_AGENT, defaulted=True)
