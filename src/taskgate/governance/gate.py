"""Tiered governance gate evaluated in strict priority order."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from taskgate.governance.classifier import DEFAULT_INTENT
from taskgate.governance.models import GateDecision, GateResult, Intent

HARD_RISK_FLAGS: tuple[str, ...] = ("architecture_change", "deployment")
BLOCK_KEYWORDS: tuple[str, ...] = (
    "public api",
    "saas",
    "vps",
    "scale out",
    "redis",
    "bigquery",
    "publish to",
    "send email",
    "send sms",
    "post to",
)
FLAG_KEYWORDS: tuple[str, ...] = (
    "external",
    "client data",
    "security",
    "credential",
    "key",
    "token",
    "export",
    "architecture change",
)
INTERNAL_EXEMPTION = "internal"
INTERNAL_WINDOW_CHARS = 20


def evaluate_gate(
    *,
    intent: Intent,
    goal: str,
    risk_flags: Mapping[str, Any] | None = None,
) -> GateResult:
    """Evaluate hard flags, deny keywords, then soft flags; first terminal result wins."""

    flags = risk_flags or {}
    lowered = goal.lower()

    hard_hits = [name for name in HARD_RISK_FLAGS if flags.get(name)]
    if hard_hits:
        return GateResult(
            decision=GateDecision.BLOCKED,
            governance_required=True,
            flags=[f"risk_flag={name}" for name in hard_hits],
            block_reason=f"{'/'.join(hard_hits)} flagged",
        )

    denied = find_deny_keyword(lowered)
    if denied is not None:
        return GateResult(
            decision=GateDecision.DENY,
            governance_required=False,
            flags=[f'blocked_keyword="{denied}"'],
        )

    gate_flags: list[str] = []
    if intent == DEFAULT_INTENT:
        gate_flags.append(f"intent={DEFAULT_INTENT.value}")
    if flags.get("external_comms"):
        gate_flags.append("risk_flag=external_comms")
    gate_flags.extend(
        f'flag_keyword="{keyword}"' for keyword in FLAG_KEYWORDS if keyword in lowered
    )

    if gate_flags:
        return GateResult(
            decision=GateDecision.APPROVE_WITH_FLAG,
            governance_required=True,
            flags=gate_flags,
        )
    return GateResult(decision=GateDecision.APPROVE, governance_required=False)


def find_deny_keyword(lowered_goal: str) -> str | None:
    """Return the first deny keyword not exempted by a nearby "internal" qualifier."""

    for keyword in BLOCK_KEYWORDS:
        start = 0
        while True:
            index = lowered_goal.find(keyword, start)
            if index == -1:
                break
            window = lowered_goal[
                max(0, index - INTERNAL_WINDOW_CHARS) : index + len(keyword) + INTERNAL_WINDOW_CHARS
            ]
            if INTERNAL_EXEMPTION not in window:
                return keyword
            start = index + 1
    return None
