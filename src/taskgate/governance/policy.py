"""Autonomy policy: which task intents triage may execute without a human."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_POLICY_PATH = Path(__file__).resolve().parents[1] / "resources" / "policy" / "autonomy.json"
REQUIRED_KEYS: tuple[str, ...] = (
    "version",
    "tier1_allowed_intents",
    "tier2_founder_allowed_intents",
    "force_hitl_intents",
    "forbidden_phrases",
    "stop_loss_triggers",
)
LIST_KEYS: tuple[str, ...] = REQUIRED_KEYS[1:]


class PolicyLoadError(RuntimeError):
    """Policy document missing, unreadable, or malformed."""

    def __init__(self, code: str, detail: str, *, path: Path) -> None:
        super().__init__(f"{code}: {detail}")
        self.code = code
        self.detail = detail
        self.path = path

    def to_dict(self) -> dict[str, Any]:
        return {"ok": False, "error": self.code, "detail": self.detail, "path": str(self.path)}


@dataclass(slots=True)
class AutonomyPolicy:
    version: str
    tier1_allowed_intents: list[str]
    tier2_founder_allowed_intents: list[str]
    force_hitl_intents: list[str]
    forbidden_phrases: list[str]
    stop_loss_triggers: list[str]
    path: Path | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "tier1_allowed_intents": self.tier1_allowed_intents,
            "tier2_founder_allowed_intents": self.tier2_founder_allowed_intents,
            "force_hitl_intents": self.force_hitl_intents,
            "forbidden_phrases": self.forbidden_phrases,
            "stop_loss_triggers": self.stop_loss_triggers,
            "path": str(self.path) if self.path else None,
        }


@dataclass(slots=True)
class PolicyCheck:
    """Verdict for one candidate task."""

    gated: bool
    code: str | None = None
    reason: str | None = None
    intent: str | None = None
    matched_phrase: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"gated": self.gated}
        if self.gated:
            payload.update({"code": self.code, "reason": self.reason, "intent": self.intent})
            if self.matched_phrase is not None:
                payload["matched_phrase"] = self.matched_phrase
        payload.update(self.details)
        return payload


def load_policy(path: Path | None = None) -> AutonomyPolicy:
    """Load and validate the autonomy policy document."""

    target = path or DEFAULT_POLICY_PATH
    if not target.exists():
        raise PolicyLoadError(
            "POLICY_FILE_NOT_FOUND",
            f"Expected policy file at: {target}",
            path=target,
        )
    try:
        raw = target.read_text(encoding="utf-8")
    except OSError as error:
        raise PolicyLoadError("POLICY_FILE_READ_ERROR", str(error), path=target) from error
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise PolicyLoadError(
            "POLICY_FILE_PARSE_ERROR",
            f"JSON parse failed: {error}",
            path=target,
        ) from error
    if not isinstance(payload, dict):
        raise PolicyLoadError("POLICY_TYPE_ERROR", "policy root must be an object", path=target)

    missing = [key for key in REQUIRED_KEYS if key not in payload]
    if missing:
        raise PolicyLoadError(
            "POLICY_MISSING_REQUIRED_KEYS",
            f"Missing keys: {', '.join(missing)}",
            path=target,
        )
    type_errors = [
        f"{key} must be a list of strings"
        for key in LIST_KEYS
        if not isinstance(payload[key], list)
        or not all(isinstance(item, str) for item in payload[key])
    ]
    if not isinstance(payload["version"], str):
        type_errors.insert(0, "version must be a string")
    if type_errors:
        raise PolicyLoadError("POLICY_TYPE_ERROR", "; ".join(type_errors), path=target)

    logger.debug("Loaded autonomy policy %s from %s", payload["version"], target)
    return AutonomyPolicy(
        version=payload["version"],
        tier1_allowed_intents=[item.upper() for item in payload["tier1_allowed_intents"]],
        tier2_founder_allowed_intents=[
            item.upper() for item in payload["tier2_founder_allowed_intents"]
        ],
        force_hitl_intents=[item.upper() for item in payload["force_hitl_intents"]],
        forbidden_phrases=list(payload["forbidden_phrases"]),
        stop_loss_triggers=list(payload["stop_loss_triggers"]),
        path=target,
    )


def check_policy(
    policy: AutonomyPolicy | None,
    *,
    text: str,
    intent: str | None,
    load_error: PolicyLoadError | None = None,
) -> PolicyCheck:
    """Gate a candidate task; anything not explicitly allowed needs a human."""

    if policy is None:
        return PolicyCheck(
            gated=True,
            code="POLICY_LOAD_FAILED",
            reason="POLICY_LOAD_FAILED: cannot evaluate policy, defaulting to HITL",
            intent=intent,
            details={"policy_error": load_error.code if load_error else None},
        )

    normalized = intent.strip().upper() if intent and intent.strip() else None
    lowered = text.lower()
    for phrase in policy.forbidden_phrases:
        if phrase.lower() in lowered:
            return PolicyCheck(
                gated=True,
                code="FORBIDDEN_PHRASE",
                reason=(
                    f'FORBIDDEN_PHRASE: task text contains "{phrase}", '
                    "auto-execution not permitted"
                ),
                intent=normalized,
                matched_phrase=phrase,
            )
    if normalized is None:
        return PolicyCheck(
            gated=True,
            code="UNKNOWN_INTENT",
            reason="UNKNOWN_INTENT: task has no classifiable intent, defaulting to HITL",
        )
    if normalized in policy.force_hitl_intents:
        return PolicyCheck(
            gated=True,
            code="FORCE_HITL_INTENT",
            reason=f'FORCE_HITL_INTENT: intent "{normalized}" requires human review',
            intent=normalized,
        )
    if normalized in policy.tier2_founder_allowed_intents:
        return PolicyCheck(
            gated=True,
            code="TIER2_INTENT",
            reason=f'TIER2_INTENT: intent "{normalized}" requires founder mode, not triage',
            intent=normalized,
        )
    if normalized in policy.tier1_allowed_intents:
        return PolicyCheck(gated=False, intent=normalized)
    return PolicyCheck(
        gated=True,
        code="INTENT_NOT_IN_ALLOWLIST",
        reason=f'INTENT_NOT_IN_ALLOWLIST: intent "{normalized}" is not in tier1_allowed_intents',
        intent=normalized,
    )
