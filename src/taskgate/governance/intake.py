"""Request document intake and validation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from taskgate.governance.models import RequestConstraints, RouteRequest

MAX_USER_GOAL_CHARS = 2_000
INITIATORS = ("user", "system")
CONSTRAINT_FIELDS = ("no_public_exposure", "structured_outputs_only", "on_demand_only")
_REQUIRED_STRING_FIELDS = ("request_id", "session_id", "ts", "initiator", "user_goal")


@dataclass(slots=True, frozen=True)
class RequestFieldError:
    """One rejected request field."""

    field: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}


class RequestValidationError(ValueError):
    """Request rejected wholesale; carries every field problem found."""

    code = "VALIDATION_FAILED"

    def __init__(self, errors: list[RequestFieldError]) -> None:
        super().__init__(
            "Request validation failed: "
            + "; ".join(f"{error.field}: {error.message}" for error in errors),
        )
        self.errors = errors


def validate_request(payload: Any) -> list[RequestFieldError]:
    """Return every validation problem of a raw request document."""

    if not isinstance(payload, dict):
        return [RequestFieldError(field="root", message="request must be a JSON object")]

    errors: list[RequestFieldError] = []
    normalized = _with_timestamp_alias(payload)
    for name in _REQUIRED_STRING_FIELDS:
        value = normalized.get(name)
        if not isinstance(value, str) or not value.strip():
            errors.append(RequestFieldError(field=name, message="required non-empty string"))

    user_goal = normalized.get("user_goal")
    if isinstance(user_goal, str) and len(user_goal) > MAX_USER_GOAL_CHARS:
        errors.append(
            RequestFieldError(
                field="user_goal",
                message=f"must be at most {MAX_USER_GOAL_CHARS} characters",
            ),
        )

    initiator = normalized.get("initiator")
    if isinstance(initiator, str) and initiator.strip() and initiator not in INITIATORS:
        errors.append(
            RequestFieldError(field="initiator", message=f"must be one of {', '.join(INITIATORS)}"),
        )

    constraints = normalized.get("constraints")
    if not isinstance(constraints, dict):
        errors.append(RequestFieldError(field="constraints", message="required object"))
    else:
        for name in CONSTRAINT_FIELDS:
            if constraints.get(name) is not True:
                errors.append(
                    RequestFieldError(
                        field=f"constraints.{name}",
                        message="must be literally true",
                    ),
                )

    for optional in ("context", "risk_flags"):
        value = normalized.get(optional)
        if value is not None and not isinstance(value, dict):
            errors.append(RequestFieldError(field=optional, message="must be an object if present"))

    classification = normalized.get("classification")
    if classification is not None and (not isinstance(classification, str) or not classification):
        errors.append(
            RequestFieldError(field="classification", message="must be a non-empty string"),
        )
    return errors


def parse_request(payload: Any) -> RouteRequest:
    """Validate and freeze a raw request document.

    Raises:
        RequestValidationError: with the complete field error list.
    """

    errors = validate_request(payload)
    if errors:
        raise RequestValidationError(errors)

    normalized = _with_timestamp_alias(payload)
    constraints = normalized["constraints"]
    return RouteRequest(
        request_id=normalized["request_id"],
        session_id=normalized["session_id"],
        ts=normalized["ts"],
        initiator=normalized["initiator"],
        user_goal=normalized["user_goal"],
        constraints=RequestConstraints(
            no_public_exposure=constraints["no_public_exposure"],
            structured_outputs_only=constraints["structured_outputs_only"],
            on_demand_only=constraints["on_demand_only"],
        ),
        context=dict(normalized.get("context") or {}),
        risk_flags=dict(normalized.get("risk_flags") or {}),
        classification=normalized.get("classification") or "internal",
    )


def _with_timestamp_alias(payload: dict[str, Any]) -> dict[str, Any]:
    if "ts" not in payload and "timestamp" in payload:
        return {**payload, "ts": payload["timestamp"]}
    return payload
