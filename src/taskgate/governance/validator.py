"""Contract validation of generated documents; collects every error, never raises."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from taskgate.governance.contracts import AgentContract
from taskgate.governance.models import Intent

VALID_INTENTS = frozenset(intent.value for intent in Intent)
VALID_LEDGER_TABLES = (
    "sessions",
    "messages",
    "actions",
    "decisions",
    "tasks",
    "artifacts",
    "agents",
    "routing_rules",
)
SUMMARY_MAX_CHARS = 300
MAX_OUTPUTS = 10
MAX_LEDGER_WRITES = 20
MAX_OPTIONAL_ITEMS = 20
OPTIONAL_ARRAYS = ("next_actions", "risks", "assumptions", "requests_to_user")
OUTPUT_CONTENT_MAX_CHARS = 4_000


@dataclass(slots=True, frozen=True)
class ContractError:
    """One contract violation."""

    code: str
    path: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "path": self.path, "message": self.message}


@dataclass(slots=True)
class ContractValidationResult:
    """Result of contract validation."""

    errors: list[ContractError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def compact_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def validate_against_contract(
    contract: AgentContract,
    document: Any,
) -> ContractValidationResult:
    """Check required fields, forbidden tokens, and item shapes of a generated document."""

    errors: list[ContractError] = []
    if not isinstance(document, dict):
        errors.append(ContractError("INVALID_TYPE", "root", "document must be a JSON object"))
        return ContractValidationResult(errors=errors)

    for name in contract.required_fields:
        if name not in document:
            errors.append(
                ContractError("MISSING_REQUIRED_FIELD", name, f'required field "{name}" is absent'),
            )

    flattened = compact_json(document).lower()
    for token in contract.forbidden_outputs:
        if token.lower() in flattened:
            errors.append(
                ContractError(
                    "FORBIDDEN_OUTPUT_TOKEN",
                    "output",
                    f'forbidden token found: "{token}"',
                ),
            )

    _check_identity(contract, document, errors)

    if "summary" in document:
        _check_str(document["summary"], 1, SUMMARY_MAX_CHARS, "summary", "SUMMARY_LENGTH", errors)
    if "outputs" in document:
        _check_array(document["outputs"], MAX_OUTPUTS, "outputs", "OUTPUTS_ARRAY", errors)
    if "ledger_writes" in document:
        _check_array(
            document["ledger_writes"],
            MAX_LEDGER_WRITES,
            "ledger_writes",
            "LEDGER_WRITES_ARRAY",
            errors,
        )
    for key in OPTIONAL_ARRAYS:
        if document.get(key) is not None:
            _check_array(document[key], MAX_OPTIONAL_ITEMS, key, f"{key.upper()}_ARRAY", errors)

    if isinstance(document.get("outputs"), list):
        for index, item in enumerate(document["outputs"]):
            _check_output_item(item, f"outputs[{index}]", errors)
    if isinstance(document.get("next_actions"), list):
        for index, item in enumerate(document["next_actions"]):
            _check_next_action_item(item, f"next_actions[{index}]", errors)
    if isinstance(document.get("ledger_writes"), list):
        for index, item in enumerate(document["ledger_writes"]):
            _check_ledger_write_item(item, f"ledger_writes[{index}]", errors)

    return ContractValidationResult(errors=errors)


def _check_identity(
    contract: AgentContract,
    document: dict[str, Any],
    errors: list[ContractError],
) -> None:
    if "agent" in document:
        agent = document["agent"]
        if not isinstance(agent, str):
            errors.append(ContractError("INVALID_TYPE", "agent", "must be a string"))
        elif agent != contract.agent:
            errors.append(
                ContractError(
                    "AGENT_MISMATCH",
                    "agent",
                    f'expected "{contract.agent}", got "{agent}"',
                ),
            )
    if "version" in document:
        version = document["version"]
        if not isinstance(version, str):
            errors.append(ContractError("INVALID_TYPE", "version", "must be a string"))
        elif version != contract.version:
            errors.append(
                ContractError(
                    "VERSION_MISMATCH",
                    "version",
                    f'expected "{contract.version}", got "{version}"',
                ),
            )
    if "intent" in document:
        intent = document["intent"]
        if not isinstance(intent, str):
            errors.append(ContractError("INVALID_TYPE", "intent", "must be a string"))
        elif intent not in VALID_INTENTS:
            errors.append(
                ContractError(
                    "INVALID_INTENT",
                    "intent",
                    f'"{intent}" is not a recognised intent. '
                    f"Valid: {', '.join(sorted(VALID_INTENTS))}",
                ),
            )


def _check_output_item(item: Any, base: str, errors: list[ContractError]) -> None:
    if not isinstance(item, dict):
        errors.append(
            ContractError("OUTPUTS_ITEM_NOT_OBJECT", base, "each outputs item must be an object"),
        )
        return
    _check_required_str(
        item,
        "type",
        1,
        40,
        base,
        "OUTPUTS_ITEM",
        "OUTPUTS_ITEM_TYPE_LENGTH",
        errors,
    )
    _check_required_str(
        item,
        "title",
        1,
        120,
        base,
        "OUTPUTS_ITEM",
        "OUTPUTS_ITEM_TITLE_LENGTH",
        errors,
    )
    if "content" not in item:
        errors.append(
            ContractError(
                "OUTPUTS_ITEM_MISSING_FIELD",
                f"{base}.content",
                'field "content" is required',
            ),
        )
        return
    content = item["content"]
    if isinstance(content, str):
        return
    if isinstance(content, dict):
        size = len(compact_json(content))
        if size > OUTPUT_CONTENT_MAX_CHARS:
            errors.append(
                ContractError(
                    "OUTPUTS_ITEM_CONTENT_TOO_LARGE",
                    f"{base}.content",
                    f"object content JSON length {size} exceeds {OUTPUT_CONTENT_MAX_CHARS}",
                ),
            )
        return
    errors.append(
        ContractError(
            "OUTPUTS_ITEM_CONTENT_TYPE",
            f"{base}.content",
            "content must be a string or object",
        ),
    )


def _check_next_action_item(item: Any, base: str, errors: list[ContractError]) -> None:
    if not isinstance(item, dict):
        errors.append(
            ContractError(
                "NEXT_ACTIONS_ITEM_NOT_OBJECT",
                base,
                "each next_actions item must be an object",
            ),
        )
        return
    _check_required_str(
        item,
        "title",
        1,
        120,
        base,
        "NEXT_ACTIONS_ITEM",
        "NEXT_ACTIONS_TITLE_LENGTH",
        errors,
    )
    if item.get("details") is not None:
        _check_str(
            item["details"],
            0,
            1_000,
            f"{base}.details",
            "NEXT_ACTIONS_DETAILS_LENGTH",
            errors,
        )
    _check_required_str(
        item,
        "owner_agent",
        1,
        40,
        base,
        "NEXT_ACTIONS_ITEM",
        "NEXT_ACTIONS_OWNER_LENGTH",
        errors,
    )


def _check_ledger_write_item(item: Any, base: str, errors: list[ContractError]) -> None:
    if not isinstance(item, dict):
        errors.append(
            ContractError(
                "LEDGER_WRITES_ITEM_NOT_OBJECT",
                base,
                "each ledger_writes item must be an object",
            ),
        )
        return
    if "table" not in item:
        errors.append(
            ContractError(
                "LEDGER_WRITES_ITEM_MISSING_FIELD",
                f"{base}.table",
                'field "table" is required',
            ),
        )
    elif not isinstance(item["table"], str) or item["table"] not in VALID_LEDGER_TABLES:
        errors.append(
            ContractError(
                "LEDGER_WRITES_INVALID_TABLE",
                f"{base}.table",
                f'"{item["table"]}" is not a valid ledger table. '
                f"Valid: {', '.join(VALID_LEDGER_TABLES)}",
            ),
        )
    _check_required_str(
        item,
        "type",
        1,
        40,
        base,
        "LEDGER_WRITES_ITEM",
        "LEDGER_WRITES_TYPE_LENGTH",
        errors,
    )


def _check_required_str(  # noqa: PLR0913
    item: dict[str, Any],
    name: str,
    min_len: int,
    max_len: int,
    base: str,
    missing_prefix: str,
    length_code: str,
    errors: list[ContractError],
) -> None:
    path = f"{base}.{name}"
    if name not in item:
        errors.append(
            ContractError(f"{missing_prefix}_MISSING_FIELD", path, f'field "{name}" is required'),
        )
        return
    _check_str(item[name], min_len, max_len, path, length_code, errors)


def _check_str(  # noqa: PLR0913
    value: Any,
    min_len: int,
    max_len: int,
    path: str,
    code: str,
    errors: list[ContractError],
) -> None:
    if not isinstance(value, str):
        errors.append(ContractError(code, path, f"expected string, got {type(value).__name__}"))
        return
    if not min_len <= len(value) <= max_len:
        errors.append(
            ContractError(
                code,
                path,
                f"string length {len(value)} out of range [{min_len}..{max_len}]",
            ),
        )


def _check_array(
    value: Any,
    max_items: int,
    path: str,
    code: str,
    errors: list[ContractError],
) -> None:
    if not isinstance(value, list):
        errors.append(ContractError(code, path, f"expected array, got {type(value).__name__}"))
        return
    if len(value) > max_items:
        errors.append(
            ContractError(code, path, f"array length {len(value)} exceeds max {max_items}"),
        )
