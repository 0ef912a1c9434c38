"""Per-agent output contracts loaded from a contract directory."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_CONTRACTS_DIR = Path(__file__).resolve().parents[1] / "resources" / "contracts"
DEFAULT_FORBIDDEN_OUTPUTS: tuple[str, ...] = (
    "deploy",
    "public_publish",
    "endpoint",
    "send_email",
    "publish_post",
    "webhook",
    "vps",
    "server",
)
DEFAULT_REQUIRED_FIELDS: tuple[str, ...] = (
    "agent",
    "version",
    "intent",
    "summary",
    "outputs",
    "ledger_writes",
)


class ContractNotFoundError(RuntimeError):
    """No usable contract document for an agent."""


@dataclass(slots=True)
class AgentContract:
    """Declarative output contract for one agent."""

    agent: str
    version: str
    required_fields: tuple[str, ...] = DEFAULT_REQUIRED_FIELDS
    forbidden_outputs: tuple[str, ...] = DEFAULT_FORBIDDEN_OUTPUTS
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AgentContract:
        agent = payload.get("agent")
        if not isinstance(agent, str) or not agent:
            raise ValueError("Contract field 'agent' must be a non-empty string.")
        version = payload.get("version", "v1.0")
        if not isinstance(version, str) or not version:
            raise ValueError("Contract field 'version' must be a non-empty string.")
        required = payload.get("required_fields") or list(DEFAULT_REQUIRED_FIELDS)
        forbidden = payload.get("forbidden_outputs") or list(DEFAULT_FORBIDDEN_OUTPUTS)
        if not all(isinstance(item, str) for item in [*required, *forbidden]):
            raise ValueError("Contract field lists must contain strings only.")
        extra = {
            key: value
            for key, value in payload.items()
            if key not in {"agent", "version", "required_fields", "forbidden_outputs"}
        }
        return cls(
            agent=agent,
            version=version,
            required_fields=tuple(required),
            forbidden_outputs=tuple(forbidden),
            extra=extra,
        )

    def with_extra_forbidden(self, tokens: tuple[str, ...]) -> AgentContract:
        """Copy of the contract with additional forbidden tokens appended once."""

        merged = list(self.forbidden_outputs)
        merged.extend(token for token in tokens if token not in merged)
        return AgentContract(
            agent=self.agent,
            version=self.version,
            required_fields=self.required_fields,
            forbidden_outputs=tuple(merged),
            extra=dict(self.extra),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.extra,
            "agent": self.agent,
            "version": self.version,
            "required_fields": list(self.required_fields),
            "forbidden_outputs": list(self.forbidden_outputs),
        }


class ContractStore:
    """Loads ``<agent>.contract.json`` documents keyed by agent name."""

    def __init__(self, contracts_dir: Path | None = None) -> None:
        self.contracts_dir = contracts_dir or DEFAULT_CONTRACTS_DIR

    def load(self, agent: str) -> AgentContract:
        path = self.contracts_dir / f"{agent}.contract.json"
        if not path.exists():
            raise ContractNotFoundError(f"No contract file for agent {agent!r} at {path}")
        try:
            payload = json.loads(path.read_text("utf-8"))
        except json.JSONDecodeError as error:
            raise ContractNotFoundError(
                f"Could not parse contract for agent {agent!r}: {error}",
            ) from error
        if not isinstance(payload, dict):
            raise ContractNotFoundError(f"Contract for agent {agent!r} must be a JSON object.")
        try:
            return AgentContract.from_dict(payload)
        except ValueError as error:
            raise ContractNotFoundError(f"Invalid contract for agent {agent!r}: {error}") from error
