"""Runtime configuration for routing, dispatch, and generation."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

GENERATION_MODES = ("stub", "bad_stub", "live")


@dataclass(slots=True)
class GenerationSettings:
    """Generation agent strategy and live endpoint settings."""

    mode: str = "stub"
    base_url: str = "https://api.moonshot.ai/v1"
    api_key: str | None = None
    model: str = "kimi-k2-0711-preview"
    timeout_seconds: float = 60.0
    max_tokens: int = 2_048
    temperature: float = 0.2


@dataclass(slots=True)
class DispatchSettings:
    """Dispatcher defaults."""

    contracts_dir: Path | None = None
    founder_mode: bool = False
    default_owner: str = "cos"


@dataclass(slots=True)
class PolicySettings:
    """Autonomy policy location; None means the bundled default policy."""

    policy_path: Path | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".taskgate.db")
    busy_timeout_ms: int = 5_000
    generation: GenerationSettings = field(default_factory=GenerationSettings)
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    policy: PolicySettings = field(default_factory=PolicySettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        contracts_dir = os.getenv("TASKGATE_CONTRACTS_DIR")
        policy_path = os.getenv("TASKGATE_POLICY_PATH")
        return cls(
            db_path=db_path or Path(os.getenv("TASKGATE_DB_PATH", ".taskgate.db")),
            busy_timeout_ms=int(os.getenv("TASKGATE_DB_BUSY_TIMEOUT_MS", "5000")),
            generation=GenerationSettings(
                mode=os.getenv("TASKGATE_GENERATION_MODE", "stub").strip().lower(),
                base_url=os.getenv("TASKGATE_LLM_BASE_URL", "https://api.moonshot.ai/v1"),
                api_key=os.getenv("TASKGATE_LLM_API_KEY") or None,
                model=os.getenv("TASKGATE_LLM_MODEL", "kimi-k2-0711-preview"),
                timeout_seconds=float(os.getenv("TASKGATE_LLM_TIMEOUT_SECONDS", "60")),
                max_tokens=int(os.getenv("TASKGATE_LLM_MAX_TOKENS", "2048")),
                temperature=float(os.getenv("TASKGATE_LLM_TEMPERATURE", "0.2")),
            ),
            dispatch=DispatchSettings(
                contracts_dir=Path(contracts_dir) if contracts_dir else None,
                founder_mode=_env_bool("TASKGATE_FOUNDER_MODE", default=False),
                default_owner=os.getenv("TASKGATE_DEFAULT_OWNER", "cos"),
            ),
            policy=PolicySettings(
                policy_path=Path(policy_path) if policy_path else None,
            ),
        )

    def validate_for_live_generation(self) -> None:
        """Raise configuration error if the generation strategy cannot be built."""

        if self.generation.mode not in GENERATION_MODES:
            raise ValueError(
                f"TASKGATE_GENERATION_MODE must be one of {', '.join(GENERATION_MODES)}, "
                f"got {self.generation.mode!r}.",
            )
        if self.generation.timeout_seconds <= 0:
            raise ValueError("TASKGATE_LLM_TIMEOUT_SECONDS must be > 0.")
        if self.generation.mode != "live":
            return
        missing = [
            name
            for name, value in (
                ("TASKGATE_LLM_API_KEY", self.generation.api_key),
                ("TASKGATE_LLM_BASE_URL", self.generation.base_url.strip()),
                ("TASKGATE_LLM_MODEL", self.generation.model.strip()),
            )
            if not value
        ]
        if missing:
            raise ValueError(
                f"Live generation requires {', '.join(missing)} to be set.",
            )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
