"""Coordinator configuration.

Defaults live in ``config/coordinator.json``. Any value can be overridden
through ``MACI_*`` environment variables, which are read after loading a
``.env`` file from the working directory (or an explicit path).
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from maci.errors import ConfigError


CONFIG_FILENAME = "coordinator.json"

# env var -> (field name, parser)
_ENV_OVERRIDES: dict[str, tuple[str, type]] = {
    "MACI_DATA_DIR": ("data_dir", str),
    "MACI_LOG_LEVEL": ("log_level", str),
    "MACI_MESSAGE_BATCH_SIZE": ("message_batch_size", int),
    "MACI_TALLY_BATCH_SIZE": ("tally_batch_size", int),
    "MACI_INITIAL_VOICE_CREDITS": ("initial_voice_credits", int),
    "MACI_TIMEOUT_SECONDS": ("timeout_seconds", float),
    "MACI_RPC_URL": ("rpc_url", str),
    "MACI_ANCHOR_PRIVATE_KEY": ("anchor_private_key", str),
    "MACI_CHAIN_ID": ("chain_id", int),
}


@dataclass(frozen=True)
class CoordinatorConfig:
    """Runtime parameters for the orchestrator and the local providers."""

    data_dir: str = "data"
    log_level: str = "INFO"
    message_batch_size: int = 4
    tally_batch_size: int = 4
    initial_voice_credits: int = 100
    timeout_seconds: Optional[float] = None
    rpc_url: Optional[str] = None
    anchor_private_key: Optional[str] = None
    chain_id: int = 11155111

    def __post_init__(self) -> None:
        errors = self.validate()
        if errors:
            raise ConfigError("; ".join(errors))

    def validate(self) -> list[str]:
        errors: list[str] = []
        if self.message_batch_size < 1:
            errors.append(f"message_batch_size must be >= 1, got {self.message_batch_size}")
        if self.tally_batch_size < 1:
            errors.append(f"tally_batch_size must be >= 1, got {self.tally_batch_size}")
        if self.initial_voice_credits < 0:
            errors.append(
                f"initial_voice_credits must be >= 0, got {self.initial_voice_credits}"
            )
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            errors.append(f"timeout_seconds must be > 0, got {self.timeout_seconds}")
        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR"):
            errors.append(f"unknown log_level: {self.log_level}")
        return errors

    @property
    def anchoring_enabled(self) -> bool:
        return bool(self.rpc_url and self.anchor_private_key)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CoordinatorConfig:
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")
        return cls(**data)

    @classmethod
    def from_config_dir(
        cls,
        config_dir: Path,
        env_file: Optional[Path] = None,
    ) -> CoordinatorConfig:
        """Load ``coordinator.json`` from a directory, then apply env overrides."""
        path = Path(config_dir) / CONFIG_FILENAME
        data: dict[str, Any] = {}
        if path.exists():
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                raise ConfigError(f"Invalid JSON in {path}: {exc}") from exc
        config = cls.from_dict(data)
        return config.with_env(env_file)

    def with_env(self, env_file: Optional[Path] = None) -> CoordinatorConfig:
        """Return a copy with ``MACI_*`` environment variables applied."""
        if env_file is not None:
            load_dotenv(env_file)
        else:
            load_dotenv()

        overrides: dict[str, Any] = {}
        for env_name, (field_name, parser) in _ENV_OVERRIDES.items():
            raw = os.getenv(env_name)
            if raw is None or raw == "":
                continue
            try:
                overrides[field_name] = parser(raw)
            except ValueError as exc:
                raise ConfigError(f"{env_name}: cannot parse {raw!r}") from exc
        if not overrides:
            return self
        return replace(self, **overrides)
