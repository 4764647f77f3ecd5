"""
Configuration loader for LONGHAUL.
Merges defaults with per-project .longhaul/config.yaml overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from longhaul.state import DepthLevel, PresetName


class ConfigurationError(Exception):
    """A run cannot start. Raised before any state is written."""
    pass


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class ExecutorConfig(BaseModel):
    model: str = "anthropic/claude-sonnet-4-5"
    max_turns: int = 50
    temperature: float = 0.2
    max_tokens: int = 8192


VerificationLevel = Literal["basic", "standard", "extensive"]


class DepthPreset(BaseModel):
    """Session bounds a run gets when its config leaves them unset."""
    max_sessions: int | None
    auto_continue_delay: float
    verification_level: VerificationLevel


DEPTH_PRESETS: dict[DepthLevel, DepthPreset] = {
    "quick": DepthPreset(max_sessions=5, auto_continue_delay=1.0, verification_level="basic"),
    "standard": DepthPreset(max_sessions=20, auto_continue_delay=2.0, verification_level="standard"),
    "thorough": DepthPreset(max_sessions=None, auto_continue_delay=3.0, verification_level="extensive"),
}


class LoopConfig(BaseModel):
    depth: DepthLevel = "thorough"
    auto_continue_delay: float | None = None   # None = from depth
    error_retry_delay: float = 5.0
    max_sessions: int | None = None            # None = from depth
    max_error_retries: int | None = None

    def resolved(self, depth: DepthLevel | None = None) -> LoopConfig:
        """Fill unset bounds from a depth preset. Explicit values win."""
        level = depth or self.depth
        preset = DEPTH_PRESETS[level]
        return self.model_copy(update={
            "depth": level,
            "max_sessions": self.max_sessions if self.max_sessions is not None else preset.max_sessions,
            "auto_continue_delay": (
                self.auto_continue_delay if self.auto_continue_delay is not None else preset.auto_continue_delay
            ),
        })


class VerificationConfig(BaseModel):
    enabled: bool = True
    test_timeout: int = 120
    build_timeout: int = 180


class PermissionsConfig(BaseModel):
    preset: PresetName = "dev"
    allow: list[str] = Field(default_factory=list)
    deny: list[str] = Field(default_factory=list)


class SandboxConfig(BaseModel):
    enabled: bool = True
    permission_mode: Literal["default", "acceptEdits", "bypassPermissions", "plan"] = "acceptEdits"
    additional_read_paths: list[str] = Field(default_factory=list)


class BudgetConfig(BaseModel):
    max_tokens: int = 2_000_000
    max_dollars: float = 25.0


class LonghaulConfig(BaseModel):
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)
    permissions: PermissionsConfig = Field(default_factory=PermissionsConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

STATE_DIR_NAME = ".longhaul"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping, got {type(data).__name__}")
    return data


def load_config(project_dir: Path | None = None) -> LonghaulConfig:
    """
    Load config by merging:
      1. Built-in defaults (longhaul/config.yaml)
      2. Project-level overrides (<project>/.longhaul/config.yaml)
    """
    base = _read_yaml(_DEFAULT_CONFIG_PATH)

    if project_dir:
        project_config = project_dir / STATE_DIR_NAME / "config.yaml"
        if project_config.is_file():
            base = _deep_merge(base, _read_yaml(project_config))

    try:
        return LonghaulConfig(**base)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def validate_api_keys() -> dict[str, bool]:
    """Check which API keys are available."""
    return {
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "GOOGLE_API_KEY":    bool(os.environ.get("GOOGLE_API_KEY")),
        "GEMINI_API_KEY":    bool(os.environ.get("GEMINI_API_KEY")),
    }
