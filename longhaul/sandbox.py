"""
Sandbox declaration.

Generates (but does not enforce) the settings an external OS-level sandbox
consumes: filesystem grants scoped to the project directory plus any
whitelisted read-only paths, and a default tool-permission mode.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from longhaul.config_loader import SandboxConfig
from longhaul.store import RunStore, atomic_write

PermissionMode = Literal["default", "acceptEdits", "bypassPermissions", "plan"]


class SandboxSection(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = True
    auto_allow_bash_if_sandboxed: bool = Field(default=True, alias="autoAllowBashIfSandboxed")


class PermissionsSection(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    default_mode: PermissionMode = Field(default="acceptEdits", alias="defaultMode")
    allow: list[str] = Field(default_factory=list)
    deny: list[str] = Field(default_factory=list)


class SandboxSettings(BaseModel):
    sandbox: SandboxSection = Field(default_factory=SandboxSection)
    permissions: PermissionsSection = Field(default_factory=PermissionsSection)

    def to_json(self) -> str:
        return self.model_dump_json(indent=2, by_alias=True)


def filesystem_grants(additional_read_paths: list[str] | None = None) -> list[str]:
    grants = [f"{tool}(./**)" for tool in ("Read", "Write", "Edit", "Glob", "Grep")]
    for path in additional_read_paths or []:
        grants.append(f"Read({path.rstrip('/')}/**)")
    return grants


def generate_settings(
    enabled: bool = True,
    permission_mode: PermissionMode = "acceptEdits",
    additional_read_paths: list[str] | None = None,
) -> SandboxSettings:
    return SandboxSettings(
        sandbox=SandboxSection(enabled=enabled),
        permissions=PermissionsSection(
            default_mode=permission_mode,
            allow=filesystem_grants(additional_read_paths) + ["Bash(*)"],
        ),
    )


def settings_for_run(config: SandboxConfig, read_paths: list[str]) -> SandboxSettings:
    paths = list(dict.fromkeys(config.additional_read_paths + read_paths))
    return generate_settings(config.enabled, config.permission_mode, paths)


def validate_settings(settings: SandboxSettings) -> list[str]:
    """Warnings for settings that weaken isolation. Empty means nothing to flag."""
    warnings: list[str] = []

    if not settings.sandbox.enabled:
        warnings.append("Sandbox is disabled; bash commands will not be isolated")

    if settings.permissions.default_mode == "bypassPermissions":
        warnings.append("Permission bypass enabled; all tools will be auto-approved")

    for grant in settings.permissions.allow:
        if not grant.startswith(("Read(", "Write(", "Edit(")):
            continue
        target = grant[grant.index("(") + 1:-1]
        if not target.startswith("."):
            warnings.append(f"Permission uses absolute path: {grant}")

    return warnings


def write_settings(store: RunStore, settings: SandboxSettings) -> Path:
    atomic_write(store.sandbox_path, settings.to_json())
    for warning in validate_settings(settings):
        logger.warning(f"[SANDBOX] {warning}")
    logger.debug(f"[SANDBOX] Wrote {store.sandbox_path}")
    return store.sandbox_path
