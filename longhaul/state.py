"""
Durable data model for one orchestration run.

Everything here is plain structured data that round-trips through JSON.
RunState carries a run-type payload as a tagged union keyed on `type`;
behavior per run type lives in longhaul.runs, not in subclasses.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

TaskStatus = Literal["pending", "in_progress", "completed", "skipped", "blocked"]
PresetName = Literal["readonly", "dev", "full"]
DepthLevel = Literal["quick", "standard", "thorough"]
RunType = Literal["builder", "migrator", "scaffold", "bugfix", "feature", "refactor", "plan"]
FailureKind = Literal["test", "type", "lint", "build", "review"]
FailureClass = Literal["compilation_error", "runtime_error", "missing_impl", "none"]

MAX_VERIFICATION_ATTEMPTS = 3
MAX_RECENT_SUMMARIES = 3
STATE_VERSION = 1


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

class Task(BaseModel):
    """One unit of dependency-ordered work."""
    id: str
    description: str
    status: TaskStatus = "pending"
    dependencies: list[str] = Field(default_factory=list)
    verification_command: str | None = None
    verification_pattern: str | None = None
    completed_at: str | None = None
    notes: str | None = None


class AuthorizationPolicy(BaseModel):
    preset: PresetName = "dev"
    inferred: list[str] = Field(default_factory=list)
    allow: list[str] = Field(default_factory=list)
    deny: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Run-type payloads
# ---------------------------------------------------------------------------

class BuilderPayload(BaseModel):
    type: Literal["builder"] = "builder"
    spec_file: str | None = None
    spec_text: str = ""


class MigratorPayload(BaseModel):
    type: Literal["migrator"] = "migrator"
    source_dir: str
    target_dir: str
    migration_type: str = "general"


class ScaffoldPayload(BaseModel):
    type: Literal["scaffold"] = "scaffold"
    spec_file: str | None = None
    spec_text: str = ""
    reference_dir: str | None = None
    additional_read_paths: list[str] = Field(default_factory=list)
    verification_commands: list[str] = Field(
        default_factory=lambda: ["pnpm typecheck", "pnpm build"]
    )


class BugfixPayload(BaseModel):
    type: Literal["bugfix"] = "bugfix"
    error_text: str


class FeaturePayload(BaseModel):
    type: Literal["feature"] = "feature"
    spec_text: str


class RefactorPayload(BaseModel):
    type: Literal["refactor"] = "refactor"
    target: str
    goal: str


class PlanPayload(BaseModel):
    type: Literal["plan"] = "plan"
    plan_name: str
    plan_file: str | None = None
    plan_content: str = ""
    recent_summaries: list[str] = Field(default_factory=list)

    def remember(self, summary: str) -> None:
        """Keep only the most recent session summaries."""
        self.recent_summaries = (self.recent_summaries + [summary])[-MAX_RECENT_SUMMARIES:]


RunPayload = Annotated[
    Union[
        BuilderPayload,
        MigratorPayload,
        ScaffoldPayload,
        BugfixPayload,
        FeaturePayload,
        RefactorPayload,
        PlanPayload,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------

class RunState(BaseModel):
    """The durable record of one orchestration run."""
    version: int = STATE_VERSION
    initialized: bool = False
    session_count: int = 0
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)
    project_dir: str
    model: str
    payload: RunPayload
    policy: AuthorizationPolicy = Field(default_factory=AuthorizationPolicy)
    depth: DepthLevel = "thorough"

    @property
    def run_type(self) -> RunType:
        return self.payload.type

    def touch(self) -> None:
        self.updated_at = utc_now()

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

class VerificationFailure(BaseModel):
    kind: FailureKind
    message: str
    output: str | None = None


class VerificationRecord(BaseModel):
    """Result of one verification attempt on one task."""
    task_id: str
    attempt: int = Field(ge=1, le=MAX_VERIFICATION_ATTEMPTS)
    behavior_passed: bool
    quality_passed: bool
    failures: list[VerificationFailure] = Field(default_factory=list)
    classification: FailureClass = "none"
    guidance: str = ""
    timestamp: str = Field(default_factory=utc_now)

    @property
    def passed(self) -> bool:
        return self.behavior_passed and self.quality_passed

    @property
    def exhausted(self) -> bool:
        return not self.passed and self.attempt >= MAX_VERIFICATION_ATTEMPTS
