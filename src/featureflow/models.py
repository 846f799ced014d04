"""Pydantic models for features, pipeline log entries and handoff packets.

These are the shapes exchanged between the state machine, the step
derivation engine, the packet store and the HTTP layer. Persisted rows are
converted into these models at the ``state_db`` boundary; derived views
(``StepState``, diff views) are never stored.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class FeatureStatus(StrEnum):
    PLANNING = "planning"
    DESIGN_REVIEW = "design_review"
    IN_PROGRESS = "in_progress"
    QA_REVIEW = "qa_review"
    REVIEW = "review"
    APPROVED = "approved"
    PR_SUBMITTED = "pr_submitted"
    DONE = "done"
    CANCELLED = "cancelled"


# Phases a handoff packet can belong to, in pipeline order.
PHASE_ORDER: list[FeatureStatus] = [
    FeatureStatus.PLANNING,
    FeatureStatus.DESIGN_REVIEW,
    FeatureStatus.IN_PROGRESS,
    FeatureStatus.QA_REVIEW,
    FeatureStatus.REVIEW,
    FeatureStatus.APPROVED,
    FeatureStatus.PR_SUBMITTED,
    FeatureStatus.DONE,
]


class Verdict(StrEnum):
    APPROVED = "APPROVED"
    COMPLETE = "COMPLETE"
    SHIP = "SHIP"
    REVISE = "REVISE"
    REJECT = "REJECT"


COMPLETION_VERDICTS: frozenset[Verdict] = frozenset(
    {Verdict.APPROVED, Verdict.COMPLETE, Verdict.SHIP}
)


def _as_utc(value: datetime) -> datetime:
    """Naive timestamps are stored and logged as UTC."""
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


class LogEntry(BaseModel):
    timestamp: datetime
    agent: str
    stage: str
    verdict: Verdict
    issues: list[str] | None = None
    revision_loop: int | None = None
    notes: str | None = None

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: datetime) -> datetime:
        return _as_utc(v)


class Feature(BaseModel):
    id: str
    title: str = ""
    status: FeatureStatus = FeatureStatus.PLANNING
    current_agent: str | None = None
    revision_count: int = Field(default=0, ge=0)
    pipeline_log: list[LogEntry] = Field(default_factory=list)
    needs_attention: bool = False
    attention_type: str | None = None
    approved_by: str | None = None
    approved_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("approved_at", "started_at", "completed_at", "created_at", "updated_at")
    @classmethod
    def validate_timestamps(cls, v: datetime | None) -> datetime | None:
        return None if v is None else _as_utc(v)


class PacketStatus(StrEnum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"
    SKIPPED = "skipped"


class AgentType(StrEnum):
    AI_AGENT = "ai_agent"
    HUMAN = "human"


class Artifact(BaseModel):
    type: str = "other"
    title: str | None = None
    content: Any = None
    url: str | None = None


class Decision(BaseModel):
    title: str
    chosen: str | None = None
    alternatives: list[str] = Field(default_factory=list)
    rationale: str | None = None
    decided_by: str | None = None


class DiffOp(BaseModel):
    op: Literal["equal", "insert", "delete"]
    text: str


class ArtifactDiff(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str
    content_diff: list[DiffOp] | None = Field(default=None, alias="contentDiff")


class PacketDiff(BaseModel):
    summary: list[DiffOp]
    artifacts: list[ArtifactDiff]


class PacketOutput(BaseModel):
    """What an actor hands over when it completes a packet."""

    summary: str = ""
    artifacts: list[Artifact] = Field(default_factory=list)
    decisions: list[Decision] = Field(default_factory=list)


class HandoffPacket(BaseModel):
    id: str
    feature_id: str
    phase: FeatureStatus
    version: int = Field(ge=1)
    status: PacketStatus = PacketStatus.IN_PROGRESS
    agent_id: str | None = None
    agent_type: AgentType | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    output_summary: str | None = None
    output_artifacts: list[Artifact] = Field(default_factory=list)
    output_decisions: list[Decision] = Field(default_factory=list)
    previous_version_id: str | None = None
    diff_from_previous: PacketDiff | None = None
    rejection_reason: str | None = None


class PacketDiffView(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    diff: PacketDiff
    current_version: int = Field(alias="currentVersion")
    previous_version: int = Field(alias="previousVersion")


StepId = Literal["intake", "spec", "design", "build", "qa", "ship"]
StepStatus = Literal["pending", "running", "completed", "error"]


class StepState(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: StepId
    index: int
    label: str
    agent: str
    step_status: StepStatus = Field(alias="stepStatus")
    started_at: datetime | None = Field(default=None, alias="startedAt")
    completed_at: datetime | None = Field(default=None, alias="completedAt")
    elapsed_ms: int | None = Field(default=None, alias="elapsedMs")
    revision_count: int = Field(default=0, alias="revisionCount")
    log_entries: list[LogEntry] = Field(default_factory=list, alias="logEntries")


class ActivityEvent(BaseModel):
    id: int
    feature_id: str
    agent_id: str
    step_id: str
    event_type: str
    content: str
    created_at: datetime
