"""Write paths for features: creation, status changes, approvals, review verdicts.

Every status change is validated by the state machine first and persisted
with a compare-and-set on the previous status. A log entry that goes with a
status change is written in the same transaction, so a lost race writes
neither.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any, Literal

from featureflow import state_machine
from featureflow.models import Feature, FeatureStatus, LogEntry, Verdict
from featureflow.state_db import ConflictError, FeatureNotFound, StateDB, to_db_ts, utc_now
from featureflow.steps import STEP_CONFIGS, StepConfig, current_step, get_step, next_step

logger = logging.getLogger(__name__)

ReviewVerdict = Literal["approve", "revise", "reject"]

# Approving into these statuses hands the feature to the owning step's agent.
_AUTO_ASSIGN_STEPS: dict[FeatureStatus, str] = {
    FeatureStatus.DESIGN_REVIEW: "design",
    FeatureStatus.IN_PROGRESS: "build",
    FeatureStatus.REVIEW: "ship",
}


def load_feature(db: StateDB, feature_id: str) -> Feature:
    row = db.get_feature(feature_id)
    if row is None:
        raise FeatureNotFound(feature_id)
    log = []
    for entry in db.get_log(feature_id):
        if entry.get("issues") is not None:
            entry["issues"] = json.loads(entry["issues"])
        log.append(LogEntry.model_validate(entry))
    return Feature.model_validate({**row, "pipeline_log": log})


def create_feature(db: StateDB, title: str, feature_id: str | None = None) -> Feature:
    feature_id = feature_id or str(uuid.uuid4())
    db.insert_feature(feature_id, title, status=FeatureStatus.PLANNING.value)
    logger.info("Created feature %s (%s)", feature_id, title)
    return load_feature(db, feature_id)


def next_log_timestamp(db: StateDB, feature_id: str, now: datetime) -> datetime:
    """Return *now*, nudged forward if needed to stay after the last entry."""
    last = db.last_log_timestamp(feature_id)
    if last is None:
        return now
    last_ts = datetime.fromisoformat(last)
    if now <= last_ts:
        return last_ts + timedelta(microseconds=1)
    return now


def _log_row(entry: LogEntry) -> dict[str, Any]:
    return {
        "timestamp": to_db_ts(entry.timestamp),
        "agent": entry.agent,
        "stage": entry.stage,
        "verdict": entry.verdict.value,
        "issues": json.dumps(entry.issues) if entry.issues is not None else None,
        "revision_loop": entry.revision_loop,
        "notes": entry.notes,
    }


def append_log_entry(db: StateDB, feature_id: str, entry: LogEntry) -> None:
    """Append *entry*; a REVISE verdict also bumps ``revision_count``."""
    db.append_log_entry(
        feature_id,
        _log_row(entry),
        increment_revision=entry.verdict == Verdict.REVISE,
    )


def new_log_entry(
    db: StateDB,
    feature_id: str,
    agent: str,
    stage: str,
    verdict: Verdict,
    clock: Callable[[], datetime] = utc_now,
    **extra: Any,
) -> LogEntry:
    return LogEntry(
        timestamp=next_log_timestamp(db, feature_id, clock()),
        agent=agent,
        stage=stage,
        verdict=verdict,
        **extra,
    )


def record_verdict(
    db: StateDB,
    feature_id: str,
    agent: str,
    stage: str,
    verdict: Verdict,
    clock: Callable[[], datetime] = utc_now,
    **extra: Any,
) -> LogEntry:
    entry = new_log_entry(db, feature_id, agent, stage, verdict, clock=clock, **extra)
    append_log_entry(db, feature_id, entry)
    return entry


def record_transition(
    db: StateDB, feature: Feature, entry: LogEntry, **fields: Any
) -> Feature:
    """Append *entry* and apply *fields* together, guarded on ``feature.status``.

    Raises ConflictError, with nothing written, if the status moved meanwhile.
    """
    written = db.append_log_and_update(
        feature.id,
        _log_row(entry),
        expected_status=feature.status.value,
        increment_revision=entry.verdict == Verdict.REVISE,
        **fields,
    )
    if not written:
        msg = f"Feature {feature.id} changed status concurrently (expected {feature.status.value})"
        raise ConflictError(msg, feature_id=feature.id)
    return load_feature(db, feature.id)


def status_fields(
    feature: Feature, target: FeatureStatus, now: datetime
) -> dict[str, Any]:
    fields: dict[str, Any] = {"status": target.value}
    if target == FeatureStatus.IN_PROGRESS and feature.started_at is None:
        fields["started_at"] = to_db_ts(now)
    if target in (FeatureStatus.DONE, FeatureStatus.CANCELLED):
        fields["completed_at"] = to_db_ts(now)
    if feature.status == FeatureStatus.CANCELLED and target == FeatureStatus.PLANNING:
        fields.update(
            current_agent=None,
            revision_count=0,
            needs_attention=0,
            attention_type=None,
            completed_at=None,
        )
    return fields


def compare_and_set(db: StateDB, feature: Feature, **fields: Any) -> Feature:
    if not db.update_feature(feature.id, expected_status=feature.status.value, **fields):
        msg = f"Feature {feature.id} changed status concurrently (expected {feature.status.value})"
        raise ConflictError(msg, feature_id=feature.id)
    return load_feature(db, feature.id)


def update_status(
    db: StateDB,
    feature_id: str,
    status: FeatureStatus,
    assigned_to: str | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> Feature:
    """Move a feature to *status*. Raises InvalidTransition or ConflictError."""
    feature = load_feature(db, feature_id)
    state_machine.apply(feature, status)
    fields = status_fields(feature, status, clock())
    if assigned_to is not None:
        fields["current_agent"] = assigned_to or None
    updated = compare_and_set(db, feature, **fields)
    logger.info("Feature %s: %s -> %s", feature_id, feature.status.value, status.value)
    return updated


def approve(
    db: StateDB,
    feature_id: str,
    target_status: FeatureStatus,
    approved_by: str | None,
    steps: Sequence[StepConfig] = STEP_CONFIGS,
    clock: Callable[[], datetime] = utc_now,
) -> Feature:
    """Human approval: a validated status move that also records the approver."""
    feature = load_feature(db, feature_id)
    state_machine.apply(feature, target_status)
    now = clock()
    fields = status_fields(feature, target_status, now)
    fields.update(needs_attention=0, attention_type=None)
    if approved_by:
        fields.update(approved_by=approved_by, approved_at=to_db_ts(now))
    step_id = _AUTO_ASSIGN_STEPS.get(target_status)
    step = get_step(step_id, steps) if step_id else None
    if step is not None:
        fields["current_agent"] = step.agent
    updated = compare_and_set(db, feature, **fields)
    logger.info(
        "Feature %s approved to %s by %s",
        feature_id,
        target_status.value,
        approved_by or "system",
    )
    return updated


def submit_review_verdict(
    db: StateDB,
    feature_id: str,
    verdict: ReviewVerdict,
    reviewer: str,
    feedback: str | None = None,
    steps: Sequence[StepConfig] = STEP_CONFIGS,
    clock: Callable[[], datetime] = utc_now,
) -> Feature:
    """Record a human verdict at a gate (spec review or final ship review).

    Raises ValueError if the feature is not at a human gate.
    """
    feature = load_feature(db, feature_id)
    gate = current_step(feature, steps)
    if gate is None or not gate.human_gate:
        step_name = gate.id if gate else "none"
        msg = f"Step '{step_name}' does not require human review"
        raise ValueError(msg)

    notes = f"{verdict} by {reviewer}" + (f": {feedback}" if feedback else "")
    target: FeatureStatus | None = None
    fields: dict[str, Any] = {}

    if verdict == "approve":
        log_verdict = Verdict.APPROVED
        fields.update(needs_attention=0, attention_type=None, revision_count=0)
        if gate.id == "ship":
            target = FeatureStatus.APPROVED
            fields.update(approved_by=reviewer, approved_at=to_db_ts(clock()))
        else:
            following = next_step(gate.id, steps)
            if following is not None:
                fields["current_agent"] = following.agent
                if following.status != feature.status:
                    target = following.status
    elif verdict == "revise":
        log_verdict = Verdict.REVISE
        fields.update(needs_attention=0, attention_type=None)
        if gate.id == "ship":
            qa = get_step("qa", steps)
            target = FeatureStatus.QA_REVIEW
            fields["current_agent"] = qa.agent if qa else None
    elif verdict == "reject":
        log_verdict = Verdict.REJECT
        target = FeatureStatus.CANCELLED
        fields.update(needs_attention=1, attention_type="error")
    else:
        msg = f"Invalid verdict: {verdict}"
        raise ValueError(msg)

    if target is not None:
        state_machine.apply(feature, target)
        fields.update(status_fields(feature, target, clock()))

    entry = new_log_entry(
        db, feature_id, gate.agent, gate.id, log_verdict, clock=clock, notes=notes
    )
    updated = record_transition(db, feature, entry, **fields)
    logger.info("Feature %s: %s at %s gate by %s", feature_id, verdict, gate.id, reviewer)
    return updated
