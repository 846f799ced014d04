"""Derived warning flags for a feature. Surfaced to operators, never raised."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from featureflow.config import DiagnosticsConfig
from featureflow.models import Feature


class Diagnostics(BaseModel):
    stalled: bool
    escalation_required: bool
    last_activity_at: datetime | None = None


def last_activity(feature: Feature) -> datetime | None:
    if not feature.pipeline_log:
        return None
    return feature.pipeline_log[-1].timestamp


def is_stalled(feature: Feature, now_ms: int, threshold_seconds: int) -> bool:
    """An agent holds the feature but has not logged anything for too long."""
    last = last_activity(feature)
    if feature.current_agent is None or last is None:
        return False
    idle_ms = now_ms - int(last.timestamp() * 1000)
    return idle_ms > threshold_seconds * 1000


def escalation_required(feature: Feature, threshold: int) -> bool:
    return feature.revision_count >= threshold


def diagnose(feature: Feature, now_ms: int, config: DiagnosticsConfig) -> Diagnostics:
    return Diagnostics(
        stalled=is_stalled(feature, now_ms, config.stall_threshold_seconds),
        escalation_required=escalation_required(
            feature, config.escalation_revision_count
        ),
        last_activity_at=last_activity(feature),
    )
