from __future__ import annotations

from datetime import UTC, datetime, timedelta

from featureflow.config import DiagnosticsConfig
from featureflow.diagnostics import diagnose, escalation_required, is_stalled
from featureflow.models import Feature, FeatureStatus, LogEntry, Verdict

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
CONFIG = DiagnosticsConfig(stall_threshold_seconds=300, escalation_revision_count=2)


def _ms(seconds: int) -> int:
    return int((T0 + timedelta(seconds=seconds)).timestamp() * 1000)


def _feature(**kwargs) -> Feature:
    defaults = {
        "id": "f",
        "status": FeatureStatus.IN_PROGRESS,
        "current_agent": "IN2",
        "pipeline_log": [
            LogEntry(timestamp=T0, agent="IN2", stage="build", verdict=Verdict.COMPLETE)
        ],
    }
    return Feature(**{**defaults, **kwargs})


class TestStall:
    def test_recent_activity_not_stalled(self):
        assert not is_stalled(_feature(), _ms(60), 300)

    def test_idle_past_threshold(self):
        assert is_stalled(_feature(), _ms(301), 300)

    def test_exactly_at_threshold_not_stalled(self):
        assert not is_stalled(_feature(), _ms(300), 300)

    def test_unassigned_never_stalls(self):
        assert not is_stalled(_feature(current_agent=None), _ms(10_000), 300)

    def test_empty_log_never_stalls(self):
        assert not is_stalled(_feature(pipeline_log=[]), _ms(10_000), 300)

    def test_naive_timestamp_read_as_utc(self):
        naive = LogEntry(
            timestamp=T0.replace(tzinfo=None), agent="IN2", stage="build", verdict=Verdict.COMPLETE
        )
        feature = _feature(pipeline_log=[naive])
        assert not is_stalled(feature, _ms(300), 300)
        assert is_stalled(feature, _ms(301), 300)


class TestEscalation:
    def test_below_threshold(self):
        assert not escalation_required(_feature(revision_count=1), 2)

    def test_at_threshold(self):
        assert escalation_required(_feature(revision_count=2), 2)


class TestDiagnose:
    def test_flags_combined(self):
        result = diagnose(_feature(revision_count=2), _ms(600), CONFIG)
        assert result.stalled
        assert result.escalation_required
        assert result.last_activity_at == T0

    def test_healthy(self):
        result = diagnose(_feature(), _ms(10), CONFIG)
        assert not result.stalled
        assert not result.escalation_required
