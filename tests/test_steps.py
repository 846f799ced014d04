from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from featureflow.models import Feature, FeatureStatus, LogEntry, Verdict
from featureflow.steps import (
    STEP_CONFIGS,
    agent_chain_summary,
    build_step_configs,
    current_step_id,
    derive_steps,
    format_elapsed,
    next_step,
    step_for_entry,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def _entry(minutes: int, agent: str, stage: str, verdict: Verdict, **extra) -> LogEntry:
    return LogEntry(
        timestamp=T0 + timedelta(minutes=minutes),
        agent=agent,
        stage=stage,
        verdict=verdict,
        **extra,
    )


def _ms(minutes: int) -> int:
    return int((T0 + timedelta(minutes=minutes)).timestamp() * 1000)


def _by_id(steps):
    return {s.id: s for s in steps}


class TestStepTable:
    def test_six_steps_in_order(self):
        assert [s.id for s in STEP_CONFIGS] == [
            "intake", "spec", "design", "build", "qa", "ship",
        ]
        assert [s.index for s in STEP_CONFIGS] == [1, 2, 3, 4, 5, 6]

    def test_human_gates(self):
        assert {s.id for s in STEP_CONFIGS if s.human_gate} == {"spec", "ship"}

    def test_next_step(self):
        assert next_step("build").id == "qa"
        assert next_step("ship") is None
        assert next_step("unknown") is None

    def test_agent_override(self):
        steps = build_step_configs({"build": "IN9"})
        assert _by_id(steps)["build"].agent == "IN9"
        assert _by_id(steps)["qa"].agent == "IN6"


class TestEntryAttribution:
    def test_single_owner(self):
        assert step_for_entry(_entry(0, "IN2", "qa", Verdict.REVISE)).id == "build"

    def test_shared_agent_by_stage(self):
        assert step_for_entry(_entry(0, "HBx", "intake", Verdict.COMPLETE)).id == "intake"
        assert step_for_entry(_entry(0, "HBx", "ship", Verdict.SHIP)).id == "ship"
        assert step_for_entry(_entry(0, "HBx", "review", Verdict.SHIP)).id == "ship"
        assert step_for_entry(_entry(0, "HBx", "done", Verdict.SHIP)).id == "ship"

    def test_unknown_agent(self):
        assert step_for_entry(_entry(0, "ZZ9", "intake", Verdict.COMPLETE)) is None

    def test_current_step_for_shared_agent(self):
        early = Feature(id="f", status=FeatureStatus.PLANNING, current_agent="HBx")
        late = Feature(id="f", status=FeatureStatus.REVIEW, current_agent="HBx")
        assert current_step_id(early) == "intake"
        assert current_step_id(late) == "ship"


class TestDeriveSteps:
    def test_fresh_feature_all_pending(self):
        feature = Feature(id="f", title="New", status=FeatureStatus.PLANNING)
        steps = derive_steps(feature, _ms(0))
        assert [s.step_status for s in steps] == ["pending"] * 6
        assert all(s.elapsed_ms is None for s in steps)

    def test_intake_running_when_assigned(self):
        feature = Feature(id="f", status=FeatureStatus.PLANNING, current_agent="HBx")
        steps = _by_id(derive_steps(feature, _ms(0)))
        assert steps["intake"].step_status == "running"

    def test_design_running_after_spec_approval(self):
        feature = Feature(
            id="f",
            status=FeatureStatus.DESIGN_REVIEW,
            current_agent="IN5",
            pipeline_log=[
                _entry(0, "HBx", "intake", Verdict.COMPLETE),
                _entry(5, "IN1", "spec", Verdict.APPROVED),
            ],
        )
        steps = _by_id(derive_steps(feature, _ms(10)))
        assert steps["intake"].step_status == "completed"
        assert steps["spec"].step_status == "completed"
        assert steps["design"].step_status == "running"
        for step_id in ("build", "qa", "ship"):
            assert steps[step_id].step_status == "pending"

    def test_revision_count_per_step(self):
        feature = Feature(
            id="f",
            status=FeatureStatus.IN_PROGRESS,
            current_agent="IN2",
            revision_count=2,
            pipeline_log=[
                _entry(0, "IN2", "qa", Verdict.REVISE),
                _entry(1, "IN2", "qa", Verdict.REVISE),
            ],
        )
        steps = _by_id(derive_steps(feature, _ms(2)))
        assert steps["build"].revision_count == 2
        assert steps["qa"].revision_count == 0

    def test_reject_marks_error(self):
        feature = Feature(
            id="f",
            status=FeatureStatus.QA_REVIEW,
            current_agent="IN6",
            pipeline_log=[
                _entry(0, "HBx", "intake", Verdict.COMPLETE),
                _entry(1, "IN6", "qa", Verdict.REJECT),
            ],
        )
        steps = _by_id(derive_steps(feature, _ms(2)))
        assert steps["qa"].step_status == "error"

    def test_reject_cleared_by_later_completion(self):
        feature = Feature(
            id="f",
            status=FeatureStatus.QA_REVIEW,
            current_agent="IN6",
            pipeline_log=[
                _entry(0, "IN6", "qa", Verdict.REJECT),
                _entry(1, "IN2", "build", Verdict.COMPLETE),
            ],
        )
        steps = _by_id(derive_steps(feature, _ms(2)))
        assert steps["qa"].step_status == "running"

    def test_cancelled_feature_shows_no_error(self):
        feature = Feature(
            id="f",
            status=FeatureStatus.CANCELLED,
            current_agent="IN1",
            pipeline_log=[_entry(0, "IN1", "spec", Verdict.REJECT)],
        )
        steps = _by_id(derive_steps(feature, _ms(1)))
        assert steps["spec"].step_status == "pending"

    def test_nothing_running_in_terminal_status(self):
        feature = Feature(
            id="f",
            status=FeatureStatus.APPROVED,
            current_agent="HBx",
            pipeline_log=[_entry(0, "HBx", "intake", Verdict.COMPLETE)],
        )
        steps = derive_steps(feature, _ms(1))
        assert all(s.step_status != "running" for s in steps)

    @pytest.mark.parametrize("status", [FeatureStatus.DONE, FeatureStatus.PR_SUBMITTED])
    def test_ship_completes_only_when_shipped(self, status: FeatureStatus):
        feature = Feature(
            id="f",
            status=status,
            current_agent="HBx",
            pipeline_log=[_entry(0, "HBx", "ship", Verdict.SHIP)],
        )
        assert _by_id(derive_steps(feature, _ms(1)))["ship"].step_status == "completed"

    def test_ship_entry_alone_does_not_complete(self):
        feature = Feature(
            id="f",
            status=FeatureStatus.REVIEW,
            current_agent="HBx",
            pipeline_log=[_entry(0, "HBx", "ship", Verdict.SHIP)],
        )
        assert _by_id(derive_steps(feature, _ms(1)))["ship"].step_status == "running"

    def test_running_elapsed_uses_injected_clock(self):
        feature = Feature(
            id="f",
            status=FeatureStatus.IN_PROGRESS,
            current_agent="IN2",
            pipeline_log=[_entry(0, "IN2", "build", Verdict.REVISE)],
        )
        build = _by_id(derive_steps(feature, _ms(3)))["build"]
        assert build.step_status == "running"
        assert build.elapsed_ms == 3 * 60 * 1000

    def test_completed_elapsed(self):
        feature = Feature(
            id="f",
            status=FeatureStatus.DESIGN_REVIEW,
            current_agent="IN5",
            pipeline_log=[
                _entry(0, "IN1", "spec", Verdict.REVISE),
                _entry(4, "IN1", "spec", Verdict.APPROVED),
            ],
        )
        spec = _by_id(derive_steps(feature, _ms(60)))["spec"]
        assert spec.step_status == "completed"
        assert spec.elapsed_ms == 4 * 60 * 1000

    def test_elapsed_never_negative(self):
        feature = Feature(
            id="f",
            status=FeatureStatus.IN_PROGRESS,
            current_agent="IN2",
            pipeline_log=[_entry(10, "IN2", "build", Verdict.REVISE)],
        )
        build = _by_id(derive_steps(feature, _ms(0)))["build"]
        assert build.elapsed_ms == 0

    def test_naive_log_timestamps_measured_as_utc(self):
        entry = _entry(0, "IN2", "build", Verdict.REVISE)
        naive = entry.model_copy(update={"timestamp": entry.timestamp.replace(tzinfo=None)})
        feature = Feature.model_validate(
            {
                "id": "f",
                "status": FeatureStatus.IN_PROGRESS,
                "current_agent": "IN2",
                "pipeline_log": [naive.model_dump()],
            }
        )
        build = _by_id(derive_steps(feature, _ms(3)))["build"]
        assert build.elapsed_ms == 3 * 60 * 1000

    def test_pure(self):
        feature = Feature(
            id="f",
            status=FeatureStatus.QA_REVIEW,
            current_agent="IN6",
            pipeline_log=[
                _entry(0, "HBx", "intake", Verdict.COMPLETE),
                _entry(1, "IN2", "qa", Verdict.REVISE),
            ],
        )
        snapshot = feature.model_dump()
        first = derive_steps(feature, _ms(5))
        second = derive_steps(feature, _ms(5))
        assert first == second
        assert feature.model_dump() == snapshot

    def test_serialises_with_camel_case_keys(self):
        feature = Feature(id="f", status=FeatureStatus.PLANNING)
        data = derive_steps(feature, _ms(0))[0].model_dump(by_alias=True)
        assert {"stepStatus", "startedAt", "elapsedMs", "revisionCount", "logEntries"} <= set(data)


class TestFormatting:
    @pytest.mark.parametrize(
        ("ms", "expected"),
        [
            (None, "—"),
            (45_000, "45s"),
            (120_000, "2m"),
            (3_600_000, "1h"),
            (4_980_000, "1h 23m"),
            (2 * 86_400_000 + 3 * 3_600_000, "2d 3h"),
        ],
    )
    def test_format_elapsed(self, ms, expected):
        assert format_elapsed(ms) == expected

    def test_chain_waiting(self):
        feature = Feature(id="f", status=FeatureStatus.PLANNING)
        assert agent_chain_summary(derive_steps(feature, _ms(0))) == "Waiting to start"

    def test_chain_lists_active_agents(self):
        feature = Feature(
            id="f",
            status=FeatureStatus.DESIGN_REVIEW,
            current_agent="IN1",
            pipeline_log=[_entry(0, "HBx", "intake", Verdict.COMPLETE)],
        )
        assert agent_chain_summary(derive_steps(feature, _ms(1))) == "HBx intake → IN1 specs"
