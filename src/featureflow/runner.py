"""Drive a feature through the automated pipeline steps until a human gate.

One run walks the steps in order from the feature's current step. Each step
opens a handoff packet, writes its scripted activity feed, appends its log
entry and finishes the packet before the status advances. The feature is
re-read before every step, so a concurrent cancel stops the run at the next
step boundary.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from featureflow import service, state_machine
from featureflow.activities import STEP_ACTIVITIES, default_qa_reviewer, render
from featureflow.config import FeatureflowConfig
from featureflow.defaults import MIN_STEP_DELAY_FLOOR_MS
from featureflow.models import (
    Artifact,
    Feature,
    FeatureStatus,
    HandoffPacket,
    PacketOutput,
    PacketStatus,
    Verdict,
)
from featureflow.packets import HandoffPacketStore
from featureflow.state_db import ConflictError, StateDB, utc_now
from featureflow.steps import StepConfig, build_step_configs, current_step, get_step, next_step

logger = logging.getLogger(__name__)

Reviewer = Callable[[Feature], list[str]]


class StopReason(StrEnum):
    HUMAN_GATE = "human_gate"
    AWAITING_REVIEW = "awaiting_review"
    NOT_RUNNABLE = "not_runnable"
    CANCELLED = "cancelled"
    ESCALATED = "escalated"
    REJECTED_TRANSITION = "rejected_transition"
    CONFLICT = "conflict"
    DONE = "done"
    ERROR = "error"


class _Outcome(StrEnum):
    COMPLETE = "complete"
    REVISE = "revise"
    ESCALATE = "escalate"


@dataclass
class RunResult:
    feature: Feature
    stopped_reason: StopReason
    error: str | None = None
    steps_run: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class _StepResult:
    """What a finished step wants recorded before the feature moves on."""

    outcome: _Outcome
    agent: str
    verdict: Verdict
    notes: str
    output: PacketOutput
    issues: list[str] | None = None
    revision_loop: int | None = None
    rejection: str | None = None


class PipelineRunner:
    def __init__(
        self,
        db: StateDB,
        config: FeatureflowConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        reviewer: Reviewer = default_qa_reviewer,
    ) -> None:
        self.db = db
        self.config = config or FeatureflowConfig()
        self.steps: Sequence[StepConfig] = build_step_configs(self.config.agents)
        self.packets = HandoffPacketStore(
            db, max_summary_chars=self.config.packets.max_summary_chars, clock=clock
        )
        self._clock = clock
        self._sleep = sleep
        self._reviewer = reviewer

    @property
    def step_delay_seconds(self) -> float:
        return max(self.config.min_step_delay_seconds, MIN_STEP_DELAY_FLOOR_MS / 1000)

    def run(self, feature_id: str) -> RunResult:
        """Run automated steps until a gate, an escalation or an abort.

        Raises FeatureNotFound for unknown features and ConflictError when
        another run already holds the feature.
        """
        feature = service.load_feature(self.db, feature_id)
        if state_machine.is_running_terminal(feature.status):
            logger.info("Feature %s is %s; nothing to run", feature_id, feature.status.value)
            return RunResult(feature, StopReason.NOT_RUNNABLE)

        start = self._start_step(feature)
        if start is None:
            return RunResult(
                feature,
                StopReason.ERROR,
                error=f"No step matches agent {feature.current_agent} in {feature.status.value}",
            )
        if start.human_gate and feature.needs_attention:
            logger.info("Feature %s is waiting at the %s gate", feature_id, start.id)
            return RunResult(feature, StopReason.AWAITING_REVIEW)

        if not self.db.claim_runner(
            feature_id, now=self._clock(), lease_seconds=self.config.runner.claim_lease_seconds
        ):
            msg = f"A pipeline run is already active for feature {feature_id}"
            raise ConflictError(msg, feature_id=feature_id)
        logger.info("Pipeline run started for %s at %s", feature_id, start.id)
        try:
            return self._run_from(feature_id, start)
        finally:
            self.db.release_runner(feature_id)

    def _start_step(self, feature: Feature) -> StepConfig | None:
        step = current_step(feature, self.steps)
        if step is not None:
            return step
        if feature.current_agent is not None:
            return None
        return next((s for s in self.steps if s.status == feature.status), None)

    # ── Run loop ─────────────────────────────────────────────────────

    def _run_from(self, feature_id: str, start: StepConfig) -> RunResult:
        step = start
        steps_run: list[str] = []

        while True:
            feature = service.load_feature(self.db, feature_id)
            if feature.status == FeatureStatus.CANCELLED:
                logger.info("Feature %s was cancelled; stopping before %s", feature_id, step.id)
                return self._result(feature_id, StopReason.CANCELLED, steps_run)
            self.db.refresh_runner(feature_id, now=self._clock())

            try:
                steps_run.append(step.id)
                target, stop = self._run_step(feature, step)
            except state_machine.InvalidTransition as exc:
                logger.warning("Run for %s aborted: %s", feature_id, exc)
                return self._stop(
                    feature_id,
                    StopReason.REJECTED_TRANSITION,
                    steps_run,
                    error=str(exc),
                )
            except ConflictError as exc:
                logger.warning("Run for %s aborted on conflict: %s", feature_id, exc)
                return self._stop(feature_id, StopReason.CONFLICT, steps_run, error=str(exc))
            except Exception as exc:
                logger.exception("Run for %s failed at %s", feature_id, step.id)
                return self._stop(feature_id, StopReason.ERROR, steps_run, error=str(exc))

            if stop is not None:
                return self._result(feature_id, stop, steps_run)
            if target is None:
                return self._result(feature_id, StopReason.DONE, steps_run)
            logger.debug(
                "Feature %s handed to %s (%s)", feature_id, target.agent, target.status.value
            )
            self._sleep(self.step_delay_seconds)
            step = target

    def _result(
        self,
        feature_id: str,
        reason: StopReason,
        steps_run: list[str],
        error: str | None = None,
    ) -> RunResult:
        return RunResult(
            service.load_feature(self.db, feature_id), reason, error=error, steps_run=steps_run
        )

    def _stop(
        self,
        feature_id: str,
        reason: StopReason,
        steps_run: list[str],
        error: str | None = None,
    ) -> RunResult:
        self.db.update_feature(feature_id, needs_attention=1, attention_type="error")
        return self._result(feature_id, reason, steps_run, error=error)

    def _route(
        self, step: StepConfig, outcome: _Outcome
    ) -> tuple[StepConfig | None, str | None, StopReason | None]:
        """Where the feature goes after *step*: next step, attention flag, stop."""
        if outcome == _Outcome.ESCALATE:
            return None, "error", StopReason.ESCALATED
        if outcome == _Outcome.REVISE:
            return get_step("build", self.steps), None, None
        if step.human_gate:
            attention = "approve" if step.id == "spec" else "review"
            return None, attention, StopReason.HUMAN_GATE
        return next_step(step.id, self.steps), None, None

    # ── Steps ────────────────────────────────────────────────────────

    def _run_step(
        self, feature: Feature, step: StepConfig
    ) -> tuple[StepConfig | None, StopReason | None]:
        if feature.current_agent != step.agent:
            self.db.update_feature(
                feature.id, expected_status=feature.status.value, current_agent=step.agent
            )

        logger.info("Feature %s: running %s (%s)", feature.id, step.id, step.agent)
        packet = self.packets.create_version(feature.id, feature.status, step.agent)
        try:
            result = self._work(feature, step)
            target, attention, stop = self._route(step, result.outcome)
            if not self._commit(feature.id, step, result, target, attention):
                self.packets.reject(packet.id, "Feature cancelled")
                logger.info("Feature %s was cancelled during %s", feature.id, step.id)
                return None, StopReason.CANCELLED
            if result.rejection is not None:
                self.packets.reject(packet.id, result.rejection)
            else:
                self.packets.complete(packet.id, result.output, agent_id=step.agent)
        except Exception as exc:
            self._abandon(packet, exc)
            raise

        if stop == StopReason.HUMAN_GATE:
            logger.info("Feature %s reached the %s gate", feature.id, step.id)
        return target, stop

    def _commit(
        self,
        feature_id: str,
        step: StepConfig,
        result: _StepResult,
        target: StepConfig | None,
        attention: str | None,
    ) -> bool:
        """Append the step's entry together with the hand-off.

        Returns False, with nothing written, if the feature was cancelled
        while the step ran.
        """
        current = service.load_feature(self.db, feature_id)
        if current.status == FeatureStatus.CANCELLED:
            return False

        fields: dict[str, object] = {}
        if target is not None:
            fields["current_agent"] = target.agent
            if target.status != current.status:
                state_machine.apply(current, target.status)
                fields.update(service.status_fields(current, target.status, self._clock()))
        if attention is not None:
            fields.update(needs_attention=1, attention_type=attention)

        entry = service.new_log_entry(
            self.db,
            feature_id,
            result.agent,
            step.id,
            result.verdict,
            clock=self._clock,
            issues=result.issues,
            revision_loop=result.revision_loop,
            notes=result.notes,
        )
        try:
            service.record_transition(self.db, current, entry, **fields)
        except ConflictError:
            if service.load_feature(self.db, feature_id).status == FeatureStatus.CANCELLED:
                return False
            raise
        return True

    def _work(self, feature: Feature, step: StepConfig) -> _StepResult:
        following = next_step(step.id, self.steps)
        next_agent = following.agent if following else "next agent"
        notes = [
            self._activity(feature, step, t.event_type, render(t, feature, next_agent))
            for t in STEP_ACTIVITIES.get(step.id, ())
        ]

        if step.id == "qa":
            return self._run_qa(feature, step, notes)

        return _StepResult(
            outcome=_Outcome.COMPLETE,
            agent=step.agent,
            verdict=Verdict.SHIP if step.id == "ship" else Verdict.COMPLETE,
            notes=f"{step.label} completed",
            output=self._output(feature, step, notes),
        )

    def _abandon(self, packet: HandoffPacket, exc: Exception) -> None:
        if self.packets.get(packet.id).status == PacketStatus.IN_PROGRESS:
            self.packets.reject(packet.id, f"Step failed: {exc}")

    def _run_qa(self, feature: Feature, step: StepConfig, notes: list[str]) -> _StepResult:
        issues = list(self._reviewer(feature))
        max_revisions = self.config.runner.qa_max_revisions

        if not issues:
            notes.append(self._activity(feature, step, "decision", "QA PASSED: 0 issues found."))
            return _StepResult(
                outcome=_Outcome.COMPLETE,
                agent=step.agent,
                verdict=Verdict.APPROVED,
                notes="QA passed",
                output=self._output(feature, step, notes),
                issues=[],
            )

        notes.append(
            self._activity(feature, step, "decision", f"QA FAILED: found {len(issues)} issues")
        )
        notes.extend(self._activity(feature, step, "thinking", f"• {i}") for i in issues)

        if feature.revision_count >= max_revisions:
            self._activity(
                feature, step, "gate", "Max revisions reached. Escalating to human review."
            )
            logger.warning(
                "Feature %s escalated after %d QA revisions", feature.id, feature.revision_count
            )
            return _StepResult(
                outcome=_Outcome.ESCALATE,
                agent=step.agent,
                verdict=Verdict.REJECT,
                notes=f"Issues remain after {feature.revision_count} revisions",
                output=self._output(feature, step, notes, issues),
                issues=issues,
                rejection="; ".join(issues),
            )

        build = get_step("build", self.steps)
        self._activity(feature, step, "revision", "Returning to Build for revision...")
        revision_loop = feature.revision_count + 1
        logger.info("Feature %s: QA revision loop %d", feature.id, revision_loop)
        return _StepResult(
            outcome=_Outcome.REVISE,
            agent=build.agent if build else step.agent,
            verdict=Verdict.REVISE,
            notes="QA found issues, returning to Build",
            output=self._output(feature, step, notes, issues),
            issues=issues,
            revision_loop=revision_loop,
        )

    def _activity(self, feature: Feature, step: StepConfig, event_type: str, content: str) -> str:
        self.db.insert_activity(feature.id, step.agent, step.id, event_type, content)
        return content

    def _output(
        self,
        feature: Feature,
        step: StepConfig,
        notes: list[str],
        issues: list[str] | None = None,
    ) -> PacketOutput:
        summary = f"{step.label} completed for {feature.title}"
        if feature.revision_count:
            summary += f" (revision {feature.revision_count})"
        if issues:
            summary += "\nIssues:\n" + "\n".join(f"- {i}" for i in issues)
        return PacketOutput(
            summary=summary,
            artifacts=[
                Artifact(type="notes", title=f"{step.label} notes", content="\n".join(notes))
            ],
        )
