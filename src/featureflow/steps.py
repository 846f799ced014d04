"""Step derivation: map a feature's pipeline log onto the six canonical steps.

The step view is never stored. It is rebuilt on every read from
``pipeline_log``, ``current_agent`` and ``status`` so it cannot drift from the
log. The clock is passed in as ``now_ms``; nothing here reads wall time.

Rules, per step:

- completed: the step's agent logged APPROVED, COMPLETE or SHIP, or the
  current agent belongs to a later step. ``intake`` completes as soon as any
  entry exists; ``ship`` completes only in ``done`` or ``pr_submitted``.
- running: the step is the current step and the status still allows
  automated work.
- error: the step's latest entry is a REJECT, nothing completed after it, and
  the feature is not cancelled.
- pending: everything else.

A completed step is never downgraded.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from datetime import datetime

from featureflow.defaults import AGENT_DEFAULTS
from featureflow.models import (
    COMPLETION_VERDICTS,
    Feature,
    FeatureStatus,
    LogEntry,
    StepId,
    StepState,
    StepStatus,
    Verdict,
)
from featureflow.state_machine import is_running_terminal


@dataclass(frozen=True)
class StepConfig:
    id: StepId
    index: int
    label: str
    agent: str
    human_gate: bool
    status: FeatureStatus
    verb: str


STEP_CONFIGS: tuple[StepConfig, ...] = (
    StepConfig("intake", 1, "Intake", AGENT_DEFAULTS["intake"], False,
               FeatureStatus.PLANNING, "intake"),
    StepConfig("spec", 2, "Spec", AGENT_DEFAULTS["spec"], True,
               FeatureStatus.DESIGN_REVIEW, "specs"),
    StepConfig("design", 3, "Design", AGENT_DEFAULTS["design"], False,
               FeatureStatus.DESIGN_REVIEW, "designs"),
    StepConfig("build", 4, "Build", AGENT_DEFAULTS["build"], False,
               FeatureStatus.IN_PROGRESS, "builds"),
    StepConfig("qa", 5, "QA", AGENT_DEFAULTS["qa"], False,
               FeatureStatus.QA_REVIEW, "tests"),
    StepConfig("ship", 6, "Ship", AGENT_DEFAULTS["ship"], True,
               FeatureStatus.REVIEW, "ships"),
)

# Statuses past the last automated step; an agent shared with ``ship`` is
# attributed to ``ship`` while the feature sits in one of these.
_LATE_STAGES = frozenset({"approved", "pr_submitted", "done"})

_SHIP_COMPLETE_STATUSES = frozenset({FeatureStatus.DONE, FeatureStatus.PR_SUBMITTED})


def build_step_configs(agents: Mapping[str, str]) -> tuple[StepConfig, ...]:
    """Return the step table with agents overridden from config."""
    return tuple(
        replace(config, agent=agents.get(config.id, config.agent))
        for config in STEP_CONFIGS
    )


def get_step(step_id: str, steps: Sequence[StepConfig] = STEP_CONFIGS) -> StepConfig | None:
    return next((s for s in steps if s.id == step_id), None)


def next_step(step_id: str, steps: Sequence[StepConfig] = STEP_CONFIGS) -> StepConfig | None:
    """Return the step after *step_id*, or None if it is the last one."""
    ids = [s.id for s in steps]
    try:
        idx = ids.index(step_id)  # type: ignore[arg-type]
    except ValueError:
        return None
    if idx + 1 >= len(steps):
        return None
    return steps[idx + 1]


def step_for_entry(entry: LogEntry, steps: Sequence[StepConfig] = STEP_CONFIGS) -> StepConfig | None:
    """Attribute a log entry to the step its agent owns.

    When several steps share the agent, the entry's stage picks one: a step
    id or step status matches directly, late statuses go to the last owner,
    anything else to the first.
    """
    owners = [s for s in steps if s.agent == entry.agent]
    if not owners:
        return None
    if len(owners) == 1:
        return owners[0]
    for config in owners:
        if entry.stage in (config.id, config.status.value):
            return config
    if entry.stage in _LATE_STAGES:
        return owners[-1]
    return owners[0]


def current_step(feature: Feature, steps: Sequence[StepConfig] = STEP_CONFIGS) -> StepConfig | None:
    """Resolve the step the current agent is working on, if any."""
    if feature.current_agent is None:
        return None
    owners = [s for s in steps if s.agent == feature.current_agent]
    if not owners:
        return None
    if len(owners) == 1:
        return owners[0]
    for config in owners:
        if config.status == feature.status:
            return config
    if feature.status.value in _LATE_STAGES:
        return owners[-1]
    return owners[0]


def current_step_id(feature: Feature, steps: Sequence[StepConfig] = STEP_CONFIGS) -> StepId | None:
    config = current_step(feature, steps)
    return config.id if config else None


def _to_ms(ts: datetime) -> int:
    return int(ts.timestamp() * 1000)


def derive_steps(
    feature: Feature,
    now_ms: int,
    steps: Sequence[StepConfig] = STEP_CONFIGS,
) -> list[StepState]:
    """Derive the per-step view for *feature*. Pure; *now_ms* is the clock."""
    log = feature.pipeline_log
    positioned: dict[str, list[tuple[int, LogEntry]]] = {s.id: [] for s in steps}
    for pos, entry in enumerate(log):
        owner = step_for_entry(entry, steps)
        if owner is not None:
            positioned[owner.id].append((pos, entry))

    current = current_step(feature, steps)
    current_pos = steps.index(current) if current is not None else -1
    automated_work_possible = not is_running_terminal(feature.status)

    return [
        _derive_one(
            config,
            pos,
            positioned[config.id],
            feature,
            current_pos,
            automated_work_possible,
            now_ms,
        )
        for pos, config in enumerate(steps)
    ]


def _derive_one(
    config: StepConfig,
    pos: int,
    positioned: list[tuple[int, LogEntry]],
    feature: Feature,
    current_pos: int,
    automated_work_possible: bool,
    now_ms: int,
) -> StepState:
    log = feature.pipeline_log
    entries = [entry for _, entry in positioned]
    completion = next((e for e in entries if e.verdict in COMPLETION_VERDICTS), None)
    is_current = current_pos == pos

    status: StepStatus = "pending"
    if config.id == "intake":
        if log:
            status = "completed"
    elif config.id == "ship":
        if feature.status in _SHIP_COMPLETE_STATUSES:
            status = "completed"
    elif completion is not None or current_pos > pos:
        status = "completed"

    if status == "pending" and is_current and automated_work_possible:
        status = "running"

    if status != "completed" and positioned:
        last_pos, last_entry = positioned[-1]
        if (
            last_entry.verdict == Verdict.REJECT
            and feature.status != FeatureStatus.CANCELLED
            and not any(e.verdict in COMPLETION_VERDICTS for e in log[last_pos + 1:])
        ):
            status = "error"

    started_at, completed_at = _step_window(config, status, entries, completion, log)

    elapsed_ms: int | None = None
    if started_at is not None:
        if status == "completed" and completed_at is not None:
            elapsed_ms = max(0, _to_ms(completed_at) - _to_ms(started_at))
        elif status == "running":
            elapsed_ms = max(0, now_ms - _to_ms(started_at))

    return StepState(
        id=config.id,
        index=config.index,
        label=config.label,
        agent=config.agent,
        step_status=status,
        started_at=started_at,
        completed_at=completed_at,
        elapsed_ms=elapsed_ms,
        revision_count=sum(1 for e in entries if e.verdict == Verdict.REVISE),
        log_entries=entries,
    )


def _step_window(
    config: StepConfig,
    status: StepStatus,
    entries: list[LogEntry],
    completion: LogEntry | None,
    log: list[LogEntry],
) -> tuple[datetime | None, datetime | None]:
    started_at = entries[0].timestamp if entries else None
    if config.id == "intake" and started_at is None and log:
        started_at = log[0].timestamp

    if status != "completed":
        return started_at, None
    if completion is not None:
        return started_at, completion.timestamp
    if entries:
        return started_at, entries[-1].timestamp
    return started_at, started_at


def format_elapsed(ms: int | None) -> str:
    """Format elapsed milliseconds, e.g. "45s", "2m", "1h 23m", "2d 3h"."""
    if ms is None:
        return "—"

    seconds = ms // 1000
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24

    if days > 0:
        rem = hours % 24
        return f"{days}d {rem}h" if rem else f"{days}d"
    if hours > 0:
        rem = minutes % 60
        return f"{hours}h {rem}m" if rem else f"{hours}h"
    if minutes > 0:
        return f"{minutes}m"
    return f"{seconds}s"


def agent_chain_summary(
    steps: Sequence[StepState],
    configs: Sequence[StepConfig] = STEP_CONFIGS,
) -> str:
    """One-line chain of the agents that have touched the feature."""
    verbs = {c.id: c.verb for c in configs}
    active = [s for s in steps if s.step_status != "pending"]
    if not active:
        return "Waiting to start"
    return " → ".join(f"{s.agent} {verbs.get(s.id, s.id)}" for s in active)
