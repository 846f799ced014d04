"""Terminal rendering of a feature's derived step view."""

from __future__ import annotations

from collections.abc import Sequence

from rich.markup import escape
from rich.table import Table

from featureflow.diagnostics import Diagnostics
from featureflow.models import Feature, StepState
from featureflow.steps import STEP_CONFIGS, StepConfig, agent_chain_summary, format_elapsed

_STEP_STYLES = {
    "pending": "dim",
    "running": "bold yellow",
    "completed": "green",
    "error": "bold red",
}


def render_steps(
    feature: Feature,
    steps: Sequence[StepState],
    diagnostics: Diagnostics | None = None,
    configs: Sequence[StepConfig] = STEP_CONFIGS,
) -> Table:
    table = Table(title=f"{escape(feature.title)} ({feature.status.value})")
    table.add_column("#", style="cyan", justify="right")
    table.add_column("Step")
    table.add_column("Agent", style="magenta")
    table.add_column("Status")
    table.add_column("Elapsed", justify="right")
    table.add_column("Revisions", justify="right", style="dim")

    for step in steps:
        style = _STEP_STYLES.get(step.step_status, "")
        table.add_row(
            str(step.index),
            step.label,
            step.agent,
            f"[{style}]{step.step_status}[/]",
            format_elapsed(step.elapsed_ms),
            str(step.revision_count) if step.revision_count else "-",
        )

    caption = [agent_chain_summary(steps, configs)]
    if feature.needs_attention:
        caption.append(f"needs attention: {feature.attention_type or 'yes'}")
    if diagnostics is not None:
        if diagnostics.stalled:
            caption.append("[yellow]stalled[/]")
        if diagnostics.escalation_required:
            caption.append("[red]escalation required[/]")
    table.caption = " | ".join(caption)
    return table
