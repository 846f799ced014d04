from __future__ import annotations

from datetime import UTC, datetime

from rich.console import Console
from rich.table import Table

from featureflow.dashboard import render_steps
from featureflow.diagnostics import Diagnostics
from featureflow.models import Feature, FeatureStatus, LogEntry, Verdict
from featureflow.steps import derive_steps

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def _render(table: Table) -> str:
    console = Console(width=140, record=True, color_system=None)
    console.print(table)
    return console.export_text()


def test_one_row_per_step():
    feature = Feature(id="f", title="Saved searches", status=FeatureStatus.PLANNING)
    table = render_steps(feature, derive_steps(feature, 0))
    assert isinstance(table, Table)
    assert table.row_count == 6


def test_shows_status_chain_and_flags():
    feature = Feature(
        id="f",
        title="Saved searches",
        status=FeatureStatus.DESIGN_REVIEW,
        current_agent="IN1",
        needs_attention=True,
        attention_type="approve",
        pipeline_log=[
            LogEntry(timestamp=T0, agent="HBx", stage="intake", verdict=Verdict.COMPLETE)
        ],
    )
    now_ms = int(T0.timestamp() * 1000) + 90_000
    diagnostics = Diagnostics(stalled=True, escalation_required=False, last_activity_at=T0)
    table = render_steps(feature, derive_steps(feature, now_ms), diagnostics)

    assert table.title == "Saved searches (design_review)"
    assert table.caption.startswith("HBx intake → IN1 specs")
    assert "needs attention: approve" in table.caption
    assert "stalled" in table.caption
    assert "escalation required" not in table.caption
    assert "running" in _render(table)


def test_title_markup_is_escaped():
    feature = Feature(id="f", title="[urgent] Fix login", status=FeatureStatus.PLANNING)
    text = _render(render_steps(feature, derive_steps(feature, 0)))
    assert "[urgent] Fix login" in text
