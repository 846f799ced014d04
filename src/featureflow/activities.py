"""Scripted activity events written to the feed while a step runs."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final

from featureflow.models import Feature


@dataclass(frozen=True)
class ActivityTemplate:
    event_type: str
    content: str


T = ActivityTemplate

STEP_ACTIVITIES: Final[dict[str, tuple[ActivityTemplate, ...]]] = {
    "intake": (
        T("thinking", "Classifying feature complexity..."),
        T("decision", "Complexity: {complexity}"),
        T("handoff", "Intake complete. Handoff packet prepared for {next_agent}."),
    ),
    "spec": (
        T("thinking", "Analyzing requirements and business context..."),
        T("thinking", "Drafting technical specification..."),
        T("decision", "Estimated effort: {effort} hours."),
        T("gate", "Spec complete. Awaiting human approval."),
    ),
    "design": (
        T("thinking", "Creating component hierarchy and data flow..."),
        T("file_create", "Drafting `{component_name}` structure..."),
        T("handoff", "Design complete. Handoff to {next_agent}."),
    ),
    "build": (
        T("thinking", "Setting up component scaffolding..."),
        T("file_create", "Creating `{component_path}`..."),
        T("command", "Running typecheck..."),
        T("handoff", "Build complete. Handoff to {next_agent}."),
    ),
    "qa": (
        T("thinking", "Running automated test suite..."),
        T("command", "Running lint..."),
    ),
    "ship": (
        T("command", "Running `git checkout -b feat/{feature_slug}`..."),
        T("command", "Running `git push origin feat/{feature_slug}`..."),
        T("gate", "Ready for final review. Awaiting approval to merge PR."),
    ),
}

_EFFORT: Final[dict[str, str]] = {"S": "2-4", "M": "4-8", "L": "8-16", "XL": "16+"}


def complexity(title: str) -> str:
    length = len(title)
    if length < 30:
        return "S"
    if length < 60:
        return "M"
    if length < 90:
        return "L"
    return "XL"


def component_name(title: str) -> str:
    words = [w for w in title.split(" ") if w]
    joined = "".join(w[:1].upper() + w[1:].lower() for w in words)
    return re.sub(r"[^a-zA-Z0-9]", "", joined)


def slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:50]


def render(template: ActivityTemplate, feature: Feature, next_agent: str = "next agent") -> str:
    size = complexity(feature.title)
    return template.content.format(
        complexity=size,
        effort=_EFFORT[size],
        component_name=f"{component_name(feature.title)}.tsx",
        component_path=f"src/components/features/{component_name(feature.title)}.tsx",
        feature_slug=slugify(feature.title),
        next_agent=next_agent,
    )


def title_hash(text: str) -> int:
    """Deterministic 32-bit string hash (Java-style), always non-negative."""
    value = 0
    for ch in text:
        value = ((value << 5) - value + ord(ch)) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return abs(value)


def default_qa_reviewer(feature: Feature) -> list[str]:
    """Flag roughly one feature in five, keyed on the title so reruns agree."""
    if title_hash(feature.title) % 100 < 20:
        return [
            "Missing error state for network failures",
            "Button hover states not aligned with design system",
        ]
    return []
