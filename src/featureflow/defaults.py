"""Compiled-in default configuration values for featureflow.

This module is the single source of truth for all default settings.
Other modules should import from here rather than duplicating values.
"""

from __future__ import annotations

from typing import Final

# Floor for the pause between two automated steps.
MIN_STEP_DELAY_FLOOR_MS: Final[int] = 500

RUNNER_DEFAULTS: Final[dict[str, int]] = {
    "min_step_delay_ms": 500,
    "qa_max_revisions": 2,
    "claim_lease_seconds": 300,
}

DIAGNOSTICS_DEFAULTS: Final[dict[str, int]] = {
    "stall_threshold_seconds": 300,
    "escalation_revision_count": 2,
}

PACKET_DEFAULTS: Final[dict[str, int]] = {
    "max_summary_chars": 10_000,
}

AGENT_DEFAULTS: Final[dict[str, str]] = {
    "intake": "HBx",
    "spec": "IN1",
    "design": "IN5",
    "build": "IN2",
    "qa": "IN6",
    "ship": "HBx",
}

SERVER_DEFAULTS: Final[dict[str, int | str]] = {
    "host": "127.0.0.1",
    "port": 8600,
}

DATABASE_DEFAULTS: Final[dict[str, str]] = {
    "path": ".featureflow/state.db",
}


_BARE_KEY_CHARS = frozenset(
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"
)


def _quote_key(key: str) -> str:
    if key and all(c in _BARE_KEY_CHARS for c in key):
        return key
    return f'"{key}"'


def _format_toml_value(value: object) -> str:
    if isinstance(value, str):
        return f'"{value}"'
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    msg = f"Unsupported type: {type(value)}"
    raise TypeError(msg)


def _section_to_toml(name: str, data: dict[str, object]) -> str:
    lines = [f"[{name}]"]
    for key, value in data.items():
        lines.append(f"{_quote_key(key)} = {_format_toml_value(value)}")
    return "\n".join(lines)


def generate_toml() -> str:
    """Generate a TOML configuration string from compiled-in defaults."""
    sections = [
        _section_to_toml("runner", RUNNER_DEFAULTS),
        _section_to_toml("diagnostics", DIAGNOSTICS_DEFAULTS),
        _section_to_toml("packets", PACKET_DEFAULTS),
        _section_to_toml("agent", AGENT_DEFAULTS),
        _section_to_toml("server", SERVER_DEFAULTS),
        _section_to_toml("database", DATABASE_DEFAULTS),
    ]
    return "\n\n".join(sections) + "\n"
