from __future__ import annotations

import tomllib
from typing import ClassVar

import pytest

from featureflow.defaults import (
    AGENT_DEFAULTS,
    DATABASE_DEFAULTS,
    DIAGNOSTICS_DEFAULTS,
    MIN_STEP_DELAY_FLOOR_MS,
    PACKET_DEFAULTS,
    RUNNER_DEFAULTS,
    SERVER_DEFAULTS,
    generate_toml,
)

# ---------------------------------------------------------------------------
# Structure & type checks
# ---------------------------------------------------------------------------


class TestRunnerDefaults:
    expected_keys: ClassVar[set[str]] = {
        "min_step_delay_ms",
        "qa_max_revisions",
        "claim_lease_seconds",
    }

    def test_keys(self):
        assert set(RUNNER_DEFAULTS) == self.expected_keys

    def test_delay_respects_floor(self):
        assert RUNNER_DEFAULTS["min_step_delay_ms"] >= MIN_STEP_DELAY_FLOOR_MS


class TestDiagnosticsDefaults:
    expected_keys: ClassVar[set[str]] = {
        "stall_threshold_seconds",
        "escalation_revision_count",
    }

    def test_keys(self):
        assert set(DIAGNOSTICS_DEFAULTS) == self.expected_keys

    def test_all_values_are_positive_ints(self):
        for v in DIAGNOSTICS_DEFAULTS.values():
            assert isinstance(v, int)
            assert v > 0


class TestAgentDefaults:
    def test_one_agent_per_step(self):
        assert list(AGENT_DEFAULTS) == ["intake", "spec", "design", "build", "qa", "ship"]

    def test_intake_and_ship_share_orchestrator(self):
        assert AGENT_DEFAULTS["intake"] == AGENT_DEFAULTS["ship"]


class TestOtherDefaults:
    def test_packet_summary_limit(self):
        assert PACKET_DEFAULTS["max_summary_chars"] == 10_000

    @pytest.mark.parametrize("key", ["host", "port"])
    def test_server_keys(self, key: str):
        assert key in SERVER_DEFAULTS

    def test_database_path_is_relative(self):
        assert not DATABASE_DEFAULTS["path"].startswith("/")


# ---------------------------------------------------------------------------
# generate_toml()
# ---------------------------------------------------------------------------


class TestGenerateToml:
    def test_parseable(self):
        parsed = tomllib.loads(generate_toml())
        assert isinstance(parsed, dict)

    def test_contains_all_sections(self):
        parsed = tomllib.loads(generate_toml())
        for section in ("runner", "diagnostics", "packets", "agent", "server", "database"):
            assert section in parsed

    @pytest.mark.parametrize(
        ("section", "defaults"),
        [
            ("runner", RUNNER_DEFAULTS),
            ("diagnostics", DIAGNOSTICS_DEFAULTS),
            ("packets", PACKET_DEFAULTS),
            ("agent", AGENT_DEFAULTS),
            ("server", SERVER_DEFAULTS),
            ("database", DATABASE_DEFAULTS),
        ],
    )
    def test_roundtrip(self, section: str, defaults: dict):
        parsed = tomllib.loads(generate_toml())
        assert parsed[section] == dict(defaults)
