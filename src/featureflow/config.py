from __future__ import annotations

import logging
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

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

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "featureflow.toml"
CONFIG_DIR = ".featureflow"


@dataclass
class RunnerConfig:
    min_step_delay_ms: int
    qa_max_revisions: int
    claim_lease_seconds: int = RUNNER_DEFAULTS["claim_lease_seconds"]


@dataclass
class DiagnosticsConfig:
    stall_threshold_seconds: int
    escalation_revision_count: int


@dataclass
class PacketConfig:
    max_summary_chars: int


@dataclass
class ServerConfig:
    host: str
    port: int


@dataclass
class FeatureflowConfig:
    runner: RunnerConfig = field(
        default_factory=lambda: RunnerConfig(**RUNNER_DEFAULTS),
    )
    diagnostics: DiagnosticsConfig = field(
        default_factory=lambda: DiagnosticsConfig(**DIAGNOSTICS_DEFAULTS),
    )
    packets: PacketConfig = field(
        default_factory=lambda: PacketConfig(**PACKET_DEFAULTS),
    )
    agents: dict[str, str] = field(default_factory=lambda: dict(AGENT_DEFAULTS))
    server: ServerConfig = field(
        default_factory=lambda: ServerConfig(**SERVER_DEFAULTS),  # type: ignore[arg-type]
    )
    database_path: str = DATABASE_DEFAULTS["path"]

    @property
    def min_step_delay_seconds(self) -> float:
        return self.runner.min_step_delay_ms / 1000


def _deep_merge(base: dict, overrides: dict) -> dict:
    merged = dict(base)
    for key, value in overrides.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _build_defaults() -> dict:
    return {
        "runner": dict(RUNNER_DEFAULTS),
        "diagnostics": dict(DIAGNOSTICS_DEFAULTS),
        "packets": dict(PACKET_DEFAULTS),
        "agent": dict(AGENT_DEFAULTS),
        "server": dict(SERVER_DEFAULTS),
        "database": dict(DATABASE_DEFAULTS),
    }


def _runner_from_dict(data: dict) -> RunnerConfig:
    delay = int(data["min_step_delay_ms"])
    if delay < MIN_STEP_DELAY_FLOOR_MS:
        logger.warning(
            "runner.min_step_delay_ms=%d is below the %d ms floor; using the floor",
            delay,
            MIN_STEP_DELAY_FLOOR_MS,
        )
        delay = MIN_STEP_DELAY_FLOOR_MS
    return RunnerConfig(
        min_step_delay_ms=delay,
        qa_max_revisions=int(data["qa_max_revisions"]),
        claim_lease_seconds=int(
            data.get("claim_lease_seconds", RUNNER_DEFAULTS["claim_lease_seconds"])
        ),
    )


def _config_from_dict(data: dict) -> FeatureflowConfig:
    return FeatureflowConfig(
        runner=_runner_from_dict(data.get("runner", RUNNER_DEFAULTS)),
        diagnostics=DiagnosticsConfig(**data.get("diagnostics", DIAGNOSTICS_DEFAULTS)),
        packets=PacketConfig(**data.get("packets", PACKET_DEFAULTS)),
        agents=data.get("agent", dict(AGENT_DEFAULTS)),
        server=ServerConfig(**data.get("server", SERVER_DEFAULTS)),
        database_path=data.get("database", DATABASE_DEFAULTS)["path"],
    )


def load_config(project_root: Path) -> FeatureflowConfig:
    """Load config: source defaults merged with .featureflow/featureflow.toml overrides."""
    defaults = _build_defaults()
    toml_path = project_root / CONFIG_DIR / CONFIG_FILENAME

    if not toml_path.is_file():
        return _config_from_dict(defaults)

    try:
        raw = toml_path.read_bytes()
        overrides = tomllib.loads(raw.decode())
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        print(f"Warning: failed to parse {toml_path}: {exc}", file=sys.stderr)
        return _config_from_dict(defaults)

    merged = _deep_merge(defaults, overrides)
    return _config_from_dict(merged)


def init_config(project_root: Path) -> Path:
    """Write .featureflow/featureflow.toml from source defaults. Backup existing."""
    config_dir = project_root / CONFIG_DIR
    config_dir.mkdir(parents=True, exist_ok=True)

    config_path = config_dir / CONFIG_FILENAME
    if config_path.exists():
        backup_path = config_path.with_suffix(".toml.bak")
        backup_path.write_text(config_path.read_text())

    config_path.write_text(generate_toml())
    return config_path


def resolve_database_path(project_root: Path, config: FeatureflowConfig) -> Path:
    path = Path(config.database_path)
    if path.is_absolute():
        return path
    return project_root / path
