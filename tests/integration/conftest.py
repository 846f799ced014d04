from __future__ import annotations

from collections.abc import Iterator

import pytest
from flask.testing import FlaskClient

from featureflow.config import FeatureflowConfig, RunnerConfig
from featureflow.models import Feature
from featureflow.runner import PipelineRunner
from featureflow.server import create_app
from featureflow.state_db import StateDB


class QueuedReviewer:
    """QA reviewer that reports queued issue lists, then passes."""

    def __init__(self) -> None:
        self.queue: list[list[str]] = []
        self.reviewed: list[str] = []

    def __call__(self, feature: Feature) -> list[str]:
        self.reviewed.append(feature.id)
        return self.queue.pop(0) if self.queue else []


@pytest.fixture()
def reviewer() -> QueuedReviewer:
    return QueuedReviewer()


@pytest.fixture()
def config() -> FeatureflowConfig:
    return FeatureflowConfig(runner=RunnerConfig(min_step_delay_ms=500, qa_max_revisions=2))


@pytest.fixture()
def api(
    db: StateDB, clock, config: FeatureflowConfig, reviewer: QueuedReviewer
) -> Iterator[FlaskClient]:
    runner = PipelineRunner(db, config, clock=clock, sleep=lambda s: None, reviewer=reviewer)
    app = create_app(db, config, runner=runner, clock=clock)
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield client
