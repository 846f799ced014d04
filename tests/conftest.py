from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from featureflow.state_db import StateDB

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class TickingClock:
    """Returns T0, then moves forward by *step* on every call."""

    def __init__(self, start: datetime = T0, step: timedelta = timedelta(seconds=1)) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now += self.step
        return current

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture()
def db(tmp_path: Path) -> Iterator[StateDB]:
    sdb = StateDB(tmp_path / "state.db")
    yield sdb
    sdb.close()


@pytest.fixture()
def clock() -> TickingClock:
    return TickingClock()
