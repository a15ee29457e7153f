from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator, Optional, Union

import pytest

from presence_monitor.db import open_database
from presence_monitor.errors import SourceFailure
from presence_monitor.models import Sample

T0 = datetime(2024, 5, 1, 12, 0, 0)


def at(seconds: float = 0.0) -> datetime:
    """Timestamp ``seconds`` after the fixed test origin."""
    return T0 + timedelta(seconds=seconds)


class StubSource:
    """Returns queued samples (or raises queued failures), repeating the last one."""

    def __init__(self, *results: Union[Sample, SourceFailure]) -> None:
        self.results = list(results) or [Sample(online=False)]
        self.calls = 0

    def fetch(self, identity: str) -> Sample:
        self.calls += 1
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, SourceFailure):
            raise result
        return result


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or T0

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "presence.sqlite3"


@pytest.fixture
def conn(db_path: Path) -> Iterator:
    connection = open_database(db_path, check_same_thread=False)
    try:
        yield connection
    finally:
        connection.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
