"""Shared pytest fixtures for Lanekeeper tests.

Every test gets its own project root under tmp_path and a controllable clock.
structlog is reset after each test so a CLI test that pointed logging at a
captured stream cannot leak that stream into later tests.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import structlog

from src.config.project import ProjectContext


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 2, 8, 10, 15, 0, tzinfo=UTC))


@pytest.fixture
def ctx(tmp_path: Path) -> ProjectContext:
    return ProjectContext.at(tmp_path / "project")


@pytest.fixture
def write_json():
    """Write a JSON artifact, creating parent directories."""

    def _write(path: Path, payload: Any) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        return path

    return _write
