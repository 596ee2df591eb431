"""Shared fixtures."""

from pathlib import Path

import pytest

from workplan.plan_store import WorkPlanStore
from workplan.tests.scripted import SAMPLE_PLAN, RecordingFixer, ScriptedWorker


@pytest.fixture
def store(tmp_path: Path) -> WorkPlanStore:
    return WorkPlanStore(tmp_path / "state")


@pytest.fixture
def worker() -> ScriptedWorker:
    return ScriptedWorker()


@pytest.fixture
def fixer() -> RecordingFixer:
    return RecordingFixer()


@pytest.fixture
def plan_file(tmp_path: Path) -> Path:
    path = tmp_path / "auth_plan.md"
    path.write_text(SAMPLE_PLAN)
    return path
