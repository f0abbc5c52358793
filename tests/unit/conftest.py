"""Unit test fixtures - auto-clear caches between tests."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

import pytest

from task_market_service.config import clear_settings_cache
from task_market_service.core.state import reset_app_state
from task_market_service.services.pricing import PricingCalculator
from task_market_service.services.task_lifecycle import TaskLifecycle
from task_market_service.services.task_store import TaskStore
from tests.helpers import FixedClock, RecordingNotifier

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _clear_caches():
    """Clear settings cache and app state between tests."""
    clear_settings_cache()
    reset_app_state()
    yield
    clear_settings_cache()
    reset_app_state()


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    """Path of a fresh SQLite database file."""
    return str(tmp_path / "task-market.db")


@pytest.fixture
def store(db_path: str) -> Iterator[TaskStore]:
    """A TaskStore on a fresh database."""
    task_store = TaskStore(db_path=db_path)
    yield task_store
    task_store.close()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def pricing() -> PricingCalculator:
    return PricingCalculator(Decimal("0.10"))


@pytest.fixture
def lifecycle(store: TaskStore, notifier: RecordingNotifier, clock: FixedClock) -> TaskLifecycle:
    """TaskLifecycle over the test store with a recording notifier."""
    return TaskLifecycle(store=store, notifier=notifier, clock=clock)
