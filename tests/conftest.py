"""Pytest configuration and fixtures."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from dnsha.observability.metrics import reset_ha_metrics

if TYPE_CHECKING:
    from collections.abc import Generator


class ManualClock:
    """Deterministic clock for loops that accept an injected clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture(autouse=True)
def _reset_metrics() -> Generator[None, None, None]:
    """Every test starts with a fresh metrics singleton."""
    reset_ha_metrics()
    yield
    reset_ha_metrics()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()
