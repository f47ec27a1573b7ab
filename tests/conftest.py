import asyncio
from pathlib import Path

import pytest

from procession.config import EngineSettings
from procession.contracts import WorkflowPattern
from procession.patterns import load_pattern_file

FIXTURES = Path(__file__).parent / "fixtures"


@pytest.fixture
def patterns_dir() -> Path:
    return FIXTURES / "patterns"


@pytest.fixture
def review_pattern(patterns_dir) -> WorkflowPattern:
    return load_pattern_file(patterns_dir / "document_review.yaml")


@pytest.fixture
def expense_pattern(patterns_dir) -> WorkflowPattern:
    return load_pattern_file(patterns_dir / "expense_claim.yaml")


@pytest.fixture
def fast_settings() -> EngineSettings:
    """Timings that let self-advancing steps and SLA timers fire within a test."""
    return EngineSettings(
        automated_settle_seconds=0.01,
        integration_settle_seconds=0.01,
        seconds_per_hour=0.05,
        integration_timeout_seconds=1.0,
    )


@pytest.fixture
def wait_until():
    async def _wait(predicate, timeout: float = 2.0, interval: float = 0.01):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return result
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(interval)

    return _wait
