from __future__ import annotations

import pytest

from integrationhub.core.config import get_settings
from integrationhub.services.queues import get_job_rate_limiter
from integrationhub.services.telemetry import reset_telemetry
from integrationhub.tests.utils.fakes import FakeClock, FakeRedis, InMemoryPipelineStore


@pytest.fixture(autouse=True)
def _isolate_process_state() -> None:
    # Settings, counters and the job bucket are process-wide; reset them per test.
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    get_job_rate_limiter.cache_clear()
    reset_telemetry()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def store() -> InMemoryPipelineStore:
    return InMemoryPipelineStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
