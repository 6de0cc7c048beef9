from __future__ import annotations

import os

# Settings and the engine are built at import time, so the test environment goes first.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["LLM_PROVIDER"] = "fake"
os.environ["JOB_EXECUTION_MODE"] = "inline"
os.environ["REALTIME_MODE"] = "memory"
os.environ["EMBEDDING_CACHE_ENABLED"] = "false"
os.environ["REASONING_ENABLED"] = "false"
os.environ["LLM_RETRY_BACKOFF_MS"] = "1"

import pytest

from helpdesk.core.config import get_settings
from helpdesk.domain.models import Base
from helpdesk.persistence.db import SessionLocal, engine
from helpdesk.providers.llm.factory import reset_llm_providers, set_llm_provider
from helpdesk.providers.llm.fake import FakeLLMProvider
from helpdesk.services import queue as queue_module
from helpdesk.services import realtime as realtime_module
from helpdesk.services.costs import metering
from helpdesk.services.queue import RecordingJobQueue, get_job_queue
from helpdesk.services.realtime import RecordingPublisher, get_publisher
from helpdesk.services.telemetry import reset_telemetry


class WhitespaceEncoding:
    # One token per whitespace-separated word; avoids downloading BPE ranks in tests.
    def encode(self, text: str, disallowed_special=()) -> list[str]:
        return text.split()


@pytest.fixture(autouse=True)
async def database() -> None:
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def isolate_globals(monkeypatch) -> None:
    monkeypatch.setattr(metering, "_encoding", lambda: WhitespaceEncoding())
    monkeypatch.setattr(queue_module, "_queue", None)
    monkeypatch.setattr(realtime_module, "_publisher", None)
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_llm_providers()


@pytest.fixture
def llm() -> FakeLLMProvider:
    provider = FakeLLMProvider()
    set_llm_provider(provider)
    return provider


@pytest.fixture
async def session():
    async with SessionLocal() as db_session:
        yield db_session


@pytest.fixture
def jobs() -> RecordingJobQueue:
    job_queue = get_job_queue()
    assert isinstance(job_queue, RecordingJobQueue)
    return job_queue


@pytest.fixture
def published() -> RecordingPublisher:
    publisher = get_publisher()
    assert isinstance(publisher, RecordingPublisher)
    return publisher
