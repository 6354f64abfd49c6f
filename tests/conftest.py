"""Shared fixtures for compose engine tests."""

from __future__ import annotations

import os

os.environ.setdefault("COMPOSE_ALLOWED_ORIGINS", "http://localhost:3000")
os.environ["COMPOSE_STORAGE_BACKEND"] = "memory"
os.environ["COMPOSE_TASK_SERVICE_PROVIDER"] = "inline"
os.environ.setdefault("COMPOSE_TASK_SECRET", "test-task-secret")

from dataclasses import replace  # noqa: E402
from typing import Any  # noqa: E402

import pytest  # noqa: E402

from compose_engine.config import Settings, get_settings  # noqa: E402
from compose_engine.services.tasks.policy import RetryPolicy  # noqa: E402
from compose_engine.storage.factory import Repositories  # noqa: E402
from compose_engine.storage.memory_store import InMemoryComposeStore  # noqa: E402
from compose_engine.storage.sources_repo import SourceRecord  # noqa: E402

PROJECT_ID = "proj-1"


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


class RecordingSleep:
  """Stand-in for asyncio.sleep that records requested delays without waiting."""

  def __init__(self) -> None:
    self.delays: list[float] = []

  async def __call__(self, seconds: float) -> None:
    self.delays.append(seconds)


class RecordingEnqueuer:
  """Task enqueuer that only records what it was asked to deliver."""

  def __init__(self, *, fail: bool = False) -> None:
    self.fail = fail
    self.calls: list[tuple[str, dict[str, Any], RetryPolicy]] = []

  async def enqueue(self, job_type: str, payload: dict[str, Any], policy: RetryPolicy) -> str:
    if self.fail:
      raise RuntimeError("broker unavailable")
    self.calls.append((job_type, payload, policy))
    return f"task-{len(self.calls)}"


@pytest.fixture
def settings() -> Settings:
  return replace(
    get_settings(),
    storage_backend="memory",
    task_service_provider="inline",
    task_secret="test-task-secret",
    section_max_attempts=3,
    section_retry_delay_ms=0,
    queue_max_attempts=2,
    queue_backoff_delay_ms=0,
    optional_failures_fail_job=False,
    conflict_retry_limit=5,
    worker_id="worker-test",
  )


def verified_source(source_id: str, *, project_id: str = PROJECT_ID, title: str | None = None) -> SourceRecord:
  return SourceRecord(
    id=source_id,
    project_id=project_id,
    citation_key=f"key-{source_id}",
    metadata={"title": title or f"Study {source_id}", "journal": "Journal of Tests"},
    locators=[{"page": 1}],
    verified_by_human=True,
  )


@pytest.fixture
def store() -> InMemoryComposeStore:
  memory = InMemoryComposeStore()
  for source_id in ("src-1", "src-2", "src-3", "src-4"):
    memory.add_source(verified_source(source_id))
  memory.add_source(SourceRecord(id="src-unverified", project_id=PROJECT_ID, citation_key="key-unverified", locators=[{"page": 2}], verified_by_human=False))
  return memory


@pytest.fixture
def repositories(store: InMemoryComposeStore) -> Repositories:
  return Repositories(jobs=store, drafts=store, sources=store)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
  return RecordingSleep()


@pytest.fixture
def recording_enqueuer() -> RecordingEnqueuer:
  return RecordingEnqueuer()


@pytest.fixture
def failing_enqueuer() -> RecordingEnqueuer:
  return RecordingEnqueuer(fail=True)


@pytest.fixture
def make_source():
  return verified_source


@pytest.fixture
def make_request():
  """Build a ComposeRequest from (section_type, source_ids) pairs or section dicts."""
  from compose_engine.jobs.models import decode_request

  def _build(*sections: Any, project_id: str = PROJECT_ID, **fields: Any):
    built = []
    for section in sections:
      if isinstance(section, dict):
        built.append(section)
      else:
        section_type, source_ids = section
        built.append({"section_type": section_type, "source_ids": list(source_ids)})
    return decode_request({"project_id": project_id, "sections": built, **fields})

  return _build
