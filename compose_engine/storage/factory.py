"""Repository selection based on the configured storage backend."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from compose_engine.config import Settings
from compose_engine.storage.drafts_repo import DraftsRepository
from compose_engine.storage.jobs_repo import JobsRepository
from compose_engine.storage.memory_store import InMemoryComposeStore
from compose_engine.storage.sources_repo import SourcesRepository


@dataclass(frozen=True)
class Repositories:
  jobs: JobsRepository
  drafts: DraftsRepository
  sources: SourcesRepository


@lru_cache(maxsize=1)
def _memory_store() -> InMemoryComposeStore:
  return InMemoryComposeStore()


def build_repositories(settings: Settings) -> Repositories:
  """Return the repositories for the configured backend."""
  if settings.storage_backend == "memory":
    store = _memory_store()
    return Repositories(jobs=store, drafts=store, sources=store)

  # Imported lazily so the memory backend never needs a database driver.
  from compose_engine.storage.postgres_drafts_repo import PostgresDraftsRepository
  from compose_engine.storage.postgres_jobs_repo import PostgresJobsRepository
  from compose_engine.storage.postgres_sources_repo import PostgresSourcesRepository

  return Repositories(jobs=PostgresJobsRepository(), drafts=PostgresDraftsRepository(), sources=PostgresSourcesRepository())
