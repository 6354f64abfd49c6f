"""Shared FastAPI dependencies wiring repositories, the worker and the enqueuer."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from fastapi import Request

from compose_engine.config import Settings, get_settings
from compose_engine.jobs.worker import ComposeWorker
from compose_engine.services.tasks.factory import get_task_enqueuer
from compose_engine.services.tasks.interface import TaskEnqueuer
from compose_engine.storage.factory import Repositories, build_repositories
from compose_engine.writing.producer import SectionProducer


@dataclass(frozen=True)
class ComposeServices:
  """Process-wide collaborators shared by every request."""

  settings: Settings
  repositories: Repositories
  worker: ComposeWorker
  enqueuer: TaskEnqueuer


def build_services(
  settings: Settings,
  *,
  repositories: Repositories | None = None,
  producer: SectionProducer | None = None,
  enqueuer: TaskEnqueuer | None = None,
  sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> ComposeServices:
  repositories = repositories or build_repositories(settings)
  worker = ComposeWorker(repositories=repositories, settings=settings, producer=producer, sleep=sleep)
  enqueuer = enqueuer or get_task_enqueuer(settings, worker.handle)
  return ComposeServices(settings=settings, repositories=repositories, worker=worker, enqueuer=enqueuer)


def get_services(request: Request) -> ComposeServices:
  """Return the app's services, building them on first use."""
  services = getattr(request.app.state, "services", None)
  if services is None:
    services = build_services(get_settings())
    request.app.state.services = services
  return services
