"""Worker entrypoint tying deliveries to the compose processor."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from compose_engine.config import Settings
from compose_engine.jobs.dispatch import JobProcessorRegistry, JobProcessResult, process_delivery
from compose_engine.jobs.models import COMPOSE_JOB_TYPE
from compose_engine.jobs.processor import ComposeJobProcessor
from compose_engine.services.tasks.policy import Delivery
from compose_engine.storage.factory import Repositories
from compose_engine.writing.producer import SectionProducer, TemplateSectionProducer


class ComposeWorker:
  """Coordinates execution of delivered compose jobs."""

  def __init__(self, *, repositories: Repositories, settings: Settings, producer: SectionProducer | None = None, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> None:
    self._repositories = repositories
    self._logger = logging.getLogger(__name__)
    self.processor = ComposeJobProcessor(jobs_repo=repositories.jobs, sources_repo=repositories.sources, producer=producer or TemplateSectionProducer(), settings=settings, sleep=sleep)
    self.registry = JobProcessorRegistry({COMPOSE_JOB_TYPE: self.processor})

  async def handle(self, delivery: Delivery) -> JobProcessResult:
    """Process one delivery; raises RedeliveryRequested when the broker should retry."""
    self._logger.info("Handling delivery for job %s (%s, attempt %d/%d)", delivery.job_id, delivery.job_type, delivery.attempt, delivery.max_attempts)
    return await process_delivery(delivery, self.registry, self._repositories.jobs)
