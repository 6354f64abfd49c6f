"""Dependency-injected delivery dispatch with redelivery decisions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from compose_engine.jobs.errors import ConflictError, NotFoundError, RedeliveryRequested, ValidationError
from compose_engine.jobs.processor import ComposeJobResult
from compose_engine.jobs.progress import ComposeProgressTracker
from compose_engine.services.tasks.policy import Delivery
from compose_engine.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)


class JobProcessorHandler(Protocol):
  """Processor contract for a concrete job type."""

  async def process(self, delivery: Delivery) -> ComposeJobResult:
    """Process one delivery of a job."""


@dataclass(frozen=True)
class JobProcessResult:
  """Result wrapper returned by the central dispatch function."""

  job_id: str
  result: ComposeJobResult | None
  dropped: bool = False
  reason: str | None = None


class JobProcessorRegistry:
  """Registry mapping job types to processor handlers."""

  def __init__(self, handlers: dict[str, JobProcessorHandler]) -> None:
    self._handlers = handlers

  def resolve(self, job_type: str) -> JobProcessorHandler:
    handler = self._handlers.get(job_type)
    if handler is None:
      raise ValidationError(f"Unsupported job type: {job_type}")
    return handler


async def process_delivery(delivery: Delivery, registry: JobProcessorRegistry, jobs_repo: JobsRepository) -> JobProcessResult:
  """
  Route a delivery to its handler and translate failures for the broker.

  Validation and not-found errors will fail the same way on every attempt, so
  the delivery is dropped. Anything else (lost races past the retry limit,
  database outages) asks the broker to redeliver while attempts remain; on the
  final attempt the job is marked failed so it never stays active forever.
  """
  try:
    handler = registry.resolve(delivery.job_type)
    result = await handler.process(delivery)
  except (ValidationError, NotFoundError) as exc:
    logger.error("Dropping delivery for job %s (attempt %d/%d): %s", delivery.job_id, delivery.attempt, delivery.max_attempts, exc)
    await mark_job_failed(jobs_repo, delivery.job_id, f"{type(exc).__name__}: {exc}")
    return JobProcessResult(job_id=delivery.job_id, result=None, dropped=True, reason=str(exc))
  except Exception as exc:
    if delivery.is_final_attempt:
      logger.error("Delivery for job %s failed on final attempt %d/%d", delivery.job_id, delivery.attempt, delivery.max_attempts, exc_info=True)
      await mark_job_failed(jobs_repo, delivery.job_id, f"{type(exc).__name__}: {exc}")
      return JobProcessResult(job_id=delivery.job_id, result=None, dropped=True, reason=str(exc))
    logger.warning("Delivery for job %s failed on attempt %d/%d; requesting redelivery: %s", delivery.job_id, delivery.attempt, delivery.max_attempts, exc)
    raise RedeliveryRequested(f"Job {delivery.job_id} needs redelivery: {exc}") from exc

  return JobProcessResult(job_id=delivery.job_id, result=result)


async def mark_job_failed(jobs_repo: JobsRepository, job_id: str, error: str) -> None:
  """Fail an active job, leaving terminal or missing jobs alone."""
  for _ in range(3):
    job = await jobs_repo.get_job(job_id)
    if job is None or job.is_terminal:
      return
    try:
      await ComposeProgressTracker(job=job, jobs_repo=jobs_repo).fail(None, error=error)
      return
    except ConflictError:
      continue
  logger.error("Could not mark job %s failed after repeated write conflicts", job_id)
