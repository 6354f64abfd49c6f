from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from compose_engine.services.tasks.interface import DeliveryHandler, TaskEnqueuer
from compose_engine.services.tasks.policy import Delivery, RetryPolicy

logger = logging.getLogger(__name__)


class InProcessEnqueuer(TaskEnqueuer):
  """Runs deliveries as asyncio tasks and redelivers failed ones with backoff."""

  def __init__(self, handler: DeliveryHandler, *, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> None:
    self._handler = handler
    self._sleep = sleep
    self._tasks: set[asyncio.Task[None]] = set()

  async def enqueue(self, job_type: str, payload: dict[str, Any], policy: RetryPolicy) -> str:
    job_id = str(payload.get("job_id") or "")
    if not job_id:
      raise ValueError("Task payload requires a job_id.")
    task_id = f"{job_type}:{job_id}:{uuid.uuid4().hex[:8]}"
    task = asyncio.create_task(self._run(task_id, job_type=job_type, job_id=job_id, payload=payload, policy=policy), name=task_id)
    self._tasks.add(task)
    task.add_done_callback(self._tasks.discard)
    logger.info("Enqueued in-process task %s (max_attempts=%d)", task_id, policy.max_attempts)
    return task_id

  async def _run(self, task_id: str, *, job_type: str, job_id: str, payload: dict[str, Any], policy: RetryPolicy) -> None:
    for attempt in range(1, policy.max_attempts + 1):
      delivery = Delivery(job_id=job_id, job_type=job_type, payload=payload, attempt=attempt, max_attempts=policy.max_attempts)
      try:
        await self._handler(delivery)
        return
      except Exception as exc:  # noqa: BLE001
        if attempt >= policy.max_attempts:
          logger.error("Task %s failed on final attempt %d/%d: %s", task_id, attempt, policy.max_attempts, exc)
          return
        delay_ms = policy.delay_ms(attempt)
        logger.warning("Task %s failed on attempt %d/%d, redelivering in %dms: %s", task_id, attempt, policy.max_attempts, delay_ms, exc)
        await self._sleep(delay_ms / 1000.0)

  async def drain(self) -> None:
    """Wait until every in-flight delivery, including redeliveries, has finished."""
    while self._tasks:
      await asyncio.gather(*list(self._tasks), return_exceptions=True)
