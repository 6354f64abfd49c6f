from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from compose_engine.services.tasks.policy import Delivery, RetryPolicy

DeliveryHandler = Callable[[Delivery], Awaitable[Any]]


class TaskEnqueuer(Protocol):
  """Interface for handing jobs to an at-least-once broker."""

  async def enqueue(self, job_type: str, payload: dict[str, Any], policy: RetryPolicy) -> str:
    """Enqueue a job for processing and return the broker task id."""
    ...
