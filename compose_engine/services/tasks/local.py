from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import urlparse

import httpx

from compose_engine.config import Settings
from compose_engine.services.tasks.interface import TaskEnqueuer
from compose_engine.services.tasks.policy import RetryPolicy

logger = logging.getLogger(__name__)


class LocalHttpEnqueuer(TaskEnqueuer):
  """Delivers tasks by POSTing to the internal task endpoint, retrying non-2xx responses."""

  def __init__(self, settings: Settings, *, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> None:
    self.settings = settings
    self._sleep = sleep

  def _should_use_asgi_transport(self, base_url: str) -> bool:
    """Decide if we should route requests in-process via ASGITransport."""
    parsed = urlparse(base_url)
    hostname = (parsed.hostname or "").lower()
    return hostname in {"localhost", "127.0.0.1", "::1", "0.0.0.0"}

  def _build_client(self, base_url: str) -> httpx.AsyncClient:
    """Build an httpx client for local task dispatch."""
    # Never trust environment proxy variables for internal task dispatch.
    if self._should_use_asgi_transport(base_url):
      from compose_engine.main import app

      transport = httpx.ASGITransport(app=app)
      return httpx.AsyncClient(transport=transport, base_url=base_url, trust_env=False)
    return httpx.AsyncClient(trust_env=False)

  def _task_headers(self) -> dict[str, str]:
    """Build task authentication headers for internal endpoints."""
    if not self.settings.task_secret:
      raise RuntimeError("Task secret not configured.")
    return {"authorization": f"Bearer {self.settings.task_secret}"}

  async def enqueue(self, job_type: str, payload: dict[str, Any], policy: RetryPolicy) -> str:
    """POST the delivery, redelivering with backoff until a 2xx or the attempt budget runs out."""
    if not self.settings.base_url:
      raise RuntimeError("Base URL not configured, strictly required for LocalHttpEnqueuer.")

    job_id = str(payload.get("job_id") or "")
    url = f"{self.settings.base_url.rstrip('/')}/internal/tasks/process-job"
    task_id = f"{job_type}:{job_id}:{uuid.uuid4().hex[:8]}"
    headers = self._task_headers()

    async with self._build_client(self.settings.base_url) as client:
      for attempt in range(1, policy.max_attempts + 1):
        body = {"job_id": job_id, "job_type": job_type, "payload": payload, "attempt": attempt, "max_attempts": policy.max_attempts}
        try:
          logger.info("Dispatching task %s to %s (attempt %d/%d)", task_id, url, attempt, policy.max_attempts)
          response = await client.post(url, json=body, headers=headers, timeout=1800.0)
          response.raise_for_status()
          return task_id
        except httpx.HTTPStatusError as exc:
          logger.warning("Task %s returned %s on attempt %d/%d", task_id, exc.response.status_code, attempt, policy.max_attempts)
          if attempt >= policy.max_attempts:
            raise
        except httpx.RequestError as exc:
          logger.warning("Failed to dispatch task %s on attempt %d/%d: %s", task_id, attempt, policy.max_attempts, exc)
          if attempt >= policy.max_attempts:
            raise
        await self._sleep(policy.delay_ms(attempt) / 1000.0)

    raise RuntimeError(f"Task {task_id} was not dispatched.")
