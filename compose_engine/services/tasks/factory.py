from __future__ import annotations

from compose_engine.config import Settings
from compose_engine.services.tasks.inline import InProcessEnqueuer
from compose_engine.services.tasks.interface import DeliveryHandler, TaskEnqueuer
from compose_engine.services.tasks.local import LocalHttpEnqueuer


def get_task_enqueuer(settings: Settings, handler: DeliveryHandler) -> TaskEnqueuer:
  """Factory to get the configured task enqueuer."""
  if settings.task_service_provider == "local-http":
    return LocalHttpEnqueuer(settings)
  return InProcessEnqueuer(handler)
