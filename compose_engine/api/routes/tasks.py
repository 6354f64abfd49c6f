from __future__ import annotations

import logging
import secrets
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, status

from compose_engine.api.deps import ComposeServices, get_services
from compose_engine.api.models import TaskDeliveryRequest
from compose_engine.jobs.errors import RedeliveryRequested
from compose_engine.services.tasks.policy import Delivery

router = APIRouter(prefix="/tasks", tags=["tasks"])
logger = logging.getLogger(__name__)


@router.post("/process-job", status_code=status.HTTP_200_OK)
async def process_job_task(
  body: TaskDeliveryRequest,
  services: Annotated[ComposeServices, Depends(get_services)],
  authorization: str | None = Header(default=None),
  x_compose_task_secret: str | None = Header(default=None),
) -> dict[str, str | bool | None]:
  """
  Broker delivery endpoint.

  Processes the delivery before responding so the broker's retry policy applies:
  a 503 asks for redelivery, a 200 means the delivery is done (processed or dropped).
  """
  task_secret = services.settings.task_secret
  # Secure-by-default: internal task endpoints must be authenticated to avoid arbitrary job execution.
  if not task_secret:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Task authentication is not configured.")
  shared_secret_valid = secrets.compare_digest((x_compose_task_secret or ""), task_secret)
  bearer_valid = secrets.compare_digest((authorization or ""), f"Bearer {task_secret}")
  if not shared_secret_valid and not bearer_valid:
    logger.warning("Unauthorized access attempt to /process-job")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid task secret.")

  delivery = Delivery(job_id=body.job_id, job_type=body.job_type, payload=body.payload, attempt=body.attempt, max_attempts=body.max_attempts)
  logger.info("Received task for job %s (attempt %d/%d)", delivery.job_id, delivery.attempt, delivery.max_attempts)
  try:
    outcome = await services.worker.handle(delivery)
  except RedeliveryRequested as exc:
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc), headers={"Retry-After": "1"}) from exc

  job_status = outcome.result.status if outcome.result is not None else None
  return {"job_id": outcome.job_id, "status": job_status, "dropped": outcome.dropped}
