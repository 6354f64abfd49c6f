import logging

from fastapi import APIRouter, Depends, Query, status

from compose_engine.api.deps import ComposeServices, get_services
from compose_engine.api.models import ComposeSubmitRequest, JobCreateResponse, JobEventResponse, JobStatusResponse, SectionStatusResponse
from compose_engine.jobs.errors import NotFoundError
from compose_engine.jobs.models import decode_request
from compose_engine.services import jobs as job_service

router = APIRouter()
logger = logging.getLogger("compose_engine.api.routes.jobs")


@router.post("/projects/{project_id}/compose", response_model=JobCreateResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_compose_job(  # noqa: B008
  project_id: str,
  body: ComposeSubmitRequest,
  services: ComposeServices = Depends(get_services),  # noqa: B008
) -> JobCreateResponse:
  """Submit a compose job, or resubmit into the job it resolves to."""
  request = decode_request({**body.model_dump(exclude={"job_id"}), "project_id": project_id})
  result = await job_service.submit_compose_job(request, jobs_repo=services.repositories.jobs, enqueuer=services.enqueuer, settings=services.settings, job_id=body.job_id)
  return JobCreateResponse(job_id=result.job.job_id, status=result.job.status, progress=result.job.progress, task_id=result.task_id, created=result.created, resume_source_job_id=result.resumed_from_job_id)


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job_status(job_id: str, services: ComposeServices = Depends(get_services)) -> JobStatusResponse:  # noqa: B008
  """Fetch status, progress and per-section state of a job."""
  view = await job_service.get_job_status(job_id, jobs_repo=services.repositories.jobs)
  return JobStatusResponse(
    job_id=view.job_id,
    project_id=view.project_id,
    job_type=view.job_type,
    status=view.status,
    progress=view.progress,
    version=view.version,
    created_at=view.created_at,
    updated_at=view.updated_at,
    completed_at=view.completed_at,
    error=view.error,
    error_section_key=view.error_section_key,
    logs=view.logs,
    resume_source_job_id=view.resume_source_job_id,
    superseded_by_job_id=view.superseded_by_job_id,
    sections=[SectionStatusResponse(**section.__dict__) for section in view.sections],
  )


@router.get("/jobs/{job_id}/events", response_model=list[JobEventResponse])
async def list_job_events(
  job_id: str,
  limit: int = Query(default=100, ge=1, le=500),
  services: ComposeServices = Depends(get_services),  # noqa: B008
) -> list[JobEventResponse]:
  """Return the job's event timeline, oldest first."""
  if await services.repositories.jobs.get_job(job_id) is None:
    raise NotFoundError(f"Job {job_id} not found.")
  events = await services.repositories.jobs.list_events(job_id=job_id, limit=limit)
  return [JobEventResponse(id=event.id, event_type=event.event_type, message=event.message, payload=event.payload_json, created_at=event.created_at) for event in events]
