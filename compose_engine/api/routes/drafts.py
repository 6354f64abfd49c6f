from fastapi import APIRouter, Depends

from compose_engine.api.deps import ComposeServices, get_services
from compose_engine.api.models import DraftSectionResponse, DraftUpdateRequest, DraftVersionResponse, RollbackRequest
from compose_engine.services import drafts as draft_service
from compose_engine.storage.drafts_repo import DraftSectionRecord, DraftSectionVersionRecord

router = APIRouter()


async def _draft_response(draft: DraftSectionRecord, services: ComposeServices) -> DraftSectionResponse:
  source_ids = await services.repositories.drafts.list_source_links(draft.id)
  return DraftSectionResponse(
    id=draft.id,
    project_id=draft.project_id,
    section_type=draft.section_type,
    content=draft.content,
    status=draft.status,
    version=draft.version,
    created_at=draft.created_at,
    updated_at=draft.updated_at,
    approved_at=draft.approved_at,
    source_ids=source_ids,
  )


def _version_response(record: DraftSectionVersionRecord) -> DraftVersionResponse:
  return DraftVersionResponse(draft_section_id=record.draft_section_id, version=record.version, status=record.status, content=record.content, created_at=record.created_at)


@router.get("/projects/{project_id}/drafts/{section_id}", response_model=DraftSectionResponse)
async def get_draft_section(project_id: str, section_id: str, services: ComposeServices = Depends(get_services)) -> DraftSectionResponse:  # noqa: B008
  draft = await draft_service.get_draft_section(project_id, section_id, drafts_repo=services.repositories.drafts)
  return await _draft_response(draft, services)


@router.patch("/projects/{project_id}/drafts/{section_id}", response_model=DraftSectionResponse)
async def update_draft_section(project_id: str, section_id: str, body: DraftUpdateRequest, services: ComposeServices = Depends(get_services)) -> DraftSectionResponse:  # noqa: B008
  """Edit or approve a draft section; the change is stored as a new version."""
  draft = await draft_service.update_draft_section(project_id, section_id, drafts_repo=services.repositories.drafts, content=body.content, status=body.status)
  return await _draft_response(draft, services)


@router.get("/projects/{project_id}/drafts/{section_id}/versions", response_model=list[DraftVersionResponse])
async def list_draft_versions(project_id: str, section_id: str, services: ComposeServices = Depends(get_services)) -> list[DraftVersionResponse]:  # noqa: B008
  versions = await draft_service.list_versions(project_id, section_id, drafts_repo=services.repositories.drafts)
  return [_version_response(record) for record in versions]


@router.get("/projects/{project_id}/drafts/{section_id}/versions/{version}", response_model=DraftVersionResponse)
async def get_draft_version(project_id: str, section_id: str, version: int, services: ComposeServices = Depends(get_services)) -> DraftVersionResponse:  # noqa: B008
  record = await draft_service.get_version(project_id, section_id, version, drafts_repo=services.repositories.drafts)
  return _version_response(record)


@router.post("/projects/{project_id}/drafts/{section_id}/versions/rollback", response_model=DraftSectionResponse)
async def rollback_draft_section(project_id: str, section_id: str, body: RollbackRequest, services: ComposeServices = Depends(get_services)) -> DraftSectionResponse:  # noqa: B008
  """Restore a stored version as a new version of the live draft."""
  draft = await draft_service.rollback_draft_section(project_id, section_id, body.target_version, drafts_repo=services.repositories.drafts)
  return await _draft_response(draft, services)
