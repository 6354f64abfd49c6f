"""Resumable processing of compose jobs under at-least-once delivery."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any

from compose_engine.config import Settings
from compose_engine.jobs.errors import ConflictError, TerminalUnitFailure, TransientProductionError, ValidationError
from compose_engine.jobs.identity import build_initial_state, merge_state
from compose_engine.jobs.models import ComposeJobPayload, ComposeJobState, ComposeRequest, JobRecord, JobStatus, clone_state, decode_payload, decode_request, decode_state, encode_struct
from compose_engine.jobs.progress import ComposeProgressTracker, build_logs_blob
from compose_engine.jobs.state_machine import FailurePolicy, advance, completed_count, last_section_error, mark_completed, mark_processing, record_failure, resolve_outcome
from compose_engine.services.tasks.policy import Delivery, RetryPolicy
from compose_engine.storage.drafts_repo import DraftSectionRecord, SectionCommit
from compose_engine.storage.jobs_repo import JobsRepository
from compose_engine.storage.sources_repo import SourcesRepository
from compose_engine.utils.ids import generate_draft_section_id, now_iso
from compose_engine.writing.citations import assert_citations_valid
from compose_engine.writing.producer import ProductionContext, SectionProducer


@dataclass(frozen=True)
class ComposeJobResult:
  """Summary of one delivery's outcome."""

  job_id: str
  status: JobStatus
  progress: float
  completed_sections: int
  total_sections: int
  skipped: bool = False


class ComposeJobProcessor:
  """
  Drive every pending section of a compose job to completion.

  Safe to invoke repeatedly for the same job: completed sections are never
  produced again, and every persisted write is a compare-and-write so two
  workers racing on one job cannot both commit the same section.
  """

  def __init__(
    self,
    *,
    jobs_repo: JobsRepository,
    sources_repo: SourcesRepository,
    producer: SectionProducer,
    settings: Settings,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
  ) -> None:
    self._jobs_repo = jobs_repo
    self._sources_repo = sources_repo
    self._producer = producer
    self._settings = settings
    self._sleep = sleep
    self._worker_id = settings.worker_id
    self._max_attempts = settings.section_max_attempts
    self._section_policy = RetryPolicy.for_sections(settings)
    self._failure_policy = FailurePolicy(optional_failures_fail_job=settings.optional_failures_fail_job)
    self._logger = logging.getLogger(__name__)

  async def process(self, delivery: Delivery) -> ComposeJobResult:
    """Process one delivery, re-reading and retrying when another writer wins a race."""
    payload = decode_payload(delivery.payload)
    conflicts = 0
    while True:
      try:
        return await self._process_once(payload, delivery)
      except ConflictError:
        conflicts += 1
        if conflicts > self._settings.conflict_retry_limit:
          self._logger.error("Job %s kept losing write races after %d retries", payload.job_id, conflicts - 1)
          raise
        self._logger.info("Job %s changed underneath worker %s; re-reading (retry %d)", payload.job_id, self._worker_id, conflicts)

  async def _process_once(self, payload: ComposeJobPayload, delivery: Delivery) -> ComposeJobResult:
    job = await self._load_or_create(payload)
    if job.is_terminal:
      self._logger.info("Job %s is already %s; ignoring delivery %d/%d", job.job_id, job.status, delivery.attempt, delivery.max_attempts)
      state = decode_state(job.resumable_state) or ComposeJobState()
      return ComposeJobResult(job_id=job.job_id, status=job.status, progress=job.progress, completed_sections=completed_count(state), total_sections=len(state.sections), skipped=True)

    state, request = self._reconcile(job, payload)
    tracker = ComposeProgressTracker(job=job, jobs_repo=self._jobs_repo)
    await tracker.save(state, status="in_progress", worker_id=self._worker_id, message=f"Worker {self._worker_id} picked up delivery {delivery.attempt}/{delivery.max_attempts}.")
    context = ProductionContext(job_id=job.job_id, project_id=request.project_id, research_question=request.research_question, narrative_voice=request.narrative_voice)

    while resolve_outcome(state, self._max_attempts, self._failure_policy) == "running":
      index = advance(state, self._max_attempts)
      if index is None:
        break
      try:
        state = await self._process_section(tracker, state, index, context)
      except TerminalUnitFailure as exc:
        self._logger.warning("Job %s stopping: %s", job.job_id, exc)
        break

    return await self._finish(tracker, state)

  async def _load_or_create(self, payload: ComposeJobPayload) -> JobRecord:
    job = await self._jobs_repo.get_job(payload.job_id)
    if job is not None:
      return job

    # The broker may deliver before (or without) a submission having persisted the job.
    state = build_initial_state(payload.request)
    state.revision = payload.revision
    timestamp = now_iso()
    record = JobRecord(
      job_id=payload.job_id,
      project_id=payload.request.project_id,
      job_type=payload.job_type,
      status="queued",
      created_at=timestamp,
      updated_at=timestamp,
      request=encode_struct(payload.request),
      resumable_state=encode_struct(state),
      logs=build_logs_blob([f"{timestamp} Job created from delivery."]),
      idempotency_key=payload.request.request_id,
    )
    self._logger.info("Job %s not found; creating it from the delivery payload", payload.job_id)
    return await self._jobs_repo.create_job(record)

  def _reconcile(self, job: JobRecord, payload: ComposeJobPayload) -> tuple[ComposeJobState, ComposeRequest]:
    """Merge the delivered request into persisted state unless the delivery is stale."""
    persisted = decode_state(job.resumable_state)
    if persisted is None:
      state = build_initial_state(payload.request)
      state.revision = payload.revision
      return state, payload.request

    if payload.revision < persisted.revision:
      self._logger.info("Delivery for job %s carries revision %d, persisted is %d; keeping persisted scope", job.job_id, payload.revision, persisted.revision)
      request = decode_request(job.request) if job.request is not None else payload.request
      return merge_state(persisted, request), request

    state = merge_state(persisted, payload.request)
    state.revision = max(persisted.revision, payload.revision)
    return state, payload.request

  async def _process_section(self, tracker: ComposeProgressTracker, state: ComposeJobState, index: int, context: ProductionContext) -> ComposeJobState:
    section = mark_processing(state, index, max_attempts=self._max_attempts)
    await tracker.save(state, message=f"Section {section.key} attempt {section.attempts + 1}/{self._max_attempts} started.")

    try:
      sources = await self._sources_repo.fetch_sources(context.project_id, section.source_ids)
      assert_citations_valid(section.source_ids, sources)
      content = await self._produce(section, sources, context)

      commit = SectionCommit(
        draft_section_id=section.draft_section_id or generate_draft_section_id(),
        project_id=context.project_id,
        section_type=section.section_type,
        content=content,
        source_ids=list(section.source_ids),
        locators={source.id: source.primary_locator for source in sources},
      )
      next_state, draft = await self._commit(tracker, state, index, commit)
    except TransientProductionError as exc:
      return await self._record_failure(tracker, state, index, str(exc), fatal=False)
    except ValidationError as exc:
      # Citation and ownership problems will not fix themselves on retry.
      return await self._record_failure(tracker, state, index, str(exc), fatal=True)

    self._logger.info("Job %s section %s committed draft %s v%d", context.job_id, section.key, draft.id, draft.version)
    await self._jobs_repo.append_event(
      job_id=context.job_id,
      event_type="draft.section_generated",
      message=f"Generated {section.section_type} section.",
      payload_json={"section_key": section.key, "draft_section_id": draft.id, "version": draft.version},
    )
    return next_state

  async def _commit(self, tracker: ComposeProgressTracker, state: ComposeJobState, index: int, commit: SectionCommit) -> tuple[ComposeJobState, DraftSectionRecord]:
    """
    Commit produced content together with the state marking its section completed.

    When another writer moved the job on while the content was being produced,
    the fresh state is adopted and the content is committed onto it, provided
    the section is still in flight there. Otherwise the content is discarded and
    the conflict propagates so the whole delivery re-reads.
    """
    key = state.sections[index].key
    next_state = clone_state(state)
    mark_completed(next_state, index, commit.draft_section_id)
    try:
      draft = await tracker.commit_section(next_state, commit, message=f"Section {key} completed as draft {commit.draft_section_id}.")
      return next_state, draft
    except ConflictError:
      job = await tracker.refresh()
      fresh = decode_state(job.resumable_state)
      fresh_index = next((position for position, candidate in enumerate(fresh.sections) if candidate.key == key), None) if fresh is not None else None
      if job.is_terminal or fresh is None or fresh_index is None or fresh.sections[fresh_index].status != "processing":
        self._logger.info("Discarding produced content for section %s of job %s; another writer moved it on", key, job.job_id)
        raise

    draft_section_id = fresh.sections[fresh_index].draft_section_id or commit.draft_section_id
    commit = replace(commit, draft_section_id=draft_section_id)
    mark_completed(fresh, fresh_index, draft_section_id)
    draft = await tracker.commit_section(fresh, commit, message=f"Section {key} completed as draft {draft_section_id} after re-read.")
    return fresh, draft

  async def _produce(self, section: Any, sources: list[Any], context: ProductionContext) -> dict[str, Any]:
    try:
      return await self._producer.produce(section, sources, context)
    except Exception as exc:  # noqa: BLE001
      raise TransientProductionError(f"{type(exc).__name__}: {exc}") from exc

  async def _record_failure(self, tracker: ComposeProgressTracker, state: ComposeJobState, index: int, message: str, *, fatal: bool) -> ComposeJobState:
    section = record_failure(state, index, message, max_attempts=self._max_attempts, fatal=fatal)
    tracker.record_error(section_key=section.key, error=message)
    if section.status == "pending":
      delay_ms = self._section_policy.delay_ms(section.attempts)
      self._logger.warning("Section %s attempt %d/%d failed, retrying in %dms: %s", section.key, section.attempts, self._max_attempts, delay_ms, message)
      await tracker.save(state, message=f"Section {section.key} attempt {section.attempts} failed: {message}")
      await self._sleep(delay_ms / 1000.0)
      return state

    self._logger.warning("Section %s failed permanently after %d attempt(s): %s", section.key, section.attempts, message)
    await tracker.save(state, message=f"Section {section.key} failed: {message}")
    if section.mandatory:
      raise TerminalUnitFailure(section.key, message)
    return state

  async def _finish(self, tracker: ComposeProgressTracker, state: ComposeJobState) -> ComposeJobResult:
    outcome = resolve_outcome(state, self._max_attempts, self._failure_policy)
    if outcome == "failed":
      section_key, error = last_section_error(state)
      job = await tracker.fail(state, error=error or "Compose job failed.", section_key=section_key)
    else:
      job = await tracker.complete(state)
    self._logger.info("Job %s finished as %s (%d/%d sections)", job.job_id, job.status, completed_count(state), len(state.sections))
    return ComposeJobResult(job_id=job.job_id, status=job.status, progress=job.progress, completed_sections=completed_count(state), total_sections=len(state.sections))
