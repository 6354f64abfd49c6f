import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI
from sqlalchemy import text

from compose_engine.core.database import dispose_engine, get_db_engine
from compose_engine.core.logging import initialize_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Initialize logging, wire services and check the database on startup."""
  from compose_engine.api.deps import build_services
  from compose_engine.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("compose_engine.core.lifespan")

  try:
    initialize_logging(settings)
    logger.info("Startup complete - logging verified.")
  except RuntimeError:
    # Fall back to whatever logging uvicorn configured.
    logger.warning("Initial logging setup failed.", exc_info=True)

  if getattr(app.state, "services", None) is None:
    app.state.services = build_services(settings)
  logger.info("Compose services ready (storage=%s, tasks=%s, worker=%s)", settings.storage_backend, settings.task_service_provider, settings.worker_id)

  if settings.storage_backend == "postgres":
    logger.info("Using database %s", _redact_dsn(settings.pg_dsn))
    await _check_database(logger=logger)

  yield

  await dispose_engine()


def _redact_dsn(raw: str | None) -> str:
  """Redact credentials from a DSN while keeping host/db visible."""
  if not raw:
    return "<unset>"

  parsed = urlparse(raw)
  if not parsed.scheme:
    return "<invalid>"

  user = parsed.username or ""
  host = parsed.hostname or ""
  port = f":{parsed.port}" if parsed.port else ""
  netloc = f"{user}@{host}{port}" if user else f"{host}{port}"
  database = parsed.path.lstrip("/")
  path = f"/{database}" if database else ""
  return f"{parsed.scheme}://{netloc}{path}"


async def _check_database(*, logger: logging.Logger) -> None:
  """Log whether the compose tables exist so missing migrations are obvious."""
  engine = get_db_engine()
  if engine is None:
    logger.warning("Database engine unavailable; cannot inspect runtime schema state.")
    return

  async with engine.connect() as connection:
    result = await connection.execute(text("SELECT to_regclass('compose_jobs') IS NOT NULL"))
    if not bool(result.scalar_one()):
      logger.warning("Table compose_jobs is missing; run `alembic upgrade head`.")
