"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from compose_engine.utils.env import default_env_path, load_env_file
from compose_engine.utils.ids import default_worker_id

load_env_file(default_env_path(), override=False)

_STORAGE_BACKENDS = {"postgres", "memory"}
_TASK_PROVIDERS = {"inline", "local-http"}


@dataclass(frozen=True)
class Settings:
  """Typed settings for the compose service."""

  environment: str
  allowed_origins: tuple[str, ...]
  debug: bool
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  storage_backend: str
  task_service_provider: str
  base_url: str | None
  task_secret: str | None
  queue_max_attempts: int
  queue_backoff_delay_ms: int
  queue_backoff_multiplier: float
  section_max_attempts: int
  section_retry_delay_ms: int
  optional_failures_fail_job: bool
  conflict_retry_limit: int
  worker_id: str


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    raise ValueError("COMPOSE_ALLOWED_ORIGINS must be set to one or more origins.")

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if not origins:
    raise ValueError("COMPOSE_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("COMPOSE_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _non_negative_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value < 0:
    raise ValueError(f"{name} must be zero or a positive integer.")
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("COMPOSE_ENV", "development").lower()
  debug = _parse_bool(os.getenv("COMPOSE_DEBUG"))
  pg_dsn = os.getenv("COMPOSE_PG_DSN") or os.getenv("DATABASE_URL")

  # Default to the in-memory store only when no database is configured.
  storage_backend = (os.getenv("COMPOSE_STORAGE_BACKEND") or ("postgres" if pg_dsn else "memory")).strip().lower()
  if storage_backend not in _STORAGE_BACKENDS:
    raise ValueError(f"COMPOSE_STORAGE_BACKEND must be one of {sorted(_STORAGE_BACKENDS)}.")
  if storage_backend == "postgres" and not pg_dsn:
    raise ValueError("COMPOSE_PG_DSN must be set when COMPOSE_STORAGE_BACKEND=postgres.")

  task_service_provider = (os.getenv("COMPOSE_TASK_SERVICE_PROVIDER") or "inline").strip().lower()
  if task_service_provider not in _TASK_PROVIDERS:
    raise ValueError(f"COMPOSE_TASK_SERVICE_PROVIDER must be one of {sorted(_TASK_PROVIDERS)}.")

  queue_backoff_multiplier = float(os.getenv("COMPOSE_QUEUE_BACKOFF_MULTIPLIER", "2.0"))
  if queue_backoff_multiplier < 1.0:
    raise ValueError("COMPOSE_QUEUE_BACKOFF_MULTIPLIER must be at least 1.0.")

  return Settings(
    environment=environment,
    allowed_origins=_parse_origins(os.getenv("COMPOSE_ALLOWED_ORIGINS")),
    debug=debug,
    log_max_bytes=_positive_int("COMPOSE_LOG_MAX_BYTES", "5242880"),
    log_backup_count=_non_negative_int("COMPOSE_LOG_BACKUP_COUNT", "10"),
    log_http_4xx=_parse_bool(os.getenv("COMPOSE_LOG_HTTP_4XX")),
    pg_dsn=pg_dsn,
    pg_connect_timeout=_positive_int("COMPOSE_PG_CONNECT_TIMEOUT", "5"),
    storage_backend=storage_backend,
    task_service_provider=task_service_provider,
    base_url=_optional_str(os.getenv("COMPOSE_BASE_URL")),
    task_secret=_optional_str(os.getenv("COMPOSE_TASK_SECRET")),
    queue_max_attempts=_positive_int("COMPOSE_QUEUE_MAX_ATTEMPTS", "2"),
    queue_backoff_delay_ms=_non_negative_int("COMPOSE_QUEUE_BACKOFF_DELAY_MS", "1000"),
    queue_backoff_multiplier=queue_backoff_multiplier,
    section_max_attempts=_positive_int("COMPOSE_SECTION_MAX_ATTEMPTS", "3"),
    section_retry_delay_ms=_non_negative_int("COMPOSE_SECTION_RETRY_DELAY_MS", "500"),
    optional_failures_fail_job=_parse_bool(os.getenv("COMPOSE_OPTIONAL_FAILURES_FAIL_JOB")),
    conflict_retry_limit=_positive_int("COMPOSE_CONFLICT_RETRY_LIMIT", "5"),
    worker_id=_optional_str(os.getenv("COMPOSE_WORKER_ID")) or default_worker_id(),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring web-runtime configuration like CORS."""
  debug = _parse_bool(os.getenv("COMPOSE_DEBUG"))
  pg_connect_timeout = _positive_int("COMPOSE_PG_CONNECT_TIMEOUT", "5")
  pg_dsn = os.getenv("COMPOSE_PG_DSN") or os.getenv("DATABASE_URL")
  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value
