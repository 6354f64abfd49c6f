"""Retry wrapper for short database transactions with failure classification."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from compose_engine.jobs.errors import ComposeError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_SQLSTATES = {
  "40001": ("serialization_conflict", "Serialization failure - transaction conflict"),
  "40P01": ("deadlock", "Deadlock detected"),
}

_CONNECTIVITY_PATTERNS = ("connection", "timeout", "reset", "network", "broken pipe", "lost connection")


@dataclass(frozen=True)
class DBFailureClassification:
  """Classification result for a database failure."""

  retryable: bool
  reason: str
  sqlstate: str | None
  category: str


def _extract_sqlstate(exc: BaseException) -> str | None:
  """Extract the Postgres SQLSTATE from a SQLAlchemy DBAPI error."""
  if isinstance(exc, DBAPIError) and exc.orig is not None:
    for attribute in ("pgcode", "sqlstate"):
      value = getattr(exc.orig, attribute, None)
      if value:
        return str(value)
  return None


def classify_db_failure(exc: BaseException) -> DBFailureClassification:
  """
  Classify a database failure as retryable or permanent.

  SQLSTATE is the primary signal. Serialization failures, deadlocks and dropped
  connections are transient; integrity, schema and permission errors, domain
  errors and programming errors are permanent.
  """
  # Domain errors (conflicts, not-found) are decisions, not infrastructure failures.
  if isinstance(exc, ComposeError):
    return DBFailureClassification(retryable=False, reason=f"Domain error: {type(exc).__name__}", sqlstate=None, category="domain_error")

  sqlstate = _extract_sqlstate(exc)
  if sqlstate in _TRANSIENT_SQLSTATES:
    category, reason = _TRANSIENT_SQLSTATES[sqlstate]
    return DBFailureClassification(retryable=True, reason=reason, sqlstate=sqlstate, category=category)

  if sqlstate and sqlstate.startswith("23"):
    return DBFailureClassification(retryable=False, reason="Integrity constraint violation", sqlstate=sqlstate, category="integrity_error")
  if sqlstate and sqlstate.startswith("42"):
    return DBFailureClassification(retryable=False, reason="Schema/SQL error", sqlstate=sqlstate, category="schema_error")
  if sqlstate and sqlstate.startswith("28"):
    return DBFailureClassification(retryable=False, reason="Authentication/permission error", sqlstate=sqlstate, category="permission_error")

  if isinstance(exc, IntegrityError):
    return DBFailureClassification(retryable=False, reason="Integrity constraint violation (detected by exception type)", sqlstate=sqlstate, category="integrity_error")

  if isinstance(exc, (AttributeError, TypeError, ValueError, KeyError, IndexError)):
    return DBFailureClassification(retryable=False, reason=f"Programming error: {type(exc).__name__}", sqlstate=sqlstate, category="programming_error")

  if isinstance(exc, OperationalError):
    error_msg = str(exc).lower()
    if any(pattern in error_msg for pattern in _CONNECTIVITY_PATTERNS):
      return DBFailureClassification(retryable=True, reason="Transient connection/network error", sqlstate=sqlstate, category="connectivity_error")
    return DBFailureClassification(retryable=False, reason="Operational error (unknown cause)", sqlstate=sqlstate, category="operational_error_unknown")

  return DBFailureClassification(retryable=False, reason=f"Unknown error type: {type(exc).__name__}", sqlstate=sqlstate, category="unknown_error")


async def execute_with_retry(*, operation_name: str, func: Callable[[], Awaitable[T]], max_attempts: int = 2, initial_backoff_ms: int = 100, max_backoff_ms: int = 2000, jitter: bool = True) -> T:
  """
  Run an idempotent database operation, retrying transient failures.

  Args:
    operation_name: Label used in log lines (e.g., "compose_section_commit").
    func: Async callable opening its own transaction.
    max_attempts: Total attempts including the first one.
    initial_backoff_ms: Delay before the first retry.
    max_backoff_ms: Upper bound for the exponential delay.
    jitter: Spread retries by +/-25% to avoid synchronized retries.

  Raises:
    The original exception when it is permanent or attempts are exhausted.
  """
  attempt = 0
  while True:
    attempt += 1
    try:
      result = await func()
    except Exception as exc:
      classification = classify_db_failure(exc)
      if not classification.retryable:
        if classification.category != "domain_error":
          logger.error("DB operation failed with non-retryable error: operation=%s, category=%s, sqlstate=%s", operation_name, classification.category, classification.sqlstate or "none", exc_info=True)
        raise
      if attempt >= max_attempts:
        logger.error("DB operation failed after %d attempts: operation=%s, category=%s, sqlstate=%s - giving up", max_attempts, operation_name, classification.category, classification.sqlstate or "none")
        raise

      backoff_ms = min(initial_backoff_ms * (2 ** (attempt - 1)), max_backoff_ms)
      if jitter:
        jitter_range = backoff_ms * 0.25
        backoff_ms += random.uniform(-jitter_range, jitter_range)
      logger.warning("Retrying DB operation after backoff: operation=%s, attempt=%d/%d, backoff_ms=%.1f, category=%s", operation_name, attempt, max_attempts, backoff_ms, classification.category)
      await asyncio.sleep(backoff_ms / 1000.0)
      continue

    if attempt > 1:
      logger.info("DB operation succeeded after retry: operation=%s, attempt=%d/%d", operation_name, attempt, max_attempts)
    return result
