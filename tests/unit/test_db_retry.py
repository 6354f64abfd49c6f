from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from compose_engine.jobs.errors import ConflictError
from compose_engine.utils.db_retry import classify_db_failure, execute_with_retry


def test_conflicts_are_domain_decisions() -> None:
  classification = classify_db_failure(ConflictError("lost race"))

  assert classification.retryable is False
  assert classification.category == "domain_error"


def test_dropped_connections_are_retryable() -> None:
  exc = OperationalError("SELECT 1", {}, Exception("connection reset by peer"))

  assert classify_db_failure(exc).retryable is True


def test_integrity_errors_are_permanent() -> None:
  exc = IntegrityError("INSERT", {}, Exception("duplicate key"))

  assert classify_db_failure(exc).retryable is False


@pytest.mark.anyio
async def test_transient_failures_are_retried() -> None:
  calls = 0

  async def _operation() -> str:
    nonlocal calls
    calls += 1
    if calls == 1:
      raise OperationalError("UPDATE", {}, Exception("server closed the connection unexpectedly"))
    return "ok"

  assert await execute_with_retry(operation_name="test_op", func=_operation, initial_backoff_ms=0, jitter=False) == "ok"
  assert calls == 2


@pytest.mark.anyio
async def test_conflicts_are_not_retried() -> None:
  calls = 0

  async def _operation() -> None:
    nonlocal calls
    calls += 1
    raise ConflictError("lost race")

  with pytest.raises(ConflictError):
    await execute_with_retry(operation_name="test_op", func=_operation, initial_backoff_ms=0)
  assert calls == 1
