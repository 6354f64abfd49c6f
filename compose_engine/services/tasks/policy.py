"""Retry policy and delivery envelope shared by every task enqueuer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from compose_engine.config import Settings


@dataclass(frozen=True)
class RetryPolicy:
  """Bounded attempts with exponential backoff."""

  max_attempts: int = 2
  base_delay_ms: int = 1000
  multiplier: float = 2.0
  max_delay_ms: int = 60_000

  def __post_init__(self) -> None:
    if self.max_attempts < 1:
      raise ValueError("max_attempts must be at least 1.")
    if self.base_delay_ms < 0:
      raise ValueError("base_delay_ms must not be negative.")
    if self.multiplier < 1.0:
      raise ValueError("multiplier must be at least 1.0.")

  def delay_ms(self, attempt: int) -> int:
    """Delay to wait after the given 1-based attempt failed."""
    exponent = max(attempt, 1) - 1
    return int(min(self.base_delay_ms * (self.multiplier**exponent), self.max_delay_ms))

  @classmethod
  def for_queue(cls, settings: Settings) -> RetryPolicy:
    return cls(max_attempts=settings.queue_max_attempts, base_delay_ms=settings.queue_backoff_delay_ms, multiplier=settings.queue_backoff_multiplier)

  @classmethod
  def for_sections(cls, settings: Settings) -> RetryPolicy:
    return cls(max_attempts=settings.section_max_attempts, base_delay_ms=settings.section_retry_delay_ms, multiplier=2.0)


@dataclass(frozen=True)
class Delivery:
  """One broker invocation of a job; the same job may be delivered more than once."""

  job_id: str
  job_type: str
  payload: dict[str, Any] = field(default_factory=dict)
  attempt: int = 1
  max_attempts: int = 1

  @property
  def is_final_attempt(self) -> bool:
    return self.attempt >= self.max_attempts
