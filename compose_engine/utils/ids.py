"""Identifier and timestamp utilities."""

from __future__ import annotations

import os
import socket
import time
import uuid

DATE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def generate_job_id() -> str:
  """Return a new job identifier."""
  return str(uuid.uuid4())


def generate_draft_section_id() -> str:
  """Return a new draft section identifier."""
  return str(uuid.uuid4())


def default_worker_id() -> str:
  """Return a worker identity unique to this host and process."""
  return f"{socket.gethostname()}:{os.getpid()}"


def now_iso() -> str:
  """Return the current UTC time in the persisted timestamp format."""
  return time.strftime(DATE_FORMAT, time.gmtime())
