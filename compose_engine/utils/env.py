"""Optional .env support for local runs of the compose service."""

from __future__ import annotations

import os
from pathlib import Path

ENV_FILE_VARIABLE = "COMPOSE_ENV_FILE"


def default_env_path() -> Path:
  """Return COMPOSE_ENV_FILE when set, else the .env beside pyproject.toml."""
  override = os.getenv(ENV_FILE_VARIABLE)
  if override:
    return Path(override).expanduser()
  return Path(__file__).resolve().parents[2] / ".env"


def _unquote(value: str) -> str:
  if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
    return value[1:-1]
  # Unquoted values may carry a trailing comment.
  return value.split(" #", 1)[0].rstrip()


def parse_env_file(path: Path) -> dict[str, str]:
  """Read KEY=value lines, ignoring blanks, comments and `export` prefixes."""
  if not path.is_file():
    return {}

  values: dict[str, str] = {}
  for raw_line in path.read_text(encoding="utf-8").splitlines():
    line = raw_line.strip()
    if not line or line.startswith("#"):
      continue
    line = line.removeprefix("export ").lstrip()
    key, sep, value = line.partition("=")
    key = key.strip()
    if not sep or not key:
      continue
    values[key] = _unquote(value.strip())
  return values


def load_env_file(path: Path, *, override: bool = False) -> list[str]:
  """Copy a .env file into os.environ; real environment variables win unless `override`."""
  applied = []
  for key, value in parse_env_file(path).items():
    if not override and key in os.environ:
      continue
    os.environ[key] = value
    applied.append(key)
  return applied
