from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from compose_engine.config import get_database_settings

_ASYNC_SCHEMES = ("postgresql://", "postgres://")


class Base(DeclarativeBase):
  pass


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def to_async_url(dsn: str | None) -> str | None:
  """Point a libpq-style DSN at the asyncpg driver; other URLs pass through."""
  if not dsn:
    return None
  for scheme in _ASYNC_SCHEMES:
    if dsn.startswith(scheme):
      return "postgresql+asyncpg://" + dsn[len(scheme) :]
  return dsn


DATABASE_URL = to_async_url(get_database_settings().pg_dsn)


def get_db_engine() -> AsyncEngine | None:
  """Create the shared engine on first use; None when no DSN is configured."""
  global _engine
  if _engine is None:
    settings = get_database_settings()
    url = to_async_url(settings.pg_dsn)
    if url:
      _engine = create_async_engine(url, echo=settings.debug, pool_pre_ping=True, connect_args={"timeout": settings.pg_connect_timeout})
  return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession] | None:
  global _session_factory
  if _session_factory is None:
    db_engine = get_db_engine()
    if db_engine is not None:
      _session_factory = async_sessionmaker(bind=db_engine, expire_on_commit=False, class_=AsyncSession)
  return _session_factory


async def dispose_engine() -> None:
  """Close pooled connections and forget the engine so a later startup builds a fresh one."""
  global _engine, _session_factory
  if _engine is not None:
    await _engine.dispose()
  _engine = None
  _session_factory = None
