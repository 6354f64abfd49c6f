from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from compose_engine.api.routes import drafts, jobs, tasks
from compose_engine.config import get_settings
from compose_engine.core.exceptions import compose_error_handler, global_exception_handler, http_exception_handler, request_validation_exception_handler
from compose_engine.core.lifespan import lifespan
from compose_engine.core.middleware import RequestLoggingMiddleware
from compose_engine.jobs.errors import ComposeError

settings = get_settings()

app = FastAPI(title="Compose Engine", lifespan=lifespan, docs_url=None, redoc_url=None)

app.add_middleware(CORSMiddleware, allow_origins=settings.allowed_origins, allow_credentials=True, allow_methods=["GET", "POST", "PATCH", "OPTIONS"], allow_headers=["content-type", "authorization"], expose_headers=["content-length", "x-request-id"])

app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(ComposeError, compose_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)

app.add_middleware(RequestLoggingMiddleware)


@app.get("/health", include_in_schema=False)
async def health_check() -> dict[str, str]:
  """Return a simple health status."""
  return {"status": "ok", "version": "0.1.0"}


app.include_router(jobs.router, prefix="/v1", tags=["jobs"])
app.include_router(drafts.router, prefix="/v1", tags=["drafts"])
app.include_router(tasks.router, prefix="/internal", tags=["tasks"])
