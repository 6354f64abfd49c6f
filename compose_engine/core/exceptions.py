import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from compose_engine.jobs.errors import CitationValidationError, ComposeError, ConflictError, NotFoundError, ValidationError


def _coerce_json_safe(value: Any) -> Any:
  """Convert unsupported values into JSON-safe primitives for error responses."""
  if value is None or isinstance(value, bool | int | float | str):
    return value
  if isinstance(value, dict):
    return {str(key): _coerce_json_safe(item) for key, item in value.items()}
  if isinstance(value, list | tuple | set):
    return [_coerce_json_safe(item) for item in value]
  if isinstance(value, BaseException):
    error_message = str(value)
    if error_message:
      return f"{type(value).__name__}: {error_message}"
    return type(value).__name__
  return str(value)


def _error_payload(detail: Any, *, request_id: str | None = None, code: str | None = None) -> dict[str, Any]:
  """Build a safe error payload that avoids leaking internal details to clients."""
  payload: dict[str, Any] = {"detail": detail}
  if code:
    payload["code"] = code
  # Attach a request id so support can correlate client reports to server logs.
  if request_id:
    payload["requestId"] = request_id
  return payload


def _sanitize_validation_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
  """Return validation errors without raw input payloads."""
  sanitized: list[dict[str, Any]] = []
  for error in errors:
    scrubbed = {key: value for key, value in error.items() if key != "input"}
    if "ctx" in scrubbed and isinstance(scrubbed["ctx"], dict):
      scrubbed_ctx = dict(scrubbed["ctx"])
      scrubbed_ctx.pop("input", None)
      scrubbed["ctx"] = scrubbed_ctx
    sanitized.append(_coerce_json_safe(scrubbed))
  return sanitized


def _status_for(exc: ComposeError) -> int:
  if isinstance(exc, ValidationError):
    return status.HTTP_422_UNPROCESSABLE_ENTITY
  if isinstance(exc, NotFoundError):
    return status.HTTP_404_NOT_FOUND
  if isinstance(exc, ConflictError):
    return status.HTTP_409_CONFLICT
  return status.HTTP_500_INTERNAL_SERVER_ERROR


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
  """Global exception handler to catch unhandled errors."""
  logger = logging.getLogger("uvicorn.error")
  request_id = getattr(request.state, "request_id", None)
  logger.error("Global exception request_id=%s path=%s error_type=%s", request_id, request.url.path, type(exc).__name__, exc_info=True)
  return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_payload("Internal Server Error", request_id=request_id))


async def compose_error_handler(request: Request, exc: ComposeError) -> JSONResponse:
  """Map domain errors onto HTTP status codes."""
  request_id = getattr(request.state, "request_id", None)
  status_code = _status_for(exc)
  logger = logging.getLogger("uvicorn.error")
  if status_code >= 500:
    logger.error("Compose error request_id=%s path=%s error_type=%s", request_id, request.url.path, type(exc).__name__, exc_info=True)
    return JSONResponse(status_code=status_code, content=_error_payload("Internal Server Error", request_id=request_id))

  logger.warning("Compose error request_id=%s path=%s status_code=%s error=%s", request_id, request.url.path, status_code, exc)
  detail: Any = str(exc)
  if isinstance(exc, CitationValidationError) and exc.errors:
    detail = {"message": str(exc), "errors": _coerce_json_safe(exc.errors)}
  return JSONResponse(status_code=status_code, content=_error_payload(detail, request_id=request_id, code=type(exc).__name__))


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
  """Log request validation errors for debugging without leaking payloads."""
  request_id = getattr(request.state, "request_id", None)
  sanitized_errors = _sanitize_validation_errors(exc.errors())
  logger = logging.getLogger("uvicorn.error")
  logger.warning("Request validation failed request_id=%s path=%s method=%s errors=%s", request_id, request.url.path, request.method, sanitized_errors)
  return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_payload(sanitized_errors, request_id=request_id))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
  """Handle FastAPI HTTPExceptions while avoiding leaking internal diagnostics."""
  from compose_engine.config import get_settings

  settings = get_settings()
  request_id = getattr(request.state, "request_id", None)
  if exc.status_code >= 500:
    logger = logging.getLogger("uvicorn.error")
    logger.error("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail)
    headers = getattr(exc, "headers", None)
    # 503 is a redelivery signal for the broker and keeps its detail.
    detail = exc.detail if exc.status_code == status.HTTP_503_SERVICE_UNAVAILABLE else "Internal Server Error"
    return JSONResponse(status_code=exc.status_code, content=_error_payload(detail, request_id=request_id), headers=headers)

  if settings.log_http_4xx:
    logger = logging.getLogger("uvicorn.error")
    logger.warning("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail)

  return JSONResponse(status_code=exc.status_code, content=_error_payload(exc.detail, request_id=request_id))
