from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DBAPIError, IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

from skillmint.apps.api.response import error_response
from skillmint.core.errors import CryptoAuthFailure, DependencyUnavailableError, InternalError, SkillMintError
from skillmint.persistence.errors import translate_integrity_error


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    402: "QUOTA_EXCEEDED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    # Map status codes to fallback error codes when none are provided.
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from FastAPI HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _internal_error(request: Request) -> JSONResponse:
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)


async def skillmint_exception_handler(request: Request, exc: SkillMintError) -> JSONResponse:
    # Crypto failures stay opaque to callers so decryption cannot be used as an oracle.
    if isinstance(exc, (CryptoAuthFailure, InternalError)):
        return _internal_error(request)
    payload = error_response(
        request=request,
        code=exc.code,
        message=exc.message,
        details=jsonable_encoder(exc.fields) or None,
    )
    headers: dict[str, str] | None = None
    retry_after = exc.fields.get("retry_after_s")
    if exc.status_code == 503 and retry_after is not None:
        headers = {"Retry-After": str(retry_after)}
    return JSONResponse(content=payload, status_code=exc.status_code, headers=headers)


async def http_exception_handler(request: Request, exc: HTTPException | StarletteHTTPException) -> JSONResponse:
    # Normalize HTTPExceptions into the shared error envelope.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Surface validation errors with structured details for SDK parsing.
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return _internal_error(request)


async def integrity_exception_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    # Unique violations that escape a service still map to their named conflict.
    return await skillmint_exception_handler(request, translate_integrity_error(exc))


async def database_unavailable_handler(request: Request, exc: DBAPIError) -> JSONResponse:
    logger.error("database_unavailable path=%s error=%s", request.url.path, type(exc).__name__)
    return await skillmint_exception_handler(request, DependencyUnavailableError(retry_after_s=1))
