"""
Translate library manager errors into JSON responses.

Conflicts come back as 409 with the structured error body, so a client can
show the prompt and repeat the request with the matching override flag.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from pkgvault.domain.errors import (
    ConflictError,
    NetworkError,
    NotFoundError,
    ParseError,
    PkgVaultError,
    RateLimitedError,
    StateError,
)

logger = logging.getLogger(__name__)


def status_for(error: PkgVaultError) -> int:
    if isinstance(error, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, ConflictError):
        return status.HTTP_409_CONFLICT
    if isinstance(error, StateError):
        return status.HTTP_423_LOCKED
    if isinstance(error, ParseError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(error, RateLimitedError):
        return status.HTTP_429_TOO_MANY_REQUESTS
    if isinstance(error, NetworkError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def pkgvault_error_handler(request: Request, exc: PkgVaultError) -> JSONResponse:
    code = status_for(exc)
    if code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}", exc_info=exc)
    else:
        logger.info(f"{request.method} {request.url.path}: {exc.code}: {exc.message}")

    headers = {}
    if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
        headers["Retry-After"] = str(int(exc.retry_after))
    return JSONResponse(status_code=code, content=exc.to_dict(), headers=headers)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PkgVaultError, pkgvault_error_handler)
