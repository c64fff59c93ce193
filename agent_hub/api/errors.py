from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from agent_hub.functions.client import ERROR_STATUS, FunctionError
from agent_hub.runtime.errors import LifecycleError


logger = logging.getLogger(__name__)


@dataclass
class APIError(Exception):
    status_code: int
    code: str
    message: str
    details: dict[str, Any] | None = None

    @classmethod
    def from_lifecycle(cls, exc: LifecycleError) -> "APIError":
        return cls(
            status_code=ERROR_STATUS.get(exc.code, 400),
            code=exc.code,
            message=exc.message,
            details=exc.details or None,
        )

    @classmethod
    def from_function_error(cls, err: FunctionError) -> "APIError":
        return cls(
            status_code=int(err.status or 502),
            code=err.code or ("internal" if (err.status or 502) >= 500 else "invalid_argument"),
            message=err.message,
            details=err.details,
        )


def error_response(*, status_code: int, code: str, message: str, details: dict[str, Any] | None = None) -> JSONResponse:
    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return JSONResponse(status_code=int(status_code), content=payload)


async def api_error_handler(_req: Request, exc: APIError) -> JSONResponse:
    return error_response(
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


async def lifecycle_error_handler(req: Request, exc: LifecycleError) -> JSONResponse:
    return await api_error_handler(req, APIError.from_lifecycle(exc))


async def validation_error_handler(_req: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        status_code=400,
        code="invalid_argument",
        message="Request validation failed.",
        details={"errors": exc.errors()},
    )


async def unhandled_error_handler(req: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", req.method, req.url.path)
    return error_response(
        status_code=500,
        code="internal",
        message="Internal server error.",
        details={"type": type(exc).__name__},
    )
