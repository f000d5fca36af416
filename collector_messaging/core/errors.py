from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class APIError(Exception):
    def __init__(
        self,
        *,
        status_code: int,
        code: str,
        message: str,
        details: object | None = None,
    ) -> None:
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details
        super().__init__(message)


def conversation_not_found() -> APIError:
    # Non-participants get the same answer as for a missing row.
    return APIError(status_code=404, code="conversation_not_found", message="Conversation not found")


def message_not_found() -> APIError:
    return APIError(status_code=404, code="message_not_found", message="Message not found")


def forbidden_pair() -> APIError:
    return APIError(status_code=403, code="forbidden_pair", message="Caller must be one of the pair")


def success_response(data: object, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"data": data})


def error_response(
    *,
    status_code: int,
    code: str,
    message: str,
    details: object | None = None,
) -> JSONResponse:
    error: dict[str, object] = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"error": error})


def add_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(APIError)
    async def handle_api_error(_: Request, exc: APIError) -> JSONResponse:
        return error_response(status_code=exc.status_code, code=exc.code, message=exc.message, details=exc.details)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.debug("Request validation failed path=%s errors=%s", request.url.path, len(exc.errors()))
        return error_response(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="validation_error",
            message="Request validation failed",
            details=jsonable_errors(exc),
        )

    @app.exception_handler(HTTPException)
    async def handle_http_error(_: Request, exc: HTTPException) -> JSONResponse:
        # OAuth2PasswordBearer raises a bare 401 when the Authorization header is missing.
        if exc.status_code == status.HTTP_401_UNAUTHORIZED:
            code = "not_authenticated"
        else:
            code = "http_error"
        if isinstance(exc.detail, str):
            return error_response(status_code=exc.status_code, code=code, message=exc.detail)
        return error_response(status_code=exc.status_code, code=code, message="Request failed", details=exc.detail)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error method=%s path=%s", request.method, request.url.path, exc_info=exc)
        return error_response(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            code="internal_error",
            message="Internal server error",
        )


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, object]]:
    # Validator exceptions land in "ctx" and are not JSON serializable.
    return [
        {**error, "ctx": {key: str(value) for key, value in error["ctx"].items()}} if "ctx" in error else dict(error)
        for error in exc.errors()
    ]
