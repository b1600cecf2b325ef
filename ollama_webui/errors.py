from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger("webui.errors")


class APIError(Exception):
    """Raised by route handlers to answer with a specific status and message."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class NotFoundError(APIError):
    def __init__(self, message: str = "Not found") -> None:
        super().__init__(status.HTTP_404_NOT_FOUND, message)


def install_error_handlers(app: FastAPI, *, debug: bool = False) -> None:
    """
    Map the error taxonomy onto JSON responses.

    Internal errors only expose their message when `debug` is enabled.
    """

    @app.exception_handler(APIError)
    async def _api_error(request: Request, exc: APIError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse({"error": exc.message}, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info("Rejected %s %s: invalid body", request.method, request.url.path)
        return JSONResponse(
            {"error": "Validation Error", "details": jsonable_encoder(exc.errors())},
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    @app.exception_handler(Exception)
    async def _internal_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error for %s %s", request.method, request.url.path)
        payload: Dict[str, Any] = {"error": "Internal Server Error"}
        if debug:
            payload["message"] = str(exc)
        return JSONResponse(payload, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
