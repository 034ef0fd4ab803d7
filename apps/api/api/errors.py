"""Translate service errors into the `{success: false, error}` envelope."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from apps.api.services.tickets import (
    TicketNotFoundError,
    TicketServiceError,
    TicketStoreError,
    TicketValidationError,
)

logger = logging.getLogger(__name__)


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def _describe_validation_error(exc: RequestValidationError) -> str:
    parts: list[str] = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()) if item != "body")
        message = error.get("msg", "Invalid value")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "Invalid request"


async def _handle_validation(request: Request, exc: TicketValidationError) -> JSONResponse:
    return error_response(400, str(exc))


async def _handle_not_found(request: Request, exc: TicketNotFoundError) -> JSONResponse:
    return error_response(404, str(exc))


async def _handle_store(request: Request, exc: TicketStoreError) -> JSONResponse:
    logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc)
    return error_response(500, str(exc))


async def _handle_service(request: Request, exc: TicketServiceError) -> JSONResponse:
    logger.error("Unhandled ticket service error on %s %s: %s", request.method, request.url.path, exc)
    return error_response(500, str(exc))


async def _handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(400, _describe_validation_error(exc))


async def _handle_http(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return error_response(exc.status_code, str(exc.detail))


async def _handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unexpected error on %s %s", request.method, request.url.path)
    return error_response(500, str(exc) or exc.__class__.__name__)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TicketValidationError, _handle_validation)
    app.add_exception_handler(TicketNotFoundError, _handle_not_found)
    app.add_exception_handler(TicketStoreError, _handle_store)
    app.add_exception_handler(TicketServiceError, _handle_service)
    app.add_exception_handler(RequestValidationError, _handle_request_validation)
    app.add_exception_handler(StarletteHTTPException, _handle_http)
    app.add_exception_handler(Exception, _handle_unexpected)
