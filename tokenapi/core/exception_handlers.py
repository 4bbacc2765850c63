import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .exceptions import BaseAPIException, InternalServerError

logger = logging.getLogger("tokenapi")


def error_body(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"success": False, "error": {"code": code, "message": message, "details": details or {}}}


def _describe(request: Request) -> str:
    client = request.client.host if request.client else "-"
    request_id = getattr(request.state, "request_id", "-")
    return f"{request.method} {request.url.path} from {client} [{request_id}]"


def _log_by_status(tag: str, request: Request, status_code: int, detail: Any, exc: Optional[BaseException] = None) -> None:
    message = f"[{tag}] {_describe(request)} -> {status_code}: {detail}"
    if status_code >= 500:
        if exc is not None:
            message += "\n" + "".join(traceback.format_tb(exc.__traceback__))
        logger.error(message)
    else:
        logger.warning(message)


async def handle_base_api_exception(request: Request, exc: BaseAPIException) -> JSONResponse:
    _log_by_status(exc.error_code, request, exc.status_code, exc.message, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.detail)


async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    _log_by_status("HTTPException", request, exc.status_code, exc.detail, exc)
    if isinstance(exc.detail, dict) and "error" in exc.detail:
        content = exc.detail
    else:
        content = error_body("HTTP_ERROR", str(exc.detail))
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = jsonable_encoder(exc.errors())
    _log_by_status("RequestValidation", request, 422, errors)
    return JSONResponse(
        status_code=422,
        content=error_body("VALIDATION_001", "Validation failed", {"errors": errors}),
    )


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        f"[Unhandled {type(exc).__name__}] {_describe(request)}: {str(exc)}\n"
        + "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    )
    internal = InternalServerError()
    return JSONResponse(status_code=internal.status_code, content=internal.detail)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BaseAPIException, handle_base_api_exception)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, handle_http_exception)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, handle_validation_error)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, handle_unexpected_error)
