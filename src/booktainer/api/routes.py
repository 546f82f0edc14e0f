"""
Service routes and error rendering.

Endpoints:
    GET /health   - liveness plus provider, cache and token state
    GET /metrics  - Prometheus exposition

Error Handling:
    Every BooktainerError is rendered as JSON:
    {
        "ok": false,
        "error": "<ERROR_CODE>",
        "message": "<human readable message>",
        "request_id": "<id>"
    }

    HTTP status codes are mapped from error codes:
        - INVALID_INPUT -> 400
        - NOT_CONFIGURED -> 400
        - FORBIDDEN -> 403
        - NOT_FOUND -> 404
        - CONVERSION_FAILED -> 500
        - PROVIDER_FAILED -> 502
"""
from __future__ import annotations

from fastapi import APIRouter, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from booktainer import __version__
from booktainer.core.logging import error, get_logger, get_request_id, warn
from booktainer.core.metrics import metrics
from booktainer.services.errors import BooktainerError, ErrorCode

router = APIRouter()

_LOG = get_logger("booktainer.api")

STATUS_BY_CODE = {
    ErrorCode.INVALID_INPUT: 400,
    ErrorCode.NOT_CONFIGURED: 400,
    ErrorCode.PARSE_FAILED: 400,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CONVERSION_FAILED: 500,
    ErrorCode.INTERNAL_ERROR: 500,
    ErrorCode.PROVIDER_FAILED: 502,
}


def error_response(err: BooktainerError) -> JSONResponse:
    status_code = STATUS_BY_CODE.get(err.code, 500)
    body = err.to_dict()
    body["request_id"] = get_request_id()
    return JSONResponse(status_code=status_code, content=body)


async def _handle_booktainer_error(request: Request, exc: BooktainerError) -> JSONResponse:
    if STATUS_BY_CODE.get(exc.code, 500) >= 500:
        error(_LOG, "request_failed", path=request.url.path, code=exc.code, error=exc.message)
    else:
        warn(_LOG, "request_rejected", path=request.url.path, code=exc.code, error=exc.message)
    return error_response(exc)


async def _handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{field}: {first.get('msg', 'invalid')}" if field else "Invalid request"
    return error_response(BooktainerError(message, ErrorCode.INVALID_INPUT))


async def _handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    error(_LOG, "unhandled_error", path=request.url.path, error=repr(exc))
    return error_response(BooktainerError("Internal server error", ErrorCode.INTERNAL_ERROR))


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BooktainerError, _handle_booktainer_error)
    app.add_exception_handler(RequestValidationError, _handle_validation_error)
    app.add_exception_handler(Exception, _handle_unexpected)


@router.get("/health")
def health(request: Request):
    state = request.app.state
    return {
        "ok": True,
        "version": __version__,
        "uploads_enabled": state.config.library.allow_upload,
        "tts": state.tts.get_health_info(),
        "tokens_live": len(state.tokens),
    }


@router.get("/metrics")
def prometheus_metrics():
    content, content_type = metrics.get_metrics_response()
    return Response(content=content, media_type=content_type)
