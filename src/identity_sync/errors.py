"""Error taxonomy of the sync engine and its FastAPI error handlers."""

from typing import Optional

import pydantic
from fastapi import Request
from fastapi import status
from fastapi.responses import JSONResponse
from loguru import logger

from identity_sync.monitoring.logger import log_request_info
from identity_sync.monitoring.logger import log_response_info

__all__ = [
    "IdentitySyncError",
    "NotConfigured",
    "SyncInProgress",
    "NoSyncSupported",
    "SourceConnectionError",
    "SchemaMigrationError",
    "RecordUpsertError",
    "SyncCancelled",
    "NoSyncRunning",
    "ScheduleNotFound",
    "RecordNotFound",
    "DuplicateEmail",
    "NON_RETRYABLE_CODES",
    "error_for_code",
    "handle_broad_exceptions",
    "handle_identity_sync_errors",
    "handle_pydantic_validation_errors",
]


class IdentitySyncError(Exception):
    """Base class; ``code`` is the stable identifier stored in job results and history."""

    code: str = "IdentitySyncError"
    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "", source: Optional[str] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.source = source


class NotConfigured(IdentitySyncError):
    """Connector credentials are missing. Never retried automatically."""

    code = "NotConfigured"
    http_status = status.HTTP_400_BAD_REQUEST


class SyncInProgress(IdentitySyncError):
    """A job for the source is already running. Callers should try again later."""

    code = "SyncInProgress"
    http_status = status.HTTP_409_CONFLICT


class NoSyncSupported(IdentitySyncError):
    """The source receives pushed records and cannot be pulled."""

    code = "NoSyncSupported"
    http_status = status.HTTP_400_BAD_REQUEST


class SourceConnectionError(IdentitySyncError):
    """Transport failure while talking to a source."""

    code = "ConnectionError"
    http_status = status.HTTP_502_BAD_GATEWAY


class SchemaMigrationError(IdentitySyncError):
    """A single field could not be added to a store."""

    code = "SchemaMigrationError"


class RecordUpsertError(IdentitySyncError):
    """A single record could not be written."""

    code = "RecordUpsertError"


class SyncCancelled(IdentitySyncError):
    """The running job was cancelled by an operator."""

    code = "SyncCancelled"
    http_status = status.HTTP_409_CONFLICT


class NoSyncRunning(IdentitySyncError):
    code = "NoSyncRunning"
    http_status = status.HTTP_404_NOT_FOUND


class ScheduleNotFound(IdentitySyncError):
    code = "ScheduleNotFound"
    http_status = status.HTTP_404_NOT_FOUND


class RecordNotFound(IdentitySyncError):
    code = "RecordNotFound"
    http_status = status.HTTP_404_NOT_FOUND


class DuplicateEmail(IdentitySyncError):
    code = "DuplicateEmail"
    http_status = status.HTTP_409_CONFLICT


_ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (
        NotConfigured,
        SyncInProgress,
        NoSyncSupported,
        SourceConnectionError,
        SchemaMigrationError,
        RecordUpsertError,
        SyncCancelled,
        NoSyncRunning,
        ScheduleNotFound,
        RecordNotFound,
        DuplicateEmail,
    )
}

# Outcomes that a retry cannot fix
NON_RETRYABLE_CODES = frozenset({NotConfigured.code, NoSyncSupported.code, SyncCancelled.code})


def error_for_code(code: str, message: str = "", source: Optional[str] = None) -> IdentitySyncError:
    """Rebuild the exception for a stored error code (unknown codes map to the base class)."""
    error_class = _ERRORS_BY_CODE.get(code)
    if error_class is None:
        error = IdentitySyncError(message, source=source)
        error.code = code
        return error
    return error_class(message, source=source)


# fastapi docs on middlewares: https://fastapi.tiangolo.com/tutorial/middleware/
async def handle_broad_exceptions(request: Request, call_next):
    """Handle any exception that goes unhandled by a more specific exception handler."""
    log_request_info(request)
    try:
        return await call_next(request)
    except Exception as err:  # pylint: disable=broad-except
        error_response = {"detail": "Internal server error", "error_type": type(err).__name__}

        logger.opt(exception=err).error(
            "Unhandled exception",
            http_status=500,
            http_method=request.method,
            url_path=str(request.url.path),
            error_type=type(err).__name__,
        )

        response = JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_response,
        )
        log_response_info(response)
        return response


# fastapi docs on error handlers: https://fastapi.tiangolo.com/tutorial/handling-errors/
async def handle_pydantic_validation_errors(request: Request, exc: pydantic.ValidationError) -> JSONResponse:
    """Handle Pydantic validation errors."""
    errors = exc.errors()
    error_response = {
        "detail": [
            {
                "msg": error["msg"],
                "input": error["input"],
            }
            for error in errors
        ]
    }

    logger.warning(
        "Validation error",
        error_count=len(errors),
        http_status=422,
        http_method=request.method,
        url_path=str(request.url.path),
        error_type="ValidationError",
        validation_errors=errors,
    )

    response = JSONResponse(
        status_code=422,
        content=jsonable(error_response),
    )
    log_response_info(response)

    return response


async def handle_identity_sync_errors(request: Request, exc: IdentitySyncError) -> JSONResponse:
    """
    Convert engine errors into HTTP responses.

    The status code comes from the exception class:
    - NotConfigured, NoSyncSupported -> 400
    - ScheduleNotFound, RecordNotFound, NoSyncRunning -> 404
    - SyncInProgress, DuplicateEmail -> 409
    - ConnectionError -> 502
    - anything else -> 500

    Parameters
    ----------
    request : Request
        FastAPI request object
    exc : IdentitySyncError
        Engine exception

    Returns
    -------
    JSONResponse
        HTTP response carrying ``error`` (the code) and ``detail`` (the message)
    """
    error_response = {"error": exc.code, "detail": exc.message}
    if exc.source:
        error_response["source"] = exc.source

    log = logger.error if exc.http_status >= 500 else logger.warning
    log(
        "Identity sync error",
        error_message=exc.message,
        http_status=exc.http_status,
        http_method=request.method,
        url_path=str(request.url.path),
        error_type=exc.code,
        source=exc.source,
    )

    response = JSONResponse(status_code=exc.http_status, content=error_response)
    log_response_info(response)
    return response


def jsonable(payload):
    """Make validation error payloads JSON safe (inputs may hold arbitrary objects)."""
    if isinstance(payload, dict):
        return {key: jsonable(value) for key, value in payload.items()}
    if isinstance(payload, (list, tuple)):
        return [jsonable(value) for value in payload]
    if payload is None or isinstance(payload, (str, int, float, bool)):
        return payload
    return str(payload)
