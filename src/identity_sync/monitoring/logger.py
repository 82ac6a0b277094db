import json
import logging
import sys
import traceback

import loguru
from fastapi import Request
from fastapi import Response
from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<bold><white>{message}</white></bold> | <dim>{extra}</dim> {stacktrace}"
)

# Third-party loggers that flood the console at DEBUG
QUIET_LOGGERS = ("ldap3", "httpx", "httpcore", "apscheduler")


# Runs at import time from src/identity_sync/__init__.py and again from create_app()
def configure_logger(level: str = "INFO") -> None:
    """
    Send every log line to stdout through ``process_log_record``.

    Args:
        level: Minimum level for the console sink (DEBUG, INFO, WARNING, ...)
    """
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.remove()  # drop loguru's default stderr sink

    logger.add(
        sink=sys.stdout,
        level=level.upper(),
        diagnose=False,
        format=LOG_FORMAT,
        filter=process_log_record,
    )


def process_log_record(record: "loguru.Record") -> "loguru.Record":
    r"""
    Prepare a record for ``LOG_FORMAT``.

    Keyword extras become one JSON string, and an attached exception becomes a
    ``stacktrace`` joined with \r so collectors keep it as one event.
    """
    extra = record["extra"]

    # Every sink shares the record; serialize only once
    if extra and isinstance(extra, dict):
        record["extra"] = json.dumps(extra, default=str)

    record["stacktrace"] = format_stacktrace(record["exception"]) if record["exception"] else ""
    return record


def format_stacktrace(exc_info, single_line: bool = True) -> str:
    """Render an ``(type, value, traceback)`` triple the way ``traceback`` prints it."""
    exc_type, exc_value, exc_traceback = exc_info
    stacktrace = "".join(traceback.format_exception(exc_type, exc_value, exc_traceback))
    return stacktrace.replace("\n", "\r") if single_line else stacktrace


def log_request_info(request: Request) -> None:
    logger.debug(
        "Request received",
        http_request={
            "method": request.method,
            "path": request.url.path,
            "query": dict(request.query_params.items()),
            "client": request.client.host if request.client else None,
        },
    )


def log_response_info(response: Response) -> None:
    logger.debug(
        "Response sent",
        http_response={
            "status_code": response.status_code,
            "content_length": response.headers.get("content-length"),
        },
    )
