"""
Structured JSON logging for the inbox service.

One access line is written per HTTP request by ``RequestLoggingMiddleware``.
Handlers can attach extra fields to that line (webhook outcome, reply counts)
with ``annotate_request_log``; every line also carries the storage mode the
request was served from, so degraded operation is visible in the logs.
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from inbox.metrics import record_http_request

REQUEST_ID_HEADER = "X-Request-ID"
ACCESS_LOGGER = "inbox.requests"

# Paths that are neither logged nor counted
QUIET_PATHS = frozenset({"/metrics", "/health/live"})

_request_id: ContextVar[Optional[str]] = ContextVar("inbox_request_id", default=None)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Adds ``ts`` (ISO-8601 UTC, milliseconds), ``level`` and the current request id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            now = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record["ts"] = now.isoformat(timespec="milliseconds").replace("+00:00", "Z")
        log_record["level"] = record.levelname

        request_id = _request_id.get()
        if request_id and "request_id" not in log_record:
            log_record["request_id"] = request_id


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Route the root logger and uvicorn's loggers through one JSON handler on stdout.

    Args:
        log_level: Logging level name, case-insensitive
    """
    root = logging.getLogger()
    root.setLevel(log_level.upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error"):
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False

    # Replaced by the middleware's access line
    logging.getLogger("uvicorn.access").disabled = True

    # Inbound payloads and provider responses are logged at DEBUG only
    logging.getLogger("httpx").setLevel(max(root.level, logging.WARNING))
    return root


def annotate_request_log(request: Request, **fields: Any) -> None:
    """Merge ``fields`` into the access line the middleware writes for ``request``."""
    extra = getattr(request.state, "log_fields", None)
    if extra is None:
        extra = {}
        request.state.log_fields = extra
    extra.update(fields)


def log_webhook_data(
    request: Request,
    result: str,
    created: int = 0,
    duplicates: int = 0,
    skipped: int = 0,
) -> None:
    """Webhook outcome plus per-envelope counts for the access line."""
    annotate_request_log(
        request,
        result=result,
        created=created,
        duplicates=duplicates,
        skipped=skipped,
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Assigns a request id (reusing an inbound ``X-Request-ID``), times the
    request, records HTTP metrics and writes one access line:

    - request_id, method, path, status, latency_ms, storage_mode
    - any fields added through ``annotate_request_log``
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        token = _request_id.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id

            path = request.url.path
            if path in QUIET_PATHS:
                return response

            latency_seconds = time.perf_counter() - started
            record_http_request(
                method=request.method,
                path=path,
                status=response.status_code,
                latency_seconds=latency_seconds,
            )

            fields = {
                "request_id": request_id,
                "method": request.method,
                "path": path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }
            mode = getattr(request.app.state, "mode", None)
            if mode is not None:
                fields["storage_mode"] = mode.mode.value
            fields.update(getattr(request.state, "log_fields", None) or {})

            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            logging.getLogger(ACCESS_LOGGER).log(level, "Request completed", extra=fields)
            return response
        finally:
            _request_id.reset(token)
