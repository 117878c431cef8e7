"""
Error taxonomy for the inbox service.

Every error carries a stable ``code`` and a human-readable message; the HTTP
layer maps codes to status codes in one exception handler.
"""

from typing import Any, Optional


class InboxError(Exception):
    status_code = 500

    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details


class InvalidRequest(InboxError):
    status_code = 400

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("invalid_request", message, details)


class Unauthorized(InboxError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__("unauthorized", message)


class NotFound(InboxError):
    status_code = 404

    def __init__(self, message: str = "Not found"):
        super().__init__("not_found", message)


class BackendUnavailable(InboxError):
    """Durable backend could not be reached. Never surfaced to HTTP callers."""

    status_code = 503

    def __init__(self, message: str):
        super().__init__("backend_unavailable", message)


class UpstreamSendFailure(InboxError):
    status_code = 502

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("upstream_send_failure", message, details)
