"""
Error taxonomy for conversion requests.

Every failure a client can observe maps to one ``PressError`` subclass with a
stable ``code`` and an HTTP status. The FastAPI exception handlers in
``main`` render them as ``{"error": code, "message": ..., "details": ...}``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class PressError(Exception):
    """Base class for errors that are reported to API clients."""

    code = "internal_error"
    status_code = 500
    default_message = "Unexpected server error."

    def __init__(self, message: Optional[str] = None, details: Any = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class InvalidRequestError(PressError):
    code = "invalid_request"
    status_code = 400
    default_message = "The request is missing required input."


class UploadTooLargeError(PressError):
    code = "file_too_large"
    status_code = 413
    default_message = "Uploaded file exceeds the size limit."

    def __init__(self, max_size_mb: int, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"File must be under {max_size_mb}MB.",
            details={"maxSize": f"{max_size_mb}MB"},
        )
        self.max_size_mb = max_size_mb


class ServerBusyError(PressError):
    code = "server_busy"
    status_code = 503
    default_message = "Too many concurrent requests. Please try again in a moment."


class ClientDisconnectedError(PressError):
    # 499 is never delivered; the client is already gone.
    code = "client_disconnected"
    status_code = 499
    default_message = "Client disconnected while the job was queued."


class JobTimeoutError(PressError):
    code = "job_timeout"
    status_code = 504
    default_message = "The conversion did not finish in time."


class CollaboratorError(PressError):
    code = "conversion_failed"
    status_code = 500
    default_message = "Conversion failed."


class FeatureUnavailableError(PressError):
    code = "feature_unavailable"
    status_code = 501
    default_message = "This feature is not available on this server."


class InvalidTransitionError(RuntimeError):
    """Raised when a job is moved out of a terminal state or skips a step."""


class JobNotFoundError(PressError):
    code = "not_found"
    status_code = 404
    default_message = "Job not found."
