from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .errors import UploadTooLargeError


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """
    Reject requests whose declared body size exceeds the limit before the
    multipart body is parsed and spooled to disk.

    Per-file limits are enforced again while uploads are staged, since
    ``Content-Length`` can be absent (chunked uploads).
    """

    def __init__(self, app, max_bytes: int, max_mb: int):
        super().__init__(app)
        self.max_bytes = max_bytes
        self.max_mb = max_mb

    async def dispatch(self, request: Request, call_next):
        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self.max_bytes:
            error = UploadTooLargeError(self.max_mb, message=f"Request must be under {self.max_mb}MB.")
            return JSONResponse(status_code=error.status_code, content=error.to_payload())
        return await call_next(request)
