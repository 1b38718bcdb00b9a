from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Sequence

import uvicorn
from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from .configuration import get_settings
from .converters import COMPRESSION_LEVELS
from .errors import InvalidRequestError, JobNotFoundError, PressError, ServerBusyError, UploadTooLargeError
from .job_manager import JobManager
from .middleware import RequestSizeLimitMiddleware
from .models import ErrorResponse, HealthReport, JobDetail, JobKind, JobResult, JobSummary
from .utils import split_extension

logger = logging.getLogger(__name__)

PDF_SUFFIXES = {".pdf"}
IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".webp"}
WORD_SUFFIXES = {".doc", ".docx", ".odt", ".rtf"}
MIN_DPI, MAX_DPI = 36, 300
EXPOSED_HEADERS = ["Content-Disposition", "X-Job-Id", "X-Compression-Method", "X-Page-Count"]


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


settings = get_settings()
configure_logging(settings.logging.level)
job_manager = JobManager(settings)


@asynccontextmanager
async def lifespan(_: FastAPI):
    await job_manager.start_background_tasks()
    try:
        yield
    finally:
        logger.info("Shutting down background tasks")
        await job_manager.stop_background_tasks()


app = FastAPI(
    title="PDF Press API",
    version="0.1.0",
    lifespan=lifespan,
    responses={status: {"model": ErrorResponse} for status in (400, 413, 500, 501, 503, 504)},
)
app.add_middleware(
    RequestSizeLimitMiddleware,
    max_bytes=settings.uploads.max_request_bytes,
    max_mb=settings.uploads.max_request_mb,
)
# Added last so it wraps everything, including early 413s.
allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=EXPOSED_HEADERS,
)


def get_job_manager() -> JobManager:
    return job_manager


@app.exception_handler(PressError)
async def press_error_handler(request: Request, exc: PressError) -> JSONResponse:
    headers = None
    if isinstance(exc, ServerBusyError):
        headers = {"Retry-After": str(max(1, int(settings.admission.queue_timeout)))}
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [{"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()]
    error = InvalidRequestError("Request validation failed.", details=details)
    return JSONResponse(status_code=error.status_code, content=error.to_payload())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content=PressError().to_payload())


def _validate_uploads(
    manager: JobManager,
    uploads: Optional[Sequence[UploadFile]],
    allowed: set,
    kind_label: str,
    minimum: int = 1,
    maximum: int = 1,
) -> List[UploadFile]:
    files = [upload for upload in (uploads or []) if upload is not None]
    if not files:
        raise InvalidRequestError("No file uploaded")
    if len(files) < minimum:
        raise InvalidRequestError(
            f"Need at least {minimum} files",
            details={"received": len(files), "minimum": minimum},
        )
    if len(files) > maximum:
        raise InvalidRequestError(
            f"At most {maximum} files are accepted",
            details={"received": len(files), "maximum": maximum},
        )

    limits = manager.settings.uploads
    for upload in files:
        if not upload.filename:
            raise InvalidRequestError("Uploaded file must have a filename")
        _, suffix = split_extension(upload.filename)
        if suffix not in allowed:
            raise InvalidRequestError(
                f"Only {kind_label} uploads are supported",
                details={"filename": upload.filename, "allowed": sorted(allowed)},
            )
        if upload.size is not None and upload.size > limits.max_file_bytes:
            raise UploadTooLargeError(limits.max_file_size_mb)
    return files


def _file_response(job_id: str, result: JobResult) -> Response:
    headers: Dict[str, str] = {
        "Content-Disposition": f'attachment; filename="{result.filename}"',
        "X-Job-Id": job_id,
        **result.headers,
    }
    return Response(content=result.content, media_type=result.media_type, headers=headers)


async def _convert(
    request: Request,
    manager: JobManager,
    kind: JobKind,
    uploads: List[UploadFile],
    options: Optional[Dict[str, Any]] = None,
) -> Response:
    job = manager.create_job(kind, [upload.filename or "" for upload in uploads], options)
    result = await manager.run(job, uploads, disconnected=request.is_disconnected)
    return _file_response(job.id, result)


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/health", response_model=HealthReport)
async def health(manager: JobManager = Depends(get_job_manager)) -> HealthReport:
    return await manager.health()


@app.get("/api/jobs", response_model=list[JobSummary])
def list_jobs(manager: JobManager = Depends(get_job_manager)) -> list[JobSummary]:
    return manager.list_jobs()


@app.get("/api/jobs/{job_id}", response_model=JobDetail)
def get_job(job_id: str, manager: JobManager = Depends(get_job_manager)) -> JobDetail:
    job = manager.get_job(job_id)
    if not job:
        raise JobNotFoundError()
    return job


@app.post("/api/compress")
async def compress(
    request: Request,
    file: Optional[UploadFile] = File(None),
    target_size: Optional[str] = Form(None, alias="targetSize"),
    compression_level: str = Form("balanced", alias="compressionLevel"),
    manager: JobManager = Depends(get_job_manager),
) -> Response:
    uploads = _validate_uploads(manager, [file], PDF_SUFFIXES, "PDF")
    if compression_level not in COMPRESSION_LEVELS:
        raise InvalidRequestError(
            "Unknown compression level",
            details={"compressionLevel": compression_level, "allowed": list(COMPRESSION_LEVELS)},
        )
    target_size_kb = None
    if target_size not in (None, ""):
        try:
            target_size_kb = int(target_size)
        except ValueError:
            raise InvalidRequestError("targetSize must be a whole number of kilobytes") from None
        if target_size_kb <= 0:
            raise InvalidRequestError("targetSize must be positive")

    options = {"target_size_kb": target_size_kb, "compression_level": compression_level}
    return await _convert(request, manager, JobKind.COMPRESS, uploads, options)


@app.post("/api/merge")
async def merge(
    request: Request,
    files: Optional[List[UploadFile]] = File(None),
    manager: JobManager = Depends(get_job_manager),
) -> Response:
    uploads = _validate_uploads(manager, files, PDF_SUFFIXES, "PDF", minimum=2, maximum=manager.settings.uploads.max_merge_files)
    return await _convert(request, manager, JobKind.MERGE, uploads)


@app.post("/api/split")
async def split(
    request: Request,
    file: Optional[UploadFile] = File(None),
    manager: JobManager = Depends(get_job_manager),
) -> Response:
    uploads = _validate_uploads(manager, [file], PDF_SUFFIXES, "PDF")
    return await _convert(request, manager, JobKind.SPLIT, uploads)


@app.post("/api/images-to-pdf")
async def images_to_pdf(
    request: Request,
    files: Optional[List[UploadFile]] = File(None),
    manager: JobManager = Depends(get_job_manager),
) -> Response:
    uploads = _validate_uploads(manager, files, IMAGE_SUFFIXES, "PNG, JPEG or WebP image", maximum=manager.settings.uploads.max_images)
    return await _convert(request, manager, JobKind.IMAGE_TO_PDF, uploads)


@app.post("/api/pdf-to-images")
async def pdf_to_images(
    request: Request,
    file: Optional[UploadFile] = File(None),
    dpi: int = Form(150),
    manager: JobManager = Depends(get_job_manager),
) -> Response:
    uploads = _validate_uploads(manager, [file], PDF_SUFFIXES, "PDF")
    if not MIN_DPI <= dpi <= MAX_DPI:
        raise InvalidRequestError(f"dpi must be between {MIN_DPI} and {MAX_DPI}")
    return await _convert(request, manager, JobKind.PDF_TO_IMAGE, uploads, {"dpi": dpi})


@app.post("/api/pdf-to-word")
async def pdf_to_word(
    request: Request,
    file: Optional[UploadFile] = File(None),
    manager: JobManager = Depends(get_job_manager),
) -> Response:
    uploads = _validate_uploads(manager, [file], PDF_SUFFIXES, "PDF")
    return await _convert(request, manager, JobKind.PDF_TO_WORD, uploads)


@app.post("/api/word-to-pdf")
async def word_to_pdf(
    request: Request,
    file: Optional[UploadFile] = File(None),
    manager: JobManager = Depends(get_job_manager),
) -> Response:
    uploads = _validate_uploads(manager, [file], WORD_SUFFIXES, "Word document")
    return await _convert(request, manager, JobKind.WORD_TO_PDF, uploads)


def run() -> None:
    uvicorn.run("pdfpress_backend.main:app", host=settings.server.host, port=settings.server.port)
