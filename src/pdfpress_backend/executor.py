"""
Execution of a single admitted conversion job.

The executor picks the handler for ``job.kind``, runs it under one execution
deadline, and turns every outcome into a terminal job state:

- handler returns        -> ``succeeded``
- deadline elapses       -> ``timed-out`` (``JobTimeoutError``)
- optional tool missing  -> ``failed`` (``FeatureUnavailableError``)
- anything else raises   -> ``failed`` (``CollaboratorError``)

Output is read into memory before returning. The caller releases the job's
artifacts right after, so nothing on disk outlives the job.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .configuration import Settings
from .converters import (
    basic_compress,
    ghostscript_compress,
    ghostscript_quality,
    ghostscript_rasterize,
    images_to_pdf,
    libreoffice_convert,
    merge_pdfs,
    split_pdf,
    zip_files,
)
from .errors import CollaboratorError, FeatureUnavailableError, JobTimeoutError, PressError
from .models import Job, JobKind, JobResult, JobState
from .resources import ResourceTracker
from .tool_probe import GHOSTSCRIPT, LIBREOFFICE, ExternalToolProbe
from .utils import download_name, scrub_paths

logger = logging.getLogger(__name__)

Handler = Callable[[Job], Awaitable[JobResult]]

PDF_MEDIA_TYPE = "application/pdf"
ZIP_MEDIA_TYPE = "application/zip"
DOCX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


class JobExecutor:
    """
    Runs admitted jobs.

    Attributes:
        handlers: Job kind -> coroutine producing the job's result. Public so
            deployments (and tests) can swap a collaborator.
        timeout: Execution deadline in seconds, applied to every kind

    Note:
        In-process conversions run in worker threads, which cannot be
        interrupted. When a deadline passes the job is reported as timed out
        straight away, but its threads keep running; ``pending_work`` lists
        them so the caller can hold the job's slot and files until they stop.
    """

    def __init__(self, settings: Settings, tracker: ResourceTracker, probe: ExternalToolProbe) -> None:
        self.settings = settings
        self.tracker = tracker
        self.probe = probe
        self.timeout = settings.execution.job_timeout
        self.output_root = settings.storage.output_root
        self.scratch_root = settings.storage.scratch_root
        self.handlers: Dict[JobKind, Handler] = {
            JobKind.COMPRESS: self._compress,
            JobKind.MERGE: self._merge,
            JobKind.SPLIT: self._split,
            JobKind.IMAGE_TO_PDF: self._images_to_pdf,
            JobKind.PDF_TO_IMAGE: self._pdf_to_images,
            JobKind.PDF_TO_WORD: self._pdf_to_word,
            JobKind.WORD_TO_PDF: self._word_to_pdf,
        }
        self._workers: Dict[str, Set[asyncio.Task]] = {}

    async def execute(self, job: Job) -> JobResult:
        """
        Run one job to a terminal state.

        Args:
            job: A job in ``running`` state with its inputs staged

        Returns:
            The converted output

        Raises:
            JobTimeoutError: The execution deadline elapsed
            FeatureUnavailableError: A required optional tool is not installed
            CollaboratorError: The conversion itself failed
        """
        if job.state != JobState.RUNNING:
            raise RuntimeError(f"Job {job.id} must be running to execute (is {job.state.value})")

        handler = self.handlers[job.kind]
        job.record(f"Executing {job.kind.value} (limit {self.timeout:g}s).")
        try:
            result = await asyncio.wait_for(handler(job), timeout=self.timeout)
        except asyncio.TimeoutError:
            error = JobTimeoutError(f"Conversion did not finish within {self.timeout:g} seconds.")
            job.transition(JobState.TIMED_OUT, error=error.code, message=error.message)
            logger.warning(f"Job {job.id} timed out after {self.timeout}s")
            raise error from None
        except PressError as exc:
            error = self._scrubbed(exc)
            job.transition(JobState.FAILED, error=error.code, message=error.message)
            logger.warning(f"Job {job.id} failed: {error.code}: {error.message}")
            raise
        except Exception as exc:
            logger.exception(f"Job {job.id} raised an unexpected error")
            error = self._scrubbed(CollaboratorError(f"Conversion failed: {exc}"))
            job.transition(JobState.FAILED, error=error.code, message=error.message)
            raise error from exc

        job.transition(JobState.SUCCEEDED, message=f"Produced {result.filename} ({len(result.content)} bytes).")
        logger.info(f"Job {job.id} succeeded ({len(result.content)} bytes)")
        return result

    def _scrubbed(self, error: PressError) -> PressError:
        roots = self.settings.storage.roots()
        error.message = scrub_paths(error.message, roots)
        if isinstance(error.details, dict):
            error.details = {
                key: scrub_paths(value, roots) if isinstance(value, str) else value
                for key, value in error.details.items()
            }
        return error

    def pending_work(self, job_id: str) -> List[asyncio.Task]:
        """Worker-thread tasks of a job that have not finished yet."""
        return [task for task in self._workers.get(job_id, ()) if not task.done()]

    async def _offload(self, job: Job, func: Callable[..., Any], *args: Any) -> Any:
        """
        Run blocking work in a worker thread on behalf of a job.

        The thread task is shielded: cancelling the caller (job deadline)
        leaves it running and listed in ``pending_work`` until it returns.
        """
        task = asyncio.get_running_loop().create_task(asyncio.to_thread(func, *args))
        self._workers.setdefault(job.id, set()).add(task)
        task.add_done_callback(lambda done: self._forget_worker(job.id, done))
        return await asyncio.shield(task)

    def _forget_worker(self, job_id: str, task: asyncio.Task) -> None:
        workers = self._workers.get(job_id)
        if workers is None:
            return
        workers.discard(task)
        if not workers:
            del self._workers[job_id]
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Worker for job {job_id} ended with {task.exception()!r}")

    async def _read_result(
        self,
        job: Job,
        path: Path,
        media_type: str,
        filename: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> JobResult:
        content = await self._offload(job, path.read_bytes)
        if not content:
            raise CollaboratorError("Conversion produced an empty file")
        return JobResult(content=content, media_type=media_type, filename=filename, headers=headers or {})

    async def _zip_result(self, job: Job, files: List[Path], filename: str) -> JobResult:
        archive = self.tracker.new_file(job.id, self.output_root, "archive", ".zip")
        await self._offload(job, zip_files, files, archive)
        return await self._read_result(job, archive, ZIP_MEDIA_TYPE, filename, {"X-Page-Count": str(len(files))})

    def _source_name(self, job: Job, index: int = 0) -> str:
        return job.filenames[index] if len(job.filenames) > index else "document.pdf"

    async def _compress(self, job: Job) -> JobResult:
        source = job.input_paths[0]
        output = self.tracker.new_file(job.id, self.output_root, "compressed", ".pdf")
        options: Dict[str, Any] = job.options
        method = "basic"

        if await self.probe.is_available(GHOSTSCRIPT):
            quality = ghostscript_quality(options.get("target_size_kb"), options.get("compression_level", "balanced"))
            try:
                await ghostscript_compress(self.probe.binary(GHOSTSCRIPT), source, output, quality)
                method = "ghostscript"
            except CollaboratorError as exc:
                logger.warning(f"Job {job.id}: Ghostscript failed ({exc.message}), using basic compression")
                job.record("Ghostscript failed; falling back to basic compression.")
        else:
            job.record("Ghostscript not available; using basic compression.")

        if method == "basic":
            await self._offload(job, basic_compress, source, output)

        if output.stat().st_size > source.stat().st_size:
            # Never hand back something larger than the upload.
            await self._offload(job, shutil.copyfile, source, output)
            job.record("Compressed output was larger than the input; returning the original.")

        filename = download_name(self._source_name(job), ".pdf", prefix="compressed-")
        return await self._read_result(job, output, PDF_MEDIA_TYPE, filename, {"X-Compression-Method": method})

    async def _merge(self, job: Job) -> JobResult:
        output = self.tracker.new_file(job.id, self.output_root, "merged", ".pdf")
        await self._offload(job, merge_pdfs, job.input_paths, output)
        return await self._read_result(job, output, PDF_MEDIA_TYPE, "merged.pdf")

    async def _split(self, job: Job) -> JobResult:
        pages_dir = self.tracker.new_directory(job.id, self.output_root, "split")
        pages = await self._offload(job, split_pdf, job.input_paths[0], pages_dir)
        return await self._zip_result(job, pages, download_name(self._source_name(job), "-pages.zip"))

    async def _images_to_pdf(self, job: Job) -> JobResult:
        output = self.tracker.new_file(job.id, self.output_root, "images-to-pdf", ".pdf")
        await self._offload(job, images_to_pdf, job.input_paths, output)
        return await self._read_result(job, output, PDF_MEDIA_TYPE, "images.pdf")

    async def _pdf_to_images(self, job: Job) -> JobResult:
        if not await self.probe.is_available(GHOSTSCRIPT):
            raise FeatureUnavailableError("PDF to images requires Ghostscript, which is not installed.")
        images_dir = self.tracker.new_directory(job.id, self.output_root, "images")
        dpi = int(job.options.get("dpi", 150))
        pages = await ghostscript_rasterize(self.probe.binary(GHOSTSCRIPT), job.input_paths[0], images_dir, dpi)
        return await self._zip_result(job, pages, download_name(self._source_name(job), "-images.zip"))

    async def _pdf_to_word(self, job: Job) -> JobResult:
        return await self._libreoffice(job, "docx", DOCX_MEDIA_TYPE, "PDF to Word")

    async def _word_to_pdf(self, job: Job) -> JobResult:
        return await self._libreoffice(job, "pdf", PDF_MEDIA_TYPE, "Word to PDF")

    async def _libreoffice(self, job: Job, target: str, media_type: str, feature: str) -> JobResult:
        if not await self.probe.is_available(LIBREOFFICE):
            raise FeatureUnavailableError(f"{feature} requires LibreOffice, which is not installed.")
        profile_dir = self.tracker.new_directory(job.id, self.scratch_root, "pdfpress-lo-profile")
        output_dir = self.tracker.new_directory(job.id, self.scratch_root, "pdfpress-lo-output")
        produced = await libreoffice_convert(
            self.probe.binary(LIBREOFFICE),
            job.input_paths[0],
            profile_dir,
            output_dir,
            target,
        )
        filename = download_name(self._source_name(job), f".{target}")
        return await self._read_result(job, produced, media_type, filename)
