"""
Job orchestration and lifecycle management for conversion requests.

This module ties the core components together for each request:
- Job creation and registration in a bounded history
- Admission under the concurrency limit
- Upload staging as tracked artifacts
- Execution and guaranteed artifact release
- Health reporting

The JobManager class is the only object the HTTP layer talks to.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Sequence, Set

from fastapi import UploadFile

from .admission import AdmissionController, DisconnectCheck
from .configuration import Settings, get_settings
from .errors import PressError, UploadTooLargeError
from .executor import JobExecutor
from .models import AdmissionReport, HealthReport, Job, JobDetail, JobKind, JobResult, JobState, JobSummary, MemoryReport
from .monitoring import MemoryWatch, memory_usage_mb
from .reaper import BackgroundReaper
from .resources import ResourceTracker
from .tool_probe import ExternalToolProbe
from .utils import ensure_directory, sanitize_label, split_extension

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_BYTES = 1024 * 1024


class JobManager:
    """
    Central coordinator for job lifecycle management.

    Thread Safety:
        The job history is protected by a lock so it can be read from
        threadpool-run endpoints while the event loop updates it.

    Attributes:
        settings: Effective service settings
        tracker: Artifact registry shared with the executor
        admission: Concurrency gate
        executor: Runs admitted jobs
        reaper: Periodic backstop sweep (started by the app lifespan)
    """

    def __init__(self, settings: Optional[Settings] = None, probe: Optional[ExternalToolProbe] = None) -> None:
        self.settings = settings or get_settings()
        storage = self.settings.storage
        self.upload_root = ensure_directory(storage.upload_root)
        self.output_root = ensure_directory(storage.output_root)
        self.scratch_root = ensure_directory(storage.scratch_root)

        self.tracker = ResourceTracker()
        self.probe = probe or ExternalToolProbe(self.settings)
        self.admission = AdmissionController(
            limit=self.settings.admission.max_concurrent_jobs,
            max_queue_length=self.settings.admission.max_queue_length,
            queue_timeout=self.settings.admission.queue_timeout,
            poll_interval=self.settings.admission.disconnect_poll_interval,
        )
        self.executor = JobExecutor(self.settings, self.tracker, self.probe)
        self.reaper = BackgroundReaper(
            roots=[self.upload_root, self.output_root],
            scratch_root=self.scratch_root,
            retention=self.settings.reaper.retention,
            interval=self.settings.reaper.interval,
            tracker=self.tracker,
        )
        self.memory_watch = MemoryWatch(self.settings.memory.warning_mb, self.settings.memory.check_interval)

        self._jobs: "OrderedDict[str, Job]" = OrderedDict()
        self._lock = Lock()
        self._draining: Set[asyncio.Future] = set()

    def create_job(self, kind: JobKind, filenames: Sequence[str], options: Optional[Dict[str, Any]] = None) -> Job:
        """
        Create and register a new job in ``pending`` state.

        Only the newest ``admission.job_history`` jobs are kept.
        """
        job = Job(kind=kind, filenames=list(filenames), options=dict(options or {}))
        job.record("Job registered.")
        with self._lock:
            self._jobs[job.id] = job
            while len(self._jobs) > self.settings.admission.job_history:
                self._jobs.popitem(last=False)
        return job

    def list_jobs(self) -> List[JobSummary]:
        """Job summaries, newest first."""
        with self._lock:
            jobs = list(self._jobs.values())
        return [job.to_summary() for job in reversed(jobs)]

    def get_job(self, job_id: str) -> Optional[JobDetail]:
        with self._lock:
            job = self._jobs.get(job_id)
        return job.to_detail() if job else None

    async def run(
        self,
        job: Job,
        uploads: Sequence[UploadFile],
        disconnected: Optional[DisconnectCheck] = None,
    ) -> JobResult:
        """
        Admit, stage, execute and clean up one job.

        Args:
            job: A freshly created job
            uploads: Validated uploads, in the order the conversion should use
            disconnected: Optional coroutine reporting client disconnects while queued

        Returns:
            The converted output

        Note:
            Artifacts are released before the admission slot, and both are
            released on every exit path. The job is always terminal on return.
            If a worker thread outlives the job (deadline or cancellation),
            the error is still returned at once, but the slot and the files
            stay held until that thread finishes.
        """
        await self.admission.acquire(job, disconnected)
        try:
            try:
                job.input_paths = await self._stage_uploads(job, uploads)
            except PressError as exc:
                job.transition(JobState.FAILED, error=exc.code, message=exc.message)
                raise
            return await self.executor.execute(job)
        finally:
            if job.state == JobState.RUNNING:
                # Cancelled or crashed outside the executor's own handling.
                job.transition(JobState.FAILED, error="internal_error", message="Job aborted.")
            self._finish(job)

    def _finish(self, job: Job) -> None:
        pending = self.executor.pending_work(job.id)
        if not pending:
            self._release(job)
            return

        logger.warning(f"Job {job.id} has {len(pending)} conversion(s) still running; holding its slot until they stop")
        job.record("Holding slot until background conversion work stops.")
        drain = asyncio.gather(*pending, return_exceptions=True)
        self._draining.add(drain)
        drain.add_done_callback(lambda done: self._drained(job, done))

    def _drained(self, job: Job, drain: asyncio.Future) -> None:
        self._draining.discard(drain)
        self._finish(job)

    def _release(self, job: Job) -> None:
        self.tracker.release_all(job.id)
        self.admission.release(job)

    async def _stage_uploads(self, job: Job, uploads: Sequence[UploadFile]) -> List[Path]:
        limit = self.settings.uploads.max_file_bytes
        staged = []
        for upload in uploads:
            stem, suffix = split_extension(upload.filename or "upload")
            destination = self.tracker.new_file(job.id, self.upload_root, sanitize_label(stem, "upload"), suffix)
            written = 0
            with destination.open("wb") as buffer:
                while chunk := await upload.read(UPLOAD_CHUNK_BYTES):
                    written += len(chunk)
                    if written > limit:
                        raise UploadTooLargeError(self.settings.uploads.max_file_size_mb)
                    buffer.write(chunk)
            await upload.close()
            staged.append(destination)
        job.record(f"Staged {len(staged)} upload(s).")
        return staged

    async def health(self) -> HealthReport:
        return HealthReport(
            status="OK",
            memory=MemoryReport(**memory_usage_mb(), warning_mb=self.settings.memory.warning_mb),
            requests=AdmissionReport(**self.admission.snapshot()),
            tools=await self.probe.availability(),
        )

    async def start_background_tasks(self) -> None:
        availability = await self.probe.availability()
        logger.info(
            f"Admission: max {self.admission.limit} concurrent, queue {self.admission.max_queue_length} "
            f"({self.admission.queue_timeout:g}s), job limit {self.executor.timeout:g}s"
        )
        for tool, available in availability.items():
            logger.info(f"Tool {tool}: {'available' if available else 'NOT available'}")
        self.reaper.start()
        self.memory_watch.start()

    async def stop_background_tasks(self) -> None:
        await self.reaper.stop()
        await self.memory_watch.stop()
