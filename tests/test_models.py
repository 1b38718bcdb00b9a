"""
Tests for the job state machine and filename helpers.
"""

from pathlib import Path

import pytest

from pdfpress_backend.errors import InvalidTransitionError, UploadTooLargeError
from pdfpress_backend.models import Job, JobKind, JobState
from pdfpress_backend.utils import download_name, sanitize_label, scrub_paths, split_extension


class TestJobTransitions:
    def test_happy_path(self):
        job = Job(kind=JobKind.SPLIT)

        job.transition(JobState.QUEUED)
        job.transition(JobState.RUNNING)
        job.transition(JobState.SUCCEEDED, message="done")

        assert job.is_terminal
        assert job.message == "done"
        assert [event.message.split(".")[0] for event in job.events] == [
            "State changed to queued",
            "State changed to running",
            "State changed to succeeded",
        ]

    @pytest.mark.parametrize("terminal", [JobState.SUCCEEDED, JobState.FAILED, JobState.TIMED_OUT])
    def test_terminal_states_are_final(self, terminal):
        job = Job(kind=JobKind.COMPRESS)
        job.transition(JobState.RUNNING)
        job.transition(terminal)

        with pytest.raises(InvalidTransitionError):
            job.transition(JobState.RUNNING)

    def test_cannot_skip_running(self):
        job = Job(kind=JobKind.COMPRESS)

        with pytest.raises(InvalidTransitionError):
            job.transition(JobState.SUCCEEDED)

    def test_queued_job_cannot_time_out(self):
        job = Job(kind=JobKind.COMPRESS)
        job.transition(JobState.QUEUED)

        with pytest.raises(InvalidTransitionError):
            job.transition(JobState.TIMED_OUT)

    def test_rejection_records_error(self):
        job = Job(kind=JobKind.MERGE)

        job.transition(JobState.REJECTED, error="server_busy")

        assert job.to_summary().error == "server_busy"
        assert job.to_summary().state == "rejected"


class TestErrorPayloads:
    def test_too_large_payload(self):
        assert UploadTooLargeError(25).to_payload() == {
            "error": "file_too_large",
            "message": "File must be under 25MB.",
            "details": {"maxSize": "25MB"},
        }


class TestFilenameHelpers:
    def test_sanitize_label(self):
        assert sanitize_label("My Document!", "document") == "My-Document"
        assert sanitize_label("@#$", "document") == "document"

    def test_split_extension_lowercases_suffix(self):
        assert split_extension("Report.PDF") == ("Report", ".pdf")

    def test_download_name(self):
        assert download_name("my report.docx", ".pdf") == "my-report.pdf"
        assert download_name("scan.pdf", ".pdf", prefix="compressed-") == "compressed-scan.pdf"
        assert download_name("", ".pdf") == "document.pdf"

    def test_scrub_paths_prefers_longest_root(self):
        roots = [Path("/srv/data"), Path("/srv/data/output")]

        scrubbed = scrub_paths("failed on /srv/data/output/x.pdf and /srv/data/y.pdf", roots)

        assert scrubbed == "failed on <storage>/x.pdf and <storage>/y.pdf"
