from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel

from .errors import InvalidTransitionError


class JobKind(str, Enum):
    COMPRESS = "compress"
    MERGE = "merge"
    SPLIT = "split"
    IMAGE_TO_PDF = "image-to-pdf"
    PDF_TO_IMAGE = "pdf-to-image"
    PDF_TO_WORD = "pdf-to-word"
    WORD_TO_PDF = "word-to-pdf"


class JobState(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed-out"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.TIMED_OUT, JobState.REJECTED})

ALLOWED_TRANSITIONS: Dict[JobState, frozenset] = {
    JobState.PENDING: frozenset({JobState.QUEUED, JobState.RUNNING, JobState.REJECTED}),
    JobState.QUEUED: frozenset({JobState.RUNNING, JobState.REJECTED}),
    JobState.RUNNING: frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.TIMED_OUT}),
}


class JobEvent(BaseModel):
    timestamp: datetime
    message: str


class JobSummary(BaseModel):
    id: str
    kind: JobKind
    state: JobState
    created_at: datetime
    updated_at: datetime
    filenames: List[str]
    error: Optional[str] = None
    message: Optional[str] = None


class JobDetail(JobSummary):
    options: Dict[str, Any]
    events: List[JobEvent]


class MemoryReport(BaseModel):
    rss_mb: int
    vms_mb: int
    warning_mb: int


class AdmissionReport(BaseModel):
    active: int
    queued: int
    max_concurrent: int
    max_queue_length: int


class HealthReport(BaseModel):
    status: str
    memory: MemoryReport
    requests: AdmissionReport
    tools: Dict[str, bool]


class ErrorResponse(BaseModel):
    error: str
    message: str
    details: Optional[Any] = None


@dataclass
class Job:
    """
    One inbound request's unit of conversion work.

    State changes go through ``transition`` so terminal states stay terminal.

    Attributes:
        id: Unique job identifier (hex UUID)
        kind: Which conversion to run
        options: Option bag parsed from the request form
        filenames: Original upload filenames, in upload order
        input_paths: Staged upload artifacts, in upload order
        state: Current lifecycle state
        error: Stable error code once failed/timed-out/rejected
        message: Human-readable outcome description
        events: Chronological lifecycle log
    """

    kind: JobKind
    options: Dict[str, Any] = field(default_factory=dict)
    filenames: List[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: uuid4().hex)
    input_paths: List[Path] = field(default_factory=list)
    state: JobState = JobState.PENDING
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    error: Optional[str] = None
    message: Optional[str] = None
    events: List[JobEvent] = field(default_factory=list)

    def record(self, message: str) -> None:
        event = JobEvent(timestamp=datetime.utcnow(), message=message)
        self.events.append(event)
        self.updated_at = event.timestamp

    def transition(self, state: JobState, error: Optional[str] = None, message: Optional[str] = None) -> None:
        if state not in ALLOWED_TRANSITIONS.get(self.state, frozenset()):
            raise InvalidTransitionError(f"Job {self.id} cannot move from {self.state.value} to {state.value}")
        self.state = state
        if error is not None:
            self.error = error
        if message is not None:
            self.message = message
        self.record(f"State changed to {state.value}." + (f" {message}" if message else ""))

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def to_summary(self) -> JobSummary:
        return JobSummary(
            id=self.id,
            kind=self.kind,
            state=self.state,
            created_at=self.created_at,
            updated_at=self.updated_at,
            filenames=list(self.filenames),
            error=self.error,
            message=self.message,
        )

    def to_detail(self) -> JobDetail:
        return JobDetail(
            **self.to_summary().model_dump(),
            options=dict(self.options),
            events=list(self.events),
        )


@dataclass
class JobResult:
    """Converted output, read into memory so artifacts can be released before responding."""

    content: bytes
    media_type: str
    filename: str
    headers: Dict[str, str] = field(default_factory=dict)
