"""
Artifact tracking and guaranteed cleanup.

Every file or directory created for a job is registered here under the job's
id. ``release_all`` deletes all of them and forgets the job, so a second call
is a no-op. Deletion never raises: it runs on cleanup paths where an exception
would mask the job's real outcome.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Dict, List, Set

from .utils import ensure_directory, unique_name

logger = logging.getLogger(__name__)


@dataclass
class Artifact:
    path: Path
    job_id: str
    is_directory: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)


def remove_path(path: Path) -> bool:
    """
    Delete a file or directory tree, swallowing failures.

    Returns:
        True if something was removed, False if it was missing or removal failed
    """
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as exc:
        logger.warning(f"Could not remove {path}: {exc}")
        return False


class ResourceTracker:
    """
    Registry of artifacts per job.

    Thread Safety:
        Registration and release are guarded by a lock because converters
        running in worker threads may register extra outputs.
    """

    def __init__(self) -> None:
        self._artifacts: Dict[str, Dict[Path, Artifact]] = {}
        self._lock = Lock()

    def register(self, job_id: str, path: Path, is_directory: bool = False) -> Artifact:
        """Record an artifact for a job. Registering the same path twice keeps the first record."""
        path = Path(path)
        with self._lock:
            entries = self._artifacts.setdefault(job_id, {})
            artifact = entries.get(path)
            if artifact is None:
                artifact = Artifact(path=path, job_id=job_id, is_directory=is_directory)
                entries[path] = artifact
            return artifact

    def new_file(self, job_id: str, root: Path, prefix: str, suffix: str = "") -> Path:
        """Allocate (but do not create) a uniquely named file under root and register it."""
        path = ensure_directory(root) / unique_name(prefix, suffix)
        self.register(job_id, path)
        return path

    def new_directory(self, job_id: str, root: Path, prefix: str) -> Path:
        """Create a uniquely named directory under root and register it."""
        path = ensure_directory(root) / unique_name(prefix)
        self.register(job_id, path, is_directory=True)
        path.mkdir()
        return path

    def pending(self, job_id: str) -> List[Path]:
        with self._lock:
            return list(self._artifacts.get(job_id, {}))

    def tracked_jobs(self) -> List[str]:
        with self._lock:
            return list(self._artifacts)

    def live_paths(self) -> Set[Path]:
        with self._lock:
            return {path for entries in self._artifacts.values() for path in entries}

    def release_all(self, job_id: str) -> int:
        """
        Delete every artifact registered for a job. Never raises.

        Returns:
            Number of filesystem entries actually removed
        """
        with self._lock:
            entries = self._artifacts.pop(job_id, {})

        removed = 0
        # Newest first so files inside registered directories go before the directory.
        for artifact in reversed(list(entries.values())):
            if remove_path(artifact.path):
                removed += 1
        if entries:
            logger.info(f"Released {removed}/{len(entries)} artifacts for job {job_id}")
        return removed
