"""
Configuration loading for the conversion service.

Settings are an omegaconf structured config. Values are layered in this
order, later layers winning:

1. dataclass defaults below
2. an optional YAML file named by ``PDFPRESS_CONFIG``
3. environment variables (``.env`` files are loaded first)

The merged config is converted back to the ``Settings`` dataclass so the rest
of the code works with plain attributes. Nothing is reconfigured at runtime.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv
from omegaconf import OmegaConf

CONFIG_FILE_ENV = "PDFPRESS_CONFIG"

# Environment variable -> dotted config key
ENV_OVERRIDES: Dict[str, str] = {
    "HOST": "server.host",
    "PORT": "server.port",
    "UPLOAD_DIR": "storage.upload_dir",
    "OUTPUT_DIR": "storage.output_dir",
    "SCRATCH_DIR": "storage.scratch_dir",
    "MAX_CONCURRENT_JOBS": "admission.max_concurrent_jobs",
    "MAX_QUEUE_LENGTH": "admission.max_queue_length",
    "QUEUE_TIMEOUT": "admission.queue_timeout",
    "JOB_TIMEOUT": "execution.job_timeout",
    "PROBE_TIMEOUT": "execution.probe_timeout",
    "REAPER_INTERVAL": "reaper.interval",
    "RETENTION_WINDOW": "reaper.retention",
    "MAX_UPLOAD_MB": "uploads.max_file_size_mb",
    "MAX_REQUEST_MB": "uploads.max_request_mb",
    "GHOSTSCRIPT_BINARY": "tools.ghostscript",
    "LIBREOFFICE_BINARY": "tools.libreoffice",
    "PROBE_CACHE_TTL": "tools.probe_cache_ttl",
    "MEMORY_WARNING_MB": "memory.warning_mb",
    "MEMORY_CHECK_INTERVAL": "memory.check_interval",
    "LOG_LEVEL": "logging.level",
}


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3000


@dataclass
class StorageConfig:
    upload_dir: str = "uploads"
    output_dir: str = "output"
    # Empty means the system temp directory (LibreOffice profiles live here).
    scratch_dir: str = ""

    @property
    def upload_root(self) -> Path:
        return Path(self.upload_dir).resolve()

    @property
    def output_root(self) -> Path:
        return Path(self.output_dir).resolve()

    @property
    def scratch_root(self) -> Path:
        return Path(self.scratch_dir or tempfile.gettempdir()).resolve()

    def roots(self) -> List[Path]:
        return [self.upload_root, self.output_root, self.scratch_root]


@dataclass
class AdmissionConfig:
    max_concurrent_jobs: int = 1
    max_queue_length: int = 20
    queue_timeout: float = 30.0
    disconnect_poll_interval: float = 0.5
    job_history: int = 200


@dataclass
class ExecutionConfig:
    job_timeout: float = 90.0
    probe_timeout: float = 10.0


@dataclass
class ReaperConfig:
    interval: float = 300.0
    retention: float = 600.0


@dataclass
class UploadConfig:
    max_file_size_mb: int = 25
    max_request_mb: int = 250
    max_merge_files: int = 10
    max_images: int = 20

    @property
    def max_file_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024

    @property
    def max_request_bytes(self) -> int:
        return self.max_request_mb * 1024 * 1024


@dataclass
class ToolsConfig:
    ghostscript: str = "gs"
    libreoffice: str = "libreoffice"
    probe_cache_ttl: float = 0.0


@dataclass
class MemoryConfig:
    warning_mb: int = 450
    # 0 disables the periodic memory watch.
    check_interval: float = 30.0


@dataclass
class LoggingConfig:
    level: str = "INFO"


@dataclass
class Settings:
    server: ServerConfig = field(default_factory=ServerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    admission: AdmissionConfig = field(default_factory=AdmissionConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    reaper: ReaperConfig = field(default_factory=ReaperConfig)
    uploads: UploadConfig = field(default_factory=UploadConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


class ConfigurationError(ValueError):
    pass


def validate_settings(settings: Settings) -> Settings:
    """
    Reject configurations that break the service's safety assumptions.

    The reaper deletes anything older than the retention window, so the window
    must outlast the longest possible job: queue wait plus execution.
    """
    if settings.admission.max_concurrent_jobs < 1:
        raise ConfigurationError("admission.max_concurrent_jobs must be at least 1")
    if settings.admission.max_queue_length < 0:
        raise ConfigurationError("admission.max_queue_length cannot be negative")
    if settings.admission.queue_timeout <= 0 or settings.execution.job_timeout <= 0:
        raise ConfigurationError("queue and job timeouts must be positive")
    max_lifetime = settings.admission.queue_timeout + settings.execution.job_timeout
    if settings.reaper.retention <= max_lifetime:
        raise ConfigurationError(
            f"reaper.retention ({settings.reaper.retention}s) must exceed queue_timeout + "
            f"job_timeout ({max_lifetime}s)"
        )
    if settings.reaper.interval <= 0:
        raise ConfigurationError("reaper.interval must be positive")
    return settings


def _env_dotlist(environ: Mapping[str, str]) -> Dict[str, Any]:
    return {key: environ[name] for name, key in ENV_OVERRIDES.items() if environ.get(name)}


def load_settings(
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """
    Build validated settings from defaults, config file, environment and overrides.

    Args:
        overrides: Nested dict applied last (used by tests and embedding code)
        environ: Environment mapping (default: ``os.environ``)
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    config = OmegaConf.structured(Settings)

    config_file = environ.get(CONFIG_FILE_ENV)
    if config_file:
        config = OmegaConf.merge(config, OmegaConf.load(config_file))

    for key, value in _env_dotlist(environ).items():
        OmegaConf.update(config, key, value)

    if overrides:
        config = OmegaConf.merge(config, OmegaConf.create(overrides))

    settings = OmegaConf.to_object(config)
    return validate_settings(settings)  # type: ignore[arg-type]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
