"""
Tests for settings loading and validation.
"""

import pytest

from pdfpress_backend.configuration import ConfigurationError, load_settings


class TestDefaults:
    def test_defaults_match_small_host_profile(self):
        settings = load_settings(environ={})

        assert settings.server.port == 3000
        assert settings.admission.max_concurrent_jobs == 1
        assert settings.admission.queue_timeout == 30.0
        assert settings.execution.job_timeout == 90.0
        assert settings.reaper.interval == 300.0
        assert settings.reaper.retention == 600.0
        assert settings.uploads.max_file_size_mb == 25
        assert settings.uploads.max_file_bytes == 25 * 1024 * 1024
        assert settings.uploads.max_merge_files == 10
        assert settings.uploads.max_images == 20
        assert settings.memory.warning_mb == 450


class TestOverrides:
    def test_environment_values_are_typed(self, tmp_path):
        environ = {
            "MAX_CONCURRENT_JOBS": "3",
            "QUEUE_TIMEOUT": "5",
            "JOB_TIMEOUT": "20.5",
            "UPLOAD_DIR": str(tmp_path / "in"),
            "GHOSTSCRIPT_BINARY": "/opt/gs/bin/gs",
            "LOG_LEVEL": "DEBUG",
        }

        settings = load_settings(environ=environ)

        assert settings.admission.max_concurrent_jobs == 3
        assert settings.admission.queue_timeout == 5.0
        assert settings.execution.job_timeout == 20.5
        assert settings.storage.upload_root == (tmp_path / "in").resolve()
        assert settings.tools.ghostscript == "/opt/gs/bin/gs"
        assert settings.logging.level == "DEBUG"

    def test_empty_environment_values_are_ignored(self):
        settings = load_settings(environ={"PORT": ""})

        assert settings.server.port == 3000

    def test_config_file_then_env_then_overrides(self, tmp_path):
        config_file = tmp_path / "pdfpress.yaml"
        config_file.write_text("admission:\n  max_queue_length: 7\n  max_concurrent_jobs: 2\n")
        environ = {"PDFPRESS_CONFIG": str(config_file), "MAX_CONCURRENT_JOBS": "4"}

        settings = load_settings(overrides={"execution": {"job_timeout": 45}}, environ=environ)

        assert settings.admission.max_queue_length == 7
        assert settings.admission.max_concurrent_jobs == 4
        assert settings.execution.job_timeout == 45.0

    def test_non_numeric_environment_value_fails(self):
        with pytest.raises(Exception):
            load_settings(environ={"PORT": "not-a-port"})


class TestValidation:
    def test_retention_must_outlast_longest_job(self):
        with pytest.raises(ConfigurationError, match="retention"):
            load_settings(
                overrides={"admission": {"queue_timeout": 30}, "execution": {"job_timeout": 90}, "reaper": {"retention": 120}},
                environ={},
            )

    def test_retention_just_above_limit_is_accepted(self):
        settings = load_settings(
            overrides={"admission": {"queue_timeout": 30}, "execution": {"job_timeout": 90}, "reaper": {"retention": 121}},
            environ={},
        )

        assert settings.reaper.retention == 121.0

    def test_concurrency_must_be_positive(self):
        with pytest.raises(ConfigurationError):
            load_settings(overrides={"admission": {"max_concurrent_jobs": 0}}, environ={})

    def test_timeouts_must_be_positive(self):
        with pytest.raises(ConfigurationError):
            load_settings(overrides={"execution": {"job_timeout": 0}}, environ={})
