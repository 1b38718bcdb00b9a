"""
Tests for conversion helpers that do not need Ghostscript or LibreOffice.
"""

import asyncio
import sys
import zipfile

import psutil
import pytest

from pdfpress_backend.converters import ghostscript_quality, run_tool, zip_files
from pdfpress_backend.errors import CollaboratorError

from conftest import wait_until


@pytest.mark.parametrize(
    "target_kb,level,expected",
    [
        (100, "gentle", "/printer"),
        (5000, "strong", "/screen"),
        (150, "balanced", "/screen"),
        (200, "balanced", "/screen"),
        (400, "balanced", "/ebook"),
        (2000, "balanced", "/printer"),
        (None, "balanced", "/printer"),
    ],
)
def test_ghostscript_quality(target_kb, level, expected):
    assert ghostscript_quality(target_kb, level) == expected


class TestRunTool:
    @pytest.mark.asyncio
    async def test_non_zero_exit_reports_output_tail(self):
        argv = [sys.executable, "-c", "import sys; sys.stderr.write('broken xref'); sys.exit(3)"]

        with pytest.raises(CollaboratorError) as exc_info:
            await run_tool(argv, "fake-tool")

        assert exc_info.value.details["exit_code"] == 3
        assert exc_info.value.details["output"] == "broken xref"

    @pytest.mark.asyncio
    async def test_missing_binary(self):
        with pytest.raises(CollaboratorError, match="could not be started"):
            await run_tool(["pdfpress-no-such-tool"], "missing")

    @pytest.mark.asyncio
    async def test_arguments_are_not_shell_expanded(self, tmp_path):
        marker = tmp_path / "marker"
        hostile = f"x; touch {marker}"

        await run_tool([sys.executable, "-c", "import sys; sys.exit(0)", hostile], "echo")

        assert not marker.exists()

    @pytest.mark.asyncio
    async def test_cancellation_kills_spawned_children(self, tmp_path):
        pid_file = tmp_path / "child.pid"
        launcher = (
            "import os, subprocess, sys, time\n"
            "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'])\n"
            "open(sys.argv[1] + '.tmp', 'w').write(str(child.pid))\n"
            "os.replace(sys.argv[1] + '.tmp', sys.argv[1])\n"
            "time.sleep(60)\n"
        )
        task = asyncio.create_task(run_tool([sys.executable, "-c", launcher, str(pid_file)], "launcher"))
        await wait_until(pid_file.exists, timeout=10)
        child = psutil.Process(int(pid_file.read_text()))

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        def child_gone():
            try:
                return child.status() == psutil.STATUS_ZOMBIE
            except psutil.NoSuchProcess:
                return True

        await wait_until(child_gone, timeout=5)


def test_zip_keeps_given_order(tmp_path):
    files = []
    for name in ("page-002.pdf", "page-001.pdf"):
        path = tmp_path / name
        path.write_bytes(name.encode())
        files.append(path)

    archive = zip_files(files, tmp_path / "out.zip")

    with zipfile.ZipFile(archive) as zf:
        assert zf.namelist() == ["page-002.pdf", "page-001.pdf"]
