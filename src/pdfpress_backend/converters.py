"""
Wrappers around the libraries and binaries that do the actual conversions.

In-process helpers (PyMuPDF, Pillow) are synchronous and are run in a worker
thread by the executor. Binary helpers (Ghostscript, LibreOffice) are
coroutines that start the tool with an argument vector, never through a
shell, and kill it if the awaiting task is cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import zipfile
from pathlib import Path
from typing import List, Optional, Sequence

import fitz  # PyMuPDF
from PIL import Image, ImageOps

from .errors import CollaboratorError

logger = logging.getLogger(__name__)

STDERR_TAIL_CHARS = 2000

COMPRESSION_LEVELS = ("gentle", "balanced", "strong")


def kill_process_group(process: asyncio.subprocess.Process) -> None:
    """SIGKILL a process started with ``start_new_session=True`` and everything it spawned."""
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


async def run_tool(argv: Sequence[str], name: str) -> None:
    """
    Run an external tool to completion.

    Raises:
        CollaboratorError: The tool could not start or exited non-zero

    Note:
        If the awaiting task is cancelled (job timeout) the tool's whole process
        group is killed without waiting for it to exit. Wrapper launchers such
        as ``soffice`` leave the real converter in a grandchild process.
    """
    logger.debug(f"Running {name}: {' '.join(argv)}")
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as exc:
        raise CollaboratorError(f"{name} could not be started", details={"tool": name, "reason": str(exc)}) from exc

    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        kill_process_group(process)
        logger.warning(f"Killed {name} (pid {process.pid}) after cancellation")
        raise

    if process.returncode != 0:
        output = (stderr or stdout or b"").decode("utf-8", errors="replace")
        raise CollaboratorError(
            f"{name} exited with code {process.returncode}",
            details={"tool": name, "exit_code": process.returncode, "output": output[-STDERR_TAIL_CHARS:]},
        )


def ghostscript_quality(target_size_kb: Optional[int], level: str = "balanced") -> str:
    """
    Pick a Ghostscript ``-dPDFSETTINGS`` preset.

    Explicit gentle/strong levels win; otherwise the target size decides.
    Without a target the balanced level keeps print quality.
    """
    if level == "gentle":
        return "/printer"
    if level == "strong":
        return "/screen"
    if target_size_kb is None:
        return "/printer"
    if target_size_kb <= 200:
        return "/screen"
    if target_size_kb <= 500:
        return "/ebook"
    return "/printer"


async def ghostscript_compress(binary: str, input_path: Path, output_path: Path, quality: str) -> Path:
    argv = [
        binary,
        "-sDEVICE=pdfwrite",
        "-dCompatibilityLevel=1.4",
        f"-dPDFSETTINGS={quality}",
        "-dNOPAUSE",
        "-dQUIET",
        "-dBATCH",
        "-dSAFER",
        "-dDetectDuplicateImages=true",
        "-dCompressFonts=true",
        f"-sOutputFile={output_path}",
        str(input_path),
    ]
    await run_tool(argv, "Ghostscript")
    return _expect_file(output_path, "Ghostscript")


async def ghostscript_rasterize(binary: str, input_path: Path, output_dir: Path, dpi: int = 150) -> List[Path]:
    argv = [
        binary,
        "-sDEVICE=png16m",
        f"-r{dpi}",
        "-dNOPAUSE",
        "-dQUIET",
        "-dBATCH",
        "-dSAFER",
        f"-sOutputFile={output_dir / 'page-%03d.png'}",
        str(input_path),
    ]
    await run_tool(argv, "Ghostscript")
    pages = sorted(output_dir.glob("page-*.png"))
    if not pages:
        raise CollaboratorError("Rasterizer produced no images")
    return pages


async def libreoffice_convert(
    binary: str,
    input_path: Path,
    profile_dir: Path,
    output_dir: Path,
    target: str,
) -> Path:
    """
    Convert a document with headless LibreOffice.

    Each call gets its own profile directory so concurrent conversions do not
    fight over LibreOffice's user installation lock.
    """
    argv = [
        binary,
        "--headless",
        "--nologo",
        "--nofirststartwizard",
        "--norestore",
        f"-env:UserInstallation={profile_dir.as_uri()}",
    ]
    if input_path.suffix.lower() == ".pdf":
        argv.append("--infilter=writer_pdf_import")
    argv += ["--convert-to", target, "--outdir", str(output_dir), str(input_path)]
    await run_tool(argv, "LibreOffice")

    suffix = f".{target.split(':', 1)[0].lower()}"
    produced = sorted(p for p in output_dir.iterdir() if p.suffix.lower() == suffix)
    if not produced:
        raise CollaboratorError("Conversion completed but output file not found")
    return produced[0]


def _open_pdf(path: Path) -> fitz.Document:
    doc = fitz.open(str(path))
    if not doc.is_pdf:
        doc.close()
        raise CollaboratorError("Input is not a PDF document")
    if doc.needs_pass:
        doc.close()
        raise CollaboratorError("Password-protected PDFs are not supported")
    return doc


def basic_compress(input_path: Path, output_path: Path) -> Path:
    """Strip document metadata and re-save with garbage collection and deflate."""
    with _open_pdf(input_path) as doc:
        doc.set_metadata({})
        doc.del_xml_metadata()
        doc.save(str(output_path), garbage=4, deflate=True, clean=True)
    return _expect_file(output_path, "PyMuPDF")


def merge_pdfs(input_paths: Sequence[Path], output_path: Path) -> Path:
    """Concatenate the pages of every input, in input order."""
    with fitz.open() as merged:
        for path in input_paths:
            with _open_pdf(path) as source:
                merged.insert_pdf(source)
        merged.save(str(output_path), garbage=3, deflate=True)
    return _expect_file(output_path, "PyMuPDF")


def split_pdf(input_path: Path, output_dir: Path) -> List[Path]:
    """Write one single-page PDF per input page, named in page order."""
    outputs: List[Path] = []
    with _open_pdf(input_path) as doc:
        if doc.page_count == 0:
            raise CollaboratorError("PDF has no pages")
        width = max(3, len(str(doc.page_count)))
        for index in range(doc.page_count):
            page_path = output_dir / f"page-{index + 1:0{width}d}.pdf"
            with fitz.open() as single:
                single.insert_pdf(doc, from_page=index, to_page=index)
                single.save(str(page_path), garbage=3, deflate=True)
            outputs.append(page_path)
    return outputs


def images_to_pdf(image_paths: Sequence[Path], output_path: Path) -> Path:
    """
    Embed each image on its own page, in upload order.

    Saving at 72 dpi makes every page exactly as large, in points, as the
    image is in pixels.
    """
    if not image_paths:
        raise CollaboratorError("No images to convert")

    pages: List[Image.Image] = []
    try:
        for path in image_paths:
            with Image.open(path) as img:
                img = ImageOps.exif_transpose(img)
                pages.append(img.convert("RGB") if img.mode != "RGB" else img.copy())
        first, rest = pages[0], pages[1:]
        first.save(output_path, "PDF", save_all=True, append_images=rest, resolution=72.0)
    finally:
        for page in pages:
            page.close()
    return _expect_file(output_path, "Pillow")


def zip_files(files: Sequence[Path], zip_path: Path) -> Path:
    """Archive files flat, in the given order."""
    with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for path in files:
            archive.write(path, arcname=path.name)
    return zip_path


def _expect_file(path: Path, name: str) -> Path:
    if not path.exists() or path.stat().st_size == 0:
        raise CollaboratorError(f"{name} produced no output")
    return path
