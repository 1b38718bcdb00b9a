"""
Utility functions for file system operations and string sanitization.

This module provides helper functions for:
- Sanitizing user-provided filenames for safe filesystem usage
- Generating collision-free artifact names
- Ensuring directory creation
- Removing storage paths from diagnostic text
"""

from __future__ import annotations

import re
import secrets
from datetime import datetime
from pathlib import Path
from typing import Iterable

# Pattern to match characters that are not safe for filesystem paths
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a filesystem-safe label from user input.

    Args:
        label: The original label string to sanitize
        fallback: Default value to return if sanitization results in an empty string

    Returns:
        A filesystem-safe label or the fallback value

    Example:
        >>> sanitize_label("My Document!", "document")
        'My-Document'
        >>> sanitize_label("@#$", "document")
        'document'
    """
    cleaned = SANITIZE_PATTERN.sub("-", label.strip())
    cleaned = cleaned.strip("-_.")
    return cleaned or fallback


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def split_extension(filename: str) -> tuple[str, str]:
    """
    Split a filename into stem and lowercased extension.

    Example:
        >>> split_extension("Report.PDF")
        ('Report', '.pdf')
    """
    path = Path(filename)
    return path.stem, path.suffix.lower()


def unique_name(prefix: str, suffix: str = "") -> str:
    """Timestamp plus random suffix, unique across concurrent jobs."""
    stamp = datetime.utcnow().strftime("%Y%m%d%H%M%S")
    return f"{prefix}-{stamp}-{secrets.token_hex(4)}{suffix}"


def download_name(original: str, new_suffix: str, prefix: str = "") -> str:
    """
    Build the Content-Disposition filename for a converted upload.

    Example:
        >>> download_name("my report.docx", ".pdf")
        'my-report.pdf'
    """
    stem, _ = split_extension(original)
    return f"{prefix}{sanitize_label(stem, 'document')}{new_suffix}"


def scrub_paths(text: str, roots: Iterable[Path]) -> str:
    """Replace storage roots in diagnostic text so clients never see server paths."""
    for root in sorted({str(r) for r in roots}, key=len, reverse=True):
        if root:
            text = text.replace(root, "<storage>")
    return text
