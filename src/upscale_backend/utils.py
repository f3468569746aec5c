"""
Utility functions for file system operations and filename handling.

This module provides helper functions for:
- Ensuring directory creation
- Deriving safe file extensions from client-supplied filenames
- Choosing the output extension for an upscaled artifact
"""

from __future__ import annotations

import mimetypes
import re
from pathlib import Path
from typing import Iterable, Optional

# Extensions are limited to a dot followed by a short alphanumeric run
EXTENSION_PATTERN = re.compile(r"^\.[a-z0-9]{1,8}$")

# Formats realesrgan-ncnn-vulkan can write
OUTPUT_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp")


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining

    Raises:
        OSError: If directory creation fails due to permissions or other I/O errors
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def safe_extension(filename: str) -> str:
    """
    Extract a filesystem-safe, lowercase extension from a client filename.

    Only the final suffix of the basename is considered, so directory
    components and traversal sequences in the filename have no effect.

    Example:
        >>> safe_extension("photo.PNG")
        ".png"
        >>> safe_extension("../../etc/passwd")
        ""
    """
    # Normalise Windows separators before taking the basename
    name = Path(filename.replace("\\", "/")).name
    suffix = Path(name).suffix.lower()
    if EXTENSION_PATTERN.match(suffix):
        return suffix
    return ""


def output_extension(
    filename: str,
    content_type: Optional[str],
    default: str,
    allowed: Iterable[str] = OUTPUT_EXTENSIONS,
) -> str:
    """
    Infer the extension of the upscaled artifact.

    The input file's extension wins when the tool can write it, then the
    extension implied by the part's content type, then the default.
    """
    allowed = tuple(allowed)
    suffix = safe_extension(filename)
    if suffix in allowed:
        return suffix
    if content_type:
        guessed = mimetypes.guess_extension(content_type.split(";")[0].strip())
        if guessed and guessed.lower() in allowed:
            return guessed.lower()
    return default
