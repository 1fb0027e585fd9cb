"""Library path construction: ``<library>/<artist>/<title>.<ext>``."""

from __future__ import annotations

import os
import re
from typing import Any

_INVALID_FS_CHARS_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_MULTISPACE_RE = re.compile(r"\s+")
_MAX_COMPONENT_LENGTH = 180


def sanitize_component(text: Any) -> str:
    """Return an OS-safe filesystem component with stable fallback."""
    sanitized = _INVALID_FS_CHARS_RE.sub("", str(text or ""))
    sanitized = _MULTISPACE_RE.sub(" ", sanitized).strip()
    sanitized = sanitized.rstrip(" .").lstrip(".")
    sanitized = sanitized[:_MAX_COMPONENT_LENGTH].rstrip(" .")
    return sanitized or "Unknown"


def artist_directory(library_dir: str, artist: Any) -> str:
    return os.path.join(library_dir, sanitize_component(artist))


def build_track_path(library_dir: str, artist: Any, title: Any, ext: str) -> str:
    """Build the canonical absolute path for a track."""
    ext = str(ext or "").lstrip(".")
    filename = sanitize_component(title)
    if ext:
        filename = f"{filename}.{ext}"
    return os.path.join(artist_directory(library_dir, artist), filename)


def unique_path(path: str, *, ignore: str | None = None) -> str:
    """Return ``path`` or ``stem (N).ext`` for the first N that is free.

    ``ignore`` names a path that counts as free (the file being moved).
    """
    ignore_abs = os.path.abspath(ignore) if ignore else None
    candidate = path
    stem, ext = os.path.splitext(path)
    counter = 1
    while os.path.exists(candidate) and os.path.abspath(candidate) != ignore_abs:
        candidate = f"{stem} ({counter}){ext}"
        counter += 1
    return candidate
