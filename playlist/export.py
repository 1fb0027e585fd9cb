"""Playlist export helpers."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Iterable

_INVALID_NAME_CHARS_RE = re.compile(r"[^A-Za-z0-9_\-\s]")
_MULTISPACE_RE = re.compile(r"\s+")


def sanitize_playlist_name(name: str) -> str:
    """Return a filesystem-safe playlist name."""
    text = _INVALID_NAME_CHARS_RE.sub("", str(name or ""))
    text = _MULTISPACE_RE.sub(" ", text).strip()
    return text or "playlist"


def m3u_path(playlist_root: str | Path, playlist_name: str) -> Path:
    return Path(playlist_root) / f"{sanitize_playlist_name(playlist_name)}.m3u"


def write_m3u(
    playlist_root: str | Path,
    playlist_name: str,
    tracks: Iterable[tuple[str, str]],
) -> tuple[Path, int]:
    """Create or overwrite an extended M3U playlist.

    ``tracks`` yields ``(file_path, label)`` pairs. Missing files are skipped
    and paths are written relative to ``playlist_root``. Writes are atomic
    (temp file then replace). Returns the target path and the entry count.
    """
    root = Path(playlist_root)
    root.mkdir(parents=True, exist_ok=True)

    target_path = m3u_path(root, playlist_name)
    temp_path = root / f".{target_path.name}.tmp"

    lines: list[str] = ["#EXTM3U", f"#PLAYLIST:{playlist_name}"]
    count = 0
    for file_path, label in tracks:
        candidate = Path(file_path)
        if not candidate.is_file():
            continue
        rel_path = os.path.relpath(candidate.resolve(), root.resolve())
        lines.append(f"#EXTINF:-1,{label}")
        lines.append(Path(rel_path).as_posix())
        count += 1

    content = "\n".join(lines) + "\n"
    temp_path.write_text(content, encoding="utf-8")
    temp_path.replace(target_path)
    return target_path, count
