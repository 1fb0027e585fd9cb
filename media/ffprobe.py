"""Wrapper utilities for retrieving audio stream information using ffprobe."""

from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AudioProbe:
    duration: int | None
    bitrate: int | None
    codec: str | None


def _run_ffprobe(file_path: str) -> dict:
    command = [
        "ffprobe",
        "-v",
        "quiet",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        file_path,
    ]
    try:
        completed = subprocess.run(
            command,
            capture_output=True,
            text=True,
            check=True,
            timeout=15,
        )
    except FileNotFoundError as exc:
        raise RuntimeError("ffprobe is not installed or not available in PATH") from exc
    except subprocess.TimeoutExpired as exc:
        raise RuntimeError(f"ffprobe timed out while probing: {file_path}") from exc
    except subprocess.CalledProcessError as exc:
        stderr_text = (exc.stderr or "").strip()
        raise RuntimeError(f"ffprobe failed for {file_path}: {stderr_text or exc}") from exc

    try:
        return json.loads(completed.stdout or "{}")
    except json.JSONDecodeError as exc:
        raise ValueError(f"ffprobe returned invalid JSON for {file_path}") from exc


def parse_probe(payload: dict) -> AudioProbe:
    """Pick duration, bitrate (kbps) and codec out of an ffprobe JSON payload."""
    fmt = payload.get("format") or {}
    duration = None
    if fmt.get("duration") not in (None, ""):
        try:
            duration = int(float(fmt["duration"]))
        except (TypeError, ValueError):
            duration = None
    bitrate = None
    if fmt.get("bit_rate") not in (None, ""):
        try:
            bitrate = int(fmt["bit_rate"]) // 1000
        except (TypeError, ValueError):
            bitrate = None
    codec = None
    for stream in payload.get("streams") or []:
        if stream.get("codec_type") == "audio":
            codec = stream.get("codec_name")
            break
    return AudioProbe(duration=duration, bitrate=bitrate, codec=codec)


def probe_audio(file_path: str) -> AudioProbe:
    """Return ``AudioProbe`` for ``file_path``.

    A missing or failing ``ffprobe`` yields an empty probe; callers fall back
    to whatever the source reported.
    """
    try:
        return parse_probe(_run_ffprobe(file_path))
    except (RuntimeError, ValueError) as exc:
        logger.warning("[PROBE] %s", exc)
        return AudioProbe(duration=None, bitrate=None, codec=None)
