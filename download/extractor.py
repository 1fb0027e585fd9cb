"""Audio extraction from generic media pages through yt-dlp."""

import glob
import logging
import os

from yt_dlp import YoutubeDL
from yt_dlp.utils import DownloadError, ExtractorError

from download.base import RawResult
from engine.errors import TransientFetchError
from media.ffprobe import probe_audio
from metadata.naming import artist_directory, sanitize_component

logger = logging.getLogger(__name__)

_SIDECAR_EXTENSIONS = {".part", ".ytdl", ".jpg", ".jpeg", ".png", ".webp", ".json", ".tmp"}


def resolve_url(job):
    if job.url:
        return job.url
    ref = (job.external_ref or "").strip()
    if ref.startswith(("http://", "https://")):
        return ref
    if ref:
        return f"https://www.youtube.com/watch?v={ref}"
    return None


def build_ydl_opts(output_template, *, convert_to_flac=True, cookies_file=None):
    opts = {
        "quiet": True,
        "no_warnings": True,
        "noplaylist": True,
        "outtmpl": output_template,
        "format": "bestaudio/best",
        "retries": 3,
        "fragment_retries": 3,
        "writethumbnail": True,
        "postprocessors": [
            {
                "key": "FFmpegExtractAudio",
                "preferredcodec": "flac" if convert_to_flac else "best",
                "preferredquality": "0",
            },
            {"key": "FFmpegMetadata", "add_metadata": True},
            {"key": "EmbedThumbnail"},
        ],
    }
    if cookies_file:
        opts["cookiefile"] = cookies_file
    return opts


def find_output(directory, stem):
    """Return the extracted audio file for ``stem``, ignoring thumbnails and partials."""
    pattern = os.path.join(glob.escape(directory), glob.escape(stem) + ".*")
    for candidate in sorted(glob.glob(pattern)):
        if os.path.basename(candidate)[len(stem):].count(".") != 1:
            continue
        if os.path.splitext(candidate)[1].lower() in _SIDECAR_EXTENSIONS:
            continue
        if os.path.isfile(candidate):
            return candidate
    return None


def free_stem(directory, stem):
    """Return ``stem`` or ``stem (N)`` for the first N with no audio file in ``directory``."""
    candidate = stem
    counter = 1
    while find_output(directory, candidate):
        candidate = f"{stem} ({counter})"
        counter += 1
    return candidate


class ExtractorDownloader:
    source = "extractor"

    def __init__(self, library_dir, *, cookies_file=None, ydl_factory=YoutubeDL):
        self.library_dir = library_dir
        self.cookies_file = cookies_file
        self._ydl_factory = ydl_factory

    def fetch(self, job):
        url = resolve_url(job)
        if not url:
            raise TransientFetchError("No URL to download")

        directory = artist_directory(self.library_dir, job.artist)
        os.makedirs(directory, exist_ok=True)
        stem = free_stem(directory, sanitize_component(job.title))
        output_template = os.path.join(directory, stem) + ".%(ext)s"
        opts = build_ydl_opts(
            output_template,
            convert_to_flac=job.convert_to_flac,
            cookies_file=self.cookies_file,
        )

        logger.info("[EXTRACTOR] downloading %s to %s", url, output_template)
        try:
            with self._ydl_factory(opts) as ydl:
                ydl.download([url])
        except (DownloadError, ExtractorError) as exc:
            raise TransientFetchError(f"Download failed: {exc}") from exc

        file_path = find_output(directory, stem)
        if not file_path:
            raise TransientFetchError("Downloaded file not found")

        probe = probe_audio(file_path)
        return RawResult(
            file_path=file_path,
            codec=probe.codec or os.path.splitext(file_path)[1].lstrip(".").lower(),
            bitrate=probe.bitrate or 0,
            duration=probe.duration or 0,
            artist=job.artist,
            title=job.title,
            album=None,
            thumbnail=job.thumbnail,
        )
