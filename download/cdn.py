"""Lossless downloads straight from a catalog's CDN.

The catalog API exposes ``/info/?id=`` (track metadata) and
``/track/?id=&quality=`` whose ``manifest`` is base64-encoded JSON carrying
the stream URLs.
"""

import base64
import binascii
import json
import logging
import os

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from download.base import RawResult
from engine.errors import TransientFetchError
from metadata.naming import build_track_path, unique_path

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://triton.squid.wtf"
COVER_BASE_URL = "https://resources.tidal.com/images"
USER_AGENT = "Trackvault/1.0"
FALLBACK_QUALITIES = ("LOSSLESS", "HIGH")
CD_BITRATE_KBPS = 1411
STREAM_CONNECT_TIMEOUT = 30
STREAM_READ_TIMEOUT = 600
CHUNK_SIZE = 64 * 1024


def cover_url(cover_uuid, size=320):
    if not cover_uuid:
        return ""
    path = str(cover_uuid).replace("-", "/")
    return f"{COVER_BASE_URL}/{path}/{size}x{size}.jpg"


def compute_bitrate(sample_rate, bit_depth):
    """Stereo PCM bitrate in kbps, or CD quality when the stream does not say."""
    if not sample_rate or not bit_depth:
        return CD_BITRATE_KBPS
    return int(int(sample_rate) * int(bit_depth) * 2 / 1000)


def decode_manifest(encoded):
    try:
        return json.loads(base64.b64decode(encoded).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None


def _build_session():
    session = requests.Session()
    retry = Retry(
        total=3,
        backoff_factor=0.4,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset({"GET"}),
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    session.headers["User-Agent"] = USER_AGENT
    return session


class CdnDownloader:
    source = "cdn-direct"

    def __init__(
        self,
        library_dir,
        *,
        api_url=DEFAULT_API_URL,
        timeout_seconds=15,
        quality="LOSSLESS",
        session=None,
        tagger=None,
    ):
        self.library_dir = library_dir
        self.api_url = (api_url or DEFAULT_API_URL).rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.quality = quality or "LOSSLESS"
        self._session = session or _build_session()
        self._tagger = tagger

    def _get_json(self, endpoint, params):
        url = f"{self.api_url}{endpoint}"
        try:
            resp = self._session.get(url, params=params, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            logger.info("[CDN] request=%s status=error error=%s", endpoint, exc)
            return None
        logger.info("[CDN] request=%s status=%s", endpoint, resp.status_code)
        if not 200 <= resp.status_code < 300:
            return None
        try:
            payload = resp.json()
        except ValueError:
            return None
        return payload if isinstance(payload, dict) else None

    def get_track_info(self, track_id):
        payload = self._get_json("/info/", {"id": track_id})
        if not payload:
            return None
        data = payload.get("data")
        return data if isinstance(data, dict) else None

    def get_stream(self, track_id):
        """Return the first unencrypted stream, trying the preferred quality then the fallbacks."""
        qualities = [self.quality] + [q for q in FALLBACK_QUALITIES if q != self.quality]
        for quality in qualities:
            payload = self._get_json("/track/", {"id": track_id, "quality": quality})
            data = (payload or {}).get("data")
            if not isinstance(data, dict) or not data.get("manifest"):
                continue
            manifest = decode_manifest(data["manifest"])
            if not isinstance(manifest, dict):
                continue
            encryption = manifest.get("encryptionType") or "NONE"
            if encryption != "NONE":
                logger.warning("[CDN] track %s is encrypted (%s) at %s", track_id, encryption, quality)
                continue
            urls = manifest.get("urls") or []
            if not urls:
                continue
            return {
                "url": urls[0],
                "mime_type": manifest.get("mimeType") or "audio/flac",
                "codec": manifest.get("codecs") or "flac",
                "bit_depth": data.get("bitDepth"),
                "sample_rate": data.get("sampleRate"),
                "quality": data.get("audioQuality") or quality,
            }
        return None

    def _stream_to_file(self, url, output_path):
        os.makedirs(os.path.dirname(output_path), exist_ok=True)
        try:
            with self._session.get(
                url,
                stream=True,
                timeout=(STREAM_CONNECT_TIMEOUT, STREAM_READ_TIMEOUT),
            ) as resp:
                if resp.status_code >= 400:
                    raise TransientFetchError(f"Download failed (HTTP {resp.status_code})")
                with open(output_path, "wb") as handle:
                    for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            handle.write(chunk)
        except requests.RequestException as exc:
            _discard(output_path)
            raise TransientFetchError(f"Download failed: {exc}") from exc
        except TransientFetchError:
            _discard(output_path)
            raise
        if not os.path.isfile(output_path) or os.path.getsize(output_path) == 0:
            _discard(output_path)
            raise TransientFetchError("Download resulted in empty file")

    def _embed_cover(self, file_path, cover_uuid):
        if not cover_uuid or self._tagger is None:
            return
        try:
            resp = self._session.get(cover_url(cover_uuid, 640), timeout=self.timeout_seconds)
        except requests.RequestException:
            logger.warning("[CDN] cover fetch failed for %s", file_path, exc_info=True)
            return
        if 200 <= resp.status_code < 300 and resp.content:
            self._tagger.embed_cover(file_path, resp.content, "image/jpeg")

    def fetch(self, job):
        track_id = job.external_ref
        if not track_id:
            raise TransientFetchError("cdn-direct job has no track id")

        info = self.get_track_info(track_id)
        if not info:
            raise TransientFetchError(f"Failed to get track info for track {track_id}")
        stream = self.get_stream(track_id)
        if not stream:
            raise TransientFetchError(f"Failed to get stream URL for track {track_id}")

        title = info.get("title") or job.title or "Unknown"
        artist = (info.get("artist") or {}).get("name") or job.artist or "Unknown"
        album_info = info.get("album") or {}
        album = album_info.get("title") or None
        cover_uuid = album_info.get("cover") or ""

        output_path = unique_path(build_track_path(self.library_dir, artist, title, "flac"))
        logger.info("[CDN] downloading track=%s quality=%s to %s", track_id, stream["quality"], output_path)
        self._stream_to_file(stream["url"], output_path)
        self._embed_cover(output_path, cover_uuid)

        return RawResult(
            file_path=output_path,
            codec="flac",
            bitrate=compute_bitrate(stream.get("sample_rate"), stream.get("bit_depth")),
            duration=int(info.get("duration") or 0),
            artist=artist,
            title=title,
            album=album,
            thumbnail=cover_url(cover_uuid) or job.thumbnail,
        )


def _discard(path):
    try:
        if os.path.exists(path):
            os.remove(path)
    except OSError:
        logger.warning("[CDN] could not remove partial download %s", path, exc_info=True)
