from __future__ import annotations

import base64
import json

import pytest
import requests

from download.cdn import CdnDownloader, compute_bitrate, cover_url, decode_manifest
from engine.errors import TransientFetchError
from engine.job_store import JobSpec, JobStore


class _FakeResponse:
    def __init__(self, status_code=200, payload=None, chunks=(), content=b"") -> None:
        self.status_code = status_code
        self._payload = payload
        self._chunks = list(chunks)
        self.content = content

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload

    def iter_content(self, chunk_size=1):
        for chunk in self._chunks:
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        return None


class _FakeSession:
    def __init__(self, routes) -> None:
        self.routes = routes
        self.calls = []

    def get(self, url, params=None, timeout=None, stream=False):
        self.calls.append((url, dict(params or {})))
        key = url
        if params and "quality" in params:
            key = f"{url}?quality={params['quality']}"
        handler = self.routes.get(key)
        if handler is None:
            return _FakeResponse(status_code=404)
        return handler() if callable(handler) else handler


def _manifest(urls, encryption="NONE") -> str:
    body = {"mimeType": "audio/flac", "codecs": "flac", "encryptionType": encryption, "urls": urls}
    return base64.b64encode(json.dumps(body).encode("utf-8")).decode("ascii")


def _info():
    return _FakeResponse(
        payload={
            "data": {
                "title": "X",
                "duration": 180,
                "artist": {"name": "Y"},
                "album": {"title": "Z", "cover": "aa-bb-cc"},
            }
        }
    )


def _track(urls, encryption="NONE", bit_depth=24, sample_rate=96000):
    return _FakeResponse(
        payload={
            "data": {
                "manifest": _manifest(urls, encryption),
                "bitDepth": bit_depth,
                "sampleRate": sample_rate,
                "audioQuality": "HI_RES",
            }
        }
    )


def _job(tmp_path, ref="T1"):
    store = JobStore(str(tmp_path / "trackvault.sqlite"))
    job_id = store.enqueue(JobSpec(source="cdn-direct", title="X", artist="Y", external_ref=ref))
    return store.get(job_id)


def test_cover_url_and_bitrate_helpers() -> None:
    assert cover_url("aa-bb-cc", 640) == "https://resources.tidal.com/images/aa/bb/cc/640x640.jpg"
    assert cover_url("") == ""
    assert compute_bitrate(44100, 16) == 1411
    assert compute_bitrate(96000, 24) == 4608
    assert compute_bitrate(None, 24) == 1411


def test_decode_manifest_rejects_garbage() -> None:
    assert decode_manifest(_manifest(["u"]))["urls"] == ["u"]
    assert decode_manifest("%%%not-base64") is None


def test_fetch_streams_into_library_path(tmp_path) -> None:
    session = _FakeSession(
        {
            "https://api.test/info/": _info(),
            "https://api.test/track/?quality=LOSSLESS": _track(["https://cdn.test/x.flac"]),
            "https://cdn.test/x.flac": lambda: _FakeResponse(chunks=[b"fLaC", b"-data"]),
        }
    )
    downloader = CdnDownloader(str(tmp_path / "lib"), api_url="https://api.test/", session=session)

    raw = downloader.fetch(_job(tmp_path))

    assert raw.file_path == str(tmp_path / "lib" / "Y" / "X.flac")
    assert (tmp_path / "lib" / "Y" / "X.flac").read_bytes() == b"fLaC-data"
    assert raw.codec == "flac"
    assert raw.bitrate == 4608
    assert raw.duration == 180
    assert raw.album == "Z"
    assert raw.thumbnail.endswith("aa/bb/cc/320x320.jpg")


def test_fetch_leaves_album_unset_when_catalog_has_none(tmp_path) -> None:
    session = _FakeSession(
        {
            "https://api.test/info/": _FakeResponse(payload={"data": {"title": "X", "artist": {"name": "Y"}}}),
            "https://api.test/track/?quality=LOSSLESS": _track(["https://cdn.test/x.flac"]),
            "https://cdn.test/x.flac": lambda: _FakeResponse(chunks=[b"fLaC"]),
        }
    )
    downloader = CdnDownloader(str(tmp_path / "lib"), api_url="https://api.test/", session=session)

    raw = downloader.fetch(_job(tmp_path))

    assert raw.album is None
    assert raw.duration == 0


def test_fetch_falls_back_past_encrypted_quality(tmp_path) -> None:
    session = _FakeSession(
        {
            "https://api.test/info/": _info(),
            "https://api.test/track/?quality=LOSSLESS": _track(["https://cdn.test/enc"], encryption="OLD_AES"),
            "https://api.test/track/?quality=HIGH": _track(["https://cdn.test/high"], bit_depth=None),
            "https://cdn.test/high": lambda: _FakeResponse(chunks=[b"audio"]),
        }
    )
    downloader = CdnDownloader(str(tmp_path / "lib"), api_url="https://api.test", session=session)

    raw = downloader.fetch(_job(tmp_path))

    assert raw.bitrate == 1411
    assert ("https://cdn.test/enc", {}) not in session.calls


def test_fetch_does_not_overwrite_existing_file(tmp_path) -> None:
    existing = tmp_path / "lib" / "Y" / "X.flac"
    existing.parent.mkdir(parents=True)
    existing.write_bytes(b"old")
    session = _FakeSession(
        {
            "https://api.test/info/": _info(),
            "https://api.test/track/?quality=LOSSLESS": _track(["https://cdn.test/x.flac"]),
            "https://cdn.test/x.flac": lambda: _FakeResponse(chunks=[b"new"]),
        }
    )
    downloader = CdnDownloader(str(tmp_path / "lib"), api_url="https://api.test", session=session)

    raw = downloader.fetch(_job(tmp_path))

    assert raw.file_path == str(tmp_path / "lib" / "Y" / "X (1).flac")
    assert existing.read_bytes() == b"old"


def test_fetch_http_error_raises_transient(tmp_path) -> None:
    session = _FakeSession(
        {
            "https://api.test/info/": _info(),
            "https://api.test/track/?quality=LOSSLESS": _track(["https://cdn.test/x.flac"]),
            "https://cdn.test/x.flac": lambda: _FakeResponse(status_code=503),
        }
    )
    downloader = CdnDownloader(str(tmp_path / "lib"), api_url="https://api.test", session=session)

    with pytest.raises(TransientFetchError, match="HTTP 503"):
        downloader.fetch(_job(tmp_path))
    assert not (tmp_path / "lib" / "Y" / "X.flac").exists()


def test_interrupted_stream_discards_partial_file(tmp_path) -> None:
    session = _FakeSession(
        {
            "https://api.test/info/": _info(),
            "https://api.test/track/?quality=LOSSLESS": _track(["https://cdn.test/x.flac"]),
            "https://cdn.test/x.flac": lambda: _FakeResponse(
                chunks=[b"half", requests.ConnectionError("reset")]
            ),
        }
    )
    downloader = CdnDownloader(str(tmp_path / "lib"), api_url="https://api.test", session=session)

    with pytest.raises(TransientFetchError):
        downloader.fetch(_job(tmp_path))
    assert not (tmp_path / "lib" / "Y" / "X.flac").exists()


def test_missing_track_info_raises_transient(tmp_path) -> None:
    downloader = CdnDownloader(str(tmp_path / "lib"), api_url="https://api.test", session=_FakeSession({}))

    with pytest.raises(TransientFetchError, match="track info"):
        downloader.fetch(_job(tmp_path))
