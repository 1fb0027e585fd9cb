"""Canonical metadata lookup.

Order of attempts:

1. Fingerprint the file with ``fpcalc`` and query AcoustID. The recording
   that best matches the expected artist/title wins, and MusicBrainz is asked
   for the release year when AcoustID did not provide one.
2. Fall back to a MusicBrainz text search, accepted only above a confidence
   threshold.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

ACOUSTID_URL = "https://api.acoustid.org/v2/lookup"
MUSICBRAINZ_URL = "https://musicbrainz.org/ws/2"
ACOUSTID_MIN_SCORE = 0.6
MB_CONFIDENCE_THRESHOLD = 85
TIMEOUT_SECONDS = 10

SOURCE_FINGERPRINT = "acoustid_fingerprint"
SOURCE_TEXT = "musicbrainz_text"

_COVER_RE = re.compile(r"cover|karaoke|tribute", re.IGNORECASE)
_VERSION_RE = re.compile(r"remaster|live|session", re.IGNORECASE)
_YEAR_RE = re.compile(r"^(\d{4})")


@dataclass(frozen=True)
class CanonicalMetadata:
    artist: str | None
    title: str | None
    album: str | None = None
    year: str | None = None
    recording_id: str | None = None
    metadata_source: str | None = None


def _year_from(date_value: Any) -> str | None:
    match = _YEAR_RE.match(str(date_value or ""))
    return match.group(1) if match else None


def score_recording(recording: dict, expected_artist: str, expected_title: str) -> int:
    """Rank an AcoustID recording against what the job asked for."""
    score = 0
    names = [str(a.get("name") or "").lower() for a in recording.get("artists") or []]
    rec_title = str(recording.get("title") or "").lower()
    exp_artist = (expected_artist or "").lower()
    exp_title = (expected_title or "").lower()

    for name in names:
        if name and (name in exp_artist or exp_artist in name):
            score += 10
            break

    if exp_title == rec_title:
        score += 8
    elif rec_title and (rec_title in exp_title or exp_title in rec_title):
        score += 5

    if _COVER_RE.search(rec_title):
        score -= 8
    if _VERSION_RE.search(rec_title):
        score -= 2
    if recording.get("releasegroups"):
        score += 1
    return score


def recording_metadata(recording: dict) -> CanonicalMetadata:
    names = [a.get("name") for a in recording.get("artists") or [] if a.get("name")]
    album = None
    groups = recording.get("releasegroups") or []
    if groups:
        preferred = next((g for g in groups if g.get("type") == "Album"), groups[0])
        album = preferred.get("title")
    return CanonicalMetadata(
        artist=" & ".join(names) or None,
        title=recording.get("title"),
        album=album,
        recording_id=recording.get("id"),
        metadata_source=SOURCE_FINGERPRINT,
    )


def _build_session(user_agent: str) -> requests.Session:
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
    session.headers["User-Agent"] = user_agent
    return session


class MetadataLookup:
    def __init__(
        self,
        *,
        rate_limiter=None,
        acoustid_api_key: str | None = None,
        user_agent: str = "Trackvault/1.0",
        session: requests.Session | None = None,
        fpcalc_path: str | None = None,
    ) -> None:
        self._rate_limiter = rate_limiter
        self.acoustid_api_key = acoustid_api_key
        self._session = session or _build_session(user_agent)
        self._fpcalc_path = fpcalc_path

    def lookup(self, artist: str, title: str, file_path: str | None = None) -> CanonicalMetadata | None:
        if file_path and self.acoustid_api_key:
            fingerprint = self.fingerprint(file_path)
            if fingerprint:
                duration, fp = fingerprint
                match = self.lookup_acoustid(duration, fp, artist, title)
                if match:
                    if match.recording_id and not match.year:
                        extra = self.lookup_recording(match.recording_id)
                        if extra:
                            match = CanonicalMetadata(
                                artist=match.artist,
                                title=match.title,
                                album=match.album or extra.get("album"),
                                year=extra.get("year"),
                                recording_id=match.recording_id,
                                metadata_source=match.metadata_source,
                            )
                    return match
        return self.search_text(artist, title)

    def _get_json(self, key: str, url: str, params: dict) -> dict | None:
        if self._rate_limiter is not None:
            self._rate_limiter.wait(key)
        try:
            resp = self._session.get(url, params=params, timeout=TIMEOUT_SECONDS)
        except requests.RequestException as exc:
            logger.info("[METADATA] request=%s status=error error=%s", key, exc)
            return None
        logger.info("[METADATA] request=%s status=%s", key, resp.status_code)
        if resp.status_code != 200:
            return None
        try:
            payload = resp.json()
        except ValueError:
            return None
        return payload if isinstance(payload, dict) else None

    def fingerprint(self, file_path: str) -> tuple[int, str] | None:
        fpcalc = self._fpcalc_path or shutil.which("fpcalc")
        if not fpcalc:
            logger.info("[METADATA] fpcalc not found, skipping fingerprinting")
            return None
        try:
            completed = subprocess.run(
                [fpcalc, "-json", file_path],
                capture_output=True,
                text=True,
                check=True,
                timeout=60,
            )
            data = json.loads(completed.stdout or "{}")
        except (OSError, subprocess.SubprocessError, json.JSONDecodeError):
            logger.warning("[METADATA] fpcalc failed for %s", file_path, exc_info=True)
            return None
        duration = int(float(data.get("duration") or 0))
        fp = data.get("fingerprint") or ""
        if not fp or duration < 1:
            return None
        return duration, fp

    def lookup_acoustid(
        self,
        duration: int,
        fingerprint: str,
        expected_artist: str,
        expected_title: str,
    ) -> CanonicalMetadata | None:
        payload = self._get_json(
            "acoustid",
            ACOUSTID_URL,
            {
                "client": self.acoustid_api_key,
                "duration": duration,
                "fingerprint": fingerprint,
                "meta": "recordings releasegroups",
            },
        )
        results = (payload or {}).get("results") or []
        candidates = []
        for result in results:
            if float(result.get("score") or 0) < ACOUSTID_MIN_SCORE:
                continue
            for recording in result.get("recordings") or []:
                if recording.get("title"):
                    candidates.append(recording)
        if not candidates:
            return None

        best = max(candidates, key=lambda rec: score_recording(rec, expected_artist, expected_title))
        best_score = score_recording(best, expected_artist, expected_title)
        if best_score < 0:
            logger.info("[METADATA] acoustid best match score %s too low, skipping", best_score)
            return None
        match = recording_metadata(best)
        logger.info("[METADATA] acoustid match score=%s %s - %s", best_score, match.artist, match.title)
        return match

    def lookup_recording(self, recording_id: str) -> dict | None:
        payload = self._get_json(
            "musicbrainz",
            f"{MUSICBRAINZ_URL}/recording/{recording_id}",
            {"inc": "releases", "fmt": "json"},
        )
        releases = (payload or {}).get("releases") or []
        if not releases:
            return None
        release = releases[0]
        extra = {}
        year = _year_from(release.get("date"))
        if year:
            extra["year"] = year
        if release.get("title"):
            extra["album"] = release["title"]
        return extra or None

    def search_text(self, artist: str, title: str) -> CanonicalMetadata | None:
        artist_q = (artist or "").replace('"', '\\"')
        title_q = (title or "").replace('"', '\\"')
        payload = self._get_json(
            "musicbrainz",
            f"{MUSICBRAINZ_URL}/recording/",
            {
                "query": f'artist:"{artist_q}" AND recording:"{title_q}"',
                "fmt": "json",
                "limit": 1,
            },
        )
        recordings = (payload or {}).get("recordings") or []
        if not recordings:
            return None
        recording = recordings[0]
        score = int(recording.get("score") or 0)
        if score < MB_CONFIDENCE_THRESHOLD:
            logger.info("[METADATA] text search score too low (%s) for %s - %s", score, artist, title)
            return None
        credits = recording.get("artist-credit") or []
        releases = recording.get("releases") or []
        release = releases[0] if releases else {}
        return CanonicalMetadata(
            artist=credits[0].get("name") if credits else None,
            title=recording.get("title"),
            album=release.get("title"),
            year=_year_from(release.get("date")),
            recording_id=recording.get("id"),
            metadata_source=SOURCE_TEXT,
        )
