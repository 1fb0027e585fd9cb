"""Scheduler job for watched playlist polling."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from db.watched import TRACK_DOWNLOADED, TRACK_FAILED, TRACK_QUEUED
from engine.job_store import (
    DEDUP_ALREADY_QUEUED,
    SOURCE_CDN,
    SOURCE_EXTRACTOR,
    JobSpec,
)

logger = logging.getLogger(__name__)

# Platforms whose track references can be downloaded directly.
_DIRECT_SOURCES = {
    "tidal": SOURCE_CDN,
    "youtube": SOURCE_EXTRACTOR,
}

Resolver = Callable[[str, str], "dict[str, Any] | None"]


def _direct_spec(track: dict[str, Any], playlist: dict[str, Any]) -> JobSpec | None:
    source = _DIRECT_SOURCES.get(playlist.get("platform") or "")
    if not source or not track.get("external_ref"):
        return None
    return JobSpec(
        source=source,
        title=track.get("title") or "Unknown",
        artist=track.get("artist") or "Unknown",
        external_ref=str(track["external_ref"]),
    )


def _resolved_spec(track: dict[str, Any], resolver: Resolver | None) -> JobSpec | None:
    if resolver is None:
        return None
    match = resolver(track.get("artist") or "", track.get("title") or "")
    if not match or not match.get("external_ref"):
        return None
    return JobSpec(
        source=match.get("source") or SOURCE_CDN,
        title=match.get("title") or track.get("title") or "Unknown",
        artist=match.get("artist") or track.get("artist") or "Unknown",
        external_ref=str(match["external_ref"]),
        url=match.get("url") or None,
        thumbnail=match.get("thumbnail") or None,
    )


def queue_track(watched, job_store, track: dict[str, Any], playlist: dict[str, Any], resolver: Resolver | None = None) -> dict[str, Any]:
    spec = _direct_spec(track, playlist) or _resolved_spec(track, resolver)
    if spec is None:
        watched.update_track_status(track["id"], TRACK_FAILED)
        return {"success": False, "error": "No downloadable reference found"}

    job_id, created, reason = job_store.enqueue_unique(spec)
    if created:
        watched.update_track_status(track["id"], TRACK_QUEUED, job_id=job_id, external_ref=spec.external_ref)
        return {"success": True, "job_id": job_id}
    if reason == DEDUP_ALREADY_QUEUED:
        watched.update_track_status(track["id"], TRACK_QUEUED, job_id=job_id, external_ref=spec.external_ref)
        return {"success": True, "job_id": job_id, "skipped": True}
    watched.update_track_status(track["id"], TRACK_DOWNLOADED, external_ref=spec.external_ref)
    return {"success": True, "skipped": True, "reason": reason}


def queue_pending_tracks(
    watched,
    job_store,
    playlist_id: str,
    *,
    limit: int = 10,
    resolver: Resolver | None = None,
) -> dict[str, Any]:
    playlist = watched.require_playlist(playlist_id)
    queued = 0
    errors: list[str] = []
    for track in watched.pending_tracks(playlist_id, limit):
        try:
            result = queue_track(watched, job_store, track, playlist, resolver)
        except Exception as exc:
            logger.exception("Queueing failed for watched track %s", track.get("id"))
            errors.append(f"{track.get('artist')} - {track.get('title')}: {exc}")
            continue
        if result.get("success"):
            if result.get("job_id") and not result.get("skipped"):
                queued += 1
        else:
            errors.append(f"{track.get('artist')} - {track.get('title')}: {result.get('error')}")
    return {"success": True, "queued": queued, "errors": errors}


def refresh_playlist(
    watched,
    job_store,
    fetcher,
    playlist_id: str,
    *,
    resolver: Resolver | None = None,
    queue_limit: int = 10,
) -> dict[str, Any]:
    """Fetch the playlist upstream, merge its tracks, queue pending ones and rewrite the M3U."""
    playlist = watched.require_playlist(playlist_id)
    try:
        fetched = fetcher.fetch(playlist["url"])
    except Exception as exc:
        logger.exception("Playlist fetch failed for %s", playlist_id)
        return {"status": "error", "playlist_id": playlist_id, "error": f"fetch_failed: {exc}"}
    if not fetched:
        return {"status": "error", "playlist_id": playlist_id, "error": "Could not fetch playlist"}

    merged = watched.apply_refresh(playlist_id, fetched.get("tracks") or [])
    queued = queue_pending_tracks(watched, job_store, playlist_id, limit=queue_limit, resolver=resolver)
    m3u = watched.generate_m3u(playlist_id) if playlist["make_m3u"] else None
    return {
        "status": "ok",
        "playlist_id": playlist_id,
        **merged,
        "queued": queued["queued"],
        "errors": queued["errors"],
        "m3u": (m3u or {}).get("path"),
    }


def playlist_watch_job(
    watched,
    job_store,
    fetcher,
    *,
    resolver: Resolver | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Refresh every enabled playlist whose interval elapsed, after syncing track statuses."""
    synced = watched.sync_track_statuses()
    results = []
    for playlist in watched.due_for_refresh(now):
        results.append(refresh_playlist(watched, job_store, fetcher, playlist["id"], resolver=resolver))
    refreshed = sum(1 for r in results if r.get("status") == "ok")
    logger.info("Watched playlist poll: refreshed=%d due=%d synced=%d", refreshed, len(results), synced)
    return {"status": "ok", "synced": synced, "refreshed": refreshed, "results": results}
