from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import pytest

from db.library import LibraryIndex
from db.watched import WatchedPlaylistStore, detect_platform, parse_track, track_hash
from engine.errors import NotFoundError
from engine.job_store import JobSpec, JobStore
from scheduler.jobs.playlist_watch import (
    playlist_watch_job,
    queue_pending_tracks,
    refresh_playlist,
)


class _FakeFetcher:
    def __init__(self, tracks, *, fail=False) -> None:
        self.tracks = tracks
        self.fail = fail
        self.urls = []

    def fetch(self, url):
        self.urls.append(url)
        if self.fail:
            raise RuntimeError("upstream down")
        return {"name": "Mix", "tracks": list(self.tracks)}


def _world(tmp_path):
    db_path = str(tmp_path / "trackvault.sqlite")
    library = LibraryIndex(db_path, str(tmp_path / "lib"))
    store = JobStore(db_path, library)
    watched = WatchedPlaylistStore(db_path, str(tmp_path / "lib" / "Playlists"))
    return store, library, watched


def test_track_hash_normalizes_case_and_whitespace() -> None:
    assert track_hash(" Daft Punk ", "One More Time") == track_hash("daft punk", "one more time ")
    assert track_hash("A", "B") != track_hash("A", "C")


def test_detect_platform() -> None:
    assert detect_platform("https://open.spotify.com/playlist/1") == "spotify"
    assert detect_platform("https://www.youtube.com/playlist?list=PL1") == "youtube"
    assert detect_platform("https://youtu.be/abc") == "youtube"
    assert detect_platform("https://music.amazon.com/playlists/1") == "amazon"
    assert detect_platform("https://tidal.com/browse/playlist/1") == "tidal"
    assert detect_platform("https://example.com/list") is None


def test_parse_track_accepts_strings_and_dicts() -> None:
    assert parse_track("Y - X") == {"artist": "Y", "title": "X", "external_ref": None}
    assert parse_track("Lonely Title")["artist"] == "Unknown Artist"
    assert parse_track({"artist": "Y", "title": "X", "id": 77})["external_ref"] == 77


def test_add_playlist_rejects_unsupported_url_and_mode(tmp_path) -> None:
    _, _, watched = _world(tmp_path)

    with pytest.raises(ValueError):
        watched.add_playlist("https://example.com/list")
    with pytest.raises(ValueError):
        watched.add_playlist("https://tidal.com/playlist/1", sync_mode="replace")


def test_append_mode_keeps_tracks_missing_upstream(tmp_path) -> None:
    _, _, watched = _world(tmp_path)
    playlist = watched.add_playlist("https://tidal.com/playlist/1", name="Mix")

    first = watched.apply_refresh(playlist["id"], ["A - One", "B - Two"])
    second = watched.apply_refresh(playlist["id"], ["A - One", "C - Three"])

    assert first == {"new_tracks": 2, "removed_tracks": 0, "total_tracks": 2}
    assert second == {"new_tracks": 1, "removed_tracks": 0, "total_tracks": 2}
    assert watched.get_playlist(playlist["id"])["total_tracks"] == 3


def test_mirror_mode_marks_removed_and_restores(tmp_path) -> None:
    _, _, watched = _world(tmp_path)
    playlist = watched.add_playlist("https://tidal.com/playlist/1", name="Mix", sync_mode="mirror")

    watched.apply_refresh(playlist["id"], ["A - One", "B - Two"])
    removed = watched.apply_refresh(playlist["id"], ["A - One"])
    assert removed["removed_tracks"] == 1
    assert watched.get_playlist(playlist["id"])["total_tracks"] == 1

    restored = watched.apply_refresh(playlist["id"], ["A - One", "B - Two"])
    assert restored["new_tracks"] == 0
    assert watched.get_playlist(playlist["id"])["total_tracks"] == 2


def test_new_track_already_in_library_is_downloaded(tmp_path) -> None:
    _, library, watched = _world(tmp_path)
    audio = tmp_path / "lib" / "Y" / "X.flac"
    audio.parent.mkdir(parents=True)
    audio.write_bytes(b"a")
    library.add(job_id=None, title="X", artist="Y", file_path=str(audio), external_ref="T1")
    playlist = watched.add_playlist("https://tidal.com/playlist/1", name="Mix")

    watched.apply_refresh(playlist["id"], ["y - x"])

    track = watched.list_tracks(playlist["id"])[0]
    assert track["status"] == "downloaded"
    assert track["external_ref"] == "T1"


def test_queue_pending_tracks_uses_dedup(tmp_path) -> None:
    store, _, watched = _world(tmp_path)
    playlist = watched.add_playlist("https://tidal.com/playlist/1", name="Mix")
    watched.apply_refresh(
        playlist["id"],
        [{"artist": "A", "title": "One", "external_ref": "T1"}, {"artist": "B", "title": "Two", "external_ref": "T2"}],
    )
    existing = store.enqueue(JobSpec(source="cdn-direct", title="Two", artist="B", external_ref="T2"))

    result = queue_pending_tracks(watched, store, playlist["id"])

    assert result == {"success": True, "queued": 1, "errors": []}
    tracks = {t["external_ref"]: t for t in watched.list_tracks(playlist["id"])}
    assert tracks["T1"]["status"] == "queued"
    assert tracks["T2"]["status"] == "queued"
    assert tracks["T2"]["job_id"] == existing
    assert store.stats()["queued"] == 2


def test_queue_pending_without_reference_needs_resolver(tmp_path) -> None:
    store, _, watched = _world(tmp_path)
    playlist = watched.add_playlist("https://open.spotify.com/playlist/1", name="Mix")
    watched.apply_refresh(playlist["id"], ["A - One", "B - Two"])

    def _resolver(artist, title):
        if artist == "A":
            return {"source": "cdn-direct", "external_ref": "555", "artist": "A", "title": "One"}
        return None

    result = queue_pending_tracks(watched, store, playlist["id"], resolver=_resolver)

    assert result["queued"] == 1
    assert len(result["errors"]) == 1
    statuses = {t["title"]: t["status"] for t in watched.list_tracks(playlist["id"])}
    assert statuses == {"One": "queued", "Two": "failed"}

    assert watched.retry_failed(playlist["id"]) == 1
    assert len(watched.pending_tracks(playlist["id"])) == 1


def test_refresh_playlist_merges_queues_and_writes_m3u(tmp_path) -> None:
    store, _, watched = _world(tmp_path)
    playlist = watched.add_playlist("https://tidal.com/playlist/1", name="Road Trip!")
    fetcher = _FakeFetcher([{"artist": "A", "title": "One", "external_ref": "T1"}])

    result = refresh_playlist(watched, store, fetcher, playlist["id"])

    assert result["status"] == "ok"
    assert result["new_tracks"] == 1
    assert result["queued"] == 1
    assert result["m3u"].endswith("Road Trip.m3u")
    assert (tmp_path / "lib" / "Playlists" / "Road Trip.m3u").read_text(encoding="utf-8").startswith("#EXTM3U")


def test_refresh_playlist_reports_fetch_errors(tmp_path, caplog) -> None:
    store, _, watched = _world(tmp_path)
    playlist = watched.add_playlist("https://tidal.com/playlist/1", name="Mix")

    with caplog.at_level(logging.ERROR, logger="scheduler.jobs.playlist_watch"):
        result = refresh_playlist(watched, store, _FakeFetcher([], fail=True), playlist["id"])

    assert result["status"] == "error"
    assert "upstream down" in result["error"]
    assert [record.name for record in caplog.records] == ["scheduler.jobs.playlist_watch"]


def test_playlist_watch_job_only_refreshes_due_playlists(tmp_path) -> None:
    store, _, watched = _world(tmp_path)
    due = watched.add_playlist("https://tidal.com/playlist/1", name="Due")
    disabled = watched.add_playlist("https://tidal.com/playlist/2", name="Off")
    watched.toggle_playlist(disabled["id"])
    fetcher = _FakeFetcher(["A - One"])

    first = playlist_watch_job(watched, store, fetcher)
    second = playlist_watch_job(watched, store, fetcher)
    later = playlist_watch_job(watched, store, fetcher, now=datetime.now(timezone.utc) + timedelta(hours=25))

    assert first["refreshed"] == 1
    assert fetcher.urls[0] == due["url"]
    assert second["refreshed"] == 0
    assert later["refreshed"] == 1


def test_mark_job_outcome_and_sync(tmp_path) -> None:
    store, _, watched = _world(tmp_path)
    playlist = watched.add_playlist("https://tidal.com/playlist/1", name="Mix")
    watched.apply_refresh(playlist["id"], [{"artist": "A", "title": "One", "external_ref": "T1"}])
    queue_pending_tracks(watched, store, playlist["id"])
    job = store.claim_next()
    store.mark_failed(job.id, "boom")

    assert watched.sync_track_statuses() == 0
    assert watched.list_tracks(playlist["id"])[0]["status"] == "failed"
    assert watched.mark_job_outcome(job.id, True) == 0


def test_delete_playlist_removes_m3u(tmp_path) -> None:
    _, _, watched = _world(tmp_path)
    playlist = watched.add_playlist("https://tidal.com/playlist/1", name="Mix")
    result = watched.generate_m3u(playlist["id"])
    assert result["success"] is True

    assert watched.delete_playlist(playlist["id"]) is True
    assert not (tmp_path / "lib" / "Playlists" / "Mix.m3u").exists()
    with pytest.raises(NotFoundError):
        watched.require_playlist(playlist["id"])
