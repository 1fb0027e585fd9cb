from __future__ import annotations

import os

from db.library import LibraryIndex
from db.watched import WatchedPlaylistStore
from download.base import RawResult
from engine.errors import TransientFetchError
from engine.job_store import JobSpec, JobStore
from engine.orchestrator import Completed, DownloadOrchestrator, Failed
from engine.rate_limiter import RateLimiter
from metadata.enricher import MetadataEnricher
from metadata.lookup import CanonicalMetadata


class _FakeDownloader:
    source = "cdn-direct"

    def __init__(self, library_dir, *, artist="Y", title="X", fail=False) -> None:
        self.library_dir = library_dir
        self.artist = artist
        self.title = title
        self.fail = fail
        self.calls = []

    def fetch(self, job) -> RawResult:
        self.calls.append(job.id)
        target = os.path.join(self.library_dir, self.artist, f"{self.title}.flac")
        os.makedirs(os.path.dirname(target), exist_ok=True)
        with open(target, "wb") as handle:
            handle.write(b"partial" if self.fail else b"fLaC-audio")
        if self.fail:
            raise TransientFetchError("HTTP 503")
        return RawResult(file_path=target, codec="flac", bitrate=1411, duration=180, artist=self.artist, title=self.title)


class _FakeLookup:
    def __init__(self, result) -> None:
        self.result = result

    def lookup(self, artist, title, file_path=None):
        return self.result


class _FakeTagger:
    def __init__(self) -> None:
        self.writes = []

    def write(self, file_path, artist, title, album=None, year=None, *, allow_overwrite=True):
        self.writes.append((file_path, artist, title, album, year, allow_overwrite))
        return True


def _rate_limiter() -> RateLimiter:
    return RateLimiter(sleep=lambda _seconds: None)


def _setup(tmp_path, downloader, *, enricher=None, watched=False):
    db_path = str(tmp_path / "trackvault.sqlite")
    library_dir = str(tmp_path / "lib")
    library = LibraryIndex(db_path, library_dir)
    store = JobStore(db_path, library)
    watched_store = WatchedPlaylistStore(db_path, str(tmp_path / "lib" / "Playlists")) if watched else None
    orchestrator = DownloadOrchestrator(
        store,
        library,
        {downloader.source: downloader},
        _rate_limiter(),
        enricher=enricher,
        watched=watched_store,
    )
    return store, library, orchestrator, watched_store


def test_successful_job_completes_and_lands_in_library(tmp_path) -> None:
    downloader = _FakeDownloader(str(tmp_path / "lib"))
    store, library, orchestrator, _ = _setup(tmp_path, downloader)
    job_id = store.enqueue(JobSpec(source="cdn-direct", title="X", artist="Y", external_ref="T1"))

    outcome = orchestrator.process(store.claim_next())

    assert isinstance(outcome, Completed)
    assert outcome.job_id == job_id
    job = store.get(job_id)
    assert job.status == "completed"
    assert job.file_path == str(tmp_path / "lib" / "Y" / "X.flac")
    assert job.duration == 180
    entry = library.get(outcome.library_entry_id)
    assert entry.file_path == job.file_path
    assert entry.duration == 180
    assert entry.file_size == len(b"fLaC-audio")
    assert entry.external_ref == "T1"
    assert entry.album == "Singles"


def test_fetch_failure_marks_job_failed_and_leaves_partial_file(tmp_path) -> None:
    downloader = _FakeDownloader(str(tmp_path / "lib"), fail=True)
    store, library, orchestrator, _ = _setup(tmp_path, downloader)
    job_id = store.enqueue(JobSpec(source="cdn-direct", title="X", artist="Y", external_ref="T1"))

    outcome = orchestrator.process(store.claim_next())

    assert isinstance(outcome, Failed)
    assert outcome.error == "HTTP 503"
    job = store.get(job_id)
    assert job.status == "failed"
    assert job.error == "HTTP 503"
    assert library.count() == 0
    assert (tmp_path / "lib" / "Y" / "X.flac").exists()


def test_missing_downloader_fails_job(tmp_path) -> None:
    downloader = _FakeDownloader(str(tmp_path / "lib"))
    store, _, orchestrator, _ = _setup(tmp_path, downloader)
    job_id = store.enqueue(JobSpec(source="extractor", url="https://example.com/watch?v=1"))

    outcome = orchestrator.process(store.claim_next())

    assert isinstance(outcome, Failed)
    assert "No downloader configured" in outcome.error
    assert store.get(job_id).status == "failed"
    assert downloader.calls == []


def test_enrichment_relocates_file_to_canonical_title(tmp_path) -> None:
    library_dir = str(tmp_path / "lib")

    class _ExtractorDownloader(_FakeDownloader):
        source = "extractor"

    downloader = _ExtractorDownloader(library_dir, title="Y (Official)")
    canonical = CanonicalMetadata(artist="Y", title="Y", album="Z", year="2001", metadata_source="acoustid_fingerprint")
    tagger = _FakeTagger()
    enricher = MetadataEnricher(_FakeLookup(canonical), tagger, library_dir)
    store, library, orchestrator, _ = _setup(tmp_path, downloader, enricher=enricher)
    job_id = store.enqueue(JobSpec(source="extractor", title="Y (Official)", artist="Y", external_ref="vid1"))

    outcome = orchestrator.process(store.claim_next())

    expected = os.path.join(library_dir, "Y", "Y.flac")
    assert isinstance(outcome, Completed)
    assert outcome.file_path == expected
    assert os.path.isfile(expected)
    assert not os.path.exists(os.path.join(library_dir, "Y", "Y (Official).flac"))
    job = store.get(job_id)
    assert job.file_path == expected
    assert job.metadata_source == "acoustid_fingerprint"
    entry = library.get(outcome.library_entry_id)
    assert entry.title == "Y"
    assert entry.album == "Z"
    assert tagger.writes[0][5] is True


def test_authoritative_source_keeps_its_tags(tmp_path) -> None:
    library_dir = str(tmp_path / "lib")
    downloader = _FakeDownloader(library_dir)
    canonical = CanonicalMetadata(artist="Other", title="Else", album="Z", year="1999", metadata_source="musicbrainz_text")
    tagger = _FakeTagger()
    enricher = MetadataEnricher(_FakeLookup(canonical), tagger, library_dir)
    store, library, orchestrator, _ = _setup(tmp_path, downloader, enricher=enricher)
    store.enqueue(JobSpec(source="cdn-direct", title="X", artist="Y", external_ref="T1"))

    outcome = orchestrator.process(store.claim_next())

    assert outcome.file_path == os.path.join(library_dir, "Y", "X.flac")
    entry = library.get(outcome.library_entry_id)
    assert (entry.artist, entry.title, entry.album) == ("Y", "X", "Z")
    assert tagger.writes == [(outcome.file_path, "Y", "X", "Z", "1999", False)]


def test_outcome_updates_watched_tracks(tmp_path) -> None:
    downloader = _FakeDownloader(str(tmp_path / "lib"))
    store, _, orchestrator, watched = _setup(tmp_path, downloader, watched=True)
    playlist = watched.add_playlist("https://tidal.com/playlist/abc", name="Mix")
    watched.apply_refresh(playlist["id"], [{"artist": "Y", "title": "X", "external_ref": "T1"}])
    track = watched.pending_tracks(playlist["id"])[0]
    job_id = store.enqueue(JobSpec(source="cdn-direct", title="X", artist="Y", external_ref="T1"))
    watched.update_track_status(track["id"], "queued", job_id=job_id)

    orchestrator.process(store.claim_next())

    updated = watched.list_tracks(playlist["id"])[0]
    assert updated["status"] == "downloaded"
    m3u = tmp_path / "lib" / "Playlists" / "Mix.m3u"
    assert m3u.exists()
    assert "Y/X.flac" in m3u.read_text(encoding="utf-8")


def test_completion_after_reclaim_is_reported_as_failure(tmp_path) -> None:
    downloader = _FakeDownloader(str(tmp_path / "lib"))
    store, library, orchestrator, _ = _setup(tmp_path, downloader)
    store.enqueue(JobSpec(source="cdn-direct", title="X", artist="Y", external_ref="T1"))
    job = store.claim_next()
    store.mark_failed(job.id, "cancelled")

    outcome = orchestrator.process(job)

    assert isinstance(outcome, Failed)
    assert store.get(job.id).error == "cancelled"
    assert library.count() == 0
