from __future__ import annotations

import os

from fastapi.testclient import TestClient

from api.main import build_services, create_app
from download.base import RawResult
from engine.config import merge_config
from engine.errors import TransientFetchError
from engine.job_store import JobSpec


class _FakeDownloader:
    source = "cdn-direct"

    def __init__(self, library_dir) -> None:
        self.library_dir = library_dir
        self.fail_refs = set()

    def fetch(self, job) -> RawResult:
        if job.external_ref in self.fail_refs:
            raise TransientFetchError("HTTP 503")
        target = os.path.join(self.library_dir, job.artist, f"{job.title}.flac")
        os.makedirs(os.path.dirname(target), exist_ok=True)
        with open(target, "wb") as handle:
            handle.write(b"fLaC")
        return RawResult(file_path=target, codec="flac", bitrate=1411, duration=180, artist=job.artist, title=job.title)


def _client(tmp_path, **overrides):
    config = merge_config(
        {
            "library_dir": str(tmp_path / "lib"),
            "db_path": str(tmp_path / "db" / "trackvault.sqlite"),
            "log_dir": str(tmp_path / "logs"),
            "jobs_per_request": 0,
            "trigger_secret": "s3cret",
            "rate_limits": {"cdn-direct": {"max_requests": 100, "window_seconds": 60, "min_interval": 0}},
            "metadata": {"enabled": False},
            **overrides,
        }
    )
    downloader = _FakeDownloader(str(tmp_path / "lib"))
    services = build_services(config, downloaders={"cdn-direct": downloader})
    return TestClient(create_app(config, services=services)), services, downloader


def _enqueue(client, ref="T1", title="X", artist="Y"):
    return client.post(
        "/api/jobs",
        json={"source": "cdn-direct", "external_ref": ref, "title": title, "artist": artist},
    )


def test_enqueue_and_duplicate_is_skipped(tmp_path) -> None:
    client, _, _ = _client(tmp_path)

    first = _enqueue(client)
    second = _enqueue(client)

    assert first.status_code == 200
    assert first.json()["status"] == "queued"
    assert second.json() == {"status": "skipped", "reason": "already_queued", "job_id": first.json()["job_id"]}


def test_enqueue_validates_payload(tmp_path) -> None:
    client, _, _ = _client(tmp_path)

    missing_ref = client.post("/api/jobs", json={"source": "cdn-direct"})
    bad_source = client.post("/api/jobs", json={"source": "ftp", "external_ref": "1"})

    assert missing_ref.status_code == 400
    assert bad_source.status_code == 400


def test_trigger_processes_jobs_with_secret(tmp_path) -> None:
    client, services, _ = _client(tmp_path)
    job_id = _enqueue(client).json()["job_id"]

    forbidden = client.post("/api/queue/process", headers={"X-Trigger-Secret": "nope"})
    response = client.post("/api/queue/process?count=5", headers={"X-Trigger-Secret": "s3cret"})

    assert forbidden.status_code == 403
    body = response.json()
    assert body["status"] == "ok"
    assert body["processed"] == 1
    assert body["results"][0]["job_id"] == job_id
    assert body["stats"]["completed"] == 1
    assert services.library.count() == 1

    job = client.get(f"/api/jobs/{job_id}").json()
    assert job["status"] == "completed"
    assert job["duration"] == 180


def test_trigger_accepts_query_secret(tmp_path) -> None:
    client, _, _ = _client(tmp_path)
    _enqueue(client)

    response = client.post("/api/queue/process?secret=s3cret")

    assert response.json()["processed"] == 1


def test_trigger_disabled_without_secret(tmp_path) -> None:
    client, services, _ = _client(tmp_path, trigger_secret=None)
    _enqueue(client)

    response = client.post("/api/queue/process", headers={"X-Trigger-Secret": "anything"})

    assert response.status_code == 200
    assert response.json() == {"status": "disabled"}
    assert services.job_store.stats()["queued"] == 1


def test_piggyback_runs_after_ordinary_requests(tmp_path) -> None:
    client, services, _ = _client(tmp_path, jobs_per_request=1)

    job_id = _enqueue(client).json()["job_id"]

    assert services.job_store.get(job_id).status == "completed"
    status = client.get("/api/queue/status").json()
    assert status["stats"]["completed"] == 1
    assert status["pending"] == 0


def test_piggyback_skips_trigger_path(tmp_path) -> None:
    client, services, _ = _client(tmp_path, jobs_per_request=1, trigger_secret=None)
    services.job_store.enqueue(JobSpec(source="cdn-direct", external_ref="T9"))

    client.post("/api/queue/process")

    assert services.job_store.stats()["queued"] == 1


def test_retry_and_delete_map_state_errors(tmp_path) -> None:
    client, _, downloader = _client(tmp_path)
    downloader.fail_refs.add("T1")
    job_id = _enqueue(client).json()["job_id"]

    early_retry = client.post(f"/api/jobs/{job_id}/retry")
    client.post("/api/queue/process", headers={"X-Trigger-Secret": "s3cret"})
    failed = client.get(f"/api/jobs/{job_id}").json()
    retried = client.post(f"/api/jobs/{job_id}/retry")
    deleted = client.delete(f"/api/jobs/{job_id}")
    missing = client.get(f"/api/jobs/{job_id}")

    assert early_retry.status_code == 409
    assert early_retry.json()["current"] == "queued"
    assert failed["status"] == "failed"
    assert failed["error"] == "HTTP 503"
    assert retried.json() == {"status": "queued", "job_id": job_id}
    assert deleted.status_code == 200
    assert missing.status_code == 404


def test_retry_is_skipped_while_reference_is_requeued(tmp_path) -> None:
    client, services, downloader = _client(tmp_path)
    downloader.fail_refs.add("T1")
    first = _enqueue(client).json()["job_id"]
    client.post("/api/queue/process", headers={"X-Trigger-Secret": "s3cret"})
    second = _enqueue(client).json()["job_id"]

    response = client.post(f"/api/jobs/{first}/retry")

    assert response.status_code == 200
    assert response.json() == {
        "status": "skipped",
        "reason": "already_queued",
        "job_id": first,
        "active_job_id": second,
    }
    assert services.job_store.get(first).status == "failed"


def test_library_listing_integrity_and_delete(tmp_path) -> None:
    client, services, _ = _client(tmp_path)
    _enqueue(client, ref="T1", title="X")
    _enqueue(client, ref="T2", title="W")
    client.post("/api/queue/process?count=2", headers={"X-Trigger-Secret": "s3cret"})

    listing = client.get("/api/library?sort=title").json()
    assert listing["total"] == 2
    assert [t["title"] for t in listing["tracks"]] == ["W", "X"]
    assert client.get("/api/library?q=W").json()["total"] == 1
    stats = client.get("/api/library/stats").json()
    assert stats["track_count"] == 2
    assert stats["artists"] == [{"artist": "Y", "track_count": 2}]

    os.remove(tmp_path / "lib" / "Y" / "X.flac")
    scan = client.get("/api/library/integrity").json()
    assert scan["is_clean"] is False
    assert len(scan["missing_files"]) == 1
    healed = client.post("/api/library/integrity/heal").json()
    assert healed["removed_entries"] == 1
    assert healed["failed_jobs"] == 1

    remaining = listing["tracks"][0]
    response = client.delete(f"/api/library/{remaining['id']}")
    assert response.status_code == 200
    assert not os.path.exists(remaining["file_path"])
    assert client.delete(f"/api/library/{remaining['id']}").status_code == 404
    assert services.library.count() == 0


def test_clear_queue_only_accepts_terminal_status(tmp_path) -> None:
    client, _, _ = _client(tmp_path)

    assert client.post("/api/queue/clear?status=queued").status_code == 400
    assert client.post("/api/queue/clear").json() == {"status": "ok", "removed": 0}


def test_client_limit_returns_429(tmp_path) -> None:
    client, _, _ = _client(tmp_path, client_limits={"max_per_action": 2, "max_per_client": 100, "window_seconds": 60})

    codes = [_enqueue(client, ref=f"T{i}").status_code for i in range(3)]

    assert codes == [200, 200, 429]


def test_watched_playlist_endpoints(tmp_path) -> None:
    client, _, _ = _client(tmp_path)

    bad = client.post("/api/watched", json={"url": "https://example.com/list"})
    created = client.post("/api/watched", json={"url": "https://tidal.com/playlist/1", "name": "Mix"}).json()
    playlist_id = created["playlist"]["id"]
    listed = client.get("/api/watched").json()
    toggled = client.post(f"/api/watched/{playlist_id}/toggle").json()
    refresh = client.post(f"/api/watched/{playlist_id}/refresh")
    detail = client.get(f"/api/watched/{playlist_id}").json()
    deleted = client.delete(f"/api/watched/{playlist_id}")
    missing = client.get(f"/api/watched/{playlist_id}")

    assert bad.status_code == 400
    assert created["playlist"]["platform"] == "tidal"
    assert [p["id"] for p in listed["playlists"]] == [playlist_id]
    assert toggled == {"status": "ok", "enabled": False}
    assert refresh.status_code == 503
    assert detail["tracks"] == []
    assert deleted.status_code == 200
    assert missing.status_code == 404
