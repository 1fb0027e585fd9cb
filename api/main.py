"""HTTP surface: queue, library, integrity and watched-playlist endpoints.

Every non-skipped request also acts as an ad-hoc worker: the piggyback
middleware attaches a background task that claims and processes queued jobs
after the response body has been sent.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.background import BackgroundTask
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from db.library import LibraryIndex
from db.watched import WatchedPlaylistStore
from download.cdn import CdnDownloader
from download.extractor import ExtractorDownloader
from engine.config import config_from_env, load_config, merge_config, validate_config
from engine.errors import ConfigurationError, InvalidTransition, NotFoundError
from engine.job_store import DEDUP_ALREADY_QUEUED, SOURCE_CDN, SOURCE_EXTRACTOR, JobSpec, JobStore
from engine.logging_utils import setup_logging
from engine.orchestrator import DownloadOrchestrator
from engine.paths import build_engine_paths, resolve_config_path
from engine.rate_limiter import RateLimiter
from engine.reconcile import ReconciliationEngine
from engine.scheduler import QueueTicker
from engine.trigger import BackgroundProcessor
from metadata.enricher import MetadataEnricher
from metadata.lookup import MetadataLookup
from metadata.tagger import TagWriter
from scheduler.jobs.playlist_watch import playlist_watch_job, queue_pending_tracks, refresh_playlist

APP_NAME = "Trackvault API"
TRIGGER_SECRET_HEADER = "X-Trigger-Secret"

logger = logging.getLogger(__name__)


def _env_or_default(name, default):
    value = os.environ.get(name)
    return value if value else default


_TRUST_PROXY = _env_or_default("TRACKVAULT_TRUST_PROXY", "0").strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Services:
    config: dict
    rate_limiter: RateLimiter
    library: LibraryIndex
    job_store: JobStore
    watched: WatchedPlaylistStore
    orchestrator: DownloadOrchestrator
    processor: BackgroundProcessor
    reconciler: ReconciliationEngine
    fetcher: Any = None
    resolver: Any = None
    ticker: QueueTicker | None = None


def build_services(config, *, downloaders=None, enricher=None, fetcher=None, resolver=None):
    """Wire every component from a merged config dict."""
    paths = build_engine_paths(config)
    rate_limiter = RateLimiter(config.get("rate_limits"))
    library = LibraryIndex(paths.db_path, paths.library_dir)
    job_store = JobStore(paths.db_path, library)
    watched = WatchedPlaylistStore(paths.db_path, paths.playlists_dir)
    tagger = TagWriter()

    if downloaders is None:
        cdn_cfg = config.get("cdn") or {}
        downloaders = {
            SOURCE_CDN: CdnDownloader(
                paths.library_dir,
                api_url=cdn_cfg.get("api_url"),
                timeout_seconds=cdn_cfg.get("timeout_seconds") or 15,
                quality=cdn_cfg.get("quality") or "LOSSLESS",
                tagger=tagger,
            ),
        }
        extractor_cfg = config.get("extractor") or {}
        if extractor_cfg.get("enabled", True):
            downloaders[SOURCE_EXTRACTOR] = ExtractorDownloader(
                paths.library_dir,
                cookies_file=extractor_cfg.get("cookies_file"),
            )

    metadata_cfg = config.get("metadata") or {}
    if enricher is None and metadata_cfg.get("enabled", True):
        lookup = MetadataLookup(
            rate_limiter=rate_limiter,
            acoustid_api_key=metadata_cfg.get("acoustid_api_key"),
            user_agent=metadata_cfg.get("user_agent") or "Trackvault/1.0",
        )
        enricher = MetadataEnricher(lookup, tagger, paths.library_dir)

    orchestrator = DownloadOrchestrator(
        job_store,
        library,
        downloaders,
        rate_limiter,
        enricher=enricher,
        watched=watched,
    )
    processor = BackgroundProcessor(
        job_store,
        orchestrator,
        jobs_per_request=config.get("jobs_per_request", 1),
        skip_paths=config.get("skip_paths"),
        trigger_secret=config.get("trigger_secret"),
        max_count=config.get("trigger_max_count", 20),
    )
    reconciler = ReconciliationEngine(job_store, library, watched)
    return Services(
        config=config,
        rate_limiter=rate_limiter,
        library=library,
        job_store=job_store,
        watched=watched,
        orchestrator=orchestrator,
        processor=processor,
        reconciler=reconciler,
        fetcher=fetcher,
        resolver=resolver,
    )


def _load_runtime_config():
    path = resolve_config_path(os.environ.get("TRACKVAULT_CONFIG"))
    config = config_from_env(load_config(path))
    errors = validate_config(config)
    if errors:
        raise ConfigurationError("Invalid config: " + "; ".join(errors))
    return config


class JobRequest(BaseModel):
    source: str
    external_ref: str | None = None
    url: str | None = None
    title: str | None = None
    artist: str | None = None
    thumbnail: str | None = None
    convert_to_flac: bool = True


class WatchedPlaylistRequest(BaseModel):
    url: str
    name: str | None = None
    sync_mode: str = "append"
    make_m3u: bool = True
    refresh_interval_hours: int = 24


def _client_id(request: Request):
    return request.client.host if request.client else "unknown"


def _enforce_client_limit(services, action, request):
    limits = services.config.get("client_limits") or {}
    allowed = services.rate_limiter.check_limit(
        action,
        _client_id(request),
        max_per_action=limits.get("max_per_action", 30),
        max_per_client=limits.get("max_per_client", 100),
        window_seconds=limits.get("window_seconds", 60),
    )
    if not allowed:
        raise HTTPException(status_code=429, detail="Too many requests, slow down")


def create_app(config=None, *, services=None):
    app = FastAPI(
        title=APP_NAME,
        description="Trackvault API for queueing, archiving and reconciling audio tracks.",
    )
    if _TRUST_PROXY:
        app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")
    app.state.services = services
    app.state.config = merge_config(config) if config is not None else None

    def _services(request: Request) -> Services:
        current = request.app.state.services
        if current is None:
            raise ConfigurationError("Services are not initialised")
        return current

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidTransition)
    async def _invalid_transition(request: Request, exc: InvalidTransition):
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "current": exc.current, "target": exc.target},
        )

    @app.exception_handler(ConfigurationError)
    async def _configuration_error(request: Request, exc: ConfigurationError):
        return JSONResponse(status_code=503, content={"detail": str(exc), "status": "disabled"})

    @app.middleware("http")
    async def piggyback_trigger(request: Request, call_next):
        response = await call_next(request)
        current = request.app.state.services
        if current is not None and current.processor.should_trigger(request.url.path):
            if response.background is None:
                response.background = BackgroundTask(current.processor.run_piggyback)
        return response

    @app.on_event("startup")
    async def startup():
        if app.state.services is None:
            cfg = app.state.config if app.state.config is not None else _load_runtime_config()
            paths = build_engine_paths(cfg)
            setup_logging(paths.log_dir)
            app.state.services = build_services(cfg)
        current = app.state.services
        scheduler_cfg = current.config.get("scheduler") or {}
        if scheduler_cfg.get("enabled"):
            cleanup_days = (current.config.get("cleanup") or {}).get("terminal_job_days", 30)
            watch_callback = None
            if current.fetcher is not None:
                def watch_callback():
                    return playlist_watch_job(
                        current.watched,
                        current.job_store,
                        current.fetcher,
                        resolver=current.resolver,
                    )
            current.ticker = QueueTicker(
                current.processor,
                drain_interval_seconds=scheduler_cfg.get("drain_interval_seconds", 30),
                watch_callback=watch_callback,
                watch_interval_minutes=scheduler_cfg.get("watch_interval_minutes", 60),
                cleanup_callback=lambda: current.job_store.cleanup_terminal(cleanup_days),
            )
            current.ticker.start()
        logger.info("%s started", APP_NAME)

    @app.on_event("shutdown")
    async def shutdown():
        current = app.state.services
        if current is not None and current.ticker is not None:
            current.ticker.shutdown()

    # -- jobs ---------------------------------------------------------------

    @app.post("/api/jobs")
    def enqueue_job(payload: JobRequest, request: Request):
        services = _services(request)
        _enforce_client_limit(services, "enqueue", request)
        try:
            spec = JobSpec.from_payload(payload.model_dump())
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        job_id, created, reason = services.job_store.enqueue_unique(spec)
        if not created:
            return {"status": "skipped", "reason": reason, "job_id": job_id}
        return {"status": "queued", "job_id": job_id}

    @app.get("/api/jobs")
    def list_jobs(
        request: Request,
        status: str | None = None,
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
    ):
        services = _services(request)
        jobs = services.job_store.list_jobs(status=status, limit=limit, offset=offset)
        return {"jobs": [job.to_dict() for job in jobs], "stats": services.job_store.stats()}

    @app.get("/api/jobs/{job_id}")
    def get_job(job_id: str, request: Request):
        return _services(request).job_store.require(job_id).to_dict()

    @app.post("/api/jobs/{job_id}/retry")
    def retry_job(job_id: str, request: Request):
        services = _services(request)
        if not services.job_store.retry(job_id):
            active = services.job_store.active_job_for(services.job_store.require(job_id).external_ref)
            return {
                "status": "skipped",
                "reason": DEDUP_ALREADY_QUEUED,
                "job_id": job_id,
                "active_job_id": active.id if active else None,
            }
        return {"status": "queued", "job_id": job_id}

    @app.delete("/api/jobs/{job_id}")
    def delete_job(job_id: str, request: Request):
        _services(request).job_store.delete(job_id)
        return {"status": "deleted", "job_id": job_id}

    @app.get("/api/queue/status")
    def queue_status(request: Request):
        services = _services(request)
        return {"stats": services.job_store.stats(), "pending": services.job_store.pending_count()}

    @app.post("/api/queue/clear")
    def clear_queue(request: Request, status: str | None = None):
        try:
            removed = _services(request).job_store.clear(status)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"status": "ok", "removed": removed}

    @app.post("/api/queue/process")
    def process_queue(
        request: Request,
        count: int = 1,
        secret: str | None = None,
        x_trigger_secret: str | None = Header(default=None, alias=TRIGGER_SECRET_HEADER),
    ):
        services = _services(request)
        processor = services.processor
        if not processor.enabled:
            return {"status": "disabled"}
        if not processor.authorize(x_trigger_secret or secret):
            raise HTTPException(status_code=403, detail="Invalid trigger secret")
        return processor.external_trigger(count)

    # -- library ------------------------------------------------------------

    @app.get("/api/library")
    def list_library(
        request: Request,
        sort: str = "recent",
        q: str | None = None,
        limit: int = Query(25, ge=1, le=500),
        offset: int = Query(0, ge=0),
    ):
        library = _services(request).library
        tracks = library.list_tracks(sort=sort, query=q, limit=limit, offset=offset)
        return {
            "tracks": [entry.to_dict() for entry in tracks],
            "total": library.count(q),
            "limit": limit,
            "offset": offset,
        }

    @app.get("/api/library/stats")
    def library_stats(request: Request):
        library = _services(request).library
        return {**library.stats(), "artists": library.artists()}

    @app.get("/api/library/integrity")
    def library_integrity(request: Request):
        return _services(request).reconciler.scan().to_dict()

    @app.post("/api/library/integrity/heal")
    def library_heal(request: Request):
        services = _services(request)
        _enforce_client_limit(services, "heal", request)
        return services.reconciler.heal().to_dict()

    @app.delete("/api/library/{entry_id}")
    def delete_library_track(entry_id: str, request: Request):
        services = _services(request)
        _enforce_client_limit(services, "delete", request)
        if not services.library.delete_track(entry_id):
            raise NotFoundError(f"track not found: {entry_id}")
        return {"status": "deleted", "id": entry_id}

    # -- watched playlists --------------------------------------------------

    @app.get("/api/watched")
    def list_watched(request: Request):
        return {"playlists": _services(request).watched.list_playlists()}

    @app.post("/api/watched")
    def add_watched(payload: WatchedPlaylistRequest, request: Request):
        services = _services(request)
        _enforce_client_limit(services, "watch", request)
        try:
            playlist = services.watched.add_playlist(
                payload.url,
                name=payload.name,
                sync_mode=payload.sync_mode,
                make_m3u=payload.make_m3u,
                refresh_interval_hours=payload.refresh_interval_hours,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"status": "ok", "playlist": playlist}

    @app.get("/api/watched/{playlist_id}")
    def get_watched(
        playlist_id: str,
        request: Request,
        status: str | None = None,
        limit: int = Query(25, ge=1, le=500),
        offset: int = Query(0, ge=0),
    ):
        watched = _services(request).watched
        playlist = watched.require_playlist(playlist_id)
        tracks = watched.list_tracks(playlist_id, status=status, limit=limit, offset=offset)
        return {"playlist": playlist, "tracks": tracks}

    @app.post("/api/watched/{playlist_id}/refresh")
    def refresh_watched(playlist_id: str, request: Request):
        services = _services(request)
        if services.fetcher is None:
            raise ConfigurationError("No playlist fetcher configured")
        return refresh_playlist(
            services.watched,
            services.job_store,
            services.fetcher,
            playlist_id,
            resolver=services.resolver,
        )

    @app.post("/api/watched/{playlist_id}/retry")
    def retry_watched(playlist_id: str, request: Request):
        services = _services(request)
        reset = services.watched.retry_failed(playlist_id)
        queued = queue_pending_tracks(
            services.watched,
            services.job_store,
            playlist_id,
            resolver=services.resolver,
        )
        return {"status": "ok", "reset_count": reset, **queued}

    @app.post("/api/watched/{playlist_id}/toggle")
    def toggle_watched(playlist_id: str, request: Request):
        enabled = _services(request).watched.toggle_playlist(playlist_id)
        return {"status": "ok", "enabled": enabled}

    @app.delete("/api/watched/{playlist_id}")
    def delete_watched(playlist_id: str, request: Request):
        _services(request).watched.delete_playlist(playlist_id)
        return {"status": "deleted", "id": playlist_id}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    host = _env_or_default("TRACKVAULT_HOST", "127.0.0.1")
    port = int(_env_or_default("TRACKVAULT_PORT", "8000"))
    uvicorn.run("api.main:app", host=host, port=port, reload=False)
