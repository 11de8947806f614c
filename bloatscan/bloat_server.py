#!/usr/bin/env python3
"""Local bloat scanner server (FastAPI).

Local service over the scanning engine.
- REST + WebSocket progress updates
- Background worker jobs for scans and cleanup, cancellable between entries
- SQLite snapshot history, diffs and alerts
- Cleanup with dry-run default and explicit confirmation for destructive runs

Default host is 127.0.0.1 (localhost-only).
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import tempfile
import threading
import traceback
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from bloatscan.alert_engine import AlertThresholds
from bloatscan.bloat_engine import Engine, get_disk_info, open_engine, run_bloat_scan
from bloatscan.scan_config import (
    APP_NAME,
    DEFAULT_MAX_FINISHED_JOBS,
    EngineSettings,
    now_utc_iso,
    parse_size_to_bytes,
    setup_logger,
)
from bloatscan.scan_errors import InvalidConfigError, ScanCancelledError, ScannerError
from bloatscan.scan_progress import CancellationToken, ProgressChannel, ScanProgress
from bloatscan.tree_walker import validate_scan_root

TERMINAL_STATES = {"completed", "failed", "cancelled"}


# ------------------------------- Logging ------------------------------------ #


def configure_logging(log_file: Path) -> logging.Logger:
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        log_file = Path(tempfile.gettempdir()) / APP_NAME / "server.log"
    return setup_logger(log_file, stream=True)


# ---------------------------- API Models ------------------------------------ #


class BloatScanRequest(BaseModel):
    root: str = Field(default_factory=lambda: str(Path.cwd()))
    min_size: str = "100MB"
    follow_symlinks: bool = False
    limit: int = Field(default=200, ge=1)


class DuplicateScanRequest(BaseModel):
    root: str = Field(default_factory=lambda: str(Path.cwd()))
    follow_symlinks: bool = False
    limit: int = Field(default=200, ge=1)


class ProjectScanRequest(BaseModel):
    root: str = Field(default_factory=lambda: str(Path.cwd()))
    min_size: str | None = None
    follow_symlinks: bool = False
    thresholds: dict[str, float] | None = None


class CleanupRequest(BaseModel):
    paths: list[str] = Field(default_factory=list)
    dry_run: bool = True
    trash: bool = True
    confirm: bool = False


class RestoreRequest(BaseModel):
    action_id: str


class PruneRequest(BaseModel):
    keep_last: int = Field(ge=1)


# ---------------------------- Response Helpers ------------------------------ #


def api_ok(data: Any, *, meta: dict[str, Any] | None = None, warnings: list[str] | None = None) -> JSONResponse:
    body = {
        "status": "ok",
        "timestamp": now_utc_iso(),
        "meta": meta or {},
        "warnings": warnings or [],
        "data": data,
    }
    return JSONResponse(body)


def api_error(code: str, message: str, status_code: int = 400, details: dict[str, Any] | None = None) -> JSONResponse:
    body = {
        "status": "error",
        "timestamp": now_utc_iso(),
        "error": {
            "code": code,
            "message": message,
            "details": details or {},
        },
    }
    return JSONResponse(body, status_code=status_code)


# ------------------------------- Job Manager -------------------------------- #


@dataclass
class JobState:
    job_id: str
    job_type: str
    status: str = "queued"
    created_at: str = field(default_factory=now_utc_iso)
    updated_at: str = field(default_factory=now_utc_iso)
    progress: dict[str, Any] = field(default_factory=lambda: {"phase": "queued", "entries_processed": 0})
    result: dict[str, Any] | None = None
    error: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


JobFunc = Callable[[Callable[[ScanProgress], None], CancellationToken], dict[str, Any]]


class JobManager:
    """Runs jobs on a thread pool and fans progress out to subscribers.

    WebSocket subscribers get pushed events through asyncio queues on the
    server loop; polling clients drain the per-job ProgressChannel. Only the
    newest ``max_finished_jobs`` terminal jobs are kept; older ones are evicted
    together with their channels and tokens.
    """

    def __init__(
        self,
        max_workers: int = 4,
        logger: logging.Logger | None = None,
        max_finished_jobs: int = DEFAULT_MAX_FINISHED_JOBS,
    ):
        if max_finished_jobs < 1:
            raise InvalidConfigError("max_finished_jobs must be >= 1")
        self.executor = ThreadPoolExecutor(max_workers=max_workers)
        self.logger = logger or logging.getLogger(APP_NAME)
        self.loop: asyncio.AbstractEventLoop | None = None
        self._jobs: dict[str, JobState] = {}
        self._subs: dict[str, set[asyncio.Queue]] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._channels: dict[str, ProgressChannel] = {}
        self._finished: deque[str] = deque()
        self.max_finished_jobs = max_finished_jobs
        self._lock = threading.Lock()

    def create_job(self, job_type: str) -> JobState:
        job = JobState(job_id=uuid.uuid4().hex, job_type=job_type)
        with self._lock:
            self._jobs[job.job_id] = job
            self._subs[job.job_id] = set()
            self._tokens[job.job_id] = CancellationToken()
            self._channels[job.job_id] = ProgressChannel(maxsize=200)
        return job

    def get(self, job_id: str) -> JobState | None:
        with self._lock:
            return self._jobs.get(job_id)

    def channel(self, job_id: str) -> ProgressChannel | None:
        with self._lock:
            return self._channels.get(job_id)

    def cancel(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            token = self._tokens.get(job_id)
            if job is None or token is None or job.status in TERMINAL_STATES:
                return False
        token.cancel()
        return True

    def subscribe(self, job_id: str) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=100)
        with self._lock:
            # evicted jobs are terminal; their snapshot ends the stream
            subs = self._subs.get(job_id)
            if subs is not None:
                subs.add(q)
        return q

    def unsubscribe(self, job_id: str, q: asyncio.Queue) -> None:
        with self._lock:
            if job_id in self._subs:
                self._subs[job_id].discard(q)

    def _notify(self, job_id: str, payload: dict[str, Any]) -> None:
        with self._lock:
            queues = list(self._subs.get(job_id, set()))

        for q in queues:
            if self.loop is not None and self.loop.is_running():
                self.loop.call_soon_threadsafe(_queue_put_nowait_safe, q, payload)
            else:
                _queue_put_nowait_safe(q, payload)

    def update_progress(self, job_id: str, progress: ScanProgress) -> None:
        payload = progress.to_dict()
        with self._lock:
            job = self._jobs.get(job_id)
            channel = self._channels.get(job_id)
            if not job:
                return
            job.progress = payload
            job.updated_at = now_utc_iso()
        if channel is not None:
            channel.publish(progress)
        self._notify(job_id, {"event": "progress", "job_id": job_id, "progress": payload})

    def _finish(self, job_id: str, status: str, result: dict[str, Any] | None = None, error: dict[str, Any] | None = None) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return
            job.status = status
            job.result = result
            job.error = error
            job.updated_at = now_utc_iso()
            self._finished.append(job_id)
            evicted = self._evict_finished_locked()
        if evicted:
            self.logger.debug("jobs_evicted count=%s", len(evicted))

        event: dict[str, Any] = {"event": status, "job_id": job_id}
        if result is not None:
            event["result"] = result
        if error is not None:
            event["error"] = {"code": error["code"], "message": error["message"]}
        self._notify(job_id, event)

    def _evict_finished_locked(self) -> list[str]:
        evicted: list[str] = []
        while len(self._finished) > self.max_finished_jobs:
            old = self._finished.popleft()
            self._jobs.pop(old, None)
            self._subs.pop(old, None)
            self._tokens.pop(old, None)
            self._channels.pop(old, None)
            evicted.append(old)
        return evicted

    def _set_status(self, job_id: str, status: str) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return
            job.status = status
            job.updated_at = now_utc_iso()

        self._notify(job_id, {"event": "status", "job_id": job_id, "status": status})

    def submit(self, job: JobState, func: JobFunc) -> None:
        self._set_status(job.job_id, "running")
        token = self._tokens[job.job_id]

        def runner() -> None:
            try:
                result = func(lambda p: self.update_progress(job.job_id, p), token)
                self._finish(job.job_id, "completed", result=result)
            except ScanCancelledError as exc:
                self.logger.info("job_cancelled job=%s type=%s", job.job_id, job.job_type)
                self._finish(job.job_id, "cancelled", error={"code": exc.code, "message": exc.message})
            except ScannerError as exc:
                self.logger.error("job_failed job=%s type=%s err=%s", job.job_id, job.job_type, exc)
                self._finish(job.job_id, "failed", error=exc.to_dict())
            except Exception as exc:  # pylint: disable=broad-except
                self.logger.exception("job_crashed job=%s type=%s", job.job_id, job.job_type)
                self._finish(
                    job.job_id,
                    "failed",
                    error={"code": "JOB_EXECUTION_ERROR", "message": str(exc), "traceback": traceback.format_exc()},
                )

        self.executor.submit(runner)

    def shutdown(self) -> None:
        with self._lock:
            tokens = list(self._tokens.values())
        for token in tokens:
            token.cancel()
        self.executor.shutdown(wait=True)


def _queue_put_nowait_safe(q: asyncio.Queue, payload: dict[str, Any]) -> None:
    try:
        q.put_nowait(payload)
    except asyncio.QueueFull:
        with contextlib.suppress(asyncio.QueueEmpty):
            _ = q.get_nowait()
        with contextlib.suppress(asyncio.QueueFull):
            q.put_nowait(payload)


# ------------------------------- App Setup ---------------------------------- #


def create_app(settings: EngineSettings | None = None) -> FastAPI:
    settings = settings or EngineSettings.from_env()
    logger = configure_logging(settings.log_file)
    engine: Engine = open_engine(settings, logger)
    jobs = JobManager(
        max_workers=max(2, (os.cpu_count() or 4) // 2),
        logger=logger,
        max_finished_jobs=engine.settings.max_finished_jobs,
    )

    @contextlib.asynccontextmanager
    async def lifespan(_: FastAPI):
        jobs.loop = asyncio.get_running_loop()
        logger.info("server_started db=%s trash=%s", engine.settings.db_path, engine.settings.trash_dir)
        yield
        jobs.shutdown()

    app = FastAPI(
        title="Bloat Scanner Server",
        version="1.0.0",
        description="Local disk bloat analysis and cleanup API (dry-run by default).",
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.jobs = jobs

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost",
            "http://127.0.0.1",
            "http://localhost:19006",
            "http://127.0.0.1:19006",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ScannerError)
    async def scanner_error_handler(_: Request, exc: ScannerError):
        return api_error(exc.code, exc.message, status_code=exc.http_status, details={"path": exc.path})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_: Request, exc: Exception):
        logger.exception("Unhandled server error: %s", exc)
        return api_error("INTERNAL_SERVER_ERROR", str(exc), status_code=500)

    # ---------------------------- Job Endpoints ----------------------------- #

    @app.get("/api/v1/jobs/{job_id}", summary="Get job status/progress")
    async def get_job(job_id: str):
        job = jobs.get(job_id)
        if not job:
            return api_error("JOB_NOT_FOUND", "Job not found", status_code=404)
        return api_ok(job.to_dict())

    @app.get("/api/v1/jobs/{job_id}/result", summary="Get job result")
    async def get_job_result(job_id: str):
        job = jobs.get(job_id)
        if not job:
            return api_error("JOB_NOT_FOUND", "Job not found", status_code=404)
        if job.status not in TERMINAL_STATES:
            return api_ok({"job_id": job_id, "status": job.status, "progress": job.progress})
        return api_ok({"job_id": job_id, "status": job.status, "result": job.result, "error": job.error})

    @app.get("/api/v1/jobs/{job_id}/events", summary="Drain buffered progress events")
    async def get_job_events(job_id: str):
        channel = jobs.channel(job_id)
        if channel is None:
            return api_error("JOB_NOT_FOUND", "Job not found", status_code=404)
        events = [e.to_dict() for e in channel.drain()]
        return api_ok({"job_id": job_id, "events": events}, meta={"dropped": channel.dropped})

    @app.post("/api/v1/jobs/{job_id}/cancel", summary="Request cooperative cancellation")
    async def cancel_job(job_id: str):
        job = jobs.get(job_id)
        if not job:
            return api_error("JOB_NOT_FOUND", "Job not found", status_code=404)
        accepted = jobs.cancel(job_id)
        return api_ok({"job_id": job_id, "cancel_requested": accepted, "status": job.status})

    @app.websocket("/api/v1/ws/jobs/{job_id}")
    async def ws_job_progress(websocket: WebSocket, job_id: str):
        await websocket.accept()
        job = jobs.get(job_id)
        if not job:
            await websocket.send_json({"status": "error", "message": "job not found"})
            await websocket.close()
            return

        q = jobs.subscribe(job_id)
        try:
            await websocket.send_json({"event": "connected", "job_id": job_id})
            # subscribed first, so a terminal event after this snapshot is always queued
            snapshot = job.to_dict()
            await websocket.send_json({"event": "snapshot", "job": snapshot})
            if snapshot["status"] not in TERMINAL_STATES:
                while True:
                    payload = await q.get()
                    await websocket.send_json(payload)
                    if payload.get("event") in TERMINAL_STATES:
                        break
        except WebSocketDisconnect:
            pass
        finally:
            jobs.unsubscribe(job_id, q)
            with contextlib.suppress(RuntimeError):
                await websocket.close()

    # ------------------------------ Scan APIs ------------------------------- #

    @app.get("/api/v1/disks", summary="Mounted filesystem usage")
    async def disks():
        return api_ok([m.to_dict() for m in get_disk_info()])

    @app.post("/api/v1/scans/bloat", summary="Start a bloat scan", response_description="Job ID for tracking")
    async def start_bloat_scan(req: BloatScanRequest):
        root = validate_scan_root(req.root)
        min_bytes = parse_size_to_bytes(req.min_size)
        if min_bytes < 0:
            raise InvalidConfigError("min_size must be non-negative")
        job = jobs.create_job("bloat_scan")

        def runner(progress_cb: Callable[[ScanProgress], None], cancel: CancellationToken) -> dict[str, Any]:
            result, errors = run_bloat_scan(
                root,
                min_bytes,
                req.follow_symlinks,
                workers=engine.settings.workers,
                progress=progress_cb,
                cancel=cancel,
                logger=logger,
            )
            flagged = sorted(result.flagged, key=lambda f: (-f.size_bytes, f.path))
            logger.info("bloat_scan completed job=%s flagged=%s", job.job_id, len(flagged))
            return {
                "root": result.root,
                "min_bytes": min_bytes,
                "total_size_bytes": result.root_summary.total_size_bytes,
                "file_count": result.root_summary.descendant_file_count,
                "flagged_count": len(flagged),
                "flagged": [f.to_dict() for f in flagged[: req.limit]],
                "errors_count": len(errors),
                "errors_sample": [e.to_dict() for e in errors[:50]],
            }

        jobs.submit(job, runner)
        return api_ok({"job_id": job.job_id, "status": job.status}, meta={"type": "bloat_scan"})

    @app.post("/api/v1/scans/duplicates", summary="Start a duplicate scan")
    async def start_duplicate_scan(req: DuplicateScanRequest):
        root = validate_scan_root(req.root)
        job = jobs.create_job("duplicate_scan")

        def runner(progress_cb: Callable[[ScanProgress], None], cancel: CancellationToken) -> dict[str, Any]:
            report = engine.scan_duplicates(root, req.follow_symlinks, progress=progress_cb, cancel=cancel)
            out = report.summary(top_n=req.limit)
            out["errors"] = report.errors[:200]
            return out

        jobs.submit(job, runner)
        return api_ok({"job_id": job.job_id, "status": job.status}, meta={"type": "duplicate_scan"})

    @app.post("/api/v1/projects/scan", summary="Scan a project root and record a snapshot")
    async def start_project_scan(req: ProjectScanRequest):
        root = validate_scan_root(req.root)
        thresholds = AlertThresholds.from_dict(req.thresholds)
        bloat_threshold = parse_size_to_bytes(req.min_size) if req.min_size else None
        job = jobs.create_job("project_scan")

        def runner(progress_cb: Callable[[ScanProgress], None], cancel: CancellationToken) -> dict[str, Any]:
            report = engine.scan_project(
                root,
                bloat_threshold=bloat_threshold,
                follow_symlinks=req.follow_symlinks,
                thresholds=thresholds,
                progress=progress_cb,
                cancel=cancel,
            )
            return report.to_dict()

        jobs.submit(job, runner)
        return api_ok({"job_id": job.job_id, "status": job.status}, meta={"type": "project_scan"})

    # ----------------------------- History APIs ----------------------------- #

    @app.get("/api/v1/projects", summary="List scanned projects")
    async def list_projects():
        return api_ok([p.to_dict() for p in engine.store.list_projects()])

    @app.get("/api/v1/projects/{project_id}/snapshots", summary="Snapshot history, oldest first")
    async def project_snapshots(project_id: str):
        project = engine.store.get_project(project_id)
        snapshots = engine.store.list_snapshots(project.project_id)
        return api_ok([s.to_dict() for s in snapshots], meta={"project": project.to_dict()})

    @app.get("/api/v1/snapshots/{snapshot_id}", summary="Get one snapshot")
    async def get_snapshot(snapshot_id: int, include_entries: bool = False):
        snapshot = engine.store.get(snapshot_id, with_entries=include_entries)
        return api_ok(snapshot.to_dict(include_entries=include_entries))

    @app.get("/api/v1/diff", summary="Diff two snapshots of one project")
    async def diff_snapshots(from_id: int, to_id: int, limit: int = 500):
        delta = engine.diff_snapshots(from_id, to_id)
        return api_ok(delta.to_dict(path_limit=limit))

    @app.get("/api/v1/projects/{project_id}/alerts", summary="Alert history, newest first")
    async def project_alerts(project_id: str, limit: int = 200):
        engine.store.get_project(project_id)
        return api_ok(engine.store.list_alerts(project_id, limit=limit))

    @app.post("/api/v1/projects/{project_id}/prune", summary="Keep only the newest snapshots")
    async def prune_project(project_id: str, req: PruneRequest):
        removed = engine.prune(project_id, req.keep_last)
        return api_ok({"removed_snapshot_ids": removed})

    # ----------------------------- Cleanup APIs ----------------------------- #

    @app.post("/api/v1/cleanup", summary="Run cleanup on selected paths (dry-run default)")
    async def run_cleanup(req: CleanupRequest):
        if not req.paths:
            return api_error("NO_PATHS", "No paths given for cleanup.", status_code=400)
        if not req.dry_run and not req.confirm:
            return api_error(
                "CONFIRMATION_REQUIRED",
                "Destructive cleanup requires confirm=true.",
                status_code=400,
            )
        job = jobs.create_job("cleanup")

        def runner(progress_cb: Callable[[ScanProgress], None], cancel: CancellationToken) -> dict[str, Any]:
            progress_cb(ScanProgress(0, "", "cleanup"))
            result = engine.cleanup_dirs(req.paths, dry_run=req.dry_run, trash=req.trash, cancel=cancel)
            progress_cb(ScanProgress(len(result["outcomes"]), "", "cleanup_done"))
            return result

        jobs.submit(job, runner)
        return api_ok({"job_id": job.job_id}, meta={"type": "cleanup", "dry_run": req.dry_run})

    @app.post("/api/v1/cleanup/restore", summary="Restore items moved to trash by a cleanup action")
    async def restore_cleanup(req: RestoreRequest):
        return api_ok(engine.restore(req.action_id))

    @app.get("/api/v1/cleanup/actions", summary="Cleanup actions held in trash")
    async def cleanup_actions():
        return api_ok(engine.trash.list_actions())

    @app.get("/healthz", summary="Liveness endpoint")
    async def healthz():
        return api_ok({"service": APP_NAME, "alive": True})

    return app


# --------------------------------- Runner ---------------------------------- #


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the bloat scanner FastAPI server")
    parser.add_argument("--host", default=os.getenv("BLOATSCAN_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("BLOATSCAN_PORT", "8002")))
    parser.add_argument("--reload", action="store_true")
    return parser.parse_args()


def main() -> None:
    import uvicorn

    args = parse_args()
    uvicorn.run(
        "bloatscan.bloat_server:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )


if __name__ == "__main__":
    main()
