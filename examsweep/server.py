#!/usr/bin/env python3
"""Local ExamSweep server (FastAPI).

Exposes the scan / suggest / exam / cleanup pipeline over HTTP.
- Dry-run by default; Apply requires confirm=true
- SQLite state shared with the Python API
- Safe mode (EXAMSWEEP_SAFE_MODE=1) turns every mutation into a preview

Default host is 127.0.0.1 (localhost-only).
"""

from __future__ import annotations

import argparse
import dataclasses
import datetime as dt
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .archive import NEEDS_CONFIRMATION
from .config import APP_NAME, MB, Settings, SuggestionPolicy
from .engine import Engine, engine_session
from .errors import (
    ArchiveIOError,
    CorruptState,
    ExamSweepError,
    NoActivePeriod,
    OutcomeNotFound,
    PeriodAlreadyActive,
    RootNotFound,
)
from .models import Action, Category, CleanupStrategy, Mode, ScanReport, Suggestion, now_utc_iso
from .scanner import normalize_path

# ------------------------------- Logging ------------------------------------ #


def configure_logging(log_file: Path) -> logging.Logger:
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        log_file = Path(tempfile.gettempdir()) / APP_NAME / "server.log"
        log_file.parent.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger(f"{APP_NAME}_server")
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")

    fh = logging.FileHandler(log_file, encoding="utf-8", errors="backslashreplace")
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    sh = logging.StreamHandler()
    sh.setFormatter(formatter)
    logger.addHandler(sh)
    return logger


LOGGER = configure_logging(Path(tempfile.gettempdir()) / APP_NAME / "server.log")
SETTINGS = Settings.from_env()


# ---------------------------- API Models ------------------------------------ #


class ScanRequest(BaseModel):
    root: str = Field(default_factory=lambda: str(Path.cwd()))
    protected_paths: list[str] = Field(default_factory=list)
    soft_protected_paths: list[str] = Field(default_factory=list)
    exam_enabled: bool = True
    max_depth: int | None = Field(default=None, ge=0)


class SuggestRequest(ScanRequest):
    subtree: str | None = None
    old_after_days: int | None = Field(default=None, ge=0)
    large_file_mb: int | None = Field(default=None, ge=1)
    archive_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    delete_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    allow_active_exam_cleanup: bool | None = None
    include_keep: bool = False


class ApplyRequest(SuggestRequest):
    mode: str = Field(default="DryRun", pattern="^(DryRun|Apply)$")
    paths: list[str] = Field(default_factory=list)
    safe_mode: bool = False
    confirm: bool = False
    confirm_flagged: bool = False


class ExamStartRequest(BaseModel):
    name: str | None = None
    force: bool = False


class ExamDatesRequest(BaseModel):
    started_at: dt.datetime
    ended_at: dt.datetime | None = None
    name: str | None = None
    period_id: int | None = None


class PostExamRequest(BaseModel):
    strategy: CleanupStrategy = CleanupStrategy.QUICK
    period_id: int | None = None
    categories: list[Category] | None = None
    mode: str = Field(default="DryRun", pattern="^(DryRun|Apply)$")
    safe_mode: bool = False
    confirm: bool = False
    confirm_flagged: bool = False


class RestoreRequest(BaseModel):
    outcome_id: int


class PurgeRequest(BaseModel):
    confirm: bool = False


class ArchiveCleanRequest(BaseModel):
    older_than_days: int = Field(ge=0)
    confirm: bool = False


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


ERROR_STATUS: dict[type[ExamSweepError], int] = {
    RootNotFound: 404,
    OutcomeNotFound: 404,
    PeriodAlreadyActive: 409,
    NoActivePeriod: 409,
    ArchiveIOError: 409,
    CorruptState: 500,
}


def status_for(exc: ExamSweepError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 400


# -------------------------- Basic Rate Limiter ------------------------------ #


class BasicRateLimiter:
    """In-memory fixed-window limiter for safety on local service."""

    def __init__(self, max_requests: int = 120, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._hits: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        now = time.time()
        with self._lock:
            arr = self._hits.setdefault(key, [])
            threshold = now - self.window_seconds
            while arr and arr[0] < threshold:
                arr.pop(0)
            if len(arr) >= self.max_requests:
                return False
            arr.append(now)
            return True


RATE_LIMITER = BasicRateLimiter()


# ------------------------------- Helpers ------------------------------------ #


def suggestion_policy(req: SuggestRequest) -> SuggestionPolicy:
    overrides: dict[str, Any] = {}
    if req.old_after_days is not None:
        overrides["old_after_days"] = req.old_after_days
    if req.large_file_mb is not None:
        overrides["large_file_bytes"] = req.large_file_mb * MB
    if req.archive_threshold is not None:
        overrides["archive_threshold"] = req.archive_threshold
    if req.delete_threshold is not None:
        overrides["delete_threshold"] = req.delete_threshold
    if req.allow_active_exam_cleanup is not None:
        overrides["allow_active_exam_cleanup"] = req.allow_active_exam_cleanup
    return dataclasses.replace(SETTINGS.suggestions, **overrides)


def scan_and_suggest(eng: Engine, req: SuggestRequest) -> tuple[ScanReport, list[Suggestion]]:
    policy = suggestion_policy(req)
    report = eng.scan(
        req.root,
        protected_paths=req.protected_paths,
        soft_protected_paths=req.soft_protected_paths,
        exam_enabled=req.exam_enabled,
        max_depth=req.max_depth,
    )
    return report, eng.suggest(report, subtree=req.subtree, policy=policy)


def as_utc(value: dt.datetime | None) -> dt.datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value


def action_counts(suggestions: list[Suggestion]) -> dict[str, int]:
    return {a.value: sum(1 for s in suggestions if s.action is a) for a in Action}


def scan_warnings(report: ScanReport) -> list[str]:
    warnings = []
    if report.errors:
        warnings.append(f"{len(report.errors)} entries could not be read and were skipped")
    if report.auto_started:
        warnings.append("An exam period was started automatically by this scan")
    if report.auto_ended:
        warnings.append("The active exam period was closed after inactivity")
    return warnings


# ------------------------------- App ---------------------------------------- #

app = FastAPI(
    title="ExamSweep Server",
    version=__version__,
    description="Post-exam study file cleanup API (dry-run default, reversible).",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://127.0.0.1"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    client = request.client.host if request.client else "unknown"
    if not RATE_LIMITER.allow(client):
        return api_error("RATE_LIMITED", "Too many requests; slow down.", status_code=429)
    return await call_next(request)


@app.exception_handler(ExamSweepError)
async def examsweep_exception_handler(_: Request, exc: ExamSweepError):
    status_code = status_for(exc)
    log = LOGGER.error if status_code >= 500 else LOGGER.info
    log("request_failed code=%s err=%s", exc.code, exc)
    return api_error(exc.code, str(exc), status_code=status_code)


@app.exception_handler(ValueError)
async def value_error_handler(_: Request, exc: ValueError):
    return api_error("INVALID_REQUEST", str(exc), status_code=400)


@app.exception_handler(Exception)
async def unhandled_exception_handler(_: Request, exc: Exception):
    LOGGER.exception("Unhandled server error: %s", exc)
    return api_error("INTERNAL_SERVER_ERROR", str(exc), status_code=500)


@app.get("/healthz", summary="Liveness endpoint")
async def healthz():
    return api_ok({"service": "examsweep-server", "healthy": True, "safe_mode": SETTINGS.safe_mode})


# ------------------------------- Scan APIs ---------------------------------- #


@app.post("/api/v1/scan", summary="Scan a root, classify, fingerprint and update exam state")
def run_scan(req: ScanRequest):
    with engine_session(SETTINGS) as eng:
        report = eng.scan(
            req.root,
            protected_paths=req.protected_paths,
            soft_protected_paths=req.soft_protected_paths,
            exam_enabled=req.exam_enabled,
            max_depth=req.max_depth,
        )
        LOGGER.info("scan completed root=%s files=%s", report.root, len(report.records))
        return api_ok(report.to_dict(), meta={"type": "scan"}, warnings=scan_warnings(report))


@app.post("/api/v1/suggestions", summary="Scan then score every file")
def run_suggestions(req: SuggestRequest):
    with engine_session(SETTINGS) as eng:
        report, suggestions = scan_and_suggest(eng, req)
        shown = suggestions if req.include_keep else [s for s in suggestions if s.action is not Action.KEEP]
        return api_ok(
            [s.to_dict() for s in shown],
            meta={"type": "suggestions", "root": report.root, "counts": action_counts(suggestions)},
            warnings=scan_warnings(report),
        )


# ------------------------------- Exam APIs ---------------------------------- #


@app.get("/api/v1/exam", summary="Active exam period and history")
def exam_status():
    with engine_session(SETTINGS) as eng:
        active = eng.exam_status()
        return api_ok(
            {
                "active": active.to_dict() if active else None,
                "history": [p.to_dict() for p in eng.exam_history()],
            }
        )


@app.post("/api/v1/exam/start", summary="Start a manual exam period")
def exam_start(req: ExamStartRequest):
    with engine_session(SETTINGS) as eng:
        period = eng.exam_start(req.name, force=req.force)
        LOGGER.info("exam started period=%s force=%s", period.id, req.force)
        return api_ok(period.to_dict(), meta={"type": "exam_start"})


@app.post("/api/v1/exam/end", summary="End the active exam period")
def exam_end():
    with engine_session(SETTINGS) as eng:
        period = eng.exam_end()
        LOGGER.info("exam ended period=%s", period.id)
        return api_ok(period.to_dict(), meta={"type": "exam_end"})



@app.post("/api/v1/exam/dates", summary="Correct exam dates or record a past period")
def exam_dates(req: ExamDatesRequest):
    with engine_session(SETTINGS) as eng:
        period = eng.exam_set_dates(
            as_utc(req.started_at), as_utc(req.ended_at), name=req.name, period_id=req.period_id
        )
        LOGGER.info("exam dates set period=%s tracked=%s", period.id, len(period.tracked_file_paths))
        return api_ok(period.to_dict(), meta={"type": "exam_dates"})


@app.post("/api/v1/exam/cleanup", summary="Archive what a finished exam period left behind (dry-run default)")
def exam_cleanup(req: PostExamRequest):
    mode = Mode(req.mode)
    if mode is Mode.APPLY and not req.confirm:
        return api_error("CONFIRMATION_REQUIRED", "Apply mode requires confirm=true.", status_code=400)

    with engine_session(SETTINGS) as eng:
        suggestions = eng.post_exam_suggestions(req.strategy, period_id=req.period_id, categories=req.categories)
        outcomes = eng.apply(suggestions, mode=mode, safe_mode=req.safe_mode, confirm_flagged=req.confirm_flagged)
        safe = SETTINGS.safe_mode or req.safe_mode
        LOGGER.info(
            "exam cleanup mode=%s strategy=%s outcomes=%s", mode.value, req.strategy.value, len(outcomes)
        )
        return api_ok(
            [o.to_dict() for o in outcomes],
            meta={"type": "exam_cleanup", "mode": mode.value, "strategy": req.strategy.value, "safe_mode": safe},
        )


# ------------------------------ Cleanup APIs -------------------------------- #


@app.post("/api/v1/cleanup/apply", summary="Apply suggestions (dry-run default)")
def cleanup_apply(req: ApplyRequest):
    mode = Mode(req.mode)
    if mode is Mode.APPLY and not req.confirm:
        return api_error(
            "CONFIRMATION_REQUIRED",
            "Apply mode requires confirm=true.",
            status_code=400,
        )

    with engine_session(SETTINGS) as eng:
        report, suggestions = scan_and_suggest(eng, req)
        accepted = [s for s in suggestions if s.action is not Action.KEEP]
        warnings = scan_warnings(report)
        if req.paths:
            wanted = {normalize_path(p) for p in req.paths}
            accepted = [s for s in accepted if s.path in wanted]
            missing = wanted - {s.path for s in accepted}
            if missing:
                warnings.append(f"{len(missing)} requested paths have no Archive/Delete suggestion")

        outcomes = eng.apply(accepted, mode=mode, safe_mode=req.safe_mode, confirm_flagged=req.confirm_flagged)
        if any(o.error == NEEDS_CONFIRMATION for o in outcomes):
            warnings.append("Some files are soft-protected or cloud-synced; resend with confirm_flagged=true")
        safe = SETTINGS.safe_mode or req.safe_mode
        if mode is Mode.APPLY and safe:
            warnings.append("Safe mode is on; nothing was changed")
        LOGGER.info("cleanup completed mode=%s outcomes=%s safe_mode=%s", mode.value, len(outcomes), safe)
        return api_ok(
            [o.to_dict() for o in outcomes],
            meta={"type": "cleanup", "mode": mode.value, "safe_mode": safe},
            warnings=warnings,
        )


@app.post("/api/v1/cleanup/restore", summary="Restore a trashed or archived file")
def cleanup_restore(req: RestoreRequest):
    with engine_session(SETTINGS) as eng:
        outcome = eng.restore(req.outcome_id)
        return api_ok(outcome.to_dict(), meta={"type": "restore"})


@app.post("/api/v1/cleanup/purge", summary="Permanently remove trash past its restore window")
def cleanup_purge(req: PurgeRequest):
    if not req.confirm:
        return api_error("CONFIRMATION_REQUIRED", "Purge requires confirm=true.", status_code=400)
    with engine_session(SETTINGS) as eng:
        outcomes = eng.purge_expired()
        return api_ok([o.to_dict() for o in outcomes], meta={"type": "purge", "purged": len(outcomes)})


@app.get("/api/v1/outcomes", summary="Cleanup log, newest first")
def list_outcomes(limit: int = 200):
    with engine_session(SETTINGS) as eng:
        return api_ok([o.to_dict() for o in eng.outcomes(limit=max(1, min(limit, 5000)))])



# ------------------------------ Archive APIs -------------------------------- #


@app.get("/api/v1/archives", summary="Files held in the archive with totals")
def list_archives():
    with engine_session(SETTINGS) as eng:
        entries = eng.list_archives()
        return api_ok([e.to_dict() for e in entries], meta={"type": "archives", "stats": eng.archive_stats()})


@app.get("/api/v1/archives/reminders", summary="Archived files due for review")
def archive_reminders(days: int | None = None):
    with engine_session(SETTINGS) as eng:
        due = eng.archive_reminders(days=days)
        warnings = [f"{len(due)} archived files are waiting for review"] if due else []
        return api_ok([e.to_dict() for e in due], meta={"type": "archive_reminders"}, warnings=warnings)


@app.post("/api/v1/archives/clean", summary="Permanently remove archived files older than a given age")
def archive_clean(req: ArchiveCleanRequest):
    if not req.confirm:
        return api_error("CONFIRMATION_REQUIRED", "Cleaning archives requires confirm=true.", status_code=400)
    with engine_session(SETTINGS) as eng:
        outcomes = eng.clean_old_archives(req.older_than_days)
        removed = sum(1 for o in outcomes if o.status == "applied")
        return api_ok([o.to_dict() for o in outcomes], meta={"type": "archive_clean", "removed": removed})


# --------------------------------- Runner ---------------------------------- #


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the ExamSweep FastAPI server")
    parser.add_argument("--host", default=os.getenv("EXAMSWEEP_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("EXAMSWEEP_PORT", "8001")))
    parser.add_argument("--reload", action="store_true")
    return parser.parse_args()


def main() -> None:
    import uvicorn

    args = parse_args()
    LOGGER.info("Starting ExamSweep Server host=%s port=%s", args.host, args.port)
    uvicorn.run(
        "examsweep.server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )


if __name__ == "__main__":
    main()
