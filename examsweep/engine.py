"""Top-level orchestrator wiring scanner, classifier, detector, tracker, scorer and executor."""

from __future__ import annotations

import contextlib
import datetime as dt
import os
import sqlite3
import tempfile
from pathlib import Path
from typing import Iterable, Iterator, Sequence

from .archive import ArchiveExecutor, reconcile_pending
from .classifier import Classifier
from .config import APP_NAME, SuggestionPolicy, Settings, setup_logger
from .duplicates import DuplicateDetector
from .exam import ExamTracker
from .models import (
    Action,
    ArchiveEntry,
    ArchiveOutcome,
    Category,
    CleanupStrategy,
    ExamPeriod,
    Mode,
    Reason,
    ScanReport,
    Suggestion,
    now_utc,
    to_epoch,
)
from .scanner import MetadataScanner, is_cloud_path, resolve_dir
from .store import StateStore
from .suggest import SuggestionEngine


class Engine:
    """One pipeline per invocation. All state writes of a scan share one transaction."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings.from_env()
        self.logger = setup_logger(self.settings.log_file)
        try:
            self.store = StateStore(self.settings.db_path)
        except (OSError, sqlite3.OperationalError) as exc:
            fallback_db = Path(tempfile.gettempdir()) / APP_NAME / "state.db"
            self.logger.warning(
                "db_path_unavailable path=%s err=%s fallback=%s", self.settings.db_path, exc, fallback_db
            )
            self.store = StateStore(fallback_db)
        try:
            if reconcile_pending(self.store):
                self.logger.warning("cleanup_log_reconciled path=%s", self.store.db_path)
        except BaseException:
            self.store.close()
            raise
        self.classifier = Classifier(custom_rule_file=self.settings.classifier_rules)
        self.tracker = ExamTracker(self.store, self.settings.exam)
        self.last_report: ScanReport | None = None

    def close(self) -> None:
        self.store.close()

    # --------------------------------- Scan --------------------------------- #

    def scan(
        self,
        root: str | Path,
        protected_paths: Iterable[str | Path] = (),
        soft_protected_paths: Iterable[str | Path] = (),
        exam_enabled: bool = True,
        max_depth: int | None = None,
        now: dt.datetime | None = None,
    ) -> ScanReport:
        now = now or now_utc()
        scanner = MetadataScanner(
            protected_paths=protected_paths, max_depth=max_depth, soft_protected_paths=soft_protected_paths
        )
        records = list(scanner.scan(root))
        classifications = {r.path: self.classifier.classify(r) for r in records}

        detector = DuplicateDetector(cache_lookup=self.store.cached_fingerprint, workers=self.settings.hash_workers)
        groups = detector.find_groups(records)

        now_ts = to_epoch(now)
        root_s = resolve_dir(root)
        total_bytes = sum(r.size_bytes for r in records)
        with self.store.transaction():
            self.store.record_file_events(
                ((r.path, to_epoch(r.created_at), classifications[r.path].category.value) for r in records),
                now_ts,
            )
            self.store.put_fingerprints(detector.new_entries, now_ts)
            update = self.tracker.observe(records, now=now, enabled=exam_enabled)
            self.store.record_scan_run(root_s, now_ts, len(records), total_bytes)

        errors = [{"path": e.path, "code": e.code, "error": e.reason} for e in scanner.errors]
        errors += [{"path": e.path, "code": e.code, "error": e.reason} for e in detector.errors]

        report = ScanReport(
            root=root_s,
            scanned_at=now,
            records=records,
            classifications=classifications,
            groups=groups,
            errors=errors,
            active_period=update.period,
            auto_started=update.auto_started,
            auto_ended=update.auto_ended,
        )
        self.last_report = report
        self.logger.info(
            "scan_complete root=%s files=%s bytes=%s groups=%s errors=%s exam_active=%s",
            root_s,
            len(records),
            total_bytes,
            len(groups),
            len(errors),
            update.period is not None,
        )
        return report

    # ------------------------------ Suggestions ----------------------------- #

    def suggest(
        self,
        report: ScanReport | None = None,
        subtree: str | Path | None = None,
        policy: SuggestionPolicy | None = None,
        now: dt.datetime | None = None,
    ) -> list[Suggestion]:
        report = report or self.last_report
        if report is None:
            raise ValueError("No scan available. Run scan first.")
        scorer = SuggestionEngine(policy or self.settings.suggestions)
        return scorer.suggest(
            report.records,
            report.classifications,
            report.groups,
            active_tracked=self.store.tracked_paths(active=True),
            ended_tracked=self.store.tracked_paths(active=False),
            subtree=str(subtree) if subtree else None,
            now=now,
        )

    # ------------------------------ Exam control ---------------------------- #

    def exam_start(self, name: str | None = None, force: bool = False, now: dt.datetime | None = None) -> ExamPeriod:
        return self.tracker.start(name, force=force, now=now)

    def exam_end(self, now: dt.datetime | None = None) -> ExamPeriod:
        return self.tracker.end(now=now)

    def exam_status(self) -> ExamPeriod | None:
        return self.tracker.status()

    def exam_history(self) -> list[ExamPeriod]:
        return self.tracker.history()

    def exam_set_dates(
        self,
        started_at: dt.datetime,
        ended_at: dt.datetime | None = None,
        name: str | None = None,
        period_id: int | None = None,
        now: dt.datetime | None = None,
    ) -> ExamPeriod:
        return self.tracker.set_dates(started_at, ended_at, name=name, period_id=period_id, now=now)

    def post_exam_suggestions(
        self,
        strategy: CleanupStrategy = CleanupStrategy.QUICK,
        period_id: int | None = None,
        categories: Iterable[Category] | None = None,
    ) -> list[Suggestion]:
        """Archive suggestions for what a finished exam period left behind."""
        strategy = CleanupStrategy(strategy)
        paths = self.tracker.cleanup_selection(
            strategy,
            self.classifier.classify_path,
            period_id=period_id,
            categories=set(categories) if categories is not None else None,
        )
        reason = Reason("post_exam", 1.0, f"Tracked during a finished exam period ({strategy.value})")
        cloud = Reason("cloud_synced", 0.0, "Inside a cloud-synced folder")
        out = []
        for p in paths:
            if not os.path.isfile(p):
                continue
            synced = is_cloud_path(p)
            reasons = [reason, cloud] if synced else [reason]
            out.append(
                Suggestion(path=p, action=Action.ARCHIVE, confidence=1.0, reasons=reasons, requires_confirmation=synced)
            )
        return out

    # -------------------------------- Cleanup ------------------------------- #

    def executor(self, safe_mode: bool = False) -> ArchiveExecutor:
        """Executor bound to every root this store has scanned. Safe mode can only be added here."""
        return ArchiveExecutor(
            self.store,
            trash_dir=self.settings.trash_dir,
            archive_dir=self.settings.archive_dir,
            allowed_roots=self.store.scanned_roots(),
            safe_mode=self.settings.safe_mode or safe_mode,
        )

    def apply(
        self,
        suggestions: Sequence[Suggestion],
        mode: Mode = Mode.DRY_RUN,
        safe_mode: bool = False,
        now: dt.datetime | None = None,
        confirm_flagged: bool = False,
    ) -> list[ArchiveOutcome]:
        classifications = {s.path: self.classifier.classify_path(s.path) for s in suggestions}
        outcomes = self.executor(safe_mode).apply(
            suggestions, mode=mode, classifications=classifications, now=now, confirm_flagged=confirm_flagged
        )
        self.logger.info(
            "cleanup_batch mode=%s count=%s applied=%s failed=%s",
            Mode(mode).value,
            len(outcomes),
            sum(1 for o in outcomes if o.status == "applied"),
            sum(1 for o in outcomes if o.status == "failed"),
        )
        return outcomes

    def restore(self, outcome_id: int, now: dt.datetime | None = None) -> ArchiveOutcome:
        return self.executor().restore(outcome_id, now=now)

    def purge_expired(self, now: dt.datetime | None = None) -> list[ArchiveOutcome]:
        return self.executor().purge_expired(now=now)

    def outcomes(self, limit: int = 200) -> list[ArchiveOutcome]:
        return self.store.outcomes(limit)

    # ------------------------------- Archives ------------------------------- #

    def list_archives(self) -> list[ArchiveEntry]:
        return self.executor().list_archives()

    def archive_stats(self, now: dt.datetime | None = None) -> dict:
        return self.executor().archive_stats(now=now)

    def archive_reminders(self, days: int | None = None, now: dt.datetime | None = None) -> list[ArchiveEntry]:
        executor = self.executor()
        if days is None:
            return executor.archive_reminders(now=now)
        return executor.archive_reminders(now=now, days=days)

    def clean_old_archives(self, older_than_days: int, now: dt.datetime | None = None) -> list[ArchiveOutcome]:
        outcomes = self.executor().clean_old_archives(older_than_days, now=now)
        self.logger.info(
            "archive_clean older_than_days=%s removed=%s", older_than_days, sum(o.status == "applied" for o in outcomes)
        )
        return outcomes


@contextlib.contextmanager
def engine_session(settings: Settings | None = None) -> Iterator[Engine]:
    engine = Engine(settings)
    try:
        yield engine
    finally:
        engine.close()
