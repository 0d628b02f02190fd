"""Exam period state machine backed by the state store."""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
from typing import Callable, Collection, Iterable

from .config import ExamPolicy
from .errors import NoActivePeriod, PeriodAlreadyActive
from .models import (
    STUDY_CATEGORIES,
    Category,
    ClassificationResult,
    CleanupStrategy,
    ExamPeriod,
    FileRecord,
    Trigger,
    from_epoch,
    now_utc,
    to_epoch,
)
from .store import StateStore

logger = logging.getLogger(__name__)

_STUDY_VALUES = sorted(c.value for c in STUDY_CATEGORIES)


@dataclasses.dataclass(slots=True)
class TrackerUpdate:
    period: ExamPeriod | None
    auto_started: bool = False
    auto_ended: bool = False
    newly_tracked: int = 0


class ExamTracker:
    """Inactive/Active tracker. The single-row tracker_state holds the active period id.

    Auto-activation is recomputed from the persisted file-creation history on
    every observation, so it does not depend on how often scans run.
    """

    def __init__(self, store: StateStore, policy: ExamPolicy | None = None):
        self.store = store
        self.policy = policy or ExamPolicy()

    # ------------------------------- Queries -------------------------------- #

    def status(self) -> ExamPeriod | None:
        period_id = self.store.active_period_id()
        return self.store.period(period_id) if period_id is not None else None

    def history(self) -> list[ExamPeriod]:
        return self.store.periods()

    # ------------------------------- Commands ------------------------------- #

    def start(self, name: str | None = None, force: bool = False, now: dt.datetime | None = None) -> ExamPeriod:
        now = now or now_utc()
        with self.store.transaction():
            current = self.store.active_period_id()
            if current is not None:
                if not force:
                    raise PeriodAlreadyActive(f"Exam period {current} is already active")
                self._close(current, now, reason="forced_restart")
            period_id = self._open(name, now, Trigger.MANUAL)
        return self.store.period(period_id)

    def end(self, now: dt.datetime | None = None) -> ExamPeriod:
        now = now or now_utc()
        with self.store.transaction():
            current = self.store.active_period_id()
            if current is None:
                raise NoActivePeriod("No exam period is active")
            self._close(current, now, reason="manual")
        return self.store.period(current)

    def set_dates(
        self,
        started_at: dt.datetime,
        ended_at: dt.datetime | None = None,
        name: str | None = None,
        period_id: int | None = None,
        now: dt.datetime | None = None,
    ) -> ExamPeriod:
        """Correct the dates of a period, or record one after the fact.

        Without period_id the active period is edited, or a new manual period
        is created when none is active. Files created inside the corrected
        window are tracked retroactively from the scan history.
        """
        now = now or now_utc()
        if ended_at is not None and started_at > ended_at:
            raise ValueError("Exam start must not be after its end")
        if ended_at is not None and ended_at > now:
            raise ValueError("Exam end cannot be in the future")
        if started_at > now:
            raise ValueError("Exam start cannot be in the future")

        with self.store.transaction():
            active = self.store.active_period_id()
            target = period_id if period_id is not None else active
            if target is None:
                target = self.store.insert_period(name, to_epoch(started_at), Trigger.MANUAL)
            elif target not in {p.id for p in self.store.periods()}:
                raise ValueError(f"Unknown exam period {target}")
            if ended_at is None and active not in (None, target):
                raise PeriodAlreadyActive(f"Exam period {active} is already active")

            self.store.update_period(target, name, to_epoch(started_at), to_epoch(ended_at) if ended_at else None)
            if ended_at is not None and target == active:
                self.store.set_active_period(None)
            elif ended_at is None:
                self.store.set_active_period(target)

            until = to_epoch(ended_at or now)
            paths = self.store.paths_created_between(to_epoch(started_at), until)
            added = self.store.add_tracked_files(target, paths, to_epoch(now))
        logger.info(
            "exam_dates_set period=%s started=%s ended=%s tracked_added=%s",
            target,
            started_at.isoformat(),
            ended_at.isoformat() if ended_at else None,
            added,
        )
        return self.store.period(target)

    def cleanup_selection(
        self,
        strategy: CleanupStrategy,
        classify: Callable[[str], ClassificationResult],
        period_id: int | None = None,
        categories: Collection[Category] | None = None,
    ) -> list[str]:
        """Tracked files of a finished period that a post-exam cleanup should take.

        QuickClean takes everything, SelectiveClean only the given categories,
        SmartClean everything except Reference material.
        """
        strategy = CleanupStrategy(strategy)
        if period_id is None:
            ended = [p for p in self.store.periods() if p.ended_at is not None]
            if not ended:
                raise NoActivePeriod("No finished exam period to clean up")
            period = max(ended, key=lambda p: (p.ended_at, p.id))
        else:
            period = self.store.period(period_id)
            if period.ended_at is None:
                raise PeriodAlreadyActive(f"Exam period {period.id} has not ended yet")

        selected = []
        for path in sorted(period.tracked_file_paths):
            category = classify(path).category
            if strategy is CleanupStrategy.SMART and category is Category.REFERENCE:
                continue
            if strategy is CleanupStrategy.SELECTIVE and categories is not None and category not in categories:
                continue
            selected.append(path)
        return selected

    # ----------------------------- Observation ------------------------------ #

    def observe(
        self,
        records: Iterable[FileRecord],
        now: dt.datetime | None = None,
        enabled: bool = True,
    ) -> TrackerUpdate:
        """Apply one scan's worth of evidence. Call after the scan's file events are recorded."""
        now = now or now_utc()
        update = TrackerUpdate(period=None)
        if not enabled:
            update.period = self.status()
            return update

        with self.store.transaction():
            current = self.store.active_period_id()

            if current is not None and self._idle_expired(current, now):
                self._close(current, now, reason="idle")
                update.auto_ended = True
                current = None

            if current is None:
                current = self._maybe_auto_start(now)
                update.auto_started = current is not None

            if current is not None:
                period = self.store.period(current)
                paths = [r.path for r in records if r.created_at >= period.started_at]
                update.newly_tracked = self.store.add_tracked_files(current, paths, to_epoch(now))
                if update.newly_tracked:
                    logger.info("exam_tracked period=%s added=%s", current, update.newly_tracked)

        update.period = self.status()
        return update

    def _maybe_auto_start(self, now: dt.datetime) -> int | None:
        now_ts = to_epoch(now)
        since = now_ts - self.policy.window_days * 86400
        last_end = self.store.last_period_end()
        if last_end is not None and last_end > since:
            # a closed burst must not re-trigger
            since = last_end
        count, earliest = self.store.study_creations(since, now_ts, _STUDY_VALUES)
        if count <= self.policy.activation_threshold or earliest is None:
            return None
        period_id = self._open(None, from_epoch(earliest), Trigger.AUTO)
        logger.info(
            "exam_auto_started period=%s study_files=%s window_days=%s",
            period_id,
            count,
            self.policy.window_days,
        )
        return period_id

    def _idle_expired(self, period_id: int, now: dt.datetime) -> bool:
        idle_days = self.policy.auto_end_idle_days
        if idle_days is None:
            return False
        last_activity = to_epoch(self.store.period(period_id).started_at)
        latest = self.store.latest_creation(_STUDY_VALUES)
        if latest is not None:
            last_activity = max(last_activity, latest)
        return to_epoch(now) - last_activity > idle_days * 86400

    def _open(self, name: str | None, started_at: dt.datetime, trigger: Trigger) -> int:
        period_id = self.store.insert_period(name, to_epoch(started_at), trigger)
        self.store.set_active_period(period_id)
        logger.info("exam_started period=%s trigger=%s name=%s", period_id, trigger.value, name)
        return period_id

    def _close(self, period_id: int, now: dt.datetime, reason: str) -> None:
        self.store.close_period(period_id, to_epoch(now))
        self.store.set_active_period(None)
        logger.info("exam_ended period=%s reason=%s", period_id, reason)
