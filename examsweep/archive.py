"""Reversible cleanup: staging trash, organized archive, restore, and purge."""

from __future__ import annotations

import contextlib
import dataclasses
import datetime as dt
import functools
import logging
import os
import shutil
import sqlite3
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Sequence

import xxhash

from .config import ARCHIVE_REMINDER_DAYS, CRITICAL_PATHS, RESTORE_WINDOW_DAYS
from .errors import ArchiveIOError, OutcomeNotFound
from .models import (
    Action,
    ArchiveEntry,
    ArchiveOutcome,
    Category,
    ClassificationResult,
    Mode,
    Suggestion,
    from_epoch,
    human_bytes,
    now_utc,
    to_epoch,
)
from .scanner import is_under, normalize_path, resolve_dir
from .store import StateStore

logger = logging.getLogger(__name__)

MAX_NAME_ATTEMPTS = 100
GENERAL_COURSE = "general"
NEEDS_CONFIRMATION = "Requires confirmation (soft-protected or cloud-synced)"
INTERRUPTED = "Interrupted before the change was confirmed"


def is_file_locked(path: str) -> bool:
    """True when the file cannot be opened for writing right now."""
    try:
        with open(path, "r+b"):
            return False
    except OSError:
        return True


def _describe(exc: Exception) -> str:
    reason = exc.reason if isinstance(exc, ArchiveIOError) else str(exc)
    return f"{type(exc).__name__}: {reason}"


class ArchiveExecutor:
    """Apply suggestions with a trash stage that is restorable for RESTORE_WINDOW_DAYS.

    Nothing is deleted directly: Delete moves into ``<trash>/<slot_id>/`` and
    only ``purge_expired`` removes slots whose window has passed.

    Every filesystem change is announced first: a ``pending`` outcome and its
    relocation are committed, then the file is moved, then the outcome is
    settled as applied or failed. A crash in between leaves a pending entry
    that ``reconcile_pending`` resolves against the filesystem.
    """

    def __init__(
        self,
        store: StateStore,
        trash_dir: Path,
        archive_dir: Path,
        allowed_roots: Iterable[str] = (),
        safe_mode: bool = False,
        restore_window_days: int = RESTORE_WINDOW_DAYS,
    ):
        self.store = store
        self.trash_dir = Path(resolve_dir(trash_dir))
        self.archive_dir = Path(resolve_dir(archive_dir))
        self.allowed_roots = [resolve_dir(r) for r in allowed_roots if str(r).strip()]
        self.safe_mode = safe_mode
        self.restore_window = dt.timedelta(days=restore_window_days)

    # -------------------------------- Apply --------------------------------- #

    def apply(
        self,
        suggestions: Sequence[Suggestion],
        mode: Mode = Mode.DRY_RUN,
        classifications: Mapping[str, ClassificationResult] | None = None,
        now: dt.datetime | None = None,
        confirm_flagged: bool = False,
    ) -> list[ArchiveOutcome]:
        now = now or now_utc()
        mode = Mode(mode)
        classifications = classifications or {}
        preview = mode is Mode.DRY_RUN or self.safe_mode
        if mode is Mode.APPLY and self.safe_mode:
            logger.info("cleanup_safe_mode requested=apply count=%s", len(suggestions))

        # Slots and destinations handed out in this batch, so previews match a real run.
        reserved: set[str] = set()
        seen: set[str] = set()
        outcomes: list[ArchiveOutcome] = []

        for sug in suggestions:
            path = normalize_path(sug.path)
            action_name = sug.action.value.lower()

            if sug.action is Action.KEEP:
                outcomes.append(ArchiveOutcome(path, action_name, None, now, status="skipped"))
                continue

            refusal = self._refusal(path, seen)
            seen.add(path)
            if refusal is None and sug.requires_confirmation and not confirm_flagged:
                refusal = NEEDS_CONFIRMATION
            if refusal:
                outcomes.append(ArchiveOutcome(path, action_name, None, now, status="skipped", error=refusal))
                logger.info("cleanup_skipped path=%s reason=%s", path, refusal)
                continue

            try:
                st = self._stat(path)
                slot_id = self._slot_id(path, st, reserved)
                if sug.action is Action.DELETE:
                    target = self.trash_dir / slot_id / os.path.basename(path)
                    destination = slot_id
                    kind = "trash"
                    restorable_until = now + self.restore_window
                else:
                    cls = classifications.get(path) or ClassificationResult(Category.OTHER)
                    target = self._archive_target(path, cls, reserved)
                    destination = str(target)
                    kind = "archive"
                    restorable_until = None
            except ArchiveIOError as exc:
                outcomes.append(self._failed(path, action_name, now, _describe(exc), persist=not preview))
                continue

            planned = ArchiveOutcome(
                path=path,
                action_taken=action_name,
                destination=destination,
                timestamp=now,
                restorable_until=restorable_until,
                status="preview" if preview else "pending",
            )
            if preview:
                outcomes.append(planned)
                continue

            try:
                with self.store.transaction():
                    outcome_id = self.store.append_outcome(planned, slot_id=slot_id)
                    self.store.insert_relocation(
                        slot_id,
                        outcome_id,
                        kind,
                        path,
                        str(target),
                        to_epoch(now),
                        to_epoch(restorable_until) if restorable_until else None,
                    )
            except sqlite3.Error as exc:
                # nothing has been moved yet
                logger.error("cleanup_log_failed action=%s path=%s err=%s", action_name, path, exc)
                outcomes.append(self._failed(path, action_name, now, _describe(exc), persist=False))
                continue

            planned = dataclasses.replace(planned, outcome_id=outcome_id)
            try:
                self._move(path, target)
            except ArchiveIOError as exc:
                logger.error("cleanup_failed action=%s path=%s err=%s", action_name, path, exc.reason)
                drop = functools.partial(self.store.delete_relocation, slot_id)
                outcomes.append(self._settle(planned, "failed", _describe(exc), drop))
                continue

            outcomes.append(self._settle(planned, "applied"))
            logger.info("cleanup_success action=%s path=%s destination=%s", action_name, path, destination)

        return outcomes

    def _refusal(self, path: str, seen: set[str]) -> str | None:
        if path in seen:
            return "Duplicate request in batch"
        if os.path.realpath(path) in CRITICAL_PATHS or path in CRITICAL_PATHS:
            return "Protected system path"
        if not self.allowed_roots:
            return "No allowed roots configured"
        if not any(is_under(path, root) for root in self.allowed_roots):
            return "Outside allowed roots"
        if is_under(path, str(self.trash_dir)) or is_under(path, str(self.archive_dir)):
            return "Already inside trash or archive"
        if os.path.islink(path) or not os.path.isfile(path):
            return "Path does not exist or is not a regular file"
        if is_file_locked(path):
            return "File is locked or read-only"
        return None

    @staticmethod
    def _stat(path: str) -> os.stat_result:
        try:
            return os.stat(path, follow_symlinks=False)
        except OSError as exc:
            raise ArchiveIOError(path, exc.strerror or str(exc)) from exc

    def _slot_id(self, path: str, st: os.stat_result, reserved: set[str]) -> str:
        # derived from the file itself so a preview and a later run agree
        key = f"{path}\0{st.st_size}\0{st.st_mtime_ns}"
        base = xxhash.xxh64_hexdigest(key.encode("utf-8", "surrogateescape"))
        for n in range(MAX_NAME_ATTEMPTS):
            slot_id = base if n == 0 else f"{base}_{n}"
            if slot_id in reserved or self.store.slot_exists(slot_id):
                continue
            if (self.trash_dir / slot_id).exists():
                continue
            reserved.add(slot_id)
            return slot_id
        raise ArchiveIOError(path, "No free trash slot")

    def _archive_target(self, path: str, cls: ClassificationResult, reserved: set[str]) -> Path:
        folder = self.archive_dir / (cls.course_code or GENERAL_COURSE) / cls.category.value
        stem, ext = os.path.splitext(os.path.basename(path))
        for n in range(MAX_NAME_ATTEMPTS):
            name = f"{stem}{ext}" if n == 0 else f"{stem}_{n}{ext}"
            candidate = folder / name
            if str(candidate) in reserved or candidate.exists():
                continue
            reserved.add(str(candidate))
            return candidate
        raise ArchiveIOError(path, f"No free archive name after {MAX_NAME_ATTEMPTS} attempts")

    @staticmethod
    def _move(src: str, dst: Path) -> None:
        try:
            dst.parent.mkdir(parents=True, exist_ok=True)
            if dst.exists():
                raise ArchiveIOError(src, f"Destination already exists: {dst}")
            shutil.move(src, str(dst))
        except OSError as exc:
            raise ArchiveIOError(src, exc.strerror or str(exc)) from exc

    def _settle(
        self,
        outcome: ArchiveOutcome,
        status: str,
        error: str | None = None,
        also: Callable[[], Any] | None = None,
    ) -> ArchiveOutcome:
        """Settle a pending outcome once the filesystem change is known.

        If the log cannot be written the entry stays pending and is resolved
        by reconcile_pending on the next start.
        """
        try:
            with self.store.transaction():
                self.store.finish_outcome(outcome.outcome_id, status, error)
                if also is not None:
                    also()
        except sqlite3.Error as exc:
            logger.error(
                "cleanup_settle_failed outcome=%s status=%s err=%s", outcome.outcome_id, status, exc
            )
            return dataclasses.replace(outcome, status="pending", error=error)
        return dataclasses.replace(outcome, status=status, error=error)

    def _failed(self, path: str, action_name: str, now: dt.datetime, error: str, persist: bool) -> ArchiveOutcome:
        outcome = ArchiveOutcome(
            path=path,
            action_taken=action_name,
            destination=None,
            timestamp=now,
            status="failed",
            error=error,
        )
        if not persist:
            return outcome
        try:
            with self.store.transaction():
                outcome_id = self.store.append_outcome(outcome)
        except sqlite3.Error as exc:
            logger.error("cleanup_log_failed action=%s path=%s err=%s", action_name, path, exc)
            return outcome
        logger.error("cleanup_failed action=%s path=%s err=%s", action_name, path, error)
        return dataclasses.replace(outcome, outcome_id=outcome_id)

    # ------------------------------- Restore -------------------------------- #

    def restore(self, outcome_id: int, now: dt.datetime | None = None) -> ArchiveOutcome:
        """Move a trashed or archived file back to where it was found."""
        now = now or now_utc()
        row = self.store.relocation_for_outcome(outcome_id)
        if row is None:
            raise OutcomeNotFound(outcome_id)

        original = row["original_path"]
        current = row["current_path"]
        if row["restored_at"] is not None:
            raise ArchiveIOError(original, "Already restored")
        if row["purged_at"] is not None:
            raise ArchiveIOError(original, "Already purged from trash")
        if row["restorable_until"] is not None and to_epoch(now) > row["restorable_until"]:
            raise ArchiveIOError(original, "Restore window has expired")
        if os.path.lexists(original):
            raise ArchiveIOError(original, "Original path is occupied")
        if not os.path.exists(current):
            raise ArchiveIOError(original, f"Relocated file is missing: {current}")

        outcome = ArchiveOutcome(
            path=original,
            action_taken="restore",
            destination=original,
            timestamp=now,
            status="preview" if self.safe_mode else "pending",
        )
        if self.safe_mode:
            return outcome

        slot_id = row["slot_id"]
        with self.store.transaction():
            outcome = dataclasses.replace(outcome, outcome_id=self.store.append_outcome(outcome, slot_id=slot_id))
        try:
            self._move(current, Path(original))
        except ArchiveIOError as exc:
            self._settle(outcome, "failed", _describe(exc))
            raise

        restored = self._settle(
            outcome, "applied", also=functools.partial(self.store.mark_restored, slot_id, to_epoch(now))
        )
        if row["kind"] == "trash":
            with contextlib.suppress(OSError):
                os.rmdir(os.path.dirname(current))
        logger.info("restore_success outcome=%s path=%s", outcome_id, original)
        return restored

    # -------------------------------- Purge --------------------------------- #

    def purge_expired(self, now: dt.datetime | None = None) -> list[ArchiveOutcome]:
        """Permanently remove trash slots whose restore window has passed."""
        now = now or now_utc()
        if self.safe_mode:
            logger.info("purge_disabled reason=safe_mode")
            return []
        return self._purge(self.store.expired_trash(to_epoch(now)), now)

    def _purge(self, rows: Sequence[dict[str, Any]], now: dt.datetime) -> list[ArchiveOutcome]:
        outcomes: list[ArchiveOutcome] = []
        for row in rows:
            slot_id = row["slot_id"]
            current = Path(row["current_path"])
            original = row["original_path"]
            outcome = ArchiveOutcome(
                path=original,
                action_taken="purge",
                destination=slot_id if row["kind"] == "trash" else str(current),
                timestamp=now,
                restorable_until=from_epoch(row["restorable_until"]) if row["restorable_until"] is not None else None,
                status="pending",
            )
            try:
                with self.store.transaction():
                    outcome = dataclasses.replace(
                        outcome, outcome_id=self.store.append_outcome(outcome, slot_id=slot_id)
                    )
            except sqlite3.Error as exc:
                logger.error("purge_log_failed slot=%s err=%s", slot_id, exc)
                outcomes.append(self._failed(original, "purge", now, _describe(exc), persist=False))
                continue

            try:
                self._unlink(original, current)
            except ArchiveIOError as exc:
                logger.error("purge_failed slot=%s path=%s err=%s", slot_id, original, exc.reason)
                outcomes.append(self._settle(outcome, "failed", _describe(exc)))
                continue

            outcomes.append(
                self._settle(outcome, "applied", also=functools.partial(self.store.mark_purged, slot_id, to_epoch(now)))
            )
            if row["kind"] == "trash":
                with contextlib.suppress(OSError):
                    current.parent.rmdir()
            logger.info("purge_success slot=%s path=%s", slot_id, original)
        return outcomes

    @staticmethod
    def _unlink(original: str, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise ArchiveIOError(original, exc.strerror or str(exc)) from exc

    # ---------------------------- Archive views ----------------------------- #

    def list_archives(self, moved_before: dt.datetime | None = None) -> list[ArchiveEntry]:
        """Files currently held in the archive, oldest first."""
        rows = self.store.held_archives(to_epoch(moved_before) if moved_before else None)
        entries = []
        for row in rows:
            try:
                size, present = os.lstat(row["current_path"]).st_size, True
            except OSError:
                size, present = 0, False
            entries.append(
                ArchiveEntry(
                    outcome_id=int(row["outcome_id"]),
                    original_path=row["original_path"],
                    current_path=row["current_path"],
                    archived_at=from_epoch(row["moved_at"]),
                    size_bytes=int(size),
                    present=present,
                )
            )
        return entries

    def archive_stats(self, now: dt.datetime | None = None, reminder_days: int = ARCHIVE_REMINDER_DAYS) -> dict:
        now = now or now_utc()
        entries = self.list_archives()
        total_bytes = sum(e.size_bytes for e in entries)
        return {
            "total": len(entries),
            "total_bytes": total_bytes,
            "total_human": human_bytes(total_bytes),
            "oldest": entries[0].archived_at.isoformat() if entries else None,
            "newest": entries[-1].archived_at.isoformat() if entries else None,
            "due_for_review": sum(1 for e in entries if e.age_days(now) >= reminder_days),
        }

    def archive_reminders(
        self, now: dt.datetime | None = None, days: int = ARCHIVE_REMINDER_DAYS
    ) -> list[ArchiveEntry]:
        """Archived files old enough that the user should decide whether to keep them."""
        now = now or now_utc()
        return [e for e in self.list_archives() if e.present and e.age_days(now) >= days]

    def clean_old_archives(self, older_than_days: int, now: dt.datetime | None = None) -> list[ArchiveOutcome]:
        """Permanently remove archived files older than the given age."""
        now = now or now_utc()
        if older_than_days < 0:
            raise ValueError("older_than_days must be >= 0")
        if self.safe_mode:
            logger.info("archive_clean_disabled reason=safe_mode")
            return []
        cutoff = to_epoch(now - dt.timedelta(days=older_than_days))
        return self._purge(self.store.held_archives(cutoff), now)


# ----------------------------- Reconciliation ------------------------------- #


def reconcile_pending(store: StateStore, now: dt.datetime | None = None) -> int:
    """Settle outcomes left pending by a crash, judging by what is on disk."""
    now_ts = to_epoch(now or now_utc())
    settled = 0
    for entry in store.pending_outcomes():
        slot_id = entry["slot_id"]
        row = store.relocation(slot_id) if slot_id else None
        action = entry["action_taken"]
        status = "failed"
        finish: Callable[[], Any] | None = None

        if row is not None:
            original, current = row["original_path"], row["current_path"]
            if action in ("delete", "archive"):
                if os.path.lexists(current):
                    status = "applied"
                else:
                    finish = functools.partial(store.delete_relocation, slot_id)
            elif action == "restore":
                if os.path.lexists(original) and not os.path.lexists(current):
                    status = "applied"
                    finish = functools.partial(store.mark_restored, slot_id, now_ts)
            elif action == "purge" and not os.path.lexists(current):
                status = "applied"
                finish = functools.partial(store.mark_purged, slot_id, now_ts)

        with store.transaction():
            store.finish_outcome(entry["id"], status, None if status == "applied" else INTERRUPTED)
            if finish is not None:
                finish()
        settled += 1
        logger.warning(
            "cleanup_reconciled outcome=%s action=%s path=%s status=%s", entry["id"], action, entry["path"], status
        )
    return settled
