from __future__ import annotations

import dataclasses
import datetime as dt
import os
import sqlite3
from pathlib import Path

import pytest

from examsweep import archive as archive_mod
from examsweep.archive import NEEDS_CONFIRMATION, ArchiveExecutor, reconcile_pending
from examsweep.duplicates import fingerprint_file
from examsweep.errors import ArchiveIOError, OutcomeNotFound
from examsweep.models import Action, Category, ClassificationResult, Mode, Suggestion
from examsweep.scanner import normalize_path

NOW = dt.datetime(2026, 6, 1, 12, 0, tzinfo=dt.timezone.utc)
DAY = dt.timedelta(days=1)


def _tree(*dirs: Path) -> dict[str, bytes]:
    out = {}
    for d in dirs:
        for dirpath, _, files in os.walk(d):
            for name in files:
                p = os.path.join(dirpath, name)
                with open(p, "rb") as f:
                    out[p] = f.read()
    return out


def _sug(path: Path, action: Action) -> Suggestion:
    return Suggestion(path=normalize_path(path), action=action, confidence=0.9, reasons=[])


@pytest.fixture
def executor(store, root, tmp_path):
    return ArchiveExecutor(store, tmp_path / "trash", tmp_path / "archive", allowed_roots=[root])


def test_dry_run_never_mutates_and_is_repeatable(executor, store, root, tmp_path, make_file):
    a = make_file(root / "CS101_lecture_1.pdf", b"lecture")
    b = make_file(root / "copy.pdf", b"dup")
    suggestions = [_sug(a, Action.ARCHIVE), _sug(b, Action.DELETE)]
    before = _tree(root, tmp_path / "trash", tmp_path / "archive")

    first = executor.apply(suggestions, Mode.DRY_RUN, now=NOW)
    second = executor.apply(suggestions, Mode.DRY_RUN, now=NOW)

    assert first == second
    assert {o.status for o in first} == {"preview"}
    assert _tree(root, tmp_path / "trash", tmp_path / "archive") == before
    assert store.outcomes() == []


def test_safe_mode_overrides_apply(store, root, tmp_path, make_file):
    a = make_file(root / "x.txt", b"x")
    safe = ArchiveExecutor(store, tmp_path / "trash", tmp_path / "archive", allowed_roots=[root], safe_mode=True)

    [outcome] = safe.apply([_sug(a, Action.DELETE)], Mode.APPLY, now=NOW)

    assert outcome.status == "preview"
    assert a.exists()
    assert store.outcomes() == []
    assert safe.purge_expired(now=NOW + 60 * DAY) == []


def test_preview_matches_real_run(executor, root, make_file):
    a = make_file(root / "a.txt", b"a")
    sug = [_sug(a, Action.DELETE)]
    [preview] = executor.apply(sug, Mode.DRY_RUN, now=NOW)
    [real] = executor.apply(sug, Mode.APPLY, now=NOW)
    assert (preview.destination, preview.restorable_until) == (real.destination, real.restorable_until)
    assert real.status == "applied" and real.outcome_id is not None


def test_delete_moves_to_trash_and_restores_with_same_fingerprint(executor, store, root, tmp_path, make_file):
    a = make_file(root / "notes copy.txt", b"identical bytes")
    digest = fingerprint_file(str(a))

    [outcome] = executor.apply([_sug(a, Action.DELETE)], Mode.APPLY, now=NOW)

    assert not a.exists()
    slot = tmp_path / "trash" / outcome.destination
    assert (slot / "notes copy.txt").read_bytes() == b"identical bytes"
    assert outcome.restorable_until == NOW + 30 * DAY
    assert store.outcomes()[0].outcome_id == outcome.outcome_id

    restored = executor.restore(outcome.outcome_id, now=NOW + 29 * DAY)

    assert restored.action_taken == "restore"
    assert a.exists() and fingerprint_file(str(a)) == digest
    assert not slot.exists()


def test_archive_goes_to_course_and_category_folder(executor, root, tmp_path, make_file):
    a = make_file(root / "CS101_lecture_1.pdf", b"one")
    b = make_file(root / "old" / "CS101_lecture_1.pdf", b"two")
    cls = {
        normalize_path(a): ClassificationResult(Category.LECTURE, "CS101"),
        normalize_path(b): ClassificationResult(Category.LECTURE, "CS101"),
    }

    outcomes = executor.apply([_sug(a, Action.ARCHIVE), _sug(b, Action.ARCHIVE)], Mode.APPLY, cls, now=NOW)

    folder = tmp_path / "archive" / "CS101" / "Lecture"
    assert [o.destination for o in outcomes] == [
        str(folder / "CS101_lecture_1.pdf"),
        str(folder / "CS101_lecture_1_1.pdf"),
    ]
    assert (folder / "CS101_lecture_1_1.pdf").read_bytes() == b"two"
    assert all(o.restorable_until is None for o in outcomes)


def test_archive_without_course_uses_general(executor, root, tmp_path, make_file):
    a = make_file(root / "random.bin", b"r")
    [outcome] = executor.apply([_sug(a, Action.ARCHIVE)], Mode.APPLY, now=NOW)
    assert outcome.destination == str(tmp_path / "archive" / "general" / "Other" / "random.bin")


def test_archived_file_can_be_restored(executor, root, make_file):
    a = make_file(root / "essay.docx", b"essay")
    [outcome] = executor.apply([_sug(a, Action.ARCHIVE)], Mode.APPLY, now=NOW)
    executor.restore(outcome.outcome_id, now=NOW + 400 * DAY)
    assert a.read_bytes() == b"essay"


def test_restore_refuses_occupied_path_and_expired_window(executor, root, make_file):
    a = make_file(root / "a.txt", b"a")
    b = make_file(root / "b.txt", b"b")
    [oa, ob] = executor.apply([_sug(a, Action.DELETE), _sug(b, Action.DELETE)], Mode.APPLY, now=NOW)

    make_file(root / "a.txt", b"new a")
    with pytest.raises(ArchiveIOError, match="occupied"):
        executor.restore(oa.outcome_id, now=NOW + DAY)

    with pytest.raises(ArchiveIOError, match="expired"):
        executor.restore(ob.outcome_id, now=NOW + 31 * DAY)

    with pytest.raises(OutcomeNotFound):
        executor.restore(9999, now=NOW)


def test_restore_twice_is_refused(executor, root, make_file):
    a = make_file(root / "a.txt", b"a")
    [o] = executor.apply([_sug(a, Action.DELETE)], Mode.APPLY, now=NOW)
    executor.restore(o.outcome_id, now=NOW)
    with pytest.raises(ArchiveIOError, match="Already restored"):
        executor.restore(o.outcome_id, now=NOW)


def test_purge_removes_only_expired_trash(executor, store, root, tmp_path, make_file):
    a = make_file(root / "a.txt", b"a")
    b = make_file(root / "b.txt", b"b")
    [oa] = executor.apply([_sug(a, Action.DELETE)], Mode.APPLY, now=NOW)
    [ob] = executor.apply([_sug(b, Action.DELETE)], Mode.APPLY, now=NOW + 10 * DAY)

    assert executor.purge_expired(now=NOW + 20 * DAY) == []

    purged = executor.purge_expired(now=NOW + 31 * DAY)

    assert [p.path for p in purged] == [oa.path]
    assert not (tmp_path / "trash" / oa.destination).exists()
    assert (tmp_path / "trash" / ob.destination / "b.txt").exists()
    with pytest.raises(ArchiveIOError, match="purged"):
        executor.restore(oa.outcome_id, now=NOW + 31 * DAY)
    assert executor.purge_expired(now=NOW + 32 * DAY) == []


def test_keep_and_refused_targets_are_skipped(executor, root, tmp_path, make_file):
    inside = make_file(root / "keep.txt", b"k")
    outside = make_file(tmp_path / "elsewhere" / "x.txt", b"x")
    sugs = [
        _sug(inside, Action.KEEP),
        _sug(outside, Action.DELETE),
        _sug(root / "missing.txt", Action.DELETE),
        _sug(Path("/etc"), Action.DELETE),
    ]

    outcomes = executor.apply(sugs, Mode.APPLY, now=NOW)

    assert [o.status for o in outcomes] == ["skipped"] * 4
    assert outcomes[0].error is None
    assert outcomes[1].error == "Outside allowed roots"
    assert outcomes[3].error == "Protected system path"
    assert outside.exists() and inside.exists()


def test_failure_is_recorded_and_batch_continues(executor, store, root, tmp_path, make_file):
    blocked = make_file(root / "blocked.bin", b"b")
    fine = make_file(root / "fine.txt", b"f")
    # a file where the archive category folder should be makes mkdir fail
    make_file(tmp_path / "archive" / "general" / "Other", b"not a dir")

    outcomes = executor.apply([_sug(blocked, Action.ARCHIVE), _sug(fine, Action.DELETE)], Mode.APPLY, now=NOW)

    assert outcomes[0].status == "failed"
    assert outcomes[0].error.startswith("ArchiveIOError")
    assert outcomes[0].outcome_id is not None
    assert blocked.exists()
    assert outcomes[1].status == "applied"
    assert not fine.exists()

    logged = {o.outcome_id: o for o in store.outcomes()}
    assert logged[outcomes[0].outcome_id].status == "failed"
    # the failed attempt leaves no relocation behind
    assert store.relocation_for_outcome(outcomes[0].outcome_id) is None
    assert len(logged) == 2


def test_no_allowed_roots_refuses_everything(store, root, tmp_path, make_file):
    a = make_file(root / "a.txt")
    bare = ArchiveExecutor(store, tmp_path / "trash", tmp_path / "archive")
    [o] = bare.apply([_sug(a, Action.DELETE)], Mode.APPLY, now=NOW)
    assert o.error == "No allowed roots configured"


# ------------------------- Interrupted operations --------------------------- #


class Crash(BaseException):
    """Stands in for the process dying between two steps."""


class FailingCommits:
    """Connection wrapper whose numbered COMMIT statements fail."""

    def __init__(self, conn, fail_on):
        self._conn = conn
        self.fail_on = set(fail_on)
        self.commits = 0

    def execute(self, sql, *args):
        if sql == "COMMIT":
            self.commits += 1
            if self.commits in self.fail_on:
                raise sqlite3.OperationalError("disk I/O error")
        return self._conn.execute(sql, *args)

    def __getattr__(self, name):
        return getattr(self._conn, name)


def _crash(*_args, **_kwargs):
    raise Crash()


def test_pending_entry_is_logged_before_the_move(executor, store, root, tmp_path, monkeypatch, make_file):
    a = make_file(root / "a.txt", b"a")
    monkeypatch.setattr(executor, "_move", _crash)

    with pytest.raises(Crash):
        executor.apply([_sug(a, Action.DELETE)], Mode.APPLY, now=NOW)

    [logged] = store.outcomes()
    assert logged.status == "pending"
    assert a.exists()

    assert reconcile_pending(store, now=NOW) == 1
    [logged] = store.outcomes()
    assert logged.status == "failed"
    assert store.relocation_for_outcome(logged.outcome_id) is None
    assert a.read_bytes() == b"a"


def test_crash_after_move_is_reconciled_as_applied(executor, store, root, monkeypatch, make_file):
    a = make_file(root / "a.txt", b"a")
    monkeypatch.setattr(executor, "_settle", _crash)

    with pytest.raises(Crash):
        executor.apply([_sug(a, Action.DELETE)], Mode.APPLY, now=NOW)
    assert not a.exists()

    reconcile_pending(store, now=NOW)
    [logged] = store.outcomes()
    assert logged.status == "applied"

    monkeypatch.undo()
    executor.restore(logged.outcome_id, now=NOW + DAY)
    assert a.read_bytes() == b"a"


def test_commit_failure_after_move_leaves_pending_not_lost(executor, store, root, monkeypatch, make_file):
    a = make_file(root / "a.txt", b"a")
    monkeypatch.setattr(store, "conn", FailingCommits(store.conn, fail_on={2}))

    [outcome] = executor.apply([_sug(a, Action.DELETE)], Mode.APPLY, now=NOW)

    assert outcome.status == "pending"
    assert outcome.outcome_id is not None
    assert not a.exists()
    assert not store.conn.in_transaction

    reconcile_pending(store, now=NOW)
    assert store.outcomes()[0].status == "applied"
    executor.restore(outcome.outcome_id, now=NOW + DAY)
    assert a.exists()


def test_commit_failure_before_move_changes_nothing(executor, store, root, tmp_path, monkeypatch, make_file):
    a = make_file(root / "a.txt", b"a")
    monkeypatch.setattr(store, "conn", FailingCommits(store.conn, fail_on={1}))

    [outcome] = executor.apply([_sug(a, Action.DELETE)], Mode.APPLY, now=NOW)

    assert outcome.status == "failed"
    assert outcome.error.startswith("OperationalError")
    assert outcome.outcome_id is None
    assert a.exists()
    assert store.outcomes() == []
    assert not (tmp_path / "trash").exists() or not any((tmp_path / "trash").iterdir())


def test_interrupted_restore_and_purge_are_reconciled(executor, store, root, tmp_path, monkeypatch, make_file):
    a = make_file(root / "a.txt", b"a")
    b = make_file(root / "b.txt", b"b")
    [oa, ob] = executor.apply([_sug(a, Action.DELETE), _sug(b, Action.DELETE)], Mode.APPLY, now=NOW)

    monkeypatch.setattr(executor, "_settle", _crash)
    with pytest.raises(Crash):
        executor.restore(oa.outcome_id, now=NOW + DAY)
    assert a.exists()
    assert reconcile_pending(store, now=NOW + DAY) == 1

    with pytest.raises(Crash):
        executor.purge_expired(now=NOW + 31 * DAY)
    assert not (tmp_path / "trash" / ob.destination / "b.txt").exists()
    assert reconcile_pending(store, now=NOW + 31 * DAY) == 1

    assert {o.action_taken: o.status for o in store.outcomes()[:2]} == {"restore": "applied", "purge": "applied"}
    assert store.relocation_for_outcome(oa.outcome_id)["restored_at"] is not None
    assert store.relocation_for_outcome(ob.outcome_id)["purged_at"] is not None


# --------------------------- Stable destinations ---------------------------- #


def test_trash_slot_does_not_depend_on_the_clock(executor, root, make_file):
    a = make_file(root / "a.txt", b"a")
    sug = [_sug(a, Action.DELETE)]

    [early] = executor.apply(sug, Mode.DRY_RUN, now=NOW)
    [late] = executor.apply(sug, Mode.DRY_RUN, now=NOW + dt.timedelta(hours=1, seconds=7))
    [real] = executor.apply(sug, Mode.APPLY, now=NOW + dt.timedelta(hours=2))

    assert early.destination == late.destination == real.destination


def test_trash_slot_changes_when_the_file_changes(executor, root, make_file):
    a = make_file(root / "a.txt", b"a", mtime=NOW - DAY)
    [before] = executor.apply([_sug(a, Action.DELETE)], Mode.DRY_RUN, now=NOW)
    make_file(root / "a.txt", b"a longer body", mtime=NOW)
    [after] = executor.apply([_sug(a, Action.DELETE)], Mode.DRY_RUN, now=NOW)
    assert before.destination != after.destination


# ------------------------- Locks and confirmation --------------------------- #


def test_locked_file_is_skipped(executor, root, monkeypatch, make_file):
    busy = make_file(root / "busy.txt", b"b")
    free = make_file(root / "free.txt", b"f")
    monkeypatch.setattr(archive_mod, "is_file_locked", lambda p: p.endswith("busy.txt"))

    outcomes = executor.apply([_sug(busy, Action.DELETE), _sug(free, Action.DELETE)], Mode.APPLY, now=NOW)

    assert [o.status for o in outcomes] == ["skipped", "applied"]
    assert outcomes[0].error == "File is locked or read-only"
    assert busy.exists() and not free.exists()


def test_is_file_locked_on_plain_and_missing_files(tmp_path, make_file):
    assert archive_mod.is_file_locked(str(make_file(tmp_path / "plain.txt"))) is False
    assert archive_mod.is_file_locked(str(tmp_path / "missing.txt")) is True


def test_flagged_suggestion_needs_explicit_confirmation(executor, root, make_file):
    a = make_file(root / "Dropbox" / "a.txt", b"a")
    sug = dataclasses.replace(_sug(a, Action.DELETE), requires_confirmation=True)

    [held] = executor.apply([sug], Mode.APPLY, now=NOW)
    assert held.status == "skipped" and held.error == NEEDS_CONFIRMATION
    assert a.exists()

    [done] = executor.apply([sug], Mode.APPLY, now=NOW, confirm_flagged=True)
    assert done.status == "applied"
    assert not a.exists()


# ------------------------------ Archive views ------------------------------- #


def test_archive_listing_stats_reminders_and_cleaning(executor, store, root, tmp_path, make_file):
    old = make_file(root / "old.pdf", b"old bytes")
    new = make_file(root / "new.pdf", b"new")
    [oo] = executor.apply([_sug(old, Action.ARCHIVE)], Mode.APPLY, now=NOW)
    [on] = executor.apply([_sug(new, Action.ARCHIVE)], Mode.APPLY, now=NOW + 20 * DAY)
    later = NOW + 40 * DAY

    entries = executor.list_archives()
    assert [e.outcome_id for e in entries] == [oo.outcome_id, on.outcome_id]
    assert entries[0].size_bytes == len(b"old bytes") and entries[0].present

    stats = executor.archive_stats(now=later)
    assert stats["total"] == 2
    assert stats["total_bytes"] == len(b"old bytes") + len(b"new")
    assert stats["due_for_review"] == 1
    assert stats["oldest"] == NOW.isoformat()

    assert [e.outcome_id for e in executor.archive_reminders(now=later)] == [oo.outcome_id]

    removed = executor.clean_old_archives(35, now=later)
    assert [(o.path, o.action_taken, o.status) for o in removed] == [(oo.path, "purge", "applied")]
    assert not os.path.exists(oo.destination)
    assert os.path.exists(on.destination)
    assert [e.outcome_id for e in executor.list_archives()] == [on.outcome_id]
    with pytest.raises(ArchiveIOError, match="purged"):
        executor.restore(oo.outcome_id, now=later)


def test_restored_archive_leaves_the_listing(executor, root, make_file):
    a = make_file(root / "a.pdf", b"a")
    [o] = executor.apply([_sug(a, Action.ARCHIVE)], Mode.APPLY, now=NOW)
    executor.restore(o.outcome_id, now=NOW + DAY)
    assert executor.list_archives() == []
    assert executor.archive_stats(now=NOW)["oldest"] is None


def test_cleaning_archives_is_disabled_in_safe_mode(store, root, tmp_path, make_file):
    a = make_file(root / "a.pdf", b"a")
    real = ArchiveExecutor(store, tmp_path / "trash", tmp_path / "archive", allowed_roots=[root])
    [o] = real.apply([_sug(a, Action.ARCHIVE)], Mode.APPLY, now=NOW)
    safe = ArchiveExecutor(store, tmp_path / "trash", tmp_path / "archive", allowed_roots=[root], safe_mode=True)

    assert safe.clean_old_archives(0, now=NOW + 100 * DAY) == []
    assert os.path.exists(o.destination)
