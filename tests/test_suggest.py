from __future__ import annotations

import dataclasses
import datetime as dt

import pytest

from examsweep.config import MB, SuggestionPolicy
from examsweep.models import FLAG_CLOUD, FLAG_SOFT_PROTECTED, Action, Category, ClassificationResult, FingerprintGroup
from examsweep.suggest import SuggestionEngine

NOW = dt.datetime(2026, 6, 1, 12, 0, tzinfo=dt.timezone.utc)
DAY = dt.timedelta(days=1)

OTHER = ClassificationResult(Category.OTHER)
REFERENCE = ClassificationResult(Category.REFERENCE)
LECTURE = ClassificationResult(Category.LECTURE, "CS101")


def _factors(suggestion):
    return [r.factor for r in suggestion.reasons]


def test_large_idle_file_is_archived_with_age_and_size_reasons(record):
    big = record("/u/dataset.bin", size=150 * MB, created=NOW - 90 * DAY)

    [s] = SuggestionEngine().suggest([big], {big.path: OTHER}, now=NOW)

    assert s.action is Action.ARCHIVE
    assert s.confidence == pytest.approx(0.35 * 30 / 120 + 0.30 + 0.15)
    assert _factors(s)[:2] == ["age", "size"]


def test_only_the_later_duplicate_is_deleted(record):
    first = record("/u/notes.txt", size=10, created=NOW - DAY)
    later = record("/u/notes copy.txt", size=10, created=NOW)
    group = FingerprintGroup("fp", [first, later])
    cls = {first.path: OTHER, later.path: OTHER}

    out = {s.path: s for s in SuggestionEngine().suggest([first, later], cls, [group], now=NOW)}

    assert out[later.path].action is Action.DELETE
    assert "duplicate" in _factors(out[later.path])
    assert out[first.path].action is not Action.DELETE
    assert "duplicate" not in _factors(out[first.path])


def test_confidence_is_clamped(record):
    rec = record("/u/huge_copy.bin", size=500 * MB, created=NOW - 400 * DAY)
    orig = record("/u/huge.bin", size=500 * MB, created=NOW - 500 * DAY)
    group = FingerprintGroup("fp", [orig, rec])

    out = SuggestionEngine().suggest(
        [rec, orig], {rec.path: OTHER, orig.path: OTHER}, [group], ended_tracked={rec.path}, now=NOW
    )

    for s in out:
        assert 0.0 <= s.confidence <= 1.0
    assert out[0].path == rec.path and out[0].confidence == 1.0


def test_boundary_confidence_resolves_to_keep(record):
    rec = record("/u/syllabus.pdf", created=NOW)
    [s] = SuggestionEngine().suggest([rec], {rec.path: REFERENCE}, ended_tracked={rec.path}, now=NOW)
    assert s.confidence == pytest.approx(0.35)
    assert s.action is Action.KEEP


def test_delete_requires_non_original_even_when_confident(record):
    rec = record("/u/big_old.bin", size=200 * MB, created=NOW - 365 * DAY)
    [s] = SuggestionEngine().suggest([rec], {rec.path: OTHER}, ended_tracked={rec.path}, now=NOW)
    assert s.confidence > 0.75
    assert s.action is Action.ARCHIVE


def test_active_exam_forces_keep_unless_allowed(record):
    orig = record("/u/a.pdf", size=5, created=NOW - 2 * DAY)
    dup = record("/u/b.pdf", size=5, created=NOW - DAY)
    group = FingerprintGroup("fp", [orig, dup])
    cls = {orig.path: LECTURE, dup.path: LECTURE}

    [kept] = SuggestionEngine().suggest([dup], cls, [group], active_tracked={dup.path}, now=NOW)
    assert kept.action is Action.KEEP
    assert "exam_active" in _factors(kept)

    permissive = SuggestionEngine(SuggestionPolicy(allow_active_exam_cleanup=True))
    [s] = permissive.suggest([dup], cls, [group], active_tracked={dup.path}, now=NOW)
    assert s.confidence == pytest.approx(0.80 - 0.30 + 0.05)
    assert s.action is Action.ARCHIVE


def test_ended_exam_pushes_toward_archive(record):
    rec = record("/u/cs101_lecture_1.pdf", created=NOW - 10 * DAY)
    engine = SuggestionEngine()
    [before] = engine.suggest([rec], {rec.path: LECTURE}, now=NOW)
    [after] = engine.suggest([rec], {rec.path: LECTURE}, ended_tracked={rec.path}, now=NOW)
    assert before.action is Action.KEEP
    assert after.action is Action.ARCHIVE
    assert "exam_ended" in _factors(after)


def test_subtree_and_ordering(record):
    a = record("/u/keep/a.txt", created=NOW)
    b = record("/u/sub/b.bin", size=150 * MB, created=NOW)
    c = record("/u/sub/c.txt", created=NOW)
    d = record("/u/subway/d.bin", size=150 * MB, created=NOW)
    cls = {r.path: OTHER for r in (a, b, c, d)}

    out = SuggestionEngine().suggest([c, a, d, b], cls, subtree="/u/sub", now=NOW)

    assert [s.path for s in out] == [b.path, c.path]


def test_thresholds_are_configurable(record):
    rec = record("/u/x.txt", created=NOW)
    strict = SuggestionEngine(SuggestionPolicy(archive_threshold=0.1, delete_threshold=0.9))
    [s] = strict.suggest([rec], {rec.path: OTHER}, now=NOW)
    assert s.action is Action.ARCHIVE


def test_invalid_thresholds_are_rejected():
    with pytest.raises(ValueError):
        SuggestionPolicy(archive_threshold=0.8, delete_threshold=0.5)
    with pytest.raises(ValueError):
        SuggestionPolicy(old_after_days=200, age_full_weight_days=180)


def test_missing_classification_counts_as_other(record):
    rec = record("/u/mystery", created=NOW)
    [s] = SuggestionEngine().suggest([rec], {}, now=NOW)
    assert s.confidence == pytest.approx(0.15)


def test_flagged_files_keep_their_score_but_need_confirmation(record):
    plain = record("/u/dataset.bin", size=150 * MB, created=NOW - 90 * DAY)
    soft = dataclasses.replace(plain, path="/u/thesis/dataset.bin", flags=frozenset({FLAG_SOFT_PROTECTED}))
    cloud = dataclasses.replace(plain, path="/u/Dropbox/dataset.bin", flags=frozenset({FLAG_CLOUD}))
    small = record("/u/Dropbox/tiny.txt", created=NOW)
    small = dataclasses.replace(small, flags=frozenset({FLAG_CLOUD}))
    cls = {r.path: OTHER for r in (plain, soft, cloud, small)}

    out = {s.path: s for s in SuggestionEngine().suggest([plain, soft, cloud, small], cls, now=NOW)}

    assert out[soft.path].confidence == out[plain.path].confidence
    assert out[plain.path].requires_confirmation is False
    assert out[soft.path].requires_confirmation is True
    assert "soft_protected" in _factors(out[soft.path])
    assert out[cloud.path].requires_confirmation is True
    assert "cloud_synced" in _factors(out[cloud.path])
    # nothing to confirm when the file is kept
    assert out[small.path].action is Action.KEEP
    assert out[small.path].requires_confirmation is False
