"""Confidence scoring and action selection."""

from __future__ import annotations

import datetime as dt
from typing import Collection, Iterable, Mapping, Sequence

from .config import SuggestionPolicy
from .models import (
    FLAG_CLOUD,
    FLAG_SOFT_PROTECTED,
    Action,
    Category,
    ClassificationResult,
    FileRecord,
    FingerprintGroup,
    Reason,
    Suggestion,
    human_bytes,
    now_utc,
)
from .scanner import is_under, resolve_dir

# Scores are compared after rounding so float noise cannot cross a threshold.
SCORE_PRECISION = 6


def age_days(modified_at: dt.datetime, now: dt.datetime) -> float:
    return max(0.0, (now - modified_at).total_seconds() / 86400)


def non_original_paths(groups: Iterable[FingerprintGroup]) -> dict[str, str]:
    """Map each duplicate path to the original it copies."""
    return {dup.path: g.original.path for g in groups for dup in g.duplicates}


class SuggestionEngine:
    """Additive, clamped scoring over independent signals. Pure: no I/O, no state."""

    def __init__(self, policy: SuggestionPolicy | None = None):
        self.policy = policy or SuggestionPolicy()

    def suggest(
        self,
        records: Sequence[FileRecord],
        classifications: Mapping[str, ClassificationResult],
        groups: Sequence[FingerprintGroup] = (),
        active_tracked: Collection[str] = frozenset(),
        ended_tracked: Collection[str] = frozenset(),
        subtree: str | None = None,
        now: dt.datetime | None = None,
    ) -> list[Suggestion]:
        now = now or now_utc()
        duplicates = non_original_paths(groups)
        base = resolve_dir(subtree) if subtree else None

        out: list[Suggestion] = []
        for rec in records:
            if base is not None and not is_under(rec.path, base):
                continue
            cls = classifications.get(rec.path) or ClassificationResult(Category.OTHER)
            out.append(
                self.score(
                    rec,
                    cls,
                    original_of=duplicates.get(rec.path),
                    in_active_exam=rec.path in active_tracked,
                    in_ended_exam=rec.path in ended_tracked,
                    now=now,
                )
            )
        out.sort(key=lambda s: (-s.confidence, s.path))
        return out

    def score(
        self,
        rec: FileRecord,
        cls: ClassificationResult,
        original_of: str | None,
        in_active_exam: bool,
        in_ended_exam: bool,
        now: dt.datetime,
    ) -> Suggestion:
        p = self.policy
        reasons: list[Reason] = []

        # Age
        days = age_days(rec.modified_at, now)
        if days > p.old_after_days:
            span = p.age_full_weight_days - p.old_after_days
            weight = p.age_weight * min(1.0, (days - p.old_after_days) / span)
            reasons.append(Reason("age", weight, f"Not modified for {int(days)} days"))

        # Size
        if rec.size_bytes > p.large_file_bytes:
            reasons.append(
                Reason(
                    "size",
                    p.size_weight,
                    f"Large file ({human_bytes(rec.size_bytes)} > {human_bytes(p.large_file_bytes)})",
                )
            )

        # Duplicate
        if original_of is not None:
            reasons.append(Reason("duplicate", p.duplicate_weight, f"Identical copy of {original_of}"))

        # Exam periods
        if in_ended_exam:
            reasons.append(Reason("exam_ended", p.exam_ended_weight, "Created during a finished exam period"))
        if in_active_exam:
            reasons.append(Reason("exam_active", p.exam_active_weight, "Part of the active exam period"))

        # Category
        cat_weight = p.category_weights.get(cls.category.value, 0.0)
        if cat_weight:
            reasons.append(Reason("category", cat_weight, f"Category {cls.category.value}"))

        raw = sum(r.weight for r in reasons)
        confidence = round(min(1.0, max(0.0, raw)), SCORE_PRECISION)

        if in_active_exam and not p.allow_active_exam_cleanup:
            action = Action.KEEP
            reasons.append(Reason("exam_active_override", 0.0, "Active exam files are always kept"))
        elif original_of is not None and confidence > p.delete_threshold:
            action = Action.DELETE
        elif confidence > p.archive_threshold:
            action = Action.ARCHIVE
        else:
            action = Action.KEEP

        # flags never change the score; they gate acting on it
        if FLAG_SOFT_PROTECTED in rec.flags:
            reasons.append(Reason("soft_protected", 0.0, "Inside a soft-protected folder"))
        if FLAG_CLOUD in rec.flags:
            reasons.append(Reason("cloud_synced", 0.0, "Inside a cloud-synced folder"))

        return Suggestion(
            path=rec.path,
            action=action,
            confidence=confidence,
            reasons=reasons,
            requires_confirmation=bool(rec.flags) and action is not Action.KEEP,
        )
