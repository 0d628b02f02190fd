"""Data models shared across the pipeline."""

from __future__ import annotations

import dataclasses
import datetime as dt
import os
from enum import Enum
from typing import Any


def now_utc() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def now_utc_iso() -> str:
    return now_utc().replace(microsecond=0).isoformat()


def from_epoch(ts: float) -> dt.datetime:
    return dt.datetime.fromtimestamp(ts, tz=dt.timezone.utc)


def to_epoch(value: dt.datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value.timestamp()


def iso_or_none(value: dt.datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def display_path(path: str | None) -> str | None:
    """Printable form of a path whose name may not be valid UTF-8."""
    if path is None:
        return None
    return os.fsencode(path).decode("utf-8", "replace")


def human_bytes(size: int) -> str:
    val = float(max(size, 0))
    for unit in ["B", "KB", "MB", "GB", "TB", "PB"]:
        if val < 1024.0 or unit == "PB":
            if unit == "B":
                return f"{int(val)} {unit}"
            return f"{val:.2f} {unit}"
        val /= 1024.0
    return f"{size} B"


# --------------------------------- Enums ------------------------------------ #


class Category(str, Enum):
    LECTURE = "Lecture"
    ASSIGNMENT = "Assignment"
    REFERENCE = "Reference"
    OTHER = "Other"


STUDY_CATEGORIES = frozenset({Category.LECTURE, Category.ASSIGNMENT, Category.REFERENCE})


class Trigger(str, Enum):
    AUTO = "Auto"
    MANUAL = "Manual"


class Action(str, Enum):
    KEEP = "Keep"
    ARCHIVE = "Archive"
    DELETE = "Delete"


class Mode(str, Enum):
    DRY_RUN = "DryRun"
    APPLY = "Apply"


class CleanupStrategy(str, Enum):
    """Post-exam selection over the files a period tracked."""

    QUICK = "QuickClean"
    SELECTIVE = "SelectiveClean"
    SMART = "SmartClean"


# FileRecord flags
FLAG_SOFT_PROTECTED = "soft_protected"
FLAG_CLOUD = "cloud_synced"
CONFIRM_FLAGS = frozenset({FLAG_SOFT_PROTECTED, FLAG_CLOUD})


# ------------------------------ Data Models --------------------------------- #


@dataclasses.dataclass(frozen=True, slots=True)
class FileRecord:
    """Metadata snapshot of one file at scan time."""

    path: str
    size_bytes: int
    created_at: dt.datetime
    modified_at: dt.datetime
    extension: str
    flags: frozenset[str] = frozenset()

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": display_path(self.path),
            "size_bytes": self.size_bytes,
            "created_at": self.created_at.isoformat(),
            "modified_at": self.modified_at.isoformat(),
            "extension": display_path(self.extension),
            "flags": sorted(self.flags),
        }


@dataclasses.dataclass(frozen=True, slots=True)
class ClassificationResult:
    category: Category
    course_code: str | None = None


@dataclasses.dataclass(slots=True)
class FingerprintGroup:
    """Files sharing one content fingerprint, oldest first."""

    fingerprint: str
    members: list[FileRecord]

    @property
    def original(self) -> FileRecord:
        return self.members[0]

    @property
    def duplicates(self) -> list[FileRecord]:
        return self.members[1:]

    @property
    def potential_waste(self) -> int:
        return self.members[0].size_bytes * (len(self.members) - 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "original": display_path(self.original.path),
            "duplicates": [display_path(m.path) for m in self.duplicates],
            "size_each": self.original.size_bytes,
            "potential_waste": self.potential_waste,
            "potential_waste_human": human_bytes(self.potential_waste),
        }


@dataclasses.dataclass(slots=True)
class ExamPeriod:
    id: int
    name: str | None
    started_at: dt.datetime
    ended_at: dt.datetime | None
    trigger: Trigger
    tracked_file_paths: set[str] = dataclasses.field(default_factory=set)

    @property
    def active(self) -> bool:
        return self.ended_at is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "started_at": self.started_at.isoformat(),
            "ended_at": iso_or_none(self.ended_at),
            "trigger": self.trigger.value,
            "active": self.active,
            "tracked_files": len(self.tracked_file_paths),
        }


@dataclasses.dataclass(frozen=True, slots=True)
class Reason:
    factor: str
    weight: float
    detail: str

    def __str__(self) -> str:
        return f"{self.detail} ({self.weight:+.2f})"


@dataclasses.dataclass(slots=True)
class Suggestion:
    path: str
    action: Action
    confidence: float
    reasons: list[Reason]
    # soft-protected or cloud-synced targets need an explicit go-ahead to be acted on
    requires_confirmation: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": display_path(self.path),
            "action": self.action.value,
            "confidence": round(self.confidence, 4),
            "reasons": [
                {"factor": r.factor, "weight": r.weight, "detail": display_path(r.detail)} for r in self.reasons
            ],
            "requires_confirmation": self.requires_confirmation,
        }


@dataclasses.dataclass(frozen=True, slots=True)
class ArchiveOutcome:
    """One entry of the cleanup log; previews share the same shape.

    status is one of applied, preview, skipped, failed, or pending while the
    filesystem change it announces has not been confirmed yet.
    """

    path: str
    action_taken: str
    destination: str | None
    timestamp: dt.datetime
    restorable_until: dt.datetime | None = None
    status: str = "applied"
    error: str | None = None
    outcome_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome_id": self.outcome_id,
            "path": display_path(self.path),
            "action_taken": self.action_taken,
            "destination": display_path(self.destination),
            "timestamp": self.timestamp.isoformat(),
            "restorable_until": iso_or_none(self.restorable_until),
            "status": self.status,
            "error": display_path(self.error),
        }


@dataclasses.dataclass(slots=True)
class ScanReport:
    """Everything one scan invocation learned, enriched for suggestion."""

    root: str
    scanned_at: dt.datetime
    records: list[FileRecord]
    classifications: dict[str, ClassificationResult]
    groups: list[FingerprintGroup]
    errors: list[dict[str, str]]
    active_period: ExamPeriod | None
    auto_started: bool = False
    auto_ended: bool = False

    @property
    def total_bytes(self) -> int:
        return sum(r.size_bytes for r in self.records)

    def to_dict(self) -> dict[str, Any]:
        return {
            "root": display_path(self.root),
            "scanned_at": self.scanned_at.isoformat(),
            "total_files": len(self.records),
            "total_bytes": self.total_bytes,
            "total_human": human_bytes(self.total_bytes),
            "duplicate_groups": [g.to_dict() for g in self.groups],
            "categories": {
                display_path(path): {"category": c.category.value, "course_code": c.course_code}
                for path, c in self.classifications.items()
            },
            "errors_count": len(self.errors),
            "errors_sample": [{**e, "path": display_path(e["path"])} for e in self.errors[:50]],
            "active_period": self.active_period.to_dict() if self.active_period else None,
            "auto_started": self.auto_started,
            "auto_ended": self.auto_ended,
        }


@dataclasses.dataclass(frozen=True, slots=True)
class ArchiveEntry:
    """A file currently held in the archive, as recorded by its relocation."""

    outcome_id: int
    original_path: str
    current_path: str
    archived_at: dt.datetime
    size_bytes: int
    present: bool

    def age_days(self, now: dt.datetime) -> int:
        return max(0, (now - self.archived_at).days)

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome_id": self.outcome_id,
            "original_path": display_path(self.original_path),
            "current_path": display_path(self.current_path),
            "archived_at": self.archived_at.isoformat(),
            "size_bytes": self.size_bytes,
            "size_human": human_bytes(self.size_bytes),
            "present": self.present,
        }
