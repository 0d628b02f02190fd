"""Error taxonomy shared by the scan, exam, and cleanup flows."""

from __future__ import annotations


class ExamSweepError(Exception):
    """Base class for every error raised by examsweep."""

    code = "EXAMSWEEP_ERROR"


class AccessDenied(ExamSweepError):
    """A directory entry could not be listed or stat'ed; the scan skips it."""

    code = "ACCESS_DENIED"

    def __init__(self, path: str, reason: str):
        super().__init__(f"Access denied: {path} ({reason})")
        self.path = path
        self.reason = reason


class RootNotFound(ExamSweepError):
    code = "ROOT_NOT_FOUND"

    def __init__(self, path: str):
        super().__init__(f"Scan root not found or not a directory: {path}")
        self.path = path


class ReadError(ExamSweepError):
    """File content could not be streamed for fingerprinting."""

    code = "READ_ERROR"

    def __init__(self, path: str, reason: str):
        super().__init__(f"Cannot read {path}: {reason}")
        self.path = path
        self.reason = reason


class PeriodAlreadyActive(ExamSweepError):
    code = "PERIOD_ALREADY_ACTIVE"


class NoActivePeriod(ExamSweepError):
    code = "NO_ACTIVE_PERIOD"


class ArchiveIOError(ExamSweepError):
    code = "ARCHIVE_IO_ERROR"

    def __init__(self, path: str, reason: str):
        super().__init__(f"Cleanup failed for {path}: {reason}")
        self.path = path
        self.reason = reason


class OutcomeNotFound(ExamSweepError):
    code = "OUTCOME_NOT_FOUND"

    def __init__(self, outcome_id: int):
        super().__init__(f"No restorable relocation recorded for outcome {outcome_id}")
        self.outcome_id = outcome_id


class CorruptState(ExamSweepError):
    """Persisted state failed validation. Never reset silently; see StateStore.recover."""

    code = "CORRUPT_STATE"


__all__ = [
    "AccessDenied",
    "ArchiveIOError",
    "CorruptState",
    "ExamSweepError",
    "NoActivePeriod",
    "OutcomeNotFound",
    "PeriodAlreadyActive",
    "ReadError",
    "RootNotFound",
]
