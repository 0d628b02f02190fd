"""Settings, policies, and logging setup."""

from __future__ import annotations

import dataclasses
import logging
import os
import tempfile
from pathlib import Path

# ------------------------------- Constants ---------------------------------- #

APP_NAME = "examsweep"
DATA_DIR = Path.home() / ".local" / "share" / APP_NAME
DEFAULT_DB = DATA_DIR / "state.db"
DEFAULT_LOG_FILE = DATA_DIR / "actions.log"
DEFAULT_TRASH_DIR = DATA_DIR / "trash"
DEFAULT_ARCHIVE_DIR = Path.home() / "ExamSweep-Archive"

MB = 1024 * 1024
RESTORE_WINDOW_DAYS = 30
ARCHIVE_REMINDER_DAYS = 30

CRITICAL_PATHS = {
    "/",
    "/bin",
    "/boot",
    "/dev",
    "/etc",
    "/lib",
    "/lib64",
    "/proc",
    "/root",
    "/run",
    "/sbin",
    "/sys",
    "/usr",
    "/var",
}

# Pseudo filesystems and read-only snap mounts. Removable media under
# /run/media stays scannable; CRITICAL_PATHS still guards mutation.
DEFAULT_SKIP_PREFIXES = {
    "/proc",
    "/sys",
    "/dev",
    "/snap",
}

# Folder names of sync clients; deleting inside them propagates to the cloud.
CLOUD_FOLDERS = (
    "google drive",
    "dropbox",
    "onedrive",
    "icloud drive",
    "box",
    "sync",
)


# ------------------------------- Policies ----------------------------------- #


@dataclasses.dataclass(slots=True)
class ExamPolicy:
    window_days: int = 7
    activation_threshold: int = 15
    # None keeps an Active period open until ended explicitly.
    auto_end_idle_days: int | None = None


@dataclasses.dataclass(slots=True)
class SuggestionPolicy:
    old_after_days: int = 60
    age_full_weight_days: int = 180
    large_file_bytes: int = 100 * MB
    archive_threshold: float = 0.35
    delete_threshold: float = 0.75
    age_weight: float = 0.35
    size_weight: float = 0.30
    duplicate_weight: float = 0.80
    exam_ended_weight: float = 0.35
    exam_active_weight: float = -0.30
    allow_active_exam_cleanup: bool = False
    category_weights: dict[str, float] = dataclasses.field(
        default_factory=lambda: {
            "Other": 0.15,
            "Assignment": 0.10,
            "Lecture": 0.05,
            "Reference": 0.0,
        }
    )

    def __post_init__(self) -> None:
        if not 0.0 <= self.archive_threshold <= self.delete_threshold <= 1.0:
            raise ValueError("Thresholds must satisfy 0 <= archive <= delete <= 1")
        if self.age_full_weight_days <= self.old_after_days:
            raise ValueError("age_full_weight_days must be greater than old_after_days")


@dataclasses.dataclass(slots=True)
class Settings:
    db_path: Path = DEFAULT_DB
    log_file: Path = DEFAULT_LOG_FILE
    trash_dir: Path = DEFAULT_TRASH_DIR
    archive_dir: Path = DEFAULT_ARCHIVE_DIR
    safe_mode: bool = False
    classifier_rules: str | None = None
    hash_workers: int | None = None
    exam: ExamPolicy = dataclasses.field(default_factory=ExamPolicy)
    suggestions: SuggestionPolicy = dataclasses.field(default_factory=SuggestionPolicy)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            db_path=resolve_writable_path(Path(os.getenv("EXAMSWEEP_DB", str(DEFAULT_DB))), "state.db"),
            log_file=resolve_writable_path(Path(os.getenv("EXAMSWEEP_LOG", str(DEFAULT_LOG_FILE))), "actions.log"),
            trash_dir=Path(os.getenv("EXAMSWEEP_TRASH_DIR", str(DEFAULT_TRASH_DIR))).expanduser(),
            archive_dir=Path(os.getenv("EXAMSWEEP_ARCHIVE_DIR", str(DEFAULT_ARCHIVE_DIR))).expanduser(),
            safe_mode=env_flag("EXAMSWEEP_SAFE_MODE"),
            classifier_rules=os.getenv("EXAMSWEEP_CLASSIFIER_RULES") or None,
        )


# ------------------------------- Utilities ---------------------------------- #


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_writable_path(preferred: Path, fallback_name: str) -> Path:
    """Return preferred path when writable, otherwise fallback in the temp dir."""
    preferred = preferred.expanduser()
    try:
        preferred.parent.mkdir(parents=True, exist_ok=True)
        marker = preferred.parent / ".write_check"
        marker.touch(exist_ok=True)
        marker.unlink(missing_ok=True)
        return preferred
    except OSError:
        fallback = Path(tempfile.gettempdir()) / APP_NAME / fallback_name
        fallback.parent.mkdir(parents=True, exist_ok=True)
        return fallback


def setup_logger(log_file: Path, level: int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger(APP_NAME)
    if logger.handlers:
        return logger

    chosen = log_file
    try:
        ensure_parent(log_file)
    except OSError:
        chosen = Path(tempfile.gettempdir()) / APP_NAME / "actions.log"
        ensure_parent(chosen)

    logger.setLevel(level)
    fh = logging.FileHandler(chosen, encoding="utf-8", errors="backslashreplace")
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    fh.setFormatter(fmt)
    logger.addHandler(fh)
    return logger
