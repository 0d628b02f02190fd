"""Post-exam study file cleanup: scan, classify, dedupe, track exam periods, suggest, archive."""

__version__ = "1.0.0"

from .config import ExamPolicy, Settings, SuggestionPolicy  # noqa: E402
from .engine import Engine, engine_session  # noqa: E402
from .errors import (  # noqa: E402
    AccessDenied,
    ArchiveIOError,
    CorruptState,
    ExamSweepError,
    NoActivePeriod,
    OutcomeNotFound,
    PeriodAlreadyActive,
    ReadError,
    RootNotFound,
)
from .models import (  # noqa: E402
    Action,
    ArchiveOutcome,
    Category,
    ClassificationResult,
    ExamPeriod,
    FileRecord,
    FingerprintGroup,
    Mode,
    Reason,
    ScanReport,
    Suggestion,
    Trigger,
)
