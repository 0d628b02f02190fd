from __future__ import annotations

import datetime as dt
import os
from pathlib import Path
from typing import Callable

import pytest

from examsweep.config import Settings
from examsweep.engine import Engine
from examsweep.models import FileRecord, to_epoch
from examsweep.store import StateStore

NOW = dt.datetime(2026, 6, 1, 12, 0, tzinfo=dt.timezone.utc)


@pytest.fixture
def now() -> dt.datetime:
    return NOW


@pytest.fixture
def store(tmp_path: Path):
    s = StateStore(tmp_path / "state" / "state.db")
    yield s
    s.close()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "state" / "state.db",
        log_file=tmp_path / "logs" / "actions.log",
        trash_dir=tmp_path / "trash",
        archive_dir=tmp_path / "archive",
        hash_workers=2,
    )


@pytest.fixture
def engine(settings: Settings):
    eng = Engine(settings)
    yield eng
    eng.close()


@pytest.fixture
def root(tmp_path: Path) -> Path:
    r = tmp_path / "root"
    r.mkdir()
    return r


@pytest.fixture
def make_file() -> Callable[..., Path]:
    def _make(path: Path, data: bytes = b"x", mtime: dt.datetime | None = None, size: int | None = None) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        if size is not None:
            # sparse: cheap even for large sizes
            with open(path, "wb") as f:
                f.truncate(size)
        else:
            path.write_bytes(data)
        if mtime is not None:
            ts = to_epoch(mtime)
            os.utime(path, (ts, ts))
        return path

    return _make


@pytest.fixture
def record() -> Callable[..., FileRecord]:
    def _record(
        path: str | Path,
        size: int = 1,
        created: dt.datetime = NOW,
        modified: dt.datetime | None = None,
    ) -> FileRecord:
        path = os.path.normcase(os.path.abspath(str(path)))
        return FileRecord(
            path=path,
            size_bytes=size,
            created_at=created,
            modified_at=modified or created,
            extension=os.path.splitext(path)[1].lower(),
        )

    return _record
