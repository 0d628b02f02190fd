"""Metadata-only directory walker."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, Iterator

from .config import CLOUD_FOLDERS, DEFAULT_SKIP_PREFIXES
from .errors import AccessDenied, RootNotFound
from .models import FLAG_CLOUD, FLAG_SOFT_PROTECTED, FileRecord, from_epoch

logger = logging.getLogger(__name__)


def resolve_dir(path: str | Path) -> str:
    """Canonical form of a directory: every symlink along it is resolved."""
    return os.path.normcase(os.path.realpath(os.path.expanduser(str(path))))


def normalize_path(path: str | Path) -> str:
    """Canonical form of a file path. The parent is resolved, the final name is kept.

    Keeping the last component means a symlinked file is named as itself and
    never as its target.
    """
    absolute = os.path.abspath(os.path.expanduser(str(path)))
    parent, name = os.path.split(absolute)
    if not name:
        return os.path.normcase(absolute)
    return os.path.normcase(os.path.join(os.path.realpath(parent), name))


def is_under(path: str, base: str) -> bool:
    return path == base or path.startswith(base.rstrip(os.sep) + os.sep)


def is_cloud_path(path: str) -> bool:
    for part in path.lower().split(os.sep):
        for name in CLOUD_FOLDERS:
            if part == name or (part.startswith(name) and not part[len(name)].isalnum()):
                return True
    return False


class MetadataScanner:
    """Iterative os.scandir walk that yields FileRecords without reading content.

    Symlinks are never followed or yielded. Entries that cannot be listed or
    stat'ed are collected in ``errors`` as AccessDenied and skipped. Hard
    protected folders are never entered; soft protected ones are scanned and
    their files flagged so that acting on them needs confirmation.
    """

    def __init__(
        self,
        protected_paths: Iterable[str | Path] = (),
        max_depth: int | None = None,
        include_system_prefixes: bool = False,
        soft_protected_paths: Iterable[str | Path] = (),
    ):
        protected = {resolve_dir(p) for p in protected_paths}
        if not include_system_prefixes:
            protected |= {os.path.normcase(p) for p in DEFAULT_SKIP_PREFIXES}
        self.protected = sorted(protected)
        self.soft_protected = sorted({resolve_dir(p) for p in soft_protected_paths})
        self.max_depth = max_depth
        self.errors: list[AccessDenied] = []

    def is_protected(self, path: str) -> bool:
        return any(is_under(path, base) for base in self.protected)

    def flags_for(self, path: str) -> frozenset[str]:
        flags = set()
        if any(is_under(path, base) for base in self.soft_protected):
            flags.add(FLAG_SOFT_PROTECTED)
        if is_cloud_path(path):
            flags.add(FLAG_CLOUD)
        return frozenset(flags)

    def scan(self, root: str | Path) -> Iterator[FileRecord]:
        """Validate root eagerly and return a lazy walk over its resolved location."""
        root_s = resolve_dir(root)
        if not os.path.isdir(root_s):
            raise RootNotFound(str(root))
        self.errors = []
        return self._walk(root_s)

    def _walk(self, root: str) -> Iterator[FileRecord]:
        if self.is_protected(root):
            logger.info("scan_root_protected root=%s", root)
            return

        stack: list[tuple[str, int]] = [(root, 0)]
        while stack:
            current, depth = stack.pop()
            try:
                with os.scandir(current) as it:
                    entries = sorted(it, key=lambda e: e.name)
            except OSError as exc:
                self._deny(current, exc)
                continue

            subdirs: list[str] = []
            for entry in entries:
                full_path = os.path.normcase(entry.path)
                if self.is_protected(full_path):
                    continue

                try:
                    if entry.is_symlink():
                        continue
                    if entry.is_dir(follow_symlinks=False):
                        subdirs.append(full_path)
                        continue
                    if not entry.is_file(follow_symlinks=False):
                        continue
                    st = entry.stat(follow_symlinks=False)
                except OSError as exc:
                    self._deny(full_path, exc)
                    continue

                created = getattr(st, "st_birthtime", None) or st.st_ctime
                yield FileRecord(
                    path=full_path,
                    size_bytes=int(st.st_size),
                    created_at=from_epoch(float(created)),
                    modified_at=from_epoch(float(st.st_mtime)),
                    extension=Path(entry.name).suffix.lower(),
                    flags=self.flags_for(full_path),
                )

            if self.max_depth is None or depth < self.max_depth:
                # reversed so the stack pops directories in name order
                stack.extend((d, depth + 1) for d in reversed(subdirs))

    def _deny(self, path: str, exc: OSError) -> None:
        err = AccessDenied(path, exc.strerror or str(exc))
        self.errors.append(err)
        logger.warning("scan_access_denied path=%s err=%s", path, err.reason)
