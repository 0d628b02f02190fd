"""Content fingerprinting and duplicate grouping."""

from __future__ import annotations

import concurrent.futures
import logging
import os
from collections import defaultdict
from typing import BinaryIO, Callable, Iterator, Sequence

import xxhash

from .errors import ReadError
from .models import FileRecord, FingerprintGroup, to_epoch

logger = logging.getLogger(__name__)

HASH_BUFFER = 1024 * 1024

CacheLookup = Callable[[str, int, float], "str | None"]


def fingerprint_stream(stream: BinaryIO, buffer_size: int = HASH_BUFFER) -> str:
    """Digest of a raw byte stream. Only bytes cross this boundary, never a parsed document."""
    h = xxhash.xxh3_128()
    while True:
        chunk = stream.read(buffer_size)
        if not chunk:
            break
        h.update(chunk)
    return h.hexdigest()


def fingerprint_file(path: str) -> str:
    try:
        with open(path, "rb") as f:
            return fingerprint_stream(f)
    except OSError as exc:
        raise ReadError(path, exc.strerror or str(exc)) from exc


def _hash_job(path: str) -> tuple[str, str | None, ReadError | None]:
    try:
        return path, fingerprint_file(path), None
    except ReadError as exc:
        return path, None, exc


class DuplicateDetector:
    """Size pre-filter, then full-content fingerprint on a thread pool, with a persisted cache."""

    def __init__(self, cache_lookup: CacheLookup | None = None, workers: int | None = None):
        self.cache_lookup = cache_lookup
        self.workers = workers or max(1, min(8, (os.cpu_count() or 2) - 1))
        self.errors: list[ReadError] = []
        self.fingerprints: dict[str, str] = {}
        # (path, size, mtime, fingerprint) rows hashed in this run, for the cache.
        self.new_entries: list[tuple[str, int, float, str]] = []

    def _hash_map(self, paths: list[str]) -> Iterator[tuple[str, str | None, ReadError | None]]:
        if len(paths) <= 1 or self.workers == 1:
            yield from map(_hash_job, paths)
            return
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.workers) as ex:
            yield from ex.map(_hash_job, paths)

    def find_groups(self, records: Sequence[FileRecord]) -> list[FingerprintGroup]:
        self.errors = []
        self.fingerprints = {}
        self.new_entries = []

        by_size: dict[int, list[FileRecord]] = defaultdict(list)
        for rec in records:
            if rec.size_bytes <= 0:
                continue
            by_size[rec.size_bytes].append(rec)
        candidates = [rec for group in by_size.values() if len(group) > 1 for rec in group]

        to_hash: list[FileRecord] = []
        for rec in candidates:
            cached = None
            if self.cache_lookup is not None:
                cached = self.cache_lookup(rec.path, rec.size_bytes, to_epoch(rec.modified_at))
            if cached:
                self.fingerprints[rec.path] = cached
            else:
                to_hash.append(rec)

        meta = {rec.path: rec for rec in to_hash}
        for path, digest, err in self._hash_map([rec.path for rec in to_hash]):
            if err is not None or digest is None:
                self.errors.append(err or ReadError(path, "fingerprint failed"))
                logger.warning("fingerprint_failed path=%s err=%s", path, err)
                continue
            rec = meta[path]
            self.fingerprints[path] = digest
            self.new_entries.append((path, rec.size_bytes, to_epoch(rec.modified_at), digest))

        by_fp: dict[str, list[FileRecord]] = defaultdict(list)
        for rec in candidates:
            fp = self.fingerprints.get(rec.path)
            if fp:
                by_fp[fp].append(rec)

        groups = [
            FingerprintGroup(
                fingerprint=fp,
                members=sorted(members, key=lambda r: (r.created_at, r.path)),
            )
            for fp, members in by_fp.items()
            if len(members) > 1
        ]
        groups.sort(key=lambda g: (-g.potential_waste, g.original.path))
        logger.info(
            "duplicates_found groups=%s candidates=%s hashed=%s cached=%s errors=%s",
            len(groups),
            len(candidates),
            len(self.new_entries),
            len(candidates) - len(to_hash),
            len(self.errors),
        )
        return groups
