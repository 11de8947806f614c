"""Staged duplicate detection: size -> partial hash -> full hash."""

from __future__ import annotations

import concurrent.futures
import dataclasses
import hashlib
import logging
import threading
from typing import Any, Callable, Hashable, Iterable, Iterator

from bloatscan.scan_config import (
    APP_NAME,
    DEFAULT_WORKERS,
    FULL_HASH_BUFFER,
    PARTIAL_HASH_BYTES,
    human_bytes,
)
from bloatscan.scan_errors import ConcurrencyError
from bloatscan.scan_progress import CancellationToken, ProgressCallback, ProgressThrottle
from bloatscan.tree_walker import FileNode

# ------------------------------ Data Models --------------------------------- #


@dataclasses.dataclass(slots=True, frozen=True)
class DuplicateGroup:
    content_fingerprint: str
    size_bytes: int
    member_paths: tuple[str, ...]

    @property
    def wasted_bytes(self) -> int:
        return self.size_bytes * (len(self.member_paths) - 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "content_fingerprint": self.content_fingerprint,
            "size_bytes": self.size_bytes,
            "size_human": human_bytes(self.size_bytes),
            "member_paths": list(self.member_paths),
            "wasted_bytes": self.wasted_bytes,
        }


@dataclasses.dataclass(slots=True)
class DuplicateReport:
    groups: list[DuplicateGroup]
    errors: list[dict[str, str]]
    phase_stats: dict[str, int]

    @property
    def wasted_bytes(self) -> int:
        return sum(g.wasted_bytes for g in self.groups)

    def summary(self, top_n: int = 50) -> dict[str, Any]:
        return {
            "group_count": len(self.groups),
            "duplicate_files": sum(len(g.member_paths) for g in self.groups),
            "wasted_bytes": self.wasted_bytes,
            "wasted_human": human_bytes(self.wasted_bytes),
            "phase_stats": dict(self.phase_stats),
            "groups": [g.to_dict() for g in self.groups[:top_n]],
        }


# -------------------------------- Hashing ----------------------------------- #


def hash_prefix(path: str, bytes_to_read: int = PARTIAL_HASH_BYTES) -> tuple[str, str | None, str | None]:
    try:
        h = hashlib.sha256()
        with open(path, "rb") as f:
            h.update(f.read(bytes_to_read))
        return path, h.hexdigest(), None
    except OSError as exc:
        return path, None, str(exc)


def hash_full(path: str, buffer_size: int = FULL_HASH_BUFFER) -> tuple[str, str | None, str | None]:
    try:
        h = hashlib.sha256()
        with open(path, "rb") as f:
            while True:
                chunk = f.read(buffer_size)
                if not chunk:
                    break
                h.update(chunk)
        return path, h.hexdigest(), None
    except OSError as exc:
        return path, None, str(exc)


# ----------------------------- Sharded Index -------------------------------- #


class ShardedIndex:
    """Key -> member paths, split across independently locked shards.

    Hash workers insert concurrently; each insert only holds the lock of the
    shard owning its key. A lock that cannot be taken within ``lock_timeout``
    or a failed update raises ConcurrencyError.
    """

    def __init__(self, shard_count: int = 16, lock_timeout: float = 30.0):
        self.shard_count = shard_count
        self.lock_timeout = lock_timeout
        self._locks = [threading.Lock() for _ in range(shard_count)]
        self._shards: list[dict[Hashable, list[str]]] = [{} for _ in range(shard_count)]

    def shard_of(self, key: Hashable) -> int:
        return hash(key) % self.shard_count

    def add(self, key: Hashable, path: str) -> None:
        try:
            idx = self.shard_of(key)
        except TypeError as exc:
            raise ConcurrencyError(f"Unindexable duplicate key {key!r}", path) from exc
        lock = self._locks[idx]
        if not lock.acquire(timeout=self.lock_timeout):
            raise ConcurrencyError(f"Timed out acquiring duplicate index shard {idx}", path)
        try:
            self._shards[idx].setdefault(key, []).append(path)
        except MemoryError as exc:
            raise ConcurrencyError(f"Duplicate index shard {idx} update failed: {exc}", path) from exc
        finally:
            lock.release()

    def groups(self, min_members: int = 2) -> Iterator[tuple[Hashable, list[str]]]:
        for idx, shard in enumerate(self._shards):
            lock = self._locks[idx]
            if not lock.acquire(timeout=self.lock_timeout):
                raise ConcurrencyError(f"Timed out acquiring duplicate index shard {idx}")
            try:
                items = [(k, list(v)) for k, v in shard.items() if len(v) >= min_members]
            finally:
                lock.release()
            yield from items

    def __len__(self) -> int:
        return sum(len(s) for s in self._shards)


# -------------------------------- Detector ---------------------------------- #


class DuplicateDetector:
    """Groups regular files into duplicate clusters without hashing every byte."""

    def __init__(
        self,
        workers: int = DEFAULT_WORKERS,
        partial_bytes: int = PARTIAL_HASH_BYTES,
        progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
        logger: logging.Logger | None = None,
        shard_count: int = 16,
    ):
        self.workers = max(1, workers)
        self.partial_bytes = partial_bytes
        self.progress = progress
        self.cancel = cancel
        self.logger = logger or logging.getLogger(APP_NAME)
        self.shard_count = shard_count

    def find(self, nodes: Iterable[FileNode]) -> DuplicateReport:
        errors: list[dict[str, str]] = []
        sizes: dict[str, int] = {}

        # Phase 1: exact size
        size_index = ShardedIndex(self.shard_count)
        for node in nodes:
            # fifos and device nodes would block on open
            if node.is_directory or node.is_symlink or not node.is_regular:
                continue
            sizes[node.path] = node.size_bytes
            size_index.add(node.size_bytes, node.path)
        size_groups = [paths for _, paths in size_index.groups()]
        self._check_cancel()

        # Phase 2: partial hash over the prefix
        partial_index = ShardedIndex(self.shard_count)
        candidates = [p for group in size_groups for p in group]
        self._hash_stage(
            candidates,
            lambda p: hash_prefix(p, self.partial_bytes),
            partial_index,
            sizes,
            errors,
            "partial_hash",
        )
        partial_groups = list(partial_index.groups())
        self._check_cancel()

        # Phase 3: full hash for partial collisions; short files are already fully hashed
        full_index = ShardedIndex(self.shard_count)
        needs_full: list[str] = []
        for (size, digest), paths in partial_groups:
            if size <= self.partial_bytes:
                for p in paths:
                    full_index.add((size, digest), p)
            else:
                needs_full.extend(paths)
        self._hash_stage(needs_full, hash_full, full_index, sizes, errors, "full_hash")
        self._check_cancel()

        groups = [
            DuplicateGroup(content_fingerprint=digest, size_bytes=size, member_paths=tuple(sorted(paths)))
            for (size, digest), paths in full_index.groups()
        ]
        groups.sort(key=lambda g: (-g.wasted_bytes, -g.size_bytes, g.content_fingerprint))

        report = DuplicateReport(
            groups=groups,
            errors=errors,
            phase_stats={
                "size_groups": len(size_groups),
                "partial_groups": len(partial_groups),
                "full_groups": len(groups),
                "hashed_partial": len(candidates),
                "hashed_full": len(needs_full),
            },
        )
        self.logger.info(
            "duplicates_complete groups=%s wasted=%s errors=%s", len(groups), report.wasted_bytes, len(errors)
        )
        return report

    def _hash_stage(
        self,
        paths: list[str],
        fn: Callable[[str], tuple[str, str | None, str | None]],
        index: ShardedIndex,
        sizes: dict[str, int],
        errors: list[dict[str, str]],
        phase: str,
    ) -> None:
        if not paths:
            return
        throttle = ProgressThrottle(self.progress, phase)
        errors_lock = threading.Lock()
        first_error = len(errors)

        def work(path: str) -> None:
            if self.cancel is not None and self.cancel.cancelled:
                return
            _, digest, err = fn(path)
            if err or not digest:
                with errors_lock:
                    errors.append({"path": path, "error": err or f"{phase} failed"})
                return
            index.add((sizes[path], digest), path)

        with concurrent.futures.ThreadPoolExecutor(max_workers=self.workers) as pool:
            futures = {pool.submit(work, p): p for p in paths}
            try:
                for fut in concurrent.futures.as_completed(futures):
                    # re-raises ConcurrencyError from a worker and aborts the scan
                    fut.result()
                    throttle.tick(futures[fut])
            except BaseException:
                for f in futures:
                    f.cancel()
                raise
        for err in errors[first_error:]:
            self.logger.warning("hash_failed phase=%s path=%s err=%s", phase, err["path"], err["error"])
        throttle.finish()

    def _check_cancel(self) -> None:
        if self.cancel is not None:
            self.cancel.raise_if_cancelled("duplicate scan")
