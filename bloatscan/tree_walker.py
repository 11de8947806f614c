"""Iterative filesystem walker.

Produces a lazy stream of ``FileNode`` values for every reachable entry under a
root. Directory listings can be fanned out to a bounded thread pool while a
single coordinating generator owns the worklist and the visited-identity set,
so cycle detection needs no locking.
"""

from __future__ import annotations

import concurrent.futures
import dataclasses
import errno
import logging
import os
import stat as stat_mod
from typing import Any, Iterator

from bloatscan.scan_config import (
    APP_NAME,
    CRITICAL_DELETE_PATHS,
    DEFAULT_WORKERS,
    PROGRESS_EVERY,
    PROGRESS_INTERVAL_SEC,
    PROTECTED_SCAN_PREFIXES,
    is_subpath,
    normalize_path,
)
from bloatscan.scan_errors import InvalidConfigError, InvalidPathError, from_os_error
from bloatscan.scan_progress import CancellationToken, ProgressCallback, ProgressThrottle

# ------------------------------ Data Models --------------------------------- #


@dataclasses.dataclass(slots=True, frozen=True)
class FileNode:
    path: str
    size_bytes: int
    modified_at: float
    is_directory: bool
    is_symlink: bool
    # False for directories, fifos, sockets and device nodes
    is_regular: bool = True


@dataclasses.dataclass(slots=True)
class WalkConfig:
    min_size_bytes: int = 0
    follow_symlinks: bool = False
    workers: int = DEFAULT_WORKERS
    progress_every: int = PROGRESS_EVERY
    progress_interval_sec: float = PROGRESS_INTERVAL_SEC

    def validate(self) -> None:
        if self.min_size_bytes < 0:
            raise InvalidConfigError(f"min_size_bytes must be non-negative, got {self.min_size_bytes}")
        if self.workers < 1:
            raise InvalidConfigError(f"workers must be >= 1, got {self.workers}")
        if self.progress_every < 1:
            raise InvalidConfigError("progress_every must be >= 1")


@dataclasses.dataclass(slots=True)
class WalkError:
    path: str
    kind: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "kind": self.kind, "error": self.message}


@dataclasses.dataclass(slots=True)
class _RawEntry:
    path: str
    size: int
    mtime: float
    is_dir: bool
    is_symlink: bool
    is_regular: bool
    identity: tuple[int, int]


@dataclasses.dataclass(slots=True)
class _Listing:
    path: str
    entries: list[_RawEntry]
    errors: list[WalkError]


# ------------------------------ Validation ---------------------------------- #


def validate_scan_root(root: str) -> str:
    """Reject missing roots and system directories that must never be scanned."""
    path = normalize_path(root)
    if path in CRITICAL_DELETE_PATHS:
        raise InvalidPathError("Restricted root is not allowed for scanning", path)
    if any(is_subpath(path, p) for p in PROTECTED_SCAN_PREFIXES):
        raise InvalidPathError("Restricted system root is not allowed for scanning", path)
    if not os.path.isdir(path):
        raise InvalidPathError("Root is not an existing directory", path)
    return path


def _error_for(exc: OSError, path: str) -> WalkError:
    err = from_os_error(exc, path)
    return WalkError(path=path, kind=err.code, message=err.message)


def _list_directory(path: str, follow_symlinks: bool) -> _Listing:
    entries: list[_RawEntry] = []
    errors: list[WalkError] = []
    try:
        with os.scandir(path) as it:
            dir_entries = sorted(it, key=lambda e: e.name)
    except OSError as exc:
        return _Listing(path, entries, [_error_for(exc, path)])

    for entry in dir_entries:
        try:
            is_link = entry.is_symlink()
            st = entry.stat(follow_symlinks=False)
            if is_link and follow_symlinks:
                try:
                    st = entry.stat(follow_symlinks=True)
                except OSError as exc:
                    # dangling and cyclic links stay leaves
                    if exc.errno not in (errno.ENOENT, errno.ELOOP):
                        raise
        except OSError as exc:
            errors.append(_error_for(exc, entry.path))
            continue
        entries.append(
            _RawEntry(
                path=entry.path,
                size=int(st.st_size),
                mtime=float(st.st_mtime),
                is_dir=stat_mod.S_ISDIR(st.st_mode),
                is_symlink=is_link,
                is_regular=stat_mod.S_ISREG(st.st_mode),
                identity=(st.st_dev, st.st_ino),
            )
        )
    return _Listing(path, entries, errors)


# -------------------------------- Walker ------------------------------------ #


class TreeWalker:
    """Walks a root directory with an explicit worklist, never recursion."""

    def __init__(
        self,
        root: str,
        config: WalkConfig | None = None,
        progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
        logger: logging.Logger | None = None,
    ):
        self.root = normalize_path(root)
        self.config = config or WalkConfig()
        self.progress = progress
        self.cancel = cancel
        self.logger = logger or logging.getLogger(APP_NAME)
        self.errors: list[WalkError] = []
        self.entries_processed = 0

    def walk(self) -> Iterator[FileNode]:
        """Validate the root, then return a fresh lazy stream of nodes.

        The root directory is always the first node. Directories report
        ``size_bytes == 0``; their size only exists as a rollup. The
        ``min_size_bytes`` filter applies to non-directory leaves only.
        """
        self.config.validate()
        if not os.path.lexists(self.root):
            raise InvalidPathError("Root does not exist", self.root)
        if not os.path.isdir(self.root):
            raise InvalidPathError("Root is not a directory", self.root)
        try:
            root_stat = os.stat(self.root)
        except OSError as exc:
            raise from_os_error(exc, self.root) from exc
        self.errors = []
        self.entries_processed = 0
        return self._walk(root_stat)

    def _walk(self, root_stat: os.stat_result) -> Iterator[FileNode]:
        cfg = self.config
        throttle = ProgressThrottle(self.progress, "walking", cfg.progress_every, cfg.progress_interval_sec)
        visited: set[tuple[int, int]] = {(root_stat.st_dev, root_stat.st_ino)}
        stack = [self.root]

        yield FileNode(self.root, 0, float(root_stat.st_mtime), True, os.path.islink(self.root), False)

        for listing in self._listings(stack):
            self.errors.extend(listing.errors)
            for err in listing.errors:
                self.logger.warning("walk_error path=%s kind=%s err=%s", err.path, err.kind, err.message)
            for raw in listing.entries:
                self._check_cancel()
                throttle.tick(raw.path)
                self.entries_processed = throttle.count
                if raw.is_dir:
                    if raw.identity in visited:
                        self.logger.debug("walk_skip_visited path=%s", raw.path)
                        continue
                    visited.add(raw.identity)
                    stack.append(raw.path)
                    yield FileNode(raw.path, 0, raw.mtime, True, raw.is_symlink, False)
                    continue
                if raw.size < cfg.min_size_bytes:
                    continue
                yield FileNode(raw.path, raw.size, raw.mtime, False, raw.is_symlink, raw.is_regular)

        throttle.finish(self.root)

    def _listings(self, stack: list[str]) -> Iterator[_Listing]:
        # The consumer pushes child directories onto ``stack`` between yields.
        follow = self.config.follow_symlinks
        if self.config.workers <= 1:
            while stack:
                self._check_cancel()
                yield _list_directory(stack.pop(), follow)
            return

        max_in_flight = self.config.workers * 2
        pending: set[concurrent.futures.Future[_Listing]] = set()
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.config.workers) as pool:
            try:
                while stack or pending:
                    self._check_cancel()
                    while stack and len(pending) < max_in_flight:
                        pending.add(pool.submit(_list_directory, stack.pop(), follow))
                    done, pending = concurrent.futures.wait(
                        pending, return_when=concurrent.futures.FIRST_COMPLETED
                    )
                    for fut in sorted(done, key=lambda f: f.result().path):
                        yield fut.result()
            finally:
                for fut in pending:
                    fut.cancel()

    def _check_cancel(self) -> None:
        if self.cancel is not None:
            self.cancel.raise_if_cancelled("walk")
