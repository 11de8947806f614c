"""Constants, small utilities, logging setup and engine settings."""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
import os
import tempfile
from pathlib import Path
from typing import Mapping

from bloatscan.scan_errors import InvalidConfigError

# ------------------------------- Constants ---------------------------------- #

APP_NAME = "bloatscan"
DATA_DIR = Path.home() / ".local" / "share" / APP_NAME
DEFAULT_DB = DATA_DIR / "bloatscan.db"
DEFAULT_TRASH_DIR = DATA_DIR / "trash"
DEFAULT_LOG_FILE = DATA_DIR / "actions.log"

FULL_HASH_BUFFER = 1024 * 1024
PARTIAL_HASH_BYTES = 64 * 1024
PROGRESS_EVERY = 500
PROGRESS_INTERVAL_SEC = 0.5
MAX_BATCH_DELETE_COUNT = 10_000
DEFAULT_WORKERS = max(1, min(8, os.cpu_count() or 2))
DEFAULT_BLOAT_THRESHOLD = 100 * 1024 * 1024
# Terminal server jobs kept in memory before the oldest are evicted.
DEFAULT_MAX_FINISHED_JOBS = 200

CRITICAL_DELETE_PATHS = {
    "/",
    "/bin",
    "/boot",
    "/dev",
    "/etc",
    "/home",
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

PROTECTED_SCAN_PREFIXES = {
    "/proc",
    "/sys",
    "/dev",
    "/run",
    "/boot",
    "/bin",
    "/sbin",
    "/usr",
    "/etc",
    "/lib",
    "/lib64",
    "/System",
}


# ------------------------------- Utilities ---------------------------------- #


def now_utc_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat()


def now_utc_precise() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def human_bytes(size: int) -> str:
    val = float(max(size, 0))
    for unit in ["B", "KB", "MB", "GB", "TB", "PB"]:
        if val < 1024.0 or unit == "PB":
            if unit == "B":
                return f"{int(val)} {unit}"
            return f"{val:.2f} {unit}"
        val /= 1024.0
    return f"{size} B"


def parse_size_to_bytes(value: str | int) -> int:
    if isinstance(value, int):
        return value
    text = value.strip().lower().replace(" ", "")
    units: list[tuple[str, int]] = [
        ("tb", 1024**4),
        ("gb", 1024**3),
        ("mb", 1024**2),
        ("kb", 1024),
        ("b", 1),
    ]
    try:
        for u, factor in units:
            if text.endswith(u):
                number = float(text[: -len(u)] or "0")
                return int(number * factor)
        return int(float(text))
    except ValueError as exc:
        raise InvalidConfigError(f"Invalid size value {value!r}") from exc


def normalize_path(path: str) -> str:
    """Absolute, normalized path without resolving symlinks."""
    return os.path.normpath(os.path.abspath(os.path.expanduser(path)))


def is_subpath(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


def setup_logger(log_file: Path, stream: bool = False) -> logging.Logger:
    logger = logging.getLogger(APP_NAME)
    if logger.handlers:
        return logger

    chosen = log_file
    try:
        ensure_parent(log_file)
    except OSError:
        chosen = Path(tempfile.gettempdir()) / APP_NAME / "actions.log"
        ensure_parent(chosen)

    logger.setLevel(logging.INFO)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    fh = logging.FileHandler(chosen, encoding="utf-8")
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    if stream:
        sh = logging.StreamHandler()
        sh.setFormatter(fmt)
        logger.addHandler(sh)
    return logger


# ------------------------------- Settings ----------------------------------- #


@dataclasses.dataclass(slots=True)
class EngineSettings:
    db_path: Path = DEFAULT_DB
    log_file: Path = DEFAULT_LOG_FILE
    trash_dir: Path = DEFAULT_TRASH_DIR
    workers: int = DEFAULT_WORKERS
    bloat_threshold_bytes: int = DEFAULT_BLOAT_THRESHOLD
    # None keeps every snapshot; otherwise only the newest N per project survive a scan.
    retain_snapshots: int | None = None
    max_finished_jobs: int = DEFAULT_MAX_FINISHED_JOBS

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EngineSettings":
        env = os.environ if environ is None else environ
        retain = env.get("BLOATSCAN_RETAIN_SNAPSHOTS", "").strip()
        try:
            settings = cls(
                db_path=Path(env.get("BLOATSCAN_DB", str(DEFAULT_DB))),
                log_file=Path(env.get("BLOATSCAN_LOG", str(DEFAULT_LOG_FILE))),
                trash_dir=Path(env.get("BLOATSCAN_TRASH_DIR", str(DEFAULT_TRASH_DIR))),
                workers=int(env.get("BLOATSCAN_WORKERS", str(DEFAULT_WORKERS))),
                bloat_threshold_bytes=parse_size_to_bytes(
                    env.get("BLOATSCAN_BLOAT_THRESHOLD", str(DEFAULT_BLOAT_THRESHOLD))
                ),
                retain_snapshots=int(retain) if retain else None,
                max_finished_jobs=int(env.get("BLOATSCAN_MAX_FINISHED_JOBS", str(DEFAULT_MAX_FINISHED_JOBS))),
            )
        except ValueError as exc:
            raise InvalidConfigError(f"Invalid environment configuration: {exc}") from exc
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.workers < 1:
            raise InvalidConfigError(f"workers must be >= 1, got {self.workers}")
        if self.bloat_threshold_bytes < 0:
            raise InvalidConfigError("bloat threshold must be non-negative")
        if self.retain_snapshots is not None and self.retain_snapshots < 1:
            raise InvalidConfigError(f"retain_snapshots must be >= 1, got {self.retain_snapshots}")
        if self.max_finished_jobs < 1:
            raise InvalidConfigError(f"max_finished_jobs must be >= 1, got {self.max_finished_jobs}")
