#!/usr/bin/env python3
"""Disk bloat scanner engine (Linux).

Command surface and CLI over the scanning core:
- Iterative tree walk with bounded worker pool and symlink cycle protection
- Bottom-up directory rollups with bloat and artifact flagging
- Duplicate detection (size -> partial hash -> full hash)
- Append-only SQLite snapshot history with diffs and growth alerts
- Cleanup with dry-run default, recoverable trash and restore
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import re
import shutil
import sys
from pathlib import Path
from typing import Any, Callable, Iterable

from bloatscan.alert_engine import Alert, AlertThresholds, evaluate, evaluate_window
from bloatscan.bloat_classifier import BloatClassifier, ClassificationResult, FlaggedNode
from bloatscan.cleanup_executor import CleanupExecutor, TrashBin
from bloatscan.duplicate_detector import DuplicateDetector, DuplicateGroup, DuplicateReport
from bloatscan.scan_config import (
    APP_NAME,
    DEFAULT_DB,
    DEFAULT_LOG_FILE,
    DEFAULT_TRASH_DIR,
    DEFAULT_WORKERS,
    EngineSettings,
    ensure_parent,
    human_bytes,
    now_utc_iso,
    parse_size_to_bytes,
    setup_logger,
)
from bloatscan.scan_errors import InvalidConfigError, NotFoundError, PersistenceError, ScannerError
from bloatscan.scan_progress import CancellationToken, ProgressCallback
from bloatscan.snapshot_diff import ChangeDelta, diff
from bloatscan.snapshot_store import FileStamp, Project, ScanResult, Snapshot, SnapshotStore
from bloatscan.tree_walker import FileNode, TreeWalker, WalkConfig, WalkError, validate_scan_root

PSEUDO_FILESYSTEMS = {
    "autofs", "binfmt_misc", "bpf", "cgroup", "cgroup2", "configfs", "debugfs", "devpts", "devtmpfs",
    "efivarfs", "fusectl", "hugetlbfs", "mqueue", "nsfs", "proc", "pstore", "securityfs", "squashfs",
    "sysfs", "tracefs", "ramfs",
}

# ------------------------------ Data Models --------------------------------- #


@dataclasses.dataclass(slots=True)
class MountSummary:
    mount_point: str
    total_bytes: int
    used_bytes: int
    free_bytes: int
    device: str = ""
    fstype: str = ""

    def to_dict(self) -> dict[str, Any]:
        out = dataclasses.asdict(self)
        out["used_pct"] = round(self.used_bytes / self.total_bytes * 100.0, 2) if self.total_bytes else 0.0
        return out


@dataclasses.dataclass(slots=True)
class ProjectScanReport:
    project: Project
    snapshot: Snapshot
    previous_snapshot_id: int | None
    delta: ChangeDelta | None
    alerts: list[Alert]
    flagged: list[FlaggedNode]
    duplicates: DuplicateReport
    errors: list[WalkError]
    pruned_snapshot_ids: list[int] = dataclasses.field(default_factory=list)

    def to_dict(self, top_n: int = 50) -> dict[str, Any]:
        return {
            "project": self.project.to_dict(),
            "snapshot": self.snapshot.to_dict(),
            "previous_snapshot_id": self.previous_snapshot_id,
            "delta": self.delta.to_dict(path_limit=top_n) if self.delta else None,
            "alerts": [a.to_dict() for a in self.alerts],
            "flagged": [f.to_dict() for f in self.flagged[:top_n]],
            "duplicates": self.duplicates.summary(top_n),
            "errors_count": len(self.errors),
            "errors_sample": [e.to_dict() for e in self.errors[:50]],
            "pruned_snapshot_ids": self.pruned_snapshot_ids,
        }


# ---------------------------- Command Surface ------------------------------- #


def _unescape_mount(field: str) -> str:
    return re.sub(r"\\([0-7]{3})", lambda m: chr(int(m.group(1), 8)), field)


def get_disk_info(mounts_file: str = "/proc/mounts") -> list[MountSummary]:
    """Usage of each real mounted filesystem, one entry per device."""
    candidates: list[tuple[str, str, str]] = []
    try:
        with open(mounts_file, encoding="utf-8") as f:
            for line in f:
                parts = line.split()
                if len(parts) < 3 or parts[2] in PSEUDO_FILESYSTEMS:
                    continue
                candidates.append((parts[0], _unescape_mount(parts[1]), parts[2]))
    except OSError:
        candidates = []

    out: list[MountSummary] = []
    seen_devices: set[str] = set()
    for device, mount_point, fstype in candidates:
        if device in seen_devices:
            continue
        try:
            usage = shutil.disk_usage(mount_point)
        except OSError:
            continue
        if usage.total == 0:
            continue
        seen_devices.add(device)
        out.append(MountSummary(mount_point, usage.total, usage.used, usage.free, device, fstype))

    if not out:
        usage = shutil.disk_usage(os.sep)
        out.append(MountSummary(os.sep, usage.total, usage.used, usage.free))
    return sorted(out, key=lambda m: m.mount_point)


def collect_nodes(
    root: str,
    follow_symlinks: bool = False,
    *,
    min_size_bytes: int = 0,
    workers: int = DEFAULT_WORKERS,
    progress: ProgressCallback | None = None,
    cancel: CancellationToken | None = None,
    logger: logging.Logger | None = None,
) -> tuple[str, list[FileNode], list[WalkError]]:
    walker = TreeWalker(
        root,
        WalkConfig(min_size_bytes=min_size_bytes, follow_symlinks=follow_symlinks, workers=workers),
        progress=progress,
        cancel=cancel,
        logger=logger,
    )
    nodes = list(walker.walk())
    return walker.root, nodes, walker.errors


def run_bloat_scan(
    root: str,
    min_bytes: int,
    follow_symlinks: bool = False,
    *,
    workers: int = DEFAULT_WORKERS,
    progress: ProgressCallback | None = None,
    cancel: CancellationToken | None = None,
    logger: logging.Logger | None = None,
) -> tuple[ClassificationResult, list[WalkError]]:
    classifier = BloatClassifier(min_bytes)
    validate_scan_root(root)
    # The size threshold belongs to the classifier; the walk stays unfiltered so rollups are complete.
    walked_root, nodes, errors = collect_nodes(
        root, follow_symlinks, workers=workers, progress=progress, cancel=cancel, logger=logger
    )
    return classifier.fold(walked_root, nodes), errors


def scan_bloat(
    root: str,
    min_bytes: int,
    follow_symlinks: bool = False,
    *,
    workers: int = DEFAULT_WORKERS,
    progress: ProgressCallback | None = None,
    cancel: CancellationToken | None = None,
    logger: logging.Logger | None = None,
) -> list[FlaggedNode]:
    """Flagged nodes ordered by size (largest first), then path."""
    result, _ = run_bloat_scan(
        root, min_bytes, follow_symlinks, workers=workers, progress=progress, cancel=cancel, logger=logger
    )
    return sorted(result.flagged, key=lambda f: (-f.size_bytes, f.path))


def run_duplicate_scan(
    root: str,
    follow_symlinks: bool = False,
    *,
    workers: int = DEFAULT_WORKERS,
    progress: ProgressCallback | None = None,
    cancel: CancellationToken | None = None,
    logger: logging.Logger | None = None,
) -> tuple[DuplicateReport, list[WalkError]]:
    validate_scan_root(root)
    _, nodes, errors = collect_nodes(
        root, follow_symlinks, workers=workers, progress=progress, cancel=cancel, logger=logger
    )
    detector = DuplicateDetector(workers=workers, progress=progress, cancel=cancel, logger=logger)
    return detector.find(nodes), errors


def scan_duplicates(
    root: str,
    follow_symlinks: bool = False,
    *,
    workers: int = DEFAULT_WORKERS,
    progress: ProgressCallback | None = None,
    cancel: CancellationToken | None = None,
    logger: logging.Logger | None = None,
) -> list[DuplicateGroup]:
    report, _ = run_duplicate_scan(
        root, follow_symlinks, workers=workers, progress=progress, cancel=cancel, logger=logger
    )
    return report.groups


def cleanup_dirs(
    paths: Iterable[str],
    dry_run: bool = True,
    trash: bool = True,
    *,
    trash_dir: Path = DEFAULT_TRASH_DIR,
    cancel: CancellationToken | None = None,
    logger: logging.Logger | None = None,
) -> dict[str, Any]:
    """Returns ``{deleted, skipped, errors: [{path, reason}]}`` plus per-path detail."""
    executor = CleanupExecutor(TrashBin(trash_dir, logger), logger)
    return executor.run(paths, dry_run=dry_run, trash=trash, cancel=cancel).to_dict()


# -------------------------------- Engine ------------------------------------ #


class Engine:
    """Explicitly owned context for settings, logger, snapshot store and trash."""

    def __init__(self, settings: EngineSettings | None = None, logger: logging.Logger | None = None):
        self.settings = settings or EngineSettings.from_env()
        self.settings.validate()
        self.logger = logger or setup_logger(self.settings.log_file)
        self.store = SnapshotStore(self.settings.db_path)
        self.trash = TrashBin(self.settings.trash_dir, self.logger)
        self.cleaner = CleanupExecutor(self.trash, self.logger)

    # --- stateless scans ---

    def scan_bloat(
        self,
        root: str,
        min_bytes: int | None = None,
        follow_symlinks: bool = False,
        progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> list[FlaggedNode]:
        threshold = self.settings.bloat_threshold_bytes if min_bytes is None else min_bytes
        return scan_bloat(
            root,
            threshold,
            follow_symlinks,
            workers=self.settings.workers,
            progress=progress,
            cancel=cancel,
            logger=self.logger,
        )

    def scan_duplicates(
        self,
        root: str,
        follow_symlinks: bool = False,
        progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> DuplicateReport:
        report, errors = run_duplicate_scan(
            root, follow_symlinks, workers=self.settings.workers, progress=progress, cancel=cancel, logger=self.logger
        )
        report.errors.extend(e.to_dict() for e in errors)
        return report

    def cleanup_dirs(
        self,
        paths: Iterable[str],
        dry_run: bool = True,
        trash: bool = True,
        cancel: CancellationToken | None = None,
    ) -> dict[str, Any]:
        return self.cleaner.run(paths, dry_run=dry_run, trash=trash, cancel=cancel).to_dict()

    def restore(self, action_id: str) -> dict[str, Any]:
        return self.trash.restore(action_id)

    # --- project history ---

    def scan_project(
        self,
        root: str,
        bloat_threshold: int | None = None,
        follow_symlinks: bool = False,
        thresholds: AlertThresholds | None = None,
        progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> ProjectScanReport:
        """Walk, classify, dedupe, persist, diff against the previous snapshot and alert.

        Nothing is persisted unless every stage completes; a cancelled scan
        raises ScanCancelledError and leaves the history untouched.
        """
        th = thresholds or AlertThresholds()
        th.validate()
        threshold = self.settings.bloat_threshold_bytes if bloat_threshold is None else bloat_threshold
        classifier = BloatClassifier(threshold)
        validate_scan_root(root)

        walked_root, nodes, errors = collect_nodes(
            root,
            follow_symlinks,
            workers=self.settings.workers,
            progress=progress,
            cancel=cancel,
            logger=self.logger,
        )
        classification = classifier.fold(walked_root, nodes)
        duplicates = DuplicateDetector(
            workers=self.settings.workers, progress=progress, cancel=cancel, logger=self.logger
        ).find(nodes)
        if cancel is not None:
            cancel.raise_if_cancelled("project scan")

        entries = {n.path: FileStamp(n.size_bytes, n.modified_at) for n in nodes if not n.is_directory}
        root_summary = classification.root_summary
        result = ScanResult(
            root_path=walked_root,
            total_size_bytes=root_summary.total_size_bytes,
            file_count=root_summary.descendant_file_count,
            entries=entries,
            duplicate_summary=duplicates.summary(),
            bloat_summary=classification.bloat_summary(),
            errors=[e.to_dict() for e in errors],
        )

        project = self.store.ensure_project(walked_root)
        previous = self.store.latest(project.project_id, with_entries=True)
        snapshot = self.store.persist(project.project_id, result)

        delta = diff(previous, snapshot) if previous is not None else None
        alerts: list[Alert] = evaluate(delta, th) if delta is not None else []
        history = self.store.list_snapshots(project.project_id)
        alerts.extend(evaluate_window(history, th))
        self.store.record_alerts(project.project_id, (a.to_dict() for a in alerts))

        pruned: list[int] = []
        if self.settings.retain_snapshots is not None:
            pruned = self.store.prune(project.project_id, self.settings.retain_snapshots)

        self.logger.info(
            "scan_complete project=%s snapshot=%s files=%s bytes=%s alerts=%s errors=%s",
            project.project_id,
            snapshot.snapshot_id,
            snapshot.file_count,
            snapshot.total_size_bytes,
            len(alerts),
            len(errors),
        )
        return ProjectScanReport(
            project=project,
            snapshot=snapshot,
            previous_snapshot_id=previous.snapshot_id if previous else None,
            delta=delta,
            alerts=alerts,
            flagged=sorted(classification.flagged, key=lambda f: (-f.size_bytes, f.path)),
            duplicates=duplicates,
            errors=errors,
            pruned_snapshot_ids=pruned,
        )

    def resolve_project(self, project: str) -> Project:
        """Accepts a project id or a scanned root path."""
        try:
            return self.store.get_project(project)
        except NotFoundError:
            found = self.store.find_project(project)
            if found is None:
                raise NotFoundError(f"Project not found: {project}") from None
            return found

    def history(self, project: str) -> list[Snapshot]:
        return self.store.list_snapshots(self.resolve_project(project).project_id)

    def diff_snapshots(self, from_id: int, to_id: int) -> ChangeDelta:
        return diff(self.store.get(from_id), self.store.get(to_id))

    def alerts(self, project: str, limit: int = 200) -> list[dict[str, Any]]:
        return self.store.list_alerts(self.resolve_project(project).project_id, limit=limit)

    def prune(self, project: str, keep_last: int) -> list[int]:
        project_id = self.resolve_project(project).project_id
        removed = self.store.prune(project_id, keep_last)
        self.logger.info("prune_complete project=%s removed=%s", project_id, len(removed))
        return removed


def open_engine(settings: EngineSettings, logger: logging.Logger | None = None) -> Engine:
    """Engine with a temp-dir database fallback when the configured one is unusable."""
    try:
        return Engine(settings, logger)
    except PersistenceError as exc:
        fallback = dataclasses.replace(settings, db_path=Path("/tmp") / APP_NAME / "bloatscan.db")
        eng_logger = logger or setup_logger(settings.log_file)
        eng_logger.warning("db_path_unavailable path=%s err=%s fallback=%s", settings.db_path, exc, fallback.db_path)
        return Engine(fallback, eng_logger)


# -------------------------------- CLI -------------------------------------- #


def export_json(path: Path, obj: Any) -> None:
    ensure_parent(path)
    path.write_text(json.dumps(obj, indent=2, ensure_ascii=True), encoding="utf-8")


def _stderr_progress(event: Any) -> None:
    print(json.dumps(event.to_dict()), file=sys.stderr, flush=True)


def command_disk_info(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    mounts = get_disk_info()
    return {"mounts": [m.to_dict() for m in mounts]}


def command_bloat(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    min_bytes = parse_size_to_bytes(args.min_size) if args.min_size else engine.settings.bloat_threshold_bytes
    result, errors = run_bloat_scan(
        args.root,
        min_bytes,
        args.follow_symlinks,
        workers=engine.settings.workers,
        progress=_stderr_progress if args.progress else None,
        logger=engine.logger,
    )
    flagged = sorted(result.flagged, key=lambda f: (-f.size_bytes, f.path))
    root_summary = result.root_summary
    return {
        "root": result.root,
        "min_bytes": min_bytes,
        "total_size_bytes": root_summary.total_size_bytes,
        "total_size_human": human_bytes(root_summary.total_size_bytes),
        "file_count": root_summary.descendant_file_count,
        "flagged": [f.to_dict() for f in flagged[: args.limit]],
        "flagged_count": len(flagged),
        "errors_count": len(errors),
        "errors_sample": [e.to_dict() for e in errors[:50]],
    }


def command_duplicates(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    report = engine.scan_duplicates(
        args.root, args.follow_symlinks, progress=_stderr_progress if args.progress else None
    )
    out = report.summary(top_n=args.limit)
    out["errors"] = report.errors[:200]
    return out


def command_scan(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    thresholds = AlertThresholds(growth_pct=args.growth_pct, critical_growth_pct=args.critical_growth_pct)
    report = engine.scan_project(
        args.root,
        bloat_threshold=parse_size_to_bytes(args.min_size) if args.min_size else None,
        follow_symlinks=args.follow_symlinks,
        thresholds=thresholds,
        progress=_stderr_progress if args.progress else None,
    )
    return report.to_dict(top_n=args.limit)


def command_history(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    project = engine.resolve_project(args.project)
    snapshots = engine.store.list_snapshots(project.project_id)
    return {"project": project.to_dict(), "snapshots": [s.to_dict() for s in snapshots]}


def command_diff(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    return engine.diff_snapshots(args.from_id, args.to_id).to_dict(path_limit=args.limit)


def command_alerts(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    return {"alerts": engine.alerts(args.project, limit=args.limit)}


def command_cleanup(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    paths = list(args.paths)
    if args.path_list:
        paths.extend(
            line.strip() for line in Path(args.path_list).read_text(encoding="utf-8").splitlines() if line.strip()
        )
    if not paths:
        raise InvalidConfigError("No paths given for cleanup")
    if args.execute and not args.yes:
        raise InvalidConfigError("Destructive cleanup requires --yes")
    return engine.cleanup_dirs(paths, dry_run=not args.execute, trash=not args.permanent)


def command_restore(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    if args.list:
        return {"actions": engine.trash.list_actions()}
    if not args.action_id:
        raise InvalidConfigError("--action-id is required unless --list is given")
    return engine.restore(args.action_id)


def command_prune(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    removed = engine.prune(args.project, args.keep_last)
    return {"removed_snapshot_ids": removed, "kept": args.keep_last}


COMMANDS: dict[str, Callable[[Engine, argparse.Namespace], dict[str, Any]]] = {
    "disk-info": command_disk_info,
    "bloat": command_bloat,
    "duplicates": command_duplicates,
    "scan": command_scan,
    "history": command_history,
    "diff": command_diff,
    "alerts": command_alerts,
    "cleanup": command_cleanup,
    "restore": command_restore,
    "prune": command_prune,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bloatscan",
        description="Disk bloat scanner: rollups, duplicates, snapshot history and safe cleanup (Linux)",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument("--db", default=os.getenv("BLOATSCAN_DB", str(DEFAULT_DB)), help="SQLite database path")
    parser.add_argument("--log-file", default=os.getenv("BLOATSCAN_LOG", str(DEFAULT_LOG_FILE)), help="Action log file")
    parser.add_argument(
        "--trash-dir",
        default=os.getenv("BLOATSCAN_TRASH_DIR", str(DEFAULT_TRASH_DIR)),
        help="Recoverable trash directory",
    )
    parser.add_argument("--workers", type=int, default=None, help="Worker threads for listing and hashing")
    parser.add_argument("--output", default=None, help="Write the JSON result to this file instead of stdout")

    sub = parser.add_subparsers(dest="command", required=True)

    def add_scan_opts(p: argparse.ArgumentParser) -> None:
        p.add_argument("root", nargs="?", default=str(Path.cwd()), help="Root directory to scan")
        p.add_argument("--follow-symlinks", action="store_true", help="Descend into symlinked directories")
        p.add_argument("--progress", action="store_true", help="Stream progress events to stderr")
        p.add_argument("--limit", type=int, default=100)

    sub.add_parser("disk-info", help="Usage of mounted filesystems")

    p = sub.add_parser("bloat", help="Flag oversized files/directories and build artifacts")
    add_scan_opts(p)
    p.add_argument("--min-size", default=None, help="Bloat threshold, e.g. 100MB")

    p = sub.add_parser("duplicates", help="Find duplicate files")
    add_scan_opts(p)

    p = sub.add_parser("scan", help="Scan a project root and record a snapshot")
    add_scan_opts(p)
    p.add_argument("--min-size", default=None, help="Bloat threshold, e.g. 100MB")
    p.add_argument("--growth-pct", type=float, default=20.0, help="Growth alert threshold in percent")
    p.add_argument(
        "--critical-growth-pct", type=float, default=None, help="Escalate growth alerts to critical above this percent"
    )

    p = sub.add_parser("history", help="List snapshots of a project")
    p.add_argument("project", help="Project id or root path")

    p = sub.add_parser("diff", help="Diff two snapshots of one project")
    p.add_argument("from_id", type=int)
    p.add_argument("to_id", type=int)
    p.add_argument("--limit", type=int, default=200)

    p = sub.add_parser("alerts", help="Alert history of a project")
    p.add_argument("project", help="Project id or root path")
    p.add_argument("--limit", type=int, default=200)

    p = sub.add_parser("cleanup", help="Delete selected paths (dry-run unless --execute)")
    p.add_argument("paths", nargs="*")
    p.add_argument("--path-list", default=None, help="File with one path per line")
    p.add_argument("--execute", action="store_true", help="Actually delete (otherwise dry-run)")
    p.add_argument("--yes", action="store_true", help="Confirm destructive execution")
    p.add_argument("--permanent", action="store_true", help="Delete permanently instead of moving to trash")

    p = sub.add_parser("restore", help="Restore items moved to trash by a cleanup action")
    p.add_argument("--action-id", default=None)
    p.add_argument("--list", action="store_true", help="List cleanup actions in the trash")

    p = sub.add_parser("prune", help="Keep only the newest snapshots of a project")
    p.add_argument("project", help="Project id or root path")
    p.add_argument("--keep-last", type=int, required=True)

    return parser


def dispatch(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    handler = COMMANDS.get(args.command)
    if handler is None:
        raise InvalidConfigError(f"Unknown command: {args.command}")
    return handler(engine, args)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        env = EngineSettings.from_env()
        settings = dataclasses.replace(
            env,
            db_path=Path(args.db),
            log_file=Path(args.log_file),
            trash_dir=Path(args.trash_dir),
            workers=args.workers if args.workers is not None else env.workers,
        )
        engine = open_engine(settings)
        result = dispatch(engine, args)
        body = {
            "status": "ok",
            "command": args.command,
            "timestamp": now_utc_iso(),
            "data": result,
        }
        if args.output:
            output_path = Path(args.output)
            export_json(output_path, result)
            body = {k: v for k, v in body.items() if k != "data"}
            body["output"] = str(output_path.resolve())
        print(json.dumps(body, indent=2, default=str))
        return 0
    except ScannerError as exc:
        print(json.dumps({
            "status": "error",
            "command": args.command,
            "error": exc.to_dict(),
            "timestamp": now_utc_iso(),
        }, indent=2), file=sys.stderr)
        return 1
    except Exception as exc:  # pylint: disable=broad-except
        print(json.dumps({
            "status": "error",
            "command": getattr(args, "command", None),
            "error": {"code": "INTERNAL_ERROR", "message": str(exc), "path": None},
            "timestamp": now_utc_iso(),
        }, indent=2), file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
