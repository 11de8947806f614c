"""Safety-first cleanup: dry-run default, recoverable trash and restore."""

from __future__ import annotations

import dataclasses
import datetime as dt
import json
import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import Any, Iterable

from bloatscan.scan_config import (
    APP_NAME,
    CRITICAL_DELETE_PATHS,
    MAX_BATCH_DELETE_COUNT,
    is_subpath,
    normalize_path,
    now_utc_iso,
)
from bloatscan.scan_errors import DeletionFailedError, InvalidConfigError, NotFoundError
from bloatscan.scan_progress import CancellationToken

# ------------------------------ Data Models --------------------------------- #


@dataclasses.dataclass(slots=True)
class CleanupOutcome:
    path: str
    status: str  # deleted | skipped | error
    reason: str | None = None
    trash_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclasses.dataclass(slots=True)
class CleanupReport:
    action_id: str
    dry_run: bool
    trash: bool
    outcomes: list[CleanupOutcome] = dataclasses.field(default_factory=list)

    @property
    def deleted(self) -> list[str]:
        return [o.path for o in self.outcomes if o.status == "deleted"]

    @property
    def skipped(self) -> list[str]:
        return [o.path for o in self.outcomes if o.status == "skipped"]

    @property
    def errors(self) -> list[dict[str, str]]:
        return [{"path": o.path, "reason": o.reason or "unknown error"} for o in self.outcomes if o.status == "error"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_id": self.action_id,
            "dry_run": self.dry_run,
            "trash": self.trash,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "errors": self.errors,
            "counts": {
                "deleted": len(self.deleted),
                "skipped": len(self.skipped),
                "errors": len(self.errors),
            },
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


# --------------------------------- Trash ------------------------------------ #


class TrashBin:
    """Recoverable deletion target.

    Each cleanup action gets ``<trash_dir>/<action_id>/`` holding the moved
    items under their original absolute layout plus a ``manifest.json`` used
    by :meth:`restore`.
    """

    MANIFEST = "manifest.json"

    def __init__(self, trash_dir: Path, logger: logging.Logger | None = None):
        self.trash_dir = Path(normalize_path(str(trash_dir)))
        self.logger = logger or logging.getLogger(APP_NAME)

    @staticmethod
    def new_action_id() -> str:
        return f"{dt.datetime.now().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"

    def action_dir(self, action_id: str) -> Path:
        if not action_id or os.sep in action_id or action_id in {".", ".."}:
            raise InvalidConfigError(f"Invalid cleanup action id: {action_id!r}")
        return self.trash_dir / action_id

    def move(self, action_id: str, path: str) -> str:
        target = self.action_dir(action_id) / path.lstrip(os.sep)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(path, str(target))
        return str(target)

    def write_manifest(self, action_id: str, records: list[dict[str, Any]]) -> None:
        manifest = self.action_dir(action_id) / self.MANIFEST
        manifest.parent.mkdir(parents=True, exist_ok=True)
        tmp = manifest.with_suffix(".tmp")
        tmp.write_text(json.dumps({"action_id": action_id, "items": records}, indent=2), encoding="utf-8")
        os.replace(tmp, manifest)

    def read_manifest(self, action_id: str) -> list[dict[str, Any]]:
        manifest = self.action_dir(action_id) / self.MANIFEST
        if not manifest.exists():
            raise NotFoundError(f"No trash records found for action {action_id}")
        return list(json.loads(manifest.read_text(encoding="utf-8")).get("items", []))

    def list_actions(self) -> list[dict[str, Any]]:
        if not self.trash_dir.is_dir():
            return []
        out = []
        for child in sorted(self.trash_dir.iterdir()):
            if (child / self.MANIFEST).exists():
                items = self.read_manifest(child.name)
                out.append({
                    "action_id": child.name,
                    "items": len(items),
                    "restored": sum(1 for i in items if i.get("restored_at")),
                })
        return out

    def restore(self, action_id: str) -> dict[str, Any]:
        records = self.read_manifest(action_id)
        restored = 0
        failures = []
        for rec in records:
            if rec.get("restored_at"):
                continue
            original = Path(rec["original_path"])
            trashed = Path(rec["trash_path"])
            try:
                if not os.path.lexists(trashed):
                    raise FileNotFoundError(f"Trashed item missing: {trashed}")
                if os.path.lexists(original):
                    raise FileExistsError(f"Restore destination already exists: {original}")
                original.parent.mkdir(parents=True, exist_ok=True)
                shutil.move(str(trashed), str(original))
                rec["restored_at"] = now_utc_iso()
                restored += 1
                self.logger.info("restore_success action=%s path=%s", action_id, original)
            except OSError as exc:
                failures.append({"original": str(original), "trash_path": str(trashed), "error": str(exc)})
                self.logger.error("restore_failed action=%s path=%s err=%s", action_id, original, exc)
        self.write_manifest(action_id, records)
        return {
            "action_id": action_id,
            "restored": restored,
            "failed": len(failures),
            "failures": failures,
        }


# -------------------------------- Executor ---------------------------------- #


def normalize_cleanup_paths(paths: Iterable[str]) -> list[str]:
    """Absolute paths in input order, duplicates removed, symlinks left unresolved."""
    seen: set[str] = set()
    out: list[str] = []
    for p in paths:
        if not p or not str(p).strip():
            continue
        norm = normalize_path(str(p))
        if norm not in seen:
            seen.add(norm)
            out.append(norm)
    return out


class CleanupExecutor:
    """Deletes exactly the selected paths and reports a per-path outcome.

    One failing path never aborts the batch. Cancellation is honoured between
    paths; a path already being deleted is finished first.
    """

    def __init__(
        self,
        trash_bin: TrashBin,
        logger: logging.Logger | None = None,
        max_batch_paths: int = MAX_BATCH_DELETE_COUNT,
    ):
        self.trash_bin = trash_bin
        self.logger = logger or logging.getLogger(APP_NAME)
        self.max_batch_paths = max_batch_paths

    def run(
        self,
        paths: Iterable[str],
        dry_run: bool = True,
        trash: bool = True,
        cancel: CancellationToken | None = None,
    ) -> CleanupReport:
        selected = normalize_cleanup_paths(paths)
        if len(selected) > self.max_batch_paths:
            raise InvalidConfigError(
                f"Too many paths for one cleanup: {len(selected)} (max {self.max_batch_paths})"
            )

        report = CleanupReport(action_id=self.trash_bin.new_action_id(), dry_run=dry_run, trash=trash)
        records: list[dict[str, Any]] = []
        try:
            for path in selected:
                if cancel is not None and cancel.cancelled:
                    report.outcomes.append(CleanupOutcome(path, "skipped", "cancelled"))
                    continue
                outcome = self._process(report.action_id, path, dry_run, trash)
                report.outcomes.append(outcome)
                if outcome.trash_path:
                    records.append({
                        "original_path": outcome.path,
                        "trash_path": outcome.trash_path,
                        "trashed_at": now_utc_iso(),
                        "restored_at": None,
                    })
        finally:
            if records:
                self.trash_bin.write_manifest(report.action_id, records)

        self.logger.info(
            "cleanup_complete action=%s dry_run=%s trash=%s deleted=%s skipped=%s errors=%s",
            report.action_id,
            dry_run,
            trash,
            len(report.deleted),
            len(report.skipped),
            len(report.errors),
        )
        return report

    def _protected_reason(self, path: str) -> str | None:
        if path in CRITICAL_DELETE_PATHS or path == normalize_path("~"):
            return "protected system path"
        trash_root = str(self.trash_bin.trash_dir)
        if is_subpath(trash_root, path) or is_subpath(path, trash_root):
            return "path overlaps the trash directory"
        return None

    def _process(self, action_id: str, path: str, dry_run: bool, trash: bool) -> CleanupOutcome:
        reason = self._protected_reason(path)
        if reason:
            self.logger.warning("cleanup_refused action=%s path=%s reason=%s", action_id, path, reason)
            return CleanupOutcome(path, "error", reason)

        if not os.path.lexists(path):
            return CleanupOutcome(path, "skipped", "path does not exist")

        if dry_run:
            parent = os.path.dirname(path) or os.sep
            if not os.access(parent, os.W_OK | os.X_OK):
                return CleanupOutcome(path, "error", f"permission denied: cannot modify {parent}")
            return CleanupOutcome(path, "deleted", "dry run")

        try:
            if trash:
                target = self.trash_bin.move(action_id, path)
                self.logger.info("cleanup_success action=%s path=%s trash=%s", action_id, path, target)
                return CleanupOutcome(path, "deleted", "moved to trash", trash_path=target)
            self._delete_permanently(path)
            self.logger.info("cleanup_success action=%s path=%s permanent=1", action_id, path)
            return CleanupOutcome(path, "deleted", "deleted permanently")
        except OSError as exc:
            err = DeletionFailedError(exc.strerror or str(exc), path)
            self.logger.error("cleanup_failed action=%s path=%s err=%s", action_id, path, err.message)
            return CleanupOutcome(path, "error", err.message)

    @staticmethod
    def _delete_permanently(path: str) -> None:
        p = Path(path)
        if p.is_symlink() or not p.is_dir():
            p.unlink()
        else:
            shutil.rmtree(p)
