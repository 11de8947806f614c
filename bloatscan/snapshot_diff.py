"""Change deltas between two snapshots of one project."""

from __future__ import annotations

import dataclasses
import datetime as dt
import math
from typing import Any

from bloatscan.scan_config import human_bytes
from bloatscan.scan_errors import InvalidConfigError, InvalidNumericComparisonError
from bloatscan.snapshot_store import Snapshot


@dataclasses.dataclass(slots=True, frozen=True)
class ChangeDelta:
    from_snapshot_id: int
    to_snapshot_id: int
    added_paths: tuple[str, ...]
    removed_paths: tuple[str, ...]
    modified_paths: tuple[str, ...]
    size_delta_bytes: int
    size_delta_pct: float
    added_size_bytes: int = 0
    removed_size_bytes: int = 0

    @property
    def is_empty(self) -> bool:
        return not (self.added_paths or self.removed_paths or self.modified_paths) and self.size_delta_bytes == 0

    def to_dict(self, path_limit: int | None = None) -> dict[str, Any]:
        def clip(paths: tuple[str, ...]) -> list[str]:
            return list(paths if path_limit is None else paths[:path_limit])

        return {
            "from_snapshot_id": self.from_snapshot_id,
            "to_snapshot_id": self.to_snapshot_id,
            "added_count": len(self.added_paths),
            "removed_count": len(self.removed_paths),
            "modified_count": len(self.modified_paths),
            "added_paths": clip(self.added_paths),
            "removed_paths": clip(self.removed_paths),
            "modified_paths": clip(self.modified_paths),
            "size_delta_bytes": self.size_delta_bytes,
            "size_delta_human": ("-" if self.size_delta_bytes < 0 else "") + human_bytes(abs(self.size_delta_bytes)),
            "size_delta_pct": round(self.size_delta_pct, 4),
            "added_size_bytes": self.added_size_bytes,
            "removed_size_bytes": self.removed_size_bytes,
        }


def percent_change(before: float, after: float) -> float:
    """Percentage change relative to ``before``.

    A zero baseline yields 100.0 when ``after`` is nonzero and 0.0 otherwise,
    so the result is always finite.
    """
    if before == 0:
        return 100.0 if after != 0 else 0.0
    pct = (after - before) / before * 100.0
    if not math.isfinite(pct):
        raise InvalidNumericComparisonError(f"Non-finite percentage change from {before} to {after}")
    return pct


def diff(from_snapshot: Snapshot, to_snapshot: Snapshot) -> ChangeDelta:
    if from_snapshot.project_id != to_snapshot.project_id:
        raise InvalidConfigError(
            f"Cannot diff snapshots of different projects: {from_snapshot.project_id} vs {to_snapshot.project_id}"
        )

    if from_snapshot.snapshot_id == to_snapshot.snapshot_id:
        return ChangeDelta(from_snapshot.snapshot_id, to_snapshot.snapshot_id, (), (), (), 0, 0.0)

    if dt.datetime.fromisoformat(to_snapshot.taken_at) <= dt.datetime.fromisoformat(from_snapshot.taken_at):
        raise InvalidConfigError(
            f"Snapshot {to_snapshot.snapshot_id} is not newer than snapshot {from_snapshot.snapshot_id}"
        )
    if from_snapshot.entries is None or to_snapshot.entries is None:
        raise InvalidConfigError("Snapshot entries must be loaded to compute a diff")

    before = from_snapshot.entries
    after = to_snapshot.entries
    added = sorted(after.keys() - before.keys())
    removed = sorted(before.keys() - after.keys())
    modified = sorted(
        p
        for p in after.keys() & before.keys()
        if after[p].size_bytes != before[p].size_bytes or after[p].modified_at != before[p].modified_at
    )

    return ChangeDelta(
        from_snapshot_id=from_snapshot.snapshot_id,
        to_snapshot_id=to_snapshot.snapshot_id,
        added_paths=tuple(added),
        removed_paths=tuple(removed),
        modified_paths=tuple(modified),
        size_delta_bytes=to_snapshot.total_size_bytes - from_snapshot.total_size_bytes,
        size_delta_pct=percent_change(from_snapshot.total_size_bytes, to_snapshot.total_size_bytes),
        added_size_bytes=sum(after[p].size_bytes for p in added),
        removed_size_bytes=sum(before[p].size_bytes for p in removed),
    )
