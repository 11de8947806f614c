"""Threshold rules over change deltas and snapshot windows.

Both entry points are pure: the same input always yields the same alerts.
"""

from __future__ import annotations

import dataclasses
import math
import statistics
from typing import Any, Mapping, Sequence

from bloatscan.scan_config import human_bytes
from bloatscan.scan_errors import InvalidConfigError
from bloatscan.snapshot_diff import ChangeDelta, percent_change
from bloatscan.snapshot_store import Snapshot

SEVERITIES = ("info", "warning", "critical")


@dataclasses.dataclass(slots=True, frozen=True)
class Alert:
    severity: str
    category: str
    message: str
    related_snapshot_ids: tuple[int, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity,
            "category": self.category,
            "message": self.message,
            "related_snapshot_ids": list(self.related_snapshot_ids),
        }


@dataclasses.dataclass(slots=True)
class AlertThresholds:
    """Growth alerts are warnings unless ``critical_growth_pct`` is set."""

    growth_pct: float = 20.0
    critical_growth_pct: float | None = None
    added_files: int = 1000
    added_bytes: int = 1024**3
    drift_pct: float = 20.0
    window: int = 5

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "AlertThresholds":
        if not data:
            return cls()
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise InvalidConfigError(f"Unknown alert threshold(s): {', '.join(sorted(unknown))}")
        try:
            thresholds = cls(**{k: None if v is None and k == "critical_growth_pct" else _CONVERTERS[k](v) for k, v in data.items()})
        except (TypeError, ValueError) as exc:
            raise InvalidConfigError(f"Invalid alert threshold value: {exc}") from exc
        thresholds.validate()
        return thresholds

    def validate(self) -> None:
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if not math.isfinite(value) or value < 0:
                raise InvalidConfigError(f"Alert threshold {f.name} must be a finite non-negative number, got {value}")
        if self.critical_growth_pct is not None and self.critical_growth_pct < self.growth_pct:
            raise InvalidConfigError("critical_growth_pct must be >= growth_pct")
        if self.window < 1:
            raise InvalidConfigError("window must be >= 1")


_CONVERTERS = {
    "growth_pct": float,
    "critical_growth_pct": float,
    "added_files": int,
    "added_bytes": int,
    "drift_pct": float,
    "window": int,
}


def evaluate(delta: ChangeDelta, thresholds: AlertThresholds | None = None) -> list[Alert]:
    """Every applicable rule fires; shrinking or unchanged projects raise nothing."""
    th = thresholds or AlertThresholds()
    th.validate()
    if delta.size_delta_bytes <= 0:
        return []

    ids = (delta.from_snapshot_id, delta.to_snapshot_id)
    alerts: list[Alert] = []

    if delta.size_delta_pct > th.growth_pct:
        severity = "warning"
        if th.critical_growth_pct is not None and delta.size_delta_pct > th.critical_growth_pct:
            severity = "critical"
        alerts.append(
            Alert(
                severity=severity,
                category="growth",
                message=(
                    f"Project grew {delta.size_delta_pct:.1f}% (+{human_bytes(delta.size_delta_bytes)}) "
                    f"between snapshots {ids[0]} and {ids[1]}"
                ),
                related_snapshot_ids=ids,
            )
        )

    added_count = len(delta.added_paths)
    if added_count > th.added_files or delta.added_size_bytes > th.added_bytes:
        alerts.append(
            Alert(
                severity="info",
                category="mass_addition",
                message=f"{added_count} files added ({human_bytes(delta.added_size_bytes)}) since snapshot {ids[0]}",
                related_snapshot_ids=ids,
            )
        )
    return alerts


def evaluate_window(snapshots: Sequence[Snapshot], thresholds: AlertThresholds | None = None) -> list[Alert]:
    """Drift of the newest snapshot against the mean of the preceding window.

    ``snapshots`` are ordered oldest first, as returned by the store.
    """
    th = thresholds or AlertThresholds()
    th.validate()
    if len(snapshots) < 2:
        return []

    latest = snapshots[-1]
    window = list(snapshots[-(th.window + 1) : -1])
    baseline = statistics.fmean(s.total_size_bytes for s in window)
    if latest.total_size_bytes <= baseline:
        return []

    drift = percent_change(baseline, latest.total_size_bytes)
    if drift <= th.drift_pct:
        return []
    return [
        Alert(
            severity="warning",
            category="drift",
            message=(
                f"Project size {human_bytes(latest.total_size_bytes)} is {drift:.1f}% above the "
                f"{len(window)}-snapshot baseline of {human_bytes(int(baseline))}"
            ),
            related_snapshot_ids=tuple(s.snapshot_id for s in window) + (latest.snapshot_id,),
        )
    ]
