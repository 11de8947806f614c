import pytest

from bloatscan.scan_errors import InvalidConfigError
from bloatscan.snapshot_diff import diff, percent_change
from bloatscan.snapshot_store import FileStamp, Snapshot


def _snap(snapshot_id, taken_at, entries, project_id="p1"):
    return Snapshot(
        snapshot_id=snapshot_id,
        project_id=project_id,
        taken_at=taken_at,
        total_size_bytes=sum(s.size_bytes for s in entries.values()),
        file_count=len(entries),
        duplicate_summary={},
        bloat_summary={},
        entries=entries,
    )


BEFORE = {
    "/p/kept": FileStamp(10, 1.0),
    "/p/grown": FileStamp(10, 1.0),
    "/p/touched": FileStamp(5, 1.0),
    "/p/gone": FileStamp(7, 1.0),
}
AFTER = {
    "/p/kept": FileStamp(10, 1.0),
    "/p/grown": FileStamp(30, 2.0),
    "/p/touched": FileStamp(5, 9.0),
    "/p/new_b": FileStamp(4, 3.0),
    "/p/new_a": FileStamp(1, 3.0),
}


def test_paths_are_classified():
    delta = diff(_snap(1, "2024-01-01T00:00:00+00:00", BEFORE), _snap(2, "2024-01-02T00:00:00+00:00", AFTER))

    assert delta.added_paths == ("/p/new_a", "/p/new_b")
    assert delta.removed_paths == ("/p/gone",)
    assert delta.modified_paths == ("/p/grown", "/p/touched")
    assert delta.size_delta_bytes == 50 - 32
    assert delta.size_delta_pct == pytest.approx(18 / 32 * 100)
    assert delta.added_size_bytes == 5
    assert delta.removed_size_bytes == 7


def test_diff_against_itself_is_empty():
    snap = _snap(3, "2024-01-01T00:00:00+00:00", BEFORE)
    delta = diff(snap, snap)
    assert delta.is_empty
    assert delta.size_delta_pct == 0.0


def test_identical_content_in_newer_snapshot_is_empty():
    delta = diff(_snap(1, "2024-01-01T00:00:00+00:00", BEFORE), _snap(2, "2024-01-01T00:00:01+00:00", dict(BEFORE)))
    assert delta.is_empty


def test_different_projects_rejected():
    with pytest.raises(InvalidConfigError):
        diff(
            _snap(1, "2024-01-01T00:00:00+00:00", BEFORE, "p1"),
            _snap(2, "2024-01-02T00:00:00+00:00", AFTER, "p2"),
        )


def test_to_must_be_strictly_newer():
    with pytest.raises(InvalidConfigError):
        diff(_snap(2, "2024-01-02T00:00:00+00:00", AFTER), _snap(1, "2024-01-01T00:00:00+00:00", BEFORE))
    with pytest.raises(InvalidConfigError):
        diff(_snap(1, "2024-01-01T00:00:00+00:00", BEFORE), _snap(2, "2024-01-01T00:00:00+00:00", AFTER))


def test_entries_must_be_loaded():
    bare = Snapshot(2, "p1", "2024-01-02T00:00:00+00:00", 0, 0, {}, {})
    with pytest.raises(InvalidConfigError):
        diff(_snap(1, "2024-01-01T00:00:00+00:00", BEFORE), bare)


def test_percent_change_zero_baseline():
    assert percent_change(0, 0) == 0.0
    assert percent_change(0, 500) == 100.0
    assert percent_change(100, 125) == 25.0
    assert percent_change(100, 50) == -50.0


def test_to_dict_clips_paths():
    delta = diff(_snap(1, "2024-01-01T00:00:00+00:00", BEFORE), _snap(2, "2024-01-02T00:00:00+00:00", AFTER))
    out = delta.to_dict(path_limit=1)
    assert out["added_count"] == 2
    assert out["added_paths"] == ["/p/new_a"]
