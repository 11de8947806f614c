import os

import pytest

from bloatscan.scan_errors import InvalidConfigError, InvalidPathError, ScanCancelledError
from bloatscan.scan_progress import CancellationToken, ProgressChannel
from bloatscan.tree_walker import TreeWalker, WalkConfig, validate_scan_root
from conftest import make_file


def _paths(nodes):
    return {n.path for n in nodes}


def test_walk_emits_root_first_and_every_entry(tree):
    nodes = list(TreeWalker(str(tree), WalkConfig(workers=1)).walk())

    assert nodes[0].path == str(tree)
    assert nodes[0].is_directory
    expected = {str(tree)}
    for dirpath, dirnames, filenames in os.walk(tree):
        expected.update(os.path.join(dirpath, d) for d in dirnames)
        expected.update(os.path.join(dirpath, f) for f in filenames)
    assert _paths(nodes) == expected


def test_directories_report_zero_size(tree):
    nodes = list(TreeWalker(str(tree)).walk())
    assert all(n.size_bytes == 0 for n in nodes if n.is_directory)
    big = next(n for n in nodes if n.path.endswith("big.bin"))
    assert big.size_bytes == 15 * 1024 * 1024


def test_parallel_and_inline_walks_agree(tree):
    inline = list(TreeWalker(str(tree), WalkConfig(workers=1)).walk())
    pooled = list(TreeWalker(str(tree), WalkConfig(workers=4)).walk())
    assert sorted(inline, key=lambda n: n.path) == sorted(pooled, key=lambda n: n.path)


def test_walk_is_restartable_per_call(tree):
    walker = TreeWalker(str(tree))
    first = _paths(walker.walk())
    second = _paths(walker.walk())
    assert first == second


def test_min_size_filters_files_but_keeps_directories(tree):
    nodes = list(TreeWalker(str(tree), WalkConfig(min_size_bytes=1024 * 1024)).walk())
    files = [n for n in nodes if not n.is_directory]
    assert [os.path.basename(n.path) for n in files] == ["big.bin"]
    assert str(tree / "src") in _paths(nodes)


def test_missing_root_raises_before_walking(tmp_path):
    with pytest.raises(InvalidPathError):
        TreeWalker(str(tmp_path / "nope")).walk()


def test_file_root_raises(tmp_path):
    f = make_file(tmp_path / "file.txt", content=b"x")
    with pytest.raises(InvalidPathError):
        TreeWalker(str(f)).walk()


def test_invalid_config_raises(tmp_path):
    with pytest.raises(InvalidConfigError):
        TreeWalker(str(tmp_path), WalkConfig(min_size_bytes=-1)).walk()


def test_unfollowed_symlink_is_a_leaf(tmp_path):
    target = tmp_path / "real"
    make_file(target / "inside.txt", content=b"abc")
    root = tmp_path / "root"
    root.mkdir()
    os.symlink(target, root / "link")

    nodes = list(TreeWalker(str(root), WalkConfig(follow_symlinks=False)).walk())
    link = next(n for n in nodes if n.path == str(root / "link"))
    assert link.is_symlink
    assert not link.is_directory
    assert link.size_bytes == os.lstat(root / "link").st_size
    assert str(root / "link" / "inside.txt") not in _paths(nodes)


def test_followed_symlink_cycle_terminates(tmp_path):
    root = tmp_path / "root"
    make_file(root / "a" / "file.txt", content=b"data")
    os.symlink(root, root / "a" / "back_to_root")
    os.symlink(root / "a", root / "a_again")

    walker = TreeWalker(str(root), WalkConfig(follow_symlinks=True))
    nodes = list(walker.walk())
    files = [n.path for n in nodes if n.path.endswith("file.txt")]
    assert files == [str(root / "a" / "file.txt")]
    assert walker.errors == []


def test_followed_symlink_descends_into_target(tmp_path):
    target = tmp_path / "outside"
    make_file(target / "inside.txt", content=b"abc")
    root = tmp_path / "root"
    root.mkdir()
    os.symlink(target, root / "link")

    nodes = list(TreeWalker(str(root), WalkConfig(follow_symlinks=True)).walk())
    assert str(root / "link" / "inside.txt") in _paths(nodes)


def test_dangling_symlink_with_follow_is_a_leaf(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    os.symlink(tmp_path / "missing", root / "dangling")
    walker = TreeWalker(str(root), WalkConfig(follow_symlinks=True))
    nodes = list(walker.walk())
    assert str(root / "dangling") in _paths(nodes)
    assert walker.errors == []


def test_followed_self_loop_symlink_is_a_leaf(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    os.symlink(root / "loop", root / "loop")
    os.symlink(root / "b", root / "a")
    os.symlink(root / "a", root / "b")

    walker = TreeWalker(str(root), WalkConfig(follow_symlinks=True, workers=1))
    nodes = {n.path: n for n in walker.walk()}

    for name in ("loop", "a", "b"):
        node = nodes[str(root / name)]
        assert node.is_symlink
        assert not node.is_directory
        assert not node.is_regular
    assert walker.errors == []


@pytest.mark.skipif(not hasattr(os, "mkfifo"), reason="needs named pipes")
def test_fifo_is_emitted_as_non_regular_leaf(tmp_path):
    make_file(tmp_path / "plain.txt", content=b"x")
    os.mkfifo(tmp_path / "pipe")

    nodes = {n.path: n for n in TreeWalker(str(tmp_path)).walk()}

    assert nodes[str(tmp_path / "plain.txt")].is_regular
    assert not nodes[str(tmp_path / "pipe")].is_regular
    assert not nodes[str(tmp_path / "pipe")].is_directory
    assert not nodes[str(tmp_path)].is_regular


@pytest.mark.skipif(hasattr(os, "geteuid") and os.geteuid() == 0, reason="root can read any directory")
def test_unreadable_directory_is_collected_and_siblings_continue(tmp_path):
    root = tmp_path / "root"
    make_file(root / "locked" / "secret.txt", content=b"s")
    make_file(root / "open" / "visible.txt", content=b"v")
    os.chmod(root / "locked", 0)
    try:
        walker = TreeWalker(str(root))
        paths = _paths(walker.walk())
    finally:
        os.chmod(root / "locked", 0o755)

    assert str(root / "open" / "visible.txt") in paths
    assert [e.path for e in walker.errors] == [str(root / "locked")]
    assert walker.errors[0].kind == "PERMISSION_DENIED"


def test_progress_is_emitted_at_bounded_cadence(tmp_path):
    root = tmp_path / "root"
    for i in range(30):
        make_file(root / f"f{i:02d}.txt", content=b"x")
    channel = ProgressChannel(maxsize=100)
    cfg = WalkConfig(workers=1, progress_every=10, progress_interval_sec=3600)

    list(TreeWalker(str(root), cfg, progress=channel).walk())
    events = channel.drain()

    walking = [e for e in events if e.phase == "walking"]
    assert [e.entries_processed for e in walking] == [10, 20, 30]
    assert events[-1].phase == "walking_done"
    assert events[-1].entries_processed == 30


def test_cancelled_walk_raises(tree):
    token = CancellationToken()
    token.cancel()
    with pytest.raises(ScanCancelledError):
        list(TreeWalker(str(tree), cancel=token).walk())


def test_validate_scan_root_rejects_system_paths(tmp_path):
    with pytest.raises(InvalidPathError):
        validate_scan_root("/")
    with pytest.raises(InvalidPathError):
        validate_scan_root("/proc/self")
    assert validate_scan_root(str(tmp_path)) == str(tmp_path)
