import os
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from bloatscan.scan_config import EngineSettings  # noqa: E402

MB = 1024 * 1024


def make_file(path: Path, size: int = 0, content: bytes | None = None) -> Path:
    """Create a file; sized files are sparse so large trees stay cheap."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        if content is not None:
            f.write(content)
        else:
            f.truncate(size)
    return path


@pytest.fixture
def settings(tmp_path):
    state = tmp_path / "state"
    return EngineSettings(
        db_path=state / "bloatscan.db",
        log_file=state / "actions.log",
        trash_dir=state / "trash",
        workers=2,
        bloat_threshold_bytes=10 * MB,
    )


@pytest.fixture
def engine(settings):
    from bloatscan.bloat_engine import Engine

    return Engine(settings)


@pytest.fixture
def tree(tmp_path):
    """Small project: nested dirs, an artifact dir, and one pair of duplicates."""
    root = tmp_path / "project"
    make_file(root / "README.md", content=b"# readme\n")
    make_file(root / "src" / "main.py", content=b"print('hi')\n")
    make_file(root / "src" / "util.py", content=b"def f():\n    return 1\n")
    make_file(root / "data" / "big.bin", size=15 * MB)
    make_file(root / "data" / "copy_a.txt", content=b"same content\n" * 100)
    make_file(root / "backup" / "copy_b.txt", content=b"same content\n" * 100)
    make_file(root / "node_modules" / "left-pad" / "index.js", content=b"module.exports = 1;\n")
    return root
