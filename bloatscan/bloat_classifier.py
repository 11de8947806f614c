"""Bottom-up directory rollups and bloat flagging."""

from __future__ import annotations

import dataclasses
import os
from collections import defaultdict
from typing import Any, Iterable

from bloatscan.scan_config import human_bytes, is_subpath
from bloatscan.scan_errors import InvalidConfigError
from bloatscan.tree_walker import FileNode

# Directory names that mark regenerable dependency or build output.
ARTIFACT_PATTERNS: dict[str, set[str]] = {
    "node_modules": {"node_modules", "bower_components"},
    "rust_target": {"target"},
    "python_venv": {"venv", ".venv", "__pycache__", ".pytest_cache", ".mypy_cache", ".tox", ".ruff_cache"},
    "git": {".git"},
    "build_artifacts": {"dist", "build", ".next", ".nuxt", "out", ".output", ".parcel-cache"},
    "vendor": {"vendor"},
    "java_gradle": {".gradle", ".m2"},
    "caches": {".cache"},
}

_NAME_TO_CATEGORY = {name: cat for cat, names in ARTIFACT_PATTERNS.items() for name in names}

# File-name patterns for leftovers that are safe to delete at any size.
# Exact names, ``*suffix`` and ``prefix*`` forms are supported.
JUNK_PATTERNS: dict[str, tuple[str, ...]] = {
    "system": (".DS_Store", "Thumbs.db", "desktop.ini", ".localized", "ehthumbs.db"),
    "build": ("*.pyc", "*.pyo", "*.class", "*.o", "*.obj"),
    "editor": ("*.swp", "*.swo", "*.swn", "*~", "*.bak", "*.backup"),
}


def artifact_category(name: str) -> str | None:
    return _NAME_TO_CATEGORY.get(name)


def _matches_junk(name: str, pattern: str) -> bool:
    if pattern.startswith("*"):
        return name.endswith(pattern[1:])
    if pattern.endswith("*"):
        return name.startswith(pattern[:-1])
    return name == pattern


def junk_category(name: str) -> str | None:
    for category, patterns in JUNK_PATTERNS.items():
        if any(_matches_junk(name, p) for p in patterns):
            return category
    return None


# ------------------------------ Data Models --------------------------------- #


@dataclasses.dataclass(slots=True)
class DirectorySummary:
    path: str
    total_size_bytes: int = 0
    descendant_file_count: int = 0
    descendant_dir_count: int = 0
    is_flagged_bloat: bool = False
    artifact_category: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclasses.dataclass(slots=True, frozen=True)
class FlaggedNode:
    path: str
    size_bytes: int
    kind: str  # file | directory | artifact | junk
    category: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "size_bytes": self.size_bytes,
            "size_human": human_bytes(self.size_bytes),
            "kind": self.kind,
            "category": self.category,
        }


@dataclasses.dataclass(slots=True)
class ClassificationResult:
    root: str
    threshold_bytes: int
    summaries: dict[str, DirectorySummary]
    flagged: list[FlaggedNode]

    @property
    def root_summary(self) -> DirectorySummary:
        return self.summaries[self.root]

    def bloat_summary(self, top_n: int = 20) -> dict[str, Any]:
        artifact_bytes: dict[str, int] = defaultdict(int)
        outermost: list[str] = []
        for node in sorted((f for f in self.flagged if f.kind == "artifact"), key=lambda f: f.path):
            # nested artifacts are already counted by their enclosing one
            if any(is_subpath(node.path, p) for p in outermost):
                continue
            outermost.append(node.path)
            artifact_bytes[node.category or "unknown"] += node.size_bytes
        junk_bytes: dict[str, int] = defaultdict(int)
        for node in self.flagged:
            if node.kind == "junk":
                junk_bytes[node.category or "unknown"] += node.size_bytes

        ordered = sorted(self.flagged, key=lambda f: (-f.size_bytes, f.path))
        return {
            "threshold_bytes": self.threshold_bytes,
            "flagged_count": len(self.flagged),
            "flagged_files": sum(1 for f in self.flagged if f.kind == "file"),
            "flagged_directories": sum(1 for f in self.flagged if f.kind == "directory"),
            "artifact_directories": sum(1 for f in self.flagged if f.kind == "artifact"),
            "artifact_bytes": dict(sorted(artifact_bytes.items())),
            "junk_files": sum(1 for f in self.flagged if f.kind == "junk"),
            "junk_bytes": dict(sorted(junk_bytes.items())),
            "top_flagged": [f.to_dict() for f in ordered[:top_n]],
        }


# ------------------------------- Classifier --------------------------------- #


class BloatClassifier:
    """Post-order fold over walker output.

    A node is flagged when its total size is strictly greater than the
    threshold. Artifact directories are tagged whatever their size, and so are
    junk files outside them. A junk file is reported once, as junk, even when
    it is also oversized. The scan root is the subject of the scan and is never
    flagged itself.
    """

    def __init__(self, threshold_bytes: int):
        if threshold_bytes < 0:
            raise InvalidConfigError(f"Bloat threshold must be non-negative, got {threshold_bytes}")
        self.threshold_bytes = threshold_bytes

    def fold(self, root: str, nodes: Iterable[FileNode]) -> ClassificationResult:
        children: dict[str, list[FileNode]] = defaultdict(list)
        for node in nodes:
            if node.path == root:
                continue
            children[os.path.dirname(node.path)].append(node)

        summaries: dict[str, DirectorySummary] = {}
        flagged: list[FlaggedNode] = []

        # (path, children_done, inside_artifact)
        stack: list[tuple[str, bool, bool]] = [(root, False, False)]
        while stack:
            path, children_done, inside_artifact = stack.pop()
            category = None if path == root else artifact_category(os.path.basename(path))
            if not children_done:
                stack.append((path, True, inside_artifact))
                covered = inside_artifact or category is not None
                for child in children.get(path, ()):
                    if child.is_directory:
                        stack.append((child.path, False, covered))
                continue

            summary = DirectorySummary(path=path, artifact_category=category)
            for child in children.get(path, ()):
                if child.is_directory:
                    sub = summaries[child.path]
                    summary.total_size_bytes += sub.total_size_bytes
                    summary.descendant_file_count += sub.descendant_file_count
                    summary.descendant_dir_count += sub.descendant_dir_count + 1
                    continue
                summary.total_size_bytes += child.size_bytes
                summary.descendant_file_count += 1
                junk = None
                if child.is_regular and not (inside_artifact or category is not None):
                    junk = junk_category(os.path.basename(child.path))
                if junk is not None:
                    flagged.append(FlaggedNode(child.path, child.size_bytes, "junk", junk))
                elif child.size_bytes > self.threshold_bytes:
                    flagged.append(FlaggedNode(child.path, child.size_bytes, "file"))

            if path != root:
                summary.is_flagged_bloat = summary.total_size_bytes > self.threshold_bytes
                if category is not None:
                    flagged.append(FlaggedNode(path, summary.total_size_bytes, "artifact", category))
                elif summary.is_flagged_bloat:
                    flagged.append(FlaggedNode(path, summary.total_size_bytes, "directory"))
            summaries[path] = summary

        return ClassificationResult(
            root=root,
            threshold_bytes=self.threshold_bytes,
            summaries=summaries,
            flagged=flagged,
        )
