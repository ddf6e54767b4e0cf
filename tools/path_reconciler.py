from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Sequence, Union

from .checksum_ledger import ChecksumEntry


class ReconcileStrategy(str, Enum):
    LAYOUT = "layout"
    COMMON_PREFIX = "common-prefix"


def normalize_separators(path: str) -> str:
    return path.replace("\\", "/")


def has_drive_letter(path: str) -> bool:
    return len(path) >= 2 and path[1] == ":" and path[0].isascii() and path[0].isalpha()


def _segments(path: str) -> List[str]:
    return [part for part in path.split("/") if part and part != "."]


def _unanchored(path: str) -> str:
    if has_drive_letter(path):
        path = path[2:]
    return path.lstrip("/")


def _common_prefix(lists: Sequence[List[str]]) -> List[str]:
    if not lists:
        return []
    prefix = list(lists[0])
    for parts in lists[1:]:
        limit = min(len(prefix), len(parts))
        idx = 0
        while idx < limit and prefix[idx] == parts[idx]:
            idx += 1
        del prefix[idx:]
        if not prefix:
            break
    return prefix


@dataclass(frozen=True)
class ReconciledPath:
    stored: str
    actual: str


@dataclass(frozen=True)
class ReconciliationCollision:
    actual: str
    kept: str
    dropped: str
    same_digest: bool

    def describe(self) -> str:
        verdict = "same digest" if self.same_digest else "conflicting digests"
        return f"{self.dropped} and {self.kept} both resolve to {self.actual} ({verdict}); keeping {self.kept}"


@dataclass
class ReconcileResult:
    expected: Dict[str, str] = field(default_factory=dict)
    paths: List[str] = field(default_factory=list)
    reconciled: List[ReconciledPath] = field(default_factory=list)
    collisions: List[ReconciliationCollision] = field(default_factory=list)


class PathReconciler:
    """Resolve recorded checksum paths against the directory being verified.

    Recorded paths may come from another machine. With the ``layout``
    strategy each path is classified in order: Windows drive path, absolute
    Unix path, relative path starting with the scan root's own name, plain
    relative path. The ``common-prefix`` strategy ignores layout and strips
    the deepest directory shared by every recorded path instead.
    """

    def __init__(self, root: Union[str, Path], strategy: ReconcileStrategy = ReconcileStrategy.LAYOUT):
        self.root = os.path.normpath(os.path.abspath(os.fspath(root)))
        self.base = os.path.basename(self.root)
        self.strategy = ReconcileStrategy(strategy)
        self._prefix: List[str] = []

    def _join(self, parts: Sequence[str]) -> str:
        if not parts:
            return self.root
        return os.path.normpath(os.path.join(self.root, *parts))

    def _relative(self, parts: List[str]) -> str:
        if self.base and len(parts) > 1 and parts[0] == self.base:
            parts = parts[1:]
        return self._join(parts)

    def resolve(self, stored: str) -> str:
        path = normalize_separators(stored)
        if self.strategy == ReconcileStrategy.COMMON_PREFIX:
            parts = _segments(_unanchored(path))
            if parts[: len(self._prefix)] == self._prefix and len(parts) > len(self._prefix):
                parts = parts[len(self._prefix):]
            return self._join(parts)
        if has_drive_letter(path):
            parts = _segments(path[2:])
            folders = parts[:-1]
            if self.base and self.base in folders:
                return self._join(parts[folders.index(self.base) + 1:])
            return self._relative(parts)
        if path.startswith("/"):
            return os.path.normpath(path)
        return self._relative(_segments(path))

    def prepare(self, stored_paths: Iterable[str]) -> None:
        if self.strategy != ReconcileStrategy.COMMON_PREFIX:
            return
        folders = [_segments(_unanchored(normalize_separators(p)))[:-1] for p in stored_paths]
        self._prefix = _common_prefix(folders)

    def reconcile(self, entries: Sequence[ChecksumEntry]) -> ReconcileResult:
        self.prepare(entry.path for entry in entries)
        result = ReconcileResult()
        owners: Dict[str, ChecksumEntry] = {}
        for entry in entries:
            actual = self.resolve(entry.path)
            result.reconciled.append(ReconciledPath(entry.path, actual))
            key = os.path.normcase(actual)
            kept = owners.get(key)
            if kept is not None:
                result.collisions.append(
                    ReconciliationCollision(actual, kept.path, entry.path, kept.digest == entry.digest)
                )
                continue
            owners[key] = entry
            result.expected[actual] = entry.digest
            result.paths.append(actual)
        return result


__all__ = [
    "PathReconciler",
    "ReconcileResult",
    "ReconcileStrategy",
    "ReconciledPath",
    "ReconciliationCollision",
    "has_drive_letter",
    "normalize_separators",
]
