"""
Project file access, confined to a root.

Two implementations share one protocol: a directory on disk, and an in-memory
file map (the upstream `files: {path: content}` contract).
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Optional, Protocol

from .errors import PathEscapeError

logger = logging.getLogger(__name__)

_FILE_TYPES = {
    ".tsx": "react-typescript",
    ".jsx": "react-javascript",
    ".ts": "typescript",
    ".js": "javascript",
    ".html": "html",
    ".css": "css",
}


def file_type(path: str) -> str:
    return _FILE_TYPES.get(PurePosixPath(path).suffix.lower(), "unknown")


class Workspace(Protocol):
    def list_files(self) -> List[str]:
        ...

    def read(self, path: str) -> str:
        ...

    def write(self, path: str, content: str) -> None:
        ...


def is_source_file(path: str, extensions: Iterable[str], exclude_dirs: Iterable[str]) -> bool:
    p = PurePosixPath(path)
    if p.suffix.lower() not in {e.lower() for e in extensions}:
        return False
    excluded = set(exclude_dirs)
    return not any(part in excluded for part in p.parts[:-1])


def list_source_files(ws: Workspace, extensions: Iterable[str], exclude_dirs: Iterable[str]) -> List[str]:
    extensions = list(extensions)
    exclude_dirs = list(exclude_dirs)
    return sorted(p for p in ws.list_files() if is_source_file(p, extensions, exclude_dirs))


def normalize_relpath(rel_path: str) -> str:
    """POSIX-normalize a project-relative path; reject absolute paths and `..` escapes."""
    raw = rel_path.replace("\\", "/")
    if raw.startswith("/") or (len(raw) > 1 and raw[1] == ":"):
        raise PathEscapeError(f"Absolute path not allowed: {rel_path}")
    parts: List[str] = []
    for part in PurePosixPath(raw).parts:
        if part in ("", "."):
            continue
        if part == "..":
            if not parts:
                raise PathEscapeError(f"Path escapes project root: {rel_path}")
            parts.pop()
            continue
        parts.append(part)
    if not parts:
        raise PathEscapeError(f"Empty path: {rel_path!r}")
    return "/".join(parts)


class DirectoryWorkspace:
    """Files under `root` on disk."""

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        if not self.root.is_dir():
            raise FileNotFoundError(f"Project root not found: {self.root}")
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def safe_path(self, rel_path: str) -> Path:
        """Return a resolved path, refusing anything outside the project root."""
        p = (self.root / rel_path).resolve()
        if self.root not in p.parents and p != self.root:
            raise PathEscapeError(f"Path outside project root: {rel_path}")
        return p

    def list_files(self) -> List[str]:
        out: List[str] = []
        for p in self.root.rglob("*"):
            if p.is_file():
                out.append(p.relative_to(self.root).as_posix())
        return sorted(out)

    def read(self, path: str) -> str:
        # newline="" keeps CRLF intact; undecodable bytes survive as surrogates
        with open(self.safe_path(path), encoding="utf-8", errors="surrogateescape", newline="") as f:
            return f.read()

    def write(self, path: str, content: str) -> None:
        target = self.safe_path(path)
        with self._lock_for(target.as_posix()):
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "w", encoding="utf-8", errors="surrogateescape", newline="") as f:
                f.write(content)

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(key, threading.Lock())


class InMemoryWorkspace:
    """A project given as a {path: content} map. Writes update the map in place."""

    def __init__(self, files: Optional[Dict[str, str]] = None):
        self._files: Dict[str, str] = {}
        self._lock = threading.Lock()
        for path, content in (files or {}).items():
            self._files[normalize_relpath(path)] = content

    def list_files(self) -> List[str]:
        with self._lock:
            return sorted(self._files)

    def read(self, path: str) -> str:
        key = normalize_relpath(path)
        with self._lock:
            if key not in self._files:
                raise FileNotFoundError(key)
            return self._files[key]

    def write(self, path: str, content: str) -> None:
        key = normalize_relpath(path)
        with self._lock:
            self._files[key] = content

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._files)
