# artifacts.py
from __future__ import annotations

import io
import json
import re
import tarfile
import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import ArtifactNotFoundError, DuplicateArtifactError

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Artifacts are keyed by (run, name). A job publishes into a staging area;
# the scheduler commits the job's artifacts when the job succeeds and
# discards them when an attempt fails, so a retry can publish the same
# names again. Downstream jobs only ever see committed artifacts.
#
# Payloads are opaque. The upload-artifact builtin action packs workspace
# files into a tar.gz (pack_paths) and download-artifact unpacks it.
# ---------------------------------------------------------------------

DEFAULT_EXCLUDES = [
    ".git/**",
    ".pipewright/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]

# characters upload-artifact refuses in a name; names are also file names under root
_BAD_NAME = re.compile(r'[\\/:"<>|*?\r\n]')


class ArtifactStore:
    """
    Thread-safe artifact broker for one run.

    With a root directory, committed artifacts are also written to
        root/<name>        (payload bytes, text, or JSON)
    """

    def __init__(self, root: str | Path | None = None):
        self.root = Path(root).resolve() if root is not None else None
        self._lock = threading.Lock()
        self._key_locks: Dict[str, threading.Lock] = {}
        self._staged: Dict[str, Tuple[str, Any]] = {}
        self._committed: Dict[str, Tuple[str, Any]] = {}

    def _key_lock(self, name: str) -> threading.Lock:
        with self._lock:
            lock = self._key_locks.get(name)
            if lock is None:
                lock = self._key_locks[name] = threading.Lock()
            return lock

    def publish(self, job_id: str, name: str, payload: Any) -> None:
        """Stage an artifact. Rejects a name another publish already claimed."""
        if not name:
            raise ValueError("artifact name must not be empty")
        if name in (".", "..") or _BAD_NAME.search(name):
            raise ValueError(f"invalid artifact name: {name!r}")
        with self._key_lock(name):
            existing = self._committed.get(name) or self._staged.get(name)
            if existing is not None:
                raise DuplicateArtifactError(name, existing[0], job=job_id)
            self._staged[name] = (job_id, payload)

    def commit(self, job_id: str) -> List[str]:
        """Persist, then expose, everything the job staged. A failed write commits nothing."""
        names = self._staged_by(job_id)
        if self.root is not None:
            for name in names:
                self._persist(name, self._staged[name][1])
        for name in names:
            with self._key_lock(name):
                self._committed[name] = self._staged.pop(name)
        return names

    def discard(self, job_id: str) -> List[str]:
        names = self._staged_by(job_id)
        for name in names:
            with self._key_lock(name):
                self._staged.pop(name, None)
        return names

    def fetch(self, name: str, *, job: Optional[str] = None) -> Any:
        with self._key_lock(name):
            entry = self._committed.get(name)
            if entry is not None:
                return entry[1]
            staged = self._staged.get(name)
        details = {"producer": staged[0], "reason": "producer has not completed successfully"} if staged else {}
        raise ArtifactNotFoundError(name, job=job, details=details)

    def producer(self, name: str) -> Optional[str]:
        entry = self._committed.get(name) or self._staged.get(name)
        return entry[0] if entry else None

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._committed)

    def _staged_by(self, job_id: str) -> List[str]:
        with self._lock:
            return [n for n, (owner, _) in self._staged.items() if owner == job_id]

    def _persist(self, name: str, payload: Any) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        target = self.root / name
        if isinstance(payload, bytes):
            target.write_bytes(payload)
        elif isinstance(payload, str):
            target.write_text(payload, encoding="utf-8")
        else:
            target.write_text(json.dumps(payload, sort_keys=True, indent=2, default=str), encoding="utf-8")
        return target


# ---------------------------------------------------------------------
# Workspace archives
# ---------------------------------------------------------------------

def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _resolve_globs(root: Path, patterns: List[str]) -> List[Path]:
    """
    Expand path patterns relative to root:
      - file path: "dist/app.whl"
      - dir path:  "dist/"
      - glob:      "dist/*", "reports/**/*.xml"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = root / pat
        if p.exists():
            out.append(p)
            continue
        out.extend(m for m in sorted(root.glob(pat)) if m.exists())

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def pack_paths(root: str | Path, patterns: List[str], *, excludes: Optional[List[str]] = None) -> Tuple[bytes, List[str]]:
    """
    Archive files matching patterns (relative to root) into tar.gz bytes.
    Returns (payload, archived relative paths).
    """
    base = Path(root).resolve()
    exclude_globs = list(DEFAULT_EXCLUDES) + list(excludes or [])
    files: List[Tuple[Path, str]] = []
    for src in _resolve_globs(base, patterns):
        candidates = [src] if src.is_file() else list(_iter_files_under(src))
        for f in candidates:
            rel = _relpath(f, base)
            if not _matches_any_glob(rel, exclude_globs):
                files.append((f, rel))

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for f, rel in files:
            info = tar.gettarinfo(str(f), arcname=rel)
            info.mtime = int(time.time())
            with f.open("rb") as fh:
                tar.addfile(info, fh)
    return buf.getvalue(), [rel for _, rel in files]


def unpack(payload: bytes, dest: str | Path) -> List[str]:
    """Extract a pack_paths archive into dest. Refuses members escaping dest."""
    target = Path(dest).resolve()
    target.mkdir(parents=True, exist_ok=True)
    with tarfile.open(fileobj=io.BytesIO(payload), mode="r:gz") as tar:
        members = tar.getmembers()
        for m in members:
            resolved = (target / m.name).resolve()
            if m.issym() or m.islnk() or not resolved.is_relative_to(target):
                raise ValueError(f"refusing to extract unsafe archive member: {m.name}")
        if hasattr(tarfile, "data_filter"):
            tar.extractall(path=str(target), filter="data")
        else:
            tar.extractall(path=str(target))
    return [m.name for m in members if m.isfile()]
