# logs.py
from __future__ import annotations

import hashlib
import re
import threading
from pathlib import Path
from typing import Dict, Optional

from .secrets import Redactor

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]+")


def safe_name(name: str) -> str:
    """
    Filesystem-safe form of a job id or artifact name (matrix ids contain
    spaces and commas). Names that had to change get a short hash of the
    original, so `a b` and `a_b` never share a file.
    """
    cleaned = _UNSAFE.sub("_", name).strip("_.") or "job"
    if cleaned != name:
        digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[:8]
        cleaned = f"{cleaned}-{digest}"
    return cleaned


def log_file_name(job_id: str) -> str:
    return safe_name(job_id) + ".log"


class LogSink:
    """
    Per-job log files for one run:
      root/
        <job>.log

    Every line passes through the redactor before it touches disk.
    Writers for the same job are serialized by a per-job lock.
    """

    def __init__(self, root: str | Path, redactor: Optional[Redactor] = None):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.redactor = redactor if redactor is not None else Redactor()
        self._lock = threading.Lock()
        self._job_locks: Dict[str, threading.Lock] = {}

    def _job_lock(self, job_id: str) -> threading.Lock:
        with self._lock:
            lock = self._job_locks.get(job_id)
            if lock is None:
                lock = self._job_locks[job_id] = threading.Lock()
            return lock

    def path_for(self, job_id: str) -> Path:
        return self.root / log_file_name(job_id)

    def write(self, job_id: str, text: str) -> str:
        """Append text to the job log. Returns the log reference."""
        path = self.path_for(job_id)
        clean = self.redactor.redact(text)
        if clean and not clean.endswith("\n"):
            clean += "\n"
        with self._job_lock(job_id):
            with path.open("a", encoding="utf-8") as f:
                f.write(clean)
        return str(path)

    def section(self, job_id: str, title: str) -> str:
        return self.write(job_id, f"##[group] {title}")

    def read(self, job_id: str) -> str:
        path = self.path_for(job_id)
        if not path.exists():
            return ""
        with self._job_lock(job_id):
            return path.read_text(encoding="utf-8")
