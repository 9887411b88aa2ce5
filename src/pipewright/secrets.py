# secrets.py
from __future__ import annotations

import os
import re
import threading
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional

import yaml

from .errors import SecretResolutionError

REDACTED = "***"


class Redactor:
    """
    Pattern substitution of secret values in any text headed for a log,
    an artifact or the run report.
    """

    def __init__(self, values: Iterable[str] = ()):
        self._values: set[str] = set()
        self._pattern: Optional[re.Pattern] = None
        self._lock = threading.Lock()
        self.add(*values)

    def add(self, *values: str) -> None:
        candidates = set()
        for value in values:
            if not value:
                continue
            candidates.add(value)
            # multi-line secrets (keys, certs) are also masked line by line
            if "\n" in value:
                candidates.update(line.strip() for line in value.splitlines() if len(line.strip()) >= 3)

        with self._lock:
            new = candidates - self._values
            if not new:
                return
            self._values |= new
            # longest first so a secret containing another is masked whole
            ordered = sorted(self._values, key=len, reverse=True)
            self._pattern = re.compile("|".join(re.escape(v) for v in ordered))

    def redact(self, text: str) -> str:
        pattern = self._pattern
        if not text or pattern is None:
            return text
        return pattern.sub(REDACTED, text)


def load_secrets_file(path: str | Path) -> Dict[str, str]:
    """A YAML mapping of NAME: value."""
    p = Path(path)
    raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise SecretResolutionError([], details={"file": str(p), "reason": "expected a mapping"})
    return {str(k): "" if v is None else str(v) for k, v in raw.items()}


class SecretBroker:
    """
    Resolves named secrets for a run. Lookup order: explicit values, the
    secrets file, then `<prefix><NAME>` environment variables.

    Values live only for the run; every resolved value is registered with
    the redactor before it is handed to a job.
    """

    def __init__(
        self,
        values: Optional[Mapping[str, str]] = None,
        *,
        secrets_file: str | Path | None = None,
        env_prefix: str = "PIPEWRIGHT_SECRET_",
        environ: Optional[Mapping[str, str]] = None,
        redactor: Optional[Redactor] = None,
    ):
        self._values: Dict[str, str] = {}
        if secrets_file is not None:
            self._values.update(load_secrets_file(secrets_file))
        self._values.update({str(k): str(v) for k, v in (values or {}).items()})
        self.env_prefix = env_prefix
        self._environ = os.environ if environ is None else environ
        self.redactor = redactor if redactor is not None else Redactor()
        # mask everything we know about up-front, even if no job asks for it
        self.redactor.add(*self._values.values())
        if env_prefix:
            self.redactor.add(*(v for k, v in self._environ.items() if k.startswith(env_prefix)))

    def _lookup(self, name: str) -> Optional[str]:
        if name in self._values:
            return self._values[name]
        if self.env_prefix:
            env_name = f"{self.env_prefix}{name}"
            if env_name in self._environ:
                return self._environ[env_name]
        return None

    def resolve(self, names: Iterable[str], *, job: Optional[str] = None) -> Dict[str, str]:
        resolved: Dict[str, str] = {}
        missing = []
        for name in sorted(set(names)):
            value = self._lookup(name)
            if value is None:
                missing.append(name)
            else:
                resolved[name] = value
        if missing:
            raise SecretResolutionError(missing, job=job)
        self.redactor.add(*resolved.values())
        return resolved

    def redact(self, text: str) -> str:
        return self.redactor.redact(text)
