# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

from .errors import MalformedSpecError

DEFAULT_RUN_DIR = ".pipewright/runs"
DEFAULT_SECRET_PREFIX = "PIPEWRIGHT_SECRET_"


def _default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def _env_bool(value: Optional[str]) -> Optional[bool]:
    if value is None or value.strip() == "":
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """
    Run configuration. Precedence (lowest first): defaults, PIPEWRIGHT_*
    environment variables, workflow keys (fail-fast, max-parallel), CLI flags.
    """
    max_workers: int = _default_workers()
    fail_fast: bool = False
    run_dir: Path = Path(DEFAULT_RUN_DIR)
    secret_prefix: str = DEFAULT_SECRET_PREFIX
    default_shell: str = "bash"
    source_dir: Path = Path(".")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Settings:
        env = os.environ if environ is None else environ
        settings = cls()
        workers = env.get("PIPEWRIGHT_MAX_WORKERS")
        if workers:
            try:
                count = int(workers)
            except ValueError:
                raise MalformedSpecError(f"expected an integer, got {workers!r}", where="PIPEWRIGHT_MAX_WORKERS")
            settings = replace(settings, max_workers=max(1, count))
        fail_fast = _env_bool(env.get("PIPEWRIGHT_FAIL_FAST"))
        if fail_fast is not None:
            settings = replace(settings, fail_fast=fail_fast)
        if env.get("PIPEWRIGHT_RUN_DIR"):
            settings = replace(settings, run_dir=Path(env["PIPEWRIGHT_RUN_DIR"]))
        if "PIPEWRIGHT_SECRET_PREFIX" in env:
            settings = replace(settings, secret_prefix=env["PIPEWRIGHT_SECRET_PREFIX"])
        if env.get("PIPEWRIGHT_DEFAULT_SHELL"):
            settings = replace(settings, default_shell=env["PIPEWRIGHT_DEFAULT_SHELL"])
        return settings

    def override(self, **changes) -> Settings:
        """Apply non-None overrides (CLI flags, workflow keys)."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})
