# git.py
# Small wrapper around the Git CLI.
# Every git call the engine makes goes through here, so a missing git binary
# or a source tree that is not a repository is handled in one place.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Dict, Optional


def _git(args: list[str], cwd: str | Path | None = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError when git is not installed; callers that can live
    without git use `git_facts()` instead.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: str | Path | None = None) -> str:
    """Full SHA of the HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd)


def current_ref(cwd: str | Path | None = None) -> str:
    """
    Fully qualified ref of the checkout, e.g. `refs/heads/main`.

    A detached HEAD has no symbolic ref; the bare SHA is returned then.
    """
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd)


def remote_url(name: str = "origin", cwd: str | Path | None = None) -> str:
    return _git(["remote", "get-url", name], cwd)


def _repository_name(url: str) -> str:
    # git@host:owner/repo.git and https://host/owner/repo(.git)
    tail = url.rstrip("/").replace(":", "/")
    parts = tail.split("/")
    name = "/".join(parts[-2:]) if len(parts) >= 2 else parts[-1]
    return name[:-4] if name.endswith(".git") else name


def git_facts(source_dir: str | Path) -> Dict[str, Optional[str]]:
    """
    What the `github` expression context and the PIPEWRIGHT_SHA/REF
    variables are built from. Every value is None when git is unavailable
    or `source_dir` is not inside a repository.
    """
    facts: Dict[str, Optional[str]] = {"sha": None, "ref": None, "ref_name": None, "repository": None}
    try:
        facts["sha"] = head_sha(source_dir)
        ref = current_ref(source_dir)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return facts

    facts["ref"] = ref
    facts["ref_name"] = ref.split("/", 2)[-1] if ref.startswith("refs/") else ref
    try:
        facts["repository"] = _repository_name(remote_url("origin", source_dir))
    except (subprocess.CalledProcessError, FileNotFoundError):
        facts["repository"] = Path(source_dir).resolve().name
    return facts
