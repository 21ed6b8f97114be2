from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional, Protocol

from ..errors import RunBudgetExceeded, SourceUnavailable
from ..utils import bounded_timeout
from .runner import build_env, run_process


class SourceFetcher(Protocol):
    repo_url: str

    def fetch(self, commit_hash: str, dest: Path, deadline: Optional[float] = None) -> None:
        ...


class GitSourceFetcher:
    """Fetches exactly one commit with a shallow fetch, then checks HEAD against it."""

    def __init__(self, repo_url: str, git_bin: str = "git", timeout_s: float = 900.0) -> None:
        self.repo_url = repo_url
        self.git_bin = git_bin
        self.timeout_s = timeout_s

    def _git(self, args: List[str], dest: Path, deadline: Optional[float], label: str) -> None:
        timeout = bounded_timeout(self.timeout_s, deadline)
        if timeout <= 0:
            raise RunBudgetExceeded("budget spent before git step", step=label)
        try:
            outcome = run_process([self.git_bin, *args], cwd=dest, timeout_s=timeout)
        except OSError as exc:
            raise SourceUnavailable("git not runnable", step=label, error=str(exc)) from exc
        if outcome.timed_out:
            raise SourceUnavailable("timeout", step=label)
        if outcome.exit_code != 0:
            raise SourceUnavailable("git failed", step=label, exit_code=outcome.exit_code)

    def fetch(self, commit_hash: str, dest: Path, deadline: Optional[float] = None) -> None:
        dest.mkdir(parents=True, exist_ok=True)
        self._git(["init", "--quiet"], dest, deadline, "init")
        self._git(["remote", "add", "origin", self.repo_url], dest, deadline, "remote")
        self._git(
            ["fetch", "--quiet", "--depth", "1", "origin", commit_hash], dest, deadline, "fetch"
        )
        self._git(["checkout", "--quiet", "--detach", "FETCH_HEAD"], dest, deadline, "checkout")
        try:
            head = subprocess.run(
                [self.git_bin, "rev-parse", "HEAD"],
                cwd=dest,
                env=build_env(),
                capture_output=True,
                text=True,
                timeout=60,
                check=False,
            )
        except (subprocess.TimeoutExpired, OSError) as exc:
            raise SourceUnavailable("rev-parse failed", error=str(exc)) from exc
        resolved = head.stdout.strip().lower()
        if head.returncode != 0 or resolved != commit_hash:
            raise SourceUnavailable("checked-out HEAD does not match", head=resolved)
