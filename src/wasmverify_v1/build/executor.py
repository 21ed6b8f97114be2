from __future__ import annotations

import contextlib
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Iterator, List, Optional

from ..config import ArtifactSearchPolicy
from ..errors import ArtifactNotFound, BuildFailed, RunBudgetExceeded
from ..ledger.ledger import Ledger
from ..schemas import BuildPlan, StepResult
from ..utils import bounded_timeout
from .runner import StepRunner, new_label, run_process
from .source import SourceFetcher


@dataclass(frozen=True)
class BuildResult:
    artifact: bytes
    artifact_path: str
    environment_id: str
    steps: List[StepResult] = field(default_factory=list)
    commit_hash: str = ""
    plan_hash: str = ""


def artifact_suffix(output_path: str) -> str:
    name = Path(output_path).name
    if name.endswith(".wasm.gz"):
        return ".wasm.gz"
    return Path(name).suffix or ".wasm"


def search_artifacts(root: Path, suffix: str, policy: ArtifactSearchPolicy) -> List[str]:
    """Bounded walk for files ending in ``suffix``. Diagnostic only, never used as output."""
    found: List[str] = []
    skip = set(policy.skip_dirs)
    for dirpath, dirnames, filenames in os.walk(root):
        depth = len(Path(dirpath).relative_to(root).parts)
        if depth >= policy.max_depth:
            dirnames[:] = []
        else:
            dirnames[:] = sorted(name for name in dirnames if name not in skip)
        for name in sorted(filenames):
            if name.endswith(suffix):
                found.append((Path(dirpath) / name).relative_to(root).as_posix())
                if len(found) >= policy.max_candidates:
                    return found
    return found


class BuildExecutor:
    def __init__(
        self,
        fetcher: SourceFetcher,
        runner: StepRunner,
        step_timeout_s: float = 4 * 3600.0,
        search: Optional[ArtifactSearchPolicy] = None,
        work_root: Optional[Path] = None,
    ) -> None:
        self.fetcher = fetcher
        self.runner = runner
        self.step_timeout_s = step_timeout_s
        self.search = search or ArtifactSearchPolicy()
        self.work_root = work_root

    @property
    def environment_id(self) -> str:
        return self.runner.environment_id

    @property
    def repo_url(self) -> str:
        return self.fetcher.repo_url

    @contextlib.contextmanager
    def _workspace(self) -> Iterator[Path]:
        if self.work_root is not None:
            self.work_root.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(
            prefix="wasmverify-", dir=self.work_root, ignore_cleanup_errors=True
        ) as tmp:
            yield Path(tmp)

    def execute(
        self,
        commit_hash: str,
        plan: BuildPlan,
        deadline: Optional[float] = None,
        ledger: Optional[Ledger] = None,
        log_path: Optional[Path] = None,
    ) -> BuildResult:
        if plan.commit_hash != commit_hash:
            raise ValueError("build plan was inferred for a different commit")
        with self._workspace() as workspace, contextlib.ExitStack() as stack:
            log: Optional[IO[bytes]] = None
            if log_path is not None:
                log = stack.enter_context(log_path.open("ab"))
            repo = workspace / "repo"
            self.fetcher.fetch(commit_hash, repo, deadline)
            if ledger is not None:
                ledger.append("SOURCE_FETCHED", {"commit_hash": commit_hash})
            steps = self._run_steps(plan, repo, deadline, ledger, log)
            artifact = self._locate(plan.output_path, repo)
            return BuildResult(
                artifact=artifact,
                artifact_path=plan.output_path,
                environment_id=self.runner.environment_id,
                steps=steps,
                commit_hash=commit_hash,
                plan_hash=plan.stable_hash(),
            )

    def _run_steps(
        self,
        plan: BuildPlan,
        repo: Path,
        deadline: Optional[float],
        ledger: Optional[Ledger],
        log: Optional[IO[bytes]],
    ) -> List[StepResult]:
        results: List[StepResult] = []
        for index, command in enumerate(plan.steps):
            timeout = bounded_timeout(self.step_timeout_s, deadline)
            if timeout <= 0:
                raise RunBudgetExceeded("budget spent before build step", step_index=index)
            if log is not None:
                log.write(f"\n>>> [{index}] {command}\n".encode("utf-8"))
                log.flush()
            label = new_label()
            try:
                outcome = run_process(
                    self.runner.argv(command, repo, label), cwd=repo, timeout_s=timeout, log=log
                )
            except OSError as exc:
                raise BuildFailed(index, None, f"spawn_failed:{exc.__class__.__name__}") from exc
            finally:
                self.runner.teardown(label)
            result = StepResult(
                index=index,
                command=command,
                exit_code=outcome.exit_code,
                duration_ns=outcome.duration_ns,
            )
            results.append(result)
            if ledger is not None:
                ledger.append("STEP_DONE", result.model_dump())
            if outcome.timed_out:
                raise BuildFailed(index, None, "timeout")
            if outcome.exit_code != 0:
                raise BuildFailed(index, outcome.exit_code)
        return results

    def _locate(self, output_path: str, repo: Path) -> bytes:
        # Symlinks are followed, but the target must still live inside the checkout.
        declared = (repo / output_path).resolve()
        inside = declared.is_relative_to(repo.resolve())
        if inside and declared.is_file():
            return declared.read_bytes()
        candidates = search_artifacts(repo, artifact_suffix(output_path), self.search)
        detail = "" if inside else "declared path resolves outside the checkout"
        raise ArtifactNotFound(output_path, candidates, detail)
