import _thread
import os
import shutil
import subprocess
import threading
import time
from pathlib import Path
from typing import List, Optional

import pytest

from wasmverify_v1.build.executor import BuildExecutor, artifact_suffix, search_artifacts
from wasmverify_v1.build.runner import ContainerRunner, LocalRunner
from wasmverify_v1.build.source import GitSourceFetcher
from wasmverify_v1.config import ArtifactSearchPolicy
from wasmverify_v1.errors import ArtifactNotFound, BuildFailed, SourceUnavailable
from wasmverify_v1.ledger.ledger import Ledger
from wasmverify_v1.schemas import BuildPlan

COMMIT = "0123456789abcdef0123456789abcdef01234567"


class FakeFetcher:
    repo_url = "file:///fixtures/repo"

    def __init__(self, files: Optional[dict[str, bytes]] = None, fail: bool = False) -> None:
        self.files = files or {"README.md": b"fixture\n"}
        self.fail = fail
        self.fetched: List[str] = []
        self.workspaces: List[Path] = []

    def fetch(self, commit_hash: str, dest: Path, deadline: Optional[float] = None) -> None:
        _ = deadline
        self.fetched.append(commit_hash)
        self.workspaces.append(dest)
        if self.fail:
            raise SourceUnavailable("git failed", step="fetch", exit_code=128)
        for rel_path, data in self.files.items():
            path = dest / rel_path
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)


def _plan(steps: List[str], output_path: str = "out/canister.wasm") -> BuildPlan:
    return BuildPlan(commit_hash=COMMIT, steps=steps, output_path=output_path)


def _executor(fetcher: FakeFetcher, step_timeout_s: float = 30.0) -> BuildExecutor:
    return BuildExecutor(fetcher=fetcher, runner=LocalRunner("sh"), step_timeout_s=step_timeout_s)


def test_successful_build_returns_artifact_bytes(tmp_path: Path) -> None:
    fetcher = FakeFetcher()
    ledger = Ledger(tmp_path / "ledger.jsonl")
    log_path = tmp_path / "build.log"
    result = _executor(fetcher).execute(
        COMMIT,
        _plan(["mkdir -p out", "printf 'wasm-bytes' > out/canister.wasm", "echo done"]),
        ledger=ledger,
        log_path=log_path,
    )
    assert result.artifact == b"wasm-bytes"
    assert result.environment_id == "local:sh"
    assert [step.exit_code for step in result.steps] == [0, 0, 0]
    assert fetcher.fetched == [COMMIT]
    assert len(ledger.events("STEP_DONE")) == 3
    assert "done" in log_path.read_text(encoding="utf-8")
    assert not fetcher.workspaces[0].exists()


def test_failing_step_halts_and_reports_index(tmp_path: Path) -> None:
    marker = tmp_path / "later-step-ran"
    with pytest.raises(BuildFailed) as excinfo:
        _executor(FakeFetcher()).execute(
            COMMIT,
            _plan(["true", "exit 7", f"touch {marker}"]),
        )
    assert excinfo.value.step_index == 1
    assert excinfo.value.exit_code == 7
    assert not marker.exists()


def test_step_timeout_is_build_failure() -> None:
    with pytest.raises(BuildFailed) as excinfo:
        _executor(FakeFetcher(), step_timeout_s=0.5).execute(COMMIT, _plan(["sleep 10"]))
    assert excinfo.value.step_index == 0
    assert excinfo.value.exit_code is None
    assert excinfo.value.detail == "timeout"


def test_missing_artifact_lists_candidates_without_choosing() -> None:
    fetcher = FakeFetcher(
        {
            "bazel-bin/rs/registry/registry.wasm": b"a",
            "artifacts/other.wasm": b"b",
            "notes.txt": b"c",
        }
    )
    with pytest.raises(ArtifactNotFound) as excinfo:
        _executor(fetcher).execute(COMMIT, _plan(["true"], "artifacts/registry.wasm"))
    assert excinfo.value.declared_path == "artifacts/registry.wasm"
    assert excinfo.value.candidates == [
        "artifacts/other.wasm",
        "bazel-bin/rs/registry/registry.wasm",
    ]


def test_source_failure_stops_before_any_step(tmp_path: Path) -> None:
    marker = tmp_path / "step-ran"
    with pytest.raises(SourceUnavailable):
        _executor(FakeFetcher(fail=True)).execute(COMMIT, _plan([f"touch {marker}"]))
    assert not marker.exists()


def test_plan_for_other_commit_is_refused() -> None:
    with pytest.raises(ValueError):
        _executor(FakeFetcher()).execute("1" * 40, _plan(["true"]))


def test_artifact_search_is_bounded(tmp_path: Path) -> None:
    for idx in range(5):
        (tmp_path / f"d{idx}").mkdir()
        (tmp_path / f"d{idx}" / "x.wasm.gz").write_bytes(b"")
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "hidden.wasm.gz").write_bytes(b"")
    policy = ArtifactSearchPolicy(max_candidates=3)
    found = search_artifacts(tmp_path, ".wasm.gz", policy)
    assert found == ["d0/x.wasm.gz", "d1/x.wasm.gz", "d2/x.wasm.gz"]


def test_artifact_suffix() -> None:
    assert artifact_suffix("artifacts/canisters/ledger.wasm.gz") == ".wasm.gz"
    assert artifact_suffix("bazel-bin/ledger.wasm") == ".wasm"
    assert artifact_suffix("out/ledger") == ".wasm"


def test_container_runner_command_records_image() -> None:
    image = "ghcr.io/dfinity/ic-build@sha256:" + "0" * 64
    runner = ContainerRunner(image, engine="podman", extra_args=["--network", "none"])
    argv = runner.argv("bazel build //rs:all", Path("/tmp/ws"), "abc")
    assert argv[:5] == ["podman", "run", "--rm", "--name", "wasmverify-abc"]
    assert image in argv
    assert argv[-3:] == ["bash", "-c", "bazel build //rs:all"]
    assert runner.environment_id == f"podman:{image}"

class TeardownRecordingRunner(LocalRunner):
    def __init__(self) -> None:
        super().__init__("sh")
        self.torn_down: List[str] = []

    def teardown(self, label: str) -> bool:
        self.torn_down.append(label)
        return True


def _group_alive(pgid: int) -> bool:
    try:
        os.killpg(pgid, 0)
    except ProcessLookupError:
        return False
    return True


def test_interrupt_kills_step_and_removes_workspace(tmp_path: Path) -> None:
    pid_file = tmp_path / "step.pid"
    fetcher = FakeFetcher()
    runner = TeardownRecordingRunner()
    executor = BuildExecutor(fetcher=fetcher, runner=runner, step_timeout_s=60)
    timer = threading.Timer(1.0, _thread.interrupt_main)
    timer.start()
    started = time.monotonic()
    try:
        with pytest.raises(KeyboardInterrupt):
            executor.execute(COMMIT, _plan([f"echo $$ > {pid_file}; exec sleep 60"]))
    finally:
        timer.cancel()
    assert time.monotonic() - started < 30
    pgid = int(pid_file.read_text(encoding="utf-8").strip())
    assert not _group_alive(pgid)
    assert len(runner.torn_down) == 1
    assert not fetcher.workspaces[0].exists()


def test_symlinked_artifact_outside_checkout_is_not_hashed(tmp_path: Path) -> None:
    host_file = tmp_path / "host.wasm"
    host_file.write_bytes(b"not built here")
    with pytest.raises(ArtifactNotFound) as excinfo:
        _executor(FakeFetcher()).execute(
            COMMIT, _plan(["mkdir -p out", f"ln -s {host_file} out/canister.wasm"])
        )
    assert excinfo.value.declared_path == "out/canister.wasm"
    assert "outside the checkout" in excinfo.value.detail


def test_symlinked_artifact_inside_checkout_is_used() -> None:
    result = _executor(FakeFetcher()).execute(
        COMMIT,
        _plan(
            [
                "mkdir -p out build",
                "printf 'wasm' > build/real.wasm",
                "ln -s ../build/real.wasm out/canister.wasm",
            ]
        ),
    )
    assert result.artifact == b"wasm"



@pytest.mark.slow
@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_git_fetcher_checks_out_exact_commit(tmp_path: Path) -> None:
    origin = tmp_path / "origin"
    origin.mkdir()

    def git(*args: str) -> str:
        return subprocess.run(
            ["git", *args], cwd=origin, check=True, capture_output=True, text=True
        ).stdout.strip()

    git("init", "--quiet")
    git("config", "uploadpack.allowReachableSHA1InWant", "true")
    (origin / "build.sh").write_text("v1\n", encoding="utf-8")
    git("add", ".")
    git("-c", "user.email=t@example.com", "-c", "user.name=t", "commit", "-qm", "one")
    first = git("rev-parse", "HEAD")
    (origin / "build.sh").write_text("v2\n", encoding="utf-8")
    git("-c", "user.email=t@example.com", "-c", "user.name=t", "commit", "-qam", "two")

    fetcher = GitSourceFetcher(f"file://{origin}", timeout_s=60)
    dest = tmp_path / "checkout"
    fetcher.fetch(first, dest)
    assert (dest / "build.sh").read_text(encoding="utf-8") == "v1\n"

    with pytest.raises(SourceUnavailable):
        fetcher.fetch("e" * 40, tmp_path / "missing")
