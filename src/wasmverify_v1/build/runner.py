from __future__ import annotations

import os
import signal
import subprocess
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import IO, List, Optional, Protocol


def build_env(extra: Optional[dict[str, str]] = None) -> dict[str, str]:
    env = {
        "PATH": os.environ.get("PATH", ""),
        "HOME": os.environ.get("HOME", "/tmp"),
        "LANG": "C.UTF-8",
        "LC_ALL": "C.UTF-8",
        "TZ": "UTC",
        "GIT_TERMINAL_PROMPT": "0",
    }
    if extra:
        env.update(extra)
    return env


@dataclass(frozen=True)
class CommandOutcome:
    exit_code: Optional[int]
    timed_out: bool
    duration_ns: int


def _kill_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def run_process(
    argv: List[str],
    cwd: Path,
    timeout_s: float,
    env: Optional[dict[str, str]] = None,
    log: Optional[IO[bytes]] = None,
) -> CommandOutcome:
    """Run one command in its own process group.

    The whole group is killed on timeout and on any exception escaping the wait,
    including KeyboardInterrupt, so no build process outlives its run.
    """
    start = time.time_ns()
    proc = subprocess.Popen(
        argv,
        cwd=cwd,
        env=env if env is not None else build_env(),
        stdin=subprocess.DEVNULL,
        stdout=log if log is not None else subprocess.DEVNULL,
        stderr=subprocess.STDOUT,
        start_new_session=True,
    )
    try:
        exit_code = proc.wait(timeout=timeout_s)
    except subprocess.TimeoutExpired:
        _kill_group(proc)
        proc.wait()
        return CommandOutcome(exit_code=None, timed_out=True, duration_ns=time.time_ns() - start)
    finally:
        if proc.poll() is None:
            _kill_group(proc)
            proc.wait()
    return CommandOutcome(exit_code=exit_code, timed_out=False, duration_ns=time.time_ns() - start)


class StepRunner(Protocol):
    environment_id: str

    def argv(self, step: str, workdir: Path, label: str) -> List[str]:
        ...

    def teardown(self, label: str) -> bool:
        ...


class LocalRunner:
    """Runs steps directly on the host. Only meant for development and tests."""

    def __init__(self, shell: str = "bash") -> None:
        self.shell = shell
        self.environment_id = f"local:{shell}"

    def argv(self, step: str, workdir: Path, label: str) -> List[str]:
        _ = (workdir, label)
        return [self.shell, "-c", step]

    def teardown(self, label: str) -> bool:
        _ = label
        return True


class ContainerRunner:
    def __init__(
        self,
        image: str,
        engine: str = "docker",
        shell: str = "bash",
        extra_args: Optional[List[str]] = None,
    ) -> None:
        self.image = image
        self.engine = engine
        self.shell = shell
        self.extra_args = list(extra_args or [])
        self.environment_id = f"{engine}:{image}"

    def container_name(self, label: str) -> str:
        return f"wasmverify-{label}"

    def argv(self, step: str, workdir: Path, label: str) -> List[str]:
        return [
            self.engine,
            "run",
            "--rm",
            "--name",
            self.container_name(label),
            "-v",
            f"{workdir}:/workspace",
            "-w",
            "/workspace",
            *self.extra_args,
            self.image,
            self.shell,
            "-c",
            step,
        ]

    def teardown(self, label: str) -> bool:
        # Killing the client does not stop the container; remove it by name.
        try:
            result = subprocess.run(
                [self.engine, "rm", "-f", self.container_name(label)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=60,
                check=False,
            )
        except (subprocess.TimeoutExpired, OSError):
            return False
        return result.returncode == 0


def new_label() -> str:
    return uuid.uuid4().hex[:12]
