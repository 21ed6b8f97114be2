from pathlib import Path

from wasmverify_v1.build.executor import BuildResult
from wasmverify_v1.ledger.ledger import Ledger
from wasmverify_v1.schemas import BuildPlan, StepResult
from wasmverify_v1.state_store import ARTIFACT_FILE, BUILD_FILE, PLAN_FILE, RunStore

COMMIT = "0123456789abcdef0123456789abcdef01234567"


def _store(tmp_path: Path) -> RunStore:
    return RunStore(tmp_path / "run", Ledger(tmp_path / "run" / "ledger.jsonl"))


def test_build_record_round_trips(tmp_path: Path) -> None:
    store = _store(tmp_path)
    result = BuildResult(
        artifact=b"\x00asm",
        artifact_path="out/a.wasm",
        environment_id="local:sh",
        steps=[StepResult(index=0, command="make", exit_code=0, duration_ns=5)],
    )
    store.save_build(result)
    assert store.load_build() == result
    written = [event["payload"]["path"] for event in store.ledger.events("ARTIFACT_WRITTEN")]
    assert written == [ARTIFACT_FILE, BUILD_FILE]


def test_tampered_artifact_is_not_resumed(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save_build(BuildResult(b"\x00asm", "out/a.wasm", "local:sh"))
    (store.root / ARTIFACT_FILE).write_bytes(b"\x00asm-tampered")
    assert store.load_build() is None


def test_records_leave_no_temporary_files(tmp_path: Path) -> None:
    store = _store(tmp_path)
    plan = BuildPlan(commit_hash=COMMIT, steps=["make"], output_path="a.wasm")
    store.save_plan(plan)
    assert store.load_plan() == plan
    assert sorted(p.name for p in store.root.iterdir()) == ["build-plan.json", "ledger.jsonl"]


def test_reset_removes_stage_records_but_keeps_ledger(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save_plan(BuildPlan(commit_hash=COMMIT, steps=["make"], output_path="a.wasm"))
    store.reset()
    assert not (store.root / PLAN_FILE).exists()
    assert store.load_plan() is None
    assert (store.root / "ledger.jsonl").exists()
