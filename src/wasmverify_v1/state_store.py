from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .build.executor import BuildResult
from .ledger.ledger import Ledger
from .schemas import BuildPlan, ProposalRecord, StepResult, VerdictRecord
from .utils import canonical_dumps, ensure_dir, hash_bytes, read_json

PROPOSAL_FILE = "proposal.json"
PLAN_FILE = "build-plan.json"
INFERENCE_RAW_FILE = "inference.raw.txt"
BUILD_FILE = "build.json"
ARTIFACT_FILE = "artifact/output.bin"
VERDICT_FILE = "verdict.json"
REPORT_FILE = "report.md"
LEDGER_FILE = "ledger.jsonl"
BUILD_LOG_FILE = "build.log"

STAGE_FILES = [
    PROPOSAL_FILE,
    PLAN_FILE,
    INFERENCE_RAW_FILE,
    BUILD_FILE,
    ARTIFACT_FILE,
    VERDICT_FILE,
    REPORT_FILE,
    BUILD_LOG_FILE,
]


@dataclass(frozen=True)
class ArtifactRecord:
    path: str
    content_hash: str
    bytes: int
    kind: str


class RunStore:
    """Stage records of one run directory.

    Every record is fsynced and renamed into place before the ledger notes it,
    so a record that exists on disk is complete and a resumed run may trust it.
    """

    def __init__(self, root: Path, ledger: Ledger) -> None:
        self.root = root
        self.ledger = ledger
        ensure_dir(root)

    def reset(self) -> None:
        for rel_path in STAGE_FILES:
            path = self.root / rel_path
            if path.exists():
                path.unlink()

    def _write(self, rel_path: str, data: bytes, kind: str) -> ArtifactRecord:
        path = self.root / rel_path
        ensure_dir(path.parent)
        tmp_path = path.with_name(f".{path.name}.tmp")
        with tmp_path.open("wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
        record = ArtifactRecord(
            path=str(path), content_hash=hash_bytes(data), bytes=len(data), kind=kind
        )
        self.ledger.append(
            "ARTIFACT_WRITTEN",
            {
                "path": rel_path,
                "content_hash": record.content_hash,
                "bytes": record.bytes,
                "kind": record.kind,
            },
        )
        return record

    def write_json(self, rel_path: str, data: Any, kind: str) -> ArtifactRecord:
        return self._write(rel_path, canonical_dumps(data), kind)

    def write_text(self, rel_path: str, text: str, kind: str) -> ArtifactRecord:
        return self._write(rel_path, text.encode("utf-8"), kind)

    def write_bytes(self, rel_path: str, data: bytes, kind: str) -> ArtifactRecord:
        return self._write(rel_path, data, kind)

    def _load(self, rel_path: str) -> Optional[Any]:
        path = self.root / rel_path
        if not path.exists():
            return None
        return read_json(path)

    def save_proposal(self, record: ProposalRecord) -> None:
        self.write_json(PROPOSAL_FILE, record.model_dump(mode="json"), "proposal")

    def load_proposal(self) -> Optional[ProposalRecord]:
        data = self._load(PROPOSAL_FILE)
        return ProposalRecord(**data) if data is not None else None

    def save_inference_raw(self, raw_response: Optional[str]) -> None:
        if raw_response is not None:
            self.write_text(INFERENCE_RAW_FILE, raw_response, "inference_raw")

    def save_plan(self, plan: BuildPlan) -> None:
        self.write_json(PLAN_FILE, plan.model_dump(mode="json"), "build_plan")

    def load_plan(self) -> Optional[BuildPlan]:
        data = self._load(PLAN_FILE)
        return BuildPlan(**data) if data is not None else None

    def save_build(self, result: BuildResult) -> None:
        # Artifact first: build.json is the marker that the stage completed.
        artifact = self.write_bytes(ARTIFACT_FILE, result.artifact, "artifact")
        self.write_json(
            BUILD_FILE,
            {
                "artifact_path": result.artifact_path,
                "artifact_content_hash": artifact.content_hash,
                "artifact_bytes": artifact.bytes,
                "environment_id": result.environment_id,
                "commit_hash": result.commit_hash,
                "plan_hash": result.plan_hash,
                "steps": [step.model_dump() for step in result.steps],
            },
            "build",
        )

    def load_build(self) -> Optional[BuildResult]:
        data = self._load(BUILD_FILE)
        artifact_path = self.root / ARTIFACT_FILE
        if data is None or not artifact_path.exists():
            return None
        artifact = artifact_path.read_bytes()
        if hash_bytes(artifact) != data.get("artifact_content_hash"):
            return None
        return BuildResult(
            artifact=artifact,
            artifact_path=data["artifact_path"],
            environment_id=data["environment_id"],
            steps=[StepResult(**step) for step in data.get("steps", [])],
            commit_hash=data.get("commit_hash", ""),
            plan_hash=data.get("plan_hash", ""),
        )

    def save_verdict(self, record: VerdictRecord) -> None:
        self.write_json(VERDICT_FILE, record.model_dump(mode="json"), "verdict")

    def load_verdict(self) -> Optional[VerdictRecord]:
        data = self._load(VERDICT_FILE)
        return VerdictRecord(**data) if data is not None else None
