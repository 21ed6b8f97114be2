from __future__ import annotations

import re
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import FailureReason
from .utils import CANONICALIZATION, HASH_ALGORITHM, normalize_hex, stable_hash

COMMIT_HASH_RE = re.compile(r"[0-9a-f]{40}")

VerdictKind = Literal["MATCH", "MISMATCH", "INCONCLUSIVE"]
ReferenceTier = Literal["structured", "text"]


class HashableModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    schema_version: str = "v1"
    canonicalization: str = CANONICALIZATION
    hash_algorithm: str = HASH_ALGORITHM

    def hash_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    def stable_hash(self) -> str:
        return stable_hash(self.hash_payload())


class ProposalRecord(HashableModel):
    proposal_id: str
    title: str = "Untitled"
    summary: str = ""
    url: str = ""
    action: Optional[str] = None
    target_resource_id: Optional[str] = None
    expected_artifact_hash: Optional[str] = None
    commit_hash: Optional[str] = None
    source: str = ""

    @field_validator("expected_artifact_hash")
    @classmethod
    def _normalize_expected(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return None
        normalized = normalize_hex(value)
        if normalized is None:
            raise ValueError("expected_artifact_hash is not hex")
        return normalized

    @field_validator("commit_hash")
    @classmethod
    def _normalize_commit(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return None
        lowered = value.strip().lower()
        if COMMIT_HASH_RE.fullmatch(lowered) is None:
            raise ValueError("commit_hash must be 40 hex characters")
        return lowered

    def text(self) -> str:
        return f"{self.title}\n{self.summary}\n{self.url}"


class ResolvedReferences(BaseModel):
    model_config = ConfigDict(frozen=True)

    commit_hash: str
    commit_source: ReferenceTier
    expected_hash: str
    expected_hash_source: ReferenceTier
    digest_algorithm: str


class BuildPlan(HashableModel):
    commit_hash: str
    steps: List[str]
    output_path: str
    inferrer_id: str = ""

    @model_validator(mode="after")
    def _non_empty(self) -> "BuildPlan":
        if not self.steps:
            raise ValueError("build plan requires at least one step")
        return self


class StepResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int
    command: str
    exit_code: Optional[int]
    duration_ns: int


class Verdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: VerdictKind
    reason: Optional[FailureReason] = None
    detail: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _reason_only_when_inconclusive(self) -> "Verdict":
        if self.kind == "INCONCLUSIVE" and self.reason is None:
            raise ValueError("INCONCLUSIVE requires a reason")
        if self.kind != "INCONCLUSIVE" and self.reason is not None:
            raise ValueError(f"{self.kind} carries no reason")
        return self

    @classmethod
    def inconclusive(cls, reason: FailureReason, **detail: Any) -> "Verdict":
        return cls(kind="INCONCLUSIVE", reason=reason, detail=detail)


class TrustParameters(BaseModel):
    model_config = ConfigDict(frozen=True)

    proposal_id: str
    proposal_source: str = ""
    target_resource_id: Optional[str] = None
    repo_url: str = ""
    commit_hash: Optional[str] = None
    commit_source: Optional[ReferenceTier] = None
    expected_hash_source: Optional[ReferenceTier] = None
    digest_algorithm: Optional[str] = None
    build_environment: str = ""
    image_pinned: bool = False
    inferrer_id: str = ""


class VerdictRecord(HashableModel):
    verdict: VerdictKind
    expected_hash: Optional[str] = None
    produced_hash: Optional[str] = None
    reasons: List[Dict[str, Any]] = Field(default_factory=list)
    trust: TrustParameters

    @property
    def reason(self) -> Optional[FailureReason]:
        if self.verdict != "INCONCLUSIVE" or not self.reasons:
            return None
        return FailureReason(self.reasons[0]["reason"])
