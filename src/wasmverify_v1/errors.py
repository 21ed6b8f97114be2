from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional


class FailureReason(str, Enum):
    PROPOSAL_NOT_FOUND = "PROPOSAL_NOT_FOUND"
    PROPOSAL_MALFORMED = "PROPOSAL_MALFORMED"
    PROPOSAL_SOURCE_UNAVAILABLE = "PROPOSAL_SOURCE_UNAVAILABLE"
    COMMIT_UNRESOLVABLE = "COMMIT_UNRESOLVABLE"
    EXPECTED_HASH_UNAVAILABLE = "EXPECTED_HASH_UNAVAILABLE"
    PLAN_INFERENCE_MALFORMED = "PLAN_INFERENCE_MALFORMED"
    PLAN_INFERENCE_FAILED = "PLAN_INFERENCE_FAILED"
    SOURCE_UNAVAILABLE = "SOURCE_UNAVAILABLE"
    BUILD_FAILED = "BUILD_FAILED"
    ARTIFACT_NOT_FOUND = "ARTIFACT_NOT_FOUND"
    RUN_BUDGET_EXCEEDED = "RUN_BUDGET_EXCEEDED"


class StageFailure(RuntimeError):
    """A modeled, expected failure of one pipeline stage.

    Raised inside a stage and converted to an INCONCLUSIVE verdict by the pipeline.
    Subclasses fix the reason; ``context`` carries the structured detail for the report.
    """

    reason: FailureReason = FailureReason.PROPOSAL_MALFORMED

    def __init__(self, detail: str = "", **context: Any) -> None:
        super().__init__(f"{self.reason.value}: {detail}" if detail else self.reason.value)
        self.detail = detail
        self.context: Dict[str, Any] = context

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {"reason": self.reason.value, "detail": self.detail}
        record.update(self.context)
        return record


class ProposalNotFound(StageFailure):
    reason = FailureReason.PROPOSAL_NOT_FOUND


class ProposalMalformed(StageFailure):
    reason = FailureReason.PROPOSAL_MALFORMED


class ProposalSourceUnavailable(StageFailure):
    reason = FailureReason.PROPOSAL_SOURCE_UNAVAILABLE


class CommitUnresolvable(StageFailure):
    reason = FailureReason.COMMIT_UNRESOLVABLE


class ExpectedHashUnavailable(StageFailure):
    reason = FailureReason.EXPECTED_HASH_UNAVAILABLE


class PlanInferenceMalformed(StageFailure):
    reason = FailureReason.PLAN_INFERENCE_MALFORMED


class PlanInferenceFailed(StageFailure):
    reason = FailureReason.PLAN_INFERENCE_FAILED


class SourceUnavailable(StageFailure):
    reason = FailureReason.SOURCE_UNAVAILABLE


class BuildFailed(StageFailure):
    reason = FailureReason.BUILD_FAILED

    def __init__(self, step_index: int, exit_code: Optional[int], detail: str = "") -> None:
        super().__init__(detail, step_index=step_index, exit_code=exit_code)
        self.step_index = step_index
        self.exit_code = exit_code


class ArtifactNotFound(StageFailure):
    reason = FailureReason.ARTIFACT_NOT_FOUND

    def __init__(self, declared_path: str, candidates: List[str], detail: str = "") -> None:
        super().__init__(detail, declared_path=declared_path, candidates=list(candidates))
        self.declared_path = declared_path
        self.candidates = list(candidates)


class RunBudgetExceeded(StageFailure):
    reason = FailureReason.RUN_BUDGET_EXCEEDED
