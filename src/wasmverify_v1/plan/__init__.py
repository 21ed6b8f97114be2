from .inferrer import (
    GeminiPlanInferrer,
    InferenceResult,
    PlanInferrer,
    PlanRequest,
    ReplayPlanInferrer,
    StaticPlanInferrer,
    SubprocessPlanInferrer,
    infer_plan,
    parse_plan_response,
)
from .validator import find_vcs_command, normalize_output_path

__all__ = [
    "GeminiPlanInferrer",
    "InferenceResult",
    "PlanInferrer",
    "PlanRequest",
    "ReplayPlanInferrer",
    "StaticPlanInferrer",
    "SubprocessPlanInferrer",
    "infer_plan",
    "parse_plan_response",
    "find_vcs_command",
    "normalize_output_path",
]
