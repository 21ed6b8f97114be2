from __future__ import annotations

import contextlib
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Sequence, TypeVar

import orjson
from pydantic import ValidationError

from ..build.executor import BuildResult
from ..config import Settings
from ..errors import PlanInferenceMalformed, RunBudgetExceeded, StageFailure
from ..judge import judge
from ..ledger.ledger import Ledger
from ..plan.inferrer import PlanInferrer, PlanRequest, infer_plan
from ..proposal.extract import resolve_references
from ..proposal.source import ProposalSource
from ..report import ReportSink, render_markdown
from ..schemas import (
    BuildPlan,
    ProposalRecord,
    ResolvedReferences,
    TrustParameters,
    Verdict,
    VerdictRecord,
)
from ..state_store import BUILD_LOG_FILE, LEDGER_FILE, REPORT_FILE, RunStore
from ..utils import deadline_after

T = TypeVar("T")


class Executor(Protocol):
    environment_id: str
    repo_url: str

    def execute(
        self,
        commit_hash: str,
        plan: BuildPlan,
        deadline: Optional[float] = None,
        ledger: Optional[Ledger] = None,
        log_path: Optional[Path] = None,
    ) -> BuildResult:
        ...


@dataclass
class _RunState:
    proposal_id: str
    record: Optional[ProposalRecord] = None
    refs: Optional[ResolvedReferences] = None
    plan: Optional[BuildPlan] = None
    inferrer_id: str = ""


@contextlib.contextmanager
def _stage(ledger: Ledger, name: str, deadline: Optional[float]) -> Iterator[None]:
    if deadline is not None and time.monotonic() >= deadline:
        failure = RunBudgetExceeded("budget spent before stage", stage=name)
        ledger.append("STAGE_FAILED", {"stage": name, **failure.to_record()})
        raise failure
    ledger.append("STAGE_START", {"stage": name})
    start = time.time_ns()
    try:
        yield
    except StageFailure as failure:
        ledger.append("STAGE_FAILED", {"stage": name, **failure.to_record()})
        raise
    ledger.append("STAGE_DONE", {"stage": name, "duration_ns": time.time_ns() - start})


def _resumable(loader: Callable[[], Optional[T]]) -> Optional[T]:
    # A record that no longer validates is redone rather than trusted.
    try:
        return loader()
    except (ValidationError, orjson.JSONDecodeError, KeyError, TypeError):
        return None


def _fetch_proposal(
    state: _RunState, source: ProposalSource, store: RunStore, resume: bool
) -> ProposalRecord:
    if resume:
        cached = _resumable(store.load_proposal)
        if cached is not None and cached.proposal_id == state.proposal_id:
            store.ledger.append("STAGE_RESUMED", {"stage": "proposal"})
            return cached
    record = source.get_proposal(state.proposal_id)
    store.save_proposal(record)
    return record


def _infer_plan(
    state: _RunState,
    record: ProposalRecord,
    refs: ResolvedReferences,
    inferrer: PlanInferrer,
    repo_url: str,
    store: RunStore,
    resume: bool,
) -> BuildPlan:
    commit_hash = refs.commit_hash
    if resume:
        cached = _resumable(store.load_plan)
        if cached is not None and cached.commit_hash == commit_hash:
            store.ledger.append("STAGE_RESUMED", {"stage": "plan"})
            state.inferrer_id = cached.inferrer_id
            return cached
    state.inferrer_id = inferrer.inferrer_id
    request = PlanRequest.build(record, commit_hash, repo_url)
    result = infer_plan(inferrer, request)
    store.save_inference_raw(result.raw_response)
    if result.failure is not None:
        raise result.failure
    if result.plan is None:
        raise PlanInferenceMalformed("inferrer returned neither plan nor failure")
    store.save_plan(result.plan)
    return result.plan


def _build(
    refs: ResolvedReferences,
    plan: BuildPlan,
    executor: Executor,
    store: RunStore,
    resume: bool,
    deadline: Optional[float],
) -> BuildResult:
    if resume:
        cached = _resumable(store.load_build)
        # A build is only reused for the same commit, plan and environment.
        if cached is not None and (
            cached.environment_id,
            cached.commit_hash,
            cached.plan_hash,
        ) == (executor.environment_id, refs.commit_hash, plan.stable_hash()):
            store.ledger.append("STAGE_RESUMED", {"stage": "build"})
            return cached
    result = executor.execute(
        refs.commit_hash,
        plan,
        deadline=deadline,
        ledger=store.ledger,
        log_path=store.root / BUILD_LOG_FILE,
    )
    store.save_build(result)
    return result


def _trust(state: _RunState, executor: Executor) -> TrustParameters:
    record, refs = state.record, state.refs
    return TrustParameters(
        proposal_id=state.proposal_id,
        proposal_source=record.source if record else "",
        target_resource_id=record.target_resource_id if record else None,
        repo_url=executor.repo_url,
        commit_hash=refs.commit_hash if refs else None,
        commit_source=refs.commit_source if refs else None,
        expected_hash_source=refs.expected_hash_source if refs else None,
        digest_algorithm=refs.digest_algorithm if refs else None,
        build_environment=executor.environment_id,
        image_pinned="@sha256:" in executor.environment_id,
        inferrer_id=state.inferrer_id,
    )


def _verdict_record(state: _RunState, verdict: Verdict, executor: Executor) -> VerdictRecord:
    expected_hash = verdict.detail.get("expected_hash")
    if expected_hash is None and state.refs is not None:
        expected_hash = state.refs.expected_hash
    if expected_hash is None and state.record is not None:
        expected_hash = state.record.expected_artifact_hash
    reasons: List[Dict[str, Any]] = []
    if verdict.kind == "INCONCLUSIVE" and verdict.reason is not None:
        reasons.append({**verdict.detail, "reason": verdict.reason.value})
    elif verdict.kind == "MISMATCH":
        reasons.append({"reason": "DIGEST_MISMATCH", "detail": "produced digest differs"})
    return VerdictRecord(
        verdict=verdict.kind,
        expected_hash=expected_hash,
        produced_hash=verdict.detail.get("produced_hash"),
        reasons=reasons,
        trust=_trust(state, executor),
    )


def verify_proposal(
    proposal_id: str,
    run_dir: Path,
    settings: Settings,
    source: ProposalSource,
    inferrer: PlanInferrer,
    executor: Executor,
    resume: bool = False,
    sinks: Sequence[ReportSink] = (),
) -> VerdictRecord:
    """Run the four verification stages once for one proposal.

    Stages run strictly in order and any StageFailure ends the run as
    INCONCLUSIVE with that failure's reason; no later stage is attempted.
    Each stage's output is persisted in ``run_dir`` before the next starts.
    """
    run_dir = Path(run_dir)
    ledger = Ledger(run_dir / LEDGER_FILE, run_id=run_dir.name)
    store = RunStore(run_dir, ledger)
    if not resume:
        store.reset()
    deadline = deadline_after(settings.run_budget_s)
    state = _RunState(proposal_id=str(proposal_id))
    ledger.append(
        "RUN_START",
        {
            "proposal_id": state.proposal_id,
            "resume": resume,
            "source": source.source_id,
            "inferrer": inferrer.inferrer_id,
            "environment": executor.environment_id,
            "run_budget_s": settings.run_budget_s,
        },
    )
    try:
        with _stage(ledger, "proposal", deadline):
            record = _fetch_proposal(state, source, store, resume)
            state.record = record
        with _stage(ledger, "references", deadline):
            refs = resolve_references(record)
            state.refs = refs
            ledger.append("REFERENCES_RESOLVED", refs.model_dump())
        with _stage(ledger, "plan", deadline):
            plan = _infer_plan(state, record, refs, inferrer, executor.repo_url, store, resume)
            state.plan = plan
        with _stage(ledger, "build", deadline):
            build = _build(refs, plan, executor, store, resume, deadline)
        with _stage(ledger, "judge", deadline):
            verdict = judge(refs.expected_hash, build.artifact)
    except StageFailure as failure:
        verdict = Verdict(
            kind="INCONCLUSIVE",
            reason=failure.reason,
            detail={k: v for k, v in failure.to_record().items() if k != "reason"},
        )
    except BaseException as exc:
        ledger.append("RUN_ABORTED", {"error": exc.__class__.__name__})
        raise

    record = _verdict_record(state, verdict, executor)
    store.save_verdict(record)
    markdown = render_markdown(record)
    store.write_text(REPORT_FILE, markdown, "report")
    ledger.append(
        "VERDICT",
        {
            "verdict": record.verdict,
            "reasons": record.reasons,
            "expected_hash": record.expected_hash,
            "produced_hash": record.produced_hash,
        },
    )
    for sink in sinks:
        sink.publish(record, markdown)
    ledger.append("RUN_END", {"verdict": record.verdict, "record_hash": record.stable_hash()})
    return record
