from __future__ import annotations

import subprocess
import urllib.error
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import orjson

from ..errors import PlanInferenceFailed, PlanInferenceMalformed, StageFailure
from ..schemas import BuildPlan, ProposalRecord
from ..utils import canonical_dumps, read_json
from .validator import normalize_output_path, vcs_step_indexes

PLAN_KEYS = {"steps", "wasmOutputPath"}

EXTRACTION_PROMPT = """You are analyzing a governance proposal to extract build verification instructions.

The proposal describes a canister upgrade. The repository {repo_url} has ALREADY been cloned and
commit {commit_hash} has been checked out. You are in the repository root directory.

Extract ONLY the build commands and the path of the produced WASM module. Return exactly:

{{"steps": ["build command 1", "build command 2"], "wasmOutputPath": "path/to/output.wasm"}}

Rules:
- Do NOT include git clone, git fetch, git checkout or any other version-control command.
- Do NOT include cd commands; paths are relative to the repository root.
- Only include the actual build commands (for example bazel build or ./ci/container/build-ic.sh).
- Return ONLY valid JSON. No markdown code blocks, no explanation.

Proposal:
Title: {title}
Summary: {summary}
URL: {url}
"""


@dataclass(frozen=True)
class PlanRequest:
    proposal_id: str
    title: str
    summary: str
    url: str
    commit_hash: str
    repo_url: str

    @classmethod
    def build(cls, record: ProposalRecord, commit_hash: str, repo_url: str) -> "PlanRequest":
        return cls(
            proposal_id=record.proposal_id,
            title=record.title,
            summary=record.summary,
            url=record.url,
            commit_hash=commit_hash,
            repo_url=repo_url,
        )

    def prompt(self) -> str:
        return EXTRACTION_PROMPT.format(
            repo_url=self.repo_url,
            commit_hash=self.commit_hash,
            title=self.title,
            summary=self.summary,
            url=self.url,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "title": self.title,
            "summary": self.summary,
            "url": self.url,
            "commit_hash": self.commit_hash,
            "repo_url": self.repo_url,
            "prompt": self.prompt(),
        }


@dataclass(frozen=True)
class InferenceResult:
    """Tagged outcome of plan inference: exactly one of ``plan`` or ``failure`` is set."""

    inferrer_id: str
    raw_response: Optional[str]
    plan: Optional[BuildPlan] = None
    failure: Optional[StageFailure] = None

    @property
    def ok(self) -> bool:
        return self.plan is not None


class PlanInferrer(Protocol):
    inferrer_id: str

    def complete(self, request: PlanRequest) -> str:
        """Return the raw model response; raise PlanInferenceFailed on transport errors."""
        ...


def parse_plan_response(raw: str, commit_hash: str, inferrer_id: str = "") -> BuildPlan:
    text = raw.strip()
    if not text:
        raise PlanInferenceMalformed("empty response")
    if text.startswith("```"):
        raise PlanInferenceMalformed("response is wrapped in markdown fencing")
    try:
        parsed = orjson.loads(text)
    except orjson.JSONDecodeError as exc:
        raise PlanInferenceMalformed("response is not JSON") from exc
    if not isinstance(parsed, dict):
        raise PlanInferenceMalformed("response is not a JSON object")
    extra = sorted(set(parsed) - PLAN_KEYS)
    if extra:
        raise PlanInferenceMalformed("unexpected keys", keys=extra)
    if "steps" not in parsed:
        raise PlanInferenceMalformed("missing steps")
    steps = parsed["steps"]
    if not isinstance(steps, list):
        raise PlanInferenceMalformed("steps is not an array")
    if not steps:
        raise PlanInferenceMalformed("steps is empty")
    if not all(isinstance(step, str) and step.strip() for step in steps):
        raise PlanInferenceMalformed("steps must be non-empty strings")
    vcs_steps = vcs_step_indexes(steps)
    if vcs_steps:
        raise PlanInferenceMalformed("version-control command in plan", step_indexes=vcs_steps)
    output_path = parsed.get("wasmOutputPath")
    if not isinstance(output_path, str):
        raise PlanInferenceMalformed("missing wasmOutputPath")
    normalized = normalize_output_path(output_path)
    if normalized is None:
        raise PlanInferenceMalformed("wasmOutputPath escapes the repository", path=output_path)
    return BuildPlan(
        commit_hash=commit_hash,
        steps=[step.strip() for step in steps],
        output_path=normalized,
        inferrer_id=inferrer_id,
    )


def infer_plan(inferrer: PlanInferrer, request: PlanRequest) -> InferenceResult:
    try:
        raw = inferrer.complete(request)
    except PlanInferenceFailed as exc:
        return InferenceResult(inferrer.inferrer_id, raw_response=None, failure=exc)
    try:
        plan = parse_plan_response(raw, request.commit_hash, inferrer.inferrer_id)
    except PlanInferenceMalformed as exc:
        return InferenceResult(inferrer.inferrer_id, raw_response=raw, failure=exc)
    return InferenceResult(inferrer.inferrer_id, raw_response=raw, plan=plan)


class StaticPlanInferrer:
    def __init__(self, raw_response: str, inferrer_id: str = "static") -> None:
        self.raw_response = raw_response
        self.inferrer_id = inferrer_id

    def complete(self, request: PlanRequest) -> str:
        _ = request
        return self.raw_response


class ReplayPlanInferrer:
    """Serves previously recorded raw responses, keyed by commit hash.

    The replay file is an audit record, so any line that is not a complete
    ``{"commit_hash", "raw_response"}`` object fails the inference instead of
    being skipped.
    """

    def __init__(self, replay_path: Path) -> None:
        self.replay_path = Path(replay_path)
        self.inferrer_id = f"replay:{self.replay_path.name}"
        self._records: Optional[Dict[str, str]] = None

    def _entries(self, path: Path) -> List[tuple[str, Any]]:
        if path.suffix == ".jsonl":
            entries: List[tuple[str, Any]] = []
            for line_no, line in enumerate(path.read_bytes().splitlines(), start=1):
                if not line.strip():
                    continue
                try:
                    entries.append((f"line {line_no}", orjson.loads(line)))
                except orjson.JSONDecodeError as exc:
                    raise PlanInferenceFailed(
                        "malformed replay record", replay=path.name, line=line_no
                    ) from exc
            return entries
        try:
            data = read_json(path)
        except orjson.JSONDecodeError as exc:
            raise PlanInferenceFailed("malformed replay file", replay=path.name) from exc
        items = data if isinstance(data, list) else [data]
        return [(f"item {idx}", item) for idx, item in enumerate(items)]

    def _load_records(self) -> Dict[str, str]:
        if self._records is not None:
            return self._records
        indexed: Dict[str, str] = {}
        if self.replay_path.exists():
            for where, record in self._entries(self.replay_path):
                commit_hash = record.get("commit_hash") if isinstance(record, dict) else None
                raw_response = record.get("raw_response") if isinstance(record, dict) else None
                if not isinstance(commit_hash, str) or not isinstance(raw_response, str):
                    raise PlanInferenceFailed(
                        "replay record lacks commit_hash or raw_response",
                        replay=self.replay_path.name,
                        at=where,
                    )
                indexed[commit_hash.lower()] = raw_response
        self._records = indexed
        return indexed

    def complete(self, request: PlanRequest) -> str:
        raw = self._load_records().get(request.commit_hash)
        if raw is None:
            raise PlanInferenceFailed("no recorded response", commit_hash=request.commit_hash)
        return raw



class SubprocessPlanInferrer:
    """Runs an external command that reads a PlanRequest on stdin and prints the raw response."""

    def __init__(self, command: List[str], timeout_s: float = 120.0) -> None:
        self.command = list(command)
        self.timeout_s = timeout_s
        self.inferrer_id = f"subprocess:{' '.join(self.command)}"

    def complete(self, request: PlanRequest) -> str:
        try:
            result = subprocess.run(
                self.command,
                input=canonical_dumps(request.to_payload()),
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                timeout=self.timeout_s,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise PlanInferenceFailed("timeout", timeout_s=self.timeout_s) from exc
        except OSError as exc:
            raise PlanInferenceFailed("spawn_failed", error=str(exc)) from exc
        if result.returncode != 0:
            raise PlanInferenceFailed("nonzero", exit_code=result.returncode)
        return result.stdout.decode("utf-8", errors="replace")


class GeminiPlanInferrer:
    def __init__(
        self,
        api_key: str,
        model: str,
        endpoint: str,
        timeout_s: float = 120.0,
        temperature: float = 0.1,
        max_output_tokens: int = 1024,
    ) -> None:
        if not api_key:
            raise ValueError("an API key is required for the Gemini inferrer")
        self.api_key = api_key
        self.model = model
        self.endpoint = endpoint.rstrip("/")
        self.timeout_s = timeout_s
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.inferrer_id = f"gemini:{model}"

    def _body(self, request: PlanRequest) -> bytes:
        return orjson.dumps(
            {
                "contents": [{"role": "user", "parts": [{"text": request.prompt()}]}],
                "generationConfig": {
                    "temperature": self.temperature,
                    "maxOutputTokens": self.max_output_tokens,
                },
            }
        )

    def complete(self, request: PlanRequest) -> str:
        url = f"{self.endpoint}/{self.model}:generateContent"
        req = urllib.request.Request(
            url,
            data=self._body(request),
            headers={"Content-Type": "application/json", "x-goog-api-key": self.api_key},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                body = resp.read()
        except urllib.error.HTTPError as exc:
            raise PlanInferenceFailed("http_error", status=exc.code) from exc
        except OSError as exc:
            raise PlanInferenceFailed("unreachable", error=str(exc)) from exc
        try:
            data = orjson.loads(body)
            parts = data["candidates"][0]["content"]["parts"]
        except (orjson.JSONDecodeError, KeyError, IndexError, TypeError) as exc:
            raise PlanInferenceFailed("unexpected API response shape") from exc
        return "".join(part.get("text", "") for part in parts if isinstance(part, dict))
