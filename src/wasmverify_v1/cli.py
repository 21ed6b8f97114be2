from __future__ import annotations

import os
import shlex
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, List, Optional

import orjson
import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from .build.executor import BuildExecutor
from .build.runner import ContainerRunner, LocalRunner
from .build.source import GitSourceFetcher
from .config import Settings
from .ledger.ledger import Ledger
from .orchestrator.pipeline import verify_proposal
from .plan.inferrer import (
    GeminiPlanInferrer,
    PlanInferrer,
    ReplayPlanInferrer,
    StaticPlanInferrer,
    SubprocessPlanInferrer,
)
from .proposal.source import (
    DashboardProposalSource,
    FileProposalSource,
    ProposalSource,
    SubprocessProposalSource,
)
from .report import render_markdown, trust_rows
from .schemas import VerdictRecord
from .state_store import LEDGER_FILE, REPORT_FILE, VERDICT_FILE
from .utils import canonical_dumps, ensure_dir, read_json, write_text

# 1 is left to uncaught exceptions and 2 to usage errors.
EXIT_MATCH = 0
EXIT_INCONCLUSIVE = 3
EXIT_MISMATCH = 4
EXIT_LEDGER_BROKEN = 5
EXIT_CODES = {"MATCH": EXIT_MATCH, "MISMATCH": EXIT_MISMATCH, "INCONCLUSIVE": EXIT_INCONCLUSIVE}

app = typer.Typer(help="Reproducible-build verifier for governance upgrade proposals")
console = Console()

PROPOSAL_ID_ARGUMENT = typer.Argument(..., help="Governance proposal identifier")
PROPOSAL_IDS_ARGUMENT = typer.Argument(..., help="Proposal identifiers to verify")
RUN_DIR_OPTION = typer.Option(None, "--run-dir")
RUN_DIR_REQUIRED_OPTION = typer.Option(..., "--run-dir", exists=True, file_okay=False)
OUT_ROOT_OPTION = typer.Option(Path("runs"), "--out-root")
CONFIG_OPTION = typer.Option(None, "--config", exists=True, dir_okay=False)
SOURCE_OPTION = typer.Option("dashboard", "--source", help="dashboard, file or subprocess")
SOURCE_DIR_OPTION = typer.Option(None, "--source-dir", exists=True, file_okay=False)
SOURCE_CMD_OPTION = typer.Option(None, "--source-cmd")
INFERRER_OPTION = typer.Option(
    "gemini", "--inferrer", help="gemini, subprocess, replay or static"
)
INFERRER_CMD_OPTION = typer.Option(None, "--inferrer-cmd")
REPLAY_FILE_OPTION = typer.Option(None, "--replay-file", exists=True, dir_okay=False)
STATIC_RESPONSE_OPTION = typer.Option(None, "--static-response", exists=True, dir_okay=False)
RUNNER_OPTION = typer.Option(None, "--runner", help="container or local")
IMAGE_OPTION = typer.Option(None, "--image")
REPO_URL_OPTION = typer.Option(None, "--repo-url")
RUN_BUDGET_OPTION = typer.Option(None, "--run-budget-s")
RESUME_OPTION = typer.Option(False, "--resume")
JSON_OPTION = typer.Option(False, "--json")
MAX_WORKERS_OPTION = typer.Option(2, "--max-workers", min=1)

ledger_app = typer.Typer(help="Ledger commands")
app.add_typer(ledger_app, name="ledger")


@app.callback()
def main() -> None:
    pass


def _load_settings(
    config: Optional[Path],
    runner: Optional[str] = None,
    image: Optional[str] = None,
    repo_url: Optional[str] = None,
    run_budget_s: Optional[float] = None,
) -> Settings:
    try:
        settings = Settings(**read_json(config)) if config is not None else Settings()
    except orjson.JSONDecodeError as exc:
        raise typer.BadParameter(f"config is not valid JSON: {exc}") from exc
    except (ValidationError, TypeError) as exc:
        raise typer.BadParameter(f"invalid settings: {exc}") from exc
    update: Dict[str, object] = {}
    if runner is not None:
        if runner not in {"container", "local"}:
            raise typer.BadParameter(f"unknown runner: {runner}")
        update["runner"] = runner
    if image:
        update["build_image"] = image
    if repo_url:
        update["repo_url"] = repo_url
    if run_budget_s is not None:
        update["run_budget_s"] = run_budget_s
    return settings.model_copy(update=update) if update else settings


def _build_source(
    kind: str, settings: Settings, source_dir: Optional[Path], source_cmd: Optional[str]
) -> ProposalSource:
    if kind == "dashboard":
        return DashboardProposalSource(settings.dashboard_url, settings.source_timeout_s)
    if kind == "file":
        if source_dir is None:
            raise typer.BadParameter("missing --source-dir for file source")
        return FileProposalSource(source_dir)
    if kind == "subprocess":
        if not source_cmd:
            raise typer.BadParameter("missing --source-cmd for subprocess source")
        return SubprocessProposalSource(shlex.split(source_cmd), settings.source_timeout_s)
    raise typer.BadParameter(f"unknown source: {kind}")


def _build_inferrer(
    kind: str,
    settings: Settings,
    inferrer_cmd: Optional[str],
    replay_file: Optional[Path],
    static_response: Optional[Path],
) -> PlanInferrer:
    if kind == "gemini":
        api_key = settings.inference_api_key or os.environ.get("GEMINI_API_KEY", "")
        if not api_key:
            raise typer.BadParameter("set WASMVERIFY_INFERENCE_API_KEY or GEMINI_API_KEY")
        return GeminiPlanInferrer(
            api_key=api_key,
            model=settings.inference_model,
            endpoint=settings.inference_endpoint,
            timeout_s=settings.inference_timeout_s,
            temperature=settings.inference_temperature,
            max_output_tokens=settings.inference_max_output_tokens,
        )
    if kind == "subprocess":
        if not inferrer_cmd:
            raise typer.BadParameter("missing --inferrer-cmd for subprocess inferrer")
        return SubprocessPlanInferrer(shlex.split(inferrer_cmd), settings.inference_timeout_s)
    if kind == "replay":
        if replay_file is None:
            raise typer.BadParameter("missing --replay-file for replay inferrer")
        return ReplayPlanInferrer(replay_file)
    if kind == "static":
        if static_response is None:
            raise typer.BadParameter("missing --static-response for static inferrer")
        return StaticPlanInferrer(
            static_response.read_text(encoding="utf-8"), f"static:{static_response.name}"
        )
    raise typer.BadParameter(f"unknown inferrer: {kind}")


def build_executor(settings: Settings) -> BuildExecutor:
    if settings.runner == "local":
        runner: LocalRunner | ContainerRunner = LocalRunner(settings.shell)
    else:
        runner = ContainerRunner(
            settings.build_image,
            engine=settings.container_engine,
            shell=settings.shell,
            extra_args=settings.container_args,
        )
    return BuildExecutor(
        fetcher=GitSourceFetcher(settings.repo_url, settings.git_bin, settings.fetch_timeout_s),
        runner=runner,
        step_timeout_s=settings.step_timeout_s,
        search=settings.artifact_search,
        work_root=Path(settings.work_root) if settings.work_root else None,
    )


def _print_record(record: VerdictRecord, json_output: bool) -> None:
    if json_output:
        print(canonical_dumps(record.model_dump(mode="json")).decode("utf-8"))
        return
    table = Table(title=f"Verification: {record.verdict}")
    table.add_column("Field")
    table.add_column("Value")
    for name, value in trust_rows(record):
        table.add_row(name, value)
    for reason in record.reasons:
        table.add_row("Reason", f"{reason.get('reason')} {reason.get('detail', '')}".strip())
    console.print(table)


@app.command("verify")
def verify_cmd(
    proposal_id: str = PROPOSAL_ID_ARGUMENT,
    run_dir: Optional[Path] = RUN_DIR_OPTION,
    config: Optional[Path] = CONFIG_OPTION,
    source: str = SOURCE_OPTION,
    source_dir: Optional[Path] = SOURCE_DIR_OPTION,
    source_cmd: Optional[str] = SOURCE_CMD_OPTION,
    inferrer: str = INFERRER_OPTION,
    inferrer_cmd: Optional[str] = INFERRER_CMD_OPTION,
    replay_file: Optional[Path] = REPLAY_FILE_OPTION,
    static_response: Optional[Path] = STATIC_RESPONSE_OPTION,
    runner: Optional[str] = RUNNER_OPTION,
    image: Optional[str] = IMAGE_OPTION,
    repo_url: Optional[str] = REPO_URL_OPTION,
    run_budget_s: Optional[float] = RUN_BUDGET_OPTION,
    resume: bool = RESUME_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    settings = _load_settings(config, runner, image, repo_url, run_budget_s)
    proposal_source = _build_source(source, settings, source_dir, source_cmd)
    plan_inferrer = _build_inferrer(inferrer, settings, inferrer_cmd, replay_file, static_response)
    if run_dir is None:
        run_root = Path("runs")
        ensure_dir(run_root)
        run_dir = run_root / f"proposal_{proposal_id}"
    record = verify_proposal(
        proposal_id=proposal_id,
        run_dir=run_dir,
        settings=settings,
        source=proposal_source,
        inferrer=plan_inferrer,
        executor=build_executor(settings),
        resume=resume,
    )
    _print_record(record, json_output)
    raise typer.Exit(code=EXIT_CODES[record.verdict])


@app.command("scan")
def scan_cmd(
    proposal_ids: List[str] = PROPOSAL_IDS_ARGUMENT,
    out_root: Path = OUT_ROOT_OPTION,
    max_workers: int = MAX_WORKERS_OPTION,
    config: Optional[Path] = CONFIG_OPTION,
    source: str = SOURCE_OPTION,
    source_dir: Optional[Path] = SOURCE_DIR_OPTION,
    source_cmd: Optional[str] = SOURCE_CMD_OPTION,
    inferrer: str = INFERRER_OPTION,
    inferrer_cmd: Optional[str] = INFERRER_CMD_OPTION,
    replay_file: Optional[Path] = REPLAY_FILE_OPTION,
    static_response: Optional[Path] = STATIC_RESPONSE_OPTION,
    runner: Optional[str] = RUNNER_OPTION,
    image: Optional[str] = IMAGE_OPTION,
    repo_url: Optional[str] = REPO_URL_OPTION,
    run_budget_s: Optional[float] = RUN_BUDGET_OPTION,
) -> None:
    settings = _load_settings(config, runner, image, repo_url, run_budget_s)
    proposal_source = _build_source(source, settings, source_dir, source_cmd)
    plan_inferrer = _build_inferrer(inferrer, settings, inferrer_cmd, replay_file, static_response)
    executor = build_executor(settings)
    ensure_dir(out_root)

    def run_one(proposal_id: str) -> VerdictRecord:
        return verify_proposal(
            proposal_id=proposal_id,
            run_dir=out_root / f"proposal_{proposal_id}",
            settings=settings,
            source=proposal_source,
            inferrer=plan_inferrer,
            executor=executor,
        )

    unique_ids = list(dict.fromkeys(proposal_ids))
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        records = list(pool.map(run_one, unique_ids))

    table = Table(title="Scan Summary")
    table.add_column("Proposal")
    table.add_column("Verdict")
    table.add_column("Reason")
    for proposal_id, record in zip(unique_ids, records):
        reason = record.reasons[0]["reason"] if record.reasons else ""
        table.add_row(proposal_id, record.verdict, reason)
    console.print(table)
    summary = {
        proposal_id: {"verdict": record.verdict, "reasons": record.reasons}
        for proposal_id, record in zip(unique_ids, records)
    }
    (out_root / "scan.json").write_bytes(canonical_dumps(summary))
    verdicts = {record.verdict for record in records}
    if "MISMATCH" in verdicts:
        raise typer.Exit(code=EXIT_MISMATCH)
    if "INCONCLUSIVE" in verdicts:
        raise typer.Exit(code=EXIT_INCONCLUSIVE)


@app.command("report")
def report_cmd(
    run_dir: Path = RUN_DIR_REQUIRED_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    verdict_path = run_dir / VERDICT_FILE
    if not verdict_path.exists():
        raise typer.BadParameter(f"no {VERDICT_FILE} in {run_dir}")
    record = VerdictRecord(**read_json(verdict_path))
    write_text(run_dir / REPORT_FILE, render_markdown(record))
    _print_record(record, json_output)
    raise typer.Exit(code=EXIT_CODES[record.verdict])


@ledger_app.command("verify")
def ledger_verify_cmd(run_dir: Path = RUN_DIR_REQUIRED_OPTION) -> None:
    ok, message = Ledger.verify_chain(run_dir / LEDGER_FILE)
    console.print({"ok": ok, "message": message})
    if not ok:
        raise typer.Exit(code=EXIT_LEDGER_BROKEN)
