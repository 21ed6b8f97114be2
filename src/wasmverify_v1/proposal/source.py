from __future__ import annotations

import subprocess
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import orjson
from pydantic import ValidationError

from ..errors import ProposalMalformed, ProposalNotFound, ProposalSourceUnavailable
from ..schemas import ProposalRecord
from ..utils import bytes_to_hex, canonical_dumps, read_json

INSTALL_CODE = "InstallCode"


class ProposalSource(Protocol):
    source_id: str

    def get_proposal(self, proposal_id: str) -> ProposalRecord:
        ...


def _unwrap_opt(value: Any) -> Any:
    # Candid opt values serialize as [] or [value].
    while isinstance(value, list) and len(value) <= 1 and not _is_byte_list(value):
        if not value:
            return None
        value = value[0]
    return value


def _is_byte_list(value: Any) -> bool:
    return (
        isinstance(value, list)
        and bool(value)
        and all(isinstance(item, int) and not isinstance(item, bool) for item in value)
    )


def _hash_field(value: Any) -> Optional[str]:
    value = _unwrap_opt(value)
    if value is None:
        return None
    if _is_byte_list(value):
        return bytes_to_hex(value)
    if isinstance(value, str):
        return value
    raise ProposalMalformed("wasm_module_hash has unexpected type", found=type(value).__name__)


def _text_field(value: Any) -> Optional[str]:
    value = _unwrap_opt(value)
    if value is None:
        return None
    if isinstance(value, dict):
        # Principal rendered as {"__principal__": "..."} by some encoders.
        value = next(iter(value.values()), None)
    return str(value) if value is not None else None


def _install_code_fields(install_code: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "expected_artifact_hash": _hash_field(install_code.get("wasm_module_hash")),
        "target_resource_id": _text_field(install_code.get("canister_id")),
    }


def normalize_proposal(
    document: Any, proposal_id: str, source_id: str = ""
) -> ProposalRecord:
    """Build a ProposalRecord from one of the document shapes a source may return.

    Accepted shapes are the governance ``get_proposal_info`` dump (nested ``proposal``
    with an ``action`` variant), the dashboard API's flat shape (``action`` name plus
    ``payload``), and an already-normalized record.
    """
    document = _unwrap_opt(document)
    if not isinstance(document, dict):
        raise ProposalMalformed("proposal document is not an object")

    fields: Dict[str, Any] = {"proposal_id": str(proposal_id), "source": source_id}
    if "proposal" in document:
        body = _unwrap_opt(document.get("proposal"))
        if not isinstance(body, dict):
            raise ProposalMalformed("proposal body is empty")
        action = _unwrap_opt(body.get("action"))
        if isinstance(action, dict) and action:
            action_name = next(iter(action))
            fields["action"] = action_name
            if action_name == INSTALL_CODE and isinstance(action[action_name], dict):
                fields.update(_install_code_fields(action[action_name]))
    else:
        body = document
        action_name = body.get("action")
        if isinstance(action_name, str):
            fields["action"] = action_name
        payload = body.get("payload")
        if action_name == INSTALL_CODE and isinstance(payload, dict):
            fields.update(_install_code_fields(payload))
        for key in ("expected_artifact_hash", "target_resource_id", "commit_hash"):
            if body.get(key) is not None:
                fields[key] = body[key]

    fields["title"] = _text_field(body.get("title")) or "Untitled"
    fields["summary"] = _text_field(body.get("summary")) or ""
    fields["url"] = _text_field(body.get("url")) or ""
    try:
        return ProposalRecord(**fields)
    except ValidationError as exc:
        errors = [f"{'.'.join(map(str, err['loc']))}:{err['msg']}" for err in exc.errors()]
        raise ProposalMalformed("proposal failed validation", errors=errors) from exc


class FileProposalSource:
    """Reads ``<root>/<proposal_id>.json`` documents captured from the ledger."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.source_id = f"file:{self.root}"

    def get_proposal(self, proposal_id: str) -> ProposalRecord:
        path = self.root / f"{proposal_id}.json"
        if not path.exists():
            raise ProposalNotFound(f"no document at {path}")
        try:
            document = read_json(path)
        except orjson.JSONDecodeError as exc:
            raise ProposalMalformed("document is not valid JSON") from exc
        if document is None:
            raise ProposalNotFound("document is null")
        return normalize_proposal(document, proposal_id, self.source_id)


class SubprocessProposalSource:
    """Delegates the ledger query to an external command.

    The command gets ``{"proposal_id": ...}`` on stdin and must print the proposal
    document as JSON, or ``null`` when the proposal does not exist.
    """

    def __init__(self, command: List[str], timeout_s: float = 30.0) -> None:
        self.command = list(command)
        self.timeout_s = timeout_s
        self.source_id = f"subprocess:{' '.join(self.command)}"

    def get_proposal(self, proposal_id: str) -> ProposalRecord:
        try:
            result = subprocess.run(
                self.command,
                input=canonical_dumps({"proposal_id": proposal_id}),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.timeout_s,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise ProposalSourceUnavailable("timeout", timeout_s=self.timeout_s) from exc
        except OSError as exc:
            raise ProposalSourceUnavailable("spawn_failed", error=str(exc)) from exc
        if result.returncode != 0:
            raise ProposalSourceUnavailable("nonzero", exit_code=result.returncode)
        try:
            document = orjson.loads(result.stdout or b"null")
        except orjson.JSONDecodeError as exc:
            raise ProposalMalformed("source output is not valid JSON") from exc
        if document is None or document == []:
            raise ProposalNotFound(f"proposal {proposal_id} not found")
        return normalize_proposal(document, proposal_id, self.source_id)


class DashboardProposalSource:
    """Reads proposals from the public governance dashboard HTTP API."""

    def __init__(self, base_url: str, timeout_s: float = 30.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.source_id = f"dashboard:{self.base_url}"

    def get_proposal(self, proposal_id: str) -> ProposalRecord:
        if not str(proposal_id).isdigit():
            raise ProposalNotFound("dashboard ids are numeric", proposal_id=proposal_id)
        url = f"{self.base_url}/{proposal_id}"
        req = urllib.request.Request(url, headers={"Accept": "application/json"})
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                body = resp.read()
        except urllib.error.HTTPError as exc:
            if exc.code == 404:
                raise ProposalNotFound(f"proposal {proposal_id} not found") from exc
            raise ProposalSourceUnavailable("http_error", status=exc.code) from exc
        except OSError as exc:
            raise ProposalSourceUnavailable("unreachable", error=str(exc)) from exc
        try:
            document = orjson.loads(body)
        except orjson.JSONDecodeError as exc:
            raise ProposalMalformed("dashboard response is not valid JSON") from exc
        return normalize_proposal(document, proposal_id, self.source_id)
