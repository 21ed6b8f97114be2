import sys
from pathlib import Path

import pytest

from wasmverify_v1.errors import (
    ProposalMalformed,
    ProposalNotFound,
    ProposalSourceUnavailable,
)
from wasmverify_v1.proposal.source import (
    FileProposalSource,
    SubprocessProposalSource,
    normalize_proposal,
)
from wasmverify_v1.utils import write_json

COMMIT = "0123456789abcdef0123456789abcdef01234567"
WASM_HASH = "ab" * 32
FIXTURES = Path(__file__).resolve().parent / "fixtures"


def _governance_document(wasm_hash: object) -> dict:
    return {
        "id": [{"id": 131000}],
        "proposal": [
            {
                "title": [],
                "summary": f"Release at {COMMIT}",
                "url": "",
                "action": [
                    {
                        "InstallCode": {
                            "wasm_module_hash": wasm_hash,
                            "canister_id": ["ryjl3-tyaaa-aaaaa-aaaba-cai"],
                            "install_mode": [3],
                        }
                    }
                ],
            }
        ],
        "status": 4,
    }


def test_governance_shape_with_byte_list_hash() -> None:
    document = _governance_document([list(bytes.fromhex(WASM_HASH))])
    record = normalize_proposal(document, "131000", "test")
    assert record.proposal_id == "131000"
    assert record.title == "Untitled"
    assert record.action == "InstallCode"
    assert record.expected_artifact_hash == WASM_HASH
    assert record.target_resource_id == "ryjl3-tyaaa-aaaaa-aaaba-cai"
    assert record.commit_hash is None
    assert COMMIT in record.text()


def test_governance_shape_without_hash_leaves_claim_empty() -> None:
    record = normalize_proposal(_governance_document([]), "131000")
    assert record.expected_artifact_hash is None


def test_dashboard_flat_shape() -> None:
    document = {
        "proposal_id": 131001,
        "title": "Upgrade ledger",
        "summary": "See forum",
        "url": "https://forum.example",
        "action": "InstallCode",
        "payload": {
            "canister_id": "ryjl3-tyaaa-aaaaa-aaaba-cai",
            "wasm_module_hash": WASM_HASH.upper(),
        },
    }
    record = normalize_proposal(document, "131001", "dashboard")
    assert record.expected_artifact_hash == WASM_HASH
    assert record.title == "Upgrade ledger"
    assert record.source == "dashboard"


def test_non_install_code_action_has_no_claim() -> None:
    document = {"proposal": {"title": "Motion", "summary": "", "url": "", "action": {"Motion": {}}}}
    record = normalize_proposal(document, "9")
    assert record.action == "Motion"
    assert record.expected_artifact_hash is None


def test_malformed_structured_commit_is_rejected() -> None:
    document = {"title": "x", "summary": "", "commit_hash": "abc123"}
    with pytest.raises(ProposalMalformed) as excinfo:
        normalize_proposal(document, "1")
    assert any("commit_hash" in error for error in excinfo.value.context["errors"])


def test_non_object_document_is_malformed() -> None:
    with pytest.raises(ProposalMalformed):
        normalize_proposal("just text", "1")
    with pytest.raises(ProposalMalformed):
        normalize_proposal({"proposal": []}, "1")


def test_file_source_reads_and_reports_missing(tmp_path: Path) -> None:
    write_json(tmp_path / "5.json", _governance_document([list(bytes.fromhex(WASM_HASH))]))
    source = FileProposalSource(tmp_path)
    assert source.get_proposal("5").expected_artifact_hash == WASM_HASH
    with pytest.raises(ProposalNotFound):
        source.get_proposal("6")


def test_file_source_invalid_json(tmp_path: Path) -> None:
    (tmp_path / "7.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(ProposalMalformed):
        FileProposalSource(tmp_path).get_proposal("7")


def test_subprocess_source() -> None:
    source = SubprocessProposalSource([sys.executable, str(FIXTURES / "proposal_source.py")])
    record = source.get_proposal("1")
    assert record.expected_artifact_hash == WASM_HASH
    assert record.title == "Upgrade the registry canister"
    with pytest.raises(ProposalNotFound):
        source.get_proposal("2")
    with pytest.raises(ProposalSourceUnavailable):
        source.get_proposal("boom")
