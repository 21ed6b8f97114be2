import pytest
from hypothesis import given
from hypothesis import strategies as st

from wasmverify_v1.errors import CommitUnresolvable, ExpectedHashUnavailable
from wasmverify_v1.proposal.extract import (
    extract_artifact_hash,
    extract_commit_reference,
    resolve_references,
)
from wasmverify_v1.schemas import ProposalRecord

COMMIT_A = "0123456789abcdef0123456789abcdef01234567"
COMMIT_B = "fedcba9876543210fedcba9876543210fedcba98"
WASM_HASH = "ab12" * 16

# Letters outside a-f plus punctuation cannot form hex tokens.
NON_HEX_TEXT = st.text(alphabet="ghijklmnopqrstuvwxyz .,:/\n", max_size=60)
HEX_40 = st.text(alphabet="0123456789abcdefABCDEF", min_size=40, max_size=40)


@given(prefix=NON_HEX_TEXT, token=HEX_40, suffix=NON_HEX_TEXT)
def test_single_token_is_returned_lowercase(prefix: str, token: str, suffix: str) -> None:
    text = f"{prefix} {token} {suffix}"
    assert extract_commit_reference(text) == token.lower()


@given(text=NON_HEX_TEXT)
def test_text_without_token_is_absent(text: str) -> None:
    assert extract_commit_reference(text) is None


def test_first_of_several_tokens_wins() -> None:
    text = f"Built at {COMMIT_B}, previously {COMMIT_A}."
    assert extract_commit_reference(text) == COMMIT_B
    text = f"Built at {COMMIT_A}, previously {COMMIT_B}."
    assert extract_commit_reference(text) == COMMIT_A


def test_commit_token_in_url_is_found() -> None:
    text = f"https://github.com/dfinity/ic/commit/{COMMIT_A.upper()}"
    assert extract_commit_reference(text) == COMMIT_A


def test_longer_hex_runs_are_not_commits() -> None:
    assert extract_commit_reference(f"module hash {WASM_HASH}") is None
    assert extract_commit_reference(f"x{COMMIT_A}") is None
    assert extract_commit_reference(f"{COMMIT_A}_rc") is None


def test_labeled_artifact_hash_preferred_over_first_bare_token() -> None:
    other = "cd34" * 16
    text = f"Previous build {other}\nExpected wasm module hash: {WASM_HASH.upper()}"
    assert extract_artifact_hash(text) == WASM_HASH


def test_bare_artifact_hash_fallback() -> None:
    text = f"Output:\n{WASM_HASH}\n"
    assert extract_artifact_hash(text) == WASM_HASH
    assert extract_artifact_hash("nothing here") is None


def test_structured_fields_take_precedence_over_text() -> None:
    record = ProposalRecord(
        proposal_id="1",
        summary=f"commit {COMMIT_B} module hash {'cd34' * 16}",
        commit_hash=COMMIT_A,
        expected_artifact_hash=WASM_HASH,
    )
    refs = resolve_references(record)
    assert refs.commit_hash == COMMIT_A
    assert refs.commit_source == "structured"
    assert refs.expected_hash == WASM_HASH
    assert refs.expected_hash_source == "structured"
    assert refs.digest_algorithm == "sha256"


def test_text_tier_used_when_structured_absent() -> None:
    record = ProposalRecord(
        proposal_id="2",
        title="Upgrade",
        summary=f"git checkout {COMMIT_A}\nwasm hash {WASM_HASH}",
    )
    refs = resolve_references(record)
    assert (refs.commit_hash, refs.commit_source) == (COMMIT_A, "text")
    assert (refs.expected_hash, refs.expected_hash_source) == (WASM_HASH, "text")


def test_missing_commit_raises_commit_unresolvable() -> None:
    record = ProposalRecord(proposal_id="3", summary="no refs", expected_artifact_hash=WASM_HASH)
    with pytest.raises(CommitUnresolvable):
        resolve_references(record)


def test_missing_expected_hash_raises() -> None:
    record = ProposalRecord(proposal_id="4", summary=f"commit {COMMIT_A}")
    with pytest.raises(ExpectedHashUnavailable):
        resolve_references(record)


def test_unsupported_digest_length_raises() -> None:
    record = ProposalRecord(
        proposal_id="5", summary=f"commit {COMMIT_A}", expected_artifact_hash="ab" * 20
    )
    with pytest.raises(ExpectedHashUnavailable) as excinfo:
        resolve_references(record)
    assert excinfo.value.context["hex_length"] == 40
