"""Recover commit and artifact-hash references from proposal text.

Free-text extraction is a best-effort heuristic layered under the structured
action payload: structured fields always win, and text is only scanned for a
field the payload did not supply. When several tokens match, the first one in
the text is taken, so a proposal citing both a base and a release commit
resolves to whichever comes first.
"""

from __future__ import annotations

import re
from typing import Optional

from ..errors import CommitUnresolvable, ExpectedHashUnavailable
from ..schemas import ProposalRecord, ResolvedReferences
from ..utils import digest_algorithm_for

COMMIT_TOKEN_RE = re.compile(r"\b([0-9a-f]{40})\b", re.IGNORECASE)
ARTIFACT_TOKEN_RE = re.compile(r"\b([0-9a-f]{64})\b", re.IGNORECASE)
LABELED_ARTIFACT_RE = re.compile(
    r"(?:hash|module)[^\n]{0,80}?\b([0-9a-f]{64})\b", re.IGNORECASE
)


def extract_commit_reference(text: str) -> Optional[str]:
    match = COMMIT_TOKEN_RE.search(text)
    if match is None:
        return None
    return match.group(1).lower()


def extract_artifact_hash(text: str) -> Optional[str]:
    match = LABELED_ARTIFACT_RE.search(text) or ARTIFACT_TOKEN_RE.search(text)
    if match is None:
        return None
    return match.group(1).lower()


def resolve_references(record: ProposalRecord) -> ResolvedReferences:
    text = record.text()

    if record.commit_hash:
        commit_hash, commit_source = record.commit_hash, "structured"
    else:
        found = extract_commit_reference(text)
        if found is None:
            raise CommitUnresolvable("no 40-hex commit token in title, summary or url")
        commit_hash, commit_source = found, "text"

    if record.expected_artifact_hash:
        expected_hash, expected_source = record.expected_artifact_hash, "structured"
    else:
        recovered = extract_artifact_hash(text)
        if recovered is None:
            raise ExpectedHashUnavailable("no structured artifact hash and none in text")
        expected_hash, expected_source = recovered, "text"

    algorithm = digest_algorithm_for(expected_hash)
    if algorithm is None:
        raise ExpectedHashUnavailable(
            "unsupported digest length", hex_length=len(expected_hash)
        )
    return ResolvedReferences(
        commit_hash=commit_hash,
        commit_source=commit_source,
        expected_hash=expected_hash,
        expected_hash_source=expected_source,
        digest_algorithm=algorithm,
    )
