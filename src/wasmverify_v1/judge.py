from __future__ import annotations

from .errors import FailureReason
from .schemas import Verdict
from .utils import artifact_digest, digest_algorithm_for, normalize_hex


def judge(expected_hash: str, artifact: bytes) -> Verdict:
    """Compare an artifact against the claimed digest.

    The digest algorithm follows from the claimed hash's length. Both sides are
    compared as normalized lowercase hex; a claim that is not usable hex of a
    known digest length is INCONCLUSIVE, never a mismatch.
    """
    expected = normalize_hex(expected_hash)
    if expected is None:
        return Verdict.inconclusive(FailureReason.EXPECTED_HASH_UNAVAILABLE, detail="not hex")
    algorithm = digest_algorithm_for(expected)
    if algorithm is None:
        return Verdict.inconclusive(
            FailureReason.EXPECTED_HASH_UNAVAILABLE,
            detail="unsupported digest length",
            hex_length=len(expected),
        )
    produced = artifact_digest(artifact, algorithm)
    detail = {
        "expected_hash": expected,
        "produced_hash": produced,
        "digest_algorithm": algorithm,
    }
    if expected == produced:
        return Verdict(kind="MATCH", detail=detail)
    return Verdict(kind="MISMATCH", detail=detail)
