from __future__ import annotations

from typing import List, Protocol

from .schemas import VerdictRecord

HEADLINES = {
    "MATCH": "MATCH: the rebuilt artifact is consistent with the on-chain hash",
    "MISMATCH": "MISMATCH: the rebuilt artifact does NOT match the on-chain hash",
    "INCONCLUSIVE": "INCONCLUSIVE: the build could not be verified",
}


class ReportSink(Protocol):
    def publish(self, record: VerdictRecord, markdown: str) -> None:
        ...


def _code(value: object) -> str:
    return f"`{value}`" if value not in (None, "") else "n/a"


def trust_rows(record: VerdictRecord) -> List[tuple[str, str]]:
    trust = record.trust
    image = trust.build_environment or "n/a"
    if trust.build_environment and not trust.image_pinned:
        image = f"{image} (not digest-pinned)"
    return [
        ("Proposal", str(trust.proposal_id)),
        ("Proposal source", trust.proposal_source or "n/a"),
        ("Target canister", trust.target_resource_id or "n/a"),
        ("Repository", trust.repo_url or "n/a"),
        ("Commit", f"{trust.commit_hash or 'n/a'} ({trust.commit_source or '-'})"),
        ("Build environment", image),
        ("Build plan from", trust.inferrer_id or "n/a"),
        ("Digest", trust.digest_algorithm or "n/a"),
        ("Expected hash", f"{record.expected_hash or 'n/a'} ({trust.expected_hash_source or '-'})"),
        ("Produced hash", record.produced_hash or "n/a"),
    ]


def render_markdown(record: VerdictRecord) -> str:
    lines = [
        f"# Build verification for proposal {record.trust.proposal_id}",
        "",
        f"**{HEADLINES[record.verdict]}**",
        "",
    ]
    if record.reasons:
        lines.append("## Reason")
        lines.append("")
        for reason in record.reasons:
            extra = {k: v for k, v in reason.items() if k not in {"reason", "detail"}}
            line = f"- {_code(reason.get('reason'))}"
            if reason.get("detail"):
                line += f": {reason['detail']}"
            if extra:
                line += " " + ", ".join(f"{k}={v}" for k, v in sorted(extra.items()))
            lines.append(line)
        lines.append("")
    lines.append("## Trust parameters")
    lines.append("")
    lines.append("| Parameter | Value |")
    lines.append("| --- | --- |")
    for name, value in trust_rows(record):
        lines.append(f"| {name} | {value} |")
    lines.append("")
    lines.append(
        "The build commands were derived from the proposal text by an automated inference "
        "step and are not endorsed by the proposer. A MATCH states that this build output is "
        "consistent with the on-chain claim; it is not a review of the code."
    )
    lines.append("")
    return "\n".join(lines)
