from .extract import extract_artifact_hash, extract_commit_reference, resolve_references
from .source import (
    DashboardProposalSource,
    FileProposalSource,
    ProposalSource,
    SubprocessProposalSource,
    normalize_proposal,
)

__all__ = [
    "DashboardProposalSource",
    "FileProposalSource",
    "ProposalSource",
    "SubprocessProposalSource",
    "extract_artifact_hash",
    "extract_commit_reference",
    "normalize_proposal",
    "resolve_references",
]
