from __future__ import annotations

import re
from pathlib import PurePosixPath
from typing import List, Optional

# Matches a version-control tool in command position: at the start, after a
# separator or subshell opener, optionally behind env assignments or sudo.
_VCS_COMMAND_RE = re.compile(
    r"(?:^|[;&|\n(`]|\$\()\s*(?:[A-Za-z_][A-Za-z0-9_]*=\S*\s+)*(?:sudo\s+)?"
    r"(git|hg|svn|gh)(?=\s|$|;|&|\|)"
)


def find_vcs_command(step: str) -> Optional[str]:
    match = _VCS_COMMAND_RE.search(step)
    return match.group(1) if match else None


def vcs_step_indexes(steps: List[str]) -> List[int]:
    return [idx for idx, step in enumerate(steps) if find_vcs_command(step)]


def normalize_output_path(path: str) -> Optional[str]:
    """Return the repo-relative POSIX form of a declared output path, or None if it escapes."""
    text = path.strip().replace("\\", "/")
    if not text:
        return None
    candidate = PurePosixPath(text)
    if candidate.is_absolute() or ".." in candidate.parts:
        return None
    normalized = candidate.as_posix()
    if normalized in {".", ""}:
        return None
    return normalized
