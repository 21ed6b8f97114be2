from __future__ import annotations

import hashlib
import json
import re
import time
from pathlib import Path
from typing import Any, Optional

import orjson
from blake3 import blake3

CANONICALIZATION = "orjson_sort_keys_utf8"
HASH_ALGORITHM = "blake3"

# Artifact digests must match whatever the chain records, so these are plain hashlib names.
DIGEST_BY_HEX_LENGTH = {64: "sha256", 96: "sha384", 128: "sha512"}

_HEX_SEPARATORS = re.compile(r"[\s:\-]")
_HEX_ONLY = re.compile(r"[0-9a-f]+")


def canonical_dumps(data: Any) -> bytes:
    return orjson.dumps(data, option=orjson.OPT_SORT_KEYS)


def stable_hash(data: Any) -> str:
    return blake3(canonical_dumps(data)).hexdigest()


def hash_bytes(data: bytes) -> str:
    return blake3(data).hexdigest()


def normalize_hex(value: str) -> Optional[str]:
    """Lowercase a hex string and drop separators; None when it is not hex."""
    text = _HEX_SEPARATORS.sub("", value).lower()
    if text.startswith("0x"):
        text = text[2:]
    if not text or _HEX_ONLY.fullmatch(text) is None:
        return None
    return text


def bytes_to_hex(values: Any) -> str:
    return bytes(int(item) & 0xFF for item in values).hex()


def digest_algorithm_for(hex_digest: str) -> Optional[str]:
    return DIGEST_BY_HEX_LENGTH.get(len(hex_digest))


def artifact_digest(data: bytes, algorithm: str) -> str:
    return hashlib.new(algorithm, data).hexdigest()


def now_ts_ns() -> int:
    return time.time_ns()


def deadline_after(budget_s: Optional[float]) -> Optional[float]:
    if budget_s is None:
        return None
    return time.monotonic() + budget_s


def bounded_timeout(timeout_s: float, deadline: Optional[float]) -> float:
    """Cap a stage timeout by the run deadline; <= 0 means the budget is spent."""
    if deadline is None:
        return timeout_s
    return min(timeout_s, deadline - time.monotonic())


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def write_json(path: Path, data: Any) -> None:
    ensure_dir(path.parent)
    path.write_bytes(canonical_dumps(data))


def read_json(path: Path) -> Any:
    return orjson.loads(path.read_bytes())


def write_text(path: Path, text: str) -> None:
    ensure_dir(path.parent)
    path.write_text(text, encoding="utf-8")


def write_jsonl_line(path: Path, data: Any) -> None:
    ensure_dir(path.parent)
    line = canonical_dumps(data) + b"\n"
    with path.open("ab") as handle:
        handle.write(line)


def read_jsonl(path: Path) -> list[Any]:
    if not path.exists():
        return []
    lines = path.read_bytes().splitlines()
    return [orjson.loads(line) for line in lines if line]


def to_jsonable(value: Any) -> Any:
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, bytes):
        return value.hex()
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {str(key): to_jsonable(val) for key, val in value.items()}
    if isinstance(value, (int, str, bool)) or value is None:
        return value
    if isinstance(value, float):
        return float(f"{value:.6f}")
    return json.loads(json.dumps(value, default=str))
