from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..utils import now_ts_ns, read_jsonl, stable_hash, to_jsonable, write_jsonl_line


def _event_hash(entry: Dict[str, Any]) -> str:
    return stable_hash(
        {
            "ts": entry.get("ts"),
            "run_id": entry.get("run_id"),
            "type": entry.get("type"),
            "payload": entry.get("payload"),
            "prev_hash": entry.get("prev_hash"),
        }
    )


class Ledger:
    """Append-only, hash-chained event log for one verification run.

    A resumed run reopens the same file and keeps extending the chain.
    """

    def __init__(self, path: Path, run_id: str = "") -> None:
        self.path = path
        self.run_id = run_id
        self._last_hash = ""
        if path.exists():
            entries = read_jsonl(path)
            if entries:
                self._last_hash = entries[-1].get("hash", "")

    def append(self, event_type: str, payload: Dict[str, Any]) -> str:
        event: Dict[str, Any] = {
            "ts": now_ts_ns(),
            "run_id": self.run_id,
            "type": event_type,
            "payload": to_jsonable(payload),
            "prev_hash": self._last_hash,
        }
        event_hash = _event_hash(event)
        event["hash"] = event_hash
        write_jsonl_line(self.path, event)
        self._last_hash = event_hash
        return event_hash

    def events(self, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        entries = read_jsonl(self.path)
        if event_type is None:
            return entries
        return [entry for entry in entries if entry.get("type") == event_type]

    @staticmethod
    def verify_chain(path: Path) -> Tuple[bool, str]:
        if not path.exists():
            return False, "ledger missing"
        prev_hash = ""
        for idx, entry in enumerate(read_jsonl(path)):
            if entry.get("prev_hash") != prev_hash:
                return False, f"prev_hash mismatch at {idx}"
            if _event_hash(entry) != entry.get("hash", ""):
                return False, f"hash mismatch at {idx}"
            prev_hash = entry["hash"]
        return True, "ok"
